"""Tests for grouping product terms into independent factors.

Coverage:
- independent terms, singleton groups, merging through shared terms
- ordering of groups and of terms inside groups
- invariants (every variable / term exactly once)
"""

import pytest
import sympy as sp

from integration_errors import ContractViolation
from product_terms import Variable, RealTerm, CategoryTerm
from term_grouping import TermGroup, group_product_terms, check_decomposition, dump_groups


@pytest.fixture
def xyz():
    return Variable("x", 0, 2), Variable("y", 0, 3), Variable("z", 0, 1)


def names(items):
    return [i.name for i in items]


class TestGroupProductTerms:

    def test_independent_terms_and_singletons(self, xyz):
        """{f(x), g(y), h()} over {x, y} -> ({}, {h}), ({x}, {f}), ({y}, {g})."""
        x, y, _ = xyz
        f = RealTerm("f", x.symbol**2, [x])
        g = RealTerm("g", sp.exp(-y.symbol), [y])
        h = RealTerm("h", 1.5)

        groups = group_product_terms([f, g, h], [x, y])

        assert [(names(gr.variables), names(gr.terms)) for gr in groups] == [
            ([], ["h"]),
            (["x"], ["f"]),
            (["y"], ["g"]),
        ]

    def test_shared_term_merges_groups(self, xyz):
        """{f(x,y), g(y)} over {x, y} -> one group ({x,y}, {f,g})."""
        x, y, _ = xyz
        f = RealTerm("f", x.symbol * y.symbol, [x, y])
        g = RealTerm("g", y.symbol, [y])

        groups = group_product_terms([f, g], [x, y])

        assert len(groups) == 1
        assert names(groups[0].variables) == ["x", "y"]
        assert names(groups[0].terms) == ["f", "g"]

    def test_merge_keeps_earlier_position(self, xyz):
        """A group merged through a later variable stays at the position of its first variable."""
        x, y, z = xyz
        a = RealTerm("a", x.symbol, [x])
        b = RealTerm("b", y.symbol, [y])
        c = RealTerm("c", x.symbol + z.symbol, [x, z])

        groups = group_product_terms([a, b, c], [x, y, z])

        assert [(names(gr.variables), names(gr.terms)) for gr in groups] == [
            (["x", "z"], ["a", "c"]),
            (["y"], ["b"]),
        ]

    def test_transitive_chain(self, xyz):
        """f(x,y) and g(y,z) link x and z through y."""
        x, y, z = xyz
        f = RealTerm("f", x.symbol * y.symbol, [x, y])
        g = RealTerm("g", y.symbol * z.symbol, [y, z])
        k = RealTerm("k", 3)

        groups = group_product_terms([k, f, g], [z, x, y])

        assert len(groups) == 2
        assert names(groups[0].terms) == ["k"]
        assert names(groups[1].variables) == ["z", "x", "y"]
        assert names(groups[1].terms) == ["f", "g"]

    def test_variable_without_terms(self, xyz):
        """A variable nothing depends on gets its own group without terms."""
        x, y, _ = xyz
        f = RealTerm("f", x.symbol, [x])

        groups = group_product_terms([f], [x, y])

        assert [(names(gr.variables), names(gr.terms)) for gr in groups] == [
            (["x"], ["f"]),
            (["y"], []),
        ]

    def test_empty_variable_set(self, xyz):
        """No integration variables -> everything is independent."""
        x, y, _ = xyz
        f = RealTerm("f", x.symbol, [x])
        g = RealTerm("g", y.symbol, [y])

        groups = group_product_terms([f, g], [])

        assert len(groups) == 1
        assert groups[0].variables == []
        assert names(groups[0].terms) == ["f", "g"]

    def test_category_is_independent(self, xyz):
        x, _, _ = xyz
        f = RealTerm("f", x.symbol, [x])
        c = CategoryTerm("c", ["A", "B"])

        groups = group_product_terms([f, c], [x])

        assert names(groups[0].terms) == ["c"]
        assert groups[0].variables == []

    def test_repeated_variable_counted_once(self, xyz):
        x, _, _ = xyz
        f = RealTerm("f", x.symbol, [x])

        groups = group_product_terms([f], [x, x])

        assert len(groups) == 1
        assert names(groups[0].variables) == ["x"]

    @pytest.mark.parametrize("var_order", [(0, 1, 2), (2, 1, 0), (1, 0, 2)])
    def test_invariants_hold(self, xyz, var_order):
        """Every variable and every term lands in exactly one group."""
        x, y, z = xyz
        terms = [
            RealTerm("a", x.symbol * y.symbol, [x, y]),
            RealTerm("b", z.symbol, [z]),
            RealTerm("c", 2),
            RealTerm("d", y.symbol**2, [y]),
        ]
        variables = [xyz[i] for i in var_order]

        groups = group_product_terms(terms, variables)

        assert sorted(v.name for g in groups for v in g.variables) == ["x", "y", "z"]
        assert sorted(t.name for g in groups for t in g.terms) == ["a", "b", "c", "d"]
        term_sets = [set(names(g.terms)) for g in groups]
        for i in range(len(term_sets)):
            for j in range(i + 1, len(term_sets)):
                assert not term_sets[i] & term_sets[j]


class TestCheckDecomposition:

    def test_missing_variable_is_contract_violation(self, xyz):
        x, y, _ = xyz
        f = RealTerm("f", x.symbol, [x])

        with pytest.raises(ContractViolation):
            check_decomposition([TermGroup([x], [f])], [f], [x, y])

    def test_duplicated_term_is_contract_violation(self, xyz):
        x, y, _ = xyz
        f = RealTerm("f", x.symbol * y.symbol, [x, y])

        with pytest.raises(ContractViolation):
            check_decomposition([TermGroup([x], [f]), TermGroup([y], [f])], [f], [x, y])

    def test_dump_groups(self, xyz):
        x, _, _ = xyz
        f = RealTerm("f", x.symbol, [x])
        h = RealTerm("h", 1)

        assert dump_groups([TermGroup([], [h]), TermGroup([x], [f])]) == " [ ({} -> {h}) , ({x} -> {f}) ] "
