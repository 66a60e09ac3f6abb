"""Tests for building partial integrals from a decomposition."""

import pytest
import sympy as sp

from partial_integrals import build_partial_integrals
from product_terms import Variable, RealTerm, SubProductTerm, IntegralTerm
from term_grouping import TermGroup


@pytest.fixture
def xy():
    return Variable("x", 0, 2), Variable("y", 0, 1)


class TestBuildPartialIntegrals:

    def test_single_terms(self, xy):
        """Pass-through factor is not owned, integrals are."""
        x, _ = xy
        f = RealTerm("f", x.symbol, [x])
        h = RealTerm("h", 3)

        result, owned = build_partial_integrals([TermGroup([], [h]), TermGroup([x], [f])])

        assert result[0] is h
        assert isinstance(result[1], IntegralTerm)
        assert owned == [result[1]]
        assert result[1].value() == pytest.approx(2.0)

    def test_sub_product_owned(self, xy):
        x, y = xy
        f = RealTerm("f", x.symbol * y.symbol, [x, y])
        g = RealTerm("g", sp.Integer(2) * y.symbol, [y])

        result, owned = build_partial_integrals([TermGroup([x, y], [f, g])], "r")

        assert [t.name for t in result] == ["SUBPROD_f_X_g_Int[x,y]_r"]
        assert isinstance(owned[0], SubProductTerm)
        assert owned[1] is result[0]
        # Int x dx * Int 2 y^2 dy = 2 * 2/3
        assert result[0].value() == pytest.approx(4 / 3)

    def test_independent_sub_product_not_integrated(self, xy):
        h1 = RealTerm("h1", 2)
        h2 = RealTerm("h2", 5)

        result, owned = build_partial_integrals([TermGroup([], [h1, h2])])

        assert [t.name for t in result] == ["SUBPROD_h1_X_h2"]
        assert owned == result
        assert result[0].value() == pytest.approx(10.0)

    def test_group_without_terms(self, xy):
        x, _ = xy

        result, owned = build_partial_integrals([TermGroup([x], [])])

        assert [t.name for t in result] == ["ONE_Int[x]"]
        assert len(owned) == 2
        assert result[0].value() == pytest.approx(2.0)
