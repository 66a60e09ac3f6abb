"""
Grouping of product terms into independent factors for integration.

Terms and integration variables form a bipartite graph ("term depends on variable").
Its connected components are the groups: each group owns a set of variables and the terms depending on them,
and no term is shared between groups, so the integral of the product is the product of the groups' integrals.
Terms depending on none of the variables are collected into one group with an empty variable set.
"""

import logging
from dataclasses import dataclass, field

from integration_errors import ContractViolation


logger = logging.getLogger(__name__)


@dataclass
class TermGroup:
    variables: list = field(default_factory=list)
    terms: list = field(default_factory=list)

    def __repr__(self):
        vrs = ",".join(v.name for v in self.variables)
        trs = ",".join(t.name for t in self.terms)
        return f"({{{vrs}}} -> {{{trs}}})"


def _find (parent, i):
    # path halving
    while parent[i] != i:
        parent[i] = parent[parent[i]]
        i = parent[i]
    return i


def group_product_terms (terms, variables):
    """
    returns the list of TermGroup for integrating the product of terms over variables

    Ordering (stable, for reproducible results):
    - the group of terms independent of all variables comes first (if there are such terms)
    - the other groups are ordered by the position of their first variable in variables
    - inside a group, variables and terms keep their input order
    """
    terms = list(terms)
    variables = list(dict.fromkeys(variables))  # unique, order kept
    position = {v: i for i, v in enumerate(variables)}

    # union-find over variable positions, linked through the terms depending on them
    parent = list(range(len(variables)))
    term_roots = []  # for each term: one variable position it depends on, or None
    for term in terms:
        deps = [position[v] for v in variables if term.depends_on(v)]
        for d in deps[1:]:
            ri, rj = _find(parent, deps[0]), _find(parent, d)
            if ri != rj:
                # the earlier variable stays the root, so a merged group keeps the earlier position
                parent[max(ri, rj)] = min(ri, rj)
        term_roots.append(deps[0] if deps else None)

    groups = []
    independent = [t for t, r in zip(terms, term_roots) if r is None]
    if independent:
        groups.append(TermGroup([], independent))

    by_root = {}
    for i, v in enumerate(variables):
        root = _find(parent, i)
        if root not in by_root:
            by_root[root] = TermGroup()
            groups.append(by_root[root])
        by_root[root].variables.append(v)
    for t, r in zip(terms, term_roots):
        if r is not None:
            by_root[_find(parent, r)].terms.append(t)

    check_decomposition(groups, terms, variables)
    logger.debug("grouped %d terms over %d variables into %s", len(terms), len(variables), dump_groups(groups))
    return groups


def check_decomposition (groups, terms, variables):
    """
    every variable and every term in exactly one group, no term shared between groups
    a failure means the classification itself is broken (ContractViolation, never a user error)
    """
    n_var = sum(len(g.variables) for g in groups)
    n_term = sum(len(g.terms) for g in groups)
    seen_vars = {v for g in groups for v in g.variables}
    seen_terms = {id(t) for g in groups for t in g.terms}
    if n_var != len(variables) or seen_vars != set(variables):
        raise ContractViolation(
            f"variables not uniquely classified: {n_var} in groups vs {len(variables)} requested, groups {dump_groups(groups)}")
    if n_term != len(terms) or seen_terms != {id(t) for t in terms}:
        raise ContractViolation(
            f"terms not uniquely classified: {n_term} in groups vs {len(terms)} in product, groups {dump_groups(groups)}")


def dump_groups (groups):
    return " [ " + " , ".join(repr(g) for g in groups) + " ] "
