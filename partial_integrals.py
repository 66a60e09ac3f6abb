"""
Partial integrals: one factor per group of a decomposition.
"""

import logging

from product_terms import SubProductTerm, unit_term


logger = logging.getLogger(__name__)


def build_partial_integrals (groups, range_name=None, owner_name=""):
    """
    for each group (in order):
    - more than one term: synthesize a sub-product over them (owned)
    - exactly one term: use it directly
    - no term (a variable nothing depends on): synthesize the constant 1 (owned)
    then integrate over the group's variables (integral is owned), or, if the group has no variables,
    pass the term through unmodified

    returns (result_list, owned_list)
    """
    result = []
    owned = []
    for group in groups:
        if len(group.terms) > 1:
            term = SubProductTerm(group.terms)
            owned.append(term)
            logger.debug("%s: created subexpression %s", owner_name, term.name)
        elif len(group.terms) == 1:
            term = group.terms[0]
        else:
            term = unit_term()
            owned.append(term)
            logger.debug("%s: created unit factor for %s", owner_name, [v.name for v in group.variables])

        if not group.variables:
            result.append(term)
            logger.debug("%s: adding simple factor %s", owner_name, term.name)
        else:
            integral = term.create_integral(group.variables, range_name)
            result.append(integral)
            owned.append(integral)
            logger.debug("%s: adding integral for %s : %s", owner_name, term.name, integral.name)
    return result, owned
