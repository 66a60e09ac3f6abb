"""
Product of independent factors, with factorized analytic integration.

Integrating the product over a set of variables is decomposed into independent groups
(see term_grouping): each group is integrated on its own and the partial integrals are multiplied.
Decompositions are cached per (variable set, range) and handed out to callers as integer codes;
an evicted (sterilized) decomposition is rebuilt at the same code on next use.
If nothing factorizes (fewer than two groups) the caller gets NO_INTEGRAL and should integrate numerically.
"""

import logging
import threading
from enum import Enum

import sympy as sp

import num_integration
from decomposition_cache import DecompositionCache, CacheKey, NO_INTEGRAL
from integration_errors import ContractViolation
from partial_integrals import build_partial_integrals
from product_terms import (Term, TermKind, SubProductTerm, GenericIntegralTerm,
                           calculate, make_integral_name, symbolic_expr, unique_variables)
from term_grouping import group_product_terms, dump_groups


logger = logging.getLogger(__name__)


class IntegralState(Enum):
    NO_INTEGRAL = "no_integral"
    FACTORIZING = "factorizing"
    CACHED = "cached"
    STERILIZED = "sterilized"


class FactorizedProduct(Term):
    """
    product of real and categorical terms

    terms:      real terms (value) and categorical terms (index value)
    norm_set:   normalization set used for the real terms in plain evaluation
    cache_size: max number of live decompositions (default: decomposition_cache.CACHE_SIZE)
    """

    def __init__(self, name, terms, norm_set=None, cache_size=None):
        super().__init__(name)
        self._terms = []
        self._real_terms = []
        self._cat_terms = []
        names = set()
        for term in terms:
            if not isinstance(term, Term):
                raise TypeError(f"{name}: component {term!r} is not a real or categorical term")
            if term.name in names:
                raise ValueError(f"{name}: component {term.name} added twice")
            names.add(term.name)
            if term.kind is TermKind.REAL:
                self._real_terms.append(term)
            elif term.kind is TermKind.CATEGORY:
                self._cat_terms.append(term)
            else:
                raise TypeError(f"{name}: component {term.name} is not a real or categorical term")
            self._terms.append(term)

        self.norm_set = norm_set
        self.force_numeric_integration = False
        self._cache = DecompositionCache(cache_size)
        self._lock = threading.RLock()  # guards the cache and the lifecycle of the owned terms
        self._known_variables = []      # variables of all keys issued so far
        self._building = set()          # key identities being factorized right now

    @property
    def terms (self):
        return tuple(self._terms)

    @property
    def cache_stats (self):
        return self._cache.stats

    def variables (self):
        return unique_variables(v for t in self._terms for v in t.variables())

    def parameters (self):
        """variables reachable from the terms, plus those of every integration key issued so far"""
        return unique_variables(list(self.variables()) + self._known_variables)

    # evaluation #########################################

    def evaluate (self):
        return float(calculate(self._real_terms + self._cat_terms, self.norm_set))

    evaluate_product = evaluate

    def value (self, norm_set=None):
        return self._normalize(self.evaluate(), norm_set)

    @property
    def expr (self):
        if self._cat_terms:
            raise TypeError(f"{self.name}: categorical factors have no symbolic expression")
        return SubProductTerm(self._real_terms, name=self.name).expr

    # integration ########################################

    def force_analytical_int (self, variable):
        """internal handling of the integration over variable if any real term depends on it"""
        return any(t.depends_on(variable) for t in self._real_terms)

    def get_analytical_integral (self, all_vars, anal_vars, norm_set=None, range_name=None):
        """
        declares all of all_vars as analytically handled (appended to anal_vars, which must come in empty)
        and returns the code of the factorized integral, NO_INTEGRAL if nothing factorizes
        """
        if self.force_numeric_integration:
            return NO_INTEGRAL
        if norm_set is not None:
            raise ValueError(f"{self.name}: normalized analytic integrals are not supported")
        if len(anal_vars) != 0:
            raise ValueError(f"{self.name}: anal_vars must be empty")
        anal_vars.extend(dict.fromkeys(all_vars))
        return self.get_part_int_list(all_vars, range_name)

    def can_integrate (self, variables, anal_vars=None, range_name=None):
        """
        True if the integral over variables factorizes; anal_vars (if given) is then filled with all of variables
        """
        handled = []
        code = self.get_analytical_integral(list(variables), handled, range_name=range_name)
        if code == NO_INTEGRAL:
            return False
        if anal_vars is not None:
            anal_vars.extend(handled)
        return True

    def request_integral_code (self, variables, range_name=None):
        return self.get_analytical_integral(list(variables), [], range_name=range_name)

    def get_part_int_list (self, iset, range_name=None):
        """
        code of the (cached or newly built) list of partial integrals for iset, NO_INTEGRAL if nothing factorizes
        """
        iset = tuple(dict.fromkeys(iset))
        with self._lock:
            code = self._cache.lookup(iset, range_name)
            if code is not None:
                return code

            identity = CacheKey(iset, range_name).identity
            self._building.add(identity)
            try:
                groups = group_product_terms(self._terms, iset)
                logger.debug("%s: grouping returned %s", self.name, dump_groups(groups))
                if len(groups) < 2:
                    logger.debug("%s: nothing factorizes over %s", self.name, [v.name for v in iset])
                    return NO_INTEGRAL

                result, owned = build_partial_integrals(groups, range_name, self.name)
                for v in iset:
                    if v not in self._known_variables:
                        self._known_variables.append(v)
                code = self._cache.store(iset, range_name, result, owned)
            finally:
                self._building.discard(identity)

            logger.debug("%s: created list %s with code %d for %s range %s", self.name,
                         [t.name for t in result], code, [v.name for v in iset], range_name or "<none>")
            return code

    def analytical_integral (self, code, range_name=None):
        """
        value of the integral for a code handed out by get_analytical_integral
        a sterilized slot is rebuilt from its stored key at the same code
        """
        with self._lock:
            if code == NO_INTEGRAL:
                raise ContractViolation(f"{self.name}: no analytic integral for code {code}")
            entry = self._cache.fetch_by_code(code)
            key = self._cache.key_by_code(code)
            if range_name != key.range_name:
                raise ContractViolation(
                    f"{self.name}: code {code} was issued for range '{key.range_name}', not '{range_name}'")
            if entry is None:
                # cache got sterilized, repopulate this slot, then try again
                params = set(self.parameters())
                iset = tuple(v for v in key.variables if v in params)
                code2 = self.get_part_int_list(iset, key.range_name)
                self._cache.stats.rebuilds += 1
                if code2 != code:
                    raise ContractViolation(
                        f"{self.name}: rebuilding sterilized slot {code} gave code {code2}")
                logger.debug("%s: rebuilt sterilized slot %d", self.name, code)
                entry = self._cache.fetch_by_code(code)
            return float(calculate(entry.result))

    evaluate_integral = analytical_integral

    def integral_state (self, variables, range_name=None):
        iset = tuple(dict.fromkeys(variables))
        with self._lock:
            if CacheKey(iset, range_name).identity in self._building:
                return IntegralState.FACTORIZING
            code = self._cache.find_code(iset, range_name)
            if code is None:
                return IntegralState.NO_INTEGRAL
            return IntegralState.CACHED if self._cache.is_live(code) else IntegralState.STERILIZED

    def partial_integrals (self, code):
        """names of the factors multiplied for code (None if the slot is sterilized)"""
        with self._lock:
            entry = self._cache.fetch_by_code(code)
            return None if entry is None else [t.name for t in entry.result]

    def numeric_integral (self, variables, range_name=None):
        """
        numeric fallback: integrate the product of the real terms over variables with scipy,
        categorical factors multiply the result with their current index
        real terms without symbolic expression are integrated through their values
        """
        variables = unique_variables(variables)
        real = SubProductTerm(self._real_terms, name=self.name)
        expr = symbolic_expr(real)
        if expr is None:
            val = GenericIntegralTerm(real, variables, range_name).value()
        else:
            params = tuple(v for v in real.variables() if v not in set(variables))
            J = num_integration.build_box_quad(expr, [v.symbol for v in variables], [v.symbol for v in params])
            val, err = J([v.get_range(range_name) for v in variables], *[v.value for v in params])
            logger.debug("%s: numeric integral over %s = %s (±%.2e)", self.name, [v.name for v in variables], val, err)
        return float(calculate(self._cat_terms)) * val

    def create_integral (self, variables, range_name=None):
        return ProductIntegralTerm(self, variables, range_name)

    # cache lifecycle ####################################

    def sterilize_cache (self):
        with self._lock:
            self._cache.sterilize_all()

    def clear_cache (self):
        with self._lock:
            self._cache.clear()
            self._known_variables = []


class ProductIntegralTerm(Term):
    """
    integral of a FactorizedProduct: analytic (factorized) when possible, numeric otherwise
    """

    def __init__(self, product, variables, range_name=None):
        variables = unique_variables(variables)
        super().__init__(make_integral_name(product.name, variables, range_name))
        self.product = product
        self.int_vars = variables
        self.range_name = range_name

    def variables (self):
        return tuple(v for v in self.product.variables() if v not in set(self.int_vars))

    def value (self, norm_set=None):
        code = self.product.request_integral_code(self.int_vars, self.range_name)
        if code != NO_INTEGRAL:
            val = self.product.evaluate_integral(code, self.range_name)
        else:
            val = self.product.numeric_integral(self.int_vars, self.range_name)
        return self._normalize(val, norm_set)

    def create_integral (self, variables, range_name=None):
        if range_name != self.range_name:
            raise ValueError(f"{self.name}: cannot integrate over range '{range_name}' "
                             f"an integral already taken over range '{self.range_name}'")
        return ProductIntegralTerm(self.product, self.int_vars + tuple(variables), range_name)


if __name__ == "__main__":
    from product_terms import Variable, RealTerm, CategoryTerm

    logging.basicConfig(level=logging.DEBUG, format="%(asctime)s | %(levelname)s | %(name)s | %(message)s")

    x = Variable("x", 0, 2)
    y = Variable("y", 0, 3)
    f = RealTerm("f", x.symbol**2, [x])
    g = RealTerm("g", sp.exp(-y.symbol), [y])
    h = RealTerm("h", 1.5)
    c = CategoryTerm("c", {"A": 1, "B": 2}, "B")

    P = FactorizedProduct("P", [f, g, h, c])
    print("P =", P.evaluate())

    code = P.request_integral_code([x, y])
    print("code", code, P.partial_integrals(code))
    print("analytic :", P.evaluate_integral(code))
    print("numeric  :", P.numeric_integral([x, y]))

    P.sterilize_cache()
    print("rebuilt  :", P.evaluate_integral(code))
