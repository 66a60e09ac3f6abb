"""
Terms (multiplicative factors) and integration variables, built on sympy.

A product only needs a narrow capability interface from its factors:
name, kind (real or categorical), dependency predicates, value / index value,
and a factory creating the integral of the term over a set of variables and a named range.
"""

import logging
import math
from abc import ABC, abstractmethod
from enum import Enum

import sympy as sp

import num_integration


logger = logging.getLogger(__name__)


#######################################
# settings
#######################################
CLOSED_FORM = True            # try sympy.integrate first, fall back to numeric integration if that fails
HIGH_PRECISION = False        # numeric fallback of single integrals via mpmath instead of scipy
LIB_MATH = "math"             # lambdification library for term values and closed-form integrals
SUBPRODUCT_PREFIX = "SUBPROD_"
NAME_SEPARATOR = "_X_"
UNIT_NAME = "ONE"             # name of the constant 1 factor synthesized for variables no term depends on


class TermKind(Enum):
    REAL = "real"
    CATEGORY = "category"


def make_fp_name (prefix, terms):
    """
    name of a synthesized term: prefix followed by member names joined with NAME_SEPARATOR
    e.g. SUBPROD_f_X_g
    """
    return prefix + NAME_SEPARATOR.join(t.name for t in terms)


def make_integral_name (name, variables, range_name=None):
    res = f"{name}_Int[{','.join(v.name for v in variables)}]"
    if range_name:
        res += f"_{range_name}"
    return res


def unique_variables(variables):
    # keep order, drop repeated variables (identity)
    seen = set()
    res = []
    for v in variables:
        if v not in seen:
            seen.add(v)
            res.append(v)
    return tuple(res)


def symbolic_expr (term):
    """sympy expression of a real term, None if the term offers none"""
    if term.kind is not TermKind.REAL:
        return None
    try:
        return term.expr
    except (AttributeError, TypeError):
        return None


class Variable:
    """
    A real integration variable: sympy symbol + current value + default and named ranges.
    Limits may be infinite.
    """

    def __init__(self, name, lo=-math.inf, hi=math.inf, value=None):
        if lo > hi:
            raise ValueError(f"Variable {name}: lower limit {lo} above upper limit {hi}")
        self.name = name
        self.symbol = sp.Symbol(name, real=True)
        self._ranges = {None: (lo, hi)}
        if value is None:
            if math.isfinite(lo) and math.isfinite(hi):
                value = 0.5 * (lo + hi)
            else:
                value = min(max(0.0, lo), hi)
        self.set_value(value)

    def set_value (self, value):
        lo, hi = self._ranges[None]
        if not lo <= value <= hi:
            raise ValueError(f"Variable {self.name}: value {value} outside of range [{lo}, {hi}]")
        self.value = value

    def set_range (self, lo, hi, name=None):
        if lo > hi:
            raise ValueError(f"Variable {self.name}: lower limit {lo} above upper limit {hi}")
        self._ranges[name] = (lo, hi)

    def has_range (self, name):
        return name in self._ranges

    def get_range (self, name=None):
        if name not in self._ranges:
            logger.warning("Variable %s has no range named '%s', using the default range", self.name, name)
            name = None
        return self._ranges[name]

    def __repr__(self):
        lo, hi = self._ranges[None]
        return f"Variable({self.name}={self.value} [{lo}, {hi}])"


class Term(ABC):
    """
    capability interface of a multiplicative factor
    """

    kind = TermKind.REAL

    def __init__(self, name):
        self.name = name
        self._norm_integrals = {}  # frozenset(variables) -> integral term used for normalization

    @abstractmethod
    def variables (self):
        """tuple of the Variables this term depends on"""

    def depends_on (self, arg):
        """
        arg is a single Variable or an iterable of Variables (True if the term depends on any of them)
        """
        own = self.variables()
        if isinstance(arg, Variable):
            return any(v is arg for v in own)
        return any(self.depends_on(v) for v in arg)

    def value (self, norm_set=None):
        raise TypeError(f"{self.name}: {self.kind.value} term has no real value")

    def index_value (self):
        raise TypeError(f"{self.name}: {self.kind.value} term has no index value")

    @abstractmethod
    def create_integral (self, variables, range_name=None):
        """new Term: integral of self over variables in range range_name (owned by the caller)"""

    def _normalize (self, val, norm_set):
        # divide by the integral over those variables of norm_set the term depends on (default range)
        if not norm_set:
            return val
        norm_vars = tuple(v for v in self.variables() if v in set(norm_set))
        if not norm_vars:
            return val
        key = frozenset(norm_vars)
        norm = self._norm_integrals.get(key)
        if norm is None:
            norm = self.create_integral(norm_vars)
            self._norm_integrals[key] = norm
        return val / norm.value()

    def __repr__(self):
        return f"{type(self).__name__}({self.name})"


class RealTerm(Term):
    """
    real factor given by a sympy expression over the symbols of its variables
    """

    def __init__(self, name, expr, variables=()):
        super().__init__(name)
        expr = sp.sympify(expr)
        by_symbol = {}
        for v in variables:
            if v.symbol in by_symbol and by_symbol[v.symbol] is not v:
                raise ValueError(f"{name}: two different variables named '{v.name}'")
            by_symbol[v.symbol] = v
        unresolved = expr.free_symbols - set(by_symbol)
        if unresolved:
            raise ValueError(
                f"Unresolved symbols {sorted(map(str, unresolved))} in '{expr}'. "
                "Pass a Variable for every free symbol of the expression."
            )
        self.expr = expr
        # only variables the expression actually uses count as dependencies
        self._variables = unique_variables(v for v in variables if v.symbol in expr.free_symbols)

    def variables (self):
        return self._variables

    def value (self, norm_set=None):
        f = num_integration.cached_lambdify(self.expr, tuple(v.symbol for v in self._variables), LIB_MATH)
        val = num_integration.as_float(f(*[v.value for v in self._variables]))
        return self._normalize(val, norm_set)

    def create_integral (self, variables, range_name=None):
        return IntegralTerm(self, variables, range_name)


class CategoryTerm(Term):
    """
    categorical factor: contributes the integer index of its current state
    """

    kind = TermKind.CATEGORY

    def __init__(self, name, states, current=None):
        super().__init__(name)
        if isinstance(states, dict):
            states = dict(states)
        else:
            states = {label: i for i, label in enumerate(states)}
        if not states:
            raise ValueError(f"{name}: a category needs at least one state")
        if len(set(states.values())) != len(states):
            raise ValueError(f"{name}: state indices must be unique")
        if not all(isinstance(i, int) for i in states.values()):
            raise ValueError(f"{name}: state indices must be integers")
        self._states = states
        self._current = next(iter(states))
        if current is not None:
            self.set_state(current)

    def set_state (self, state):
        """state is a label or an index"""
        if state in self._states:
            self._current = state
            return
        for label, index in self._states.items():
            if isinstance(state, int) and index == state:
                self._current = label
                return
        raise KeyError(f"{self.name}: unknown state {state!r}")

    @property
    def state (self):
        return self._current

    def variables (self):
        return ()

    def index_value (self):
        return self._states[self._current]

    def create_integral (self, variables, range_name=None):
        raise TypeError(f"{self.name}: a categorical term cannot be integrated")


class IntegralTerm(Term):
    """
    integral of a symbolic term over a set of variables and a (named) range

    Closed form is derived with symbolic limits, so later changes of the ranges are honoured.
    If sympy leaves an unevaluated Integral (or the closed form fails or is NaN for the current limits),
    the value is computed numerically. An infinite closed form is a divergent integral and is returned as is.
    """

    def __init__(self, integrand, variables, range_name=None):
        super().__init__(make_integral_name(integrand.name, unique_variables(variables), range_name))
        self.integrand = integrand
        self.int_vars = unique_variables(variables)
        self.range_name = range_name
        self._params = tuple(v for v in integrand.variables() if v not in set(self.int_vars))
        self._limit_syms = [(sp.Dummy(v.name + "_lo", real=True), sp.Dummy(v.name + "_hi", real=True))
                            for v in self.int_vars]
        self._closed = None  # None: not tried yet, False: no closed form, else lambdified function
        self._numeric = None

    def variables (self):
        return self._params

    def _closed_form (self):
        if self._closed is None:
            self._closed = False
            if CLOSED_FORM:
                limits = [(v.symbol, lo, hi) for v, (lo, hi) in zip(self.int_vars, self._limit_syms)]
                res = sp.integrate(self.integrand.expr, *limits)
                if res.has(sp.Integral):
                    logger.debug("%s: no closed form, integrating numerically", self.name)
                else:
                    args = tuple(v.symbol for v in self._params) + tuple(s for pair in self._limit_syms for s in pair)
                    self._closed = sp.lambdify(args, res, LIB_MATH)
                    logger.debug("%s: closed form %s", self.name, res)
        return self._closed

    def _numeric_value (self, limits, params):
        if HIGH_PRECISION and len(self.int_vars) == 1:
            (lo, hi), = limits
            return num_integration.num_integration_single(
                self.integrand.expr, self.int_vars[0].symbol, lo, hi,
                {v.symbol: p for v, p in zip(self._params, params)})
        if self._numeric is None:
            self._numeric = num_integration.build_box_quad(
                self.integrand.expr, [v.symbol for v in self.int_vars], [v.symbol for v in self._params])
        val, _err = self._numeric(limits, *params)
        return val

    def value (self, norm_set=None):
        limits = [v.get_range(self.range_name) for v in self.int_vars]
        params = [v.value for v in self._params]
        val = None
        f = self._closed_form()
        if f:
            try:
                val = num_integration.as_float(f(*params, *[x for pair in limits for x in pair]))
            except (OverflowError, ZeroDivisionError, ValueError):
                val = None
            if val is None or math.isnan(val):
                logger.debug("%s: closed form undefined for limits %s, integrating numerically", self.name, limits)
                val = None
        if val is None:
            val = self._numeric_value(limits, params)
        return self._normalize(val, norm_set)

    def create_integral (self, variables, range_name=None):
        if range_name != self.range_name:
            raise ValueError(f"{self.name}: cannot integrate over range '{range_name}' "
                             f"an integral already taken over range '{self.range_name}'")
        return IntegralTerm(self.integrand, self.int_vars + tuple(variables), range_name)


class GenericIntegralTerm(Term):
    """
    numeric integral of a term without symbolic expression

    The integrand is only asked for its value: the integration variables are set to the quadrature points
    and restored afterwards. Ranges of the integration variables are looked up at every evaluation.
    """

    def __init__(self, integrand, variables, range_name=None):
        super().__init__(make_integral_name(integrand.name, unique_variables(variables), range_name))
        self.integrand = integrand
        self.int_vars = unique_variables(variables)
        self.range_name = range_name

    def variables (self):
        return tuple(v for v in self.integrand.variables() if v not in set(self.int_vars))

    def _at (self, *vals):
        # named ranges may exceed the default range, so set_value is bypassed
        for v, x in zip(self.int_vars, vals):
            v.value = x
        return self.integrand.value()

    def value (self, norm_set=None):
        limits = [v.get_range(self.range_name) for v in self.int_vars]
        saved = [v.value for v in self.int_vars]
        try:
            val, err = num_integration.integrate_callable(self._at, limits)
        finally:
            for v, x in zip(self.int_vars, saved):
                v.value = x
        logger.debug("%s: numeric integral %s (±%.2e)", self.name, val, err)
        return self._normalize(val, norm_set)

    def create_integral (self, variables, range_name=None):
        if range_name != self.range_name:
            raise ValueError(f"{self.name}: cannot integrate over range '{range_name}' "
                             f"an integral already taken over range '{self.range_name}'")
        return GenericIntegralTerm(self.integrand, self.int_vars + tuple(variables), range_name)


class SubProductTerm(Term):
    """
    product over a group of terms, synthesized when a group holds more than one factor
    """

    def __init__(self, terms, name=None):
        terms = tuple(terms)
        super().__init__(name or make_fp_name(SUBPRODUCT_PREFIX, terms))
        self.terms = terms

    def variables (self):
        return unique_variables(v for t in self.terms for v in t.variables())

    def value (self, norm_set=None):
        return calculate(self.terms, norm_set)

    @property
    def expr (self):
        exprs = []
        for t in self.terms:
            e = symbolic_expr(t)
            if e is None:
                raise TypeError(f"{self.name}: factor {t.name} has no symbolic expression")
            exprs.append(e)
        return sp.Mul(*exprs)

    def create_integral (self, variables, range_name=None):
        expr = symbolic_expr(self)
        if expr is None:
            # categorical or interface-only members: integrate the value of the sub-product
            return GenericIntegralTerm(self, variables, range_name)
        return IntegralTerm(RealTerm(self.name, expr, self.variables()), variables, range_name)


def unit_term ():
    """constant factor 1, integrating it gives the volume of the range"""
    return RealTerm(UNIT_NAME, sp.Integer(1))


def calculate (terms, norm_set=None):
    """
    product of the values of the terms:
    real terms contribute value(norm_set), categorical terms their current index (exact integer)
    empty list gives 1
    """
    val = 1
    for term in terms:
        if term.kind is TermKind.CATEGORY:
            val *= term.index_value()
        else:
            val *= term.value(norm_set)
    return val
