"""
Numerical integration over boxes (rectangular ranges), with free parameters.

Used as the fallback whenever a closed form is not available:
- for a single integral term that sympy cannot integrate symbolically
- for a sub-product of terms which offer no symbolic expression (integrand given as a python callable)
- for a whole product that does not factorize (the "no analytic integral" case)

scipy's IntegrationWarning (divergence, roundoff, no convergence) is raised as an error:
a quadrature that did not converge never comes back as a number.
"""

from functools import lru_cache
import warnings
import sympy as sp
import scipy.integrate as spi  # keep the alias to avoid shadowing
import numpy as np
import mpmath
import math


#######################################
# settings (can be overwritten by the caller, e.g. num_integration.LIB_MATH = "mpmath")
#######################################
LIB_MATH = "math"   # lambdification library
EPSABS = 1e-10      # absolute precision for quad / nquad
EPSREL = 1e-10      # relative precision for quad / nquad
LIMIT = 200         # max number of subintervals for quad / nquad
IMAG_TOLERANCE = 1e-12  # imaginary parts below this are dropped silently


def num_integration_single (expr, u, lower_val, upper_val, param_values=None):
    """
    high-precision integration of expr over u in [lower_val, upper_val] via mpmath
    free symbols other than u must be given by param_values {symbol: value}
    """
    if param_values:
        expr = expr.xreplace({s: sp.Float(v) for s, v in param_values.items()})
    if expr.free_symbols - {u}:
        raise ValueError(
            f"Unresolved symbols {sorted(map(str, expr.free_symbols - {u}))} in '{expr}'. "
            "Only the integration variable may remain free."
        )
    f = sp.lambdify(u, expr, "mpmath")
    return as_float(mpmath.quad(f, [lower_val, upper_val]))


def as_float (x):
    # Accept Python/NumPy/mpmath scalars
    if x is None:
        raise RuntimeError("Integrand returned None (unmapped function?).")
    if isinstance(x, (complex, np.complexfloating, mpmath.mpc)):
        if abs(x.imag) > IMAG_TOLERANCE:
            raise RuntimeError(f"Complex integrand value: {x}")
        x = x.real
    return float(x)


@lru_cache(maxsize=2048)
def cached_lambdify(expr, arg_syms, modules):
    return sp.lambdify(arg_syms, expr, modules)


def integrate_callable (f, limits, args=(), epsabs=None, epsrel=None, limit=None):
    """
    integrate the python callable f(*vals, *args) over the box given by limits
    limits: sequence of (lo, hi) pairs, one per leading argument of f, may be infinite
    returns (value, error)
    """
    epsabs = EPSABS if epsabs is None else epsabs
    epsrel = EPSREL if epsrel is None else epsrel
    limit = LIMIT if limit is None else limit
    args = tuple(args)

    # reversed finite bounds flip the sign, empty ranges give zero
    sign = 1.0
    ranges = []
    for lo, hi in limits:
        lo, hi = float(lo), float(hi)
        if lo == hi:
            return 0.0, 0.0
        if np.isfinite(lo) and np.isfinite(hi) and lo > hi:
            lo, hi = hi, lo
            sign = -sign
        ranges.append((lo, hi))

    def integrand(*vals):
        return as_float(f(*vals))

    if not ranges:
        # nothing to integrate: just evaluate
        return sign * integrand(*args), 0.0

    with warnings.catch_warnings():
        warnings.simplefilter("error", spi.IntegrationWarning)
        if len(ranges) == 1:
            (lo, hi), = ranges
            val, err = spi.quad(integrand, lo, hi, args=args,
                                epsabs=epsabs, epsrel=epsrel, limit=limit)
        else:
            # nquad expects the innermost variable first, i.e. the first argument of f
            val, err = spi.nquad(integrand, ranges, args=args,
                                 opts={"epsabs": epsabs, "epsrel": epsrel, "limit": limit})
    return sign * val, err


def build_box_quad (expr, integration_symbols, params, modules=None, epsabs=None, epsrel=None, limit=None):
    """
    Returns a callable eval(limits, *param_vals) -> (value, error)
    that numerically integrates expr over the box given by limits.

    expr:                sympy expression in (*integration_symbols, *params)
    integration_symbols: sequence of sympy symbols to integrate over (any number)
    params:              sequence of sympy symbols which stay free, fed in as param_vals
    limits:              sequence of (lo, hi) pairs, one per integration symbol, may be infinite

    Lambdification is done ONCE here, parameters are passed through quad/nquad args.
    """
    integration_symbols = tuple(integration_symbols)
    params = tuple(params)
    modules = modules or LIB_MATH

    unresolved = expr.free_symbols - set(integration_symbols) - set(params)
    if unresolved:
        raise ValueError(
            f"Unresolved symbols {sorted(map(str, unresolved))} in '{expr}'. "
            "Make sure all symbols are either integrated over or passed as parameters."
        )

    F_num = cached_lambdify(expr, integration_symbols + params, modules)

    def eval_box(limits, *param_vals):
        limits = list(limits)
        if len(limits) != len(integration_symbols):
            raise ValueError(f"Expected {len(integration_symbols)} limit pairs, got {len(limits)}")
        return integrate_callable(F_num, limits, param_vals, epsabs, epsrel, limit)

    return eval_box


if __name__ == "__main__":
    x, y, a = sp.symbols("x y a", real=True)

    print(num_integration_single(sp.exp(-a * x**2), x, -math.inf, math.inf, {a: 1}), math.sqrt(math.pi))

    J = build_box_quad(sp.exp(-a * (x + y)), (x, y), (a,))
    val, err = J([(0, 1), (0, 2)], 1.5)
    print(f"box integral -> {val:.12g}  (±{err:.2e})")
