"""
Errors raised by the factorizing integration engine.
"""


class ContractViolation(RuntimeError):
    """
    Internal-consistency failure of the engine (never a user error).
    Raised instead of returning a plausible-looking but wrong number, and never caught by the engine itself.
    """
