"""
Error taxonomy for the Liquidation Insurance Protocol model.

All errors derive from ValueError so that callers can keep catching the
plain ValueError the contract models raise for any rejected call.
"""


class InsurancePoolError(ValueError):
    """Base class for every rejected protocol call."""


class ValidationError(InsurancePoolError):
    """Bad input: zero or dust amount, unsupported asset, malformed parameters."""


class StatePreconditionError(InsurancePoolError):
    """The call is well formed but not allowed in the current state."""


class IntegrityError(InsurancePoolError):
    """Security-relevant rejection: mismatched commitment, bad proof, broken invariant."""


class ReentrancyError(IntegrityError):
    """A guarded critical section was entered again during an external call."""


class CapacityError(InsurancePoolError):
    """The pool cannot take the call without breaching a solvency limit."""


class ExternalCallError(InsurancePoolError):
    """An external collaborator failed; the whole operation is aborted."""


class AccessDeniedError(InsurancePoolError):
    """The caller lacks the capability required for the call."""
