"""
Error Taxonomy Module

Every rejected operation raises one of these. The API layer maps each kind
to a structured failure response; nothing here is a process-level fault.
"""


class FinancingError(Exception):
    """Base exception for all financing errors."""

    kind = "financing_error"


class ValidationError(FinancingError):
    """Raised for malformed or out-of-range input, before any write."""

    kind = "validation_error"


class NotFoundError(FinancingError):
    """Raised when a loan, installment or receivable does not exist.

    Records owned by another tenant are reported the same way.
    """

    kind = "not_found"


class StateConflictError(FinancingError):
    """Raised when an operation is not valid in the record's current state."""

    kind = "state_conflict"


class ConcurrentModificationError(StateConflictError):
    """Raised when a versioned write loses a compare-and-swap race."""

    kind = "concurrent_modification"


class AuthorizationError(FinancingError):
    """Raised when the caller lacks the required role or tenant scope."""

    kind = "authorization_error"
