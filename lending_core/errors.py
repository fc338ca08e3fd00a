"""Exception hierarchy for the lending core."""

from typing import Any, Dict, Optional


class LendingError(Exception):
    """Base exception for all lending core errors."""


class NotFoundError(LendingError):
    """Raised when a loan, disbursement, payment or transaction does not exist."""


class InvalidStateError(LendingError):
    """Raised when an entity is in the wrong state for the requested operation."""


class PaymentInsufficientError(InvalidStateError):
    """Raised when a payment does not cover accrued interest and fees."""


class InvariantViolationError(LendingError):
    """Raised when an operation would break a platform-wide invariant."""


class InsufficientFundsError(InvariantViolationError):
    """Raised when platform liquidity cannot cover a disbursement."""


class ValidationError(LendingError):
    """Raised for malformed identifiers, out-of-order dates or negative amounts."""


class PersistenceConflictError(LendingError):
    """Raised when a store constraint violation cannot be mapped to a domain error."""


class UnknownFailureError(LendingError):
    """Wraps an unexpected failure together with the context it happened in."""
    
    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}


class IntegrityViolation(Exception):
    """
    Raised by storage backends when a unique or foreign-key constraint fails.
    
    Services translate it into a domain error; it never leaves the core.
    """
    
    UNIQUE = "unique"
    FOREIGN_KEY = "foreign_key"
    
    def __init__(self, kind: str, table: str, fields: tuple, message: str = ""):
        self.kind = kind
        self.table = table
        self.fields = tuple(fields)
        super().__init__(message or f"{kind} constraint violated on {table}{self.fields}")
