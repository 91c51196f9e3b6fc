"""
Engine error types.

Every failure carries a machine readable ``code`` (e.g.
``INSUFFICIENT_BALANCE``) next to its human readable message. All errors
subclass ValueError so existing ``except ValueError`` handlers keep working.
"""

from typing import Optional


class FincoreError(ValueError):
    """Base class for ledger and loan engine errors"""

    default_code = "FINCORE_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class NotFound(FincoreError):
    """A referenced entity does not exist or is not owned by the caller"""
    default_code = "NOT_FOUND"


class InvalidState(FincoreError):
    """The entity is not in a state that allows the operation"""
    default_code = "INVALID_STATE"


class LimitExceeded(FincoreError):
    """A credit, tier or outstanding-amount ceiling would be exceeded"""
    default_code = "LIMIT_EXCEEDED"


class InsufficientFunds(FincoreError):
    """A debit would take a balance below zero"""
    default_code = "INSUFFICIENT_BALANCE"


class ValidationError(FincoreError):
    """Bad input: non-positive amount, unknown tenor, invalid credit limit"""
    default_code = "VALIDATION_ERROR"
