"""
Error Taxonomy Module

Typed, recoverable failures raised by the ledger components and the
discriminated result returned across the facade boundary.
"""

from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar


T = TypeVar("T")


class LedgerError(Exception):
    """Base class for every expected business failure in the engine"""
    code = "ledger_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(LedgerError):
    """Malformed or out-of-range input, rejected before any state change"""
    code = "validation_error"


class CurrencyMismatchError(ValidationError):
    """Arithmetic or comparison across two currencies"""
    code = "currency_mismatch"


class DuplicateError(ValidationError):
    """An entity with the same identity already exists"""
    code = "duplicate"


class InvalidStateError(LedgerError):
    """Operation is not legal for the entity's current lifecycle state"""
    code = "invalid_state"


class OverpaymentError(LedgerError):
    """Payment exceeds the loan's outstanding balance"""
    code = "overpayment"


class InsufficientFundsError(LedgerError):
    """Debit would drive a bank account below zero"""
    code = "insufficient_funds"


class NotFoundError(LedgerError):
    """Unknown loan, account, or transaction id"""
    code = "not_found"


class NegativeResultError(LedgerError):
    """Subtraction would produce a negative amount where that is disallowed"""
    code = "negative_result"


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """
    Success/failure result of a facade operation.
    Exactly one of value or error is meaningful, selected by ok.
    """
    ok: bool
    value: Optional[T] = None
    error: Optional[LedgerError] = None

    @classmethod
    def success(cls, value: T) -> "OperationResult[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: LedgerError) -> "OperationResult[T]":
        return cls(ok=False, error=error)

    @property
    def error_code(self) -> Optional[str]:
        return self.error.code if self.error else None

    def unwrap(self) -> T:
        """Return the value or raise the carried error"""
        if not self.ok:
            raise self.error
        return self.value

    def to_dict(self) -> dict:
        result: dict = {"ok": self.ok}
        if self.ok:
            value: Any = self.value
            result["value"] = value.to_dict() if hasattr(value, "to_dict") else value
        else:
            result["error"] = self.error.to_dict()
        return result
