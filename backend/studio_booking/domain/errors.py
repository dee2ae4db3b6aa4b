"""Error kinds and result values returned by the booking and payment services.

Business-rule rejections are returned, not raised: every service operation
returns a `Result` carrying either a value or a `ServiceError`. Only hard
faults (the ledger store being unreachable) travel as exceptions.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorCategory(Enum):
    VALIDATION = "validation"
    CONFLICT = "conflict"
    POLICY = "policy"
    NOT_FOUND = "not_found"
    EXTERNAL = "external"


class ErrorKind(Enum):
    """Stable error codes surfaced to callers."""

    # Validation
    VALIDATION = ("VALIDATION", ErrorCategory.VALIDATION)
    # Conflict
    DUPLICATE_BOOKING = ("DUPLICATE_BOOKING", ErrorCategory.CONFLICT)
    SESSION_FULL = ("SESSION_FULL", ErrorCategory.CONFLICT)
    ALREADY_CHECKED_IN = ("ALREADY_CHECKED_IN", ErrorCategory.CONFLICT)
    NOT_CONFIRMED = ("NOT_CONFIRMED", ErrorCategory.CONFLICT)
    NOT_COMPLETED = ("NOT_COMPLETED", ErrorCategory.CONFLICT)
    PURCHASE_NOT_PENDING = ("PURCHASE_NOT_PENDING", ErrorCategory.CONFLICT)
    INSUFFICIENT_BALANCE_FOR_REFUND = ("INSUFFICIENT_BALANCE_FOR_REFUND", ErrorCategory.CONFLICT)
    NOT_REFUNDABLE = ("NOT_REFUNDABLE", ErrorCategory.CONFLICT)
    # Policy
    TOO_LATE_TO_CANCEL = ("TOO_LATE_TO_CANCEL", ErrorCategory.POLICY)
    OUTSIDE_CHECK_IN_WINDOW = ("OUTSIDE_CHECK_IN_WINDOW", ErrorCategory.POLICY)
    SESSION_NOT_ENDED = ("SESSION_NOT_ENDED", ErrorCategory.POLICY)
    SESSION_NOT_BOOKABLE = ("SESSION_NOT_BOOKABLE", ErrorCategory.POLICY)
    NOT_ELIGIBLE = ("NOT_ELIGIBLE", ErrorCategory.POLICY)
    # Not found / access
    NOT_FOUND = ("NOT_FOUND", ErrorCategory.NOT_FOUND)
    ACCESS_DENIED = ("ACCESS_DENIED", ErrorCategory.NOT_FOUND)
    # External dependency
    PROCESSOR_UNAVAILABLE = ("PROCESSOR_UNAVAILABLE", ErrorCategory.EXTERNAL)

    def __init__(self, code: str, category: ErrorCategory) -> None:
        self.code = code
        self.category = category


@dataclass(frozen=True)
class ServiceError:
    """Error kind with a user-safe message."""

    kind: ErrorKind
    message: str

    def __str__(self) -> str:
        return f"{self.kind.code}: {self.message}"


@dataclass(frozen=True)
class Result(Generic[T]):
    value: Optional[T] = None
    error: Optional[ServiceError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> "Result[T]":
        return cls(error=ServiceError(kind=kind, message=message))


class StorageUnavailableError(Exception):
    """The ledger store could not complete a transaction (connectivity, pool exhaustion).

    Callers may retry; nothing from the failed transaction was committed.
    """


class PaymentProcessorError(Exception):
    """The payment processor rejected or could not serve a request."""


class InvalidSignatureError(Exception):
    """A webhook payload failed signature verification."""
