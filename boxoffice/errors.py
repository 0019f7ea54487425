"""Error taxonomy shared by checkout, settlement and the HTTP layer."""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    UNAUTHENTICATED = "unauthenticated"
    INVALID_ARGUMENT = "invalid-argument"
    FAILED_PRECONDITION = "failed-precondition"
    NOT_FOUND = "not-found"
    STOCK_INVARIANT_VIOLATION = "stock-invariant-violation"
    TRANSIENT_STORAGE_FAILURE = "transient-storage-failure"
    SIGNATURE_VERIFICATION_FAILURE = "signature-verification-failure"
    PAYMENT_PROVIDER_ERROR = "payment-provider-error"


class BoxOfficeError(Exception):
    """Base error with a machine-readable kind and a user-safe message."""

    kind: ErrorKind = ErrorKind.INVALID_ARGUMENT
    default_message = "error"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "message": self.message}


class Unauthenticated(BoxOfficeError):
    kind = ErrorKind.UNAUTHENTICATED
    default_message = "login required"


class InvalidArgument(BoxOfficeError):
    kind = ErrorKind.INVALID_ARGUMENT
    default_message = "invalid payload"


class FailedPrecondition(BoxOfficeError):
    kind = ErrorKind.FAILED_PRECONDITION
    default_message = "failed precondition"


class NotFound(BoxOfficeError):
    kind = ErrorKind.NOT_FOUND
    default_message = "not found"


class StockInvariantViolation(BoxOfficeError):
    """Settlement would drive a ticket type's stock below zero.

    Not retryable: the oversell is authoritative and needs manual
    reconciliation (refund).
    """

    kind = ErrorKind.STOCK_INVARIANT_VIOLATION

    def __init__(self, order_id: str, ticket_type_id: str,
                 requested: int, available: Optional[int]) -> None:
        self.order_id = order_id
        self.ticket_type_id = ticket_type_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"order {order_id}: ticket type {ticket_type_id} needs "
            f"{requested}, available {available}"
        )


class TransientStorageFailure(BoxOfficeError):
    kind = ErrorKind.TRANSIENT_STORAGE_FAILURE
    default_message = "storage unavailable"


class SignatureVerificationFailure(BoxOfficeError):
    kind = ErrorKind.SIGNATURE_VERIFICATION_FAILURE
    default_message = "Invalid signature"


class PaymentProviderError(BoxOfficeError):
    kind = ErrorKind.PAYMENT_PROVIDER_ERROR
    default_message = "payment provider unavailable"
