"""Error payload helpers and domain exceptions."""
from typing import Any


def error_response(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    """Return a standardized error payload."""

    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return payload


class PaymentCoreError(Exception):
    """Base class for errors surfaced by the payment core services."""

    code = "PAYMENT_CORE_ERROR"
    status_code = 400

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_payload(self) -> dict[str, Any]:
        return error_response(self.code, self.message, self.details or None)


class InvalidAmount(PaymentCoreError):
    code = "INVALID_AMOUNT"
    status_code = 400


class InvalidStatus(PaymentCoreError):
    code = "INVALID_STATUS"
    status_code = 400


class NotFound(PaymentCoreError):
    code = "NOT_FOUND"
    status_code = 404


class DuplicateOrderCode(PaymentCoreError):
    code = "DUPLICATE_ORDER_CODE"
    status_code = 409


class SessionLimitReached(PaymentCoreError):
    code = "SESSION_LIMIT_REACHED"
    status_code = 429


class SignatureInvalid(PaymentCoreError):
    code = "WEBHOOK_SIGNATURE_INVALID"
    status_code = 401


class RetryExhaustedError(PaymentCoreError):
    """Raised when an outbound operation failed on every allowed attempt."""

    code = "RETRY_EXHAUSTED"
    status_code = 502

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(
            f"Failed after {attempts} attempts: {last_error}",
            details={"attempts": attempts},
        )
        self.attempts = attempts
        self.last_error = last_error


__all__ = [
    "error_response",
    "PaymentCoreError",
    "InvalidAmount",
    "InvalidStatus",
    "NotFound",
    "DuplicateOrderCode",
    "SessionLimitReached",
    "SignatureInvalid",
    "RetryExhaustedError",
]
