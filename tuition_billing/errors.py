"""
Domain errors raised by the billing engine.

Single-entity operations raise these directly; bulk operations catch them per
item and report ``error_message(exc)`` instead.
"""
from typing import Any

GENERIC_ERROR_MESSAGE = "Unknown error occurred"

# Known Stripe error codes -> operator-facing messages
GATEWAY_ERROR_MESSAGES = {
    "payment_intent_unexpected_state": "This bank account has already been verified",
    "incorrect_code": "Incorrect verification code. Please check the code in the bank statement and try again",
    "resource_missing": "Resource not found in Stripe. It may have been deleted or expired",
}


class BillingError(Exception):
    status_code = 500
    error_key = "billing_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.error_key, "message": self.message}


class ValidationError(BillingError):
    status_code = 400
    error_key = "validation_error"


class NotFoundError(BillingError):
    status_code = 404
    error_key = "not_found"


class ConflictError(BillingError):
    status_code = 409
    error_key = "conflict"


class GatewayError(BillingError):
    status_code = 502
    error_key = "gateway_error"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code

    @classmethod
    def from_stripe(cls, exc: Exception) -> "GatewayError":
        """Wrap a ``stripe.StripeError``; known codes get a fixed message."""
        code = getattr(exc, "code", None)
        if code in GATEWAY_ERROR_MESSAGES:
            return cls(GATEWAY_ERROR_MESSAGES[code], code=code)
        message = getattr(exc, "user_message", None) or str(exc) or "Stripe request failed"
        return cls(message, code=code)

    def to_dict(self) -> dict:
        payload = super().to_dict()
        if self.code:
            payload["code"] = self.code
        return payload


def error_message(err: Any) -> str:
    """Message for a caught error; plain values are stringified."""
    if isinstance(err, BaseException):
        return str(err) or GENERIC_ERROR_MESSAGE
    if isinstance(err, str):
        return err
    return GENERIC_ERROR_MESSAGE
