from __future__ import annotations
from typing import Optional


class PaymentError(Exception):
    """Base for every error that is rendered as a JSON error response."""

    status_code = 500
    public_message = "Internal error while processing payment"

    def __init__(self, error: Optional[str] = None,
                 details: Optional[str] = None,
                 status_code: Optional[int] = None) -> None:
        self.error = error or self.public_message
        self.details = details
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.error if not details
                         else f"{self.error}: {details}")

    def to_body(self) -> dict:
        body = {"success": False, "error": self.error}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(PaymentError):
    status_code = 400
    public_message = "Invalid data"


class GatewayError(PaymentError):
    status_code = 400
    public_message = "Payment gateway rejected the request"


class ConfigurationError(PaymentError):
    status_code = 500
    public_message = "Payment configuration not found"

    def __init__(self, reason: str) -> None:
        # reason goes to the server log only
        super().__init__()
        self.reason = reason


class AuthenticationError(PaymentError):
    status_code = 401
    public_message = "Unauthorized"


class RateLimitError(PaymentError):
    status_code = 429
    public_message = "Too many requests. Please wait a moment."


class TransientError(PaymentError):
    status_code = 502
    public_message = "Payment gateway is unavailable. Please try again."


class InternalError(PaymentError):
    status_code = 500
