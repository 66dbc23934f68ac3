"""
Metering Errors

Every failure a metered request can end in, each carrying the HTTP status it
maps to. Routes let these propagate; server.py renders them with to_dict().
"""
from typing import Optional

from .config import ERROR_MESSAGES


class MeteringError(Exception):
    """Base class for gateway and ledger failures."""

    status_code = 500
    default_message = ERROR_MESSAGES["INTERNAL"]

    def __init__(self, message: Optional[str] = None, details: Optional[str] = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self):
        """Convert to API response format."""
        payload = {"error": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class Unauthenticated(MeteringError):
    status_code = 401
    default_message = ERROR_MESSAGES["UNAUTHENTICATED"]


class InvalidCredential(MeteringError):
    status_code = 401
    default_message = ERROR_MESSAGES["INVALID_API_KEY"]


class InvalidRequest(MeteringError):
    status_code = 400
    default_message = ERROR_MESSAGES["INVALID_MESSAGES"]


class InsufficientFunds(MeteringError):
    """
    Raised when a debit cannot be covered by the balance.

    `required` is omitted for the credential fast path, where no price has been
    computed yet.
    """

    status_code = 402
    default_message = ERROR_MESSAGES["INSUFFICIENT_TOKENS"]

    def __init__(self, available: int, required: Optional[int] = None):
        self.available = available
        self.required = required
        super().__init__()

    def to_dict(self):
        payload = {"error": self.message}
        if self.required is not None:
            payload["required"] = self.required
        payload["available"] = self.available
        return payload


class RateLimited(MeteringError):
    status_code = 429
    default_message = ERROR_MESSAGES["API_KEY_RATE_LIMIT"]


class UpstreamUnavailable(MeteringError):
    status_code = 503
    default_message = ERROR_MESSAGES["UPSTREAM_UNAVAILABLE"]


class SignatureInvalid(MeteringError):
    status_code = 400
    default_message = ERROR_MESSAGES["INVALID_SIGNATURE"]


class NotFound(MeteringError):
    status_code = 404
    default_message = ERROR_MESSAGES["ACCOUNT_NOT_FOUND"]


class Internal(MeteringError):
    status_code = 500
