"""
Error taxonomy shared by the OAuth broker and the secret vault.

Every error carries the HTTP status it maps to and a message that is safe
to show to the caller.  Backend details go to the log, never into
``message``.
"""

from __future__ import annotations

from typing import Optional


class BrokerError(Exception):
    """Base class for all errors surfaced by this service."""

    status_code: int = 500
    default_message: str = "Something went wrong. Please try again."

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(BrokerError):
    status_code = 400
    default_message = "Invalid request."


class AuthenticationFailed(BrokerError):
    status_code = 401
    default_message = "Authentication failed."


class InvalidTransition(AuthenticationFailed):
    """An OAuth flow was asked to move to a state it cannot reach."""


class OriginNotAllowed(BrokerError):
    status_code = 403
    default_message = "Origin not allowed."


class NotFound(BrokerError):
    status_code = 404
    default_message = "Not found."


class PersistenceError(BrokerError):
    status_code = 500
    default_message = "Something went wrong, saving failed!"


class ProviderError(BrokerError):
    """The external provider rejected a request or returned garbage."""

    status_code = 502
    default_message = "An unexpected error occurred. Please try again."

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        upstream_status: Optional[int] = None,
    ) -> None:
        self.upstream_status = upstream_status
        if message is None and upstream_status is not None:
            message = map_status_code_to_message(upstream_status)
        super().__init__(message)


_STATUS_MESSAGES = {
    400: "Bad Request. Please verify your request and try again.",
    401: "Unauthorized. Please ensure you are logged in and have the necessary permissions.",
    403: "Forbidden. Access is denied.",
    404: "Not Found. The requested resource was not found.",
    500: "Internal Server Error. Something went wrong on our end.",
}


def map_status_code_to_message(status_code: int) -> str:
    """Human-readable text for an upstream HTTP status."""
    return _STATUS_MESSAGES.get(
        status_code, "An unexpected error occurred. Please try again."
    )


def summarize_validation_error(exc) -> str:
    """
    One-line text for a pydantic ``ValidationError``.

    Only field locations and messages are kept; submitted values are never
    echoed back.
    """
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        msg = str(err.get("msg", "")).replace("Value error, ", "")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts) or ValidationError.default_message
