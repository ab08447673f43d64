from __future__ import annotations

from typing import Optional


class SessionGuardError(Exception):
    """Base class for errors raised by the session-security layer.

    Each subclass carries the HTTP status it corresponds to on the identity
    provider side and a stable error_code for callers that branch on it:
    - validation_error (400)
    - verification_failed (401)
    - resend_failed (400)
    - refresh_failed (401)
    - no_pending_session (400)
    - rate_limited (429)
    - api_error (500)
    - transport_error (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(SessionGuardError):
    """Malformed password or OTP input; corrected locally."""
    status_code = 400
    error_code = "validation_error"


class VerificationError(SessionGuardError):
    """Wrong or expired one-time passcode."""
    status_code = 401
    error_code = "verification_failed"


class ResendError(SessionGuardError):
    """The identity provider refused to send a new code."""
    status_code = 400
    error_code = "resend_failed"


class RefreshError(SessionGuardError):
    """Access token could not be refreshed; the session is over."""
    status_code = 401
    error_code = "refresh_failed"


class NoPendingSessionError(SessionGuardError):
    """A 2FA operation was attempted with no challenge outstanding."""
    status_code = 400
    error_code = "no_pending_session"


class RateLimitedError(SessionGuardError):
    """Request refused by the client-side gate or by the server (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str,
        *,
        retry_after_seconds: Optional[int] = None,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.retry_after_seconds = retry_after_seconds


class ApiError(SessionGuardError):
    """Unexpected identity-provider or transport failure."""
    status_code = 500
    error_code = "api_error"


class TransportError(ApiError):
    """The request never produced an HTTP response."""
    status_code = 503
    error_code = "transport_error"


# Status codes where the backend sends meaningful, user-safe messages
PASS_THROUGH_STATUSES = frozenset({400, 403, 409, 422})

SAFE_ERROR_MESSAGES: dict[int, str] = {
    400: "Invalid request. Please check your input.",
    401: "Please log in to continue.",
    403: "You do not have permission to perform this action.",
    404: "The requested resource was not found.",
    409: "This action conflicts with existing data.",
    422: "The provided data is invalid.",
    429: "Too many requests. Please try again later.",
    500: "An unexpected error occurred. Please try again.",
    502: "Service temporarily unavailable.",
    503: "Service temporarily unavailable.",
}

CSRF_EXPIRED_MESSAGE = "Your session has expired. Please refresh the page and try again."


def safe_error_message(
    status: int, original_message: Optional[str] = None, *, development: bool = False
) -> str:
    """Map an HTTP status and backend message to text safe to show a user."""
    if development:
        return original_message or SAFE_ERROR_MESSAGES.get(status) or "An error occurred"

    if status == 403 and original_message and "csrf" in original_message.lower():
        return CSRF_EXPIRED_MESSAGE

    if status in PASS_THROUGH_STATUSES and original_message:
        return original_message

    return SAFE_ERROR_MESSAGES.get(status, "An error occurred")


__all__ = [
    "SessionGuardError",
    "ValidationError",
    "VerificationError",
    "ResendError",
    "RefreshError",
    "NoPendingSessionError",
    "RateLimitedError",
    "ApiError",
    "TransportError",
    "safe_error_message",
]
