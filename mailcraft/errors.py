"""Error taxonomy shared by the token manager, transport and send orchestrator.

Each failure kind is its own ``SendError`` subclass with a fixed code, HTTP
status and user-facing text. ``diagnostic`` holds the verbatim (redacted)
cause for the audit record and is never returned to the end user.
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    AUTH_REQUIRED = "AUTH_REQUIRED"
    AUTH_EXPIRED = "AUTH_EXPIRED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    RATE_LIMITED = "RATE_LIMITED"
    TRANSPORT_ERROR = "TRANSPORT_ERROR"


class SendError(Exception):
    code: ErrorCode
    http_status: int
    title: str
    default_details: str

    def __init__(self, diagnostic: str = "", details: str | None = None) -> None:
        self.diagnostic = (diagnostic or self.title).strip()
        self.details = details or self.default_details
        super().__init__(self.diagnostic)


class ValidationError(SendError):
    code = ErrorCode.VALIDATION_ERROR
    http_status = 400
    title = "Invalid send request"
    default_details = "The request is missing required fields."


class AuthRequired(SendError):
    code = ErrorCode.AUTH_REQUIRED
    http_status = 401
    title = "Google account authentication failed"
    default_details = "Please sign in with Google again to send emails."


class AuthExpired(SendError):
    code = ErrorCode.AUTH_EXPIRED
    http_status = 401
    title = "Authentication failed"
    default_details = "Please re-authenticate with Google to send emails."


class PermissionDenied(SendError):
    code = ErrorCode.PERMISSION_DENIED
    http_status = 403
    title = "Permission denied"
    default_details = (
        "Gmail denied access. Sign out and sign back in to grant Gmail send permission."
    )


class RateLimited(SendError):
    code = ErrorCode.RATE_LIMITED
    http_status = 429
    title = "Rate limit exceeded"
    default_details = "Too many emails sent. Please try again later."


class TransportError(SendError):
    code = ErrorCode.TRANSPORT_ERROR
    http_status = 500
    title = "Failed to send email"
    default_details = "Gmail could not send the message. Please try again later."


def classify_provider_failure(status_code: int | None, message: str) -> SendError:
    """Map a failed Gmail call to its taxonomy member.

    ``status_code`` is None when no HTTP response arrived (timeout, connection
    error); that always counts as a transport failure.
    """
    lowered = (message or "").lower()
    if status_code == 401 or "invalid_grant" in lowered:
        return AuthExpired(message)
    # Gmail reports per-user quota exhaustion as 403 with a rateLimitExceeded reason.
    if status_code == 429 or (status_code == 403 and "ratelimitexceeded" in lowered):
        return RateLimited(message)
    if status_code == 403:
        return PermissionDenied(message)
    return TransportError(message)
