"""Error taxonomy for the job sync layer.

Every failure the backend or transport can produce is mapped to one of
these types. Expected failures travel as ``Err`` values (see
``jobsync.core.result``); they are only raised by the HTTP client and by
``Result.unwrap()``.
"""

from typing import Any


class SyncError(Exception):
    """Base class for all sync layer errors.

    Attributes:
        message: Human readable description.
        status_code: HTTP status when the error came from a response.
        last_value: Last successfully cached value for the affected key,
            attached when the error is surfaced to subscribers or callers.
    """

    transient = False

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.message = message
        self.status_code = status_code
        self.last_value: Any = None
        super().__init__(message)


class NetworkError(SyncError):
    """No response reached the server (connect/read failure, timeout)."""

    transient = True


class AuthError(SyncError):
    """Credentials rejected (401)."""


class ForbiddenError(SyncError):
    """Insufficient permissions (403)."""


class NotFoundError(SyncError):
    """Resource does not exist (404)."""


class ValidationError(SyncError):
    """Request rejected with field-level messages (400/422)."""

    def __init__(
        self,
        message: str,
        status_code: int | None = 422,
        field_errors: dict[str, list[str]] | None = None,
    ) -> None:
        super().__init__(message, status_code)
        self.field_errors = field_errors or {}


class ServerError(SyncError):
    """Backend failure (5xx) or a malformed response payload."""

    transient = True


class StreamError(SyncError):
    """Push connection failure."""

    transient = True


class PollingTimeoutError(SyncError):
    """Polling exhausted its attempts before reaching a terminal status."""

    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


def error_message_from_payload(payload: Any, default: str) -> str:
    """Extract the most specific message from a structured error payload.

    Checks ``detail``, ``message``, ``non_field_errors`` and finally the
    first entry of ``errors``.
    """
    if not isinstance(payload, dict):
        return default
    for field in ("detail", "message"):
        value = payload.get(field)
        if isinstance(value, str) and value:
            return value
    non_field = payload.get("non_field_errors")
    if isinstance(non_field, list) and non_field:
        return str(non_field[0])
    errors = payload.get("errors")
    if isinstance(errors, dict):
        for messages in errors.values():
            if isinstance(messages, list) and messages:
                return str(messages[0])
    return default


def field_errors_from_payload(payload: Any) -> dict[str, list[str]]:
    """Collect field-level messages from a validation payload.

    Accepts both ``{"errors": {...}}`` envelopes and bare
    ``{"field": ["msg"]}`` bodies.
    """
    if not isinstance(payload, dict):
        return {}
    source = payload.get("errors")
    if not isinstance(source, dict):
        source = {
            name: value
            for name, value in payload.items()
            if name not in ("detail", "message")
        }
    field_errors: dict[str, list[str]] = {}
    for name, value in source.items():
        if isinstance(value, list):
            field_errors[name] = [str(item) for item in value]
        elif isinstance(value, str):
            field_errors[name] = [value]
    return field_errors


def error_for_status(
    status_code: int, payload: Any = None, *, default_message: str | None = None
) -> SyncError:
    """Build the taxonomy error for an HTTP error response.

    Args:
        status_code: Response status code (>= 400).
        payload: Decoded JSON body, if any.
        default_message: Fallback when the payload carries no message.

    Returns:
        The matching SyncError subclass instance.
    """
    message = error_message_from_payload(
        payload, default_message or f"Request failed with status {status_code}"
    )
    if status_code == 401:
        return AuthError(message, status_code)
    if status_code == 403:
        return ForbiddenError(message, status_code)
    if status_code == 404:
        return NotFoundError(message, status_code)
    if status_code in (400, 422):
        return ValidationError(
            message, status_code, field_errors_from_payload(payload)
        )
    if status_code >= 500:
        return ServerError(message, status_code)
    return SyncError(message, status_code)


__all__ = [
    "SyncError",
    "NetworkError",
    "AuthError",
    "ForbiddenError",
    "NotFoundError",
    "ValidationError",
    "ServerError",
    "StreamError",
    "PollingTimeoutError",
    "error_for_status",
    "error_message_from_payload",
    "field_errors_from_payload",
]
