"""Error taxonomy shared by the ingestion pipeline and the auth subsystem.

Every error carries an HTTP status code and a stable machine-readable
``code``.  ``main.py`` installs one exception handler for the whole
family that renders ``{"error": message, "code": code}``.

The ``message`` is what the caller sees.  Underlying causes (SQL errors,
provider responses) are chained with ``raise ... from`` and logged, never
rendered.
"""

from __future__ import annotations


class LibrecovError(Exception):
    """Base class for errors that map onto a stable HTTP response."""

    status_code: int = 500
    code: str = "internal_error"
    default_message: str = "Internal error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidPayload(LibrecovError):
    status_code = 400
    code = "invalid_payload"
    default_message = "Invalid JSON format"


class InvalidToken(LibrecovError):
    status_code = 401
    code = "invalid_token"
    default_message = "Invalid repo token"


class InvalidIDToken(InvalidToken):
    code = "invalid_id_token"
    default_message = "Failed to verify ID token"


class Unauthorized(LibrecovError):
    status_code = 401
    code = "unauthorized"
    default_message = "Authorization required"


class Forbidden(LibrecovError):
    status_code = 403
    code = "forbidden"
    default_message = "Admin privileges required"


class NotFound(LibrecovError):
    status_code = 404
    code = "not_found"
    default_message = "Not found"


class Conflict(LibrecovError):
    status_code = 409
    code = "conflict"
    default_message = "Conflict"


class Expired(LibrecovError):
    status_code = 401
    code = "expired"
    default_message = "Expired"


class StorageError(LibrecovError):
    status_code = 500
    code = "storage_error"
    default_message = "Internal storage error"


class OIDCDisabled(LibrecovError):
    status_code = 501
    code = "oidc_disabled"
    default_message = "OIDC not configured"


class ExchangeFailed(LibrecovError):
    status_code = 502
    code = "authentication_unavailable"
    default_message = "Authentication unavailable"
