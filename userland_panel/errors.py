"""
Error taxonomy for the gateway.

Every error raised at an HTTP boundary is a GatewayError carrying the
status code it should be rendered with. The app installs one exception
handler that turns these into ``{"error": message}`` JSON responses.
"""


class GatewayError(Exception):
    """Base class for errors that map to an HTTP status."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class AuthError(GatewayError):
    """Bad credentials or a missing, unknown, expired or revoked token."""
    status_code = 401

    def __init__(self, message: str = "Unauthorized", status_code: int | None = None):
        super().__init__(message, status_code)


class ForbiddenError(AuthError):
    """A valid token of the wrong class (e.g. a session token on the proxy path)."""
    status_code = 403

    def __init__(self, message: str = "Forbidden", status_code: int | None = None):
        super().__init__(message, status_code)


class RateLimitError(GatewayError):
    status_code = 429


class ValidationError(GatewayError):
    """Missing or malformed request fields."""
    status_code = 400


class ConflictError(ValidationError):
    status_code = 409


class NotFoundError(GatewayError):
    status_code = 404


class UpstreamError(GatewayError):
    """A backend, collector or controller was unreachable or failed."""
    status_code = 502


class InternalError(GatewayError):
    """Anything unexpected. Details are logged, never sent to the client."""
    status_code = 500

    def __init__(self, message: str = "Internal server error", status_code: int | None = None):
        super().__init__(message, status_code)
