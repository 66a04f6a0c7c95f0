"""Error taxonomy shared by services, the Fortnox client and the HTTP layer."""


class DealerbooksError(Exception):
    """Base error with an HTTP status and optional diagnostic details."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None, details: dict | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}


class AuthError(DealerbooksError):
    """Missing, malformed or unknown bearer credential, or mismatched profile."""

    status_code = 401


class NotFoundError(DealerbooksError):
    """Missing local record or integration."""

    status_code = 404


class ValidationError(DealerbooksError):
    """Malformed input or a disallowed state transition."""

    status_code = 400


class UpstreamError(DealerbooksError):
    """Non-2xx response (or transport failure) from the Fortnox API.

    ``upstream_status`` is the HTTP status Fortnox returned, ``body`` the raw
    response text. ``token_expired`` marks failures caused by an invalid
    access token, which callers may answer with a refresh and one retry.
    """

    status_code = 502

    def __init__(
        self,
        message: str,
        upstream_status: int | None = None,
        body: str = "",
        token_expired: bool = False,
        details: dict | None = None,
    ):
        super().__init__(message, details=details)
        self.upstream_status = upstream_status
        self.body = body
        self.token_expired = token_expired


class ReconnectRequired(UpstreamError):
    """The stored refresh token no longer works; the user must reconnect Fortnox."""

    status_code = 401
