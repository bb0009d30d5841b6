from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on. Messages are deliberately coarse: they never
    say whether a login identifier exists or which ledger check rejected a
    refresh token.
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown identifier or wrong secret; the two are never told apart."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountInactiveError(ServiceError):
    status_code = 403
    error_code = "account_inactive"

    def __init__(self, message: str = "account inactive", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidRefreshTokenError(AuthenticationError):
    """Missing, forged, malformed, or unknown refresh token."""
    error_code = "invalid_refresh_token"

    def __init__(self, message: str = "invalid refresh token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RefreshTokenRevokedError(AuthenticationError):
    """Presented refresh token was already used or revoked.

    This is the replay signal; callers may use it to invalidate the
    user's other sessions.
    """
    error_code = "refresh_token_revoked"

    def __init__(self, message: str = "refresh token revoked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RefreshTokenExpiredError(AuthenticationError):
    error_code = "refresh_token_expired"

    def __init__(self, message: str = "refresh token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class UserUnavailableError(AuthenticationError):
    """Owner of a refresh token no longer exists or was deactivated."""
    error_code = "user_unavailable"

    def __init__(self, message: str = "user unavailable", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ConflictError(ServiceError):
    """Resource conflict, e.g. a token id collision on create (409)."""
    status_code = 409
    error_code = "conflict"


class UpstreamUnavailableError(ServiceError):
    """Credential store or ledger failed or timed out (503). Safe to retry with backoff."""
    status_code = 503
    error_code = "upstream_unavailable"

    def __init__(self, message: str = "upstream unavailable", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "AccountInactiveError",
    "InvalidRefreshTokenError",
    "RefreshTokenRevokedError",
    "RefreshTokenExpiredError",
    "UserUnavailableError",
    "ConflictError",
    "UpstreamUnavailableError",
]
