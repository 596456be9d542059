from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable, machine-readable
    ``error_code``. Clients branch on the code, never on the message.
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"

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


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "VALIDATION_ERROR"


class FederatedAccountError(ValidationError):
    """Password login attempted on an account that only has a provider login (400)."""
    error_code = "FEDERATED_ACCOUNT"


class OAuthError(ValidationError):
    """OAuth state or code exchange could not be completed (400)."""
    error_code = "OAUTH_FAILED"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "UNAUTHORIZED"


class InvalidCredentialsError(AuthenticationError):
    error_code = "INVALID_CREDENTIALS"


class ExpiredTokenError(AuthenticationError):
    """Credential signature is valid but its expiry has passed (401)."""
    error_code = "EXPIRED"


class NoRefreshTokenError(AuthenticationError):
    error_code = "NO_REFRESH_TOKEN"


class InvalidRefreshTokenError(AuthenticationError):
    """Refresh cookie is malformed or its signature does not verify (401)."""
    error_code = "INVALID_REFRESH_TOKEN"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "FORBIDDEN"


class InvalidSignatureError(ForbiddenError):
    """Access credential is malformed or its signature does not verify (403)."""
    error_code = "INVALID_SIGNATURE"


class SessionRevokedError(ForbiddenError):
    """Refresh credential no longer matches the account's session slot (403)."""
    error_code = "SESSION_REVOKED"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "NOT_FOUND"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate registration (409)."""
    status_code = 409
    error_code = "CONFLICT"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "RATE_LIMITED"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "SERVER_ERROR"


__all__ = [
    "ServiceError",
    "ValidationError",
    "FederatedAccountError",
    "OAuthError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "ExpiredTokenError",
    "NoRefreshTokenError",
    "InvalidRefreshTokenError",
    "ForbiddenError",
    "InvalidSignatureError",
    "SessionRevokedError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
