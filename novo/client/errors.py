from __future__ import annotations

from typing import Any, Optional


class ClientError(Exception):
    """Base class for failures surfaced by the client library."""

    code: str = "CLIENT_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.status_code = status_code
        self.details = details


class TransientError(ClientError):
    """Network failure, timeout or 5xx. Safe to degrade gracefully on."""

    code = "TRANSIENT"


class RequestRejected(ClientError):
    """The server answered with a definitive 4xx error envelope."""

    code = "REJECTED"


class InvalidCredentials(RequestRejected):
    code = "INVALID_CREDENTIALS"


class ExpiredToken(RequestRejected):
    code = "EXPIRED"


class InvalidSignature(RequestRejected):
    code = "INVALID_SIGNATURE"


class SessionRevoked(RequestRejected):
    code = "SESSION_REVOKED"


class HandshakeError(ClientError):
    """OAuth popup handshake ended without a login."""

    code = "HANDSHAKE_FAILED"


class PopupBlocked(HandshakeError):
    code = "POPUP_BLOCKED"


class UserCancelled(HandshakeError):
    code = "USER_CANCELLED"


class HandshakeTimeout(HandshakeError):
    code = "HANDSHAKE_TIMEOUT"


class HandshakeFailed(HandshakeError):
    code = "HANDSHAKE_FAILED"


_REJECTIONS_BY_CODE = {
    "INVALID_CREDENTIALS": InvalidCredentials,
    "EXPIRED": ExpiredToken,
    "INVALID_SIGNATURE": InvalidSignature,
    "SESSION_REVOKED": SessionRevoked,
}


def rejection_for(
    code: Optional[str], message: str, *, status_code: int, details: Any = None
) -> RequestRejected:
    """Build the client error matching a server error envelope."""
    cls = _REJECTIONS_BY_CODE.get(code or "", RequestRejected)
    return cls(message, code=code or cls.code, status_code=status_code, details=details)


__all__ = [
    "ClientError",
    "TransientError",
    "RequestRejected",
    "InvalidCredentials",
    "ExpiredToken",
    "InvalidSignature",
    "SessionRevoked",
    "HandshakeError",
    "PopupBlocked",
    "UserCancelled",
    "HandshakeTimeout",
    "HandshakeFailed",
    "rejection_for",
]
