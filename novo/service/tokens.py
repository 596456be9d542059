from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from novo.config import Settings
from novo.logging import get_logger
from novo.service.errors import (
    ExpiredTokenError,
    InvalidRefreshTokenError,
    InvalidSignatureError,
    NotFoundError,
    SessionRevokedError,
)
from novo.service.sessions import CredentialStore

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


class TokenDecodeError(Exception):
    """Token is malformed, signed with another key, or has the wrong claims."""


class TokenExpired(TokenDecodeError):
    """Token verified but its ``exp`` has passed."""


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class JWTCodec:
    """HS256 compact JWS bound to one secret, issuer and audience."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._key = secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds
        self.clock = clock

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode("utf-8"), hashlib.sha256).digest()
        return _encode_segment(digest)

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str, *, token_type: str) -> dict[str, Any]:
        """Return verified claims or raise :class:`TokenDecodeError`.

        Signature and claims are checked before expiry, so an expired token
        is only reported as expired when it was genuinely issued by us.
        """
        if not isinstance(token, str):
            raise TokenDecodeError("token must be a string")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenDecodeError("token is not a compact JWS") from None

        try:
            header = json.loads(_decode_segment(header_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError):
            raise TokenDecodeError("header is not valid JSON") from None
        # Pin the algorithm so a crafted header cannot downgrade verification
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            raise TokenDecodeError("unsupported algorithm")

        expected = self._sign(f"{header_b64}.{payload_b64}").encode("ascii")
        # Bytes comparison; str compare_digest rejects non-ASCII input with TypeError
        if not hmac.compare_digest(expected, sig_b64.encode("utf-8", "surrogateescape")):
            raise TokenDecodeError("signature mismatch")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError):
            raise TokenDecodeError("payload is not valid JSON") from None
        if not isinstance(payload, dict):
            raise TokenDecodeError("payload is not an object")
        if payload.get("iss") != self.issuer:
            raise TokenDecodeError("issuer mismatch")
        aud = payload.get("aud")
        if not (aud == self.audience or (isinstance(aud, list) and self.audience in aud)):
            raise TokenDecodeError("audience mismatch")
        if payload.get("token_type") != token_type:
            raise TokenDecodeError("wrong token type")
        if not isinstance(payload.get("sub"), str) or not payload["sub"]:
            raise TokenDecodeError("missing subject")

        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenDecodeError("missing expiry") from None
        if exp_ts <= self.clock() - self.leeway_seconds:
            raise TokenExpired("token expired")
        return payload


@dataclass(frozen=True)
class IssuedSession:
    account_id: str
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


@dataclass(frozen=True)
class RefreshClaims:
    account_id: str
    session_id: str
    expires_at: datetime


def _from_ts(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


class TokenIssuer:
    """Mints access and refresh credentials.

    Access and refresh credentials are signed with different secrets.
    """

    def __init__(
        self,
        settings: Settings,
        credentials: CredentialStore,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.credentials = credentials
        self.clock = clock
        self._access = JWTCodec(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            leeway_seconds=settings.clock_skew_seconds,
            clock=clock,
        )
        self._refresh = JWTCodec(
            settings.jwt_refresh_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            leeway_seconds=settings.clock_skew_seconds,
            clock=clock,
        )

    @property
    def access_ttl_seconds(self) -> int:
        return self.settings.access_token_ttl_minutes * 60

    @property
    def refresh_ttl_seconds(self) -> int:
        return self.settings.refresh_token_ttl_days * 24 * 60 * 60

    def _claims(self, account_id: str, token_type: str, ttl_seconds: int) -> dict[str, Any]:
        now = int(self.clock())
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": account_id,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + ttl_seconds,
        }

    def issue_access(self, account_id: str) -> tuple[str, datetime]:
        claims = self._claims(account_id, ACCESS, self.access_ttl_seconds)
        return self._access.encode(claims), _from_ts(claims["exp"])

    def issue_session(self, account_id: str) -> IssuedSession:
        """Start a new refresh session for ``account_id``.

        Overwrites the account's session slot, so every refresh credential
        issued earlier for this account stops verifying.
        """
        session_id = secrets.token_urlsafe(32)
        if self.credentials.set_session(account_id, session_id) is None:
            raise NotFoundError("account not found")
        access_token, access_exp = self.issue_access(account_id)
        claims = self._claims(account_id, REFRESH, self.refresh_ttl_seconds)
        claims["sid"] = session_id
        refresh_token = self._refresh.encode(claims)
        logger.info("session_issued", account_id=account_id)
        return IssuedSession(
            account_id=account_id,
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_exp,
            refresh_expires_at=_from_ts(claims["exp"]),
        )


class SessionVerifier:
    """Validates inbound credentials.

    Access credentials are checked by signature and expiry only. Refresh
    credentials additionally have to match the account's session slot.
    """

    def __init__(
        self,
        settings: Settings,
        credentials: CredentialStore,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.credentials = credentials
        self._access = JWTCodec(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            leeway_seconds=settings.clock_skew_seconds,
            clock=clock,
        )
        self._refresh = JWTCodec(
            settings.jwt_refresh_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            leeway_seconds=settings.clock_skew_seconds,
            clock=clock,
        )

    def verify_access(self, token: str) -> str:
        try:
            payload = self._access.decode(token, token_type=ACCESS)
        except TokenExpired:
            raise ExpiredTokenError("access token expired") from None
        except TokenDecodeError as exc:
            logger.info("access_token_rejected", reason=str(exc))
            raise InvalidSignatureError("invalid access token") from None
        return payload["sub"]

    def verify_refresh(self, token: str) -> RefreshClaims:
        try:
            payload = self._refresh.decode(token, token_type=REFRESH)
        except TokenExpired:
            raise ExpiredTokenError("refresh token expired") from None
        except TokenDecodeError as exc:
            logger.info("refresh_rejected", reason=str(exc))
            raise InvalidRefreshTokenError("invalid refresh token") from None
        session_id = payload.get("sid")
        if not isinstance(session_id, str) or not session_id:
            raise InvalidRefreshTokenError("invalid refresh token")
        account_id = payload["sub"]
        if not self.credentials.check_session(account_id, session_id):
            logger.info("refresh_rejected", reason="session_revoked", account_id=account_id)
            raise SessionRevokedError("session has been revoked")
        return RefreshClaims(
            account_id=account_id,
            session_id=session_id,
            expires_at=_from_ts(float(payload["exp"])),
        )
