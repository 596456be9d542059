from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Union
from urllib.parse import urlencode

import httpx

from novo.config import Settings
from novo.logging import get_logger
from novo.service.errors import NotFoundError, OAuthError
from novo.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

OAUTH_PROVIDERS: Dict[str, Dict[str, str]] = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "emails_url": "https://api.github.com/user/emails",
        "scope": "read:user user:email",
    },
}

Cache = Union[RedisCache, SyncRedisCache]


@dataclass(frozen=True)
class OAuthIdentity:
    provider: str
    provider_uid: str
    email: str
    name: str


def parse_userinfo(provider: str, userinfo: dict) -> dict:
    """Normalize a provider's userinfo document."""
    if provider == "google":
        return {
            "provider_uid": userinfo.get("id") or userinfo.get("sub"),
            "email": userinfo.get("email"),
            "name": userinfo.get("name"),
        }
    if provider == "github":
        uid = userinfo.get("id")
        return {
            "provider_uid": str(uid) if uid is not None else None,
            "email": userinfo.get("email"),
            "name": userinfo.get("name") or userinfo.get("login"),
        }
    return {"provider_uid": userinfo.get("id") or userinfo.get("sub")}


def _identity_from(provider: str, payload: dict) -> OAuthIdentity:
    uid = payload.get("provider_uid")
    email = payload.get("email")
    if not uid:
        raise OAuthError(f"{provider} did not return an account id")
    if not email:
        raise OAuthError(f"{provider} did not return an email address")
    email = str(email).strip().lower()
    name = (payload.get("name") or "").strip() or email.split("@")[0]
    return OAuthIdentity(provider=provider, provider_uid=str(uid), email=email, name=name)


class _ExpiringRecords:
    """Process-local one-time records used when Redis is unavailable."""

    def __init__(self, now: Callable[[], datetime]) -> None:
        self._now = now
        self._lock = threading.Lock()
        self._records: Dict[str, tuple[Dict[str, Any], datetime]] = {}

    def put(self, key: str, payload: Dict[str, Any], ttl_seconds: int) -> None:
        with self._lock:
            self._sweep()
            self._records[key] = (payload, self._now() + timedelta(seconds=ttl_seconds))

    def pop(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._records.pop(key, None)
        if entry is None:
            return None
        payload, expires_at = entry
        if expires_at <= self._now():
            return None
        return payload

    def _sweep(self) -> None:
        now = self._now()
        for key in [k for k, (_, exp) in self._records.items() if exp <= now]:
            self._records.pop(key, None)


class OAuthService:
    """Provider consent URLs, one-time state, code exchange and popup hand-off."""

    def __init__(
        self,
        settings: Settings,
        cache: Optional[Cache] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self.transport = transport
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._states = _ExpiringRecords(self._now)
        self._handoffs = _ExpiringRecords(self._now)
        self._code_registry: Dict[tuple[str, str], dict] = {}
        self._registry_lock = threading.Lock()

    def _credentials(self, provider: str) -> tuple[Optional[str], Optional[str]]:
        if provider == "google":
            return self.settings.oauth_google_client_id, self.settings.oauth_google_client_secret
        if provider == "github":
            return self.settings.oauth_github_client_id, self.settings.oauth_github_client_secret
        return None, None

    def is_configured(self, provider: str) -> bool:
        if provider not in OAUTH_PROVIDERS:
            return False
        client_id, client_secret = self._credentials(provider)
        return bool(client_id and client_secret)

    def redirect_uri(self, provider: str) -> str:
        return f"{self.settings.oauth_redirect_base_url}/auth/{provider}/callback"

    @property
    def _state_ttl(self) -> int:
        return self.settings.oauth_state_ttl_minutes * 60

    @property
    def _handoff_ttl(self) -> int:
        return self.settings.oauth_handoff_ttl_minutes * 60

    async def authorization_url(self, provider: str) -> str:
        """Mint a one-time state and build the provider consent URL."""
        if not self.is_configured(provider):
            logger.warning("oauth_not_configured", provider=provider)
            raise NotFoundError(f"OAuth provider {provider} is not available")

        state = secrets.token_urlsafe(32)
        if self.cache:
            await self.cache.set_oauth_state(state, provider, self._state_ttl)
        else:
            self._states.put(state, {"provider": provider}, self._state_ttl)

        client_id, _ = self._credentials(provider)
        config = OAUTH_PROVIDERS[provider]
        params = {
            "client_id": client_id,
            "redirect_uri": self.redirect_uri(provider),
            "response_type": "code",
            "scope": config["scope"],
            "state": state,
        }
        if provider == "google":
            params["prompt"] = "select_account"
        return f"{config['auth_url']}?{urlencode(params)}"

    async def consume_state(self, provider: str, state: str) -> None:
        """Validate and burn ``state``; it can never be used twice."""
        if not state:
            raise OAuthError("missing OAuth state")
        if self.cache:
            stored_provider = await self.cache.pop_oauth_state(state)
        else:
            record = self._states.pop(state)
            stored_provider = record.get("provider") if record else None
        if stored_provider != provider:
            logger.warning("oauth_state_rejected", provider=provider)
            raise OAuthError("invalid or expired OAuth state")

    def register_oauth_code(self, provider: str, code: str, payload: dict) -> None:
        """Record a provider identity for ``code`` so tests skip the network exchange."""
        with self._registry_lock:
            self._code_registry[(provider, code)] = payload

    async def _registered_payload(self, provider: str, code: str) -> Optional[dict]:
        if self.cache:
            cached = await self.cache.pop_oauth_code(provider, code)
            if cached:
                return cached
        with self._registry_lock:
            return self._code_registry.pop((provider, code), None)

    async def exchange_code(self, provider: str, code: str) -> OAuthIdentity:
        """Trade an authorization code for the provider's view of the user."""
        if not code:
            raise OAuthError("missing authorization code")
        registered = await self._registered_payload(provider, code)
        if registered:
            return _identity_from(provider, registered)

        if not self.is_configured(provider):
            raise NotFoundError(f"OAuth provider {provider} is not available")
        client_id, client_secret = self._credentials(provider)
        config = OAUTH_PROVIDERS[provider]

        try:
            async with httpx.AsyncClient(
                timeout=30.0, follow_redirects=False, transport=self.transport
            ) as client:
                token_response = await client.post(
                    config["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": self.redirect_uri(provider),
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider=provider)
                    raise OAuthError(f"{provider} did not issue an access token")

                headers = {"Authorization": f"Bearer {access_token}"}
                if provider == "github":
                    headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await client.get(config["userinfo_url"], headers=headers)
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    raise OAuthError(f"{provider} returned an unexpected profile")
                identity = parse_userinfo(provider, userinfo)

                # GitHub omits private emails from /user
                if provider == "github" and not identity.get("email"):
                    emails_response = await client.get(config["emails_url"], headers=headers)
                    if emails_response.status_code == 200:
                        emails = emails_response.json()
                        identity["email"] = next(
                            (
                                e.get("email")
                                for e in emails
                                if isinstance(e, dict) and e.get("primary") and e.get("verified")
                            ),
                            None,
                        )
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_failed",
                provider=provider,
                status_code=exc.response.status_code,
            )
            raise OAuthError(f"{provider} rejected the authorization code") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_exchange_failed", provider=provider, error=str(exc))
            raise OAuthError(f"could not reach {provider}") from exc

        result = _identity_from(provider, identity)
        logger.info("oauth_exchange_success", provider=provider, provider_uid=result.provider_uid)
        return result

    async def store_handoff(self, payload: Dict[str, Any]) -> str:
        """Keep a login result briefly so a redirecting callback page can fetch it once."""
        token = secrets.token_urlsafe(32)
        if self.cache:
            await self.cache.set_oauth_handoff(token, payload, self._handoff_ttl)
        else:
            self._handoffs.put(token, payload, self._handoff_ttl)
        return token

    async def pop_handoff(self, token: str) -> Optional[Dict[str, Any]]:
        if not token:
            return None
        if self.cache:
            return await self.cache.pop_oauth_handoff(token)
        return self._handoffs.pop(token)
