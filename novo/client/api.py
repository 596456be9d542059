from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from novo.client.config import ClientSettings
from novo.client.errors import TransientError, rejection_for
from novo.client.state import AuthState
from novo.logging import get_logger

logger = get_logger(__name__)


def _bearer(access_token: Optional[str]) -> Dict[str, str]:
    return {"Authorization": f"Bearer {access_token}"} if access_token else {}


def raise_for_envelope(response: httpx.Response) -> None:
    """Translate a failed response into the matching client error."""
    if response.status_code < 400:
        return
    if response.status_code >= 500:
        raise TransientError(
            f"server error {response.status_code}", status_code=response.status_code
        )
    try:
        body = response.json()
    except ValueError:
        body = None
    error = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error, dict):
        error = {}
    raise rejection_for(
        error.get("code"),
        error.get("message") or f"request failed with {response.status_code}",
        status_code=response.status_code,
        details=error.get("details"),
    )


class AuthApi:
    """Thin async wrapper over the auth endpoints.

    One ``httpx.AsyncClient`` is shared by every call so its cookie jar keeps
    the refresh cookie between login and refresh.
    """

    def __init__(
        self,
        settings: Optional[ClientSettings] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or ClientSettings.from_env()
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            base_url=self.settings.api_base_url,
            timeout=self.settings.request_timeout_seconds,
            transport=transport,
        )

    async def _call(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.TransportError as exc:
            logger.warning("auth_api_unreachable", path=path, error=str(exc))
            raise TransientError(f"could not reach auth server: {exc}") from exc
        raise_for_envelope(response)
        try:
            body = response.json()
        except ValueError as exc:
            logger.warning("auth_api_non_json_response", path=path, status_code=response.status_code)
            raise TransientError("malformed auth response", status_code=response.status_code) from exc
        return body.get("data") if isinstance(body, dict) else None

    @staticmethod
    def _auth_state(data: Any) -> AuthState:
        if not isinstance(data, dict):
            raise TransientError("malformed auth response")
        state = AuthState.from_dict(
            {"account": data.get("user"), "access_token": data.get("access_token")}
        )
        if state is None:
            raise TransientError("malformed auth response")
        return state

    async def register(self, email: str, name: str, password: str) -> Dict[str, Any]:
        return await self._call(
            "POST", "/auth/register", json={"email": email, "name": name, "password": password}
        )

    async def login(self, email: str, password: str) -> AuthState:
        data = await self._call(
            "POST", "/auth/login", json={"email": email, "password": password}
        )
        return self._auth_state(data)

    async def refresh(self) -> AuthState:
        data = await self._call("POST", "/auth/refresh-token")
        return self._auth_state(data)

    async def logout(self, email: str, access_token: Optional[str] = None) -> None:
        await self._call(
            "POST", "/auth/logout", json={"email": email}, headers=_bearer(access_token)
        )

    async def me(self, access_token: str) -> Dict[str, Any]:
        return await self._call("GET", "/users/me", headers=_bearer(access_token))

    async def pickup_oauth_result(self, state: str) -> AuthState:
        data = await self._call("GET", "/auth/oauth-state", params={"state": state})
        if not isinstance(data, dict):
            raise TransientError("malformed auth response")
        return self._auth_state({"user": data.get("user"), "access_token": data.get("accessToken")})

    def provider_login_url(self, provider: str) -> str:
        return f"{self.settings.api_base_url}/auth/{provider}"

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()
