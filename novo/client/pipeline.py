"""Composable request middleware around ``httpx.AsyncClient.send``.

A stage receives the outgoing request plus the next handler and returns a
response. :class:`AuthenticatedClient` chains
``retry_on_unauthorized -> attach_credential -> send`` so a replayed request
is stamped again with whatever credential the refresh produced.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Iterable, List, Optional, Sequence

import httpx

from novo.client.errors import ClientError, TransientError
from novo.client.refresh import SessionManager
from novo.client.state import AuthStateStore
from novo.logging import get_logger

logger = get_logger(__name__)

Handler = Callable[[httpx.Request], Awaitable[httpx.Response]]
Middleware = Callable[[httpx.Request, Handler], Awaitable[httpx.Response]]

RETRIED_EXTENSION = "novo.auth_retried"
_REFRESHABLE_403_CODES = frozenset({"INVALID_SIGNATURE", "EXPIRED", "SESSION_REVOKED"})


def is_authorization_failure(response: httpx.Response) -> bool:
    if response.status_code == 401:
        return True
    if response.status_code != 403:
        return False
    try:
        body = response.json()
    except ValueError:
        return True
    error = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error, dict):
        return True
    return error.get("code") in _REFRESHABLE_403_CODES


def attach_credential(store: AuthStateStore) -> Middleware:
    async def _attach(request: httpx.Request, call_next: Handler) -> httpx.Response:
        token = store.access_token
        if token:
            request.headers["Authorization"] = f"Bearer {token}"
        else:
            request.headers.pop("Authorization", None)
        return await call_next(request)

    return _attach


def retry_on_unauthorized(manager: SessionManager) -> Middleware:
    """Refresh and replay a request once after an authorization failure.

    The retried marker lives on the request itself, so concurrent requests
    keep independent retry accounting.
    """

    async def _retry(request: httpx.Request, call_next: Handler) -> httpx.Response:
        response = await call_next(request)
        if not is_authorization_failure(response) or request.extensions.get(RETRIED_EXTENSION):
            return response

        try:
            await manager.refresh()
        except TransientError:
            return response
        except ClientError:
            # The manager has already dropped local state
            return response

        request.extensions[RETRIED_EXTENSION] = True
        logger.debug("request_replayed_after_refresh", url=str(request.url))
        await response.aclose()
        retried = await call_next(request)
        if is_authorization_failure(retried):
            manager.force_logout("retry_rejected")
        return retried

    return _retry


def build_chain(stages: Sequence[Middleware], terminal: Handler) -> Handler:
    handler = terminal
    for stage in reversed(stages):
        handler = _bind(stage, handler)
    return handler


def _bind(stage: Middleware, call_next: Handler) -> Handler:
    async def _handler(request: httpx.Request) -> httpx.Response:
        return await stage(request, call_next)

    return _handler


class AuthenticatedClient:
    """HTTP client for application calls that need the bearer credential."""

    def __init__(
        self,
        manager: SessionManager,
        client: Optional[httpx.AsyncClient] = None,
        *,
        extra_stages: Iterable[Middleware] = (),
    ) -> None:
        self.manager = manager
        self.client = client or manager.api.client
        stages: List[Middleware] = [
            retry_on_unauthorized(manager),
            *extra_stages,
            attach_credential(manager.store),
        ]
        self._handler = build_chain(stages, self.client.send)

    async def send(self, request: httpx.Request) -> httpx.Response:
        return await self._handler(request)

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        return await self.send(self.client.build_request(method, url, **kwargs))

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)
