"""OAuth popup handshake.

The opener opens a popup on the provider login URL and waits for the callback
page to post ``{success, accessToken, user, error}`` back. The handshake is a
small state machine::

    OPENED -> AWAITING_MESSAGE -> RESOLVED | FAILED | CANCELLED | TIMED_OUT

Every terminal transition goes through :meth:`PopupHandshake._finish`, which
removes the message listener, stops the closed-popup poll and the timeout,
and closes the popup if it is still open.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Protocol

from novo.client.errors import (
    HandshakeError,
    HandshakeFailed,
    HandshakeTimeout,
    PopupBlocked,
    UserCancelled,
)
from novo.client.state import AuthState
from novo.logging import get_logger

logger = get_logger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 1.0
DEFAULT_TIMEOUT_SECONDS = 300.0
POPUP_FEATURES = "width=500,height=600"


@dataclass(frozen=True)
class MessageEvent:
    data: Any
    origin: str


MessageListener = Callable[[MessageEvent], None]


class PopupWindow(Protocol):
    @property
    def closed(self) -> bool: ...

    def close(self) -> None: ...


class OpenerWindow(Protocol):
    def open_popup(self, url: str, name: str, features: str) -> Optional[PopupWindow]: ...

    def add_message_listener(self, listener: MessageListener) -> None: ...

    def remove_message_listener(self, listener: MessageListener) -> None: ...


class HandshakeState(str, Enum):
    NEW = "new"
    OPENED = "opened"
    AWAITING_MESSAGE = "awaiting_message"
    RESOLVED = "resolved"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    BLOCKED = "blocked"


_TERMINAL = frozenset(
    {
        HandshakeState.RESOLVED,
        HandshakeState.FAILED,
        HandshakeState.CANCELLED,
        HandshakeState.TIMED_OUT,
        HandshakeState.BLOCKED,
    }
)


class PopupHandshake:
    """One login attempt through a provider popup. Not reusable."""

    def __init__(
        self,
        opener: OpenerWindow,
        url: str,
        *,
        provider: str = "oauth",
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        allowed_origins: Optional[Iterable[str]] = None,
    ) -> None:
        self.opener = opener
        self.url = url
        self.provider = provider
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.allowed_origins = (
            frozenset(o.rstrip("/") for o in allowed_origins) if allowed_origins is not None else None
        )
        self.state = HandshakeState.NEW
        self.popup: Optional[PopupWindow] = None
        self._future: Optional[asyncio.Future] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._timeout_handle: Optional[asyncio.TimerHandle] = None
        self._listening = False

    @property
    def done(self) -> bool:
        return self.state in _TERMINAL

    async def run(self) -> AuthState:
        """Open the popup and wait for the first terminal outcome.

        Returns the login result; raises a :class:`HandshakeError` subclass otherwise.
        """
        if self.state is not HandshakeState.NEW:
            raise RuntimeError("handshake already started")
        popup = self.opener.open_popup(self.url, f"{self.provider}_login", POPUP_FEATURES)
        if popup is None or popup.closed:
            self.state = HandshakeState.BLOCKED
            logger.warning("popup_blocked", provider=self.provider)
            raise PopupBlocked("popup was blocked; allow popups for this site and retry")
        self.popup = popup
        self.state = HandshakeState.OPENED

        loop = asyncio.get_running_loop()
        self._future = loop.create_future()
        self.opener.add_message_listener(self._on_message)
        self._listening = True
        self._poll_task = asyncio.create_task(self._poll_closed())
        self._timeout_handle = loop.call_later(self.timeout, self._on_timeout)
        self.state = HandshakeState.AWAITING_MESSAGE

        try:
            return await self._future
        finally:
            # Also runs when the caller cancels the wait
            if not self.done:
                self.state = HandshakeState.CANCELLED
            self._finish()

    def _on_message(self, event: MessageEvent) -> None:
        if self.done:
            logger.debug("popup_message_after_resolution", provider=self.provider)
            return
        if self.allowed_origins is not None and event.origin.rstrip("/") not in self.allowed_origins:
            logger.warning("popup_message_rejected_origin", origin=event.origin)
            return
        data = event.data if isinstance(event.data, dict) else {}
        if data.get("success") is True:
            state = AuthState.from_dict(
                {"account": data.get("user"), "access_token": data.get("accessToken")}
            )
            if state is not None:
                self._resolve(HandshakeState.RESOLVED, result=state)
                return
        error = data.get("error") if isinstance(data.get("error"), str) else None
        self._resolve(
            HandshakeState.FAILED,
            error=HandshakeFailed(error or "authentication failed", code=data.get("code")),
        )

    async def _poll_closed(self) -> None:
        while not self.done:
            await asyncio.sleep(self.poll_interval)
            if self.done:
                return
            if self.popup is not None and self.popup.closed:
                self._resolve(
                    HandshakeState.CANCELLED,
                    error=UserCancelled("login window was closed before completing"),
                )
                return

    def _on_timeout(self) -> None:
        self._resolve(
            HandshakeState.TIMED_OUT,
            error=HandshakeTimeout(f"no response from {self.provider} login within {self.timeout:g}s"),
        )

    def _resolve(
        self,
        state: HandshakeState,
        *,
        result: Optional[AuthState] = None,
        error: Optional[HandshakeError] = None,
    ) -> None:
        if self.done:
            return
        self.state = state
        if self._future is not None and not self._future.done():
            if error is not None:
                self._future.set_exception(error)
            else:
                self._future.set_result(result)
        logger.info(
            "popup_handshake_resolved",
            provider=self.provider,
            outcome=state.value,
            error_code=error.code if error else None,
        )
        self._finish()

    def _finish(self) -> None:
        if self._listening:
            self.opener.remove_message_listener(self._on_message)
            self._listening = False
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None
        task, self._poll_task = self._poll_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        if self.popup is not None and not self.popup.closed:
            self.popup.close()
