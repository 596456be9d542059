from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Dict, Optional

from novo.client.api import AuthApi
from novo.client.config import ClientSettings
from novo.client.errors import ClientError, SessionRevoked, TransientError
from novo.client.popup import OpenerWindow, PopupHandshake
from novo.client.state import AuthState, AuthStateStore, FileStateStorage
from novo.logging import get_logger

logger = get_logger(__name__)


class SessionStatus(str, Enum):
    UNINITIALIZED = "uninitialized"
    RESTORING = "restoring"
    AUTHENTICATED = "authenticated"
    ANONYMOUS = "anonymous"


class SessionManager:
    """Client-side owner of the login session.

    Restores state on :meth:`start`, keeps the access credential fresh through
    :meth:`refresh` and tears everything down on :meth:`logout`. Concurrent
    refresh calls share a single in-flight request.
    """

    def __init__(
        self,
        api: AuthApi,
        store: Optional[AuthStateStore] = None,
        *,
        settings: Optional[ClientSettings] = None,
    ) -> None:
        self.api = api
        self.settings = settings or api.settings
        if store is None:
            state_path = self.settings.state_path
            store = AuthStateStore(FileStateStorage(state_path) if state_path else None)
        self.store = store
        self.status = SessionStatus.UNINITIALIZED
        self._refresh_task: Optional[asyncio.Task] = None
        # Bumped whenever login or logout replaces the session; stale refreshes are discarded
        self._generation = 0

    @property
    def current(self) -> Optional[AuthState]:
        return self.store.current

    @property
    def access_token(self) -> Optional[str]:
        return self.store.access_token

    @property
    def is_authenticated(self) -> bool:
        return self.status is SessionStatus.AUTHENTICATED and self.store.current is not None

    def _authenticated(self, state: AuthState) -> AuthState:
        self.store.set(state)
        self.status = SessionStatus.AUTHENTICATED
        return state

    def _clear_local(self) -> None:
        self.store.clear()
        self.status = SessionStatus.ANONYMOUS

    def _replace_session(self) -> None:
        self._generation += 1

    def _superseded_result(self) -> AuthState:
        """Outcome of a refresh that finished after login or logout replaced the session."""
        current = self.store.current
        logger.info("stale_refresh_discarded", has_session=current is not None)
        if current is None:
            raise SessionRevoked("session ended while the refresh was in flight")
        return current

    async def start(self) -> SessionStatus:
        """Restore the session once per application lifetime.

        Persisted state is trusted optimistically, then confirmed with a
        refresh. A transient failure keeps persisted state; any other
        failure logs out. Without persisted state the refresh cookie alone
        decides.
        """
        if self.status is not SessionStatus.UNINITIALIZED:
            return self.status
        self.status = SessionStatus.RESTORING
        persisted = self.store.load_persisted()
        if persisted is not None:
            self._authenticated(persisted)

        try:
            await self.refresh()
        except TransientError as exc:
            if persisted is not None:
                logger.warning("session_restore_degraded", error=str(exc))
                self.status = SessionStatus.AUTHENTICATED
            else:
                self._clear_local()
        except ClientError as exc:
            logger.info("session_restore_rejected", error_code=exc.code)
            self._clear_local()
        logger.info("session_restored", status=self.status.value)
        return self.status

    async def refresh(self) -> AuthState:
        """Exchange the refresh cookie for a new access credential (single-flight)."""
        task = self._refresh_task
        if task is None or task.done():
            task = asyncio.create_task(self._refresh_once())
            self._refresh_task = task
        # Shield so one cancelled waiter does not abort the shared refresh
        return await asyncio.shield(task)

    async def _refresh_once(self) -> AuthState:
        generation = self._generation
        try:
            state = await self.api.refresh()
        except ClientError as exc:
            if generation != self._generation:
                return self._superseded_result()
            if isinstance(exc, TransientError):
                logger.warning("refresh_transient_failure", error=str(exc))
                raise
            logger.info("refresh_failed_forcing_logout", error_code=exc.code)
            self._clear_local()
            raise
        if generation != self._generation:
            return self._superseded_result()
        logger.debug("refresh_succeeded", account_id=state.account_id)
        return self._authenticated(state)

    async def login(self, email: str, password: str) -> AuthState:
        state = await self.api.login(email, password)
        self._replace_session()
        logger.info("client_login", account_id=state.account_id)
        return self._authenticated(state)

    async def register(self, email: str, name: str, password: str) -> Dict[str, Any]:
        """Create an account; the caller still has to :meth:`login`."""
        return await self.api.register(email, name, password)

    async def login_with_provider(self, provider: str, opener: OpenerWindow) -> AuthState:
        handshake = PopupHandshake(
            opener,
            self.api.provider_login_url(provider),
            provider=provider,
            poll_interval=self.settings.popup_poll_interval_seconds,
            timeout=self.settings.popup_timeout_seconds,
            allowed_origins=self.settings.message_origins(),
        )
        state = await handshake.run()
        self._replace_session()
        logger.info("client_login", account_id=state.account_id, provider=provider)
        return self._authenticated(state)

    def force_logout(self, reason: str) -> None:
        """Drop local state without contacting the server."""
        logger.info("forced_logout", reason=reason)
        self._replace_session()
        self._clear_local()

    async def logout(self) -> None:
        """Clear local state first, then tell the server. Safe to repeat."""
        state = self.store.current
        self._replace_session()
        self._clear_local()
        if state is None or not state.email:
            return
        try:
            await self.api.logout(state.email, state.access_token)
        except ClientError as exc:
            logger.warning("logout_server_call_failed", error_code=exc.code, error=exc.message)
