from __future__ import annotations

import json
import os
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol

from novo.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuthState:
    """What the client knows about the signed-in user."""

    account: Dict[str, Any]
    access_token: str

    @property
    def account_id(self) -> Optional[str]:
        return self.account.get("id")

    @property
    def email(self) -> Optional[str]:
        return self.account.get("email")

    def to_dict(self) -> Dict[str, Any]:
        return {"account": self.account, "access_token": self.access_token}

    @classmethod
    def from_dict(cls, data: Any) -> Optional["AuthState"]:
        """Return ``None`` unless both halves are present."""
        if not isinstance(data, dict):
            return None
        account = data.get("account")
        access_token = data.get("access_token")
        if not isinstance(account, dict) or not account or not access_token:
            return None
        return cls(account=account, access_token=str(access_token))


class StateStorage(Protocol):
    def load(self) -> Optional[AuthState]: ...

    def save(self, state: AuthState) -> None: ...

    def clear(self) -> None: ...


class MemoryStateStorage:
    def __init__(self, initial: Optional[AuthState] = None) -> None:
        self._state = initial

    def load(self) -> Optional[AuthState]:
        return self._state

    def save(self, state: AuthState) -> None:
        self._state = state

    def clear(self) -> None:
        self._state = None


class FileStateStorage:
    """Durable client state as a JSON file, replaced atomically on save."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self) -> Optional[AuthState]:
        if not self.path.exists():
            return None
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as exc:
            logger.warning("client_state_unreadable", path=str(self.path), error=str(exc))
            return None
        return AuthState.from_dict(data)

    def save(self, state: AuthState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".state-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(state.to_dict(), fh)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except OSError:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


Subscriber = Callable[[Optional[AuthState]], None]


class AuthStateStore:
    """Single owner of the current :class:`AuthState`.

    Every write is mirrored to ``storage`` and announced to subscribers.
    Writes are last-writer-wins.
    """

    def __init__(self, storage: Optional[StateStorage] = None) -> None:
        self.storage: StateStorage = storage or MemoryStateStorage()
        self._state: Optional[AuthState] = None
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()

    @property
    def current(self) -> Optional[AuthState]:
        return self._state

    @property
    def access_token(self) -> Optional[str]:
        state = self._state
        return state.access_token if state else None

    def load_persisted(self) -> Optional[AuthState]:
        return self.storage.load()

    def set(self, state: AuthState) -> None:
        with self._lock:
            self._state = state
        self.storage.save(state)
        self._notify(state)

    def clear(self) -> None:
        with self._lock:
            had_state = self._state is not None
            self._state = None
        self.storage.clear()
        if had_state:
            self._notify(None)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def _notify(self, state: Optional[AuthState]) -> None:
        for callback in list(self._subscribers):
            try:
                callback(state)
            except Exception as exc:
                logger.error("auth_state_subscriber_failed", error=str(exc))
