from __future__ import annotations

import json
import os
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from novo.logging import get_logger
from novo.storage.errors import ConstraintViolation
from novo.storage.models import Account, SessionSlot, utcnow


class MemoryStore:
    """In-process account store mirrored to a JSON file under ``fs_root``."""

    def __init__(self, fs_root: str = "/tmp/novo", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.slots: Dict[str, SessionSlot] = {}
        # RLock so helpers can be called while a write already holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.persist = persist
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def verify_connection(self) -> None:
        return None

    # accounts
    def create_account(
        self,
        email: str,
        name: str,
        *,
        password_hash: Optional[str] = None,
        provider: Optional[str] = None,
        provider_uid: Optional[str] = None,
    ) -> Account:
        with self._data_lock:
            if self._find_by_email(email):
                raise ConstraintViolation("email already exists", field="email")
            account = Account.new(
                email,
                name,
                password_hash=password_hash,
                provider=provider,
                provider_uid=provider_uid,
            )
            self._commit(accounts={**self.accounts, account.id: account})
            return replace(account)

    def _find_by_email(self, email: str) -> Optional[Account]:
        needle = email.lower()
        return next((a for a in self.accounts.values() if a.email.lower() == needle), None)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account = self._find_by_email(email)
            return replace(account) if account else None

    def get_account_by_provider(self, provider: str, provider_uid: str) -> Optional[Account]:
        with self._data_lock:
            account = next(
                (
                    a
                    for a in self.accounts.values()
                    if a.provider == provider and a.provider_uid == provider_uid
                ),
                None,
            )
            return replace(account) if account else None

    def link_provider(
        self, account_id: str, provider: str, provider_uid: str
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            updated = replace(
                account, provider=provider, provider_uid=provider_uid, updated_at=utcnow()
            )
            self._commit(accounts={**self.accounts, account_id: updated})
            return replace(updated)

    def update_password(self, account_id: str, password_hash: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            updated = replace(account, password_hash=password_hash, updated_at=utcnow())
            self._commit(accounts={**self.accounts, account_id: updated})
            return replace(updated)

    def delete_account(self, account_id: str) -> bool:
        with self._data_lock:
            if account_id not in self.accounts:
                return False
            self._commit(
                accounts={k: v for k, v in self.accounts.items() if k != account_id},
                slots={k: v for k, v in self.slots.items() if k != account_id},
            )
            return True

    # session slot
    def get_session_slot(self, account_id: str) -> Optional[SessionSlot]:
        with self._data_lock:
            if account_id not in self.accounts:
                return None
            return self.slots.get(account_id) or SessionSlot(account_id=account_id)

    def write_session_hash(
        self, account_id: str, session_hash: Optional[str]
    ) -> Optional[SessionSlot]:
        """Replace the slot for ``account_id``; last writer wins."""
        with self._data_lock:
            if account_id not in self.accounts:
                return None
            current = self.slots.get(account_id) or SessionSlot(account_id=account_id)
            slot = current.replaced(session_hash)
            self._commit(slots={**self.slots, account_id: slot})
            return slot

    # persistence
    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "email": account.email,
            "name": account.name,
            "password_hash": account.password_hash,
            "provider": account.provider,
            "provider_uid": account.provider_uid,
            "is_premium": account.is_premium,
            "created_at": self._serialize_datetime(account.created_at),
            "updated_at": self._serialize_datetime(account.updated_at),
        }

    def _deserialize_account(self, data: Dict[str, Any]) -> Account:
        return Account(
            id=data["id"],
            email=data["email"],
            name=data.get("name", ""),
            password_hash=data.get("password_hash"),
            provider=data.get("provider"),
            provider_uid=data.get("provider_uid"),
            is_premium=bool(data.get("is_premium", False)),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_slot(self, slot: SessionSlot) -> dict:
        return {
            "account_id": slot.account_id,
            "session_hash": slot.session_hash,
            "version": slot.version,
            "updated_at": self._serialize_datetime(slot.updated_at),
        }

    def _deserialize_slot(self, data: Dict[str, Any]) -> SessionSlot:
        return SessionSlot(
            account_id=data["account_id"],
            session_hash=data.get("session_hash"),
            version=int(data.get("version", 0)),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _commit(
        self,
        *,
        accounts: Optional[Dict[str, Account]] = None,
        slots: Optional[Dict[str, SessionSlot]] = None,
    ) -> None:
        """Write the new state to disk, then swap it in; a failed write changes nothing."""
        accounts = self.accounts if accounts is None else accounts
        slots = self.slots if slots is None else slots
        self._persist_state(accounts, slots)
        self.accounts = accounts
        self.slots = slots

    def _persist_state(self, accounts: Dict[str, Account], slots: Dict[str, SessionSlot]) -> None:
        if not self.persist:
            return
        state = {
            "accounts": [self._serialize_account(a) for a in accounts.values()],
            "session_slots": [self._serialize_slot(s) for s in slots.values()],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".json.tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            os.replace(tmp_path, path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_state_corrupt", path=str(path), error=str(exc))
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.slots = {
            s["account_id"]: self._deserialize_slot(s)
            for s in data.get("session_slots", [])
            if s.get("account_id") in self.accounts
        }
        self.logger.info(
            "memory_state_loaded", accounts=len(self.accounts), slots=len(self.slots)
        )
        return True
