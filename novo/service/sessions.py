from __future__ import annotations

import hashlib
import hmac
from typing import Optional, Protocol

from novo.logging import get_logger
from novo.storage.models import SessionSlot

logger = get_logger(__name__)


class SessionSlotStore(Protocol):
    def get_session_slot(self, account_id: str) -> Optional[SessionSlot]: ...

    def write_session_hash(
        self, account_id: str, session_hash: Optional[str]
    ) -> Optional[SessionSlot]: ...


def hash_session_id(session_id: str) -> str:
    return hashlib.sha256(session_id.encode("utf-8")).hexdigest()


class CredentialStore:
    """Server-side record of each account's current refresh session.

    One slot per account. Writes replace the slot wholesale, so a second login
    deterministically invalidates every refresh credential minted before it.
    The raw session identifier is never stored.
    """

    def __init__(self, store: SessionSlotStore) -> None:
        self.store = store

    def set_session(self, account_id: str, session_id: str) -> Optional[SessionSlot]:
        slot = self.store.write_session_hash(account_id, hash_session_id(session_id))
        if slot is None:
            logger.warning("session_slot_missing_account", account_id=account_id)
        return slot

    def clear_session(self, account_id: str) -> Optional[SessionSlot]:
        slot = self.store.write_session_hash(account_id, None)
        if slot is not None:
            logger.info("session_slot_cleared", account_id=account_id, version=slot.version)
        return slot

    def check_session(self, account_id: str, session_id: str) -> bool:
        slot = self.store.get_session_slot(account_id)
        if slot is None or not slot.is_active:
            return False
        return hmac.compare_digest(slot.session_hash, hash_session_id(session_id))
