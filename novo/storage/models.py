from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional

FEDERATED_PROVIDERS = ("google", "github")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: str
    email: str
    name: str
    password_hash: Optional[str] = None
    provider: Optional[str] = None
    provider_uid: Optional[str] = None
    is_premium: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        name: str,
        *,
        password_hash: Optional[str] = None,
        provider: Optional[str] = None,
        provider_uid: Optional[str] = None,
    ) -> "Account":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            name=name,
            password_hash=password_hash,
            provider=provider,
            provider_uid=provider_uid,
            created_at=now,
            updated_at=now,
        )

    @property
    def is_federated_only(self) -> bool:
        """Created through a provider and never given a password."""
        return bool(self.provider) and not self.password_hash


@dataclass(frozen=True)
class SessionSlot:
    """The single current refresh session of an account.

    Only the SHA-256 hex digest of the session identifier is held. Every write
    produces a new slot with a higher ``version``; a cleared slot keeps its
    version history with ``session_hash`` set to ``None``.
    """

    account_id: str
    session_hash: Optional[str] = None
    version: int = 0
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.session_hash is not None

    def replaced(self, session_hash: Optional[str]) -> "SessionSlot":
        return replace(
            self, session_hash=session_hash, version=self.version + 1, updated_at=utcnow()
        )
