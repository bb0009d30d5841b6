from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    display_name: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None


@dataclass
class RefreshRecord:
    """Server-side half of a refresh token, keyed by ``token_id``."""

    token_id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None

    @classmethod
    def new(
        cls,
        token_id: str,
        user_id: str,
        expires_at: datetime,
        user_agent: str | None = None,
        ip_addr: str | None = None,
    ) -> "RefreshRecord":
        return cls(
            token_id=token_id,
            user_id=user_id,
            created_at=utcnow(),
            expires_at=expires_at,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= now
