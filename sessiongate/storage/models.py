from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Normalize naive timestamps (older rows, JSON state) to aware UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class Session:
    id: str
    user_id: str
    device_fingerprint: str
    access_token: str
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    refresh_token: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        device_fingerprint: str,
        access_token: str,
        *,
        ttl: timedelta = timedelta(hours=24),
        now: datetime | None = None,
        ip_addr: str | None = None,
        user_agent: str | None = None,
        refresh_token: str | None = None,
    ) -> "Session":
        if ttl <= timedelta(0):
            raise ValueError("session ttl must be positive")
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            device_fingerprint=device_fingerprint,
            access_token=access_token,
            created_at=now,
            updated_at=now,
            expires_at=now + ttl,
            ip_addr=ip_addr,
            user_agent=user_agent,
            refresh_token=refresh_token,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def summary(self) -> "SessionSummary":
        return SessionSummary(
            id=self.id,
            device_fingerprint=self.device_fingerprint,
            ip_addr=self.ip_addr,
            user_agent=self.user_agent,
            created_at=self.created_at,
            updated_at=self.updated_at,
            expires_at=self.expires_at,
        )


@dataclass(frozen=True)
class SessionSummary:
    """Credential-free view of a session for listings."""

    id: str
    device_fingerprint: str
    ip_addr: Optional[str]
    user_agent: Optional[str]
    created_at: datetime
    updated_at: datetime
    expires_at: datetime


@dataclass
class CacheEntry:
    user_id: str
    device_fingerprint: str
    expires_at: datetime
    last_confirmed_at: datetime

    def is_fresh(self, now: datetime, freshness_window: timedelta) -> bool:
        return (
            now - self.last_confirmed_at < freshness_window and now < self.expires_at
        )
