from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol, Tuple

from sessiongate.config import ConflictScope, SessionPolicy
from sessiongate.logging import get_logger
from sessiongate.service.errors import (
    ConflictError,
    StoreUnavailableError,
    ValidationError,
)
from sessiongate.service.fingerprint import DeviceFingerprinter
from sessiongate.storage.errors import ConstraintViolation, StoreUnavailable
from sessiongate.storage.models import Session, SessionSummary, utcnow
from sessiongate.storage.session_cache import CredentialTombstones, SessionCache

logger = get_logger(__name__)


class SessionStore(Protocol):
    def verify_connection(self) -> None: ...

    def replace_session(
        self, session: Session, *, clear_user: bool = False
    ) -> Session: ...

    def get_session_by_token(
        self, user_id: str, access_token: str
    ) -> Optional[Session]: ...

    def get_session_by_device(
        self, user_id: str, device_fingerprint: str
    ) -> Optional[Session]: ...

    def find_sessions(
        self, user_id: str, device_fingerprint: str | None = None
    ) -> List[Session]: ...

    def list_sessions(self, user_id: str, now: datetime) -> List[Session]: ...

    def get_latest_session(self, user_id: str, now: datetime) -> Optional[Session]: ...

    def update_session_expiry(
        self, session_id: str, expires_at: datetime, updated_at: datetime
    ) -> Optional[Session]: ...

    def delete_session(self, session_id: str) -> int: ...

    def delete_session_by_token(self, user_id: str, access_token: str) -> int: ...

    def delete_sessions_by_device(self, user_id: str, device_fingerprint: str) -> int: ...

    def delete_user_sessions(self, user_id: str) -> int: ...

    def delete_expired_sessions(self, before: datetime) -> List[Tuple[str, str]]: ...

    def count_expired_sessions(self, before: datetime) -> int: ...


class SessionService:
    """Create, validate, extend, recover and revoke device-bound sessions.

    The store is the source of truth. ``SessionCache`` only remembers that a
    credential was confirmed recently, so a fresh hit skips the store for at
    most one freshness window. Store calls run in a worker thread under the
    policy's timeout; a timeout or connection failure surfaces as
    :class:`StoreUnavailableError` and callers must treat the request as
    unauthenticated.
    """

    def __init__(
        self,
        store: SessionStore,
        cache: SessionCache,
        fingerprinter: DeviceFingerprinter,
        policy: Optional[SessionPolicy] = None,
        *,
        tombstones: Optional[CredentialTombstones] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self.fingerprinter = fingerprinter
        self.policy = policy or SessionPolicy()
        self._clock = clock
        self.tombstones = (
            tombstones
            if tombstones is not None
            else CredentialTombstones(self.policy.ttl, clock=clock)
        )
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    async def _call_store(self, operation: str, fn: Callable, *args, **kwargs):
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs),
                timeout=self.policy.store_timeout,
            )
        except asyncio.TimeoutError as exc:
            self.logger.warning(
                "session_store_timeout",
                operation=operation,
                timeout_seconds=self.policy.store_timeout,
            )
            raise StoreUnavailableError(
                "session store timed out", detail={"operation": operation}
            ) from exc
        except StoreUnavailable as exc:
            self.logger.warning(
                "session_store_unavailable",
                operation=operation,
                error=exc.message,
                detail=exc.detail,
            )
            raise StoreUnavailableError(
                "session store unavailable", detail={"operation": operation}
            ) from exc

    async def verify_store(self) -> None:
        await self._call_store("verify_connection", self.store.verify_connection)

    # creation
    async def create(
        self,
        user_id: str,
        user_agent: Optional[str],
        ip_addr: Optional[str],
        access_token: str,
        refresh_token: Optional[str] = None,
        ttl: Optional[timedelta] = None,
    ) -> Session:
        """Record a fresh login.

        Prior rows for the same credential are replaced. With the USER
        conflict scope every other session of the user is cleared as well,
        and their credentials are tombstoned so recovery cannot revive them.
        The cache is not populated; only a successful validation does that.
        """

        if not user_id or not access_token:
            raise ValidationError("user id and access credential are required")
        ttl = ttl if ttl is not None else self.policy.ttl
        if ttl <= timedelta(0):
            raise ValidationError("session ttl must be positive", detail={"ttl": str(ttl)})

        clear_user = self.policy.conflict_scope == ConflictScope.USER
        displaced: List[Session] = []
        if clear_user:
            displaced = await self._call_store(
                "find_sessions", self.store.find_sessions, user_id
            )

        session = await self._insert_session(
            user_id,
            user_agent,
            ip_addr,
            access_token,
            refresh_token=refresh_token,
            ttl=ttl,
            clear_user=clear_user,
        )

        self.tombstones.discard(user_id, access_token)
        if clear_user:
            for prior in displaced:
                if prior.access_token != access_token:
                    self.tombstones.add(user_id, prior.access_token)
            self.cache.evict_user(user_id)
        else:
            self.cache.evict(user_id, access_token)

        self.logger.info(
            "session_created",
            user_id=user_id,
            session_id=session.id,
            conflict_scope=self.policy.conflict_scope.value,
            displaced=len(displaced),
            expires_at=session.expires_at.isoformat(),
        )
        return session

    async def _insert_session(
        self,
        user_id: str,
        user_agent: Optional[str],
        ip_addr: Optional[str],
        access_token: str,
        *,
        refresh_token: Optional[str],
        ttl: timedelta,
        clear_user: bool,
    ) -> Session:
        device_fingerprint = self.fingerprinter.fingerprint(user_agent, ip_addr)
        attempts = self.policy.create_max_retries
        last_error: Optional[ConstraintViolation] = None
        for attempt in range(1, attempts + 1):
            session = Session.new(
                user_id,
                device_fingerprint,
                access_token,
                ttl=ttl,
                now=self._now(),
                ip_addr=ip_addr,
                user_agent=user_agent,
                refresh_token=refresh_token,
            )
            try:
                return await self._call_store(
                    "replace_session",
                    self.store.replace_session,
                    session,
                    clear_user=clear_user,
                )
            except ConstraintViolation as exc:
                last_error = exc
                self.logger.warning(
                    "session_create_conflict", user_id=user_id, attempt=attempt
                )
        self.logger.error(
            "session_create_gave_up", user_id=user_id, attempts=attempts
        )
        raise ConflictError("session creation kept conflicting") from last_error

    # validation
    async def validate(
        self,
        user_id: str,
        user_agent: Optional[str],
        ip_addr: Optional[str],
        access_token: str,
    ) -> bool:
        """Hot path: is this already-verified credential backed by a live session?"""

        if not user_id or not access_token:
            return False
        if self.cache.get(user_id, access_token) is not None:
            return True

        now = self._now()
        session = await self._call_store(
            "get_session_by_token", self.store.get_session_by_token, user_id, access_token
        )
        if session is None:
            return await self.recover(user_id, user_agent, ip_addr, access_token)
        if session.is_expired(now):
            await self._tombstone(session)
            return False

        if now - session.updated_at > self.policy.extension_interval:
            extended = await self._call_store(
                "update_session_expiry",
                self.store.update_session_expiry,
                session.id,
                now + self.policy.ttl,
                now,
            )
            if extended is None:
                # Row went away between lookup and write, e.g. a concurrent logout
                self.cache.evict(user_id, access_token)
                self.logger.info(
                    "session_vanished_during_extension",
                    user_id=user_id,
                    session_id=session.id,
                )
                return await self.recover(user_id, user_agent, ip_addr, access_token)
            session = extended
            self.logger.debug(
                "session_extended",
                user_id=user_id,
                session_id=session.id,
                expires_at=session.expires_at.isoformat(),
            )

        self.cache.put(
            user_id,
            access_token,
            session.expires_at,
            device_fingerprint=session.device_fingerprint,
        )
        return True

    async def _tombstone(self, session: Session) -> None:
        await self._call_store("delete_session", self.store.delete_session, session.id)
        self.cache.evict(session.user_id, session.access_token)
        self.tombstones.add(session.user_id, session.access_token)
        self.logger.info(
            "session_tombstoned", user_id=session.user_id, session_id=session.id
        )

    async def recover(
        self,
        user_id: str,
        user_agent: Optional[str],
        ip_addr: Optional[str],
        access_token: str,
    ) -> bool:
        """Rebuild a missing row for a credential the caller already verified.

        Credentials whose sessions were revoked or expired are refused, as is
        everything when recovery is disabled by policy.
        """

        if not self.policy.recovery_enabled:
            self.logger.info("session_recovery_skipped", user_id=user_id, reason="disabled")
            return False
        if self.tombstones.contains(user_id, access_token):
            self.logger.info(
                "session_recovery_skipped", user_id=user_id, reason="tombstoned"
            )
            return False

        try:
            session = await self._insert_session(
                user_id,
                user_agent,
                ip_addr,
                access_token,
                refresh_token=None,
                ttl=self.policy.ttl,
                clear_user=False,
            )
        except ConflictError:
            # A concurrent request rebuilt the row first
            session = await self._call_store(
                "get_session_by_token",
                self.store.get_session_by_token,
                user_id,
                access_token,
            )
            if session is None or session.is_expired(self._now()):
                return False

        self.cache.put(
            user_id,
            access_token,
            session.expires_at,
            device_fingerprint=session.device_fingerprint,
        )
        self.logger.warning(
            "session_recovered",
            user_id=user_id,
            session_id=session.id,
            expires_at=session.expires_at.isoformat(),
        )
        return True

    # explicit lifecycle operations
    async def extend_session(
        self,
        user_id: str,
        user_agent: Optional[str],
        ip_addr: Optional[str],
        additional: Optional[timedelta] = None,
    ) -> Optional[Session]:
        additional = additional if additional is not None else self.policy.ttl
        if additional <= timedelta(0):
            raise ValidationError(
                "extension must be positive", detail={"additional": str(additional)}
            )
        now = self._now()
        session = await self._call_store(
            "get_latest_session", self.store.get_latest_session, user_id, now
        )
        if session is None:
            return None

        updated = await self._call_store(
            "update_session_expiry",
            self.store.update_session_expiry,
            session.id,
            now + additional,
            now,
        )
        if updated is None:
            self.logger.info(
                "session_vanished_during_extension",
                user_id=user_id,
                session_id=session.id,
            )
            return None

        self.cache.evict(user_id, updated.access_token)
        device_fingerprint = self.fingerprinter.fingerprint(user_agent, ip_addr)
        self.logger.info(
            "session_extended",
            user_id=user_id,
            session_id=updated.id,
            same_device=device_fingerprint == updated.device_fingerprint,
            expires_at=updated.expires_at.isoformat(),
        )
        return updated

    async def revoke(
        self, user_id: str, user_agent: Optional[str], ip_addr: Optional[str]
    ) -> bool:
        """Remove every session of the user bound to the calling device."""

        device_fingerprint = self.fingerprinter.fingerprint(user_agent, ip_addr)
        rows = await self._call_store(
            "find_sessions", self.store.find_sessions, user_id, device_fingerprint
        )
        removed = await self._call_store(
            "delete_sessions_by_device",
            self.store.delete_sessions_by_device,
            user_id,
            device_fingerprint,
        )
        for row in rows:
            self.tombstones.add(user_id, row.access_token)
        self.cache.evict_user(user_id)
        self.logger.info("session_revoked", user_id=user_id, removed=removed)
        return removed > 0

    async def revoke_credential(self, user_id: str, access_token: str) -> bool:
        """Logout of exactly the session bound to ``access_token``."""

        removed = await self._call_store(
            "delete_session_by_token",
            self.store.delete_session_by_token,
            user_id,
            access_token,
        )
        self.tombstones.add(user_id, access_token)
        self.cache.evict(user_id, access_token)
        self.logger.info("session_logout", user_id=user_id, removed=removed)
        return removed > 0

    async def revoke_all(self, user_id: str) -> int:
        rows = await self._call_store(
            "find_sessions", self.store.find_sessions, user_id
        )
        removed = await self._call_store(
            "delete_user_sessions", self.store.delete_user_sessions, user_id
        )
        for row in rows:
            self.tombstones.add(user_id, row.access_token)
        self.cache.evict_user(user_id)
        self.logger.info("sessions_revoked_all", user_id=user_id, removed=removed)
        return removed

    async def list_active_sessions(self, user_id: str) -> List[SessionSummary]:
        sessions = await self._call_store(
            "list_sessions", self.store.list_sessions, user_id, self._now()
        )
        return [session.summary() for session in sessions]

    # housekeeping
    async def sweep_expired(self) -> int:
        """Delete expired rows and drop stale cache and tombstone entries.

        Swept credentials are tombstoned like expired rows found on touch, so
        recovery cannot rebuild them.
        """

        now = self._now()
        released = self.tombstones.sweep()
        swept = await self._call_store(
            "delete_expired_sessions", self.store.delete_expired_sessions, now
        )
        for user_id, access_token in swept:
            self.cache.evict(user_id, access_token)
            self.tombstones.add(user_id, access_token)
        removed = len(swept)
        evicted = self.cache.sweep()
        if removed or evicted or released:
            self.logger.info(
                "session_sweep_completed",
                removed=removed,
                cache_evicted=evicted,
                tombstones_released=released,
            )
        return removed

    async def count_expired(self) -> int:
        return await self._call_store(
            "count_expired_sessions", self.store.count_expired_sessions, self._now()
        )
