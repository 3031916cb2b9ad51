from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from sessiongate.config import get_settings, reset_settings_cache
from sessiongate.logging import get_logger
from sessiongate.service.fingerprint import DeviceFingerprinter
from sessiongate.service.sessions import SessionService
from sessiongate.service.sweeper import ExpirySweeper
from sessiongate.storage.memory import MemoryStore
from sessiongate.storage.postgres import PostgresStore
from sessiongate.storage.session_cache import CredentialTombstones, SessionCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a DSN with ``***`` for logging."""

    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            )
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the singleton session components for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            if self.settings.use_memory_store:
                # Tests keep sessions purely in memory
                self.store = MemoryStore(
                    fs_root=None if self.settings.test_mode else self.settings.shared_fs_root
                )
            else:
                self.store = PostgresStore(
                    self.settings.database_url,
                    min_size=self.settings.database_pool_min_size,
                    max_size=self.settings.database_pool_max_size,
                    timeout_seconds=self.settings.session_store_timeout_seconds,
                )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        policy = self.settings.session_policy()
        self.cache = SessionCache(
            timedelta(seconds=self.settings.session_cache_freshness_seconds),
            max_entries=self.settings.session_cache_max_entries,
        )
        self.tombstones = CredentialTombstones(policy.ttl)
        self.fingerprinter = DeviceFingerprinter(self.settings.fingerprint_trust_mode)
        self.sessions = SessionService(
            self.store,
            self.cache,
            self.fingerprinter,
            policy,
            tombstones=self.tombstones,
        )
        self.sweeper = ExpirySweeper(
            self.sessions, interval=self.settings.session_sweep_interval_seconds
        )

        logger.info(
            "runtime_initialized",
            trust_mode=self.settings.fingerprint_trust_mode.value,
            conflict_scope=policy.conflict_scope.value,
            recovery_enabled=policy.recovery_enabled,
            sweeper_enabled=self.settings.session_sweeper_enabled,
        )

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""

    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            runtime.close()
        runtime = Runtime()
        return runtime
