from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from sessiongate.logging import get_logger

logger = get_logger(__name__)


class TrustMode(str, Enum):
    """How much of the connection metadata identifies a device.

    - STRICT: user agent and network address must both match
    - RELAXED: user agent only, for clients behind address-rotating proxies
    """

    STRICT = "strict"
    RELAXED = "relaxed"


class ConflictScope(str, Enum):
    """Which prior sessions a new login clears."""

    CREDENTIAL = "credential"  # only the row bound to the same credential
    USER = "user"  # every session of the user (single-device login)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/sessiongate", "DATABASE_URL"
    )
    database_pool_min_size: int = env_field(2, "DATABASE_POOL_MIN_SIZE")
    database_pool_max_size: int = env_field(10, "DATABASE_POOL_MAX_SIZE")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/sessiongate", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and other test-only behaviors.",
    )

    session_ttl_minutes: int = env_field(
        24 * 60,
        "SESSION_TTL_MINUTES",
        description="Lifetime granted to a new or idle-extended session",
    )
    session_extension_interval_minutes: int = env_field(
        15,
        "SESSION_EXTENSION_INTERVAL_MINUTES",
        description="Minimum time between implicit expiry extensions of one session",
    )
    session_cache_freshness_seconds: int = env_field(
        300,
        "SESSION_CACHE_FRESHNESS_SECONDS",
        description="Maximum age of a cached validation before it is reconfirmed",
    )
    session_cache_max_entries: int = env_field(10000, "SESSION_CACHE_MAX_ENTRIES")
    fingerprint_trust_mode: TrustMode = env_field(
        TrustMode.STRICT, "FINGERPRINT_TRUST_MODE"
    )
    session_login_conflict_scope: ConflictScope | None = env_field(
        None,
        "SESSION_LOGIN_CONFLICT_SCOPE",
        description="Sessions cleared on login; unset follows the trust mode",
    )
    session_recovery_enabled: bool = env_field(
        True,
        "SESSION_RECOVERY_ENABLED",
        description="Rebuild missing session rows for upstream-verified credentials",
    )
    session_store_timeout_seconds: float = env_field(
        5.0, "SESSION_STORE_TIMEOUT_SECONDS"
    )
    session_create_max_retries: int = env_field(3, "SESSION_CREATE_MAX_RETRIES")
    session_sweep_interval_seconds: int = env_field(
        300, "SESSION_SWEEP_INTERVAL_SECONDS"
    )
    session_sweeper_enabled: bool = env_field(True, "SESSION_SWEEPER_ENABLED")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("fingerprint_trust_mode", mode="before")
    @classmethod
    def _validate_trust_mode(cls, value: Any) -> TrustMode:
        if isinstance(value, str):
            value = value.strip().lower()
        return TrustMode(value)

    @field_validator("session_login_conflict_scope", mode="before")
    @classmethod
    def _validate_conflict_scope(cls, value: Any) -> ConflictScope | None:
        if value is None:
            return None
        if isinstance(value, str):
            value = value.strip().lower()
            if not value:
                return None
        return ConflictScope(value)

    @field_validator(
        "session_ttl_minutes",
        "session_extension_interval_minutes",
        "session_cache_freshness_seconds",
        "session_cache_max_entries",
        "session_store_timeout_seconds",
        "session_sweep_interval_seconds",
        "database_pool_min_size",
        "database_pool_max_size",
    )
    @classmethod
    def _ensure_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @field_validator("session_create_max_retries")
    @classmethod
    def _ensure_retries(cls, value: int) -> int:
        if value < 1:
            raise ValueError("at least one creation attempt is required")
        return value

    @property
    def login_conflict_scope(self) -> ConflictScope:
        if self.session_login_conflict_scope is not None:
            return self.session_login_conflict_scope
        if self.fingerprint_trust_mode == TrustMode.RELAXED:
            return ConflictScope.USER
        return ConflictScope.CREDENTIAL

    def session_policy(self) -> "SessionPolicy":
        return SessionPolicy(
            ttl=timedelta(minutes=self.session_ttl_minutes),
            extension_interval=timedelta(
                minutes=self.session_extension_interval_minutes
            ),
            conflict_scope=self.login_conflict_scope,
            recovery_enabled=self.session_recovery_enabled,
            store_timeout=self.session_store_timeout_seconds,
            create_max_retries=self.session_create_max_retries,
        )


@dataclass(frozen=True)
class SessionPolicy:
    """Lifecycle knobs consumed by :class:`SessionService`."""

    ttl: timedelta = timedelta(hours=24)
    extension_interval: timedelta = timedelta(minutes=15)
    conflict_scope: ConflictScope = ConflictScope.CREDENTIAL
    recovery_enabled: bool = True
    store_timeout: float = 5.0
    create_max_retries: int = 3


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug(
            "settings_loaded",
            use_memory_store=_settings_cache.use_memory_store,
            trust_mode=_settings_cache.fingerprint_trust_mode.value,
            conflict_scope=_settings_cache.login_conflict_scope.value,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
