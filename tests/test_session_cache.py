"""Tests for the process-local validation cache and credential tombstones."""

import threading
from datetime import timedelta

import pytest

from conftest import EPOCH, FakeClock
from sessiongate.storage.session_cache import (
    CredentialTombstones,
    SessionCache,
    credential_digest,
)


def make_cache(clock: FakeClock, **kwargs) -> SessionCache:
    return SessionCache(timedelta(minutes=5), clock=clock, **kwargs)


class TestSessionCacheBasics:
    def test_put_then_get_returns_entry(self, clock):
        cache = make_cache(clock)
        expires = EPOCH + timedelta(hours=1)

        cache.put("user-1", "tok-1", expires, device_fingerprint="fp")
        entry = cache.get("user-1", "tok-1")

        assert entry is not None
        assert entry.expires_at == expires
        assert entry.last_confirmed_at == EPOCH
        assert entry.device_fingerprint == "fp"

    def test_raw_credential_never_used_as_key(self, clock):
        cache = make_cache(clock)
        cache.put("user-1", "super-secret", EPOCH + timedelta(hours=1))

        keys = list(cache._entries)
        assert keys == [("user-1", credential_digest("super-secret"))]
        assert all("super-secret" not in part for key in keys for part in key)

    def test_entries_are_scoped_per_user(self, clock):
        cache = make_cache(clock)
        cache.put("user-1", "tok", EPOCH + timedelta(hours=1))

        assert cache.get("user-2", "tok") is None

    def test_stale_entry_is_dropped_on_lookup(self, clock):
        cache = make_cache(clock)
        cache.put("user-1", "tok-1", EPOCH + timedelta(hours=1))

        clock.advance(minutes=4, seconds=59)
        assert cache.get("user-1", "tok-1") is not None
        clock.advance(seconds=1)
        assert cache.get("user-1", "tok-1") is None
        assert len(cache) == 0

    def test_entry_past_session_expiry_is_not_fresh(self, clock):
        cache = make_cache(clock)
        cache.put("user-1", "tok-1", EPOCH + timedelta(minutes=1))

        clock.advance(minutes=1)
        assert cache.get("user-1", "tok-1") is None

    def test_evict_and_evict_user(self, clock):
        cache = make_cache(clock)
        expires = EPOCH + timedelta(hours=1)
        cache.put("user-1", "tok-1", expires)
        cache.put("user-1", "tok-2", expires)
        cache.put("user-2", "tok-3", expires)

        assert cache.evict("user-1", "tok-1") is True
        assert cache.evict("user-1", "tok-1") is False
        assert cache.evict_user("user-1") == 1
        assert cache.get("user-2", "tok-3") is not None
        assert len(cache) == 1

    def test_rejects_non_positive_window(self, clock):
        with pytest.raises(ValueError):
            SessionCache(timedelta(0), clock=clock)


class TestSessionCacheSweep:
    def test_sweep_removes_only_stale_entries(self, clock):
        cache = make_cache(clock)
        expires = EPOCH + timedelta(hours=1)
        cache.put("user-1", "old", expires)
        clock.advance(minutes=3)
        cache.put("user-1", "new", expires)
        clock.advance(minutes=3)

        assert cache.sweep() == 1
        assert cache.get("user-1", "new") is not None

    def test_put_triggers_periodic_sweep(self, clock):
        cache = make_cache(clock)
        cache.put("user-1", "old", EPOCH + timedelta(hours=1))
        clock.advance(minutes=6)

        cache.put("user-2", "fresh", EPOCH + timedelta(hours=2))

        assert len(cache) == 1
        assert cache.get("user-2", "fresh") is not None


class TestSessionCacheEviction:
    def test_capacity_evicts_soonest_expiring(self, clock):
        cache = make_cache(clock, max_entries=20)
        for i in range(20):
            cache.put("user", f"tok-{i}", EPOCH + timedelta(minutes=10 + i))

        cache.put("user", "newest", EPOCH + timedelta(hours=5))

        assert len(cache) == 19
        assert cache.get("user", "tok-0") is None
        assert cache.get("user", "tok-1") is None
        assert cache.get("user", "tok-2") is not None
        assert cache.get("user", "newest") is not None

    def test_refreshing_existing_key_at_capacity_does_not_evict(self, clock):
        cache = make_cache(clock, max_entries=2)
        cache.put("user", "a", EPOCH + timedelta(hours=1))
        cache.put("user", "b", EPOCH + timedelta(hours=1))

        cache.put("user", "a", EPOCH + timedelta(hours=2))

        assert len(cache) == 2


class TestSessionCacheConcurrency:
    def test_concurrent_put_get_evict(self):
        cache = SessionCache(timedelta(minutes=5), max_entries=500)
        expires = EPOCH + timedelta(days=365 * 100)
        errors = []

        def worker(worker_id: int) -> None:
            try:
                for i in range(200):
                    token = f"tok-{worker_id}-{i}"
                    cache.put(f"user-{worker_id}", token, expires)
                    cache.get(f"user-{worker_id}", token)
                    if i % 3 == 0:
                        cache.evict(f"user-{worker_id}", token)
                    if i % 50 == 0:
                        cache.evict_user(f"user-{worker_id}")
            except Exception as exc:  # pragma: no cover - surfaced below
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert len(cache) <= 500


class TestCredentialTombstones:
    def test_contains_until_retention_elapses(self, clock):
        tombstones = CredentialTombstones(timedelta(hours=1), clock=clock)
        tombstones.add("user-1", "tok-1")

        assert tombstones.contains("user-1", "tok-1")
        assert not tombstones.contains("user-2", "tok-1")
        clock.advance(hours=1)
        assert not tombstones.contains("user-1", "tok-1")
        assert len(tombstones) == 0

    def test_discard_and_sweep(self, clock):
        tombstones = CredentialTombstones(timedelta(minutes=10), clock=clock)
        tombstones.add("user-1", "tok-1")
        tombstones.add("user-1", "tok-2")
        tombstones.discard("user-1", "tok-1")

        assert not tombstones.contains("user-1", "tok-1")
        clock.advance(minutes=10)
        assert tombstones.sweep() == 1
        assert tombstones.sweep() == 0
