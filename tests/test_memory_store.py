"""Unit tests for MemoryStore session storage.

Tests for:
- Insert and lookup by credential and device
- Conflict clearing on replace
- Forward-only expiry updates
- Deletes reporting zero rows when nothing matched
- JSON state persistence across restarts
"""

from datetime import timedelta

import pytest

from conftest import EPOCH
from sessiongate.storage.errors import ConstraintViolation
from sessiongate.storage.memory import MemoryStore
from sessiongate.storage.models import Session


@pytest.fixture
def memory_store():
    return MemoryStore()


def make_session(user_id="user-1", token="tok-1", fingerprint="fp-a", *, at=EPOCH, ttl=None):
    return Session.new(
        user_id,
        fingerprint,
        token,
        ttl=ttl or timedelta(hours=1),
        now=at,
        ip_addr="192.0.2.1",
        user_agent="agent",
    )


class TestSessionLookup:
    def test_create_and_get_by_token(self, memory_store):
        session = memory_store.create_session(make_session())

        assert memory_store.get_session(session.id) is session
        assert memory_store.get_session_by_token("user-1", "tok-1") is session
        assert memory_store.get_session_by_token("user-2", "tok-1") is None

    def test_create_duplicate_credential_raises(self, memory_store):
        memory_store.create_session(make_session())

        with pytest.raises(ConstraintViolation):
            memory_store.create_session(make_session())

    def test_get_session_by_device_returns_latest(self, memory_store):
        memory_store.create_session(make_session(token="old"))
        newer = memory_store.create_session(
            make_session(token="new", at=EPOCH + timedelta(minutes=1))
        )

        assert memory_store.get_session_by_device("user-1", "fp-a") is newer
        assert memory_store.get_session_by_device("user-1", "fp-b") is None

    def test_find_sessions_includes_expired_rows(self, memory_store):
        memory_store.create_session(make_session(token="a", ttl=timedelta(minutes=1)))
        memory_store.create_session(make_session(token="b", fingerprint="fp-b"))

        assert len(memory_store.find_sessions("user-1")) == 2
        assert [s.access_token for s in memory_store.find_sessions("user-1", "fp-b")] == ["b"]

    def test_list_sessions_live_newest_first(self, memory_store):
        memory_store.create_session(make_session(token="expired", ttl=timedelta(minutes=1)))
        memory_store.create_session(make_session(token="first"))
        memory_store.create_session(
            make_session(token="second", at=EPOCH + timedelta(minutes=2))
        )
        now = EPOCH + timedelta(minutes=5)

        listed = memory_store.list_sessions("user-1", now)

        assert [s.access_token for s in listed] == ["second", "first"]
        assert memory_store.get_latest_session("user-1", now).access_token == "second"
        assert memory_store.get_latest_session("user-2", now) is None


class TestReplace:
    def test_replace_clears_same_credential_only(self, memory_store):
        memory_store.create_session(make_session(token="tok-1"))
        memory_store.create_session(make_session(token="tok-2"))

        fresh = memory_store.replace_session(make_session(token="tok-1"))

        assert memory_store.get_session_by_token("user-1", "tok-1") is fresh
        assert len(memory_store.sessions) == 2

    def test_replace_with_clear_user(self, memory_store):
        memory_store.create_session(make_session(token="tok-1"))
        memory_store.create_session(make_session(token="tok-2"))
        memory_store.create_session(make_session(user_id="user-2", token="tok-3"))

        memory_store.replace_session(make_session(token="tok-4"), clear_user=True)

        assert [s.access_token for s in memory_store.find_sessions("user-1")] == ["tok-4"]
        assert len(memory_store.find_sessions("user-2")) == 1


class TestExpiryUpdates:
    def test_update_moves_expiry_forward(self, memory_store):
        session = memory_store.create_session(make_session())
        later = EPOCH + timedelta(hours=3)

        updated = memory_store.update_session_expiry(session.id, later, EPOCH + timedelta(minutes=20))

        assert updated.expires_at == later
        assert updated.updated_at == EPOCH + timedelta(minutes=20)

    def test_update_never_shortens(self, memory_store):
        session = memory_store.create_session(make_session())
        original = session.expires_at

        updated = memory_store.update_session_expiry(
            session.id, EPOCH + timedelta(minutes=5), EPOCH + timedelta(minutes=5)
        )

        assert updated.expires_at == original

    def test_update_missing_row_returns_none(self, memory_store):
        assert memory_store.update_session_expiry("missing", EPOCH, EPOCH) is None


class TestDeletes:
    def test_deletes_report_zero_for_missing_rows(self, memory_store):
        assert memory_store.delete_session("missing") == 0
        assert memory_store.delete_session_by_token("user-1", "tok") == 0
        assert memory_store.delete_sessions_by_device("user-1", "fp") == 0
        assert memory_store.delete_user_sessions("user-1") == 0
        assert memory_store.delete_expired_sessions(EPOCH) == []

    def test_delete_variants(self, memory_store):
        first = memory_store.create_session(make_session(token="a"))
        memory_store.create_session(make_session(token="b", fingerprint="fp-b"))
        memory_store.create_session(make_session(token="c", fingerprint="fp-b"))
        memory_store.create_session(make_session(user_id="user-2", token="d"))

        assert memory_store.delete_session(first.id) == 1
        assert memory_store.delete_sessions_by_device("user-1", "fp-b") == 2
        assert memory_store.delete_session_by_token("user-2", "d") == 1
        assert memory_store.sessions == {}

    def test_delete_expired_uses_inclusive_boundary(self, memory_store):
        memory_store.create_session(make_session(token="a", ttl=timedelta(minutes=10)))
        memory_store.create_session(make_session(token="b", ttl=timedelta(minutes=20)))
        cutoff = EPOCH + timedelta(minutes=10)

        assert memory_store.count_expired_sessions(cutoff) == 1
        assert memory_store.delete_expired_sessions(cutoff) == [("user-1", "a")]
        assert memory_store.delete_expired_sessions(cutoff) == []
        assert memory_store.count_expired_sessions(cutoff) == 0


def test_memory_store_persists_sessions(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    session = store.create_session(make_session())
    store.update_session_expiry(session.id, EPOCH + timedelta(hours=5), EPOCH + timedelta(hours=1))

    reloaded = MemoryStore(fs_root=str(tmp_path))
    restored = reloaded.get_session(session.id)

    assert restored is not None
    assert restored.access_token == "tok-1"
    assert restored.device_fingerprint == "fp-a"
    assert restored.expires_at == EPOCH + timedelta(hours=5)
    assert restored.updated_at == EPOCH + timedelta(hours=1)
    assert (tmp_path / "state" / "sessions.json").exists()


def test_memory_store_ignores_corrupt_state(tmp_path):
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    (state_dir / "sessions.json").write_text("{not json")

    store = MemoryStore(fs_root=str(tmp_path))

    assert store.sessions == {}
