from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from sessiongate.logging import get_logger
from sessiongate.storage.errors import ConstraintViolation
from sessiongate.storage.models import Session, ensure_utc


class MemoryStore:
    """In-process session store for development and tests.

    When ``fs_root`` is given, every mutation is written to
    ``<fs_root>/state/sessions.json`` and reloaded on start-up so sessions
    survive a dev-server restart.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.sessions: Dict[str, Session] = {}
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "sessions.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return ensure_utc(datetime.fromisoformat(raw))

    def verify_connection(self) -> None:
        return None

    def _find_by_token(self, user_id: str, access_token: str) -> Optional[Session]:
        for sess in self.sessions.values():
            if sess.user_id == user_id and sess.access_token == access_token:
                return sess
        return None

    def _remove(self, predicate) -> int:
        stale = [sid for sid, sess in self.sessions.items() if predicate(sess)]
        for sid in stale:
            self.sessions.pop(sid, None)
        return len(stale)

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if self._find_by_token(session.user_id, session.access_token):
                raise ConstraintViolation(
                    "session already exists for credential",
                    {"user_id": session.user_id},
                )
            self.sessions[session.id] = session
            self._persist_state()
            return session

    def replace_session(self, session: Session, *, clear_user: bool = False) -> Session:
        with self._data_lock:
            if clear_user:
                self._remove(lambda s: s.user_id == session.user_id)
            else:
                self._remove(
                    lambda s: s.user_id == session.user_id
                    and s.access_token == session.access_token
                )
            self.sessions[session.id] = session
            self._persist_state()
            return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def get_session_by_token(self, user_id: str, access_token: str) -> Optional[Session]:
        with self._data_lock:
            return self._find_by_token(user_id, access_token)

    def get_session_by_device(
        self, user_id: str, device_fingerprint: str
    ) -> Optional[Session]:
        with self._data_lock:
            matches = [
                s
                for s in self.sessions.values()
                if s.user_id == user_id and s.device_fingerprint == device_fingerprint
            ]
        if not matches:
            return None
        return max(matches, key=lambda s: s.updated_at)

    def find_sessions(
        self, user_id: str, device_fingerprint: str | None = None
    ) -> List[Session]:
        """All rows of a user, expired included, optionally for one device."""

        with self._data_lock:
            return [
                s
                for s in self.sessions.values()
                if s.user_id == user_id
                and (device_fingerprint is None or s.device_fingerprint == device_fingerprint)
            ]

    def list_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._data_lock:
            live = [
                s
                for s in self.sessions.values()
                if s.user_id == user_id and s.expires_at > now
            ]
        return sorted(live, key=lambda s: s.updated_at, reverse=True)

    def get_latest_session(self, user_id: str, now: datetime) -> Optional[Session]:
        live = self.list_sessions(user_id, now)
        return live[0] if live else None

    def update_session_expiry(
        self, session_id: str, expires_at: datetime, updated_at: datetime
    ) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            # Expiry only moves forward
            sess.expires_at = max(sess.expires_at, expires_at)
            sess.updated_at = updated_at
            self._persist_state()
            return sess

    def delete_session(self, session_id: str) -> int:
        with self._data_lock:
            removed = 1 if self.sessions.pop(session_id, None) else 0
            if removed:
                self._persist_state()
            return removed

    def delete_session_by_token(self, user_id: str, access_token: str) -> int:
        with self._data_lock:
            removed = self._remove(
                lambda s: s.user_id == user_id and s.access_token == access_token
            )
            if removed:
                self._persist_state()
            return removed

    def delete_sessions_by_device(self, user_id: str, device_fingerprint: str) -> int:
        with self._data_lock:
            removed = self._remove(
                lambda s: s.user_id == user_id
                and s.device_fingerprint == device_fingerprint
            )
            if removed:
                self._persist_state()
            return removed

    def delete_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            removed = self._remove(lambda s: s.user_id == user_id)
            if removed:
                self._persist_state()
            return removed

    def delete_expired_sessions(self, before: datetime) -> List[Tuple[str, str]]:
        with self._data_lock:
            swept = [
                (s.user_id, s.access_token)
                for s in self.sessions.values()
                if s.expires_at <= before
            ]
            if swept:
                self._remove(lambda s: s.expires_at <= before)
                self._persist_state()
            return swept

    def count_expired_sessions(self, before: datetime) -> int:
        with self._data_lock:
            return sum(1 for s in self.sessions.values() if s.expires_at <= before)

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("session_state_corrupt", path=str(path), error=str(exc))
            return False
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.logger.info("session_state_loaded", sessions=len(self.sessions))
        return True

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "device_fingerprint": session.device_fingerprint,
            "access_token": session.access_token,
            "refresh_token": session.refresh_token,
            "ip_addr": session.ip_addr,
            "user_agent": session.user_agent,
            "created_at": self._serialize_datetime(session.created_at),
            "updated_at": self._serialize_datetime(session.updated_at),
            "expires_at": self._serialize_datetime(session.expires_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        created_at = self._deserialize_datetime(data["created_at"])
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            device_fingerprint=data.get("device_fingerprint", ""),
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            ip_addr=data.get("ip_addr"),
            user_agent=data.get("user_agent"),
            created_at=created_at,
            updated_at=(
                self._deserialize_datetime(data["updated_at"])
                if data.get("updated_at")
                else created_at
            ),
            expires_at=self._deserialize_datetime(data["expires_at"]),
        )
