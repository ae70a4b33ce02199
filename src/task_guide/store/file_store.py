"""File-based session store using one JSON file per session."""

import json
import logging
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from ..core.errors import ConcurrentModification, SessionNotFound, StoreError, StoreUnavailable
from ..core.session import SessionState, SessionSummary
from ..utils.atomic_io import atomic_write_model
from .base import SessionStore
from .locks import FileLock

logger = logging.getLogger(__name__)


class FileSessionStore(SessionStore):
    """
    Session store on the local filesystem.

    Layout under ``directory``:
    - sessions/<session_id>.json   current state, written via temp file + rename
      (fsynced unless ``durable`` is off)
    - locks/<session_id>.lock/     mkdir lock held around read-compare-write
    - tombstones/<session_id>      marker for expired ids (never reused)
    """

    def __init__(self, directory: Path, lock_timeout: float = 10.0, durable: bool = True):
        self.directory = Path(directory)
        self.durable = durable
        self.sessions_dir = self.directory / "sessions"
        self.lock_dir = self.directory / "locks"
        self.tombstone_dir = self.directory / "tombstones"
        self.lock_timeout = lock_timeout
        self._ensure_dirs()

    def _ensure_dirs(self) -> None:
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        self.tombstone_dir.mkdir(parents=True, exist_ok=True)

    def _session_file(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}.json"

    def _is_tombstoned(self, session_id: str) -> bool:
        return (self.tombstone_dir / session_id).exists()

    def _lock(self, session_id: str) -> FileLock:
        lock = FileLock(self.lock_dir, session_id)
        if not lock.acquire(timeout=self.lock_timeout):
            raise StoreUnavailable(f"Timed out waiting for lock on session {session_id}")
        return lock

    def save(self, state: SessionState, expected_version: int) -> SessionState:
        session_file = self._session_file(state.session_id)
        lock = self._lock(state.session_id)
        try:
            if self._is_tombstoned(state.session_id):
                raise SessionNotFound(state.session_id)
            current = self._stored_version(session_file)
            if current != expected_version:
                raise ConcurrentModification(state.session_id, expected_version, current)

            stored = state.model_copy(update={"version": expected_version + 1}, deep=True)
            try:
                atomic_write_model(session_file, stored, durable=self.durable)
            except OSError as e:
                raise StoreUnavailable(f"Failed to write session {state.session_id}: {e}") from e
            logger.debug(f"Saved session {state.session_id} v{stored.version}")
            return stored
        finally:
            lock.release()

    def load(self, session_id: str, now: Optional[datetime] = None) -> SessionState:
        now = now or datetime.now(UTC)
        if self._is_tombstoned(session_id):
            raise SessionNotFound(session_id)
        session_file = self._session_file(session_id)
        try:
            state = self._read(session_file)
        except FileNotFoundError:
            raise SessionNotFound(session_id) from None
        if state.is_expired(now):
            raise SessionNotFound(session_id)
        return state

    def list_by_user(self, user_id: str, now: Optional[datetime] = None) -> List[SessionSummary]:
        now = now or datetime.now(UTC)
        summaries = []
        for session_file in sorted(self.sessions_dir.glob("*.json")):
            try:
                state = self._read(session_file)
            except FileNotFoundError:
                continue
            except StoreError as e:
                logger.warning(f"Skipping unreadable session file {session_file}: {e}")
                continue
            if state.user_id == user_id and not state.is_expired(now):
                summaries.append(state.summary())
        return sorted(summaries, key=lambda s: s.last_accessed_at, reverse=True)

    def expire_older_than(self, retention: timedelta, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(UTC)
        expired = 0
        for session_file in sorted(self.sessions_dir.glob("*.json")):
            session_id = session_file.stem
            lock = self._lock(session_id)
            try:
                try:
                    state = self._read(session_file)
                except FileNotFoundError:
                    continue
                if not (state.is_expired(now) or now - state.last_accessed_at >= retention):
                    continue
                # Tombstone first so a crash in between never resurrects the id
                (self.tombstone_dir / session_id).write_text(now.isoformat())
                session_file.unlink()
                expired += 1
            finally:
                lock.release()
        if expired:
            logger.info(f"Expired {expired} session(s) older than {retention}")
        return expired

    def _stored_version(self, session_file: Path) -> int:
        if not session_file.exists():
            return 0
        try:
            return int(json.loads(session_file.read_text()).get("version", 0))
        except (json.JSONDecodeError, ValueError) as e:
            raise StoreError(f"Corrupt session file {session_file}: {e}") from e
        except OSError as e:
            raise StoreUnavailable(f"Failed to read {session_file}: {e}") from e

    @staticmethod
    def _read(session_file: Path) -> SessionState:
        try:
            data = session_file.read_text()
        except FileNotFoundError:
            raise
        except OSError as e:
            raise StoreUnavailable(f"Failed to read {session_file}: {e}") from e
        try:
            return SessionState.from_json(data)
        except ValidationError as e:
            raise StoreError(f"Corrupt session file {session_file}: {e}") from e
