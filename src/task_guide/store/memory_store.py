"""In-process session store."""

import logging
import threading
from datetime import UTC, datetime, timedelta
from typing import Dict, List, Optional, Set

from ..core.errors import ConcurrentModification, SessionNotFound
from ..core.session import SessionState, SessionSummary
from .base import SessionStore

logger = logging.getLogger(__name__)


class InMemorySessionStore(SessionStore):
    """Keeps serialized sessions in a dict; for tests and single-process use.

    States are stored as JSON so callers never share mutable objects with
    the store.
    """

    def __init__(self):
        self._sessions: Dict[str, str] = {}
        self._versions: Dict[str, int] = {}
        self._tombstones: Set[str] = set()
        self._lock = threading.Lock()

    def save(self, state: SessionState, expected_version: int) -> SessionState:
        with self._lock:
            if state.session_id in self._tombstones:
                raise SessionNotFound(state.session_id)
            current = self._versions.get(state.session_id, 0)
            if current != expected_version:
                raise ConcurrentModification(state.session_id, expected_version, current)
            stored = state.model_copy(update={"version": expected_version + 1}, deep=True)
            self._sessions[state.session_id] = stored.to_json()
            self._versions[state.session_id] = stored.version
        return stored

    def load(self, session_id: str, now: Optional[datetime] = None) -> SessionState:
        now = now or datetime.now(UTC)
        with self._lock:
            data = self._sessions.get(session_id)
        if data is None:
            raise SessionNotFound(session_id)
        state = SessionState.from_json(data)
        if state.is_expired(now):
            raise SessionNotFound(session_id)
        return state

    def list_by_user(self, user_id: str, now: Optional[datetime] = None) -> List[SessionSummary]:
        now = now or datetime.now(UTC)
        with self._lock:
            payloads = list(self._sessions.values())
        states = [SessionState.from_json(p) for p in payloads]
        summaries = [s.summary() for s in states if s.user_id == user_id and not s.is_expired(now)]
        return sorted(summaries, key=lambda s: s.last_accessed_at, reverse=True)

    def expire_older_than(self, retention: timedelta, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(UTC)
        expired = 0
        with self._lock:
            for session_id, data in list(self._sessions.items()):
                state = SessionState.from_json(data)
                if state.is_expired(now) or now - state.last_accessed_at >= retention:
                    del self._sessions[session_id]
                    self._versions.pop(session_id, None)
                    self._tombstones.add(session_id)
                    expired += 1
        if expired:
            logger.info(f"Expired {expired} session(s) older than {retention}")
        return expired
