"""Session store contract."""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import List, Optional

from ..core.session import SessionState, SessionSummary


class SessionStore(ABC):
    """Durable, versioned storage of SessionState.

    ``save`` is a compare-and-set on ``version``: it succeeds only when the
    stored version equals ``expected_version`` (0 for a new session) and
    returns the stored copy with ``version = expected_version + 1``.
    Expired or tombstoned sessions are indistinguishable from unknown ones.
    """

    @abstractmethod
    def save(self, state: SessionState, expected_version: int) -> SessionState:
        """Persist atomically or raise ConcurrentModification / StoreUnavailable."""

    @abstractmethod
    def load(self, session_id: str, now: Optional[datetime] = None) -> SessionState:
        """Return the stored state or raise SessionNotFound."""

    @abstractmethod
    def list_by_user(self, user_id: str, now: Optional[datetime] = None) -> List[SessionSummary]:
        """Live sessions of a user, most recently accessed first."""

    @abstractmethod
    def expire_older_than(self, retention: timedelta, now: Optional[datetime] = None) -> int:
        """Tombstone sessions not accessed within ``retention`` or past their expiry.

        Returns the number of sessions expired.
        """
