"""Out-of-band anomaly flags for the feedback collaborator.

The engine produces ``{session_id, step_id, issue_type}`` flags and the session
manager publishes them here once the change is stored; aggregation and
prioritisation happen in independent subscribers. A failing subscriber is
logged and never affects the workflow.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)

# System-detected issue types
ISSUE_DEADLOCK = "deadlock"
ISSUE_RULE_TYPE_MISMATCH = "rule_type_mismatch"


@dataclass(frozen=True)
class FeedbackFlag:
    session_id: Optional[str]
    step_id: Optional[str]
    issue_type: str
    reported_by: str = "system"  # "system" or "user"
    detail: Dict[str, Any] = field(default_factory=dict)
    emitted_at: datetime = field(default_factory=lambda: datetime.now(UTC))


FeedbackHandler = Callable[[FeedbackFlag], None]


class FeedbackBus:
    """Fan-out of feedback flags to subscribers."""

    def __init__(self, keep_history: int = 100):
        self._handlers: List[FeedbackHandler] = []
        self._recent: Deque[FeedbackFlag] = deque(maxlen=keep_history)
        self._lock = threading.Lock()

    def subscribe(self, handler: FeedbackHandler) -> None:
        with self._lock:
            self._handlers.append(handler)

    def unsubscribe(self, handler: FeedbackHandler) -> None:
        with self._lock:
            if handler in self._handlers:
                self._handlers.remove(handler)

    @property
    def recent(self) -> List[FeedbackFlag]:
        """Most recently emitted flags (bounded)."""
        with self._lock:
            return list(self._recent)

    def emit(self, flag: FeedbackFlag) -> None:
        with self._lock:
            handlers = list(self._handlers)
            self._recent.append(flag)

        logger.info(
            f"Feedback flag {flag.issue_type} (session={flag.session_id}, "
            f"step={flag.step_id}, by={flag.reported_by})"
        )
        for handler in handlers:
            try:
                handler(flag)
            except Exception as e:
                logger.warning(f"Feedback handler {handler!r} failed (non-fatal): {e}")

    def emit_system(
        self,
        session_id: Optional[str],
        step_id: Optional[str],
        issue_type: str,
        detail: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.emit(FeedbackFlag(session_id, step_id, issue_type, "system", detail or {}))

    def emit_user(
        self,
        session_id: str,
        step_id: Optional[str],
        issue_type: str,
        detail: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.emit(FeedbackFlag(session_id, step_id, issue_type, "user", detail or {}))
