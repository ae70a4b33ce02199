"""Session manager: load, run the engine, save.

Every mutation of a session runs under that session's lock and ends with a
compare-and-set save, so concurrent writers to one session are serialized
and a stale writer gets ConcurrentModification instead of overwriting.
Store calls go through the RetryHandler; the engine itself never retries.
Feedback flags of a change are published only after its save succeeds.
"""

import logging
import threading
from datetime import UTC, date, datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from ..safeguards.retry_handler import RetryHandler
from ..store.base import SessionStore
from ..store.file_store import FileSessionStore
from ..store.locks import SessionLocks
from ..store.memory_store import InMemorySessionStore
from ..utils.rich_logging import get_context_logger
from ..workflow.conditions import ConditionEvaluator, MissingVariablePolicy
from ..workflow.engine import (
    DocumentChecklist,
    PathRecommendation,
    ProgressInfo,
    StepDecision,
    Transition,
    WorkflowEngine,
)
from ..workflow.rules import EligibilityResult, RuleEvaluator
from .config import PersistenceConfig, TaskGuideConfig
from .errors import ConcurrentModification
from .feedback_bus import FeedbackBus, FeedbackFlag
from .session import SessionState, SessionSummary, WorkflowStatus
from .template_registry import TemplateRegistry, load_registry

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def build_store(persistence: PersistenceConfig) -> SessionStore:
    if persistence.backend == "memory":
        return InMemorySessionStore()
    return FileSessionStore(
        persistence.directory,
        lock_timeout=persistence.timeout_seconds,
        durable=persistence.fsync,
    )


class SessionManager:
    """Runs engine operations against stored sessions."""

    def __init__(
        self,
        registry: TemplateRegistry,
        store: SessionStore,
        config: Optional[TaskGuideConfig] = None,
        feedback_bus: Optional[FeedbackBus] = None,
        retry_handler: Optional[RetryHandler] = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.registry = registry
        self.store = store
        self.config = config or TaskGuideConfig()
        self.feedback_bus = feedback_bus or FeedbackBus()
        self.retry = retry_handler or RetryHandler.from_config(self.config.persistence)
        self.clock = clock
        self._locks = SessionLocks()
        self._engines: Dict[Tuple[str, int], WorkflowEngine] = {}
        self._engines_lock = threading.Lock()

        policy = MissingVariablePolicy(self.config.evaluation.missing_variable_policy)
        self._rule_evaluator = RuleEvaluator(ConditionEvaluator(policy))

    @classmethod
    def from_config(cls, config: TaskGuideConfig, feedback_bus: Optional[FeedbackBus] = None) -> "SessionManager":
        return cls(
            registry=load_registry(config.templates_dir),
            store=build_store(config.persistence),
            config=config,
            feedback_bus=feedback_bus,
        )

    def engine_for(self, task_type: str, version: int) -> WorkflowEngine:
        """One engine per template version, shared by all its sessions."""
        key = (task_type, version)
        with self._engines_lock:
            engine = self._engines.get(key)
            if engine is None:
                engine = WorkflowEngine(
                    self.registry.graph(task_type, version),
                    rule_evaluator=self._rule_evaluator,
                    clock=self.clock,
                )
                self._engines[key] = engine
            return engine

    # --- Store access ---

    def _load(self, session_id: str, now: datetime) -> SessionState:
        return self.retry.call(self.store.load, session_id, now, description=f"load {session_id}")

    def _save(self, state: SessionState, expected_version: int) -> SessionState:
        return self.retry.call(
            self.store.save, state, expected_version, description=f"save {state.session_id}"
        )

    def _publish(self, flags: Iterable[FeedbackFlag]) -> None:
        """Deliver flags of a committed change."""
        for flag in flags:
            self.feedback_bus.emit(flag)

    def _mutate(
        self,
        session_id: str,
        expected_version: Optional[int],
        now: datetime,
        operation: Callable[[WorkflowEngine, SessionState], Transition],
    ) -> Transition:
        with self._locks.hold(session_id):
            state = self._load(session_id, now)
            if expected_version is not None and state.version != expected_version:
                raise ConcurrentModification(session_id, expected_version, state.version)
            engine = self.engine_for(state.task_type, state.template_version)
            transition = operation(engine, state)
            saved = self._save(transition.session, state.version)
        self._publish(transition.flags)
        return Transition(saved, transition.decision, transition.flags)

    # --- Operations ---

    def create_session(
        self,
        task_type: str,
        user_id: Optional[str] = None,
        language_code: Optional[str] = None,
        version: Optional[int] = None,
        variables: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Transition:
        """Start a session on a confirmed task type (latest version by default)."""
        now = now or self.clock()
        template = self.registry.get(task_type, version)
        state = SessionState.new(
            task_type=template.task_type,
            template_version=template.version,
            user_id=user_id,
            language_code=language_code or self.config.default_language,
            retention_days=self.config.persistence.retention_days,
            now=now,
            variables=dict(variables or {}),
        )
        engine = self.engine_for(template.task_type, template.version)
        transition = engine.start(state, now)
        saved = self._save(transition.session, 0)
        self._publish(transition.flags)

        log = get_context_logger(__name__)
        log.session_started(saved.session_id, saved.task_type, saved.template_version)
        return Transition(saved, transition.decision, transition.flags)

    def load(self, session_id: str, now: Optional[datetime] = None) -> SessionState:
        return self._load(session_id, now or self.clock())

    def resume(self, session_id: str, now: Optional[datetime] = None) -> Transition:
        """Reload a session, record the access, and decide its next step."""
        now = now or self.clock()

        def operation(engine: WorkflowEngine, state: SessionState) -> Transition:
            updated = state.model_copy(deep=True)
            decision = engine.get_next_step(updated, now)
            updated.touch(now)
            return Transition(updated, decision, engine.flags_for(state, updated, now))

        return self._mutate(session_id, None, now, operation)

    def next_step(self, session_id: str, now: Optional[datetime] = None) -> StepDecision:
        return self.resume(session_id, now).decision

    def complete_step(
        self,
        session_id: str,
        step_id: str,
        value: Any = None,
        expected_version: Optional[int] = None,
        issue: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Transition:
        now = now or self.clock()
        transition = self._mutate(
            session_id, expected_version, now,
            lambda engine, state: engine.complete_step(state, step_id, value, now=now, issue=issue),
        )
        log = get_context_logger(__name__)
        log.set_session_context(session_id=session_id, task_type=transition.session.task_type)
        log.step_completed(step_id, transition.decision.step_id)
        if transition.session.is_closed:
            log.session_closed(transition.session.status.value)
        return transition

    def update_context(
        self,
        session_id: str,
        updates: Mapping[str, Any],
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Transition:
        now = now or self.clock()
        return self._mutate(
            session_id, expected_version, now,
            lambda engine, state: engine.update_context(state, updates, now=now),
        )

    def abandon(
        self,
        session_id: str,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> SessionState:
        now = now or self.clock()
        transition = self._mutate(
            session_id, expected_version, now,
            lambda engine, state: Transition(
                engine.abandon(state, now),
                StepDecision(status=WorkflowStatus.ABANDONED),
            ),
        )
        self._locks.discard(session_id)
        return transition.session

    def progress(self, session_id: str, now: Optional[datetime] = None) -> ProgressInfo:
        now = now or self.clock()
        state = self._load(session_id, now)
        return self.engine_for(state.task_type, state.template_version).get_progress(state, now)

    def checklist(self, session_id: str, now: Optional[datetime] = None) -> DocumentChecklist:
        now = now or self.clock()
        state = self._load(session_id, now)
        return self.engine_for(state.task_type, state.template_version).get_document_checklist(state, now)

    def eligibility(self, session_id: str, as_of: Optional[date] = None) -> EligibilityResult:
        now = self.clock()
        state = self._load(session_id, now)
        engine = self.engine_for(state.task_type, state.template_version)
        return engine.evaluate_eligibility(state, as_of or now.date())

    def recommend_path(self, session_id: str, now: Optional[datetime] = None) -> Optional[PathRecommendation]:
        now = now or self.clock()
        state = self._load(session_id, now)
        return self.engine_for(state.task_type, state.template_version).recommend_path(state, now)

    def list_sessions(self, user_id: str, now: Optional[datetime] = None) -> List[SessionSummary]:
        return self.retry.call(
            self.store.list_by_user, user_id, now or self.clock(), description=f"list {user_id}"
        )

    def expire(self, now: Optional[datetime] = None) -> int:
        retention = timedelta(days=self.config.persistence.retention_days)
        count = self.retry.call(
            self.store.expire_older_than, retention, now or self.clock(), description="expire"
        )
        self._locks.prune()
        logger.info(f"Expired {count} session(s)")
        return count

    def close(self) -> None:
        self.retry.shutdown()
