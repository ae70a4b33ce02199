"""Workflow engine: stateful traversal of a step graph for one session.

The engine decides the next actionable step, accepts completions, and derives
progress, document checklists, eligibility and path recommendations. It does
no I/O and never retries; persistence is the session manager's concern.

``complete_step``, ``update_context``, ``start`` and ``abandon`` are
copy-on-write: they return a new SessionState and leave their input untouched,
so a failure part-way through leaves no partially applied state behind.
``get_next_step`` records automatic skips on the session it is given.
Feedback flags raised by a change travel on its Transition; the engine never
publishes them itself.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Tuple

from ..core.errors import (
    MissingContextVariable,
    SessionBindingError,
    StepNotAvailable,
    TypeMismatch,
    WorkflowClosed,
)
from ..core.feedback_bus import ISSUE_DEADLOCK, ISSUE_RULE_TYPE_MISMATCH, FeedbackFlag
from ..core.session import (
    SessionState,
    SkipReason,
    StepCompletion,
    StepStatus,
    WorkflowStatus,
)
from .conditions import Condition
from .dag import Step, StepGraph
from .rules import EligibilityResult, RequirementStatus, RuleEvaluator

logger = logging.getLogger(__name__)

ISSUE_BRANCH_TYPE_MISMATCH = "branch_type_mismatch"

# Skips that foreclose dependents (the branch was never taken)
_FORECLOSING = (SkipReason.NOT_CHOSEN, SkipReason.FORECLOSED)


@dataclass(frozen=True)
class StepView:
    step_id: str
    status: StepStatus
    needs_confirmation: bool = False  # applicability unknown until more context arrives
    missing_variables: Tuple[str, ...] = ()
    skip_reason: Optional[SkipReason] = None
    condition_error: Optional[str] = None  # branch condition is a template defect


@dataclass(frozen=True)
class StepDecision:
    """Result of get_next_step."""
    status: WorkflowStatus
    step: Optional[Step] = None
    needs_confirmation: bool = False
    missing_variables: Tuple[str, ...] = ()
    available: Tuple[str, ...] = ()  # every AVAILABLE step, sequence order
    skipped: Tuple[str, ...] = ()  # steps skipped automatically by this call
    blocked: Tuple[str, ...] = ()  # LOCKED steps when deadlocked

    @property
    def step_id(self) -> Optional[str]:
        return self.step.id if self.step else None


@dataclass(frozen=True)
class Transition:
    """A new session state plus the decision it was advanced to.

    ``flags`` are feedback flags raised by the change; they are published by
    the caller once the new state is stored.
    """
    session: SessionState
    decision: StepDecision
    flags: Tuple[FeedbackFlag, ...] = ()


@dataclass(frozen=True)
class ProgressInfo:
    total_steps: int
    completed_steps: int  # COMPLETED + SKIPPED
    percent_complete: float  # 0-100
    estimated_time_remaining: int  # minutes
    status: WorkflowStatus
    current_step_id: Optional[str] = None


class ChecklistStatus(str, Enum):
    REQUIRED = "required"
    PENDING_CONFIRMATION = "pending_confirmation"


@dataclass(frozen=True)
class ChecklistItem:
    document_id: str
    step_id: str
    name: Mapping[str, str]
    mandatory: bool
    status: ChecklistStatus
    missing_variables: Tuple[str, ...] = ()


@dataclass(frozen=True)
class DocumentChecklist:
    items: Tuple[ChecklistItem, ...] = ()

    def required(self) -> List[ChecklistItem]:
        return [i for i in self.items if i.status == ChecklistStatus.REQUIRED]

    def pending(self) -> List[ChecklistItem]:
        return [i for i in self.items if i.status == ChecklistStatus.PENDING_CONFIRMATION]

    def document_ids(self) -> List[str]:
        return [i.document_id for i in self.items]

    def get(self, document_id: str) -> Optional[ChecklistItem]:
        for item in self.items:
            if item.document_id == document_id:
                return item
        return None


@dataclass(frozen=True)
class PathOption:
    step_id: str
    estimated_time_remaining: int
    keeps_eligible: bool
    preference: int


@dataclass(frozen=True)
class PathRecommendation:
    """Recommended alternative at an open choice group.

    ``step_id`` is None when every alternative would fail an eligibility check.
    """
    choice_group: str
    step_id: Optional[str]
    estimated_time_remaining: Optional[int]
    options: Tuple[PathOption, ...] = ()


class _Branch(Enum):
    APPLICABLE = "applicable"
    NOT_APPLICABLE = "not_applicable"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class _BranchOutcome:
    state: _Branch
    missing: Tuple[str, ...] = ()
    error: Optional[str] = None


def _utc_now() -> datetime:
    return datetime.now(UTC)


class WorkflowEngine:
    """Traverses one StepGraph on behalf of its sessions.

    A single engine is shared by every session of a template version; it
    holds no per-session state.
    """

    def __init__(
        self,
        graph: StepGraph,
        rule_evaluator: Optional[RuleEvaluator] = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.graph = graph
        self.rules = rule_evaluator or RuleEvaluator()
        self.conditions = self.rules.conditions
        self.clock = clock

    # --- Public operations ---

    def start(self, session: SessionState, now: Optional[datetime] = None) -> Transition:
        """Prime the eligibility cache and position a fresh session."""
        now = now or self.clock()
        self.check_binding(session)
        state = session.model_copy(deep=True)
        self._refresh_eligibility(state, None, now)
        decision = self.get_next_step(state, now)
        return Transition(state, decision, self.flags_for(session, state, now))

    def get_next_step(self, session: SessionState, now: Optional[datetime] = None) -> StepDecision:
        """Decide the next step, recording automatic skips on ``session``."""
        now = now or self.clock()
        self.check_binding(session)

        if session.status == WorkflowStatus.ABANDONED:
            session.current_step_id = None
            return StepDecision(status=WorkflowStatus.ABANDONED)

        skipped = self._settle(session, now)
        views = self._views(session, now.date())

        available = [v for v in self._in_sequence(views) if v.status == StepStatus.AVAILABLE]
        unfinished = [v for v in views.values()
                      if v.status not in (StepStatus.COMPLETED, StepStatus.SKIPPED)]
        previous = session.status

        if not unfinished:
            session.status = WorkflowStatus.COMPLETED
            session.current_step_id = None
            if previous != WorkflowStatus.COMPLETED:
                logger.info(f"Session {session.session_id} completed {self.graph.task_type}")
            return StepDecision(status=WorkflowStatus.COMPLETED, skipped=tuple(skipped))

        if not available:
            blocked = tuple(v.step_id for v in self._in_sequence(views) if v.status == StepStatus.LOCKED)
            session.status = WorkflowStatus.DEADLOCKED
            session.current_step_id = None
            if previous != WorkflowStatus.DEADLOCKED:
                self._report_deadlock(session, blocked)
            return StepDecision(
                status=WorkflowStatus.DEADLOCKED, skipped=tuple(skipped), blocked=blocked,
            )

        chosen = available[0]
        has_completions = any(not c.skipped for c in session.history)
        session.status = WorkflowStatus.IN_PROGRESS if has_completions else WorkflowStatus.NOT_STARTED
        session.current_step_id = chosen.step_id
        return StepDecision(
            status=session.status,
            step=self.graph.steps[chosen.step_id],
            needs_confirmation=chosen.needs_confirmation,
            missing_variables=chosen.missing_variables,
            available=tuple(v.step_id for v in available),
            skipped=tuple(skipped),
        )

    def complete_step(
        self,
        session: SessionState,
        step_id: str,
        value: Any = None,
        now: Optional[datetime] = None,
        issue: Optional[str] = None,
    ) -> Transition:
        """Complete an AVAILABLE step with validated input.

        Raises StepNotAvailable for stale requests and InvalidStepInput when
        the value does not match the step's declared input.
        ``issue`` is a user-reported issue type, returned as a flag.
        """
        now = now or self.clock()
        self.check_binding(session)
        if session.is_closed:
            raise WorkflowClosed(session.session_id, session.status.value)

        state = session.model_copy(deep=True)
        self._settle(state, now)
        views = self._views(state, now.date())
        view = views.get(step_id)
        if view is None or view.status != StepStatus.AVAILABLE:
            available = [v.step_id for v in self._in_sequence(views) if v.status == StepStatus.AVAILABLE]
            raise StepNotAvailable(step_id, available)

        step = self.graph.steps[step_id]
        stored = step.input.validate(step_id, value)

        updates: Dict[str, Any] = dict(step.implies)
        if step.input.context_key and stored is not None:
            updates[step.input.context_key] = stored

        state.history.append(StepCompletion(step_id=step_id, timestamp=now, input_value=stored))
        self._close_choice_group(state, step, now)
        if updates:
            state.context.variables = state.context.merged(updates)
        self._refresh_eligibility(state, frozenset(updates), now)
        state.touch(now)

        decision = self.get_next_step(state, now)
        logger.debug(
            f"Session {state.session_id}: completed '{step_id}', next={decision.step_id} "
            f"({decision.status.value})"
        )
        flags = self.flags_for(session, state, now, issue=(step_id, issue) if issue else None)
        return Transition(state, decision, flags)

    def update_context(
        self,
        session: SessionState,
        updates: Mapping[str, Any],
        now: Optional[datetime] = None,
    ) -> Transition:
        """Merge context values (None removes one) and re-decide the next step."""
        now = now or self.clock()
        self.check_binding(session)
        if session.is_closed:
            raise WorkflowClosed(session.session_id, session.status.value)

        state = session.model_copy(deep=True)
        state.context.variables = state.context.merged(dict(updates))
        self._refresh_eligibility(state, frozenset(updates), now)
        state.touch(now)
        decision = self.get_next_step(state, now)
        return Transition(state, decision, self.flags_for(session, state, now))

    def abandon(self, session: SessionState, now: Optional[datetime] = None) -> SessionState:
        now = now or self.clock()
        if session.status == WorkflowStatus.COMPLETED:
            raise WorkflowClosed(session.session_id, session.status.value)
        state = session.model_copy(deep=True)
        state.status = WorkflowStatus.ABANDONED
        state.current_step_id = None
        state.touch(now)
        logger.info(f"Session {state.session_id} abandoned at {session.current_step_id}")
        return state

    def step_states(self, session: SessionState, now: Optional[datetime] = None) -> Dict[str, StepView]:
        """Status of every step, as get_next_step would see it."""
        now = now or self.clock()
        self.check_binding(session)
        state = session.model_copy(deep=True)
        self._settle(state, now)
        return self._views(state, now.date())

    def get_progress(self, session: SessionState, now: Optional[datetime] = None) -> ProgressInfo:
        now = now or self.clock()
        self.check_binding(session)
        state = session.model_copy(deep=True)
        if not state.is_closed:
            self.get_next_step(state, now)

        total = len(self.graph)
        finished = state.finished_step_ids()
        completed = len(finished)
        return ProgressInfo(
            total_steps=total,
            completed_steps=completed,
            percent_complete=100.0 * completed / total,
            estimated_time_remaining=self._remaining_minutes(state, now.date()),
            status=state.status,
            current_step_id=state.current_step_id,
        )

    def get_document_checklist(
        self, session: SessionState, now: Optional[datetime] = None
    ) -> DocumentChecklist:
        """Documents of reachable steps; unknown gates are pending, never omitted."""
        now = now or self.clock()
        self.check_binding(session)
        state = session.model_copy(deep=True)
        self._settle(state, now)
        as_of = now.date()
        skipped = state.skipped_steps()
        variables = state.context.variables

        items: List[ChecklistItem] = []
        for step in self.graph.ordered_steps():
            if step.id in skipped:
                continue
            if self._branch(step.condition, variables, as_of, step.id).state == _Branch.NOT_APPLICABLE:
                continue
            for document in step.documents:
                gate = self._branch(document.condition, variables, as_of, step.id)
                if gate.state == _Branch.NOT_APPLICABLE:
                    continue
                status = (
                    ChecklistStatus.PENDING_CONFIRMATION if gate.state == _Branch.UNKNOWN
                    else ChecklistStatus.REQUIRED
                )
                items.append(ChecklistItem(
                    document_id=document.id,
                    step_id=step.id,
                    name=document.name,
                    mandatory=document.mandatory,
                    status=status,
                    missing_variables=gate.missing,
                ))
        return DocumentChecklist(tuple(items))

    def evaluate_eligibility(
        self, session: SessionState, as_of: Optional[date] = None
    ) -> EligibilityResult:
        as_of = as_of or self.clock().date()
        return self.rules.evaluate_rule_set(
            self.graph.rule_set, session.context.variables, as_of, session_id=session.session_id,
        )

    def recommend_path(
        self, session: SessionState, now: Optional[datetime] = None
    ) -> Optional[PathRecommendation]:
        """Cheapest eligible alternative at the first open user-choice branch point.

        Returns None when no choice group currently offers two or more
        AVAILABLE alternatives.
        """
        now = now or self.clock()
        self.check_binding(session)
        state = session.model_copy(deep=True)
        self._settle(state, now)
        views = self._views(state, now.date())
        completed = set(state.completed_step_ids())

        for group, members in self._groups_by_first_member():
            if completed.intersection(members):
                continue
            candidates = [m for m in members if views[m].status == StepStatus.AVAILABLE]
            if len(candidates) < 2:
                continue

            options = tuple(self._simulate_choice(state, candidate, now) for candidate in candidates)
            eligible = [o for o in options if o.keeps_eligible]
            if not eligible:
                return PathRecommendation(group, None, None, options)
            best = min(
                eligible,
                key=lambda o: (o.estimated_time_remaining, o.preference,
                               self.graph.steps[o.step_id].sequence),
            )
            return PathRecommendation(group, best.step_id, best.estimated_time_remaining, options)
        return None

    def check_binding(self, session: SessionState) -> None:
        """Sessions must reference this graph and only its step ids."""
        if (session.task_type, session.template_version) != self.graph.key:
            raise SessionBindingError(
                f"Session {session.session_id} is bound to {session.task_type} "
                f"v{session.template_version}, engine serves {self.graph.task_type} "
                f"v{self.graph.version}"
            )
        unknown = session.finished_step_ids() - self.graph.step_ids
        if unknown:
            raise SessionBindingError(
                f"Session {session.session_id} history references unknown steps: "
                f"{', '.join(sorted(unknown))}"
            )

    def flags_for(
        self,
        before: SessionState,
        after: SessionState,
        now: datetime,
        issue: Optional[Tuple[str, str]] = None,
    ) -> Tuple[FeedbackFlag, ...]:
        """Feedback flags raised by moving ``before`` to ``after``.

        At most one flag per (step, issue type). Deadlock is flagged only on
        entering DEADLOCKED. ``issue`` is a user-reported ``(step_id, issue_type)``.
        Nothing is emitted here.
        """
        as_of = now.date()
        flags: Dict[Tuple[Optional[str], str], FeedbackFlag] = {}

        def add(step_id: Optional[str], issue_type: str, detail: Dict[str, Any], by: str = "system"):
            key = (step_id, issue_type)
            if key not in flags:
                flags[key] = FeedbackFlag(after.session_id, step_id, issue_type, by, detail, emitted_at=now)

        if issue is not None:
            add(issue[0], issue[1], {}, by="user")

        views = self._views(after, as_of)
        if after.status == WorkflowStatus.DEADLOCKED and before.status != WorkflowStatus.DEADLOCKED:
            add(None, ISSUE_DEADLOCK, {
                "task_type": self.graph.task_type,
                "version": self.graph.version,
                "locked": [v.step_id for v in self._in_sequence(views) if v.status == StepStatus.LOCKED],
            })

        variables = after.context.variables
        for view in self._in_sequence(views):
            if view.status != StepStatus.AVAILABLE:
                continue
            step = self.graph.steps[view.step_id]
            errors = {}
            if view.condition_error:
                errors[str(step.condition)] = view.condition_error
            for document in step.documents:
                gate = self._branch(document.condition, variables, as_of, step.id)
                if gate.error:
                    errors[str(document.condition)] = gate.error
            if errors:
                logger.error(
                    f"Session {after.session_id}: conditions on step '{step.id}' "
                    f"cannot be evaluated: {errors}"
                )
                add(step.id, ISSUE_BRANCH_TYPE_MISMATCH, {"errors": errors})

        broken = {r.rule_id: r.error for r in self.evaluate_eligibility(after, as_of).requirements if r.error}
        if broken:
            add(None, ISSUE_RULE_TYPE_MISMATCH, {"rules": broken})
        return tuple(flags.values())

    # --- Traversal internals ---

    def _in_sequence(self, views: Mapping[str, StepView]) -> List[StepView]:
        return [views[s.id] for s in self.graph.ordered_steps()]

    def _branch(
        self,
        condition: Optional[Condition],
        variables: Mapping[str, Any],
        as_of: date,
        step_id: str,
    ) -> _BranchOutcome:
        if condition is None:
            return _BranchOutcome(_Branch.APPLICABLE)
        try:
            if self.conditions.evaluate(condition, variables, as_of):
                return _BranchOutcome(_Branch.APPLICABLE)
            return _BranchOutcome(_Branch.NOT_APPLICABLE)
        except MissingContextVariable as e:
            return _BranchOutcome(_Branch.UNKNOWN, tuple(e.variables))
        except TypeMismatch as e:
            # Template defect: present the step rather than hide it
            logger.debug(f"Condition '{condition}' on step '{step_id}' cannot be evaluated: {e.message}")
            return _BranchOutcome(_Branch.UNKNOWN, error=e.message)

    def _settle(self, session: SessionState, now: datetime) -> List[str]:
        """Record automatic skips until no further step can be skipped.

        A step is skipped when all its prerequisites are finished and either
        every prerequisite was foreclosed (FORECLOSED) or its branch condition
        evaluates false (CONDITION_FALSE). Skips satisfy prerequisites, so the
        loop repeats until it reaches a fixed point.
        """
        as_of = now.date()
        variables = session.context.variables
        newly_skipped: List[str] = []
        changed = True
        while changed:
            changed = False
            finished = session.finished_step_ids()
            skips = session.skipped_steps()
            for step in self.graph.ordered_steps():
                if step.id in finished:
                    continue
                if not all(p in finished for p in step.prerequisites):
                    continue
                reason = None
                if step.prerequisites and all(skips.get(p) in _FORECLOSING for p in step.prerequisites):
                    reason = SkipReason.FORECLOSED
                elif self._branch(step.condition, variables, as_of, step.id).state == _Branch.NOT_APPLICABLE:
                    reason = SkipReason.CONDITION_FALSE
                if reason is None:
                    continue
                session.history.append(StepCompletion(
                    step_id=step.id, timestamp=now, skipped=True, skip_reason=reason,
                ))
                finished.add(step.id)
                skips[step.id] = reason
                newly_skipped.append(step.id)
                changed = True
                logger.debug(f"Session {session.session_id}: skipped '{step.id}' ({reason.value})")
        return newly_skipped

    def _views(self, session: SessionState, as_of: date) -> Dict[str, StepView]:
        finished = {c.step_id: c for c in session.history}
        variables = session.context.variables
        views: Dict[str, StepView] = {}
        for step in self.graph.ordered_steps():
            record = finished.get(step.id)
            if record is not None:
                status = StepStatus.SKIPPED if record.skipped else StepStatus.COMPLETED
                views[step.id] = StepView(step.id, status, skip_reason=record.skip_reason)
            elif all(p in finished for p in step.prerequisites):
                outcome = self._branch(step.condition, variables, as_of, step.id)
                views[step.id] = StepView(
                    step.id,
                    StepStatus.AVAILABLE,
                    needs_confirmation=outcome.state == _Branch.UNKNOWN,
                    missing_variables=outcome.missing,
                    condition_error=outcome.error,
                )
            else:
                views[step.id] = StepView(step.id, StepStatus.LOCKED)
        return views

    def _close_choice_group(self, session: SessionState, step: Step, now: datetime) -> None:
        if not step.choice_group:
            return
        finished = session.finished_step_ids()
        for member in self.graph.choice_groups[step.choice_group]:
            if member == step.id or member in finished:
                continue
            session.history.append(StepCompletion(
                step_id=member, timestamp=now, skipped=True, skip_reason=SkipReason.NOT_CHOSEN,
            ))

    def _refresh_eligibility(
        self, session: SessionState, changed: Optional[FrozenSet[str]], now: datetime
    ) -> None:
        recomputed = self.rules.refresh_cache(
            self.graph.rule_set,
            session.context.eligibility,
            session.context.variables,
            now.date(),
            changed=changed,
            session_id=session.session_id,
        )
        if recomputed:
            logger.debug(f"Session {session.session_id}: refreshed eligibility for {recomputed}")

    def _remaining_minutes(self, session: SessionState, as_of: date) -> int:
        finished = session.finished_step_ids()
        variables = session.context.variables
        total = 0
        for step in self.graph.ordered_steps():
            if step.id in finished:
                continue
            if self._branch(step.condition, variables, as_of, step.id).state == _Branch.NOT_APPLICABLE:
                continue
            total += step.estimated_minutes
        return total

    def _groups_by_first_member(self) -> List[Tuple[str, Tuple[str, ...]]]:
        return sorted(
            self.graph.choice_groups.items(),
            key=lambda item: min(self.graph.steps[m].sequence for m in item[1]),
        )

    def _simulate_choice(self, state: SessionState, step_id: str, now: datetime) -> PathOption:
        step = self.graph.steps[step_id]
        sim = state.model_copy(deep=True)
        sim.history.append(StepCompletion(step_id=step_id, timestamp=now))
        self._close_choice_group(sim, step, now)
        if step.implies:
            sim.context.variables = sim.context.merged(dict(step.implies))
        self._settle(sim, now)

        result = self.rules.evaluate_rule_set(
            self.graph.rule_set, sim.context.variables, now.date(), session_id=state.session_id,
        )
        # Missing data is not disqualifying; only a definite failed check is
        keeps_eligible = not any(
            r.status == RequirementStatus.FAILED
            and self.graph.rule_set.get(r.rule_id).gates_eligibility
            for r in result.requirements
        )
        return PathOption(
            step_id=step_id,
            estimated_time_remaining=step.estimated_minutes + self._remaining_minutes(sim, now.date()),
            keeps_eligible=keeps_eligible,
            preference=step.preference,
        )

    def _report_deadlock(self, session: SessionState, blocked: Tuple[str, ...]) -> None:
        logger.error(
            f"Session {session.session_id} deadlocked in {self.graph.task_type} "
            f"v{self.graph.version}: no available step, locked={list(blocked)}"
        )
