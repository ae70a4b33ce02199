"""Tests for WorkflowEngine traversal, progress, checklists and recommendations."""

from datetime import timedelta
from unittest.mock import patch

import pytest

from task_guide.core.errors import (
    InvalidStepInput,
    SessionBindingError,
    StepNotAvailable,
    WorkflowClosed,
)
from task_guide.core.feedback_bus import ISSUE_DEADLOCK
from task_guide.core.session import SkipReason, StepCompletion, StepStatus, WorkflowStatus
from task_guide.workflow.dag import Step, StepGraph, build_step_graph
from task_guide.workflow.engine import (
    ISSUE_BRANCH_TYPE_MISMATCH,
    ChecklistStatus,
    WorkflowEngine,
)

from tests.unit.workflow_fixtures import (
    MAIL_NEEDS_PASSPORT,
    NOW,
    age_gated_graph,
    choice_graph,
    document_graph,
    make_session,
)


def _engine(graph):
    return WorkflowEngine(graph, clock=lambda: NOW)


def _walk(engine, session, *steps):
    """Complete steps in order, returning the final transition."""
    transition = None
    for step_id, value in steps:
        transition = engine.complete_step(session, step_id, value, now=NOW)
        session = transition.session
    return transition


class TestNextStep:
    def test_fresh_session_starts_at_first_step(self):
        engine = _engine(age_gated_graph())
        decision = engine.start(make_session(engine.graph)).decision

        assert decision.status == WorkflowStatus.NOT_STARTED
        assert decision.step_id == "step1"
        assert decision.available == ("step1",)

    def test_minor_skips_adult_only_step(self):
        """With age 16, step 2 is skipped and step 3 becomes next."""
        engine = _engine(age_gated_graph())
        session = make_session(engine.graph)

        transition = engine.complete_step(session, "step1", 16, now=NOW)

        assert transition.decision.step_id == "step3"
        assert transition.decision.status == WorkflowStatus.IN_PROGRESS
        assert transition.decision.skipped == ("step2",)
        assert transition.session.skipped_steps() == {"step2": SkipReason.CONDITION_FALSE}
        assert transition.session.context.get("age") == 16
        assert transition.session.current_step_id == "step3"

    def test_adult_takes_conditional_step(self):
        engine = _engine(age_gated_graph())
        transition = engine.complete_step(make_session(engine.graph), "step1", 30, now=NOW)

        assert transition.decision.step_id == "step2"
        assert transition.decision.needs_confirmation is False
        assert transition.session.skipped_step_ids() == []

    def test_unknown_condition_needs_confirmation(self):
        """A branch whose data is missing is offered, flagged for confirmation."""
        graph = build_step_graph("t", 1, [
            Step(id="a", sequence=1, condition=None),
            Step(id="b", sequence=2, prerequisites=("a",), condition=age_gated_graph().get("step2").condition),
        ])
        engine = _engine(graph)
        transition = engine.complete_step(make_session(graph), "a", now=NOW)

        assert transition.decision.step_id == "b"
        assert transition.decision.needs_confirmation is True
        assert transition.decision.missing_variables == ("age",)

    def test_prerequisites_lock_later_steps(self):
        engine = _engine(age_gated_graph())
        views = engine.step_states(make_session(engine.graph))

        assert views["step1"].status == StepStatus.AVAILABLE
        assert views["step2"].status == StepStatus.LOCKED
        assert views["step3"].status == StepStatus.LOCKED

    def test_completes_after_last_step(self):
        engine = _engine(age_gated_graph())
        transition = _walk(engine, make_session(engine.graph), ("step1", 40), ("step2", None), ("step3", None))

        assert transition.decision.status == WorkflowStatus.COMPLETED
        assert transition.decision.step is None
        assert transition.session.status == WorkflowStatus.COMPLETED
        assert transition.session.completed_step_ids() == ["step1", "step2", "step3"]

    def test_skip_cascade_can_complete_session(self):
        """Skipping the final applicable steps finishes the session."""
        graph = build_step_graph("t", 1, [
            Step(id="a", sequence=1),
            Step(id="b", sequence=2, prerequisites=("a",),
                 condition=age_gated_graph().get("step2").condition),
        ])
        engine = _engine(graph)
        session = make_session(graph, age=12)

        transition = engine.complete_step(session, "a", now=NOW)

        assert transition.decision.status == WorkflowStatus.COMPLETED
        assert transition.decision.skipped == ("b",)

    def test_abandoned_session(self):
        engine = _engine(age_gated_graph())
        state = engine.abandon(make_session(engine.graph), now=NOW)

        assert state.status == WorkflowStatus.ABANDONED
        assert engine.get_next_step(state, NOW).status == WorkflowStatus.ABANDONED


class TestChoiceGroups:
    def test_completing_one_alternative_skips_the_other(self):
        engine = _engine(choice_graph())
        transition = _walk(engine, make_session(engine.graph), ("intro", None), ("by_mail", None))

        assert transition.session.skipped_steps() == {"in_person": SkipReason.NOT_CHOSEN}
        assert transition.session.context.get("method") == "mail"
        assert transition.decision.step_id == "mail_tracking"

    def test_unchosen_branch_forecloses_its_dependents(self):
        engine = _engine(choice_graph())
        transition = _walk(engine, make_session(engine.graph), ("intro", None), ("in_person", None))

        skipped = transition.session.skipped_steps()
        assert skipped["by_mail"] == SkipReason.NOT_CHOSEN
        assert skipped["mail_tracking"] == SkipReason.FORECLOSED
        assert transition.decision.step_id == "finish"

    def test_join_step_reachable_from_either_branch(self):
        engine = _engine(choice_graph())
        transition = _walk(
            engine, make_session(engine.graph),
            ("intro", None), ("in_person", None), ("finish", None),
        )
        assert transition.decision.status == WorkflowStatus.COMPLETED

    def test_both_alternatives_available_after_intro(self):
        engine = _engine(choice_graph())
        transition = engine.complete_step(make_session(engine.graph), "intro", now=NOW)
        assert transition.decision.available == ("by_mail", "in_person")


class TestCompleteStep:
    def test_input_session_untouched(self):
        engine = _engine(age_gated_graph())
        session = make_session(engine.graph)
        before = session.model_dump()

        engine.complete_step(session, "step1", 20, now=NOW)

        assert session.model_dump() == before

    def test_invalid_input_leaves_no_partial_state(self):
        engine = _engine(age_gated_graph())
        session = make_session(engine.graph)
        before = session.model_dump()

        with pytest.raises(InvalidStepInput) as exc_info:
            engine.complete_step(session, "step1", "sixteen", now=NOW)

        assert exc_info.value.reason == "wrong_type"
        assert session.model_dump() == before

    def test_locked_step_not_available(self):
        engine = _engine(age_gated_graph())
        with pytest.raises(StepNotAvailable) as exc_info:
            engine.complete_step(make_session(engine.graph), "step3", now=NOW)
        assert exc_info.value.available == ["step1"]

    def test_step_cannot_be_completed_twice(self):
        engine = _engine(age_gated_graph())
        state = engine.complete_step(make_session(engine.graph), "step1", 20, now=NOW).session
        with pytest.raises(StepNotAvailable):
            engine.complete_step(state, "step1", 21, now=NOW)

    def test_unknown_step_not_available(self):
        engine = _engine(age_gated_graph())
        with pytest.raises(StepNotAvailable):
            engine.complete_step(make_session(engine.graph), "nope", now=NOW)

    def test_completed_session_is_closed(self):
        engine = _engine(age_gated_graph())
        state = _walk(engine, make_session(engine.graph), ("step1", 12), ("step3", None)).session
        assert state.status == WorkflowStatus.COMPLETED

        with pytest.raises(WorkflowClosed):
            engine.complete_step(state, "step3", now=NOW)
        with pytest.raises(WorkflowClosed):
            engine.abandon(state, now=NOW)

    def test_completion_slides_expiry(self):
        engine = _engine(age_gated_graph())
        session = make_session(engine.graph)
        later = NOW + timedelta(days=3)

        state = engine.complete_step(session, "step1", 20, now=later).session

        assert state.last_accessed_at == later
        assert state.expires_at - later == session.expires_at - session.last_accessed_at

    def test_user_issue_travels_with_transition(self):
        engine = _engine(age_gated_graph())
        transition = engine.complete_step(
            make_session(engine.graph), "step1", 20, now=NOW, issue="confusing_wording",
        )

        [flag] = transition.flags
        assert flag.issue_type == "confusing_wording"
        assert flag.reported_by == "user"
        assert flag.step_id == "step1"
        assert flag.emitted_at == NOW

    def test_plain_completion_has_no_flags(self):
        engine = _engine(age_gated_graph())
        assert engine.complete_step(make_session(engine.graph), "step1", 20, now=NOW).flags == ()


class TestUpdateContext:
    def test_new_context_re_decides_next_step(self):
        engine = _engine(age_gated_graph())
        state = engine.complete_step(make_session(engine.graph), "step1", 30, now=NOW).session

        transition = engine.update_context(state, {"age": 15}, now=NOW)

        assert transition.decision.step_id == "step3"
        assert transition.session.skipped_steps() == {"step2": SkipReason.CONDITION_FALSE}

    def test_none_removes_variable(self):
        engine = _engine(age_gated_graph())
        session = make_session(engine.graph, age=30, nickname="Al")

        state = engine.update_context(session, {"nickname": None}, now=NOW).session

        assert "nickname" not in state.context.variables
        assert session.context.get("nickname") == "Al"

    def test_eligibility_cache_follows_context(self):
        engine = _engine(choice_graph([MAIL_NEEDS_PASSPORT]))
        session = make_session(engine.graph, method="mail", has_passport=True)

        started = engine.start(session, NOW).session
        assert started.context.eligibility == {"mail_needs_passport": True}
        assert session.context.eligibility == {}

        updated = engine.update_context(started, {"has_passport": False}, now=NOW).session
        assert updated.context.eligibility == {"mail_needs_passport": False}


class TestDefects:
    def test_deadlock_is_flagged_once(self):
        steps = [
            Step(id="a", sequence=1, prerequisites=("b",)),
            Step(id="b", sequence=2, prerequisites=("a",)),
        ]
        with patch.object(StepGraph, "_validate"):
            graph = build_step_graph("broken", 1, steps)
        engine = _engine(graph)

        first = engine.start(make_session(graph), NOW)
        again = engine.update_context(first.session, {"note": "retry"}, now=NOW)

        assert first.decision.status == WorkflowStatus.DEADLOCKED
        assert first.decision.blocked == ("a", "b")
        assert again.session.status == WorkflowStatus.DEADLOCKED
        [deadlock] = [f for f in first.flags if f.issue_type == ISSUE_DEADLOCK]
        assert deadlock.detail["task_type"] == "broken"
        assert deadlock.detail["locked"] == ["a", "b"]
        assert not [f for f in again.flags if f.issue_type == ISSUE_DEADLOCK]

    def test_branch_type_mismatch_presents_step(self):
        """A broken condition shows the step for confirmation and flags the template once."""
        engine = _engine(age_gated_graph())
        session = make_session(engine.graph, age="old")
        session.history.append(StepCompletion(step_id="step1", timestamp=NOW))

        decision = engine.get_next_step(session.model_copy(deep=True), NOW)
        assert decision.step_id == "step2"
        assert decision.needs_confirmation is True
        assert engine.step_states(session, NOW)["step2"].condition_error

        transition = engine.update_context(session, {"nickname": "Al"}, now=NOW)
        [flag] = transition.flags
        assert flag.issue_type == ISSUE_BRANCH_TYPE_MISMATCH
        assert flag.step_id == "step2"
        assert flag.session_id == session.session_id

    def test_queries_leave_session_untouched(self):
        engine = _engine(age_gated_graph())
        session = make_session(engine.graph, age="old")
        session.history.append(StepCompletion(step_id="step1", timestamp=NOW))
        before = session.model_copy(deep=True)

        engine.get_progress(session, NOW)
        engine.get_document_checklist(session, NOW)
        engine.recommend_path(session, NOW)

        assert session == before

    def test_session_for_other_template_rejected(self):
        engine = _engine(age_gated_graph())
        with pytest.raises(SessionBindingError):
            engine.get_next_step(make_session(choice_graph()), NOW)

    def test_history_with_unknown_step_rejected(self):
        engine = _engine(age_gated_graph())
        session = make_session(engine.graph)
        session.history.append(StepCompletion(step_id="retired_step", timestamp=NOW))
        with pytest.raises(SessionBindingError):
            engine.get_next_step(session, NOW)


class TestProgress:
    def test_fresh_session(self):
        engine = _engine(age_gated_graph())
        progress = engine.get_progress(make_session(engine.graph), NOW)

        assert progress.total_steps == 3
        assert progress.completed_steps == 0
        assert progress.percent_complete == 0.0
        assert progress.estimated_time_remaining == 18
        assert progress.current_step_id == "step1"

    def test_skipped_steps_count_as_done(self):
        engine = _engine(age_gated_graph())
        state = engine.complete_step(make_session(engine.graph), "step1", 16, now=NOW).session
        progress = engine.get_progress(state, NOW)

        assert progress.completed_steps == 2
        assert progress.percent_complete == pytest.approx(200 / 3)
        assert progress.estimated_time_remaining == 3

    def test_progress_never_decreases(self):
        engine = _engine(choice_graph())
        session = make_session(engine.graph)
        seen = [engine.get_progress(session, NOW).percent_complete]
        for step_id in ("intro", "by_mail", "mail_tracking", "finish"):
            session = engine.complete_step(session, step_id, now=NOW).session
            seen.append(engine.get_progress(session, NOW).percent_complete)

        assert seen == sorted(seen)
        assert seen[-1] == 100.0

    def test_progress_does_not_mutate_session(self):
        engine = _engine(age_gated_graph())
        session = make_session(engine.graph)
        engine.get_progress(session, NOW)
        assert session.current_step_id is None


class TestDocumentChecklist:
    def test_unknown_gate_is_pending_not_omitted(self):
        engine = _engine(document_graph())
        checklist = engine.get_document_checklist(make_session(engine.graph), NOW)

        assert checklist.document_ids() == ["id_card", "birth_certificate", "consular_form"]
        assert [i.document_id for i in checklist.required()] == ["id_card"]
        pending = checklist.get("birth_certificate")
        assert pending.status == ChecklistStatus.PENDING_CONFIRMATION
        assert pending.missing_variables == ("country",)

    def test_known_context_resolves_documents(self):
        engine = _engine(document_graph())
        checklist = engine.get_document_checklist(make_session(engine.graph, country="US"), NOW)

        assert checklist.document_ids() == ["id_card", "birth_certificate"]
        assert checklist.pending() == []

    def test_optional_documents_keep_their_flag(self):
        engine = _engine(document_graph())
        checklist = engine.get_document_checklist(make_session(engine.graph, country="CA"), NOW)

        assert checklist.get("consular_form").mandatory is False
        assert checklist.get("birth_certificate") is None

    def test_skipped_steps_contribute_nothing(self):
        engine = _engine(choice_graph())
        state = _walk(engine, make_session(engine.graph), ("intro", None), ("by_mail", None)).session
        assert engine.get_document_checklist(state, NOW).items == ()


class TestEligibility:
    def test_evaluates_template_rules(self):
        engine = _engine(choice_graph([MAIL_NEEDS_PASSPORT]))
        result = engine.evaluate_eligibility(make_session(engine.graph, method="mail", has_passport=False))
        assert result.overall_eligible is False
        assert result.as_of == NOW.date()

    def test_missing_information_reported(self):
        engine = _engine(choice_graph([MAIL_NEEDS_PASSPORT]))
        result = engine.evaluate_eligibility(make_session(engine.graph))
        assert result.missing_information() == ["has_passport", "method"]


class TestRecommendPath:
    def _after_intro(self, engine, **variables):
        return engine.complete_step(make_session(engine.graph, **variables), "intro", now=NOW).session

    def test_prefers_shortest_path(self):
        engine = _engine(choice_graph())
        recommendation = engine.recommend_path(self._after_intro(engine), NOW)

        assert recommendation.choice_group == "submit"
        assert recommendation.step_id == "by_mail"
        assert recommendation.estimated_time_remaining == 30
        times = {o.step_id: o.estimated_time_remaining for o in recommendation.options}
        assert times == {"by_mail": 30, "in_person": 95}

    def test_skips_alternatives_that_fail_eligibility(self):
        engine = _engine(choice_graph([MAIL_NEEDS_PASSPORT]))
        recommendation = engine.recommend_path(self._after_intro(engine, has_passport=False), NOW)

        assert recommendation.step_id == "in_person"
        options = {o.step_id: o.keeps_eligible for o in recommendation.options}
        assert options == {"by_mail": False, "in_person": True}

    def test_missing_information_is_not_disqualifying(self):
        engine = _engine(choice_graph([MAIL_NEEDS_PASSPORT]))
        recommendation = engine.recommend_path(self._after_intro(engine), NOW)
        assert recommendation.step_id == "by_mail"

    def test_nothing_to_recommend_before_branch_point(self):
        engine = _engine(choice_graph())
        assert engine.recommend_path(make_session(engine.graph), NOW) is None

    def test_nothing_to_recommend_after_choice(self):
        engine = _engine(choice_graph())
        state = _walk(engine, make_session(engine.graph), ("intro", None), ("in_person", None)).session
        assert engine.recommend_path(state, NOW) is None
