"""Error hierarchy for template loading, evaluation, workflow and persistence.

Every error carries a stable ``code`` and ``to_dict()`` so callers can explain
what is missing or wrong without parsing messages.
"""

from typing import Any, Dict, Iterable, List, Optional, Sequence


class TaskGuideError(Exception):
    """Base exception for all task-guide errors."""

    code = "task_guide_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def details(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.details()}


# --- Template loading (fatal at load time) ---


class TemplateValidationError(TaskGuideError):
    """Malformed template: never surfaced mid-session."""

    code = "template_invalid"


class EmptyTemplate(TemplateValidationError):
    code = "empty_template"


class DuplicateStepId(TemplateValidationError):
    code = "duplicate_step_id"

    def __init__(self, step_id: str):
        super().__init__(f"Step id '{step_id}' is declared more than once")
        self.step_id = step_id

    def details(self) -> Dict[str, Any]:
        return {"step_id": self.step_id}


class DuplicateSequence(TemplateValidationError):
    code = "duplicate_sequence"

    def __init__(self, sequence: int, step_ids: Sequence[str]):
        super().__init__(
            f"Sequence {sequence} is shared by steps {', '.join(step_ids)}"
        )
        self.sequence = sequence
        self.step_ids = list(step_ids)

    def details(self) -> Dict[str, Any]:
        return {"sequence": self.sequence, "step_ids": self.step_ids}


class UnknownPrerequisite(TemplateValidationError):
    code = "unknown_prerequisite"

    def __init__(self, step_id: str, prerequisite: str):
        super().__init__(
            f"Step '{step_id}' requires non-existent step '{prerequisite}'"
        )
        self.step_id = step_id
        self.prerequisite = prerequisite

    def details(self) -> Dict[str, Any]:
        return {"step_id": self.step_id, "prerequisite": self.prerequisite}


class CyclicDependency(TemplateValidationError):
    code = "cyclic_dependency"

    def __init__(self, cycle: Sequence[str]):
        super().__init__(f"Prerequisite cycle: {' -> '.join(cycle)}")
        self.cycle = list(cycle)

    def details(self) -> Dict[str, Any]:
        return {"cycle": self.cycle}


class DuplicateRuleId(TemplateValidationError):
    code = "duplicate_rule_id"

    def __init__(self, rule_id: str):
        super().__init__(f"Rule id '{rule_id}' is declared more than once")
        self.rule_id = rule_id


class InvalidRule(TemplateValidationError):
    code = "invalid_rule"


class InvalidChoiceGroup(TemplateValidationError):
    code = "invalid_choice_group"


class InvalidInputSpec(TemplateValidationError):
    code = "invalid_input_spec"


class ConditionSyntaxError(TemplateValidationError):
    code = "condition_syntax"

    def __init__(self, message: str, text: str = "", position: Optional[int] = None):
        super().__init__(message)
        self.text = text
        self.position = position

    def details(self) -> Dict[str, Any]:
        return {"text": self.text, "position": self.position}


# --- Condition evaluation (recoverable) ---


class ConditionError(TaskGuideError):
    code = "condition_error"


class MissingContextVariable(ConditionError):
    """A condition referenced variables the context does not hold (yet)."""

    code = "missing_context_variable"

    def __init__(self, variables: Iterable[str]):
        names = sorted(set(variables))
        super().__init__(f"Missing context variable(s): {', '.join(names)}")
        self.variables: List[str] = names

    def details(self) -> Dict[str, Any]:
        return {"variables": self.variables}


class TypeMismatch(ConditionError):
    code = "type_mismatch"

    def __init__(self, message: str, expected: Optional[str] = None, actual: Optional[str] = None):
        super().__init__(message)
        self.expected = expected
        self.actual = actual

    def details(self) -> Dict[str, Any]:
        return {"expected": self.expected, "actual": self.actual}


# --- Workflow (recoverable, caller refetches state) ---


class WorkflowError(TaskGuideError):
    code = "workflow_error"


class StepNotAvailable(WorkflowError):
    code = "step_not_available"

    def __init__(self, step_id: str, available: Sequence[str] = ()):
        super().__init__(
            f"Step '{step_id}' is not available"
            + (f" (available: {', '.join(available)})" if available else "")
        )
        self.step_id = step_id
        self.available = list(available)

    def details(self) -> Dict[str, Any]:
        return {"step_id": self.step_id, "available": self.available}


class InvalidStepInput(WorkflowError):
    """Input did not match the step's declared type/options; nothing was coerced."""

    code = "invalid_step_input"

    def __init__(self, step_id: str, reason: str, expected: str):
        super().__init__(f"Invalid input for step '{step_id}': {reason} (expected {expected})")
        self.step_id = step_id
        self.reason = reason
        self.expected = expected

    def details(self) -> Dict[str, Any]:
        return {"step_id": self.step_id, "reason": self.reason, "expected": self.expected}


class SessionBindingError(WorkflowError):
    """Session refers to a different template or to steps the graph lacks."""

    code = "session_binding"


class WorkflowClosed(WorkflowError):
    code = "workflow_closed"

    def __init__(self, session_id: str, status: str):
        super().__init__(f"Session {session_id} is {status}; no further steps can be completed")
        self.session_id = session_id
        self.status = status


# --- Persistence boundary ---


class StoreError(TaskGuideError):
    code = "store_error"


class SessionNotFound(StoreError):
    """Unknown, expired and tombstoned ids are indistinguishable to callers."""

    code = "session_not_found"

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class ConcurrentModification(StoreError):
    code = "concurrent_modification"

    def __init__(self, session_id: str, expected_version: int, actual_version: Optional[int]):
        super().__init__(
            f"Session {session_id} changed concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )
        self.session_id = session_id
        self.expected_version = expected_version
        self.actual_version = actual_version

    def details(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "expected_version": self.expected_version,
            "actual_version": self.actual_version,
        }


class StoreUnavailable(StoreError):
    """Transient storage failure; safe to retry with backoff."""

    code = "store_unavailable"


class UnknownTemplate(TaskGuideError):
    code = "unknown_template"

    def __init__(self, task_type: str, version: Optional[int] = None):
        label = task_type if version is None else f"{task_type} v{version}"
        super().__init__(f"No template registered for {label}")
        self.task_type = task_type
        self.version = version
