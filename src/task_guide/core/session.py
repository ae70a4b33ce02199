"""Session state: one user's progress through one task template version.

The state is a plain pydantic model so it round-trips through any store
losslessly. It references its step graph by ``(task_type, template_version)``
and never embeds it.
"""

import uuid
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_serializer, field_validator

from .values import decode_value, encode_mapping, encode_value, normalize_value

MIN_RETENTION_DAYS = 30


class WorkflowStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    DEADLOCKED = "deadlocked"  # no available step but not complete: template defect


class StepStatus(str, Enum):
    LOCKED = "locked"
    AVAILABLE = "available"
    COMPLETED = "completed"
    SKIPPED = "skipped"


class SkipReason(str, Enum):
    CONDITION_FALSE = "condition_false"
    NOT_CHOSEN = "not_chosen"  # another alternative of its choice group was completed
    FORECLOSED = "foreclosed"  # every prerequisite was not chosen or foreclosed


class UserContext(BaseModel):
    """Typed variables plus the derived eligibility cache (rule id -> passed)."""

    variables: Dict[str, Any] = Field(default_factory=dict)
    eligibility: Dict[str, bool] = Field(default_factory=dict)

    @field_validator("variables", mode="before")
    @classmethod
    def decode_variables(cls, v: Any) -> Any:
        if not isinstance(v, dict):
            return v
        return {k: normalize_value(decode_value(val)) for k, val in v.items()}

    @field_serializer("variables")
    def encode_variables(self, v: Dict[str, Any]) -> Dict[str, Any]:
        return encode_mapping(v)

    def get(self, name: str, default: Any = None) -> Any:
        return self.variables.get(name, default)

    def merged(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Variables after applying updates (None removes a variable)."""
        result = dict(self.variables)
        for name, value in updates.items():
            if value is None:
                result.pop(name, None)
            else:
                result[name] = normalize_value(value)
        return result


class StepCompletion(BaseModel):
    """History entry for a completed or automatically skipped step."""

    step_id: str
    timestamp: datetime
    input_value: Any = None
    skipped: bool = False
    skip_reason: Optional[SkipReason] = None

    @field_validator("input_value", mode="before")
    @classmethod
    def decode_input(cls, v: Any) -> Any:
        return decode_value(v)

    @field_serializer("input_value")
    def encode_input(self, v: Any) -> Any:
        return encode_value(v)


class SessionSummary(BaseModel):
    """Listing entry returned by SessionStore.list_by_user."""

    session_id: str
    user_id: Optional[str]
    task_type: str
    template_version: int
    status: WorkflowStatus
    current_step_id: Optional[str]
    last_accessed_at: datetime
    expires_at: datetime


class SessionState(BaseModel):
    """Serializable, single-writer record of one session."""

    session_id: str
    task_type: str
    template_version: int
    user_id: Optional[str] = None
    language_code: str = "en"
    status: WorkflowStatus = WorkflowStatus.NOT_STARTED
    context: UserContext = Field(default_factory=UserContext)
    history: List[StepCompletion] = Field(default_factory=list)
    current_step_id: Optional[str] = None
    created_at: datetime
    last_accessed_at: datetime
    expires_at: datetime
    version: int = 0  # optimistic concurrency counter, assigned by the store

    @classmethod
    def new(
        cls,
        task_type: str,
        template_version: int,
        user_id: Optional[str] = None,
        language_code: str = "en",
        retention_days: int = MIN_RETENTION_DAYS,
        now: Optional[datetime] = None,
        variables: Optional[Dict[str, Any]] = None,
    ) -> "SessionState":
        now = now or datetime.now(UTC)
        retention_days = max(retention_days, MIN_RETENTION_DAYS)
        return cls(
            session_id=uuid.uuid4().hex,
            task_type=task_type,
            template_version=template_version,
            user_id=user_id,
            language_code=language_code,
            context=UserContext(variables=variables or {}),
            created_at=now,
            last_accessed_at=now,
            expires_at=now + timedelta(days=retention_days),
        )

    @property
    def retention(self) -> timedelta:
        return self.expires_at - self.last_accessed_at

    @property
    def is_closed(self) -> bool:
        return self.status in (WorkflowStatus.COMPLETED, WorkflowStatus.ABANDONED)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now(UTC)) >= self.expires_at

    def touch(self, now: Optional[datetime] = None) -> None:
        """Record an access, sliding the expiry window."""
        now = now or datetime.now(UTC)
        retention = self.retention
        self.last_accessed_at = now
        self.expires_at = now + retention

    def completed_step_ids(self) -> List[str]:
        return [c.step_id for c in self.history if not c.skipped]

    def skipped_step_ids(self) -> List[str]:
        return [c.step_id for c in self.history if c.skipped]

    def skipped_steps(self) -> Dict[str, SkipReason]:
        return {c.step_id: c.skip_reason for c in self.history if c.skipped}

    def finished_step_ids(self) -> set:
        return {c.step_id for c in self.history}

    def summary(self) -> SessionSummary:
        return SessionSummary(
            session_id=self.session_id,
            user_id=self.user_id,
            task_type=self.task_type,
            template_version=self.template_version,
            status=self.status,
            current_step_id=self.current_step_id,
            last_accessed_at=self.last_accessed_at,
            expires_at=self.expires_at,
        )

    def to_json(self) -> str:
        return self.model_dump_json(indent=2)

    @classmethod
    def from_json(cls, data: str) -> "SessionState":
        return cls.model_validate_json(data)
