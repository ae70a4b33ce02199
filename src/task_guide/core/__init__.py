"""Core models, configuration and templates."""

from .config import TaskGuideConfig, load_config
from .errors import TaskGuideError, TemplateValidationError
from .feedback_bus import FeedbackBus, FeedbackFlag
from .session import SessionState, SkipReason, StepStatus, UserContext, WorkflowStatus
from .template import TemplateDefinition, load_template
from .template_registry import TemplateRegistry

__all__ = [
    "TaskGuideConfig",
    "load_config",
    "TaskGuideError",
    "TemplateValidationError",
    "FeedbackBus",
    "FeedbackFlag",
    "SessionState",
    "SkipReason",
    "StepStatus",
    "UserContext",
    "WorkflowStatus",
    "TemplateDefinition",
    "load_template",
    "TemplateRegistry",
]
