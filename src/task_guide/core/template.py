"""Task template definitions loaded from YAML.

A template file describes one version of one task type: its steps, their
prerequisites and branch conditions, the documents they need, and the rules
that gate eligibility. ``TemplateDefinition.to_graph()`` turns the validated
definition into the immutable StepGraph the engine traverses.
"""

import logging
from datetime import date
from pathlib import Path
from typing import Annotated, Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, BeforeValidator, Field, ValidationError

from .errors import InvalidInputSpec, TemplateValidationError
from .values import decode_mapping

logger = logging.getLogger(__name__)

ConditionSpec = Union[str, bool, Dict[str, Any]]

DEFAULT_TEXT_LANGUAGE = "en"


def _text_map(value: Any) -> Any:
    """A bare string is shorthand for ``{en: <string>}``."""
    if isinstance(value, str):
        return {DEFAULT_TEXT_LANGUAGE: value}
    return value


TextMap = Annotated[Dict[str, str], BeforeValidator(_text_map)]


class DocumentDefinition(BaseModel):
    """A document a step asks for, optionally gated on a condition."""
    id: str
    name: TextMap = Field(default_factory=dict)
    condition: Optional[ConditionSpec] = None
    mandatory: bool = True


class InputDefinition(BaseModel):
    type: str = "none"
    options: List[str] = Field(default_factory=list)
    required: bool = True
    context_key: Optional[str] = None
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    pattern: Optional[str] = None


class StepDefinition(BaseModel):
    """Defines a single step of a task template."""
    id: str
    sequence: int
    prerequisites: List[str] = Field(default_factory=list)
    condition: Optional[ConditionSpec] = None
    documents: List[DocumentDefinition] = Field(default_factory=list)
    input: InputDefinition = Field(default_factory=InputDefinition)
    estimated_minutes: int = Field(default=0, ge=0)
    title: TextMap = Field(default_factory=dict)
    instructions: TextMap = Field(default_factory=dict)
    choice_group: Optional[str] = None
    preference: int = 0
    implies: Dict[str, Any] = Field(default_factory=dict)  # context values set on completion


class RuleDefinition(BaseModel):
    """Defines an eligibility, constraint, requirement or deadline rule."""
    id: str
    kind: str
    source: str
    condition: Optional[ConditionSpec] = None
    description: TextMap = Field(default_factory=dict)
    effective_from: Optional[date] = None
    effective_to: Optional[date] = None
    blocking: bool = False
    deadline: Optional[date] = None
    reminder_days: int = Field(default=14, ge=0)


class TemplateDefinition(BaseModel):
    """One version of one task type, as published by its author."""
    task_type: str
    version: int = Field(ge=1)
    title: TextMap = Field(default_factory=dict)
    description: str = ""
    steps: List[StepDefinition] = Field(default_factory=list)
    rules: List[RuleDefinition] = Field(default_factory=list)

    @property
    def key(self):
        return (self.task_type, self.version)

    def to_graph(self):
        """Convert to a validated StepGraph (cached after first call).

        Raises TemplateValidationError subclasses for structural defects.
        """
        cached = getattr(self, "_cached_graph", None)
        if cached is not None:
            return cached

        from ..workflow.conditions import condition_from_dict
        from ..workflow.dag import DocumentRequirement, InputSpec, Step, build_step_graph
        from ..workflow.rules import Rule, RuleKind, RuleSet

        def condition(spec: Optional[ConditionSpec]):
            return None if spec is None else condition_from_dict(spec)

        rules = []
        for rule_def in self.rules:
            try:
                kind = RuleKind(rule_def.kind)
            except ValueError:
                raise TemplateValidationError(
                    f"Rule '{rule_def.id}' has unknown kind '{rule_def.kind}'"
                ) from None
            rules.append(Rule(
                id=rule_def.id,
                kind=kind,
                source=rule_def.source,
                condition=condition(rule_def.condition),
                description=rule_def.description,
                effective_from=rule_def.effective_from,
                effective_to=rule_def.effective_to,
                blocking=rule_def.blocking,
                deadline=rule_def.deadline,
                reminder_days=rule_def.reminder_days,
            ))
        rule_set = RuleSet(self.task_type, self.version, tuple(rules))

        steps = []
        for step_def in self.steps:
            try:
                input_spec = InputSpec(
                    type=step_def.input.type,
                    options=tuple(step_def.input.options),
                    required=step_def.input.required,
                    context_key=step_def.input.context_key,
                    minimum=step_def.input.minimum,
                    maximum=step_def.input.maximum,
                    pattern=step_def.input.pattern,
                )
            except InvalidInputSpec as e:
                raise InvalidInputSpec(f"Step '{step_def.id}': {e.message}") from None
            except ValueError:
                raise TemplateValidationError(
                    f"Step '{step_def.id}' has unknown input type '{step_def.input.type}'"
                ) from None
            documents = tuple(
                DocumentRequirement(
                    id=doc.id, name=doc.name,
                    condition=condition(doc.condition), mandatory=doc.mandatory,
                )
                for doc in step_def.documents
            )
            steps.append(Step(
                id=step_def.id,
                sequence=step_def.sequence,
                prerequisites=tuple(step_def.prerequisites),
                condition=condition(step_def.condition),
                documents=documents,
                input=input_spec,
                estimated_minutes=step_def.estimated_minutes,
                title=step_def.title,
                instructions=step_def.instructions,
                choice_group=step_def.choice_group,
                preference=step_def.preference,
                implies=decode_mapping(step_def.implies),
            ))

        graph = build_step_graph(self.task_type, self.version, steps, rule_set=rule_set, title=self.title)
        object.__setattr__(self, "_cached_graph", graph)
        return graph


def parse_template(data: Dict[str, Any], source: str = "<template>") -> TemplateDefinition:
    """Validate raw template data, wrapping schema errors."""
    try:
        return TemplateDefinition(**data)
    except ValidationError as e:
        raise TemplateValidationError(f"Invalid template {source}: {e}") from e


def load_template(path: Path) -> TemplateDefinition:
    """Load a template YAML file and build its graph, failing fast on defects."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise TemplateValidationError(f"Template {path} must be a mapping, got {type(data).__name__}")

    template = parse_template(data, source=str(path))
    template.to_graph()
    logger.debug(f"Loaded template {template.task_type} v{template.version} from {path}")
    return template
