"""Step graph: the immutable DAG of a task template version.

Steps are linked by prerequisite edges. The graph is validated once when it is
built (unique ids and sequence numbers, closed prerequisite references, no
cycles) and then shared read-only by every session of that template version.
Applicability is not decided here: steps and documents only carry their
Conditions for the engine to evaluate per context.
"""

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from ..core.errors import (
    CyclicDependency,
    DuplicateSequence,
    DuplicateStepId,
    EmptyTemplate,
    InvalidChoiceGroup,
    InvalidInputSpec,
    InvalidStepInput,
    UnknownPrerequisite,
)
from .conditions import Condition
from .rules import RuleSet, pick_text


class InputType(str, Enum):
    NONE = "none"  # acknowledgement only
    TEXT = "text"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    CHOICE = "choice"
    MULTI_CHOICE = "multi_choice"


@dataclass(frozen=True)
class InputSpec:
    """Declared input of a step. Values are validated, never coerced."""
    type: InputType = InputType.NONE
    options: Tuple[str, ...] = ()
    required: bool = True
    context_key: Optional[str] = None  # variable the value is stored under
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    pattern: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "type", InputType(self.type))
        object.__setattr__(self, "options", tuple(self.options))
        if self.pattern is not None:
            try:
                re.compile(self.pattern)
            except re.error as e:
                raise InvalidInputSpec(f"Input pattern {self.pattern!r} is not a valid regex: {e}") from None

    @property
    def expected(self) -> str:
        if self.type in (InputType.CHOICE, InputType.MULTI_CHOICE):
            return f"{self.type.value} of {', '.join(self.options)}"
        return self.type.value

    def validate(self, step_id: str, value: Any) -> Any:
        """Return the value to store, or raise InvalidStepInput with a reason code."""
        if value is None:
            if self.required and self.type != InputType.NONE:
                raise InvalidStepInput(step_id, "missing_value", self.expected)
            return None

        if self.type == InputType.NONE:
            raise InvalidStepInput(step_id, "unexpected_value", self.expected)

        if self.type == InputType.TEXT:
            self._require(step_id, isinstance(value, str))
            if self.pattern and not re.fullmatch(self.pattern, value):
                raise InvalidStepInput(step_id, "pattern_mismatch", f"text matching {self.pattern}")
            return value

        if self.type == InputType.NUMBER:
            self._require(step_id, isinstance(value, (int, float)) and not isinstance(value, bool))
            if self.minimum is not None and value < self.minimum:
                raise InvalidStepInput(step_id, "below_minimum", f"number >= {self.minimum}")
            if self.maximum is not None and value > self.maximum:
                raise InvalidStepInput(step_id, "above_maximum", f"number <= {self.maximum}")
            return value

        if self.type == InputType.BOOLEAN:
            self._require(step_id, isinstance(value, bool))
            return value

        if self.type == InputType.DATE:
            self._require(step_id, isinstance(value, date) and not isinstance(value, datetime))
            return value

        if self.type == InputType.CHOICE:
            self._require(step_id, isinstance(value, str))
            if value not in self.options:
                raise InvalidStepInput(step_id, "not_in_options", self.expected)
            return value

        # MULTI_CHOICE
        self._require(
            step_id,
            isinstance(value, (list, tuple, set, frozenset))
            and all(isinstance(v, str) for v in value),
        )
        unknown = sorted(set(value) - set(self.options))
        if unknown:
            raise InvalidStepInput(step_id, "not_in_options", self.expected)
        if self.required and not value:
            raise InvalidStepInput(step_id, "missing_value", self.expected)
        return frozenset(value)

    def _require(self, step_id: str, ok: bool) -> None:
        if not ok:
            raise InvalidStepInput(step_id, "wrong_type", self.expected)


@dataclass(frozen=True)
class DocumentRequirement:
    id: str
    name: Mapping[str, str] = field(default_factory=dict)  # language -> text
    condition: Optional[Condition] = None
    mandatory: bool = True

    def name_for(self, language: str) -> str:
        return pick_text(self.name, language) or self.id


@dataclass(frozen=True)
class Step:
    """A node in the step graph."""
    id: str
    sequence: int
    prerequisites: Tuple[str, ...] = ()
    condition: Optional[Condition] = None  # branch condition; None means always applicable
    documents: Tuple[DocumentRequirement, ...] = ()
    input: InputSpec = field(default_factory=InputSpec)
    estimated_minutes: int = 0
    title: Mapping[str, str] = field(default_factory=dict)
    instructions: Mapping[str, str] = field(default_factory=dict)
    choice_group: Optional[str] = None  # members are alternatives the user picks between
    preference: int = 0  # lower is preferred when recommending among alternatives
    implies: Mapping[str, Any] = field(default_factory=dict)  # context merged on completion

    def __post_init__(self):
        object.__setattr__(self, "prerequisites", tuple(self.prerequisites))
        object.__setattr__(self, "documents", tuple(self.documents))

    def title_for(self, language: str) -> str:
        return pick_text(self.title, language) or self.id

    def instructions_for(self, language: str) -> str:
        return pick_text(self.instructions, language)


class StepGraph:
    """Validated, immutable step DAG plus the template's RuleSet."""

    def __init__(
        self,
        task_type: str,
        version: int,
        steps: Iterable[Step],
        rule_set: Optional[RuleSet] = None,
        title: Optional[Mapping[str, str]] = None,
    ):
        step_list = list(steps)
        self.task_type = task_type
        self.version = version
        self.rule_set = rule_set or RuleSet(task_type=task_type, version=version)
        self.title = MappingProxyType(dict(title or {}))
        self._validate(step_list)

        self._steps: Mapping[str, Step] = MappingProxyType({s.id: s for s in step_list})
        self._ordered: Tuple[Step, ...] = tuple(sorted(step_list, key=lambda s: s.sequence))
        dependents: Dict[str, List[str]] = {s.id: [] for s in step_list}
        for step in self._ordered:
            for prereq in step.prerequisites:
                dependents[prereq].append(step.id)
        self._dependents = MappingProxyType({k: tuple(v) for k, v in dependents.items()})
        groups: Dict[str, List[str]] = {}
        for step in self._ordered:
            if step.choice_group:
                groups.setdefault(step.choice_group, []).append(step.id)
        self._choice_groups = MappingProxyType({k: tuple(v) for k, v in groups.items()})

    @property
    def key(self) -> Tuple[str, int]:
        return (self.task_type, self.version)

    @property
    def steps(self) -> Mapping[str, Step]:
        return self._steps

    @property
    def step_ids(self) -> FrozenSet[str]:
        return frozenset(self._steps)

    @property
    def choice_groups(self) -> Mapping[str, Tuple[str, ...]]:
        return self._choice_groups

    def __len__(self) -> int:
        return len(self._steps)

    def __contains__(self, step_id: object) -> bool:
        return step_id in self._steps

    def get(self, step_id: str) -> Optional[Step]:
        return self._steps.get(step_id)

    def ordered_steps(self) -> Tuple[Step, ...]:
        """Steps in template-declared sequence order."""
        return self._ordered

    def dependents(self, step_id: str) -> Tuple[str, ...]:
        return self._dependents.get(step_id, ())

    def topological_order(self) -> List[str]:
        """Kahn's algorithm, ties broken by sequence."""
        remaining = {s.id: len(s.prerequisites) for s in self._ordered}
        ready = [s.id for s in self._ordered if not s.prerequisites]
        order: List[str] = []
        while ready:
            ready.sort(key=lambda sid: self._steps[sid].sequence)
            current = ready.pop(0)
            order.append(current)
            for dependent in self._dependents[current]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    ready.append(dependent)
        return order

    def ancestors(self, step_id: str) -> FrozenSet[str]:
        seen = set()
        stack = list(self._steps[step_id].prerequisites)
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._steps[current].prerequisites)
        return frozenset(seen)

    def _validate(self, steps: List[Step]) -> None:
        if not steps:
            raise EmptyTemplate(f"Template '{self.task_type}' v{self.version} has no steps")

        ids = set()
        for step in steps:
            if step.id in ids:
                raise DuplicateStepId(step.id)
            ids.add(step.id)

        by_sequence: Dict[int, List[str]] = {}
        for step in steps:
            by_sequence.setdefault(step.sequence, []).append(step.id)
        for sequence, owners in sorted(by_sequence.items()):
            if len(owners) > 1:
                raise DuplicateSequence(sequence, owners)

        for step in steps:
            for prereq in step.prerequisites:
                if prereq not in ids:
                    raise UnknownPrerequisite(step.id, prereq)

        cycle = _find_cycle({s.id: s.prerequisites for s in steps}, [s.id for s in steps])
        if cycle:
            raise CyclicDependency(cycle)

        self._validate_choice_groups(steps)

    @staticmethod
    def _validate_choice_groups(steps: List[Step]) -> None:
        groups: Dict[str, List[Step]] = {}
        for step in steps:
            if step.choice_group:
                groups.setdefault(step.choice_group, []).append(step)
        for name, members in groups.items():
            if len(members) < 2:
                raise InvalidChoiceGroup(
                    f"Choice group '{name}' needs at least two alternatives, "
                    f"found {[m.id for m in members]}"
                )
            member_ids = {m.id for m in members}
            for member in members:
                clash = member_ids.intersection(member.prerequisites)
                if clash:
                    raise InvalidChoiceGroup(
                        f"Alternative '{member.id}' in choice group '{name}' "
                        f"depends on alternative '{sorted(clash)[0]}'"
                    )


def _find_cycle(edges: Mapping[str, Iterable[str]], order: List[str]) -> Optional[List[str]]:
    """Three-colour DFS over prerequisite edges; returns the cycle path if any.

    Iterative with an explicit stack so long chains do not hit the recursion limit.
    """
    WHITE, GRAY, BLACK = 0, 1, 2
    color = {node: WHITE for node in order}

    for root in order:
        if color[root] != WHITE:
            continue
        color[root] = GRAY
        path: List[str] = [root]
        stack = [iter(edges[root])]
        while stack:
            target = next(stack[-1], None)
            if target is None:
                stack.pop()
                color[path.pop()] = BLACK
                continue
            if color[target] == GRAY:
                start = path.index(target)
                return path[start:] + [target]
            if color[target] == WHITE:
                color[target] = GRAY
                path.append(target)
                stack.append(iter(edges[target]))
    return None


def build_step_graph(
    task_type: str,
    version: int,
    steps: Iterable[Step],
    rule_set: Optional[RuleSet] = None,
    title: Optional[Mapping[str, str]] = None,
) -> StepGraph:
    """Build and validate a StepGraph, raising TemplateValidationError subclasses."""
    return StepGraph(task_type, version, steps, rule_set=rule_set, title=title)
