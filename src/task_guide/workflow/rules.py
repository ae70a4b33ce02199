"""Eligibility, constraint, requirement and deadline rules.

Rules are loaded once per template version and never mutated. The evaluator
turns a RuleSet plus a context snapshot into an EligibilityResult, keeping
"unmet because data is missing" apart from "unmet because the check failed"
so callers can ask for input instead of rejecting.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from ..core.errors import DuplicateRuleId, InvalidRule, MissingContextVariable, TypeMismatch
from .conditions import AS_OF_VARIABLE, Condition, ConditionEvaluator

logger = logging.getLogger(__name__)

DEFAULT_LANGUAGE = "en"
DEFAULT_REMINDER_DAYS = 14


class RuleKind(str, Enum):
    ELIGIBILITY = "eligibility"
    CONSTRAINT = "constraint"
    REQUIREMENT = "requirement"
    DEADLINE = "deadline"


class RequirementStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    MISSING_INFORMATION = "missing_information"
    ERROR = "error"  # template defect, e.g. a type mismatch inside the rule


def pick_text(texts: Mapping[str, str], language: str, fallback: str = DEFAULT_LANGUAGE) -> str:
    """Select text for a language from a language-keyed map (no translation)."""
    if language in texts:
        return texts[language]
    base = language.split("-")[0]
    if base in texts:
        return texts[base]
    if fallback in texts:
        return texts[fallback]
    return next(iter(texts.values()), "")


@dataclass(frozen=True)
class Rule:
    """A single rule bound to a task template version."""
    id: str
    kind: RuleKind
    source: str  # citation of the regulation/policy the rule encodes
    condition: Optional[Condition] = None
    description: Mapping[str, str] = field(default_factory=dict)
    effective_from: Optional[date] = None
    effective_to: Optional[date] = None
    blocking: bool = False
    deadline: Optional[date] = None
    reminder_days: int = DEFAULT_REMINDER_DAYS

    def __post_init__(self):
        object.__setattr__(self, "kind", RuleKind(self.kind))
        if not self.source or not self.source.strip():
            raise InvalidRule(f"Rule '{self.id}' has no source reference")
        if self.kind == RuleKind.DEADLINE:
            if self.deadline is None:
                raise InvalidRule(f"Deadline rule '{self.id}' has no deadline date")
        elif self.condition is None:
            raise InvalidRule(f"Rule '{self.id}' ({self.kind.value}) has no condition")
        if (self.effective_from and self.effective_to
                and self.effective_from > self.effective_to):
            raise InvalidRule(f"Rule '{self.id}' effective range ends before it starts")

    @property
    def variables(self) -> FrozenSet[str]:
        names = self.condition.variables() if self.condition else frozenset()
        if self.kind == RuleKind.DEADLINE:
            names = names | {AS_OF_VARIABLE}
        return names

    @property
    def gates_eligibility(self) -> bool:
        return self.kind == RuleKind.ELIGIBILITY or self.blocking

    def is_effective(self, as_of: date) -> bool:
        if self.effective_from and as_of < self.effective_from:
            return False
        if self.effective_to and as_of > self.effective_to:
            return False
        return True

    def description_for(self, language: str, fallback: str = DEFAULT_LANGUAGE) -> str:
        return pick_text(self.description, language, fallback)


@dataclass(frozen=True)
class RuleSet:
    """Ordered rules for one task type and template version."""
    task_type: str
    version: int
    rules: Tuple[Rule, ...] = ()

    def __post_init__(self):
        seen = set()
        for rule in self.rules:
            if rule.id in seen:
                raise DuplicateRuleId(rule.id)
            seen.add(rule.id)

    def get(self, rule_id: str) -> Optional[Rule]:
        for rule in self.rules:
            if rule.id == rule_id:
                return rule
        return None

    def affected_by(self, changed: FrozenSet[str]) -> List[Rule]:
        """Rules whose outcome may change when the given variables change."""
        return [r for r in self.rules if r.variables & changed]

    def __len__(self) -> int:
        return len(self.rules)

    def __iter__(self):
        return iter(self.rules)


@dataclass(frozen=True)
class RequirementResult:
    rule_id: str
    kind: RuleKind
    passed: bool
    source: str
    missing_information: Tuple[str, ...] = ()
    error: Optional[str] = None
    applicable: bool = True  # False when a deadline's gating condition does not hold

    @property
    def status(self) -> RequirementStatus:
        if self.passed:
            return RequirementStatus.PASSED
        if self.error:
            return RequirementStatus.ERROR
        if self.missing_information:
            return RequirementStatus.MISSING_INFORMATION
        return RequirementStatus.FAILED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "kind": self.kind.value,
            "passed": self.passed,
            "status": self.status.value,
            "source": self.source,
            "missing_information": list(self.missing_information),
            "error": self.error,
        }


@dataclass(frozen=True)
class RuleNotice:
    """Warning or recommendation raised by a non-gating rule."""
    rule_id: str
    kind: RuleKind
    reason: str  # failed | missing_information | deadline_passed | deadline_approaching
    source: str
    days_remaining: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "kind": self.kind.value,
            "reason": self.reason,
            "source": self.source,
            "days_remaining": self.days_remaining,
        }


@dataclass(frozen=True)
class EligibilityResult:
    overall_eligible: bool
    as_of: date
    requirements: Tuple[RequirementResult, ...] = ()
    warnings: Tuple[RuleNotice, ...] = ()
    recommendations: Tuple[RuleNotice, ...] = ()

    def missing_information(self) -> List[str]:
        names = set()
        for result in self.requirements:
            names.update(result.missing_information)
        return sorted(names)

    def result_for(self, rule_id: str) -> Optional[RequirementResult]:
        for result in self.requirements:
            if result.rule_id == rule_id:
                return result
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall_eligible": self.overall_eligible,
            "as_of": self.as_of.isoformat(),
            "requirements": [r.to_dict() for r in self.requirements],
            "warnings": [w.to_dict() for w in self.warnings],
            "recommendations": [r.to_dict() for r in self.recommendations],
            "missing_information": self.missing_information(),
        }


class RuleEvaluator:
    """Evaluates rules with a ConditionEvaluator; never reads the wall clock."""

    def __init__(self, condition_evaluator: Optional[ConditionEvaluator] = None):
        self.conditions = condition_evaluator or ConditionEvaluator()

    def evaluate_rule(
        self,
        rule: Rule,
        variables: Mapping[str, Any],
        as_of: date,
        session_id: Optional[str] = None,
    ) -> RequirementResult:
        """Evaluate one rule. Deadline rules pass while the deadline is not past."""
        as_of = _as_date(as_of)
        try:
            applies = (
                self.conditions.evaluate(rule.condition, variables, as_of)
                if rule.condition is not None else True
            )
        except MissingContextVariable as e:
            return RequirementResult(
                rule_id=rule.id, kind=rule.kind, passed=False, source=rule.source,
                missing_information=tuple(e.variables),
            )
        except TypeMismatch as e:
            logger.error(f"Rule '{rule.id}' cannot be evaluated (session={session_id}): {e.message}")
            return RequirementResult(
                rule_id=rule.id, kind=rule.kind, passed=False, source=rule.source,
                error=e.message,
            )

        if rule.kind == RuleKind.DEADLINE:
            # Condition only gates whether the deadline applies
            return RequirementResult(
                rule_id=rule.id, kind=rule.kind, source=rule.source,
                passed=(not applies) or as_of <= rule.deadline,
                applicable=applies,
            )
        return RequirementResult(rule_id=rule.id, kind=rule.kind, passed=applies, source=rule.source)

    def evaluate_rule_set(
        self,
        rule_set: RuleSet,
        variables: Mapping[str, Any],
        as_of: date,
        session_id: Optional[str] = None,
    ) -> EligibilityResult:
        as_of = _as_date(as_of)
        requirements: List[RequirementResult] = []
        warnings: List[RuleNotice] = []
        recommendations: List[RuleNotice] = []
        eligible = True

        for rule in rule_set:
            if not rule.is_effective(as_of):
                logger.debug(f"Rule '{rule.id}' not in effect on {as_of}, skipping")
                continue

            result = self.evaluate_rule(rule, variables, as_of, session_id=session_id)
            requirements.append(result)

            if rule.gates_eligibility and not result.passed:
                eligible = False

            if rule.kind == RuleKind.DEADLINE:
                notice = self._deadline_notice(rule, result, as_of)
                if notice is None:
                    continue
                if notice.reason == "deadline_passed":
                    warnings.append(notice)
                else:
                    recommendations.append(notice)
            elif rule.kind != RuleKind.ELIGIBILITY and not result.passed:
                warnings.append(RuleNotice(
                    rule_id=rule.id, kind=rule.kind, source=rule.source,
                    reason=result.status.value,
                ))

        return EligibilityResult(
            overall_eligible=eligible,
            as_of=as_of,
            requirements=tuple(requirements),
            warnings=tuple(warnings),
            recommendations=tuple(recommendations),
        )

    def _deadline_notice(
        self, rule: Rule, result: RequirementResult, as_of: date
    ) -> Optional[RuleNotice]:
        if result.status in (RequirementStatus.MISSING_INFORMATION, RequirementStatus.ERROR):
            return RuleNotice(rule.id, rule.kind, result.status.value, rule.source)
        days_remaining = (rule.deadline - as_of).days
        if not result.passed:
            return RuleNotice(rule.id, rule.kind, "deadline_passed", rule.source, days_remaining)
        if result.applicable and days_remaining <= rule.reminder_days:
            return RuleNotice(rule.id, rule.kind, "deadline_approaching", rule.source, days_remaining)
        return None

    def refresh_cache(
        self,
        rule_set: RuleSet,
        cache: Dict[str, bool],
        variables: Mapping[str, Any],
        as_of: date,
        changed: Optional[FrozenSet[str]] = None,
        session_id: Optional[str] = None,
    ) -> List[str]:
        """Recompute cached pass/fail entries invalidated by changed variables.

        ``changed=None`` recomputes every entry. Entries that previously failed
        (they may have lacked data) and entries depending on the as-of date are
        always recomputed. Returns the ids that were recomputed.
        """
        as_of = _as_date(as_of)
        recomputed = []
        for rule in rule_set:
            stale = (
                changed is None
                or rule.id not in cache
                or not cache[rule.id]
                or AS_OF_VARIABLE in rule.variables
                or bool(rule.variables & changed)
            )
            if not stale:
                continue
            if not rule.is_effective(as_of):
                cache.pop(rule.id, None)
                continue
            cache[rule.id] = self.evaluate_rule(rule, variables, as_of, session_id=session_id).passed
            recomputed.append(rule.id)
        return recomputed


def _as_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value
