"""Rule-gated workflow engine over step graphs."""

from .conditions import ConditionEvaluator, MissingVariablePolicy, condition_from_dict, parse_condition
from .dag import InputSpec, InputType, Step, StepGraph, build_step_graph
from .engine import StepDecision, Transition, WorkflowEngine
from .rules import EligibilityResult, Rule, RuleEvaluator, RuleKind, RuleSet

__all__ = [
    "ConditionEvaluator",
    "MissingVariablePolicy",
    "condition_from_dict",
    "parse_condition",
    "InputSpec",
    "InputType",
    "Step",
    "StepGraph",
    "build_step_graph",
    "StepDecision",
    "Transition",
    "WorkflowEngine",
    "EligibilityResult",
    "Rule",
    "RuleEvaluator",
    "RuleKind",
    "RuleSet",
]
