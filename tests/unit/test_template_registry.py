"""Tests for template parsing and the versioned template registry."""

from datetime import date

import pytest
import yaml

from task_guide.core.errors import (
    ConditionSyntaxError,
    CyclicDependency,
    InvalidInputSpec,
    TemplateValidationError,
    UnknownTemplate,
)
from task_guide.core.template import load_template, parse_template
from task_guide.core.template_registry import TemplateRegistry, load_registry
from task_guide.workflow.conditions import Compare
from task_guide.workflow.dag import InputType
from task_guide.workflow.rules import RuleKind

from tests.unit.workflow_fixtures import TEMPLATES_DIR


def _template(version=1, **overrides):
    data = {
        "task_type": "library_card",
        "version": version,
        "title": "Get a library card",
        "steps": [
            {"id": "proof_of_address", "sequence": 1,
             "documents": [{"id": "utility_bill", "name": "Utility bill"}]},
            {"id": "sign_up", "sequence": 2, "prerequisites": ["proof_of_address"],
             "condition": {"var": "age", "op": ">=", "value": 13}},
        ],
        "rules": [
            {"id": "resident", "kind": "eligibility", "source": "Library bylaws 3",
             "condition": "resident"},
        ],
    }
    data.update(overrides)
    return data


def _write(path, data):
    path.write_text(yaml.safe_dump(data))
    return path


class TestParseTemplate:
    def test_builds_graph(self):
        graph = parse_template(_template()).to_graph()

        assert graph.key == ("library_card", 1)
        assert graph.title == {"en": "Get a library card"}
        assert isinstance(graph.get("sign_up").condition, Compare)
        assert graph.get("proof_of_address").documents[0].name_for("fr") == "Utility bill"
        assert graph.rule_set.get("resident").kind == RuleKind.ELIGIBILITY

    def test_graph_is_cached(self):
        template = parse_template(_template())
        assert template.to_graph() is template.to_graph()

    def test_schema_errors_wrapped(self):
        with pytest.raises(TemplateValidationError):
            parse_template({"task_type": "x", "version": 0})

    def test_unknown_rule_kind(self):
        template = parse_template(_template(rules=[{"id": "r", "kind": "advice", "source": "s", "condition": "a"}]))
        with pytest.raises(TemplateValidationError):
            template.to_graph()

    def test_unknown_input_type(self):
        steps = [{"id": "a", "sequence": 1, "input": {"type": "signature"}}]
        with pytest.raises(TemplateValidationError):
            parse_template(_template(steps=steps)).to_graph()

    def test_bad_condition_fails_at_load(self):
        steps = [{"id": "a", "sequence": 1, "condition": "age >>= 3"}]
        with pytest.raises(ConditionSyntaxError):
            parse_template(_template(steps=steps)).to_graph()

    def test_bad_input_pattern_fails_at_load(self):
        steps = [{"id": "a", "sequence": 1, "input": {"type": "text", "pattern": "([a-z"}}]
        with pytest.raises(InvalidInputSpec) as exc_info:
            parse_template(_template(steps=steps, rules=[])).to_graph()
        assert "Step 'a'" in exc_info.value.message

    def test_structural_defects_fail_at_load(self):
        steps = [
            {"id": "a", "sequence": 1, "prerequisites": ["b"]},
            {"id": "b", "sequence": 2, "prerequisites": ["a"]},
        ]
        with pytest.raises(CyclicDependency):
            parse_template(_template(steps=steps)).to_graph()

    def test_implies_values_are_typed(self):
        steps = [{"id": "a", "sequence": 1,
                  "implies": {"appointment": {"type": "date", "value": "2025-06-01"}, "channels": ["web"]}}]
        step = parse_template(_template(steps=steps, rules=[])).to_graph().get("a")
        assert step.implies == {"appointment": date(2025, 6, 1), "channels": frozenset({"web"})}


class TestLoadTemplate:
    def test_shipped_passport_template(self):
        template = load_template(TEMPLATES_DIR / "passport_renewal.yaml")
        graph = template.to_graph()

        assert template.key == ("passport_renewal", 1)
        assert graph.choice_groups == {"submission": ("renew_by_mail", "renew_in_person")}
        assert graph.get("pay_fee").input.type == InputType.CHOICE
        assert graph.rule_set.get("fee_schedule_2030").deadline == date(2030, 12, 31)

    def test_non_mapping_rejected(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- not\n- a mapping\n")
        with pytest.raises(TemplateValidationError):
            load_template(path)


class TestTemplateRegistry:
    def test_latest_version_by_default(self):
        registry = TemplateRegistry()
        registry.publish(parse_template(_template(version=1)))
        registry.publish(parse_template(_template(version=2, description="Second edition")))

        assert registry.get("library_card").version == 2
        assert registry.get("library_card", 1).version == 1
        assert registry.versions("library_card") == [1, 2]
        assert registry.graph("library_card", 1).version == 1

    def test_published_versions_are_immutable(self):
        registry = TemplateRegistry()
        registry.publish(parse_template(_template()))

        with pytest.raises(TemplateValidationError):
            registry.publish(parse_template(_template(description="Edited in place")))

    def test_identical_republish_is_noop(self):
        registry = TemplateRegistry()
        first = registry.publish(parse_template(_template()))
        assert registry.publish(parse_template(_template())) is first

    def test_invalid_template_not_registered(self):
        registry = TemplateRegistry()
        steps = [{"id": "a", "sequence": 1, "prerequisites": ["ghost"]}]
        with pytest.raises(TemplateValidationError):
            registry.publish(parse_template(_template(steps=steps)))
        assert "library_card" not in registry

    def test_unknown_template_and_version(self):
        registry = TemplateRegistry()
        registry.publish(parse_template(_template()))
        with pytest.raises(UnknownTemplate):
            registry.get("dog_license")
        with pytest.raises(UnknownTemplate):
            registry.get("library_card", 7)

    def test_load_directory(self, tmp_path):
        _write(tmp_path / "b.yaml", _template(version=2))
        _write(tmp_path / "a.yml", _template(version=1))
        (tmp_path / "notes.txt").write_text("ignored")

        registry = load_registry(tmp_path)

        assert registry.task_types() == ["library_card"]
        assert registry.versions("library_card") == [1, 2]

    def test_missing_directory_is_empty(self, tmp_path):
        assert TemplateRegistry().load_directory(tmp_path / "absent") == []
