"""Tests for configuration loading."""

import os
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from task_guide.core.config import (
    PersistenceConfig,
    TaskGuideConfig,
    _expand_env_vars,
    load_config,
)
from task_guide.core.session import MIN_RETENTION_DAYS


def _write_config(path: Path, data: dict) -> Path:
    path.write_text(yaml.safe_dump(data))
    return path


class TestLoadConfig:
    def test_missing_file_uses_defaults(self, tmp_path, caplog):
        config = load_config(tmp_path / "absent.yaml")

        assert config.persistence.backend == "file"
        assert config.evaluation.missing_variable_policy == "raise"
        assert "Config file not found" in caplog.text

    def test_values_from_yaml(self, tmp_path):
        path = _write_config(tmp_path / "task-guide.yaml", {
            "default_language": "es",
            "evaluation": {"missing_variable_policy": "false"},
            "persistence": {"backend": "memory", "retention_days": 45, "max_retries": 5},
        })
        config = load_config(path)

        assert config.default_language == "es"
        assert config.evaluation.missing_variable_policy == "false"
        assert config.persistence.backend == "memory"
        assert config.persistence.retention_days == 45
        assert config.persistence.max_retries == 5

    def test_relative_directories_follow_config_file(self, tmp_path):
        path = _write_config(tmp_path / "task-guide.yaml", {
            "templates_dir": "templates",
            "persistence": {"directory": "data/sessions"},
        })
        config = load_config(path)

        assert config.templates_dir == tmp_path / "templates"
        assert config.persistence.directory == tmp_path / "data" / "sessions"

    def test_cached_until_file_changes(self, tmp_path):
        path = _write_config(tmp_path / "task-guide.yaml", {"default_language": "en"})
        first = load_config(path)
        assert load_config(path) is first

        _write_config(path, {"default_language": "fr"})
        stat = path.stat()
        os.utime(path, (stat.st_atime, stat.st_mtime + 5))

        assert load_config(path).default_language == "fr"

    def test_invalid_retention_rejected(self, tmp_path):
        path = _write_config(tmp_path / "task-guide.yaml", {"persistence": {"retention_days": 3}})
        with pytest.raises(ValidationError):
            load_config(path)


class TestConfigModels:
    def test_retention_floor(self):
        with pytest.raises(ValidationError):
            PersistenceConfig(retention_days=MIN_RETENTION_DAYS - 1)

    def test_negative_retries_rejected(self):
        with pytest.raises(ValidationError):
            PersistenceConfig(max_retries=-1)

    def test_unknown_policy_rejected(self):
        with pytest.raises(ValidationError):
            TaskGuideConfig(evaluation={"missing_variable_policy": "guess"})

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("TASK_GUIDE_DEFAULT_LANGUAGE", "de")
        assert TaskGuideConfig().default_language == "de"


class TestExpandEnvVars:
    def test_expands_nested_references(self, monkeypatch):
        monkeypatch.setenv("SESSIONS_DIR", "/var/lib/task-guide")
        data = {"persistence": {"directory": "${SESSIONS_DIR}"}, "other": ["${SESSIONS_DIR}"]}

        assert _expand_env_vars(data) == {
            "persistence": {"directory": "/var/lib/task-guide"},
            "other": ["/var/lib/task-guide"],
        }

    def test_unset_variable_kept_literally(self, monkeypatch, caplog):
        monkeypatch.delenv("NOT_SET_ANYWHERE", raising=False)
        assert _expand_env_vars({"a": "${NOT_SET_ANYWHERE}"}) == {"a": "${NOT_SET_ANYWHERE}"}
        assert "NOT_SET_ANYWHERE" in caplog.text
