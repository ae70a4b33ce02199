"""Configuration loading and validation."""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings

from .session import MIN_RETENTION_DAYS

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("task-guide.yaml")


class EvaluationConfig(BaseModel):
    """Condition evaluation settings."""
    # "raise": a missing variable is reported to the caller
    # "false": a condition with a missing variable evaluates to False
    missing_variable_policy: Literal["raise", "false"] = "raise"


class PersistenceConfig(BaseModel):
    """Session store configuration."""
    backend: Literal["memory", "file"] = "file"
    directory: Path = Field(default=Path(".task-guide/sessions"))
    retention_days: int = MIN_RETENTION_DAYS
    fsync: bool = True  # file backend: sync each session write to disk

    # Store call retry policy (transient failures only)
    timeout_seconds: float = 10.0
    max_retries: int = 3
    backoff_initial: float = 0.5
    backoff_max: float = 8.0
    backoff_multiplier: float = 2.0

    @field_validator('retention_days')
    @classmethod
    def validate_retention(cls, v: int) -> int:
        if v < MIN_RETENTION_DAYS:
            raise ValueError(
                f"retention_days must be at least {MIN_RETENTION_DAYS} so interrupted "
                f"sessions can be resumed, got {v}"
            )
        return v

    @field_validator('max_retries')
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"max_retries must be >= 0, got {v}")
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    use_colors: bool = True
    log_file: Optional[Path] = None


class TaskGuideConfig(BaseSettings):
    """Main task-guide configuration."""
    templates_dir: Path = Field(default=Path("templates"))
    default_language: str = "en"

    evaluation: EvaluationConfig = Field(default_factory=EvaluationConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    class Config:
        env_prefix = "TASK_GUIDE_"
        env_file = ".env"
        env_nested_delimiter = "__"
        extra = "allow"


# Module-level mtime-based config cache: path -> (parsed_config, file_mtime)
_config_cache: Dict[str, tuple] = {}


def _get_cached_or_load(resolved_path: Path, loader):
    """Return cached config if file mtime unchanged, else reload."""
    key = str(resolved_path)
    try:
        current_mtime = resolved_path.stat().st_mtime
    except FileNotFoundError:
        _config_cache.pop(key, None)
        return None

    cached = _config_cache.get(key)
    if cached is not None:
        cached_result, cached_mtime = cached
        if cached_mtime == current_mtime:
            return cached_result

    result = loader(resolved_path)
    _config_cache[key] = (result, current_mtime)
    return result


def _load_config_from_file(config_path: Path) -> TaskGuideConfig:
    """Internal loader for task-guide config (no caching)."""
    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    data = _expand_env_vars(data)
    config = TaskGuideConfig(**data)

    # Relative directories are relative to the config file, not the cwd
    base = config_path.parent
    if not config.templates_dir.is_absolute():
        config.templates_dir = base / config.templates_dir
    if not config.persistence.directory.is_absolute():
        config.persistence.directory = base / config.persistence.directory
    return config


def load_config(config_path: Path = DEFAULT_CONFIG_PATH) -> TaskGuideConfig:
    """Load task-guide configuration from YAML file.

    Uses mtime-based caching: returns cached config if the file hasn't changed.
    """
    if not config_path.exists():
        logger.warning(
            f"Config file not found: {config_path}. Using default configuration. "
            "To customize settings, create a config file at this path."
        )
        return TaskGuideConfig()

    resolved = config_path.resolve()
    result = _get_cached_or_load(resolved, _load_config_from_file)
    return result if result is not None else TaskGuideConfig()


def clear_config_cache() -> None:
    """Clear the module-level config cache. Useful for tests."""
    _config_cache.clear()


def _expand_env_vars(data: Any, _path: str = "") -> Any:
    """Recursively expand ``${VAR}`` references in config data.

    Args:
        data: Config data to process
        _path: Internal tracking for error messages (e.g., "persistence.directory")
    """
    if isinstance(data, dict):
        return {k: _expand_env_vars(v, f"{_path}.{k}" if _path else k) for k, v in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item, f"{_path}[{i}]") for i, item in enumerate(data)]
    elif isinstance(data, str) and data.startswith("${") and data.endswith("}"):
        env_var = data[2:-1]
        value = os.environ.get(env_var)
        if value is None:
            logger.warning(
                f"Environment variable '{env_var}' not set (referenced at config path: {_path or 'root'}). "
                f"The literal string '{data}' will be used, which may cause errors."
            )
            return data
        return value
    return data
