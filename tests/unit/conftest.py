"""Shared test fixtures for unit tests."""

import pytest

from task_guide.core.config import (
    EvaluationConfig,
    LoggingConfig,
    PersistenceConfig,
    TaskGuideConfig,
    clear_config_cache,
)
from task_guide.core.feedback_bus import FeedbackBus
from task_guide.core.session_manager import SessionManager
from task_guide.core.template_registry import TemplateRegistry
from task_guide.safeguards.retry_handler import RetryHandler
from task_guide.store.memory_store import InMemorySessionStore

from tests.unit.workflow_fixtures import NOW, TEMPLATES_DIR


@pytest.fixture(autouse=True)
def _fresh_config_cache():
    clear_config_cache()
    yield
    clear_config_cache()


@pytest.fixture
def feedback_bus():
    return FeedbackBus()


@pytest.fixture
def registry():
    registry = TemplateRegistry()
    registry.load_directory(TEMPLATES_DIR)
    return registry


@pytest.fixture
def config(tmp_path):
    return TaskGuideConfig(
        templates_dir=TEMPLATES_DIR,
        evaluation=EvaluationConfig(),
        persistence=PersistenceConfig(backend="memory", directory=tmp_path / "sessions"),
        logging=LoggingConfig(use_colors=False),
    )


@pytest.fixture
def manager(registry, config, feedback_bus):
    # No timeout thread and no real sleeping in unit tests
    retry = RetryHandler(max_retries=2, timeout=None, sleep=lambda s: None)
    manager = SessionManager(
        registry,
        InMemorySessionStore(),
        config=config,
        feedback_bus=feedback_bus,
        retry_handler=retry,
        clock=lambda: NOW,
    )
    yield manager
    manager.close()
