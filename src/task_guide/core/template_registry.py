"""Versioned registry of task templates.

Published versions are immutable: sessions started on a version keep
resolving to exactly that graph, while new sessions pick the latest.
"""

import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional

from .errors import TemplateValidationError, UnknownTemplate
from .template import TemplateDefinition, load_template

logger = logging.getLogger(__name__)

TEMPLATE_SUFFIXES = (".yaml", ".yml")


class TemplateRegistry:
    """Holds every published template version, keyed by (task_type, version)."""

    def __init__(self):
        self._templates: Dict[str, Dict[int, TemplateDefinition]] = {}
        self._lock = threading.Lock()

    def publish(self, template: TemplateDefinition) -> TemplateDefinition:
        """Validate and register a template version.

        Re-publishing an identical definition is a no-op; publishing different
        content under an existing version raises TemplateValidationError.
        """
        template.to_graph()
        with self._lock:
            versions = self._templates.setdefault(template.task_type, {})
            existing = versions.get(template.version)
            if existing is not None:
                if existing.model_dump() != template.model_dump():
                    raise TemplateValidationError(
                        f"Template {template.task_type} v{template.version} is already "
                        f"published with different content; publish a new version instead"
                    )
                return existing
            versions[template.version] = template

        logger.info(f"Published template {template.task_type} v{template.version}")
        return template

    def load_directory(self, directory: Path) -> List[TemplateDefinition]:
        """Load and publish every template file in a directory (sorted by name)."""
        if not directory.is_dir():
            logger.warning(f"Templates directory not found: {directory}")
            return []

        loaded = []
        for path in sorted(directory.iterdir()):
            if path.suffix not in TEMPLATE_SUFFIXES:
                continue
            loaded.append(self.publish(load_template(path)))
        logger.debug(f"Loaded {len(loaded)} template(s) from {directory}")
        return loaded

    def get(self, task_type: str, version: Optional[int] = None) -> TemplateDefinition:
        """Resolve a template version; ``version=None`` means the latest."""
        with self._lock:
            versions = self._templates.get(task_type)
            if not versions:
                raise UnknownTemplate(task_type, version)
            if version is None:
                return versions[max(versions)]
            if version not in versions:
                raise UnknownTemplate(task_type, version)
            return versions[version]

    def graph(self, task_type: str, version: Optional[int] = None):
        return self.get(task_type, version).to_graph()

    def versions(self, task_type: str) -> List[int]:
        with self._lock:
            return sorted(self._templates.get(task_type, {}))

    def task_types(self) -> List[str]:
        with self._lock:
            return sorted(self._templates)

    def __contains__(self, task_type: object) -> bool:
        return task_type in self._templates


def load_registry(templates_dir: Path) -> TemplateRegistry:
    registry = TemplateRegistry()
    registry.load_directory(templates_dir)
    return registry
