"""Shared utility functions."""

from .atomic_io import atomic_write_model, atomic_write_text
from .rich_logging import ContextLogger, setup_logging

__all__ = [
    "atomic_write_model",
    "atomic_write_text",
    "ContextLogger",
    "setup_logging",
]
