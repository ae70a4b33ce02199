"""Durable atomic writes for session files.

A write goes to a uniquely named temp file in the target's directory, is
flushed to disk, then renamed over the target. With ``durable`` the directory
entry is synced too, so a committed session version survives a crash.
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)


def _fsync_directory(directory: Path) -> None:
    if os.name != "posix":
        return
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def atomic_write_text(
    file_path: Path,
    content: str,
    max_retries: int = 3,
    durable: bool = True,
) -> None:
    """
    Replace ``file_path`` with ``content`` in one step.

    Readers see either the previous file or the complete new one. Concurrent
    writers in one process never share a temp file.

    Args:
        file_path: Target file path
        content: Content to write
        max_retries: Maximum number of attempts on failure
        durable: fsync the file and its directory before returning

    Raises:
        OSError: If write fails after all retries
    """
    file_path = Path(file_path)
    last_error: Optional[OSError] = None
    for attempt in range(1, max_retries + 1):
        tmp_file: Optional[Path] = None
        try:
            fd, tmp_name = tempfile.mkstemp(
                dir=file_path.parent, prefix=f".{file_path.name}.", suffix=".tmp"
            )
            tmp_file = Path(tmp_name)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                if durable:
                    os.fsync(f.fileno())
            tmp_file.replace(file_path)
            tmp_file = None
            if durable:
                _fsync_directory(file_path.parent)
            return
        except OSError as e:
            last_error = e
            if attempt < max_retries:
                logger.warning(f"Failed to write {file_path} (attempt {attempt}/{max_retries}): {e}")
        finally:
            if tmp_file is not None and tmp_file.exists():
                try:
                    tmp_file.unlink()
                except OSError:
                    logger.debug(f"Could not remove temp file {tmp_file}")

    logger.error(f"Failed to write {file_path} after {max_retries} attempts: {last_error}")
    raise last_error


def atomic_write_model(file_path: Path, model: BaseModel, indent: int = 2, durable: bool = True) -> None:
    """Atomically write a pydantic model as JSON."""
    atomic_write_text(file_path, model.model_dump_json(indent=indent), durable=durable)
