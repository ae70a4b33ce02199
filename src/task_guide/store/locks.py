"""Session locks: mkdir-based file locks and an in-process lock registry."""

import logging
import os
import shutil
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator

from ..core.errors import StoreUnavailable

logger = logging.getLogger(__name__)


class FileLock:
    """
    Atomic cross-process lock using mkdir.

    - mkdir is atomic on local filesystems
    - The holder's PID is stored for stale lock detection
    - A lock whose holder process is gone is reclaimed
    """

    def __init__(self, lock_dir: Path, key: str):
        self.lock_dir = lock_dir
        self.key = key
        self.lock_path = lock_dir / f"{key}.lock"
        self.pid_file = self.lock_path / "pid"
        self._acquired = False

    def acquire(self, timeout: float = 0.0, poll_interval: float = 0.01) -> bool:
        """
        Attempt to acquire the lock, waiting up to ``timeout`` seconds.

        Returns True if lock acquired, False otherwise.
        """
        deadline = time.monotonic() + timeout
        while True:
            if self._try_acquire():
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(poll_interval)

    def _try_acquire(self) -> bool:
        if self.lock_path.exists():
            if self._is_stale_lock():
                logger.info(f"Removing stale lock for {self.key}")
                self._remove_lock()
            else:
                return False

        try:
            self.lock_path.mkdir(parents=True, exist_ok=False)
        except FileExistsError:
            logger.debug(f"Lock for {self.key} already exists (race condition)")
            return False
        self.pid_file.write_text(str(os.getpid()))
        self._acquired = True
        logger.debug(f"Acquired lock for {self.key} (PID: {os.getpid()})")
        return True

    def release(self) -> None:
        if self._acquired and self.lock_path.exists():
            self._remove_lock()
        self._acquired = False

    def _is_stale_lock(self) -> bool:
        """Check if lock is stale (process no longer exists)."""
        if not self.pid_file.exists():
            # Holder may be between mkdir and writing its PID
            try:
                age = time.time() - self.lock_path.stat().st_mtime
            except FileNotFoundError:
                return False
            if age > 5:
                logger.warning(f"Lock for {self.key} has no PID file (stale)")
                return True
            return False

        try:
            pid = int(self.pid_file.read_text().strip())
            os.kill(pid, 0)
            return False
        except ValueError:
            logger.warning(f"Lock for {self.key} has invalid PID (stale)")
            return True
        except FileNotFoundError:
            return False
        except ProcessLookupError:
            logger.warning(f"Lock for {self.key} held by dead PID {pid} (stale)")
            return True
        except PermissionError:
            # Holder may still be alive under another user
            logger.debug(f"Lock for {self.key} held by PID {pid} (cannot signal, assuming live)")
            return False

    def _remove_lock(self) -> None:
        if self.lock_path.exists():
            try:
                shutil.rmtree(self.lock_path)
            except OSError as e:
                logger.warning(f"Failed to remove lock directory {self.lock_path}: {e}")

    def __enter__(self):
        if not self.acquire(timeout=10.0):
            raise StoreUnavailable(f"Could not acquire lock for {self.key}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


class SessionLocks:
    """Per-session in-process locks serializing mutations of one session.

    Idle entries may be dropped (``discard``, ``prune``); a holder re-checks
    after acquiring that its lock is still the registered one.
    """

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def get(self, session_id: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(session_id, threading.Lock())

    @contextmanager
    def hold(self, session_id: str) -> Iterator[None]:
        while True:
            lock = self.get(session_id)
            lock.acquire()
            with self._guard:
                current = self._locks.setdefault(session_id, lock)
            if current is lock:
                break
            # Entry was dropped and recreated while we waited
            lock.release()
        try:
            yield
        finally:
            lock.release()

    def discard(self, session_id: str) -> None:
        """Drop the lock of a finished session unless someone holds it."""
        with self._guard:
            lock = self._locks.get(session_id)
            if lock is not None and not lock.locked():
                del self._locks[session_id]

    def prune(self) -> int:
        """Drop every idle lock; returns how many were dropped."""
        with self._guard:
            idle = [sid for sid, lock in self._locks.items() if not lock.locked()]
            for session_id in idle:
                del self._locks[session_id]
        return len(idle)
