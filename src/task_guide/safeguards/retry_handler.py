"""Retry handler with exponential backoff for session store calls."""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, Optional, Tuple, Type, TypeVar

from ..core.errors import StoreUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Only transient failures are retried. ConcurrentModification and
# SessionNotFound reach the caller on the first attempt.
TRANSIENT_ERRORS: Tuple[Type[BaseException], ...] = (StoreUnavailable, OSError, TimeoutError)


class RetryHandler:
    """
    Runs store calls with a timeout and retries transient failures.

    Logic:
    - Backoff: initial * multiplier^(retry_count-1), max max_backoff seconds
    - After max_retries retries the last error is raised
    - A call exceeding ``timeout`` counts as a transient TimeoutError
    """

    def __init__(
        self,
        initial_backoff: float = 0.5,
        max_backoff: float = 8.0,
        multiplier: float = 2.0,
        max_retries: int = 3,
        timeout: Optional[float] = 10.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.multiplier = multiplier
        self.max_retries = max_retries
        self.timeout = timeout
        self._sleep = sleep
        self._executor: Optional[ThreadPoolExecutor] = None

    @classmethod
    def from_config(cls, persistence) -> "RetryHandler":
        return cls(
            initial_backoff=persistence.backoff_initial,
            max_backoff=persistence.backoff_max,
            multiplier=persistence.backoff_multiplier,
            max_retries=persistence.max_retries,
            timeout=persistence.timeout_seconds,
        )

    def calculate_backoff(self, retry_count: int) -> float:
        """
        Calculate backoff time for given retry count.

        Formula: initial * multiplier^(retry_count-1), capped at max_backoff
        """
        backoff = self.initial_backoff * (self.multiplier ** (retry_count - 1))
        return min(backoff, self.max_backoff)

    def call(self, fn: Callable[..., T], *args, description: str = "store call", **kwargs) -> T:
        """Invoke ``fn`` until it succeeds, a non-transient error occurs, or retries run out."""
        retry_count = 0
        while True:
            try:
                return self._invoke(fn, *args, **kwargs)
            except TRANSIENT_ERRORS as e:
                retry_count += 1
                if retry_count > self.max_retries:
                    logger.error(f"{description} failed after {self.max_retries} retries: {e}")
                    raise
                backoff = self.calculate_backoff(retry_count)
                logger.warning(
                    f"{description} failed (attempt {retry_count}/{self.max_retries + 1}): {e}. "
                    f"Retrying in {backoff:.2f}s"
                )
                self._sleep(backoff)

    def _invoke(self, fn: Callable[..., T], *args, **kwargs) -> T:
        if self.timeout is None:
            return fn(*args, **kwargs)
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="task-guide-store")
        future = self._executor.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout:
            future.cancel()
            raise TimeoutError(f"Store call exceeded {self.timeout}s") from None

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
