"""Circuit breaker for the transcription/analysis APIs under overload."""

from __future__ import annotations

import threading
import time
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from audiojobs_modules.config import logger
from audiojobs_modules.errors import TransientStageError

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(TransientStageError):
    """Raised instead of calling the API while the circuit is open."""


_OVERLOAD_MARKERS = ("overloaded", "resource has been exhausted", "429", "503")


def is_overload_error(exc: BaseException) -> bool:
    status = getattr(exc, "status", None)
    if status in (429, 503):
        return True
    text = str(exc).lower()
    return any(marker in text for marker in _OVERLOAD_MARKERS)


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        *,
        threshold: int = 3,
        timeout: float = 30.0,
        recovery_successes: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.threshold = threshold
        self.timeout = timeout
        self.recovery_successes = recovery_successes
        self._clock = clock
        self._lock = threading.Lock()
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time = 0.0

    def _before_call(self) -> None:
        with self._lock:
            if self.state is not CircuitState.OPEN:
                return
            if self._clock() - self.last_failure_time > self.timeout:
                logger.info(f"[CircuitBreaker:{self.name}] half-open, probing")
                self.state = CircuitState.HALF_OPEN
                self.success_count = 0
                return
        raise CircuitOpenError(f"circuit '{self.name}' is open; upstream overloaded")

    def record_success(self) -> None:
        with self._lock:
            self.failure_count = 0
            if self.state is CircuitState.HALF_OPEN:
                self.success_count += 1
                if self.success_count >= self.recovery_successes:
                    logger.info(f"[CircuitBreaker:{self.name}] closed after recovery")
                    self.state = CircuitState.CLOSED
                    self.success_count = 0

    def record_failure(self, exc: BaseException) -> None:
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = self._clock()
            if self.state is CircuitState.HALF_OPEN:
                self.state = CircuitState.OPEN
                logger.warning(f"[CircuitBreaker:{self.name}] reopened after failure in half-open state")
                return
            if is_overload_error(exc):
                logger.warning(
                    f"[CircuitBreaker:{self.name}] overload detected ({self.failure_count}/{self.threshold})"
                )
                if self.failure_count >= self.threshold:
                    self.state = CircuitState.OPEN
                    logger.error(f"[CircuitBreaker:{self.name}] opened after repeated overload failures")

    async def call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        self._before_call()
        try:
            result = await fn(*args, **kwargs)
        except Exception as exc:
            self.record_failure(exc)
            raise
        self.record_success()
        return result

    def reset(self) -> None:
        with self._lock:
            self.state = CircuitState.CLOSED
            self.failure_count = 0
            self.success_count = 0
            self.last_failure_time = 0.0

    def metrics(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "last_failure_time": self.last_failure_time,
        }


__all__ = ["CircuitBreaker", "CircuitOpenError", "CircuitState", "is_overload_error"]
