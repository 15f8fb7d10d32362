from __future__ import annotations

import enum
import inspect
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable

import anyio

from billing.infra.metrics import metrics

logger = logging.getLogger("billing.circuit")


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    HALF_OPEN = "half_open"
    OPEN = "open"


class CircuitBreakerOpenError(RuntimeError):
    def __init__(self, name: str, state: CircuitState) -> None:
        super().__init__(f"circuit {name} is {state.value}")
        self.name = name
        self.state = state


class CircuitBreaker:
    """Guard for calls into the payment provider.

    Failures are counted inside a sliding window of ``window_seconds``; reaching
    ``failure_threshold`` opens the circuit. Once ``recovery_time`` has passed,
    ``half_open_max_calls`` trial calls go through: one success closes the
    circuit, one failure reopens it. A call exceeding ``timeout_seconds`` counts
    as a failure and raises ``TimeoutError``.
    """

    def __init__(
        self,
        *,
        name: str,
        failure_threshold: int = 5,
        recovery_time: float = 30.0,
        window_seconds: float = 60.0,
        half_open_max_calls: int = 1,
        timeout_seconds: float | None = None,
    ) -> None:
        self.name = name
        self.failure_threshold = max(1, failure_threshold)
        self.recovery_time = max(0.01, recovery_time)
        self.window_seconds = max(0.01, window_seconds)
        self.half_open_max_calls = max(1, half_open_max_calls)
        self.timeout_seconds = None if timeout_seconds is None else max(0.01, timeout_seconds)
        self._state = CircuitState.CLOSED
        self._opened_at = 0.0
        self._failure_times: deque[float] = deque()
        self._trial_calls = 0
        self._lock = anyio.Lock()
        metrics.record_circuit_state(self.name, self._state.value)

    @property
    def state(self) -> str:
        return self._state.value

    def _move_to(self, new_state: CircuitState) -> None:
        if new_state is self._state:
            return
        logger.info(
            "circuit_state_changed",
            extra={"extra": {"name": self.name, "from": self._state.value, "to": new_state.value}},
        )
        self._state = new_state
        self._trial_calls = 0
        if new_state is CircuitState.OPEN:
            self._opened_at = time.monotonic()
        metrics.record_circuit_state(self.name, new_state.value)

    async def _admit(self) -> None:
        async with self._lock:
            if self._state is CircuitState.OPEN:
                if time.monotonic() - self._opened_at < self.recovery_time:
                    raise CircuitBreakerOpenError(self.name, self._state)
                self._move_to(CircuitState.HALF_OPEN)
            if self._state is CircuitState.HALF_OPEN:
                if self._trial_calls >= self.half_open_max_calls:
                    raise CircuitBreakerOpenError(self.name, self._state)
                self._trial_calls += 1

    async def _on_failure(self, exc: BaseException) -> None:
        async with self._lock:
            now = time.monotonic()
            self._failure_times.append(now)
            while self._failure_times and self._failure_times[0] < now - self.window_seconds:
                self._failure_times.popleft()
            logger.warning(
                "circuit_failure",
                extra={
                    "extra": {
                        "name": self.name,
                        "state": self._state.value,
                        "error": type(exc).__name__,
                        "recent_failures": len(self._failure_times),
                    }
                },
            )
            if self._state is CircuitState.HALF_OPEN or len(self._failure_times) >= self.failure_threshold:
                self._move_to(CircuitState.OPEN)

    async def _on_success(self) -> None:
        async with self._lock:
            self._failure_times.clear()
            self._move_to(CircuitState.CLOSED)

    async def call(
        self,
        fn: Callable[..., Any | Awaitable[Any]],
        *args: Any,
        timeout_seconds: float | None = None,
        **kwargs: Any,
    ) -> Any:
        await self._admit()
        timeout = self.timeout_seconds if timeout_seconds is None else max(0.01, timeout_seconds)
        try:
            with anyio.fail_after(timeout):
                result = fn(*args, **kwargs)
                if inspect.isawaitable(result):
                    result = await result
        except Exception as exc:
            await self._on_failure(exc)
            raise
        await self._on_success()
        return result
