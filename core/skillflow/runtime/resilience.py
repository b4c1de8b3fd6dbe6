"""
Resilient invocation of external capabilities.

``ResilientInvoker`` wraps one capability call with:

- a hard per-attempt timeout (a timed-out attempt counts as an attempt)
- retry with exponential backoff, gated by ``RetryPolicy.should_retry``
- an optional circuit breaker per capability reference

Breaker states::

    CLOSED --threshold consecutive failures--> OPEN
    OPEN   --cooldown elapsed--> HALF_OPEN (one trial call allowed)
    HALF_OPEN --trial succeeds--> CLOSED
    HALF_OPEN --trial fails-->    OPEN

The invoker never raises for a failed call. Every outcome, including
cancellation, comes back as an ``InvocationResult`` carrying the final error
and a per-attempt audit log. Retries are only visible in that audit log.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Generic, TypeVar

from skillflow.config import EngineConfig
from skillflow.errors import (
    CircuitOpenError,
    ErrorKind,
    ExecutionCancelledError,
    InvocationTimeoutError,
    SkillflowError,
    classify_exception,
    is_transient,
)
from skillflow.runtime.cancellation import CancellationToken

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Timeout and retry settings for one invocation."""

    timeout_ms: float = 30_000
    max_attempts: int = 3
    backoff_base_ms: float = 1_000
    backoff_factor: float = 2.0
    backoff_cap_ms: float = 30_000
    should_retry: Callable[[SkillflowError], bool] = is_transient

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.timeout_ms <= 0:
            raise ValueError("timeout_ms must be positive")

    def delay_ms(self, attempt: int) -> float:
        """Backoff before retrying after failed attempt number ``attempt`` (1-based)."""
        return min(self.backoff_base_ms * self.backoff_factor ** (attempt - 1), self.backoff_cap_ms)

    @classmethod
    def from_config(cls, config: EngineConfig) -> "RetryPolicy":
        return cls(
            timeout_ms=config.request_timeout_ms,
            max_attempts=config.max_retry_attempts,
            backoff_base_ms=config.backoff_base_ms,
            backoff_factor=config.backoff_factor,
            backoff_cap_ms=config.backoff_cap_ms,
        )


@dataclass
class CircuitBreakerConfig:
    threshold: int = 5
    cooldown_ms: float = 60_000

    @classmethod
    def from_config(cls, config: EngineConfig) -> "CircuitBreakerConfig | None":
        """Breaker settings, or None when breakers are disabled."""
        if not config.breaker_enabled:
            return None
        return cls(threshold=config.breaker_threshold, cooldown_ms=config.breaker_cooldown_ms)


class CircuitState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Consecutive-failure breaker for a single capability."""

    def __init__(
        self,
        key: str,
        config: CircuitBreakerConfig,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.key = key
        self.config = config
        self._clock = clock
        self.state = CircuitState.CLOSED
        self.failures = 0
        self._opened_at = 0.0
        self._trial_in_flight = False

    def before_call(self) -> None:
        """Admit a call or raise CircuitOpenError without calling anything."""
        if self.state == CircuitState.OPEN:
            elapsed_ms = (self._clock() - self._opened_at) * 1000
            if elapsed_ms < self.config.cooldown_ms:
                raise CircuitOpenError(self.key, self.config.cooldown_ms - elapsed_ms)
            logger.info(f"Circuit breaker for '{self.key}' half-open, allowing one trial call")
            self.state = CircuitState.HALF_OPEN
            self._trial_in_flight = True
            return
        if self.state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(self.key, 0)
            self._trial_in_flight = True

    def record_success(self) -> None:
        if self.state != CircuitState.CLOSED:
            logger.info(f"Circuit breaker for '{self.key}' closed")
        self.state = CircuitState.CLOSED
        self.failures = 0
        self._trial_in_flight = False

    def record_failure(self) -> None:
        self.failures += 1
        # Late failures while already open do not restart the cooldown
        if self.state != CircuitState.OPEN and (
            self.state == CircuitState.HALF_OPEN or self.failures >= self.config.threshold
        ):
            logger.warning(
                f"Circuit breaker for '{self.key}' opened after {self.failures} failure(s)"
            )
            self.state = CircuitState.OPEN
            self._opened_at = self._clock()
        self._trial_in_flight = False

    def release(self) -> None:
        """Give back the half-open trial slot that ended without an outcome (cancelled)."""
        self._trial_in_flight = False


@dataclass
class AttemptRecord:
    """Audit entry for a single attempt."""

    attempt: int
    outcome: str  # "success", "failure" or "rejected"
    duration_ms: int = 0
    error: str | None = None
    error_kind: ErrorKind | None = None


@dataclass
class InvocationResult(Generic[T]):
    """Final outcome of an invocation after all retries."""

    success: bool
    value: T | None = None
    error: SkillflowError | None = None
    attempts: int = 0
    duration_ms: int = 0
    audit: list[AttemptRecord] = field(default_factory=list)

    @property
    def error_kind(self) -> ErrorKind | None:
        return self.error.kind if self.error else None


class ResilientInvoker:
    """
    Applies RetryPolicy and circuit breakers to capability calls.

    One invoker is shared by every node and task of a run so that breaker
    state is per capability, not per caller.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        breaker_config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.policy = policy or RetryPolicy()
        self.breaker_config = breaker_config
        self._clock = clock
        self._sleep = sleep
        self._breakers: dict[str, CircuitBreaker] = {}

    @classmethod
    def from_config(cls, config: EngineConfig, **kwargs: Any) -> "ResilientInvoker":
        return cls(
            policy=RetryPolicy.from_config(config),
            breaker_config=CircuitBreakerConfig.from_config(config),
            **kwargs,
        )

    def breaker(self, key: str) -> CircuitBreaker | None:
        if self.breaker_config is None:
            return None
        if key not in self._breakers:
            self._breakers[key] = CircuitBreaker(key, self.breaker_config, clock=self._clock)
        return self._breakers[key]

    async def invoke(
        self,
        operation: Callable[[], Awaitable[T]],
        key: str | None = None,
        policy: RetryPolicy | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> InvocationResult[T]:
        """
        Run ``operation`` until it succeeds, retries are exhausted, or a
        non-retryable error occurs.

        Args:
            operation: Zero-argument factory returning a fresh awaitable per attempt
            key: Capability reference; selects the circuit breaker
            policy: Overrides the invoker's default policy for this call
            cancel_token: Aborts the in-flight attempt when cancelled
        """
        policy = policy or self.policy
        breaker = self.breaker(key) if key else None
        result: InvocationResult[T] = InvocationResult(success=False)
        started = self._clock()
        label = key or "operation"

        for attempt in range(1, policy.max_attempts + 1):
            if cancel_token is not None and cancel_token.cancelled:
                result.error = ExecutionCancelledError(cancel_token.reason)
                break

            if breaker is not None:
                try:
                    breaker.before_call()
                except CircuitOpenError as e:
                    logger.warning(str(e), extra={"capability": key, "attempt": attempt})
                    result.audit.append(
                        AttemptRecord(attempt, "rejected", error=str(e), error_kind=e.kind)
                    )
                    result.error = e
                    break

            result.attempts = attempt
            attempt_started = self._clock()
            try:
                value = await self._run_attempt(operation, policy.timeout_ms, cancel_token)
            except asyncio.CancelledError:
                if breaker is not None:
                    breaker.release()
                raise
            except Exception as exc:
                error = classify_exception(exc)
            else:
                if breaker is not None:
                    breaker.record_success()
                result.audit.append(
                    AttemptRecord(attempt, "success", _elapsed_ms(self._clock, attempt_started))
                )
                result.success = True
                result.value = value
                result.error = None
                break

            result.error = error
            result.audit.append(
                AttemptRecord(
                    attempt,
                    "failure",
                    _elapsed_ms(self._clock, attempt_started),
                    error=error.message,
                    error_kind=error.kind,
                )
            )

            if isinstance(error, ExecutionCancelledError):
                if breaker is not None:
                    breaker.release()
                break
            if breaker is not None:
                breaker.record_failure()

            if attempt >= policy.max_attempts or not policy.should_retry(error):
                logger.warning(
                    f"{label} failed on attempt {attempt}/{policy.max_attempts}: {error.message}",
                    extra={"capability": key, "attempt": attempt},
                )
                break

            delay_ms = policy.delay_ms(attempt)
            logger.info(
                f"{label} failed on attempt {attempt}/{policy.max_attempts} "
                f"({error.message}), retrying in {delay_ms:.0f}ms",
                extra={"capability": key, "attempt": attempt},
            )
            await self._backoff(delay_ms, cancel_token)

        result.duration_ms = _elapsed_ms(self._clock, started)
        return result

    async def _run_attempt(
        self,
        operation: Callable[[], Awaitable[T]],
        timeout_ms: float,
        cancel_token: CancellationToken | None,
    ) -> T:
        task = asyncio.ensure_future(operation())
        waiters: set[asyncio.Future] = {task}
        cancel_wait = None
        if cancel_token is not None:
            cancel_wait = asyncio.ensure_future(cancel_token.wait())
            waiters.add(cancel_wait)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout_ms / 1000, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if cancel_wait is not None:
                cancel_wait.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        if cancel_token is not None and cancel_token.cancelled:
            raise ExecutionCancelledError(cancel_token.reason)
        raise InvocationTimeoutError(timeout_ms)

    async def _backoff(self, delay_ms: float, cancel_token: CancellationToken | None) -> None:
        if delay_ms <= 0:
            return
        if cancel_token is None:
            await self._sleep(delay_ms / 1000)
            return
        sleeper = asyncio.ensure_future(self._sleep(delay_ms / 1000))
        waiter = asyncio.ensure_future(cancel_token.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            waiter.cancel()


def _elapsed_ms(clock: Callable[[], float], since: float) -> int:
    return int((clock() - since) * 1000)
