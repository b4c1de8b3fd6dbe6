"""Tests for RetryPolicy, CircuitBreaker and ResilientInvoker."""

import asyncio

import pytest

from skillflow.errors import (
    CapabilityError,
    CircuitOpenError,
    ErrorKind,
    ExecutionCancelledError,
)
from skillflow.runtime.cancellation import CancellationToken
from skillflow.runtime.resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    ResilientInvoker,
    RetryPolicy,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


class Flaky:
    """Fails ``failures`` times with ``error``, then returns ``value``."""

    def __init__(self, failures, error=None, value="ok"):
        self.failures = failures
        self.error = error or CapabilityError("backend unavailable", retryable=True)
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.value


def fast_policy(**kwargs):
    kwargs.setdefault("backoff_base_ms", 0)
    return RetryPolicy(**kwargs)


# ---------------------------------------------------------------------------
# RetryPolicy
# ---------------------------------------------------------------------------


def test_delay_grows_exponentially_and_is_capped():
    policy = RetryPolicy(backoff_base_ms=100, backoff_factor=2, backoff_cap_ms=500)
    assert [policy.delay_ms(n) for n in range(1, 6)] == [100, 200, 400, 500, 500]


@pytest.mark.parametrize("kwargs", [{"max_attempts": 0}, {"timeout_ms": 0}])
def test_policy_rejects_invalid_values(kwargs):
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_first_attempt_success():
    op = Flaky(0)
    result = await ResilientInvoker(fast_policy()).invoke(op)
    assert result.success
    assert result.value == "ok"
    assert result.attempts == 1
    assert [r.outcome for r in result.audit] == ["success"]


@pytest.mark.asyncio
@pytest.mark.parametrize("max_attempts", [2, 3, 4])
async def test_transient_failures_retried_up_to_limit(max_attempts):
    op = Flaky(failures=100)
    result = await ResilientInvoker(fast_policy(max_attempts=max_attempts)).invoke(op)
    assert not result.success
    assert op.calls == max_attempts
    assert result.attempts == max_attempts
    assert result.error_kind == ErrorKind.CAPABILITY_ERROR
    assert [r.outcome for r in result.audit] == ["failure"] * max_attempts


@pytest.mark.asyncio
async def test_recovers_after_transient_failure():
    op = Flaky(failures=2)
    result = await ResilientInvoker(fast_policy(max_attempts=3)).invoke(op)
    assert result.success
    assert result.attempts == 3
    assert [r.outcome for r in result.audit] == ["failure", "failure", "success"]


@pytest.mark.asyncio
async def test_permanent_failure_not_retried():
    op = Flaky(failures=5, error=CapabilityError("bad request", retryable=False))
    result = await ResilientInvoker(fast_policy(max_attempts=3)).invoke(op)
    assert not result.success
    assert op.calls == 1
    assert result.error.message == "bad request"


@pytest.mark.asyncio
async def test_unexpected_exception_is_classified():
    op = Flaky(failures=5, error=KeyError("x"))
    result = await ResilientInvoker(fast_policy()).invoke(op)
    assert not result.success
    assert op.calls == 1
    assert result.error_kind == ErrorKind.CAPABILITY_ERROR
    assert "KeyError" in result.error.message


@pytest.mark.asyncio
async def test_connection_errors_are_transient():
    op = Flaky(failures=1, error=ConnectionError("reset"))
    result = await ResilientInvoker(fast_policy()).invoke(op)
    assert result.success
    assert op.calls == 2


@pytest.mark.asyncio
async def test_custom_should_retry():
    policy = fast_policy(max_attempts=3, should_retry=lambda error: False)
    op = Flaky(failures=5)
    result = await ResilientInvoker().invoke(op, policy=policy)
    assert op.calls == 1
    assert not result.success


@pytest.mark.asyncio
async def test_backoff_delays_between_attempts():
    sleep = RecordingSleep()
    policy = RetryPolicy(max_attempts=4, backoff_base_ms=100, backoff_factor=2)
    invoker = ResilientInvoker(policy, sleep=sleep)
    await invoker.invoke(Flaky(failures=10))
    # No sleep after the final attempt
    assert sleep.delays == [0.1, 0.2, 0.4]


# ---------------------------------------------------------------------------
# Timeout
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_slow_attempt_times_out_and_counts():
    calls = 0

    async def slow():
        nonlocal calls
        calls += 1
        await asyncio.sleep(10)

    policy = fast_policy(timeout_ms=20, max_attempts=2)
    result = await ResilientInvoker(policy).invoke(slow)
    assert not result.success
    assert calls == 2
    assert result.attempts == 2
    assert result.error_kind == ErrorKind.TIMEOUT
    assert "timed out after 20ms" in result.error.message


@pytest.mark.asyncio
async def test_timeout_then_success():
    calls = 0

    async def op():
        nonlocal calls
        calls += 1
        if calls == 1:
            await asyncio.sleep(10)
        return "done"

    result = await ResilientInvoker(fast_policy(timeout_ms=20)).invoke(op)
    assert result.success
    assert result.value == "done"
    assert [r.error_kind for r in result.audit] == [ErrorKind.TIMEOUT, None]


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------


def test_breaker_opens_at_threshold_and_half_opens_after_cooldown():
    clock = FakeClock()
    breaker = CircuitBreaker("svc", CircuitBreakerConfig(threshold=2, cooldown_ms=1000), clock)

    breaker.before_call()
    breaker.record_failure()
    assert breaker.state == CircuitState.CLOSED
    breaker.before_call()
    breaker.record_failure()
    assert breaker.state == CircuitState.OPEN

    with pytest.raises(CircuitOpenError):
        breaker.before_call()

    clock.advance(1.0)
    breaker.before_call()
    assert breaker.state == CircuitState.HALF_OPEN
    # Only one trial call at a time
    with pytest.raises(CircuitOpenError):
        breaker.before_call()

    breaker.record_success()
    assert breaker.state == CircuitState.CLOSED
    assert breaker.failures == 0


def test_failed_trial_call_reopens():
    clock = FakeClock()
    breaker = CircuitBreaker("svc", CircuitBreakerConfig(threshold=1, cooldown_ms=500), clock)
    breaker.before_call()
    breaker.record_failure()
    clock.advance(0.5)
    breaker.before_call()
    breaker.record_failure()
    assert breaker.state == CircuitState.OPEN
    with pytest.raises(CircuitOpenError):
        breaker.before_call()


def test_late_failures_do_not_extend_cooldown():
    clock = FakeClock()
    breaker = CircuitBreaker("svc", CircuitBreakerConfig(threshold=1, cooldown_ms=1000), clock)
    # Two calls admitted while closed
    breaker.before_call()
    breaker.before_call()
    breaker.record_failure()
    assert breaker.state == CircuitState.OPEN

    clock.advance(0.5)
    breaker.record_failure()
    assert breaker.state == CircuitState.OPEN

    clock.advance(0.5)
    breaker.before_call()
    assert breaker.state == CircuitState.HALF_OPEN


def test_success_resets_consecutive_failures():
    breaker = CircuitBreaker("svc", CircuitBreakerConfig(threshold=3), FakeClock())
    breaker.record_failure()
    breaker.record_failure()
    breaker.record_success()
    breaker.record_failure()
    breaker.record_failure()
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_open_breaker_rejects_without_calling():
    clock = FakeClock()
    invoker = ResilientInvoker(
        fast_policy(max_attempts=1),
        breaker_config=CircuitBreakerConfig(threshold=2, cooldown_ms=10_000),
        clock=clock,
    )
    op = Flaky(failures=100)

    for _ in range(2):
        result = await invoker.invoke(op, key="reviewer")
        assert result.error.message == "backend unavailable"
    assert op.calls == 2

    rejected = await invoker.invoke(op, key="reviewer")
    assert op.calls == 2
    assert not rejected.success
    assert isinstance(rejected.error, CircuitOpenError)
    assert rejected.error_kind == ErrorKind.CAPABILITY_ERROR
    assert rejected.attempts == 0
    assert [r.outcome for r in rejected.audit] == ["rejected"]

    # Other capabilities have their own breaker
    other = await invoker.invoke(Flaky(0), key="summarizer")
    assert other.success

    clock.advance(10)
    op.failures = 0
    recovered = await invoker.invoke(op, key="reviewer")
    assert recovered.success
    assert invoker.breaker("reviewer").state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_breaker_open_mid_retry_stops_retrying():
    invoker = ResilientInvoker(
        fast_policy(max_attempts=5),
        breaker_config=CircuitBreakerConfig(threshold=2, cooldown_ms=10_000),
        clock=FakeClock(),
    )
    op = Flaky(failures=100)
    result = await invoker.invoke(op, key="svc")
    assert op.calls == 2
    assert result.attempts == 2
    assert [r.outcome for r in result.audit] == ["failure", "failure", "rejected"]
    assert isinstance(result.error, CircuitOpenError)


@pytest.mark.asyncio
async def test_no_breaker_without_key_or_config():
    invoker = ResilientInvoker(fast_policy())
    assert invoker.breaker("svc") is None
    op = Flaky(failures=100)
    for _ in range(10):
        await invoker.invoke(op, key="svc")
    assert op.calls == 30


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_already_cancelled_token_skips_call():
    token = CancellationToken()
    token.cancel("stop")
    op = Flaky(0)
    result = await ResilientInvoker(fast_policy()).invoke(op, cancel_token=token)
    assert op.calls == 0
    assert result.error_kind == ErrorKind.CANCELLED
    assert result.error.message == "stop"


@pytest.mark.asyncio
async def test_cancel_aborts_in_flight_attempt():
    token = CancellationToken()
    started = asyncio.Event()
    finished = False

    async def slow():
        nonlocal finished
        started.set()
        await asyncio.sleep(10)
        finished = True

    invoker = ResilientInvoker(
        fast_policy(timeout_ms=5_000),
        breaker_config=CircuitBreakerConfig(threshold=1),
    )
    task = asyncio.create_task(invoker.invoke(slow, key="svc", cancel_token=token))
    await started.wait()
    token.cancel("user abort")
    result = await asyncio.wait_for(task, timeout=1)

    assert not result.success
    assert isinstance(result.error, ExecutionCancelledError)
    assert result.attempts == 1
    assert finished is False
    # Cancellation does not count against the breaker
    assert invoker.breaker("svc").state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_cancel_during_backoff():
    token = CancellationToken()
    op = Flaky(failures=100)

    async def cancelling_sleep(seconds):
        token.cancel()
        await asyncio.sleep(10)

    invoker = ResilientInvoker(
        RetryPolicy(max_attempts=3, backoff_base_ms=50), sleep=cancelling_sleep
    )
    result = await asyncio.wait_for(invoker.invoke(op, cancel_token=token), timeout=1)
    assert op.calls == 1
    assert result.error_kind == ErrorKind.CANCELLED


@pytest.mark.asyncio
async def test_token_deadline():
    token = CancellationToken(timeout_ms=20)

    async def slow():
        await asyncio.sleep(10)

    result = await ResilientInvoker(fast_policy(timeout_ms=5_000)).invoke(
        slow, cancel_token=token
    )
    assert result.error_kind == ErrorKind.CANCELLED
    assert token.reason == "Deadline exceeded"
