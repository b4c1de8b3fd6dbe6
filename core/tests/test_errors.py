"""Tests for the error taxonomy and cancellation token."""

import asyncio

import pytest

from skillflow.errors import (
    CapabilityError,
    CircuitOpenError,
    ErrorKind,
    ExecutionCancelledError,
    InvocationTimeoutError,
    WorkflowValidationError,
    classify_exception,
    is_transient,
)
from skillflow.runtime.cancellation import CancellationToken


@pytest.mark.parametrize(
    "exc,retryable",
    [
        (TimeoutError("slow"), True),
        (ConnectionResetError("reset"), True),
        (OSError("disk"), True),
        (ValueError("bad"), False),
    ],
)
def test_classify_exception(exc, retryable):
    error = classify_exception(exc)
    assert error.kind == ErrorKind.CAPABILITY_ERROR
    assert error.retryable is retryable


def test_engine_errors_pass_through():
    error = InvocationTimeoutError(250)
    assert classify_exception(error) is error
    assert error.message == "Operation timed out after 250ms"
    assert is_transient(error)


def test_cancellation_and_permanent_errors_are_not_transient():
    assert not is_transient(ExecutionCancelledError())
    assert not is_transient(CapabilityError("bad request"))
    assert is_transient(CapabilityError("overloaded", retryable=True))


def test_validation_error_message_and_dict():
    error = WorkflowValidationError(["a", "b"])
    assert error.message == "Workflow validation failed: a; b"
    assert error.to_dict() == {
        "kind": "validation_error",
        "message": "Workflow validation failed: a; b",
        "retryable": False,
        "context": {},
    }


def test_with_prefix_copies_error():
    error = CapabilityError("overloaded", retryable=True, context={"capability": "x"})
    prefixed = error.with_prefix("Task t failed: ")

    assert prefixed is not error
    assert type(prefixed) is CapabilityError
    assert prefixed.message == "Task t failed: overloaded"
    assert str(prefixed) == prefixed.message
    assert prefixed.retryable
    assert prefixed.context == {"capability": "x"}
    assert error.message == "overloaded"
    assert str(error) == "overloaded"


def test_with_prefix_keeps_subclass_attributes():
    error = CircuitOpenError("coder", 1500).with_prefix("Result synthesis failed: ")
    assert error.key == "coder"
    assert error.retry_in_ms == 1500
    assert str(error).startswith("Result synthesis failed: Circuit breaker for 'coder'")

    validation = WorkflowValidationError(["a"]).with_prefix("x: ")
    assert validation.errors == ["a"]
    assert str(validation) == "x: Workflow validation failed: a"


def test_token_cancel_keeps_first_reason():
    token = CancellationToken()
    assert not token.cancelled
    token.cancel("first")
    token.cancel("second")
    assert token.cancelled
    assert token.reason == "first"
    with pytest.raises(ExecutionCancelledError):
        token.raise_if_cancelled()


@pytest.mark.asyncio
async def test_token_wait_wakes_on_cancel():
    token = CancellationToken()
    waiter = asyncio.create_task(token.wait())
    await asyncio.sleep(0)
    token.cancel()
    await asyncio.wait_for(waiter, timeout=1)


@pytest.mark.asyncio
async def test_token_deadline_expires():
    token = CancellationToken(timeout_ms=10)
    await asyncio.wait_for(token.wait(), timeout=1)
    assert token.cancelled
    assert token.reason == "Deadline exceeded"
    assert token.remaining_seconds() == 0.0
