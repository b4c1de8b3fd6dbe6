"""
Error taxonomy shared by the graph executor and the orchestrator.

Every failure that can reach a caller is one of the kinds in ``ErrorKind``.
Exceptions are raised inside the engine and converted into result objects at
the executor/orchestrator boundary, so callers never see a raw exception.
"""

import asyncio
from enum import StrEnum
from typing import Any


class ErrorKind(StrEnum):
    """Classification of an execution failure."""

    VALIDATION_ERROR = "validation_error"  # Malformed or cyclic graph
    DEPENDENCY_UNSATISFIED = "dependency_unsatisfied"  # Planner/orchestrator invariant broken
    TIMEOUT = "timeout"  # Attempt exceeded its wall-clock budget
    CAPABILITY_ERROR = "capability_error"  # External call reported failure
    CANCELLED = "cancelled"  # Caller cancelled the run
    INTERNAL_ERROR = "internal_error"  # Anything unexpected


class SkillflowError(Exception):
    """Base class for all engine errors."""

    kind: ErrorKind = ErrorKind.INTERNAL_ERROR
    retryable: bool = False

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def with_prefix(self, prefix: str) -> "SkillflowError":
        """Copy of this error, same kind and attributes, with ``prefix`` on its message."""
        error = self.__class__.__new__(self.__class__)
        error.__dict__.update(self.__dict__)
        error.message = prefix + self.message
        error.args = (error.message,)
        return error

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
            "context": self.context,
        }


class WorkflowValidationError(SkillflowError):
    """A workflow failed structural validation."""

    kind = ErrorKind.VALIDATION_ERROR

    def __init__(self, errors: list[str], context: dict[str, Any] | None = None):
        self.errors = list(errors)
        super().__init__("Workflow validation failed: " + "; ".join(self.errors), context)


class DependencyUnsatisfiedError(SkillflowError):
    """A unit of work was reached before (or without) its dependencies."""

    kind = ErrorKind.DEPENDENCY_UNSATISFIED

    def __init__(
        self,
        message: str,
        missing: dict[str, list[str]] | None = None,
        context: dict[str, Any] | None = None,
    ):
        self.missing = missing or {}
        super().__init__(message, context)


class InvocationTimeoutError(SkillflowError):
    """A single attempt ran past its timeout."""

    kind = ErrorKind.TIMEOUT
    retryable = True

    def __init__(self, timeout_ms: float, context: dict[str, Any] | None = None):
        self.timeout_ms = timeout_ms
        super().__init__(f"Operation timed out after {timeout_ms:g}ms", context)


class CapabilityError(SkillflowError):
    """The external capability returned or raised a failure."""

    kind = ErrorKind.CAPABILITY_ERROR

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context)
        self.retryable = retryable


class CircuitOpenError(CapabilityError):
    """Rejected without calling the capability because its breaker is open."""

    def __init__(self, key: str, retry_in_ms: float):
        self.key = key
        self.retry_in_ms = retry_in_ms
        super().__init__(
            f"Circuit breaker for '{key}' is open (retry in {retry_in_ms:.0f}ms)",
            retryable=False,
            context={"breaker": key},
        )


class ExecutionCancelledError(SkillflowError):
    """The run was cancelled by its caller."""

    kind = ErrorKind.CANCELLED

    def __init__(self, reason: str = "Execution cancelled", context: dict[str, Any] | None = None):
        super().__init__(reason, context)


class InternalError(SkillflowError):
    """An invariant inside the engine was violated."""

    kind = ErrorKind.INTERNAL_ERROR


def classify_exception(exc: BaseException) -> SkillflowError:
    """Map any exception raised by a capability into the error taxonomy.

    Connection, OS and timeout errors are transient and therefore retryable;
    anything else is reported as a non-retryable capability failure.
    """
    if isinstance(exc, SkillflowError):
        return exc
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return CapabilityError(f"Capability timed out: {exc}", retryable=True)
    if isinstance(exc, (ConnectionError, OSError)):
        return CapabilityError(f"Network error: {exc}", retryable=True)
    return CapabilityError(f"{type(exc).__name__}: {exc}", retryable=False)


def is_transient(error: SkillflowError) -> bool:
    """Default retry predicate: transient, network and model-unavailable failures."""
    return error.retryable and error.kind in (ErrorKind.TIMEOUT, ErrorKind.CAPABILITY_ERROR)
