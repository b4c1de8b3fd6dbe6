"""Runtime services shared by the graph executor and the orchestrator."""

from skillflow.runtime.cancellation import CancellationToken
from skillflow.runtime.capability import (
    CallableCapabilityProvider,
    CapabilityProvider,
    CapabilityResponse,
    HttpCapabilityProvider,
    TokenUsage,
)
from skillflow.runtime.resilience import (
    AttemptRecord,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    InvocationResult,
    ResilientInvoker,
    RetryPolicy,
)
from skillflow.runtime.telemetry import (
    HttpExporter,
    JsonlFileExporter,
    LoggingExporter,
    TelemetryEvent,
    TelemetryEventType,
    TelemetryExporter,
    TelemetrySink,
)

__all__ = [
    "CancellationToken",
    "CapabilityProvider",
    "CapabilityResponse",
    "CallableCapabilityProvider",
    "HttpCapabilityProvider",
    "TokenUsage",
    "RetryPolicy",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "AttemptRecord",
    "InvocationResult",
    "ResilientInvoker",
    "TelemetryEvent",
    "TelemetryEventType",
    "TelemetryExporter",
    "LoggingExporter",
    "JsonlFileExporter",
    "HttpExporter",
    "TelemetrySink",
]
