"""
TelemetrySink: buffers analytics events and flushes them in the background.

Producers call ``record()`` (or one of the ``track_*`` helpers) from the hot
path. Recording never blocks and never raises: the buffer is bounded and on
overflow the oldest event is dropped with a warning.

A background task started with ``start()`` flushes the buffer every
``flush_interval_ms`` through an exporter. A failed flush is logged and its
events go back into the buffer (still bounded) for the next attempt.
Telemetry failures never reach the workflow or session being measured.

Usage::

    sink = TelemetrySink.from_config(config)
    await sink.start()
    executor = GraphExecutor(provider, telemetry=sink)
    ...
    await sink.close()  # final flush
"""

import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from collections import deque
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

import httpx
from pydantic import BaseModel, Field

from skillflow.config import EngineConfig
from skillflow.observability import get_trace_context

logger = logging.getLogger(__name__)


class TelemetryEventType(StrEnum):
    WORKFLOW_EXECUTION = "workflow_execution"
    NODE_EXECUTION = "node_execution"
    TASK_EXECUTION = "task_execution"
    SESSION_EXECUTION = "session_execution"


class TelemetryEvent(BaseModel):
    event_type: str
    properties: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    context: dict[str, Any] = Field(
        default_factory=get_trace_context, description="Trace context at record time"
    )


# ---------------------------------------------------------------------------
# Exporters
# ---------------------------------------------------------------------------


class TelemetryExporter(ABC):
    """Ships a batch of events somewhere. May raise; the sink handles it."""

    @abstractmethod
    async def export(self, events: list[TelemetryEvent]) -> None: ...

    async def close(self) -> None:
        """Release resources."""


class LoggingExporter(TelemetryExporter):
    """Writes events to the ``skillflow.telemetry`` logger. Used when no endpoint is set."""

    def __init__(self, level: int = logging.INFO):
        self.level = level

    async def export(self, events: list[TelemetryEvent]) -> None:
        for event in events:
            logger.log(
                self.level,
                f"Telemetry event {event.event_type}: {event.properties}",
                extra={"event": event.event_type},
            )


class JsonlFileExporter(TelemetryExporter):
    """Appends one JSON line per event to a local file."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    async def export(self, events: list[TelemetryEvent]) -> None:
        lines = "".join(
            json.dumps(event.model_dump(mode="json"), ensure_ascii=False) + "\n"
            for event in events
        )
        await asyncio.to_thread(self._append, lines)

    def _append(self, lines: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(lines)


class HttpExporter(TelemetryExporter):
    """POSTs ``{"events": [...]}`` to an analytics endpoint."""

    def __init__(
        self,
        endpoint: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ):
        self.endpoint = endpoint
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def export(self, events: list[TelemetryEvent]) -> None:
        payload = {"events": [event.model_dump(mode="json") for event in events]}
        response = await self._client.post(self.endpoint, json=payload)
        response.raise_for_status()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


# ---------------------------------------------------------------------------
# Sink
# ---------------------------------------------------------------------------


class TelemetrySink:
    """Bounded, non-blocking event buffer with periodic flushing."""

    def __init__(
        self,
        exporter: TelemetryExporter | None = None,
        max_buffer: int = 100,
        flush_interval_ms: float = 60_000,
    ):
        if max_buffer < 1:
            raise ValueError("max_buffer must be >= 1")
        self.exporter = exporter or LoggingExporter()
        self.max_buffer = max_buffer
        self.flush_interval_ms = flush_interval_ms
        self._buffer: deque[TelemetryEvent] = deque()
        self._flush_task: asyncio.Task | None = None
        self._flush_lock = asyncio.Lock()
        self.dropped = 0

    @classmethod
    def from_config(cls, config: EngineConfig) -> "TelemetrySink":
        exporter: TelemetryExporter
        if config.telemetry_endpoint:
            exporter = HttpExporter(config.telemetry_endpoint)
        elif config.telemetry_path:
            exporter = JsonlFileExporter(config.telemetry_path)
        else:
            exporter = LoggingExporter()
        return cls(
            exporter=exporter,
            max_buffer=config.telemetry_max_buffer,
            flush_interval_ms=config.telemetry_flush_interval_ms,
        )

    @property
    def pending(self) -> list[TelemetryEvent]:
        """Snapshot of buffered, not yet flushed events."""
        return list(self._buffer)

    def record(self, event_type: str, properties: dict[str, Any] | None = None) -> None:
        """Buffer an event. Never blocks and never raises."""
        try:
            event = TelemetryEvent(event_type=event_type, properties=properties or {})
        except Exception as e:
            logger.warning(f"Dropping malformed telemetry event '{event_type}': {e}")
            return
        self._append(event)

    def _append(self, event: TelemetryEvent) -> None:
        if len(self._buffer) >= self.max_buffer:
            oldest = self._buffer.popleft()
            self.dropped += 1
            logger.warning(
                f"Telemetry buffer full ({self.max_buffer}), dropped oldest "
                f"'{oldest.event_type}' event"
            )
        self._buffer.append(event)

    # --- analytics helpers ---

    def track_workflow_execution(
        self,
        workflow_id: str,
        execution_id: str,
        success: bool,
        duration_ms: int,
        node_count: int,
        total_tokens: int = 0,
        error_kind: str | None = None,
    ) -> None:
        self.record(
            TelemetryEventType.WORKFLOW_EXECUTION,
            {
                "workflow_id": workflow_id,
                "execution_id": execution_id,
                "success": success,
                "duration_ms": duration_ms,
                "node_count": node_count,
                "total_tokens": total_tokens,
                "error_kind": error_kind,
            },
        )

    def track_node_execution(
        self,
        workflow_id: str,
        node_id: str,
        kind: str,
        success: bool,
        duration_ms: int,
        attempts: int = 0,
        capability: str | None = None,
        tokens: int = 0,
        error_kind: str | None = None,
    ) -> None:
        self.record(
            TelemetryEventType.NODE_EXECUTION,
            {
                "workflow_id": workflow_id,
                "node_id": node_id,
                "kind": kind,
                "success": success,
                "duration_ms": duration_ms,
                "attempts": attempts,
                "capability": capability,
                "tokens": tokens,
                "error_kind": error_kind,
            },
        )

    def track_task_execution(
        self,
        session_id: str,
        task_id: str,
        specialization: str,
        success: bool,
        duration_ms: int,
        attempts: int = 0,
        tokens: int = 0,
        error_kind: str | None = None,
    ) -> None:
        self.record(
            TelemetryEventType.TASK_EXECUTION,
            {
                "session_id": session_id,
                "task_id": task_id,
                "specialization": specialization,
                "success": success,
                "duration_ms": duration_ms,
                "attempts": attempts,
                "tokens": tokens,
                "error_kind": error_kind,
            },
        )

    def track_session_execution(
        self,
        session_id: str,
        success: bool,
        duration_ms: int,
        task_count: int,
        completed_tasks: int,
        error_kind: str | None = None,
    ) -> None:
        self.record(
            TelemetryEventType.SESSION_EXECUTION,
            {
                "session_id": session_id,
                "success": success,
                "duration_ms": duration_ms,
                "task_count": task_count,
                "completed_tasks": completed_tasks,
                "error_kind": error_kind,
            },
        )

    # --- flushing ---

    async def flush(self) -> int:
        """Export buffered events. Returns how many were exported (0 on failure)."""
        async with self._flush_lock:
            if not self._buffer:
                return 0
            batch = list(self._buffer)
            self._buffer.clear()
            try:
                await self.exporter.export(batch)
            except Exception as e:
                logger.warning(f"Telemetry flush of {len(batch)} event(s) failed: {e}")
                self._rebuffer(batch)
                return 0
            logger.debug(f"Flushed {len(batch)} telemetry event(s)")
            return len(batch)

    def _rebuffer(self, batch: list[TelemetryEvent]) -> None:
        # Failed batch goes back in front of anything recorded meanwhile
        merged = batch + list(self._buffer)
        overflow = len(merged) - self.max_buffer
        if overflow > 0:
            self.dropped += overflow
            logger.warning(f"Telemetry buffer full, dropped {overflow} oldest event(s)")
            merged = merged[overflow:]
        self._buffer = deque(merged)

    async def start(self) -> None:
        """Start periodic flushing on the running event loop."""
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.create_task(self._flush_loop())

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval_ms / 1000)
            await self.flush()

    async def close(self) -> None:
        """Stop the flush loop, flush what is left, and close the exporter."""
        if self._flush_task is not None:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None
        await self.flush()
        try:
            await self.exporter.close()
        except Exception as e:
            logger.warning(f"Failed to close telemetry exporter: {e}")

    async def __aenter__(self) -> "TelemetrySink":
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()
