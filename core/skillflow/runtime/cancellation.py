"""Cooperative cancellation for workflow and session runs."""

import asyncio
import time

from skillflow.errors import ExecutionCancelledError


class CancellationToken:
    """
    Caller-owned handle used to stop a run.

    The executor checks it at every node boundary and the invoker races each
    capability attempt against ``wait()``, so a cancel aborts the in-flight
    call. An optional deadline cancels the token once it passes.
    """

    def __init__(self, timeout_ms: float | None = None):
        self._event = asyncio.Event()
        self._reason = "Execution cancelled"
        self._deadline = None if timeout_ms is None else time.monotonic() + timeout_ms / 1000

    def cancel(self, reason: str = "Execution cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        if not self._event.is_set() and self._deadline is not None:
            if time.monotonic() >= self._deadline:
                self.cancel("Deadline exceeded")
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def remaining_seconds(self) -> float | None:
        if self._deadline is None:
            return None
        return max(self._deadline - time.monotonic(), 0.0)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise ExecutionCancelledError(self._reason)

    async def wait(self) -> None:
        """Block until the token is cancelled or its deadline passes."""
        remaining = self.remaining_seconds()
        if remaining is None:
            await self._event.wait()
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=remaining)
        except TimeoutError:
            self.cancel("Deadline exceeded")
