"""
Task graph data structures for multi-agent collaboration.

A CollaborationSession holds AgentTasks whose ``dependencies`` reference
other tasks of the same session. Tasks only move forward:

    pending -> in_progress -> completed | failed
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from skillflow.errors import ErrorKind, InternalError
from skillflow.orchestrator.agents import AgentSpecialization


class TaskStatus(StrEnum):
    """Status of an agent task."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


ALLOWED_TRANSITIONS: dict[TaskStatus, tuple[TaskStatus, ...]] = {
    TaskStatus.PENDING: (TaskStatus.IN_PROGRESS,),
    TaskStatus.IN_PROGRESS: (TaskStatus.COMPLETED, TaskStatus.FAILED),
    TaskStatus.COMPLETED: (),
    TaskStatus.FAILED: (),
}


class SessionStatus(StrEnum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


def _now() -> datetime:
    return datetime.now(UTC)


class AgentTask(BaseModel):
    """A unit of work assigned to one specialized agent."""

    id: str
    specialization: AgentSpecialization
    description: str = ""
    input: dict[str, Any] = Field(default_factory=dict)
    dependencies: list[str] = Field(
        default_factory=list, description="IDs of tasks that must complete first"
    )
    status: TaskStatus = TaskStatus.PENDING
    result: Any = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    attempts: int = 0
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    model_config = {"extra": "allow"}

    @field_validator("dependencies")
    @classmethod
    def _dedupe(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(value))

    def transition(self, status: TaskStatus) -> None:
        """Move to ``status``. Raises InternalError on a backward or skipped step."""
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise InternalError(
                f"Task {self.id} cannot move from {self.status} to {status}",
                context={"task_id": self.id},
            )
        self.status = status
        self.updated_at = _now()

    def is_ready(self, completed: set[str]) -> bool:
        """Pending and every dependency is in ``completed``."""
        return self.status == TaskStatus.PENDING and all(
            dep in completed for dep in self.dependencies
        )


class CollaborationSession(BaseModel):
    """Tasks plus the shared context (blackboard) they read from."""

    id: str
    tasks: list[AgentTask] = Field(default_factory=list)
    shared_context: dict[str, Any] = Field(default_factory=dict)
    status: SessionStatus = SessionStatus.ACTIVE
    result: Any = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    model_config = {"extra": "allow"}

    def get_task(self, task_id: str) -> AgentTask | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def completed_ids(self) -> set[str]:
        return {t.id for t in self.tasks if t.status == TaskStatus.COMPLETED}

    def pending(self) -> list[AgentTask]:
        return [t for t in self.tasks if t.status == TaskStatus.PENDING]


class SessionResult(BaseModel):
    """Outcome of running a session. Always returned, never raised."""

    success: bool
    output: Any = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    session_id: str = ""
    status: SessionStatus = SessionStatus.ACTIVE
    tasks: list[AgentTask] = Field(default_factory=list)
    shared_context: dict[str, Any] = Field(default_factory=dict)
    missing_dependencies: dict[str, list[str]] = Field(default_factory=dict)
    duration_ms: int = 0
    total_tokens: int = 0

    def task_statuses(self) -> dict[str, str]:
        return {task.id: task.status.value for task in self.tasks}
