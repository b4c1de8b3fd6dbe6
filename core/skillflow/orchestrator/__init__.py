"""Multi-agent task orchestration."""

from skillflow.orchestrator.agents import AGENT_PROFILES, AgentProfile, AgentSpecialization
from skillflow.orchestrator.session import OrchestratorSession
from skillflow.orchestrator.task import (
    AgentTask,
    CollaborationSession,
    SessionResult,
    SessionStatus,
    TaskStatus,
)

__all__ = [
    "AgentSpecialization",
    "AgentProfile",
    "AGENT_PROFILES",
    "AgentTask",
    "TaskStatus",
    "CollaborationSession",
    "SessionStatus",
    "SessionResult",
    "OrchestratorSession",
]
