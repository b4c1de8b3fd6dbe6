"""Specialized agents the orchestrator can delegate tasks to."""

from dataclasses import dataclass
from enum import StrEnum


class AgentSpecialization(StrEnum):
    """Agent specialization areas."""

    PLANNING = "planning"
    CODING = "coding"
    TESTING = "testing"
    DEBUGGING = "debugging"
    SECURITY = "security"
    DOCUMENTATION = "documentation"
    REFACTORING = "refactoring"
    DEPLOYMENT = "deployment"
    ARCHITECTURE = "architecture"
    LEAD = "lead"

    @classmethod
    def parse(cls, value: object) -> "AgentSpecialization | None":
        if isinstance(value, AgentSpecialization):
            return value
        if not isinstance(value, str):
            return None
        key = value.strip().lower().removesuffix("-agent").removesuffix("_agent")
        try:
            return cls(key)
        except ValueError:
            return None


@dataclass(frozen=True)
class AgentProfile:
    """How one specialization is invoked."""

    specialization: AgentSpecialization
    name: str
    description: str
    temperature: float

    @property
    def capability(self) -> str:
        """Default capability reference, e.g. ``"coding-agent"``."""
        return f"{self.specialization.value}-agent"


AGENT_PROFILES: dict[AgentSpecialization, AgentProfile] = {
    profile.specialization: profile
    for profile in (
        AgentProfile(
            AgentSpecialization.PLANNING,
            "Planning Agent",
            "Breaks complex tasks down into actionable steps",
            0.3,
        ),
        AgentProfile(
            AgentSpecialization.CODING,
            "Coding Agent",
            "Writes clean, efficient and maintainable code",
            0.5,
        ),
        AgentProfile(
            AgentSpecialization.TESTING,
            "Testing Agent",
            "Creates test suites and validates code quality",
            0.4,
        ),
        AgentProfile(
            AgentSpecialization.DEBUGGING,
            "Debugging Agent",
            "Identifies and fixes bugs",
            0.3,
        ),
        AgentProfile(
            AgentSpecialization.SECURITY,
            "Security Agent",
            "Identifies and mitigates security vulnerabilities",
            0.2,
        ),
        AgentProfile(
            AgentSpecialization.DOCUMENTATION,
            "Documentation Agent",
            "Writes clear and comprehensive documentation",
            0.6,
        ),
        AgentProfile(
            AgentSpecialization.REFACTORING,
            "Refactoring Agent",
            "Refactors and improves existing code",
            0.4,
        ),
        AgentProfile(
            AgentSpecialization.DEPLOYMENT,
            "Deployment Agent",
            "Handles deployment and DevOps",
            0.3,
        ),
        AgentProfile(
            AgentSpecialization.ARCHITECTURE,
            "Architecture Agent",
            "Designs system architecture",
            0.3,
        ),
        AgentProfile(
            AgentSpecialization.LEAD,
            "Lead Agent",
            "Decomposes requests and synthesizes the agents' results",
            0.4,
        ),
    )
}

# Lead agent operations used by the orchestrator itself
DECOMPOSE_CAPABILITY = "lead-agent/decompose"
SYNTHESIZE_CAPABILITY = "lead-agent/synthesize"


def default_capabilities() -> dict[AgentSpecialization, str]:
    return {spec: profile.capability for spec, profile in AGENT_PROFILES.items()}
