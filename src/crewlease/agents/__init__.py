from crewlease.agents.base import RoleAgent
from crewlease.agents.roles import (
    AGENT_CLASSES,
    ArchitectAgent,
    BugInvestigatorAgent,
    DeveloperAgent,
    ManagerAgent,
    ReviewerAgent,
    create_agent,
)

__all__ = [
    "AGENT_CLASSES",
    "ArchitectAgent",
    "BugInvestigatorAgent",
    "DeveloperAgent",
    "ManagerAgent",
    "ReviewerAgent",
    "RoleAgent",
    "create_agent",
]
