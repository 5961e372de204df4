"""Agent runtime sessions."""

from agentrelay.runtime.base import AgentSession, RuntimeEvent
from agentrelay.runtime.manager import SessionManager, WorkspaceInfo

__all__ = ["AgentSession", "RuntimeEvent", "SessionManager", "WorkspaceInfo"]
