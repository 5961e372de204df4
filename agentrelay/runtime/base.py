"""Agent runtime session interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass
class RuntimeEvent:
    """A notification pushed by an agent runtime session."""
    workspace_id: str
    message: dict[str, Any] = field(default_factory=dict)

    @property
    def method(self) -> str:
        return str(self.message.get("method") or "")

    @property
    def params(self) -> dict[str, Any]:
        params = self.message.get("params")
        return params if isinstance(params, dict) else {}

    @property
    def ends_turn(self) -> bool:
        """A turn finished, successfully or with a runtime `error` notification."""
        return self.method in ("turn/completed", "error")


class AgentSession(ABC):
    """
    One live JSON-RPC conversation with an agent runtime for a workspace.

    Implementations provide `request`; the typed helpers below are thin
    wrappers that name the runtime methods the relay depends on.
    """

    @abstractmethod
    async def request(self, method: str, params: dict[str, Any] | None = None) -> Any:
        """Send a request and return its `result`. Raises AgentRuntimeError."""

    @abstractmethod
    def is_alive(self) -> bool:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass

    async def list_threads(self, cursor: str | None = None, limit: int | None = None) -> Any:
        return await self.request("thread/list", {"cursor": cursor, "limit": limit})

    async def start_thread(self, cwd: str, approval_policy: str = "on-request") -> Any:
        return await self.request("thread/start", {"cwd": cwd, "approvalPolicy": approval_policy})

    async def resume_thread(self, thread_id: str) -> Any:
        return await self.request("thread/resume", {"threadId": thread_id})

    async def start_turn(
        self,
        thread_id: str,
        input: list[dict[str, Any]],
        *,
        cwd: str,
        approval_policy: str,
        sandbox_policy: dict[str, Any],
        model: str | None = None,
        effort: str | None = None,
    ) -> Any:
        return await self.request(
            "turn/start",
            {
                "threadId": thread_id,
                "input": input,
                "cwd": cwd,
                "approvalPolicy": approval_policy,
                "sandboxPolicy": sandbox_policy,
                "model": model,
                "effort": effort,
            },
        )

    async def interrupt_turn(self, thread_id: str, turn_id: str) -> Any:
        return await self.request("turn/interrupt", {"threadId": thread_id, "turnId": turn_id})

    async def archive_thread(self, thread_id: str) -> Any:
        return await self.request("thread/archive", {"threadId": thread_id})
