from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from foreman.agents import AgentInvocation


@dataclass(slots=True)
class ProcessResult:
    stdout: str
    stderr: str
    exit_code: int | None
    timed_out: bool = False
    duration_seconds: float = 0.0


class AgentBackend(ABC):
    async def preflight(self) -> None:
        """Verify the agent executable is usable before the first invocation."""

    @abstractmethod
    async def start(self, invocation: AgentInvocation) -> ProcessResult:
        """Run a fresh agent invocation and return the raw process outcome."""

    @abstractmethod
    async def resume(
        self,
        session_id: str,
        prompt: str,
        json_schema: dict[str, Any],
        *,
        agent: str,
    ) -> ProcessResult:
        """Continue an existing agent session with a follow-up prompt."""
