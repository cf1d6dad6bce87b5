from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, replace
from enum import StrEnum
from typing import Any, Generic, TypeVar

from foreman.config import INHERIT_MODEL, AgentSettings
from foreman.errors import AgentExecutionError

T = TypeVar("T")


class AgentKind(StrEnum):
    PRD_GENERATOR = "prd-generator"
    PRD_ANALYZER = "prd-analyzer"
    BUSINESS_ANALYZER = "business-analyzer"
    CLARIFICATION_ANSWERER = "clarification-answerer"
    PLANNER = "planner"
    MICROPLANNER = "microplanner"
    IMPLEMENTER = "implementer"
    VERIFIER = "verifier"
    FINAL_VERIFIER = "final-verifier"


READ_ONLY_TOOLS = ["Read", "Grep", "Glob"]
INSPECT_TOOLS = ["Read", "Grep", "Glob", "Bash"]
DRAFT_TOOLS = ["Read", "Write", "Grep", "Glob"]
EDIT_TOOLS = ["Read", "Edit", "Write", "Bash", "Grep", "Glob"]


@dataclass(slots=True)
class AgentInvocation:
    agent: str
    prompt: str
    json_schema: dict[str, Any] | None = None
    model: str | None = None
    max_turns: int | None = None
    max_budget_usd: float | None = None
    tools: list[str] | None = None
    allowed_tools: list[str] | None = None


@dataclass(slots=True)
class AgentSessionResult(Generic[T]):
    result: T
    session_id: str


def resolve_invocation(
    invocation: AgentInvocation,
    defaults: Mapping[str, AgentSettings],
    schemas: Mapping[str, dict[str, Any]],
) -> AgentInvocation:
    """Overlay call-specific overrides onto the per-kind defaults.

    An explicit override always wins; otherwise the default for the agent kind
    applies. A missing schema falls back to the per-kind schema registry.
    """
    settings = defaults.get(str(invocation.agent), AgentSettings())
    model = invocation.model if invocation.model is not None else settings.model
    max_turns = invocation.max_turns if invocation.max_turns is not None else settings.max_turns
    max_budget = (
        invocation.max_budget_usd
        if invocation.max_budget_usd is not None
        else settings.max_budget_usd
    )
    schema = invocation.json_schema or schemas.get(str(invocation.agent))
    if not schema:
        raise AgentExecutionError(
            f"No JSON schema registered for agent kind {invocation.agent}",
            agent=str(invocation.agent),
            retriable=False,
        )
    return replace(
        invocation,
        agent=str(invocation.agent),
        model=None if model == INHERIT_MODEL else model,
        max_turns=max_turns,
        max_budget_usd=max_budget,
        json_schema=schema,
    )
