from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from types import MappingProxyType
from typing import Any

from foreman.errors import InvalidTransitionError, PreconditionError, StateStoreError
from foreman.state.store import StateStore

PIPELINE_STATE_KEY = "pipeline-state.json"


class Phase(StrEnum):
    INIT = "init"
    BUSINESS_CLARIFICATION = "business-clarification"
    PRD_GENERATION = "prd-generation"
    PRD_ANALYSIS = "prd-analysis"
    CLARIFICATION = "clarification"
    AGENT_CLARIFICATION = "agent-clarification"
    PRD_REVIEW_STOP = "prd-review-stop"
    PLANNING = "planning"
    IMPLEMENTATION = "implementation"
    FINAL_VERIFICATION = "final-verification"
    COMPLETE = "complete"


PRD_PHASES = frozenset(
    {
        Phase.INIT,
        Phase.BUSINESS_CLARIFICATION,
        Phase.PRD_GENERATION,
        Phase.PRD_ANALYSIS,
        Phase.CLARIFICATION,
        Phase.AGENT_CLARIFICATION,
    }
)

TRANSITIONS: MappingProxyType[Phase, frozenset[Phase]] = MappingProxyType(
    {
        Phase.INIT: frozenset({Phase.PRD_GENERATION, Phase.BUSINESS_CLARIFICATION}),
        Phase.PRD_GENERATION: frozenset({Phase.PRD_ANALYSIS, Phase.BUSINESS_CLARIFICATION}),
        Phase.BUSINESS_CLARIFICATION: frozenset({Phase.PRD_GENERATION}),
        Phase.PRD_ANALYSIS: frozenset(
            {
                Phase.CLARIFICATION,
                Phase.AGENT_CLARIFICATION,
                Phase.PRD_GENERATION,
                Phase.PRD_REVIEW_STOP,
                Phase.PLANNING,
            }
        ),
        Phase.CLARIFICATION: frozenset({Phase.PRD_GENERATION}),
        Phase.AGENT_CLARIFICATION: frozenset({Phase.PRD_GENERATION}),
        Phase.PRD_REVIEW_STOP: frozenset({Phase.PLANNING}),
        Phase.PLANNING: frozenset({Phase.IMPLEMENTATION}),
        Phase.IMPLEMENTATION: frozenset({Phase.FINAL_VERIFICATION}),
        Phase.FINAL_VERIFICATION: frozenset({Phase.COMPLETE, Phase.PRD_GENERATION}),
        Phase.COMPLETE: frozenset(),
    }
)


def can_transition(current: Phase, target: Phase) -> bool:
    return current == target or target in TRANSITIONS[current]


def _now() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(slots=True)
class PipelineState:
    phase: Phase
    mode: str
    project_dir: str
    stop_after_prd: bool = False
    completed_assignments: list[str] = field(default_factory=list)
    current_assignment_id: str | None = None
    clarification_round: int = 0
    pipeline_iteration: int = 0
    started_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": str(self.phase),
            "mode": self.mode,
            "projectDir": self.project_dir,
            "stopAfterPrd": self.stop_after_prd,
            "completedAssignments": list(self.completed_assignments),
            "currentAssignmentId": self.current_assignment_id,
            "clarificationRound": self.clarification_round,
            "pipelineIteration": self.pipeline_iteration,
            "startedAt": self.started_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PipelineState:
        raw_phase = payload.get("phase")
        try:
            phase = Phase(raw_phase)
        except ValueError as exc:
            raise PreconditionError(f"Unknown pipeline phase in saved state: {raw_phase}") from exc
        project_dir = payload.get("projectDir")
        if not project_dir:
            raise PreconditionError("Saved state is missing projectDir. Cannot resume.")
        return cls(
            phase=phase,
            mode=str(payload.get("mode") or "interactive"),
            project_dir=str(project_dir),
            stop_after_prd=bool(payload.get("stopAfterPrd", False)),
            completed_assignments=[str(item) for item in payload.get("completedAssignments", [])],
            current_assignment_id=payload.get("currentAssignmentId"),
            clarification_round=int(payload.get("clarificationRound", 0)),
            pipeline_iteration=int(payload.get("pipelineIteration", 0)),
            started_at=str(payload.get("startedAt") or _now()),
            updated_at=str(payload.get("updatedAt") or _now()),
        )


class PipelineStateRepository:
    """Owns the single persisted PipelineState document of a run."""

    def __init__(self, store: StateStore) -> None:
        self.store = store

    def init(self, *, mode: str, project_dir: str, stop_after_prd: bool) -> PipelineState:
        state = PipelineState(
            phase=Phase.INIT,
            mode=mode,
            project_dir=project_dir,
            stop_after_prd=stop_after_prd,
        )
        self.store.write_json(PIPELINE_STATE_KEY, state.to_dict())
        return state

    def load(self) -> PipelineState | None:
        payload = self.store.read_json(PIPELINE_STATE_KEY)
        if payload is None:
            return None
        if not isinstance(payload, dict):
            raise StateStoreError(f"{PIPELINE_STATE_KEY} does not contain a JSON object")
        return PipelineState.from_dict(payload)

    def require(self) -> PipelineState:
        state = self.load()
        if state is None:
            raise PreconditionError("No pipeline state found to resume from")
        return state

    def update(self, **changes: Any) -> PipelineState:
        current = self.load()
        if current is None:
            raise PreconditionError("Pipeline state not initialized")
        target = changes.get("phase")
        if target is not None:
            target = Phase(target)
            if not can_transition(current.phase, target):
                raise InvalidTransitionError(current.phase, target)
            changes["phase"] = target
        updated = replace(current, **changes, updated_at=_now())
        self.store.write_json(PIPELINE_STATE_KEY, updated.to_dict())
        return updated
