from __future__ import annotations

from typing import Any

from loguru import logger

from foreman.control import ControlPlane
from foreman.errors import PipelinePaused
from foreman.state.pipeline import Phase, PipelineState, PipelineStateRepository


class PhaseGate:
    """Persists phase changes and honors soft pause once a boundary is on disk."""

    def __init__(self, states: PipelineStateRepository, control: ControlPlane) -> None:
        self.states = states
        self.control = control

    def enter(self, phase: Phase, **changes: Any) -> PipelineState:
        state = self.states.update(phase=phase, **changes)
        logger.debug("Entered phase {}", phase)
        self.check_pause(phase)
        return state

    def update(self, **changes: Any) -> PipelineState:
        return self.states.update(**changes)

    def check_pause(self, phase: Phase | str) -> None:
        if self.control.pause_requested:
            logger.warning("Soft pause honored at phase {}; resume to continue", phase)
            raise PipelinePaused(str(phase))
