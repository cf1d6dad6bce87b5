from types import MappingProxyType

from foreman.errors import PreconditionError
from foreman.modes.autonomous import LOW_CONFIDENCE_MARKER, AutonomousMode
from foreman.modes.base import AnswerProvider, PipelineMode, PrdPhaseContext
from foreman.modes.interactive import InteractiveMode

MODE_REGISTRY: MappingProxyType[str, PipelineMode] = MappingProxyType(
    {mode.name: mode for mode in (InteractiveMode(), AutonomousMode())}
)


def get_mode(name: str) -> PipelineMode:
    mode = MODE_REGISTRY.get(name)
    if mode is None:
        available = ", ".join(MODE_REGISTRY)
        raise PreconditionError(f'Unknown mode: "{name}". Available modes: {available}')
    return mode


__all__ = [
    "LOW_CONFIDENCE_MARKER",
    "MODE_REGISTRY",
    "AnswerProvider",
    "AutonomousMode",
    "InteractiveMode",
    "PipelineMode",
    "PrdPhaseContext",
    "get_mode",
]
