from foreman.state.pipeline import (
    PIPELINE_STATE_KEY,
    TRANSITIONS,
    Phase,
    PipelineState,
    PipelineStateRepository,
    can_transition,
)
from foreman.state.records import (
    Answer,
    Assignment,
    ClarificationEntry,
    ClarificationTrack,
    Question,
    business_track,
    format_business_clarifications,
    format_clarifications,
    load_plan,
    technical_track,
)
from foreman.state.store import StateStore

__all__ = [
    "PIPELINE_STATE_KEY",
    "TRANSITIONS",
    "Answer",
    "Assignment",
    "ClarificationEntry",
    "ClarificationTrack",
    "Phase",
    "PipelineState",
    "PipelineStateRepository",
    "Question",
    "StateStore",
    "business_track",
    "can_transition",
    "format_business_clarifications",
    "format_clarifications",
    "load_plan",
    "technical_track",
]
