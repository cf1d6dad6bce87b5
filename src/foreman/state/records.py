from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from foreman.errors import PreconditionError, StateStoreError
from foreman.state.store import StateStore

TECHNICAL_TRACK_KEY = "clarifications.json"
BUSINESS_TRACK_KEY = "business-clarifications.json"
PLAN_KEY = "plan.json"


@dataclass(slots=True)
class Question:
    question: str
    reason: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"question": self.question, "reason": self.reason}


@dataclass(slots=True)
class Answer:
    question: str
    answer: str

    def to_dict(self) -> dict[str, str]:
        return {"question": self.question, "answer": self.answer}


@dataclass(slots=True)
class ClarificationEntry:
    round: int
    questions: list[Question]
    answers: list[Answer]
    source: str = "human"

    def to_dict(self) -> dict[str, Any]:
        return {
            "round": self.round,
            "questions": [item.to_dict() for item in self.questions],
            "answers": [item.to_dict() for item in self.answers],
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ClarificationEntry:
        return cls(
            round=int(payload["round"]),
            questions=[
                Question(question=str(item.get("question", "")), reason=str(item.get("reason", "")))
                for item in payload.get("questions", [])
            ],
            answers=[
                Answer(question=str(item.get("question", "")), answer=str(item.get("answer", "")))
                for item in payload.get("answers", [])
            ],
            source=str(payload.get("source") or "human"),
        )


@dataclass(slots=True)
class Assignment:
    id: str
    title: str
    description: str
    depends_on: list[str] = field(default_factory=list)
    estimated_files: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Assignment:
        return cls(
            id=str(payload["id"]),
            title=str(payload.get("title", "")),
            description=str(payload.get("description", "")),
            depends_on=[str(item) for item in payload.get("dependsOn", [])],
            estimated_files=[str(item) for item in payload.get("estimatedFiles", [])],
        )


def questions_from_analysis(analysis: dict[str, Any]) -> list[Question]:
    return [
        Question(question=str(item.get("question", "")), reason=str(item.get("reason", "")))
        for item in analysis.get("questions", [])
    ]


class ClarificationTrack:
    """Append-only sequence of clarification entries persisted as one document."""

    def __init__(self, store: StateStore, key: str) -> None:
        self.store = store
        self.key = key

    def load(self) -> list[ClarificationEntry]:
        payload = self.store.read_json(self.key)
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise StateStoreError(f"{self.key} does not contain a JSON array")
        return [ClarificationEntry.from_dict(item) for item in payload]

    def append(self, entry: ClarificationEntry) -> list[ClarificationEntry]:
        entries = self.load()
        entries.append(entry)
        self.store.write_json(self.key, [item.to_dict() for item in entries])
        return entries

    def __len__(self) -> int:
        return len(self.load())


def technical_track(store: StateStore) -> ClarificationTrack:
    return ClarificationTrack(store, TECHNICAL_TRACK_KEY)


def business_track(store: StateStore) -> ClarificationTrack:
    return ClarificationTrack(store, BUSINESS_TRACK_KEY)


def load_plan(store: StateStore) -> list[Assignment]:
    payload = store.read_json(PLAN_KEY)
    if payload is None:
        raise PreconditionError("No plan found in state. Run the planning phase first.")
    if not isinstance(payload, dict) or not isinstance(payload.get("assignments"), list):
        raise StateStoreError(f"{PLAN_KEY} does not contain an assignments list")
    return [Assignment.from_dict(item) for item in payload["assignments"]]


def format_clarifications(entries: list[ClarificationEntry]) -> str:
    if not entries:
        return "No clarifications have been provided yet."
    blocks: list[str] = []
    for entry in entries:
        label = " (answered by AI agent)" if entry.source == "agent" else ""
        lines = [f"## Clarification Round {entry.round}{label}", ""]
        for answer in entry.answers:
            lines.append(f"**Q:** {answer.question}")
            lines.append(f"**A:** {answer.answer}")
            lines.append("")
        blocks.append("\n".join(lines))
    return "\n".join(blocks).strip()


def format_business_clarifications(entries: list[ClarificationEntry]) -> str:
    if not entries:
        return "No business clarifications have been provided yet."
    blocks: list[str] = []
    for entry in entries:
        lines = [f"## Business Clarification Round {entry.round}", ""]
        for answer in entry.answers:
            lines.append(f"**Q:** {answer.question}")
            lines.append(f"**A:** {answer.answer}")
            lines.append("")
        blocks.append("\n".join(lines))
    return "\n".join(blocks).strip()
