import asyncio
from collections.abc import Callable
from pathlib import Path

import pytest

from fakes import PRD_OUTPUT, RoleBackend, analysis, constant, sequence

from foreman.agents import AgentInvocation, AgentKind
from foreman.checkpoint import PhaseGate
from foreman.config import ForemanConfig
from foreman.control import ControlPlane
from foreman.errors import PreconditionError
from foreman.modes import LOW_CONFIDENCE_MARKER, MODE_REGISTRY, PrdPhaseContext, get_mode
from foreman.prompts import PromptBuilder
from foreman.runner import AgentRunner, RetryPolicy
from foreman.state import (
    Answer,
    ClarificationEntry,
    PipelineStateRepository,
    Question,
    StateStore,
    business_track,
    technical_track,
)


class RecordingHuman:
    def __init__(self) -> None:
        self.asked: list[list[str]] = []

    async def __call__(self, questions: list[Question]) -> list[Answer]:
        self.asked.append([item.question for item in questions])
        return [Answer(question=item.question, answer=f"human: {item.question}") for item in questions]


def _context(
    tmp_path: Path, backend: RoleBackend, config: ForemanConfig, human: RecordingHuman
) -> PrdPhaseContext:
    control = ControlPlane()
    store = StateStore(tmp_path)
    states = PipelineStateRepository(store)
    states.init(mode="interactive", project_dir=str(tmp_path), stop_after_prd=False)
    runner = AgentRunner(
        backend,
        control,
        store=store,
        agent_settings=config.agents,
        retry_policy=RetryPolicy(max_retries=0),
    )
    return PrdPhaseContext(
        config=config,
        task="Add CSV export",
        runner=runner,
        store=store,
        gate=PhaseGate(states, control),
        prompts=PromptBuilder(str(tmp_path)),
        ask_human=human,
    )


def test_interactive_stops_when_analysis_passes(tmp_path: Path) -> None:
    config = ForemanConfig.default()
    config.limits.max_clarification_rounds = 2
    backend = RoleBackend(
        {
            AgentKind.PRD_GENERATOR: constant(PRD_OUTPUT),
            AgentKind.PRD_ANALYZER: sequence(
                analysis(True, ["Which format?"]),
                analysis(True, ["Which columns?"]),
                analysis(False),
            ),
        }
    )
    human = RecordingHuman()
    context = _context(tmp_path, backend, config, human)

    asyncio.run(get_mode("interactive").run_prd_phase(context))

    entries = technical_track(context.store).load()
    assert [entry.round for entry in entries] == [1, 2]
    assert all(entry.source == "human" for entry in entries)
    assert human.asked == [["Which format?"], ["Which columns?"]]
    assert backend.agents_called().count("prd-generator") == 3
    assert backend.agents_called().count("prd-analyzer") == 3
    assert context.store.read_json("analysis.json")["needsClarification"] is False


def test_interactive_stops_asking_at_round_limit(tmp_path: Path) -> None:
    config = ForemanConfig.default()
    config.limits.max_clarification_rounds = 1
    backend = RoleBackend(
        {
            AgentKind.PRD_GENERATOR: constant(PRD_OUTPUT),
            AgentKind.PRD_ANALYZER: constant(analysis(True, ["Still unclear?"])),
        }
    )
    human = RecordingHuman()
    context = _context(tmp_path, backend, config, human)

    asyncio.run(get_mode("interactive").run_prd_phase(context))

    assert len(technical_track(context.store).load()) == 1
    assert len(human.asked) == 1
    assert backend.agents_called().count("prd-generator") == 2


def test_interactive_resumes_at_persisted_round(tmp_path: Path) -> None:
    config = ForemanConfig.default()
    config.limits.max_clarification_rounds = 3
    backend = RoleBackend(
        {
            AgentKind.PRD_GENERATOR: constant(PRD_OUTPUT),
            AgentKind.PRD_ANALYZER: constant(analysis(False)),
        }
    )
    human = RecordingHuman()
    context = _context(tmp_path, backend, config, human)
    track = technical_track(context.store)
    for number in (1, 2):
        track.append(
            ClarificationEntry(
                round=number,
                questions=[Question(f"q{number}", "")],
                answers=[Answer(f"q{number}", f"a{number}")],
            )
        )

    asyncio.run(get_mode("interactive").run_prd_phase(context))

    state = PipelineStateRepository(context.store).require()
    assert state.clarification_round == 2
    assert len(track.load()) == 2
    assert human.asked == []
    first_prompt = backend.prompts_for("prd-generator")[0]
    assert "## Clarification Round 2" in first_prompt
    assert "**A:** a1" in first_prompt


def test_autonomous_batches_answerer_sessions(tmp_path: Path) -> None:
    config = ForemanConfig.default()
    config.limits.max_questions_per_answerer_instance = 2
    questions = [f"Technical question {index}?" for index in range(1, 6)]
    answers = iter([True, False, True, True, True])

    def answer(invocation: AgentInvocation) -> dict:
        confident = next(answers)
        return {"question": "q", "answer": "use sqlite", "confident": confident, "evidence": "db.py"}

    backend = RoleBackend(
        {
            AgentKind.PRD_GENERATOR: constant(PRD_OUTPUT),
            AgentKind.BUSINESS_ANALYZER: constant(analysis(False)),
            AgentKind.PRD_ANALYZER: sequence(analysis(True, questions), analysis(False)),
            AgentKind.CLARIFICATION_ANSWERER: answer,
        },
        resume_handler=answer,
    )
    human = RecordingHuman()
    context = _context(tmp_path, backend, config, human)

    asyncio.run(get_mode("autonomous").run_prd_phase(context))

    assert backend.agents_called().count("clarification-answerer") == 3
    assert len(backend.resumes) == 2
    # business draft, business analysis, technical draft and analysis came first
    assert [session for session, _ in backend.resumes] == ["session-5", "session-6"]
    assert human.asked == []

    entries = technical_track(context.store).load()
    assert len(entries) == 1
    assert entries[0].source == "agent"
    assert entries[0].answers[1].answer == f"{LOW_CONFIDENCE_MARKER}use sqlite"
    assert entries[0].answers[0].answer == "use sqlite"
    assert [item.question for item in entries[0].answers] == questions

    final_draft = backend.prompts_for("prd-generator")[-1]
    assert "(answered by AI agent)" in final_draft
    assert LOW_CONFIDENCE_MARKER in final_draft


def test_autonomous_business_round_asks_the_human(tmp_path: Path) -> None:
    config = ForemanConfig.default()
    backend = RoleBackend(
        {
            AgentKind.PRD_GENERATOR: constant(PRD_OUTPUT),
            AgentKind.BUSINESS_ANALYZER: sequence(
                analysis(True, ["Who are the users?"]), analysis(False)
            ),
            AgentKind.PRD_ANALYZER: constant(analysis(False)),
        }
    )
    human = RecordingHuman()
    context = _context(tmp_path, backend, config, human)

    asyncio.run(get_mode("autonomous").run_prd_phase(context))

    business = business_track(context.store).load()
    assert [entry.round for entry in business] == [1]
    assert human.asked == [["Who are the users?"]]
    assert technical_track(context.store).load() == []
    technical_draft = backend.prompts_for("prd-generator")[-1]
    assert "BUSINESS clarifications" in technical_draft
    assert "human: Who are the users?" in technical_draft


def test_mode_registry_is_closed() -> None:
    assert sorted(MODE_REGISTRY) == ["autonomous", "interactive"]
    with pytest.raises(PreconditionError, match="Available modes"):
        get_mode("yolo")
    with pytest.raises(TypeError):
        MODE_REGISTRY["custom"] = MODE_REGISTRY["interactive"]  # type: ignore[index]


def _recording_draft(tmp_path: Path, rounds: list[int]) -> Callable[[AgentInvocation], dict]:
    def draft(invocation: AgentInvocation) -> dict:
        _ = invocation
        rounds.append(PipelineStateRepository(StateStore(tmp_path)).require().clarification_round)
        return PRD_OUTPUT

    return draft


def test_autonomous_business_loop_resumes_at_persisted_round(tmp_path: Path) -> None:
    config = ForemanConfig.default()
    config.limits.max_business_clarification_rounds = 2
    rounds: list[int] = []
    backend = RoleBackend(
        {
            AgentKind.PRD_GENERATOR: _recording_draft(tmp_path, rounds),
            AgentKind.BUSINESS_ANALYZER: sequence(
                analysis(True, ["Who approves refunds?"]), analysis(False)
            ),
            AgentKind.PRD_ANALYZER: constant(analysis(False)),
        }
    )
    human = RecordingHuman()
    context = _context(tmp_path, backend, config, human)
    business = business_track(context.store)
    business.append(
        ClarificationEntry(
            round=1,
            questions=[Question("Who are the users?", "")],
            answers=[Answer("Who are the users?", "Support staff")],
        )
    )

    asyncio.run(get_mode("autonomous").run_prd_phase(context))

    # business drafts at rounds 1 and 2, then the technical draft at round 0
    assert rounds == [1, 2, 0]
    assert human.asked == [["Who approves refunds?"]]
    assert [entry.round for entry in business.load()] == [1, 2]
    assert backend.agents_called().count("business-analyzer") == 2
    assert "Support staff" in backend.prompts_for("prd-generator")[0]


def test_autonomous_technical_loop_resumes_with_fresh_answerer_session(tmp_path: Path) -> None:
    config = ForemanConfig.default()
    config.limits.max_questions_per_answerer_instance = 2
    rounds: list[int] = []

    def answer(invocation: AgentInvocation) -> dict:
        _ = invocation
        return {"question": "q", "answer": "use sqlite", "confident": True, "evidence": "db.py"}

    backend = RoleBackend(
        {
            AgentKind.PRD_GENERATOR: _recording_draft(tmp_path, rounds),
            AgentKind.BUSINESS_ANALYZER: constant(analysis(False)),
            AgentKind.PRD_ANALYZER: sequence(
                analysis(True, ["Which table?", "Which index?", "Which migration tool?"]),
                analysis(False),
            ),
            AgentKind.CLARIFICATION_ANSWERER: answer,
        },
        resume_handler=answer,
    )
    human = RecordingHuman()
    context = _context(tmp_path, backend, config, human)
    track = technical_track(context.store)
    track.append(
        ClarificationEntry(
            round=1,
            questions=[Question("Which database?", "")],
            answers=[Answer("Which database?", "PostgreSQL")],
            source="agent",
        )
    )

    asyncio.run(get_mode("autonomous").run_prd_phase(context))

    # business draft at round 0, technical drafts resume at rounds 1 and 2
    assert rounds == [0, 1, 2]
    assert [entry.round for entry in track.load()] == [1, 2]
    assert human.asked == []
    assert backend.agents_called().count("clarification-answerer") == 2
    # the first answerer call of the resumed run opens a new session
    assert [session for session, _ in backend.resumes] == ["session-5"]
    assert backend.agents_called()[4] == "clarification-answerer"
