import asyncio
import json
from pathlib import Path
from typing import Any

import pytest

from fakes import ScriptedBackend, envelope, failure

from foreman.agents import AgentInvocation, AgentKind, resolve_invocation
from foreman.backends.base import ProcessResult
from foreman.config import AgentSettings, ForemanConfig
from foreman.control import ControlPlane
from foreman.errors import (
    AgentExecutionError,
    AgentOutputError,
    AgentProcessError,
    AgentRetriesExhaustedError,
    AgentStoppedError,
)
from foreman.runner import DRY_RUN_SESSION_ID, AgentRunner, RetryPolicy, _Attempt
from foreman.schemas import JSON_SCHEMAS, mock_result
from foreman.state.store import StateStore

PLAN = {
    "assignments": [
        {
            "id": "a-1",
            "title": "Scaffold",
            "description": "Create the module",
            "dependsOn": [],
            "estimatedFiles": ["src/app.py"],
        }
    ]
}


def _runner(
    backend: ScriptedBackend,
    *,
    store: StateStore | None = None,
    max_retries: int = 4,
    dry_run: bool = False,
    events: list[dict[str, Any]] | None = None,
    control: ControlPlane | None = None,
) -> AgentRunner:
    return AgentRunner(
        backend,
        control or ControlPlane(),
        store=store,
        agent_settings=ForemanConfig.default().agents,
        retry_policy=RetryPolicy(max_retries=max_retries, backoff_seconds=0.0),
        dry_run=dry_run,
        event_hook=events.append if events is not None else None,
    )


def _planner_call() -> AgentInvocation:
    return AgentInvocation(agent=AgentKind.PLANNER, prompt="Plan the work", tools=["Read"])


def test_retries_are_identical_and_bounded() -> None:
    events: list[dict[str, Any]] = []
    backend = ScriptedBackend([failure() for _ in range(4)])
    runner = _runner(backend, max_retries=3, events=events)

    with pytest.raises(AgentRetriesExhaustedError) as excinfo:
        asyncio.run(runner.invoke(_planner_call()))

    assert excinfo.value.agent == "planner"
    assert excinfo.value.attempts == 4
    assert "planner" in str(excinfo.value)
    assert "4 attempt" in str(excinfo.value)
    assert isinstance(excinfo.value.last_error, AgentExecutionError)
    invocations = [call[1] for call in backend.calls]
    assert len(invocations) == 4
    assert all(invocation == invocations[0] for invocation in invocations)
    assert [event["event"] for event in events].count("agent_retry") == 3
    assert backend.preflights == 1


def test_success_after_transient_failure_persists_payload(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    backend = ScriptedBackend([failure(exit_code=2), envelope(PLAN)])
    runner = _runner(backend, store=store)

    payload = asyncio.run(runner.invoke(_planner_call(), state_key="plan.json"))

    assert payload == PLAN
    assert store.read_json("plan.json") == PLAN
    assert len(backend.calls) == 2


def test_invocation_defaults_and_registry_schema_applied() -> None:
    backend = ScriptedBackend([envelope(PLAN)])
    runner = _runner(backend)

    asyncio.run(runner.invoke(_planner_call()))

    invocation = backend.calls[0][1]
    assert invocation.model is None
    assert invocation.max_turns == 50
    assert invocation.json_schema == JSON_SCHEMAS[AgentKind.PLANNER]


def test_fallback_parses_result_text_when_structured_output_missing() -> None:
    events: list[dict[str, Any]] = []
    backend = ScriptedBackend([envelope(None, result=json.dumps(PLAN))])
    runner = _runner(backend, events=events)

    payload = asyncio.run(runner.invoke(_planner_call()))

    assert payload == PLAN
    assert "agent_fallback_parse" in [event["event"] for event in events]


def test_is_error_envelope_is_retried() -> None:
    backend = ScriptedBackend([envelope(PLAN, is_error=True, result="rate limited"), envelope(PLAN)])
    runner = _runner(backend)

    assert asyncio.run(runner.invoke(_planner_call())) == PLAN
    assert len(backend.calls) == 2


def test_schema_mismatch_consumes_retry_budget() -> None:
    backend = ScriptedBackend([envelope({"assignments": "not-a-list"})])
    runner = _runner(backend, max_retries=0)

    with pytest.raises(AgentRetriesExhaustedError) as excinfo:
        asyncio.run(runner.invoke(_planner_call()))

    assert isinstance(excinfo.value.last_error, AgentOutputError)
    assert "does not match schema" in str(excinfo.value.last_error)


def test_unparseable_result_text_fails_attempt() -> None:
    backend = ScriptedBackend([envelope(None, result="I could not finish")])
    runner = _runner(backend, max_retries=0)

    with pytest.raises(AgentRetriesExhaustedError) as excinfo:
        asyncio.run(runner.invoke(_planner_call()))

    assert "not valid JSON" in str(excinfo.value)


def test_empty_stdout_fails_attempt() -> None:
    backend = ScriptedBackend([ProcessResult(stdout="  ", stderr="", exit_code=0)])
    runner = _runner(backend, max_retries=0)

    with pytest.raises(AgentRetriesExhaustedError, match="no stdout"):
        asyncio.run(runner.invoke(_planner_call()))


def test_timeout_result_is_retried() -> None:
    backend = ScriptedBackend(
        [ProcessResult(stdout="", stderr="", exit_code=-9, timed_out=True), envelope(PLAN)]
    )
    runner = _runner(backend)

    assert asyncio.run(runner.invoke(_planner_call())) == PLAN


def test_session_call_requires_session_id() -> None:
    backend = ScriptedBackend(
        [
            envelope(mock_result(AgentKind.CLARIFICATION_ANSWERER), session_id=None),
            envelope(mock_result(AgentKind.CLARIFICATION_ANSWERER), session_id="sess-42"),
        ]
    )
    runner = _runner(backend)
    invocation = AgentInvocation(agent=AgentKind.CLARIFICATION_ANSWERER, prompt="Answer")

    response = asyncio.run(runner.invoke_with_session(invocation))

    assert response.session_id == "sess-42"
    assert len(backend.calls) == 2


def test_session_call_without_session_never_returns(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    store = StateStore(tmp_path)
    runner = _runner(ScriptedBackend([]), store=store)

    async def attempt_without_session(invocation: AgentInvocation, *, require_session: bool) -> Any:
        _ = invocation, require_session
        return _Attempt(payload=mock_result(AgentKind.CLARIFICATION_ANSWERER), session_id=None)

    monkeypatch.setattr(runner, "_attempt_start", attempt_without_session)
    invocation = AgentInvocation(agent=AgentKind.CLARIFICATION_ANSWERER, prompt="Answer")

    with pytest.raises(AgentOutputError, match="no session_id"):
        asyncio.run(runner.invoke_with_session(invocation, state_key="answer.json"))
    assert store.read_json("answer.json") is None


def test_resume_keeps_previous_session_when_envelope_omits_it() -> None:
    answer = {"question": "Q", "answer": "A", "confident": True, "evidence": "src"}
    backend = ScriptedBackend([envelope(answer, session_id=None)])
    runner = _runner(backend)

    response = asyncio.run(
        runner.resume("sess-7", "Next question", JSON_SCHEMAS[AgentKind.CLARIFICATION_ANSWERER])
    )

    assert response.session_id == "sess-7"
    assert response.result == answer
    assert backend.calls[0][:2] == ("resume", "sess-7")


def test_hard_stop_is_not_retried_and_is_acknowledged() -> None:
    control = ControlPlane()
    backend = ScriptedBackend([failure(exit_code=-15), envelope(PLAN)])
    runner = _runner(backend, control=control)
    control.request_hard_stop()

    with pytest.raises(AgentStoppedError):
        asyncio.run(runner.invoke(_planner_call()))

    assert len(backend.calls) == 1
    assert control.hard_stop_requested is False


def test_preflight_failure_short_circuits() -> None:
    class MissingBinary(ScriptedBackend):
        async def preflight(self) -> None:
            raise AgentProcessError("Agent binary not found: claude", retriable=False)

    backend = MissingBinary([envelope(PLAN)])
    runner = _runner(backend)

    with pytest.raises(AgentProcessError):
        asyncio.run(runner.invoke(_planner_call()))
    assert backend.calls == []


def test_dry_run_skips_backend_and_persists_mock(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    backend = ScriptedBackend([])
    runner = _runner(backend, store=store, dry_run=True)

    payload = asyncio.run(runner.invoke(_planner_call(), state_key="plan.json"))
    session = asyncio.run(
        runner.invoke_with_session(
            AgentInvocation(agent=AgentKind.CLARIFICATION_ANSWERER, prompt="Answer")
        )
    )

    assert payload == mock_result(AgentKind.PLANNER)
    assert store.read_json("plan.json") == payload
    assert session.session_id == DRY_RUN_SESSION_ID
    assert backend.calls == []
    assert backend.preflights == 0


def test_resolve_invocation_override_wins_over_defaults() -> None:
    defaults = {"synthetic": AgentSettings(model="haiku", max_turns=7, max_budget_usd=1.5)}
    schema = {"type": "object"}

    inherited = resolve_invocation(
        AgentInvocation(agent="synthetic", prompt="x", json_schema=schema), defaults, {}
    )
    overridden = resolve_invocation(
        AgentInvocation(agent="synthetic", prompt="x", json_schema=schema, model="opus", max_turns=2),
        defaults,
        {},
    )

    assert (inherited.model, inherited.max_turns, inherited.max_budget_usd) == ("haiku", 7, 1.5)
    assert (overridden.model, overridden.max_turns, overridden.max_budget_usd) == ("opus", 2, 1.5)


def test_resolve_invocation_without_any_schema_fails() -> None:
    with pytest.raises(AgentExecutionError) as excinfo:
        resolve_invocation(AgentInvocation(agent="unknown", prompt="x"), {}, JSON_SCHEMAS)
    assert excinfo.value.retriable is False
