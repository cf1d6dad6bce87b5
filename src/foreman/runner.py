from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

from jsonschema import Draft202012Validator
from loguru import logger

from foreman.agents import AgentInvocation, AgentKind, AgentSessionResult, resolve_invocation
from foreman.backends.base import AgentBackend, ProcessResult
from foreman.config import AgentSettings
from foreman.control import ControlPlane
from foreman.errors import (
    AgentExecutionError,
    AgentOutputError,
    AgentRetriesExhaustedError,
    AgentStoppedError,
    AgentTimeoutError,
)
from foreman.schemas import JSON_SCHEMAS, mock_result
from foreman.state.store import StateStore

RunnerEventHook = Callable[[dict[str, Any]], None]

DRY_RUN_SESSION_ID = "dry-run-session-id"


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 4
    backoff_seconds: float = 0.0


@dataclass(slots=True)
class _Attempt:
    payload: dict[str, Any]
    session_id: str | None


class AgentRunner:
    """Invokes agents through a backend with validation, retries, and persistence."""

    def __init__(
        self,
        backend: AgentBackend,
        control: ControlPlane,
        *,
        store: StateStore | None = None,
        agent_settings: Mapping[str, AgentSettings] | None = None,
        schemas: Mapping[str, dict[str, Any]] = JSON_SCHEMAS,
        retry_policy: RetryPolicy | None = None,
        dry_run: bool = False,
        event_hook: RunnerEventHook | None = None,
    ) -> None:
        self.backend = backend
        self.control = control
        self.store = store
        self.agent_settings = agent_settings or {}
        self.schemas = schemas
        self.retry_policy = retry_policy or RetryPolicy()
        self.dry_run = dry_run
        self.event_hook = event_hook
        self._preflight_done = False

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def invoke(
        self, invocation: AgentInvocation, *, state_key: str | None = None
    ) -> dict[str, Any]:
        resolved = self._resolve(invocation)
        if self.dry_run:
            payload = self._dry_run_payload(resolved)
            self._persist(state_key, payload)
            return payload

        attempt = await self._run_attempts(
            resolved.agent,
            lambda: self._attempt_start(resolved, require_session=False),
        )
        self._persist(state_key, attempt.payload)
        return attempt.payload

    async def invoke_with_session(
        self, invocation: AgentInvocation, *, state_key: str | None = None
    ) -> AgentSessionResult[dict[str, Any]]:
        resolved = self._resolve(invocation)
        if self.dry_run:
            payload = self._dry_run_payload(resolved)
            self._persist(state_key, payload)
            return AgentSessionResult(result=payload, session_id=DRY_RUN_SESSION_ID)

        attempt = await self._run_attempts(
            resolved.agent,
            lambda: self._attempt_start(resolved, require_session=True),
        )
        session_id = attempt.session_id
        if not session_id:
            raise AgentOutputError(
                f"Agent {resolved.agent}: no session_id in response",
                agent=resolved.agent,
                retriable=False,
            )
        self._persist(state_key, attempt.payload)
        logger.success("Agent {} session started: {}...", resolved.agent, session_id[:12])
        return AgentSessionResult(result=attempt.payload, session_id=session_id)

    async def resume(
        self,
        session_id: str,
        prompt: str,
        json_schema: dict[str, Any] | None = None,
        *,
        agent: str = AgentKind.CLARIFICATION_ANSWERER,
        state_key: str | None = None,
    ) -> AgentSessionResult[dict[str, Any]]:
        schema = json_schema or self.schemas.get(str(agent))
        if not schema:
            raise AgentExecutionError(
                f"No JSON schema registered for agent kind {agent}",
                agent=str(agent),
                retriable=False,
            )
        logger.info("Resuming session {}...", session_id[:12])
        if self.dry_run:
            payload = mock_result(str(agent))
            self._persist(state_key, payload)
            return AgentSessionResult(result=payload, session_id=session_id)

        async def _attempt() -> _Attempt:
            result = await self.backend.resume(session_id, prompt, schema, agent=str(agent))
            attempt = self._parse_response(str(agent), result, schema, require_session=False)
            if not attempt.session_id:
                attempt.session_id = session_id
            return attempt

        attempt = await self._run_attempts(str(agent), _attempt)
        self._persist(state_key, attempt.payload)
        logger.success("Session {}... resumed successfully", session_id[:12])
        return AgentSessionResult(result=attempt.payload, session_id=attempt.session_id or session_id)

    def _resolve(self, invocation: AgentInvocation) -> AgentInvocation:
        resolved = resolve_invocation(invocation, self.agent_settings, self.schemas)
        budget = (
            f"${resolved.max_budget_usd}" if resolved.max_budget_usd is not None else "unlimited"
        )
        logger.info(
            "Running agent: {} (model: {}, budget: {})",
            resolved.agent,
            resolved.model or "inherit",
            budget,
        )
        return resolved

    def _dry_run_payload(self, invocation: AgentInvocation) -> dict[str, Any]:
        logger.info("[DRY RUN] Would invoke agent {}", invocation.agent)
        logger.debug("[DRY RUN] Prompt: {}...", invocation.prompt[:200])
        return mock_result(invocation.agent)

    def _persist(self, state_key: str | None, payload: dict[str, Any]) -> None:
        if state_key and self.store is not None:
            self.store.write_json(state_key, payload)

    async def _ensure_preflight(self) -> None:
        if self._preflight_done:
            return
        await self.backend.preflight()
        self._preflight_done = True

    async def _attempt_start(
        self, invocation: AgentInvocation, *, require_session: bool
    ) -> _Attempt:
        result = await self.backend.start(invocation)
        return self._parse_response(
            invocation.agent,
            result,
            invocation.json_schema or {},
            require_session=require_session,
        )

    async def _run_attempts(
        self,
        agent: str,
        attempt_fn: Callable[[], Awaitable[_Attempt]],
    ) -> _Attempt:
        await self._ensure_preflight()
        retries = max(0, self.retry_policy.max_retries)
        last_error: AgentExecutionError | None = None
        for attempt in range(retries + 1):
            if attempt > 0:
                delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                logger.warning("Retry {}/{} for agent {}", attempt, retries, agent)
                self._emit(
                    {
                        "event": "agent_retry",
                        "agent": agent,
                        "attempt": attempt,
                        "delay_seconds": delay,
                    }
                )
                if delay > 0:
                    await asyncio.sleep(delay)
            try:
                outcome = await attempt_fn()
            except AgentExecutionError as exc:
                exc.agent = exc.agent or agent
                last_error = exc
                logger.error("Agent {} failed: {}", agent, str(exc)[:500])
                self._emit(
                    {
                        "event": "agent_attempt_failed",
                        "agent": agent,
                        "attempt": attempt,
                        "error": str(exc),
                        "retriable": exc.retriable,
                    }
                )
                if not exc.retriable:
                    raise
                continue
            logger.success("Agent {} completed successfully", agent)
            self._emit({"event": "agent_success", "agent": agent, "attempt": attempt})
            return outcome
        raise AgentRetriesExhaustedError(agent, retries + 1, last_error)

    def _parse_response(
        self,
        agent: str,
        result: ProcessResult,
        schema: dict[str, Any],
        *,
        require_session: bool,
    ) -> _Attempt:
        stopped = self.control.acknowledge_hard_stop()
        if result.exit_code != 0 and stopped:
            raise AgentStoppedError(
                f"Agent {agent} was stopped by a hard stop request",
                agent=agent,
                exit_code=result.exit_code,
                retriable=False,
            )
        if result.timed_out:
            raise AgentTimeoutError(
                f"Agent {agent} timed out after {result.duration_seconds:.0f}s "
                f"(exit code {result.exit_code})",
                agent=agent,
                exit_code=result.exit_code,
            )
        if result.exit_code != 0:
            hint = result.stderr[-500:] or result.stdout[-500:] or "(no output)"
            raise AgentExecutionError(
                f"Agent {agent} exited with code {result.exit_code}. Last output: {hint}",
                agent=agent,
                exit_code=result.exit_code,
            )
        if not result.stdout.strip():
            raise AgentOutputError(
                f"Agent {agent} produced no stdout output. stderr: {result.stderr[-300:]}",
                agent=agent,
            )

        try:
            envelope = json.loads(result.stdout)
        except json.JSONDecodeError as exc:
            raise AgentOutputError(
                f"Agent {agent}: failed to parse JSON response. "
                f"stdout preview: {result.stdout[:500]}",
                agent=agent,
            ) from exc
        if not isinstance(envelope, dict):
            raise AgentOutputError(f"Agent {agent}: response is not a JSON object", agent=agent)
        if envelope.get("is_error"):
            raise AgentOutputError(
                f"Agent {agent} returned error: {envelope.get('result')}", agent=agent
            )

        cost = envelope.get("total_cost_usd", envelope.get("cost_usd"))
        if isinstance(cost, (int, float)):
            logger.debug(
                "  Agent {}: cost=${:.4f}, turns={}, duration={}s",
                agent,
                cost,
                envelope.get("num_turns"),
                round(float(envelope.get("duration_ms") or 0) / 1000),
            )

        session_id = envelope.get("session_id")
        if not isinstance(session_id, str) or not session_id:
            session_id = None
        if require_session and session_id is None:
            raise AgentOutputError(f"Agent {agent}: no session_id in response", agent=agent)

        payload = envelope.get("structured_output")
        if payload is None:
            payload = self._fallback_payload(agent, envelope.get("result"))
        if not isinstance(payload, dict):
            raise AgentOutputError(
                f"Agent {agent}: structured output is not a JSON object", agent=agent
            )
        self._validate(agent, payload, schema)
        return _Attempt(payload=payload, session_id=session_id)

    def _fallback_payload(self, agent: str, raw_result: Any) -> Any:
        if isinstance(raw_result, str):
            try:
                parsed = json.loads(raw_result)
            except json.JSONDecodeError:
                parsed = None
            if parsed is not None:
                logger.warning("Agent {}: structured_output missing, parsed from result field", agent)
                self._emit({"event": "agent_fallback_parse", "agent": agent})
                return parsed
        preview = str(raw_result)[:300]
        raise AgentOutputError(
            f"Agent {agent}: no structured_output and result is not valid JSON. "
            f"Result preview: {preview}",
            agent=agent,
        )

    @staticmethod
    def _validate(agent: str, payload: dict[str, Any], schema: dict[str, Any]) -> None:
        if not schema:
            return
        validator = Draft202012Validator(schema)
        errors = sorted(validator.iter_errors(payload), key=lambda error: list(error.path))
        if errors:
            first = errors[0]
            location = "/".join(str(part) for part in first.path) or "<root>"
            raise AgentOutputError(
                f"Agent {agent}: output does not match schema at {location}: {first.message}",
                agent=agent,
            )
