from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Callable
from contextlib import suppress
from pathlib import Path
from typing import Any

from loguru import logger

from foreman.agents import AgentInvocation
from foreman.backends.base import AgentBackend, ProcessResult
from foreman.control import ControlPlane
from foreman.errors import AgentProcessError
from foreman.logs import AgentLog, generate_invocation_id

BackendEventHook = Callable[[dict[str, Any]], None]

PREFLIGHT_TIMEOUT_SECONDS = 15.0


class ClaudeCodeBackend(AgentBackend):
    def __init__(
        self,
        control: ControlPlane,
        *,
        binary: str = "claude",
        working_directory: Path | None = None,
        timeout_seconds: float = 30 * 60.0,
        kill_grace_seconds: float = 5.0,
        heartbeat_seconds: float = 60.0,
        log_dir: Path | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.control = control
        self.binary = binary
        self.working_directory = working_directory
        self.timeout_seconds = timeout_seconds
        self.kill_grace_seconds = kill_grace_seconds
        self.heartbeat_seconds = heartbeat_seconds
        self.log_dir = log_dir
        self.event_hook = event_hook
        self._preflight_ok = False

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def build_command(self, invocation: AgentInvocation) -> list[str]:
        command = [self.binary, "-p", "--output-format", "json", "--agent", invocation.agent]
        if invocation.model:
            command.extend(["--model", invocation.model])
        if invocation.max_turns:
            command.extend(["--max-turns", str(invocation.max_turns)])
        if invocation.max_budget_usd:
            command.extend(["--max-budget-usd", str(invocation.max_budget_usd)])
        if invocation.tools:
            command.extend(["--tools", *invocation.tools])
        if invocation.allowed_tools:
            command.extend(["--allowedTools", *invocation.allowed_tools])
        command.extend(["--json-schema", json.dumps(invocation.json_schema or {})])
        command.append(invocation.prompt)
        return command

    def build_resume_command(
        self, session_id: str, prompt: str, json_schema: dict[str, Any]
    ) -> list[str]:
        return [
            self.binary,
            "--resume",
            session_id,
            "--output-format",
            "json",
            "--json-schema",
            json.dumps(json_schema),
            prompt,
        ]

    async def preflight(self) -> None:
        if self._preflight_ok:
            return
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary,
                "--version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=PREFLIGHT_TIMEOUT_SECONDS
            )
        except FileNotFoundError as exc:
            raise AgentProcessError(
                f"Agent binary not found: {self.binary}. Make sure it is installed and on PATH.",
                retriable=False,
            ) from exc
        except TimeoutError as exc:
            raise AgentProcessError(
                f"Agent binary {self.binary} did not answer --version", retriable=False
            ) from exc
        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            raise AgentProcessError(
                f"Agent binary {self.binary} is not working: {detail}", retriable=False
            )
        logger.info("Agent CLI found: {}", stdout.decode("utf-8", errors="replace").strip())
        self._preflight_ok = True

    async def start(self, invocation: AgentInvocation) -> ProcessResult:
        return await self._spawn(self.build_command(invocation), agent=invocation.agent)

    async def resume(
        self,
        session_id: str,
        prompt: str,
        json_schema: dict[str, Any],
        *,
        agent: str,
    ) -> ProcessResult:
        command = self.build_resume_command(session_id, prompt, json_schema)
        return await self._spawn(command, agent=agent)

    async def _read_all(self, stream: asyncio.StreamReader | None, chunks: list[bytes]) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(65536)
            if not chunk:
                return
            chunks.append(chunk)

    async def _relay_stderr(
        self,
        stream: asyncio.StreamReader | None,
        lines: list[str],
        *,
        agent: str,
        agent_log: AgentLog,
    ) -> None:
        if stream is None:
            return
        while True:
            raw_line = await stream.readline()
            if not raw_line:
                return
            text = raw_line.decode("utf-8", errors="replace")
            lines.append(text)
            agent_log.write(text)
            stripped = text.strip()
            if stripped:
                logger.debug("  [{}] {}", agent, stripped)
                self._emit({"event": "agent_stderr", "agent": agent, "line": stripped})

    async def _heartbeat(self, agent: str, started: float) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_seconds)
            elapsed_minutes = (time.monotonic() - started) / 60.0
            logger.info("  [{}] still running... ({:.0f} min elapsed)", agent, elapsed_minutes)
            self._emit(
                {
                    "event": "agent_heartbeat",
                    "agent": agent,
                    "elapsed_seconds": round(time.monotonic() - started, 1),
                }
            )

    async def _terminate(self, process: asyncio.subprocess.Process, *, agent: str) -> None:
        with suppress(ProcessLookupError):
            process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_grace_seconds)
        except TimeoutError:
            logger.error(
                "Agent {} still alive {:.0f}s after SIGTERM; sending SIGKILL",
                agent,
                self.kill_grace_seconds,
            )
            with suppress(ProcessLookupError):
                process.kill()
            await process.wait()

    async def _spawn(self, command: list[str], *, agent: str) -> ProcessResult:
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                # Own session so a terminal Ctrl-C reaches only the orchestrator.
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            raise AgentProcessError(
                f"Agent binary not found: {self.binary}", agent=agent, retriable=False
            ) from exc
        except OSError as exc:
            raise AgentProcessError(
                f"Failed to spawn agent {agent}: {exc}", agent=agent, retriable=True
            ) from exc

        # stdin must stay a pipe: with no stdin at all the agent CLI can hang.
        if process.stdin is not None:
            process.stdin.close()

        invocation_id = generate_invocation_id()
        started = time.monotonic()
        self.control.register_process(process)
        self._emit(
            {
                "event": "agent_start",
                "agent": agent,
                "pid": process.pid,
                "invocation_id": invocation_id,
            }
        )

        stdout_chunks: list[bytes] = []
        stderr_lines: list[str] = []
        timed_out = False
        with AgentLog(self.log_dir, agent, invocation_id) as agent_log:
            readers = asyncio.gather(
                self._read_all(process.stdout, stdout_chunks),
                self._relay_stderr(process.stderr, stderr_lines, agent=agent, agent_log=agent_log),
            )
            heartbeat = asyncio.create_task(self._heartbeat(agent, started))
            try:
                try:
                    await asyncio.wait_for(process.wait(), timeout=self.timeout_seconds)
                except TimeoutError:
                    timed_out = True
                    logger.error(
                        "Agent {} exceeded total timeout of {:.0f} min; killing",
                        agent,
                        self.timeout_seconds / 60.0,
                    )
                    self._emit({"event": "agent_timeout", "agent": agent, "pid": process.pid})
                    await self._terminate(process, agent=agent)
                try:
                    await asyncio.wait_for(readers, timeout=max(self.kill_grace_seconds, 1.0))
                except TimeoutError:
                    logger.warning("Agent {} output streams did not close after exit", agent)
            except asyncio.CancelledError:
                if process.returncode is None:
                    await self._terminate(process, agent=agent)
                raise
            finally:
                readers.cancel()
                heartbeat.cancel()
                with suppress(asyncio.CancelledError):
                    await heartbeat
                self.control.clear_process(process)

        duration = time.monotonic() - started
        return ProcessResult(
            stdout=b"".join(stdout_chunks).decode("utf-8", errors="replace"),
            stderr="".join(stderr_lines),
            exit_code=process.returncode,
            timed_out=timed_out,
            duration_seconds=duration,
        )
