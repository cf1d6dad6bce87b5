from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from loguru import logger

from foreman.agents import INSPECT_TOOLS, READ_ONLY_TOOLS, AgentInvocation, AgentKind
from foreman.assignments import AssignmentLoop
from foreman.backends.base import AgentBackend
from foreman.backends.claude import BackendEventHook, ClaudeCodeBackend
from foreman.checkpoint import PhaseGate
from foreman.config import ForemanConfig
from foreman.control import ControlPlane
from foreman.errors import PipelineExhaustedError, PreconditionError
from foreman.modes import AnswerProvider, PipelineMode, PrdPhaseContext, get_mode
from foreman.modes.base import FINAL_FEEDBACK_KEY
from foreman.prompts import PromptBuilder
from foreman.runner import AgentRunner, RetryPolicy
from foreman.state.pipeline import PRD_PHASES, Phase, PipelineState, PipelineStateRepository
from foreman.state.records import PLAN_KEY, load_plan
from foreman.state.store import StateStore
from foreman.workspace import check_git_clean

TASK_KEY = "task.md"
FINAL_VERIFICATION_KEY = "final-verification.json"


@dataclass(slots=True)
class PipelineOutcome:
    phase: Phase
    iteration: int = 0
    commit_message: str | None = None

    @property
    def completed(self) -> bool:
        return self.phase == Phase.COMPLETE


async def _no_human(questions: list[Any]) -> list[Any]:
    raise PreconditionError(
        f"{len(questions)} clarification question(s) need a human answer but no answer provider is attached"
    )


class PipelineController:
    """Top-level phase machine: PRD mode, planning, assignments, final verification."""

    def __init__(
        self,
        config: ForemanConfig,
        workspace: Path,
        *,
        backend: AgentBackend | None = None,
        control: ControlPlane | None = None,
        ask_human: AnswerProvider | None = None,
        dry_run: bool = False,
        require_git: bool = True,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.config = config
        self.workspace = workspace.resolve()
        self.control = control or ControlPlane()
        self.ask_human = ask_human or _no_human
        self.dry_run = dry_run
        self.require_git = require_git and not dry_run
        self.store = StateStore(self.workspace, config.runner.state_dir)
        self.states = PipelineStateRepository(self.store)
        self.gate = PhaseGate(self.states, self.control)
        self.backend = backend or ClaudeCodeBackend(
            self.control,
            binary=config.runner.binary,
            working_directory=self.workspace,
            timeout_seconds=config.runner.timeout_seconds,
            kill_grace_seconds=config.runner.kill_grace_seconds,
            heartbeat_seconds=config.runner.heartbeat_seconds,
            log_dir=self.workspace / config.runner.log_dir,
            event_hook=event_hook,
        )
        self.runner = AgentRunner(
            self.backend,
            self.control,
            store=self.store,
            agent_settings=config.agents,
            retry_policy=RetryPolicy(
                max_retries=config.runner.max_retries,
                backoff_seconds=config.runner.retry_backoff_seconds,
            ),
            dry_run=dry_run,
            event_hook=event_hook,
        )

    async def start(
        self,
        task: str,
        *,
        project_dir: Path,
        mode: str | None = None,
        stop_after_prd: bool = False,
    ) -> PipelineOutcome:
        task = task.strip()
        if not task:
            raise PreconditionError("No task description provided")
        target = project_dir.expanduser().resolve()
        if not target.is_dir():
            raise PreconditionError(f"Project directory does not exist: {target}")
        pipeline_mode = get_mode(mode or self.config.pipeline.default_mode)
        if self.states.load() is not None:
            raise PreconditionError(
                "A pipeline run already exists in this workspace. Resume it or reset first."
            )
        if self.require_git:
            check_git_clean(target)

        self.control.reset()
        logger.info("Project directory: {}", target)
        logger.info("Pipeline mode: {} ({})", pipeline_mode.name, pipeline_mode.description)
        logger.info("Task: {}{}", task[:100], "..." if len(task) > 100 else "")

        self.store.write_text(TASK_KEY, task)
        state = self.states.init(
            mode=pipeline_mode.name, project_dir=str(target), stop_after_prd=stop_after_prd
        )
        logger.info("Pipeline started at {}", state.started_at)
        return await self._drive(pipeline_mode, task, state)

    async def resume(self) -> PipelineOutcome:
        state = self.states.require()
        task = self.store.read_text(TASK_KEY)
        if not task:
            raise PreconditionError("No task description found in state. Cannot resume.")
        pipeline_mode = get_mode(state.mode)
        self.control.clear_pause()
        logger.info("Project directory (from state): {}", state.project_dir)
        logger.info("Resuming pipeline from phase {} (mode: {})", state.phase, pipeline_mode.name)
        return await self._drive(pipeline_mode, task, state)

    def status(self) -> dict[str, Any]:
        state = self.states.load()
        return {
            "state": state.to_dict() if state is not None else None,
            "control": self.control.snapshot(),
        }

    def reset(self) -> None:
        self.control.reset()
        self.store.reset()
        logger.info("Pipeline state reset: {}", self.store.root)

    def _prompts(self, state: PipelineState) -> PromptBuilder:
        return PromptBuilder(
            state.project_dir,
            state_dir=self.config.runner.state_dir,
            build_commands=self.config.pipeline.build_commands,
            project_context=self.config.pipeline.project_context,
        )

    async def _drive(
        self, mode: PipelineMode, task: str, state: PipelineState
    ) -> PipelineOutcome:
        prompts = self._prompts(state)
        max_retries = self.config.limits.max_pipeline_retries
        iteration = state.pipeline_iteration
        phase = state.phase

        if phase == Phase.COMPLETE:
            logger.success("Pipeline already completed.")
            return PipelineOutcome(phase=Phase.COMPLETE, iteration=iteration)
        if phase == Phase.PRD_REVIEW_STOP:
            logger.info("Resuming from PRD review checkpoint")

        while True:
            if phase in PRD_PHASES:
                await mode.run_prd_phase(
                    PrdPhaseContext(
                        config=self.config,
                        task=task,
                        runner=self.runner,
                        store=self.store,
                        gate=self.gate,
                        prompts=prompts,
                        ask_human=self.ask_human,
                        dry_run=self.dry_run,
                    )
                )
                if state.stop_after_prd:
                    self.states.update(phase=Phase.PRD_REVIEW_STOP)
                    logger.success("PRD finalized; stopped for review")
                    logger.info("Review the PRD at: {}", self.store.path("prd.md"))
                    logger.info("When ready, resume to continue from the planning phase.")
                    return PipelineOutcome(phase=Phase.PRD_REVIEW_STOP, iteration=iteration)
                phase = Phase.PLANNING

            if phase in (Phase.PRD_REVIEW_STOP, Phase.PLANNING):
                await self._planning(prompts)
                phase = Phase.IMPLEMENTATION

            if phase == Phase.IMPLEMENTATION:
                await self._implementation(prompts)
                phase = Phase.FINAL_VERIFICATION

            result = await self._final_verification(prompts)
            if result.get("passed"):
                commit_message = str(result.get("commitMessage", ""))
                logger.success("Pipeline completed successfully")
                logger.info("Suggested commit message: {}", commit_message)
                return PipelineOutcome(
                    phase=Phase.COMPLETE, iteration=iteration, commit_message=commit_message
                )

            feedback = str(result.get("feedback", ""))
            if iteration >= max_retries:
                logger.error("Pipeline exhausted all retries. Final feedback: {}", feedback)
                raise PipelineExhaustedError(iteration + 1, feedback)

            logger.warning("Final verification failed. Feedback: {}", feedback)
            for requirement in result.get("unmetRequirements", []):
                logger.warning("  Unmet: {}", requirement)
            self.store.write_text(FINAL_FEEDBACK_KEY, feedback)
            iteration += 1
            # One write: a resume must never see the new iteration without the PRD retry phase.
            self.gate.update(
                phase=Phase.PRD_GENERATION,
                pipeline_iteration=iteration,
                completed_assignments=[],
                current_assignment_id=None,
            )
            logger.warning("Pipeline retry iteration {}/{}", iteration, max_retries)
            phase = Phase.PRD_GENERATION

    async def _planning(self, prompts: PromptBuilder) -> None:
        self.gate.enter(Phase.PLANNING)
        logger.info("Planning")
        plan = await self.runner.invoke(
            AgentInvocation(
                agent=AgentKind.PLANNER,
                prompt=prompts.planner(),
                tools=list(READ_ONLY_TOOLS),
                allowed_tools=list(READ_ONLY_TOOLS),
            ),
            state_key=PLAN_KEY,
        )
        assignments = plan.get("assignments", [])
        logger.success("Plan created with {} assignments:", len(assignments))
        for item in assignments:
            logger.info(
                "  [{}] {} (depends on: {})",
                item.get("id"),
                item.get("title"),
                ", ".join(item.get("dependsOn", [])) or "none",
            )

    async def _implementation(self, prompts: PromptBuilder) -> None:
        self.gate.enter(Phase.IMPLEMENTATION)
        assignments = load_plan(self.store)
        state = self.states.require()
        loop = AssignmentLoop(
            self.runner,
            self.store,
            self.gate,
            prompts,
            max_attempts=self.config.limits.max_implementation_iterations,
        )
        await loop.run(assignments, state.completed_assignments)

    async def _final_verification(self, prompts: PromptBuilder) -> dict[str, Any]:
        self.gate.enter(Phase.FINAL_VERIFICATION)
        logger.info("Final verification")
        result = await self.runner.invoke(
            AgentInvocation(
                agent=AgentKind.FINAL_VERIFIER,
                prompt=prompts.final_verifier(),
                tools=list(INSPECT_TOOLS),
                allowed_tools=list(INSPECT_TOOLS),
            ),
            state_key=FINAL_VERIFICATION_KEY,
        )
        if result.get("passed"):
            self.states.update(phase=Phase.COMPLETE)
        return result
