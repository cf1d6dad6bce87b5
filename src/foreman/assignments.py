from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from loguru import logger

from foreman.agents import EDIT_TOOLS, INSPECT_TOOLS, READ_ONLY_TOOLS, AgentInvocation, AgentKind
from foreman.checkpoint import PhaseGate
from foreman.errors import AgentStoppedError, AssignmentFailedError
from foreman.prompts import PromptBuilder
from foreman.runner import AgentRunner
from foreman.state.pipeline import Phase
from foreman.state.records import Assignment
from foreman.state.store import StateStore


def assignment_key(assignment_id: str, name: str) -> str:
    return f"assignments/{assignment_id}/{name}"


@dataclass(slots=True)
class AttemptOutcome:
    passed: bool
    detail: str = ""


class AssignmentLoop:
    """Runs planned assignments in order with a bounded microplan/implement/verify cycle."""

    def __init__(
        self,
        runner: AgentRunner,
        store: StateStore,
        gate: PhaseGate,
        prompts: PromptBuilder,
        *,
        max_attempts: int = 3,
    ) -> None:
        self.runner = runner
        self.store = store
        self.gate = gate
        self.prompts = prompts
        self.max_attempts = max(1, max_attempts)

    async def run(self, assignments: list[Assignment], completed: list[str]) -> list[str]:
        done = list(completed)
        for assignment in assignments:
            if assignment.id in done:
                logger.info("Skipping completed assignment: [{}] {}", assignment.id, assignment.title)
                continue

            logger.info("Assignment: [{}] {}", assignment.id, assignment.title)
            self.gate.update(current_assignment_id=assignment.id)
            self.store.ensure_dir(f"assignments/{assignment.id}")

            await self.run_assignment(assignment)

            done.append(assignment.id)
            self.gate.update(completed_assignments=list(done), current_assignment_id=None)
            logger.success("Assignment [{}] completed", assignment.id)
            self.gate.check_pause(Phase.IMPLEMENTATION)

        logger.success("All assignments completed")
        return done

    async def run_assignment(self, assignment: Assignment) -> None:
        last_detail = ""
        for attempt in range(self.max_attempts):
            if attempt > 0:
                logger.warning(
                    "Assignment [{}] retry {}/{}", assignment.id, attempt, self.max_attempts
                )
            try:
                outcome = await self.attempt(assignment, retrying=attempt > 0)
            except AgentStoppedError as exc:
                logger.warning("Assignment [{}] attempt interrupted: {}", assignment.id, exc)
                last_detail = str(exc)
                continue
            if outcome.passed:
                logger.success("  Assignment [{}] verified successfully", assignment.id)
                return
            last_detail = outcome.detail

        logger.error(
            "  Assignment [{}] failed after {} attempts", assignment.id, self.max_attempts
        )
        raise AssignmentFailedError(assignment.id, self.max_attempts, last_detail)

    async def attempt(self, assignment: Assignment, *, retrying: bool) -> AttemptOutcome:
        previous: dict[str, Any] | None = None
        if retrying:
            previous = self.store.read_json(assignment_key(assignment.id, "verification.json"))

        logger.info("  Microplanning for [{}]", assignment.id)
        microplan = await self.runner.invoke(
            AgentInvocation(
                agent=AgentKind.MICROPLANNER,
                prompt=self.prompts.microplan(assignment, previous),
                tools=list(READ_ONLY_TOOLS),
                allowed_tools=list(READ_ONLY_TOOLS),
            ),
            state_key=assignment_key(assignment.id, "microplan.json"),
        )
        logger.info(
            "  Microplan: {} steps, {} considerations",
            len(microplan.get("steps", [])),
            len(microplan.get("considerations", [])),
        )

        logger.info("  Implementation for [{}]", assignment.id)
        changes = await self.runner.invoke(
            AgentInvocation(
                agent=AgentKind.IMPLEMENTER,
                prompt=self.prompts.implementer(assignment),
                allowed_tools=list(EDIT_TOOLS),
            ),
            state_key=assignment_key(assignment.id, "changes.json"),
        )
        modified = list(changes.get("filesModified", []))
        created = list(changes.get("filesCreated", []))
        logger.info(
            "  Implementation: {} modified, {} created, {} deleted",
            len(modified),
            len(created),
            len(changes.get("filesDeleted", [])),
        )
        for deviation in changes.get("deviations", []):
            logger.warning("    Deviation from microplan: {}", deviation)

        logger.info("  Verification for [{}]", assignment.id)
        verification = await self.runner.invoke(
            AgentInvocation(
                agent=AgentKind.VERIFIER,
                prompt=self.prompts.verifier(assignment, [*modified, *created]),
                tools=list(INSPECT_TOOLS),
                allowed_tools=list(INSPECT_TOOLS),
            ),
            state_key=assignment_key(assignment.id, "verification.json"),
        )
        issues = verification.get("issues", [])
        errors = [issue for issue in issues if issue.get("severity") == "error"]
        logger.info(
            "  Verification: passed={}, errors={}, warnings={}, buildPassed={}",
            verification.get("passed"),
            len(errors),
            len(issues) - len(errors),
            verification.get("buildPassed"),
        )
        if verification.get("passed"):
            return AttemptOutcome(passed=True)

        for issue in issues:
            logger.warning(
                "    [{}] {}: {}", issue.get("severity"), issue.get("file"), issue.get("description")
            )
        detail = "; ".join(f"{issue.get('file')}: {issue.get('description')}" for issue in errors)
        return AttemptOutcome(passed=False, detail=detail)
