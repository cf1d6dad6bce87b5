from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from loguru import logger

from foreman.agents import DRAFT_TOOLS, READ_ONLY_TOOLS, AgentInvocation, AgentKind
from foreman.checkpoint import PhaseGate
from foreman.config import ForemanConfig
from foreman.prompts import PromptBuilder
from foreman.runner import AgentRunner
from foreman.state.pipeline import Phase
from foreman.state.records import Answer, ClarificationEntry, Question
from foreman.state.store import StateStore

AnswerProvider = Callable[[list[Question]], Awaitable[list[Answer]]]

PRD_OUTPUT_KEY = "prd-output.json"
ANALYSIS_KEY = "analysis.json"
BUSINESS_ANALYSIS_KEY = "business-analysis.json"
FINAL_FEEDBACK_KEY = "final-feedback.md"


@dataclass(slots=True)
class PrdPhaseContext:
    config: ForemanConfig
    task: str
    runner: AgentRunner
    store: StateStore
    gate: PhaseGate
    prompts: PromptBuilder
    ask_human: AnswerProvider
    dry_run: bool = False


class PipelineMode(ABC):
    name: str = "mode"
    description: str = ""

    @abstractmethod
    async def run_prd_phase(self, context: PrdPhaseContext) -> None:
        """Draft the PRD and drive clarification until it is final."""

    @staticmethod
    def rounds(start: int, max_rounds: int) -> range:
        """Rounds still to run, resuming at the number of persisted entries.

        At least one draft always runs, so a pipeline retry whose track is
        already full still regenerates the PRD with the latest feedback.
        """
        return range(start, max(start, max_rounds) + 1)

    @staticmethod
    def should_ask(
        analysis: dict[str, Any], questions: list[Question], round_number: int, max_rounds: int
    ) -> bool:
        return bool(analysis.get("needsClarification")) and bool(questions) and round_number < max_rounds

    @staticmethod
    def log_analysis(label: str, analysis: dict[str, Any]) -> None:
        logger.info(
            "{}: confidence={}/10, needsClarification={}",
            label,
            analysis.get("confidence"),
            analysis.get("needsClarification"),
        )
        reasoning = str(analysis.get("reasoning", ""))
        if reasoning:
            logger.info("Reasoning: {}", reasoning[:200])

    async def generate_prd(
        self,
        context: PrdPhaseContext,
        *,
        round_number: int,
        technical: list[ClarificationEntry],
        business: list[ClarificationEntry],
    ) -> dict[str, Any]:
        context.gate.enter(Phase.PRD_GENERATION, clarification_round=round_number)
        logger.info("PRD generation (round {})", round_number)
        feedback = context.store.read_text(FINAL_FEEDBACK_KEY)
        invocation = AgentInvocation(
            agent=AgentKind.PRD_GENERATOR,
            prompt=context.prompts.prd_generator(context.task, technical, business, feedback),
            allowed_tools=list(DRAFT_TOOLS),
        )
        return await context.runner.invoke(invocation, state_key=PRD_OUTPUT_KEY)

    async def analyze_prd(
        self, context: PrdPhaseContext, clarifications: list[ClarificationEntry]
    ) -> dict[str, Any]:
        context.gate.enter(Phase.PRD_ANALYSIS)
        logger.info("PRD analysis")
        invocation = AgentInvocation(
            agent=AgentKind.PRD_ANALYZER,
            prompt=context.prompts.prd_analysis(clarifications),
            tools=list(READ_ONLY_TOOLS),
            allowed_tools=list(READ_ONLY_TOOLS),
        )
        analysis = await context.runner.invoke(invocation, state_key=ANALYSIS_KEY)
        self.log_analysis("PRD analysis", analysis)
        return analysis

    @staticmethod
    def log_loop_exit(analysis: dict[str, Any], *, passed_message: str) -> None:
        if analysis.get("needsClarification"):
            logger.warning("Clarification needed but max rounds reached. Proceeding with current PRD.")
        else:
            logger.success(passed_message)
