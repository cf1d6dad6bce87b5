from __future__ import annotations

from loguru import logger

from foreman.modes.base import PipelineMode, PrdPhaseContext
from foreman.state.pipeline import Phase
from foreman.state.records import ClarificationEntry, questions_from_analysis, technical_track


class InteractiveMode(PipelineMode):
    name = "interactive"
    description = "Human answers all clarification questions"

    async def run_prd_phase(self, context: PrdPhaseContext) -> None:
        max_rounds = context.config.limits.max_clarification_rounds
        track = technical_track(context.store)
        start = len(track.load())
        if start > 0:
            logger.info("Found {} existing clarification round(s); continuing from there", start)

        for round_number in self.rounds(start, max_rounds):
            clarifications = track.load()
            await self.generate_prd(
                context, round_number=round_number, technical=clarifications, business=[]
            )
            analysis = await self.analyze_prd(context, clarifications)
            questions = questions_from_analysis(analysis)
            if not self.should_ask(analysis, questions, round_number, max_rounds):
                self.log_loop_exit(
                    analysis, passed_message="PRD analysis passed; no further clarification needed"
                )
                return

            context.gate.enter(Phase.CLARIFICATION)
            logger.info("Clarification (round {}/{})", round_number + 1, max_rounds)
            answers = await context.ask_human(questions)
            track.append(
                ClarificationEntry(
                    round=round_number + 1, questions=questions, answers=answers, source="human"
                )
            )
            logger.success("Clarification round {} saved", round_number + 1)
