from __future__ import annotations

from loguru import logger

from foreman.agents import INSPECT_TOOLS, READ_ONLY_TOOLS, AgentInvocation, AgentKind
from foreman.modes.base import BUSINESS_ANALYSIS_KEY, PipelineMode, PrdPhaseContext
from foreman.schemas import schema_for
from foreman.state.pipeline import Phase
from foreman.state.records import (
    Answer,
    ClarificationEntry,
    Question,
    business_track,
    questions_from_analysis,
    technical_track,
)

LOW_CONFIDENCE_MARKER = "[Agent uncertain] "


class AutonomousMode(PipelineMode):
    name = "autonomous"
    description = "Business questions for the human, technical questions answered by an agent"

    async def run_prd_phase(self, context: PrdPhaseContext) -> None:
        logger.info("Autonomous mode, stage 1: business requirements")
        await self.business_loop(context)
        logger.info("Autonomous mode, stage 2: technical clarification (unattended)")
        await self.technical_loop(context)
        logger.success("PRD finalized through autonomous mode")

    async def business_loop(self, context: PrdPhaseContext) -> None:
        max_rounds = context.config.limits.max_business_clarification_rounds
        track = business_track(context.store)
        start = len(track.load())
        if start > 0:
            logger.info(
                "Found {} existing business clarification round(s); continuing from there", start
            )

        for round_number in self.rounds(start, max_rounds):
            business = track.load()
            await self.generate_prd(
                context, round_number=round_number, technical=[], business=business
            )
            context.gate.enter(Phase.BUSINESS_CLARIFICATION)
            logger.info("Business analysis (round {})", round_number)
            invocation = AgentInvocation(
                agent=AgentKind.BUSINESS_ANALYZER,
                prompt=context.prompts.business_analysis(business),
                tools=list(READ_ONLY_TOOLS),
                allowed_tools=list(READ_ONLY_TOOLS),
            )
            analysis = await context.runner.invoke(invocation, state_key=BUSINESS_ANALYSIS_KEY)
            self.log_analysis("Business analysis", analysis)

            questions = questions_from_analysis(analysis)
            if not self.should_ask(analysis, questions, round_number, max_rounds):
                self.log_loop_exit(
                    analysis,
                    passed_message="Business requirements are clear; moving to technical clarification",
                )
                return

            answers = await context.ask_human(questions)
            track.append(
                ClarificationEntry(
                    round=round_number + 1, questions=questions, answers=answers, source="human"
                )
            )
            logger.success("Business clarification round {} saved", round_number + 1)

    async def technical_loop(self, context: PrdPhaseContext) -> None:
        max_rounds = context.config.limits.max_clarification_rounds
        business = business_track(context.store).load()
        track = technical_track(context.store)
        start = len(track.load())
        if start > 0:
            logger.info(
                "Found {} existing technical clarification round(s); continuing from there", start
            )

        for round_number in self.rounds(start, max_rounds):
            clarifications = track.load()
            await self.generate_prd(
                context, round_number=round_number, technical=clarifications, business=business
            )
            analysis = await self.analyze_prd(context, clarifications)
            questions = questions_from_analysis(analysis)
            if not self.should_ask(analysis, questions, round_number, max_rounds):
                self.log_loop_exit(
                    analysis, passed_message="PRD analysis passed; no further clarification needed"
                )
                return

            context.gate.enter(Phase.AGENT_CLARIFICATION)
            logger.info("Agent clarification (round {}/{})", round_number + 1, max_rounds)
            answers = await self.answer_questions(
                context, questions, has_business_clarifications=bool(business)
            )
            track.append(
                ClarificationEntry(
                    round=round_number + 1, questions=questions, answers=answers, source="agent"
                )
            )
            logger.success(
                "Agent clarification round {} saved ({} answers)", round_number + 1, len(answers)
            )

    async def answer_questions(
        self,
        context: PrdPhaseContext,
        questions: list[Question],
        *,
        has_business_clarifications: bool,
    ) -> list[Answer]:
        batch_size = max(1, context.config.limits.max_questions_per_answerer_instance)
        schema = schema_for(AgentKind.CLARIFICATION_ANSWERER)
        answers: list[Answer] = []
        session_id: str | None = None
        questions_in_session = 0

        for index, question in enumerate(questions, start=1):
            if questions_in_session >= batch_size:
                session_id = None
                questions_in_session = 0

            if session_id is None:
                invocation = AgentInvocation(
                    agent=AgentKind.CLARIFICATION_ANSWERER,
                    prompt=context.prompts.first_question(
                        question, has_business_clarifications=has_business_clarifications
                    ),
                    json_schema=schema,
                    tools=list(INSPECT_TOOLS),
                    allowed_tools=list(INSPECT_TOOLS),
                )
                response = await context.runner.invoke_with_session(invocation)
            else:
                response = await context.runner.resume(
                    session_id,
                    context.prompts.follow_up_question(question),
                    schema,
                    agent=AgentKind.CLARIFICATION_ANSWERER,
                )
            session_id = response.session_id
            questions_in_session += 1

            result = response.result
            answer = str(result.get("answer", ""))
            confident = bool(result.get("confident"))
            if not confident:
                answer = f"{LOW_CONFIDENCE_MARKER}{answer}"
                logger.warning("  Low confidence: {}...", question.question[:80])
            answers.append(Answer(question=question.question, answer=answer))
            logger.info(
                "  Answered Q{}/{}: {}",
                index,
                len(questions),
                "confident" if confident else "uncertain",
            )
        return answers
