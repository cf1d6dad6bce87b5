from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from foreman.state.records import (
    Assignment,
    ClarificationEntry,
    Question,
    format_business_clarifications,
    format_clarifications,
)
from foreman.state.store import DEFAULT_STATE_DIR

STALE_REFERENCE_NOTE = """IMPORTANT: These clarifications were collected over multiple rounds and may reference requirement IDs (e.g., R1.1, R7.4), section numbers, or specific wording from EARLIER versions of the PRD that no longer exist or have been renumbered. Do NOT blindly copy old requirement IDs. Instead:
- Understand the INTENT behind each clarification answer
- Incorporate the substance of the answer into the new PRD using your own structure and numbering
- If a clarification references something you cannot identify, infer the intent from the question context"""

BUILD_OUTPUT_LIMIT = 2000


class PromptBuilder:
    """Renders the prompt text for every agent kind.

    State documents are referenced by their path relative to the workspace,
    which is the agent's working directory. The target project is pinned by
    an absolute path block prepended to every prompt.
    """

    def __init__(
        self,
        project_dir: str,
        *,
        state_dir: str = DEFAULT_STATE_DIR,
        build_commands: Sequence[str] = (),
        project_context: str = "",
    ) -> None:
        self.project_dir = project_dir
        self.state_dir = state_dir.rstrip("/")
        self.build_commands = list(build_commands)
        self.project_context = project_context

    def state(self, key: str) -> str:
        return f"{self.state_dir}/{key}"

    def wrap(self, prompt: str) -> str:
        return (
            "[PROJECT DIRECTORY]\n"
            f"The target project you are working on is located at: {self.project_dir}\n"
            "All file operations on the project codebase (reading source code, writing/editing "
            "files, running git commands, running build commands) MUST use absolute paths under: "
            f"{self.project_dir}\n"
            f"State files ({self.state('prd.md')}, {self.state('task.md')}, etc.) are in the "
            "current working directory; reference them with relative paths as usual.\n"
            "[END PROJECT DIRECTORY]\n\n"
            f"{prompt}"
        )

    def _build_command_list(self) -> str:
        return "\n".join(f"- {command}" for command in self.build_commands)

    def prd_generator(
        self,
        task: str,
        technical: list[ClarificationEntry],
        business: list[ClarificationEntry],
        feedback: str | None,
    ) -> str:
        parts = [
            "You have a task to create a Product Requirements Document (PRD).\n\n"
            f"Read the task description from: {self.state('task.md')}\n\n"
            f"The task is:\n{task}\n"
        ]
        if business:
            parts.append(
                "\nThe following BUSINESS clarifications have been provided by the stakeholder:\n"
                f"{format_business_clarifications(business)}\n"
            )
        if technical:
            parts.append(
                "\nThe following technical clarifications have been collected.\n\n"
                f"{STALE_REFERENCE_NOTE}\n\n"
                f"Clarifications:\n{format_clarifications(technical)}\n"
            )
        if feedback:
            parts.append(
                "\nThe following feedback was received from a previous verification round. "
                f"Incorporate it into the PRD:\n{feedback}\n"
            )
        parts.append(f"\nWrite the PRD to: {self.state('prd.md')}")
        if self.project_context:
            parts.append(f"\n\nAdditional project context:\n{self.project_context}")
        return self.wrap("".join(parts))

    def prd_analysis(self, clarifications: list[ClarificationEntry]) -> str:
        prompt = (
            f"Analyze the PRD at {self.state('prd.md')} for completeness, clarity, and gaps.\n\n"
            f"Read the task description from {self.state('task.md')} for context."
        )
        if clarifications:
            prompt += (
                "\n\nExisting clarifications (check if these resolve previous gaps):\n"
                f"{format_clarifications(clarifications)}"
            )
        return self.wrap(prompt)

    def business_analysis(self, clarifications: list[ClarificationEntry]) -> str:
        prompt = (
            f"Analyze the PRD at {self.state('prd.md')} for missing or unclear BUSINESS "
            "requirements.\n\n"
            f"Read the task description from {self.state('task.md')} for context."
        )
        if clarifications:
            prompt += (
                "\n\nExisting business clarifications (check if these resolve previous gaps):\n"
                f"{format_business_clarifications(clarifications)}"
            )
        return self.wrap(prompt)

    def first_question(self, question: Question, *, has_business_clarifications: bool) -> str:
        prompt = (
            f"Read the PRD at {self.state('prd.md')}.\n"
            f"Read the task description at {self.state('task.md')}."
        )
        if has_business_clarifications:
            prompt += (
                "\nRead the business clarifications at "
                f"{self.state('business-clarifications.json')}."
            )
        prompt += (
            "\n\nYou will be answering technical clarification questions about this project "
            "ONE AT A TIME.\nEach follow-up question will arrive via --resume. Keep your "
            "codebase exploration in mind\nfor future questions.\n\n"
            "Answer this question:\n"
            f"Question: {question.question}\n"
            f"Reason it was asked: {question.reason}"
        )
        return self.wrap(prompt)

    def follow_up_question(self, question: Question) -> str:
        return self.wrap(
            "Answer this next question using your existing knowledge of the codebase\n"
            "(explore further if needed):\n\n"
            f"Question: {question.question}\n"
            f"Reason it was asked: {question.reason}"
        )

    def planner(self) -> str:
        build = (
            f"\nBuild commands for this project: {', '.join(self.build_commands)}"
            if self.build_commands
            else ""
        )
        return self.wrap(
            f"Read the PRD at {self.state('prd.md')}.\n"
            "Explore the codebase structure to understand the project.\n"
            f"{build}\n\n"
            "Divide the work into sequential assignments. Each assignment should be roughly "
            "one commit's worth of work.\n"
            "Ensure assignments don't have circular dependencies.\n"
            "Order them so later assignments can build on earlier ones.\n"
            "Each assignment should be self-contained enough that an independent agent can "
            "implement it with only the PRD and assignment description as context."
        )

    def microplan(
        self, assignment: Assignment, previous_verification: dict[str, Any] | None = None
    ) -> str:
        prompt = (
            f"Read the PRD at {self.state('prd.md')}.\n\n"
            f'You are planning the implementation for assignment "{assignment.id}":\n'
            f"Title: {assignment.title}\n"
            f"Description: {assignment.description}\n"
            f"Estimated files: {', '.join(assignment.estimated_files)}\n"
            f"Dependencies: {', '.join(assignment.depends_on) or 'none'}\n\n"
            "Read the relevant source files in the project directory and produce a concrete "
            "step-by-step coding plan."
        )
        if previous_verification and not previous_verification.get("passed", False):
            lines = ["\n\nPREVIOUS VERIFICATION FAILED. Issues to address:"]
            for issue in previous_verification.get("issues", []):
                lines.append(
                    f"- [{issue.get('severity')}] {issue.get('file')}: {issue.get('description')}"
                )
            prompt += "\n".join(lines) + "\n"
            build_output = previous_verification.get("buildOutput")
            if build_output:
                prompt += f"\nBuild output:\n{build_output[:BUILD_OUTPUT_LIMIT]}\n"
        return self.wrap(prompt)

    def implementer(self, assignment: Assignment) -> str:
        build = (
            f"\nBuild commands available: {', '.join(self.build_commands)}"
            if self.build_commands
            else ""
        )
        return self.wrap(
            f"Read the PRD at {self.state('prd.md')}.\n"
            f"Read the microplan at {self.state(f'assignments/{assignment.id}/microplan.json')}.\n\n"
            f'You are implementing assignment "{assignment.id}":\n'
            f"Title: {assignment.title}\n"
            f"Description: {assignment.description}\n"
            f"{build}\n\n"
            "Follow the microplan step by step. Write clean, well-documented code.\n"
            "Do NOT modify files outside this assignment's scope.\n"
            "All code changes MUST be made in the project directory "
            "(see PROJECT DIRECTORY above)."
        )

    def verifier(self, assignment: Assignment, changed_files: list[str]) -> str:
        prompt = (
            f'You are verifying assignment "{assignment.id}":\n'
            f"Title: {assignment.title}\n"
            f"Description: {assignment.description}\n\n"
            f"Read the PRD at {self.state('prd.md')}.\n"
            "Read the implementation changes record at "
            f"{self.state(f'assignments/{assignment.id}/changes.json')}.\n\n"
            f"Changed files to review: {', '.join(changed_files)}\n\n"
            "Compare the implementation against the assignment requirements."
        )
        if self.build_commands:
            prompt += f"\n\nRun these build commands to verify:\n{self._build_command_list()}"
        return self.wrap(prompt)

    def final_verifier(self) -> str:
        prompt = (
            f"Read the PRD at {self.state('prd.md')}.\n"
            "Run `git diff` in the project directory to see all changes made during this "
            "pipeline run.\n"
            "Verify that each requirement in the PRD is addressed by the implementation."
        )
        if self.build_commands:
            prompt += f"\n\nRun these build commands:\n{self._build_command_list()}"
        prompt += (
            "\n\nIf all requirements are met and builds pass, set passed=true and suggest a "
            "conventional commit message.\n"
            "If not, set passed=false, provide specific feedback and list unmet requirements."
        )
        return self.wrap(prompt)
