from __future__ import annotations


class ForemanError(RuntimeError):
    """Base class for every failure surfaced by the orchestrator."""


class AgentExecutionError(ForemanError):
    """Raised when a single agent attempt fails."""

    def __init__(
        self,
        message: str,
        *,
        agent: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.agent = agent
        self.exit_code = exit_code
        self.retriable = retriable


class AgentTimeoutError(AgentExecutionError):
    """Raised when an agent process exceeds its wall-clock timeout."""


class AgentProcessError(AgentExecutionError):
    """Raised when the agent process cannot be spawned."""


class AgentOutputError(AgentExecutionError):
    """Raised when the agent response envelope or payload is unusable."""


class AgentStoppedError(AgentExecutionError):
    """Raised when an agent process was terminated by a hard stop."""


class AgentRetriesExhaustedError(ForemanError):
    def __init__(self, agent: str, attempts: int, last_error: Exception | None) -> None:
        detail = str(last_error) if last_error is not None else "unknown error"
        super().__init__(f"Agent {agent} failed after {attempts} attempt(s): {detail}")
        self.agent = agent
        self.attempts = attempts
        self.last_error = last_error


class AssignmentFailedError(ForemanError):
    def __init__(self, assignment_id: str, attempts: int, detail: str = "") -> None:
        message = f"Assignment {assignment_id} failed verification after {attempts} attempt(s)"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.assignment_id = assignment_id
        self.attempts = attempts


class PipelineExhaustedError(ForemanError):
    def __init__(self, iterations: int, feedback: str) -> None:
        super().__init__(
            f"Final verification failed after {iterations} pipeline iteration(s): {feedback}"
        )
        self.iterations = iterations
        self.feedback = feedback


class PipelinePaused(ForemanError):
    """Raised when a soft pause is honored at a phase boundary."""

    def __init__(self, phase: str) -> None:
        super().__init__(f"Pipeline paused at phase {phase}")
        self.phase = phase


class PreconditionError(ForemanError):
    """Raised when an operation cannot start from the persisted state."""


class InvalidTransitionError(ForemanError):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Illegal phase transition: {current} -> {target}")
        self.current = current
        self.target = target


class StateStoreError(ForemanError):
    """Raised when a persisted state document cannot be read."""
