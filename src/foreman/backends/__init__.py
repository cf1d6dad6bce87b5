from foreman.backends.base import AgentBackend, ProcessResult
from foreman.backends.claude import ClaudeCodeBackend

__all__ = ["AgentBackend", "ClaudeCodeBackend", "ProcessResult"]
