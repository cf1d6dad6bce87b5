from __future__ import annotations

import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import TextIO

from loguru import logger

CONSOLE_FORMAT = (
    "<dim>{time:HH:mm:ss}</dim> <level>{level: <7}</level> {message}"
)


def configure_logging(level: str = "INFO", *, sink: TextIO | None = None) -> None:
    logger.remove()
    logger.add(sink or sys.stderr, level=level.upper(), format=CONSOLE_FORMAT, colorize=None)


def generate_invocation_id() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%dT%H-%M-%S-%f")


class AgentLog:
    """Append-only transcript of one agent invocation's diagnostic stream."""

    def __init__(self, log_dir: Path | None, agent: str, invocation_id: str) -> None:
        self.agent = agent
        self.invocation_id = invocation_id
        self.path: Path | None = None
        self._handle: TextIO | None = None
        if log_dir is not None:
            log_dir.mkdir(parents=True, exist_ok=True)
            self.path = log_dir / f"{invocation_id}-{agent}.log"
            self._handle = self.path.open("a", encoding="utf-8")

    def write(self, text: str) -> None:
        if self._handle is not None:
            self._handle.write(text)
            self._handle.flush()

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None

    def __enter__(self) -> AgentLog:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
