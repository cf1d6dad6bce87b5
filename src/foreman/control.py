from __future__ import annotations

from typing import Any, Protocol

from loguru import logger


class ProcessHandle(Protocol):
    pid: int

    @property
    def returncode(self) -> int | None: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


class ControlPlane:
    """Pause/stop flags shared by the controller and the process supervisor.

    One instance is created per run and threaded explicitly into every component
    that spawns agent processes. The runner registers the live process at spawn
    time and clears it at exit, so a hard stop always signals the right process.
    """

    def __init__(self) -> None:
        self.pause_requested = False
        self.hard_stop_requested = False
        self._process: ProcessHandle | None = None

    @property
    def current_process(self) -> ProcessHandle | None:
        return self._process

    def reset(self) -> None:
        self.pause_requested = False
        self.hard_stop_requested = False
        self._process = None

    def clear_pause(self) -> None:
        self.pause_requested = False
        self.hard_stop_requested = False

    def request_soft_pause(self) -> None:
        self.pause_requested = True
        logger.info("Soft pause requested; the pipeline stops after the current agent call")

    def request_hard_stop(self) -> None:
        self.hard_stop_requested = True
        process = self._process
        if process is None or process.returncode is not None:
            logger.warning("Hard stop requested with no running agent process")
            return
        logger.warning("Hard stop requested; terminating agent process {}", process.pid)
        try:
            process.terminate()
        except ProcessLookupError:
            pass

    def register_process(self, process: ProcessHandle) -> None:
        # A stop requested while nothing was running has no process to apply to.
        self.hard_stop_requested = False
        self._process = process

    def clear_process(self, process: ProcessHandle) -> None:
        if self._process is process:
            self._process = None

    def acknowledge_hard_stop(self) -> bool:
        requested = self.hard_stop_requested
        self.hard_stop_requested = False
        return requested

    def snapshot(self) -> dict[str, Any]:
        process = self._process
        return {
            "pause_requested": self.pause_requested,
            "hard_stop_requested": self.hard_stop_requested,
            "agent_pid": process.pid if process is not None and process.returncode is None else None,
        }
