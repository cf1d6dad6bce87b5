from __future__ import annotations

import subprocess
from pathlib import Path

from loguru import logger

from foreman.errors import PreconditionError

IGNORED_STATUS_MARKERS = (".claude/", ".foreman/")


def _run_git(project_dir: Path, args: list[str]) -> subprocess.CompletedProcess[str]:
    try:
        return subprocess.run(
            ["git", "--no-pager", *args],
            cwd=project_dir,
            text=True,
            capture_output=True,
        )
    except FileNotFoundError as exc:
        raise PreconditionError("git executable not found on PATH") from exc


def uncommitted_changes(project_dir: Path) -> list[str]:
    proc = _run_git(project_dir, ["status", "--porcelain"])
    if proc.returncode != 0:
        raise PreconditionError(
            f"Failed to check git status in {project_dir}. Is it a git repository?"
        )
    return [
        line
        for line in proc.stdout.splitlines()
        if line.strip() and not any(marker in line for marker in IGNORED_STATUS_MARKERS)
    ]


def check_git_clean(project_dir: Path) -> list[str]:
    changes = uncommitted_changes(project_dir)
    if changes:
        logger.warning("Working tree has uncommitted changes:")
        for line in changes:
            logger.warning("  {}", line)
        logger.warning("Consider committing or stashing changes before running the pipeline.")
    return changes
