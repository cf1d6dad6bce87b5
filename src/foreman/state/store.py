from __future__ import annotations

import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any

from foreman.errors import StateStoreError

DEFAULT_STATE_DIR = ".foreman/state"


class StateStore:
    """Key-path documents under ``<workspace>/<state_dir>``.

    Keys are slash-separated relative paths such as ``plan.json`` or
    ``assignments/a-1/changes.json``. JSON documents are stored raw because the
    agents read them directly from disk.
    """

    def __init__(self, workspace: Path, state_dir: str = DEFAULT_STATE_DIR) -> None:
        self.workspace = workspace.resolve()
        self.state_dir = state_dir
        self.root = self.workspace / state_dir

    def path(self, key: str) -> Path:
        candidate = (self.root / key).resolve()
        if candidate != self.root and self.root not in candidate.parents:
            raise StateStoreError(f"State key escapes the state directory: {key}")
        return candidate

    def relpath(self, key: str) -> str:
        return f"{self.state_dir.rstrip('/')}/{key}"

    def read_json(self, key: str) -> Any:
        target = self.path(key)
        if not target.exists():
            return None
        try:
            return json.loads(target.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StateStoreError(f"Invalid JSON in state document {key}: {exc}") from exc

    def write_json(self, key: str, payload: Any) -> None:
        self._atomic_write(key, json.dumps(payload, ensure_ascii=False, indent=2) + "\n")

    def read_text(self, key: str) -> str | None:
        target = self.path(key)
        if not target.exists():
            return None
        return target.read_text(encoding="utf-8")

    def write_text(self, key: str, content: str) -> None:
        self._atomic_write(key, content)

    def ensure_dir(self, key: str) -> Path:
        target = self.path(key)
        target.mkdir(parents=True, exist_ok=True)
        return target

    def reset(self) -> None:
        if self.root.exists():
            shutil.rmtree(self.root)

    def _atomic_write(self, key: str, content: str) -> None:
        target = self.path(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
