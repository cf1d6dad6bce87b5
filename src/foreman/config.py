from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_TIMEOUT_MINUTES = 30.0
INHERIT_MODEL = "inherit"

AGENT_KIND_NAMES = (
    "prd-generator",
    "prd-analyzer",
    "business-analyzer",
    "clarification-answerer",
    "planner",
    "microplanner",
    "implementer",
    "verifier",
    "final-verifier",
)


@dataclass(slots=True)
class AgentSettings:
    model: str = INHERIT_MODEL
    max_turns: int = 50
    max_budget_usd: float | None = None


def _default_agent_settings() -> dict[str, AgentSettings]:
    defaults = {name: AgentSettings() for name in AGENT_KIND_NAMES}
    defaults["implementer"].max_turns = 200
    defaults["clarification-answerer"].max_turns = 30
    return defaults


@dataclass(slots=True)
class RunnerConfig:
    binary: str = "claude"
    timeout_minutes: float = DEFAULT_TIMEOUT_MINUTES
    kill_grace_seconds: float = 5.0
    heartbeat_seconds: float = 60.0
    max_retries: int = 4
    retry_backoff_seconds: float = 0.0
    state_dir: str = ".foreman/state"
    log_dir: str = ".foreman/logs"

    @property
    def timeout_seconds(self) -> float:
        if self.timeout_minutes > 0:
            return self.timeout_minutes * 60.0
        return DEFAULT_TIMEOUT_MINUTES * 60.0


@dataclass(slots=True)
class LimitsConfig:
    max_business_clarification_rounds: int = 2
    max_clarification_rounds: int = 3
    max_questions_per_answerer_instance: int = 5
    max_implementation_iterations: int = 3
    max_pipeline_retries: int = 2


@dataclass(slots=True)
class PipelineSettings:
    default_mode: str = "interactive"
    build_commands: list[str] = field(default_factory=list)
    project_context: str = ""


@dataclass(slots=True)
class ForemanConfig:
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    agents: dict[str, AgentSettings] = field(default_factory=_default_agent_settings)

    @classmethod
    def default(cls) -> ForemanConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ForemanConfig:
        agents = _default_agent_settings()
        for name, values in data.get("agents", {}).items():
            agents[name] = AgentSettings(**values)
        return cls(
            runner=RunnerConfig(**data.get("runner", {})),
            limits=LimitsConfig(**data.get("limits", {})),
            pipeline=PipelineSettings(**data.get("pipeline", {})),
            agents=agents,
        )

    def to_dict(self) -> dict:
        agents: dict[str, dict] = {}
        for name, settings in self.agents.items():
            entry: dict[str, object] = {"model": settings.model, "max_turns": settings.max_turns}
            if settings.max_budget_usd is not None:
                entry["max_budget_usd"] = settings.max_budget_usd
            agents[name] = entry
        return {
            "runner": {
                "binary": self.runner.binary,
                "timeout_minutes": self.runner.timeout_minutes,
                "kill_grace_seconds": self.runner.kill_grace_seconds,
                "heartbeat_seconds": self.runner.heartbeat_seconds,
                "max_retries": self.runner.max_retries,
                "retry_backoff_seconds": self.runner.retry_backoff_seconds,
                "state_dir": self.runner.state_dir,
                "log_dir": self.runner.log_dir,
            },
            "limits": {
                "max_business_clarification_rounds": (
                    self.limits.max_business_clarification_rounds
                ),
                "max_clarification_rounds": self.limits.max_clarification_rounds,
                "max_questions_per_answerer_instance": (
                    self.limits.max_questions_per_answerer_instance
                ),
                "max_implementation_iterations": self.limits.max_implementation_iterations,
                "max_pipeline_retries": self.limits.max_pipeline_retries,
            },
            "pipeline": {
                "default_mode": self.pipeline.default_mode,
                "build_commands": list(self.pipeline.build_commands),
                "project_context": self.pipeline.project_context,
            },
            "agents": agents,
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ForemanConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("runner", "limits", "pipeline"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    for name, values in data["agents"].items():
        lines.append(f'[agents."{name}"]')
        for key, value in values.items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ForemanConfig:
    if not path.exists():
        return ForemanConfig.default()
    return ForemanConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: ForemanConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
