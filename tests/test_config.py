import tomllib
from pathlib import Path

from foreman import __version__
from foreman.config import (
    DEFAULT_TIMEOUT_MINUTES,
    AgentSettings,
    ForemanConfig,
    dumps_toml,
    load_config,
    save_config,
)


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "foreman.toml"
    config = ForemanConfig.default()
    config.runner.binary = "/opt/bin/claude"
    config.runner.timeout_minutes = 45.0
    config.runner.max_retries = 2
    config.limits.max_clarification_rounds = 5
    config.limits.max_questions_per_answerer_instance = 3
    config.pipeline.default_mode = "autonomous"
    config.pipeline.build_commands = ["npm run build", "npm test"]
    config.pipeline.project_context = 'Monorepo with "apps" and "libs"'
    config.agents["planner"] = AgentSettings(model="opus", max_turns=80, max_budget_usd=4.5)

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.runner.binary == "/opt/bin/claude"
    assert loaded.runner.timeout_minutes == 45.0
    assert loaded.runner.max_retries == 2
    assert loaded.limits.max_clarification_rounds == 5
    assert loaded.limits.max_questions_per_answerer_instance == 3
    assert loaded.pipeline.default_mode == "autonomous"
    assert loaded.pipeline.build_commands == ["npm run build", "npm test"]
    assert loaded.pipeline.project_context == 'Monorepo with "apps" and "libs"'
    assert loaded.agents["planner"] == AgentSettings(model="opus", max_turns=80, max_budget_usd=4.5)
    assert loaded.agents["implementer"].max_turns == 200


def test_missing_config_file_uses_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.toml")

    assert config.runner.max_retries == 4
    assert config.runner.kill_grace_seconds == 5.0
    assert config.limits.max_implementation_iterations == 3
    assert config.agents["clarification-answerer"].max_turns == 30
    assert config.agents["verifier"].model == "inherit"


def test_toml_dump_contains_sections() -> None:
    rendered = dumps_toml(ForemanConfig.default())

    assert "[runner]" in rendered
    assert "[limits]" in rendered
    assert "[pipeline]" in rendered
    assert '[agents."final-verifier"]' in rendered
    assert "max_pipeline_retries" in rendered
    assert "max_budget_usd" not in rendered


def test_non_positive_timeout_falls_back_to_default() -> None:
    config = ForemanConfig.default()
    config.runner.timeout_minutes = 0

    assert config.runner.timeout_seconds == DEFAULT_TIMEOUT_MINUTES * 60.0


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
