from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Literal

from conductor.workflow.taxonomy import FAILURE_ACTIONS, FAILURE_KINDS

ReviewMode = Literal["single-pass", "iterative"]
ExecutionMode = Literal["auto", "checkpoint", "batch"]
ValidationCadence = Literal["every", "every-N", "on-demand"]

CONFIG_FILENAME = "conductor.toml"
REVIEW_MODES = ("single-pass", "iterative")
EXECUTION_MODES = ("auto", "checkpoint", "batch")
VALIDATION_CADENCES = ("every", "every-N", "on-demand")
DEFAULT_AGENTS = [
    "planner",
    "architect",
    "implementer",
    "spec-reviewer",
    "quality-reviewer",
]


class ConfigError(RuntimeError):
    """Raised when the configuration file is malformed."""


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    test_command: str = ""
    validation_command: str = ""


@dataclass(slots=True)
class WorkflowConfig:
    review_mode: ReviewMode | None = None
    execution_mode: ExecutionMode | None = None
    batch_size: int | None = None
    max_plan_review_cycles: int = 3
    max_task_review_cycles: int = 3
    validation_cadence: ValidationCadence = "every"
    validation_interval: int = 3


@dataclass(slots=True)
class CostsConfig:
    warn_at_usd: float = 5.0
    hard_limit_usd: float = 20.0


@dataclass(slots=True)
class BackendConfig:
    binary: str = "claude"
    timeout_seconds: float = 900.0
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5


@dataclass(slots=True)
class AgentsConfig:
    enabled: list[str] = field(default_factory=lambda: list(DEFAULT_AGENTS))
    model: str = ""
    plans_dir: str = "docs/plans"


@dataclass(slots=True)
class ConductorConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    costs: CostsConfig = field(default_factory=CostsConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    failure_actions: dict[str, str] = field(default_factory=dict)

    @classmethod
    def default(cls) -> ConductorConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ConductorConfig:
        config = cls(
            project=_section(ProjectConfig, data, "project"),
            workflow=_section(WorkflowConfig, data, "workflow"),
            costs=_section(CostsConfig, data, "costs"),
            backend=_section(BackendConfig, data, "backend"),
            agents=_section(AgentsConfig, data, "agents"),
            failure_actions={
                str(key): str(value) for key, value in data.get("failure_actions", {}).items()
            },
        )
        config.validate()
        return config

    def validate(self) -> None:
        workflow = self.workflow
        if workflow.review_mode is not None and workflow.review_mode not in REVIEW_MODES:
            raise ConfigError(f"Unsupported review_mode: {workflow.review_mode}")
        if workflow.execution_mode is not None and workflow.execution_mode not in EXECUTION_MODES:
            raise ConfigError(f"Unsupported execution_mode: {workflow.execution_mode}")
        if workflow.validation_cadence not in VALIDATION_CADENCES:
            raise ConfigError(f"Unsupported validation_cadence: {workflow.validation_cadence}")
        if workflow.batch_size is not None and workflow.batch_size < 1:
            raise ConfigError("batch_size must be at least 1")
        if workflow.validation_interval < 1:
            raise ConfigError("validation_interval must be at least 1")
        if self.costs.hard_limit_usd <= 0:
            raise ConfigError("costs.hard_limit_usd must be positive")

        for kind, action in self.failure_actions.items():
            if kind not in FAILURE_KINDS:
                raise ConfigError(f"Unknown failure kind in [failure_actions]: {kind}")
            if action not in FAILURE_ACTIONS:
                raise ConfigError(f"Unknown failure action for {kind}: {action}")

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "test_command": self.project.test_command,
                "validation_command": self.project.validation_command,
            },
            "workflow": {
                "review_mode": self.workflow.review_mode,
                "execution_mode": self.workflow.execution_mode,
                "batch_size": self.workflow.batch_size,
                "max_plan_review_cycles": self.workflow.max_plan_review_cycles,
                "max_task_review_cycles": self.workflow.max_task_review_cycles,
                "validation_cadence": self.workflow.validation_cadence,
                "validation_interval": self.workflow.validation_interval,
            },
            "costs": {
                "warn_at_usd": self.costs.warn_at_usd,
                "hard_limit_usd": self.costs.hard_limit_usd,
            },
            "backend": {
                "binary": self.backend.binary,
                "timeout_seconds": self.backend.timeout_seconds,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
            },
            "agents": {
                "enabled": list(self.agents.enabled),
                "model": self.agents.model,
                "plans_dir": self.agents.plans_dir,
            },
            "failure_actions": dict(self.failure_actions),
        }


def _section(cls: type, data: dict, name: str) -> Any:
    payload = data.get(name, {})
    if not isinstance(payload, dict):
        raise ConfigError(f"[{name}] must be a table")
    known = {item.name for item in fields(cls)}
    unknown = sorted(set(payload) - known)
    if unknown:
        raise ConfigError(f"Unknown keys in [{name}]: {', '.join(unknown)}")
    return cls(**payload)


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        if rendered.endswith("."):
            rendered += "0"
        return rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ConductorConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "workflow", "costs", "backend", "agents", "failure_actions"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            # TOML has no null; unset options stay out of the file.
            if value is None:
                continue
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def find_config(start: Path) -> Path | None:
    current = start.resolve()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
    return None


def load_config(path: Path) -> ConductorConfig:
    if not path.exists():
        return ConductorConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    return ConductorConfig.from_dict(data)


def save_config(path: Path, config: ConductorConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
