from __future__ import annotations

import json
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Literal

ExecutionMode = Literal["manual", "disabled"]
EXECUTION_MODES: tuple[str, ...] = ("manual", "disabled")


@dataclass(slots=True)
class BackendConfig:
    model: str = "gpt-4o-mini"
    base_url: str = ""
    api_key_env: str = "OPENAI_API_KEY"
    fallback_model: str = ""
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0


@dataclass(slots=True)
class PlannerConfig:
    temperature: float = 0.2
    chat_temperature: float = 0.7
    max_parse_attempts: int = 2
    fast_path: bool = True


@dataclass(slots=True)
class SchedulerConfig:
    max_parallel_tasks: int = 3
    task_retry_ceiling: int = 2
    task_retry_backoff_seconds: float = 0.5
    step_failure_budget: int = 3
    worker_timeout_seconds: float = 30.0


@dataclass(slots=True)
class SessionConfig:
    history_limit: int = 20
    execution_mode: ExecutionMode = "manual"
    speculation: bool = True


@dataclass(slots=True)
class CapabilitiesConfig:
    requires_confirmation: list[str] = field(default_factory=lambda: ["file", "shell", "code"])
    concurrent: list[str] = field(default_factory=lambda: ["conversation", "web"])
    disabled: list[str] = field(default_factory=list)
    workspace: str = "."


@dataclass(slots=True)
class StateConfig:
    directory: str = ".workforce/state"
    snapshots: bool = True


@dataclass(slots=True)
class LoggingConfig:
    level: str = "WARNING"


SECTION_ORDER: tuple[str, ...] = (
    "backend",
    "planner",
    "scheduler",
    "session",
    "capabilities",
    "state",
    "logging",
)


@dataclass(slots=True)
class WorkforceConfig:
    backend: BackendConfig = field(default_factory=BackendConfig)
    planner: PlannerConfig = field(default_factory=PlannerConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    capabilities: CapabilitiesConfig = field(default_factory=CapabilitiesConfig)
    state: StateConfig = field(default_factory=StateConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> WorkforceConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkforceConfig:
        config = cls(
            backend=BackendConfig(**data.get("backend", {})),
            planner=PlannerConfig(**data.get("planner", {})),
            scheduler=SchedulerConfig(**data.get("scheduler", {})),
            session=SessionConfig(**data.get("session", {})),
            capabilities=CapabilitiesConfig(**data.get("capabilities", {})),
            state=StateConfig(**data.get("state", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )
        if config.session.execution_mode not in EXECUTION_MODES:
            raise ValueError(
                f"Unsupported execution mode: {config.session.execution_mode!r} "
                f"(expected one of {', '.join(EXECUTION_MODES)})"
            )
        return config

    def to_dict(self) -> dict[str, dict[str, Any]]:
        return {section: asdict(getattr(self, section)) for section in SECTION_ORDER}


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: WorkforceConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in SECTION_ORDER:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> WorkforceConfig:
    if not path.exists():
        return WorkforceConfig.default()
    return WorkforceConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: WorkforceConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
