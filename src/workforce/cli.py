from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

import click

from workforce.backends import (
    CompletionBackend,
    OpenAIChatBackend,
    ResilientBackend,
    RetryPolicy,
)
from workforce.capabilities import CapabilityRegistry
from workforce.config import EXECUTION_MODES, WorkforceConfig, load_config, save_config
from workforce.coordinator import Coordinator, Reply
from workforce.models import Capability, PlanStateError
from workforce.operations import builtin_operations
from workforce.scheduler import Scheduler
from workforce.session import Session, SessionStore
from workforce.speculative import SpeculativeExecutor
from workforce.state import SnapshotStore, StateStoreError
from workforce.synthesizer import PlanSynthesizer
from workforce.workers import WorkerFactory

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(slots=True)
class Runtime:
    workspace_root: Path
    config_path: Path
    config: WorkforceConfig
    state: SnapshotStore
    registry: CapabilityRegistry
    sessions: SessionStore
    coordinator: Coordinator


def _resolve_config_path(workspace_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = workspace_root / config_path
    return config_path.resolve()


def _resolve_dir(workspace_root: Path, value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = workspace_root / path
    return path.resolve()


def _build_backend(config: WorkforceConfig, state: SnapshotStore) -> CompletionBackend:
    api_key = os.environ.get(config.backend.api_key_env) or None
    base_url = config.backend.base_url or None
    primary = OpenAIChatBackend(model=config.backend.model, base_url=base_url, api_key=api_key)
    fallback_model = config.backend.fallback_model.strip()
    fallback = (
        OpenAIChatBackend(model=fallback_model, base_url=base_url, api_key=api_key)
        if fallback_model
        else None
    )
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(
        primary_name=config.backend.model,
        primary_backend=primary,
        retry_policy=policy,
        fallback_name=fallback_model or None,
        fallback_backend=fallback,
        event_hook=state.record_backend_event,
    )


def _build_registry(config: WorkforceConfig, workspace_root: Path) -> CapabilityRegistry:
    try:
        registry = CapabilityRegistry.from_config(config.capabilities)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    registry.register_all(
        builtin_operations(_resolve_dir(workspace_root, config.capabilities.workspace))
    )
    return registry


def _configure_logging(config: WorkforceConfig) -> None:
    if logging.getLogger().level <= logging.DEBUG:
        return
    level = logging.getLevelName(config.logging.level.upper())
    if isinstance(level, int):
        logging.getLogger("workforce").setLevel(level)


def _load_runtime(workspace_root: Path, config_path: Path) -> Runtime:
    try:
        config = load_config(config_path)
    except ValueError as exc:
        raise click.ClickException(f"Invalid config {config_path}: {exc}") from exc
    _configure_logging(config)

    state = SnapshotStore(_resolve_dir(workspace_root, config.state.directory))
    backend = _build_backend(config, state)
    registry = _build_registry(config, workspace_root)
    factory = WorkerFactory(
        backend,
        registry,
        temperatures={Capability.CONVERSATION: config.planner.chat_temperature},
    )

    def _persist(session: Session) -> None:
        if config.state.snapshots:
            state.write_session(session)

    sessions = SessionStore(
        history_limit=config.session.history_limit,
        execution_mode=config.session.execution_mode,
        loader=lambda session_id: state.load_session(
            session_id, history_limit=config.session.history_limit
        ),
    )
    scheduler = Scheduler(
        factory,
        registry,
        max_parallel=config.scheduler.max_parallel_tasks,
        retry_ceiling=config.scheduler.task_retry_ceiling,
        retry_backoff_seconds=config.scheduler.task_retry_backoff_seconds,
        failure_budget=config.scheduler.step_failure_budget,
        worker_timeout_seconds=config.scheduler.worker_timeout_seconds,
        on_update=_persist,
    )
    coordinator = Coordinator(
        sessions,
        PlanSynthesizer(
            backend,
            registry=registry,
            temperature=config.planner.temperature,
            max_parse_attempts=config.planner.max_parse_attempts,
            fast_path=config.planner.fast_path,
        ),
        scheduler,
        SpeculativeExecutor(factory, enabled=config.session.speculation),
        registry,
        on_change=_persist,
        on_run=lambda session, run: state.record_run(session.id, run),
    )
    return Runtime(
        workspace_root=workspace_root,
        config_path=config_path,
        config=config,
        state=state,
        registry=registry,
        sessions=sessions,
        coordinator=coordinator,
    )


def _echo_reply(reply: Reply, as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps(reply.to_dict(), ensure_ascii=False, indent=2))
        return
    click.echo(reply.content)


session_option = click.option("--session", "session_id", default="default", show_default=True)
config_option = click.option(
    "--config", "config_value", default="workforce.toml", show_default=True
)


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Log debug output to stderr.")
def cli(verbose: bool) -> None:
    """Workforce: plan, approve and run multi-step tasks from a conversation."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING, format=LOG_FORMAT)


@cli.command("init")
@click.option("--model", default=None, help="Completion model to configure.")
@click.option("--base-url", default=None, help="OpenAI-compatible endpoint, e.g. a local server.")
@config_option
def init_command(model: str | None, base_url: str | None, config_value: str) -> None:
    workspace_root = Path.cwd().resolve()
    config_path = _resolve_config_path(workspace_root, config_value)
    try:
        config = load_config(config_path)
    except ValueError as exc:
        raise click.ClickException(f"Invalid config {config_path}: {exc}") from exc
    if model:
        config.backend.model = model
    if base_url is not None:
        config.backend.base_url = base_url
    save_config(config_path, config)
    state_dir = _resolve_dir(workspace_root, config.state.directory)
    SnapshotStore(state_dir)

    click.echo(f"Initialized workforce in {workspace_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Model: {config.backend.model}")
    click.echo(f"State: {state_dir}")


@cli.command("chat")
@click.argument("message")
@session_option
@config_option
@click.option("--json", "as_json", is_flag=True, default=False)
def chat_command(message: str, session_id: str, config_value: str, as_json: bool) -> None:
    workspace_root = Path.cwd().resolve()
    runtime = _load_runtime(workspace_root, _resolve_config_path(workspace_root, config_value))
    try:
        reply = asyncio.run(runtime.coordinator.handle_message(session_id, message))
    except StateStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_reply(reply, as_json)


@cli.command("approve")
@session_option
@config_option
@click.option("--json", "as_json", is_flag=True, default=False)
def approve_command(session_id: str, config_value: str, as_json: bool) -> None:
    workspace_root = Path.cwd().resolve()
    runtime = _load_runtime(workspace_root, _resolve_config_path(workspace_root, config_value))
    try:
        reply = asyncio.run(runtime.coordinator.approve(session_id))
    except StateStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_reply(reply, as_json)
    if reply.kind == "error":
        raise SystemExit(1)


@cli.command("status")
@session_option
@config_option
def status_command(session_id: str, config_value: str) -> None:
    workspace_root = Path.cwd().resolve()
    runtime = _load_runtime(workspace_root, _resolve_config_path(workspace_root, config_value))
    try:
        payload = runtime.coordinator.inspect(session_id)
    except StateStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("mode")
@click.argument("mode", type=click.Choice(list(EXECUTION_MODES)))
@session_option
@config_option
def mode_command(mode: str, session_id: str, config_value: str) -> None:
    workspace_root = Path.cwd().resolve()
    runtime = _load_runtime(workspace_root, _resolve_config_path(workspace_root, config_value))
    try:
        session = runtime.sessions.get_or_create(session_id)
        session.set_execution_mode(mode)
        runtime.state.write_session(session)
    except (PlanStateError, StateStoreError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Execution mode for session '{session_id}' set to {mode}.")
