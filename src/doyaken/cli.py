from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

import click

from doyaken.approval import AutonomyMode, console_approval
from doyaken.backends import AGENTS, AgentSpec, CLIAgentBackend, validate_agent
from doyaken.circuit_breaker import CircuitBreaker
from doyaken.config import APPROVAL_MODES, DoyakenConfig, load_config, save_config
from doyaken.confidence import ConfidenceScorer, task_in_done
from doyaken.errors import DoyakenError
from doyaken.hooks import SkillHooks
from doyaken.interrupts import InterruptFlag, install_signal_handlers
from doyaken.models import RunResult, Task, _utcnow_iso
from doyaken.orchestrator import EventHook, PhaseOrchestrator
from doyaken.pipeline import build_pipeline
from doyaken.prompts import PromptLibrary
from doyaken.rate_limiter import RateLimiter
from doyaken.state import CheckpointStore, StateStore
from doyaken.vcs import GitChangeDetector

EVENTS_NAMESPACE = "events"
RUNS_NAMESPACE = "runs"
EVENT_HISTORY_LIMIT = 500
RUN_HISTORY_LIMIT = 50

EXIT_CODES = {
    RunResult.COMPLETED: 0,
    RunResult.FAILED: 1,
    RunResult.NEEDS_HUMAN_INPUT: 2,
    RunResult.INTERRUPTED: 130,
}


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: DoyakenConfig
    state: StateStore
    spec: AgentSpec
    model: str
    breaker: CircuitBreaker
    rate_limiter: RateLimiter
    checkpoints: CheckpointStore
    interrupt: InterruptFlag
    orchestrator: PhaseOrchestrator


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _resolve_dir(repo_root: Path, value: str) -> Path:
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = repo_root / path
    return path


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _record_event(state: StateStore, event: dict[str, Any]) -> None:
    payload = dict(event)
    payload["at"] = _utcnow_iso()
    state.append_capped(EVENTS_NAMESPACE, payload, limit=EVENT_HISTORY_LIMIT)


def _derive_task_id(prompt: str) -> str:
    digest = hashlib.sha1(prompt.strip().encode("utf-8")).hexdigest()
    return f"task-{digest[:10]}"


def _build_breaker(
    config: DoyakenConfig, state: StateStore, agent_id: str, hook: EventHook
) -> CircuitBreaker:
    settings = config.circuit_breaker
    return CircuitBreaker(
        state,
        agent_id,
        enabled=settings.enabled,
        no_progress_threshold=settings.no_progress_threshold,
        same_error_threshold=settings.same_error_threshold,
        output_decline_percent=settings.output_decline_percent,
        cooldown_seconds=settings.cooldown_minutes * 60,
        event_hook=hook,
    )


def _build_rate_limiter(
    config: DoyakenConfig, state: StateStore, agent_id: str, hook: EventHook
) -> RateLimiter:
    return RateLimiter(
        state,
        agent_id,
        calls_per_hour=config.rate_limit.calls_per_hour,
        warning_threshold=config.rate_limit.warning_threshold,
        enabled=config.rate_limit.enabled,
        event_hook=hook,
    )


def _load_runtime(
    repo_root: Path,
    config_path: Path,
    *,
    agent: str | None = None,
    model: str | None = None,
    approval: str | None = None,
) -> Runtime:
    config = load_config(config_path)
    if agent:
        config.agent.name = agent
    if model:
        config.agent.model = model
    if approval:
        config.approval.mode = approval
        config.validate()

    spec = validate_agent(config.agent.name, config.agent.model or None)
    resolved_model = config.agent.model or spec.default_model
    paths = config.paths
    state = StateStore(_resolve_dir(repo_root, paths.state_dir))
    tasks_dir = _resolve_dir(repo_root, paths.tasks_dir)
    interrupt = InterruptFlag()

    def hook(event: dict[str, Any]) -> None:
        _record_event(state, event)

    breaker = _build_breaker(config, state, spec.name, hook)
    rate_limiter = _build_rate_limiter(config, state, spec.name, hook)
    checkpoints = CheckpointStore(state, spec.name)
    pipeline = build_pipeline(config)
    backend = CLIAgentBackend(
        spec,
        working_directory=repo_root,
        verbose=config.agent.verbose,
        extra_args=config.agent.extra_args,
    )
    orchestrator = PhaseOrchestrator(
        pipeline,
        backend,
        repo_root=repo_root,
        prompts=PromptLibrary(
            _resolve_dir(repo_root, paths.prompts_dir),
            _resolve_dir(repo_root, paths.global_prompts_dir),
        ),
        agent_id=spec.name,
        spec=spec,
        model=resolved_model,
        breaker=breaker,
        rate_limiter=rate_limiter,
        scorer=ConfidenceScorer(
            threshold=config.exit_detection.confidence_threshold,
            low_confidence_warn=config.exit_detection.low_confidence_warn,
        ),
        checkpoints=checkpoints,
        hooks=SkillHooks(config.hooks.before, config.hooks.after, event_hook=hook),
        approval=None if pipeline.approval_mode == AutonomyMode.FULL_AUTO else console_approval,
        change_detector=GitChangeDetector(repo_root),
        task_done_probe=lambda task_id: task_in_done(tasks_dir, task_id),
        interrupt=interrupt,
        logs_dir=_resolve_dir(repo_root, paths.logs_dir),
        event_hook=hook,
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        state=state,
        spec=spec,
        model=resolved_model,
        breaker=breaker,
        rate_limiter=rate_limiter,
        checkpoints=checkpoints,
        interrupt=interrupt,
        orchestrator=orchestrator,
    )


@click.group()
def cli() -> None:
    """Doyaken: run coding agents through a verified phase pipeline."""


@cli.command("init")
@click.option("--agent", type=click.Choice(list(AGENTS)), default=None)
@click.option("--config", "config_value", default="doyaken.toml", show_default=True)
def init_command(agent: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    try:
        config = load_config(config_path)
    except DoyakenError as exc:
        raise click.ClickException(str(exc)) from exc
    if agent:
        config.agent.name = agent
    save_config(config_path, config)

    for value in (
        config.paths.state_dir,
        config.paths.logs_dir,
        config.paths.prompts_dir,
        config.paths.tasks_dir,
    ):
        _resolve_dir(repo_root, value).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized Doyaken in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Agent: {config.agent.name}")


@cli.command("run")
@click.argument("prompt")
@click.option("--task-id", default=None, help="Stable id used for resume and commit lookup.")
@click.option("--agent", type=click.Choice(list(AGENTS)), default=None)
@click.option("--model", default=None)
@click.option("--approval", type=click.Choice(list(APPROVAL_MODES)), default=None)
@click.option("--fresh", is_flag=True, default=False, help="Ignore any resume checkpoint.")
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default="doyaken.toml", show_default=True)
@click.pass_context
def run_command(
    ctx: click.Context,
    prompt: str,
    task_id: str | None,
    agent: str | None,
    model: str | None,
    approval: str | None,
    fresh: bool,
    verbose: bool,
    config_value: str,
) -> None:
    _configure_logging(verbose)
    repo_root = Path.cwd().resolve()
    try:
        runtime = _load_runtime(
            repo_root,
            _resolve_config_path(repo_root, config_value),
            agent=agent,
            model=model,
            approval=approval,
        )
    except DoyakenError as exc:
        raise click.ClickException(str(exc)) from exc

    if not runtime.spec.installed():
        hint = " or ".join(runtime.spec.install_hint)
        raise click.ClickException(
            f"{runtime.spec.executable} not found on PATH. Install with: {hint}"
        )

    task = Task(id=task_id or _derive_task_id(prompt), prompt=prompt)
    if fresh:
        runtime.checkpoints.clear()
    with install_signal_handlers(runtime.interrupt):
        try:
            report = asyncio.run(runtime.orchestrator.run(task, resume=not fresh))
        except DoyakenError as exc:
            raise click.ClickException(str(exc)) from exc
    runtime.state.append_capped(RUNS_NAMESPACE, report.to_dict(), limit=RUN_HISTORY_LIMIT)

    click.echo(f"Task: {report.task_id}")
    click.echo(f"Result: {report.result}")
    if report.reason:
        click.echo(f"Reason: {report.reason}")
    for state in report.phases:
        click.echo(
            f"  {state.phase.order_index} {state.phase.name:<10} {state.status:<18} "
            f"attempts={state.invocation_attempts} verifications={state.verification_attempts}"
        )
    if report.confidence:
        click.echo(
            f"Confidence: {report.confidence['score']}/{report.confidence['threshold']}"
        )
    ctx.exit(EXIT_CODES[report.result])


@cli.command("status")
@click.option("--agent", type=click.Choice(list(AGENTS)), default=None)
@click.option("--config", "config_value", default="doyaken.toml", show_default=True)
def status_command(agent: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    try:
        runtime = _load_runtime(
            repo_root, _resolve_config_path(repo_root, config_value), agent=agent
        )
    except DoyakenError as exc:
        raise click.ClickException(str(exc)) from exc
    checkpoint = runtime.checkpoints.load()
    runs = runtime.state.get_json(RUNS_NAMESPACE, default=[])
    payload = {
        "agent": runtime.spec.name,
        "model": runtime.model,
        "approval": runtime.config.approval.mode,
        "circuit_breaker": runtime.breaker.status(),
        "rate_limit": runtime.rate_limiter.usage(),
        "checkpoint": asdict(checkpoint) if checkpoint else None,
        "last_run": runs[-1] if isinstance(runs, list) and runs else None,
    }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("reset-breaker")
@click.option("--agent", type=click.Choice(list(AGENTS)), default=None)
@click.option("--config", "config_value", default="doyaken.toml", show_default=True)
def reset_breaker_command(agent: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    try:
        runtime = _load_runtime(
            repo_root, _resolve_config_path(repo_root, config_value), agent=agent
        )
    except DoyakenError as exc:
        raise click.ClickException(str(exc)) from exc
    runtime.breaker.reset()
    click.echo(f"Circuit breaker reset for {runtime.spec.name}")


@cli.command("agents")
def agents_command() -> None:
    for spec in AGENTS.values():
        marker = "installed" if spec.installed() else "missing"
        click.echo(f"{spec.name:<9} {marker:<9} default={spec.default_model}")
        click.echo(f"          models: {', '.join(spec.models)}")
        if not spec.installed():
            click.echo(f"          install: {' or '.join(spec.install_hint)}")
