from __future__ import annotations

import logging
from collections.abc import Callable
from enum import StrEnum

import click

from doyaken.models import Phase, Task

logger = logging.getLogger("doyaken.approval")

PLAN_PHASE = "plan"


class AutonomyMode(StrEnum):
    FULL_AUTO = "full-auto"
    SUPERVISED = "supervised"
    PLAN_ONLY = "plan-only"


class ApprovalDecision(StrEnum):
    CONTINUE = "continue"
    PAUSE = "pause"
    SKIP_NEXT = "skip-next"
    ABORT = "abort"


ApprovalGate = Callable[[Phase, Task, Phase | None], ApprovalDecision]

_CHOICES = {
    "y": ApprovalDecision.CONTINUE,
    "n": ApprovalDecision.PAUSE,
    "s": ApprovalDecision.SKIP_NEXT,
    "a": ApprovalDecision.ABORT,
}


def requires_approval(mode: AutonomyMode, phase: Phase) -> bool:
    if mode == AutonomyMode.SUPERVISED:
        return True
    if mode == AutonomyMode.PLAN_ONLY:
        return phase.name == PLAN_PHASE
    return False


def console_approval(phase: Phase, task: Task, next_phase: Phase | None) -> ApprovalDecision:
    """Ask the operator on the terminal whether to continue after ``phase``."""
    click.echo("")
    click.secho(f"Phase completed: {phase.name} ({task.id})", bold=True)
    plan_review = phase.name == PLAN_PHASE
    if plan_review:
        click.echo("Review the plan above before implementation starts.")
    click.echo("  [Y] Continue to next phase")
    click.echo("  [n] Pause (resume later with `doyaken run`)")
    if next_phase is not None and not plan_review:
        click.echo(f"  [s] Skip next phase ({next_phase.name})")
    click.echo("  [a] Abort task execution")
    allowed = ["y", "n", "a"] if plan_review or next_phase is None else ["y", "n", "s", "a"]
    choice = click.prompt(
        "Continue?",
        type=click.Choice(allowed, case_sensitive=False),
        default="y",
        show_choices=True,
    )
    decision = _CHOICES[choice.lower()]
    logger.info("Approval after %s: %s", phase.name, decision)
    return decision
