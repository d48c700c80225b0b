from __future__ import annotations

import logging
import os
import re
import shlex
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

from doyaken.backends.process import run_process
from doyaken.errors import RunInterrupted
from doyaken.interrupts import InterruptFlag
from doyaken.models import AccumulatedContext, Phase, PhaseOutcome, QualityGates, Task

logger = logging.getLogger("doyaken.gates")

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
SAFE_QUALITY_COMMANDS = frozenset(
    {
        "npm", "yarn", "pnpm", "npx", "bun", "cargo", "go", "make", "pytest", "python",
        "python3", "uv", "ruff", "mypy", "black", "flake8", "pylint", "jest", "eslint", "tsc",
        "prettier", "vitest", "mocha", "shellcheck", "bats", "node", "deno", "php", "composer",
        "ruby", "rake", "bundle", "gradle", "mvn", "dotnet",
    }
)  # fmt: skip
DANGEROUS_COMMAND_PATTERNS = (
    "|", "$(", "`", "&&", "||", ";", ">", "<", "curl ", "wget ", "nc ", "bash -c", "sh -c",
    "eval ", "/dev/", "~/", "../",
)  # fmt: skip
OUTPUT_TAIL_CHARS = 4000
EventHook = Callable[[dict[str, Any]], None]


class CommandSafety(StrEnum):
    SAFE = "safe"
    SUSPICIOUS = "suspicious"
    DANGEROUS = "dangerous"


def validate_quality_command(command: str) -> CommandSafety:
    text = command.strip()
    if not text:
        return CommandSafety.SAFE
    if any(pattern in text for pattern in DANGEROUS_COMMAND_PATTERNS):
        return CommandSafety.DANGEROUS
    base = os.path.basename(text.split()[0])
    if base not in SAFE_QUALITY_COMMANDS:
        return CommandSafety.SUSPICIOUS
    return CommandSafety.SAFE


def sanitize_gates(gates: QualityGates, *, strict: bool = False) -> QualityGates:
    """Warn about unusual gate commands and drop dangerous ones when ``strict`` is set."""
    kept: dict[str, str] = {}
    for name, command in (
        ("build", gates.build),
        ("lint", gates.lint),
        ("format", gates.format),
        ("test", gates.test),
    ):
        safety = validate_quality_command(command)
        if safety == CommandSafety.SUSPICIOUS:
            logger.warning(
                "Suspicious quality.%s_command: %r (unknown command prefix)", name, command
            )
        elif safety == CommandSafety.DANGEROUS:
            logger.warning(
                "Dangerous quality.%s_command: %r (contains shell pattern)", name, command
            )
            if strict:
                logger.warning("Blocking quality.%s_command in strict mode", name)
                command = ""
        kept[name] = command
    return QualityGates(**kept)


@dataclass(slots=True)
class GateCheck:
    name: str
    command: str
    exit_code: int | None
    output_tail: str
    duration_seconds: float
    used_shell: bool
    timed_out: bool = False

    @property
    def passed(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "command": self.command,
            "exit_code": self.exit_code,
            "passed": self.passed,
            "timed_out": self.timed_out,
            "duration_seconds": round(self.duration_seconds, 3),
            "used_shell": self.used_shell,
        }


@dataclass(slots=True)
class GateReport:
    checks: list[GateCheck] = field(default_factory=list)

    @property
    def evaluated(self) -> int:
        return len(self.checks)

    @property
    def passed(self) -> bool:
        return all(check.passed for check in self.checks)

    @property
    def failures(self) -> list[GateCheck]:
        return [check for check in self.checks if not check.passed]

    def failure_text(self) -> str:
        blocks: list[str] = []
        for check in self.failures:
            status = "timed out" if check.timed_out else f"exit code {check.exit_code}"
            header = f"[{check.name}] `{check.command}` failed ({status})"
            blocks.append(f"{header}\n{check.output_tail}")
        return "\n\n".join(blocks)


class PhaseVerdict(StrEnum):
    PASSED = "passed"
    NEEDS_HUMAN_INPUT = "needs_human_input"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    INTERRUPTED = "interrupted"


@dataclass(slots=True)
class InvocationOutcome:
    outcome: PhaseOutcome
    output: str = ""
    reason: str = ""


@dataclass(slots=True)
class PhaseGateResult:
    verdict: PhaseVerdict
    verification_attempts: int
    output: str = ""
    reason: str = ""
    reports: list[GateReport] = field(default_factory=list)


InvokeFn = Callable[[Phase, Task, int, AccumulatedContext], Awaitable[InvocationOutcome]]

_OUTCOME_VERDICTS = {
    PhaseOutcome.FATAL_TIMEOUT: PhaseVerdict.TIMED_OUT,
    PhaseOutcome.INTERRUPTED: PhaseVerdict.INTERRUPTED,
}


class VerificationGateRunner:
    def __init__(
        self,
        gates: QualityGates,
        *,
        repo_root: Path,
        gate_timeout_seconds: float = 300.0,
        log_dir: Path | None = None,
        interrupt: InterruptFlag | None = None,
        event_hook: EventHook | None = None,
    ) -> None:
        self.gates = gates
        self.repo_root = repo_root
        self.gate_timeout_seconds = gate_timeout_seconds
        self.log_dir = log_dir
        self.interrupt = interrupt
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _run_gate(self, name: str, command: str, log_path: Path | None) -> GateCheck:
        used_shell = bool(SHELL_REQUIRED_PATTERN.search(command))
        payload: str | list[str] = command
        if not used_shell:
            try:
                payload = shlex.split(command)
            except ValueError:
                used_shell = True
                payload = command

        try:
            result = await run_process(
                payload,
                cwd=self.repo_root,
                log_path=log_path,
                timeout_seconds=self.gate_timeout_seconds,
                interrupt=self.interrupt,
            )
        except FileNotFoundError as exc:
            return GateCheck(
                name=name,
                command=command,
                exit_code=127,
                output_tail=str(exc),
                duration_seconds=0.0,
                used_shell=used_shell,
            )
        if result.interrupted:
            raise RunInterrupted(where=f"{name} gate")
        output_tail = result.output.strip()[-OUTPUT_TAIL_CHARS:]
        if result.timed_out:
            output_tail = (
                f"{output_tail}\nGate timed out after {self.gate_timeout_seconds:.0f}s"
            ).strip()
        return GateCheck(
            name=name,
            command=command,
            exit_code=result.exit_code,
            output_tail=output_tail,
            duration_seconds=result.duration_seconds,
            used_shell=used_shell,
            timed_out=result.timed_out,
        )

    async def run_gates(self, gates: QualityGates | None = None, *, label: str = "") -> GateReport:
        """Run every configured gate in order; empty slots are skipped and not counted."""
        report = GateReport()
        for name, command in (gates or self.gates).configured():
            log_path = None
            if self.log_dir is not None:
                log_path = self.log_dir / f"{label or 'gates'}-{name}.log"
            check = await self._run_gate(name, command, log_path)
            report.checks.append(check)
            if check.passed:
                logger.info("Gate %s passed (%.1fs)", name, check.duration_seconds)
            else:
                logger.warning("Gate %s failed with exit code %s", name, check.exit_code)
        return report

    async def run_phase_with_gates(
        self,
        phase: Phase,
        task: Task,
        invoke: InvokeFn,
        context: AccumulatedContext,
    ) -> PhaseGateResult:
        budget = max(1, phase.verification_retry_budget)
        gates = phase.quality or self.gates
        reports: list[GateReport] = []
        output = ""
        for attempt in range(1, budget + 1):
            try:
                outcome = await invoke(phase, task, attempt, context)
            except RunInterrupted as exc:
                return PhaseGateResult(
                    PhaseVerdict.INTERRUPTED, attempt, output, str(exc), reports
                )
            output = outcome.output
            if outcome.outcome != PhaseOutcome.SUCCESS:
                verdict = _OUTCOME_VERDICTS.get(outcome.outcome, PhaseVerdict.FAILED)
                return PhaseGateResult(verdict, attempt, output, outcome.reason, reports)

            try:
                report = await self.run_gates(gates, label=f"{phase.name}-v{attempt}")
            except RunInterrupted as exc:
                return PhaseGateResult(
                    PhaseVerdict.INTERRUPTED, attempt, output, str(exc), reports
                )
            reports.append(report)
            self._emit(
                {
                    "event": "verification_result",
                    "task_id": task.id,
                    "phase": phase.name,
                    "verification_attempt": attempt,
                    "gates_evaluated": report.evaluated,
                    "passed": report.passed,
                    "failed_gates": [check.name for check in report.failures],
                }
            )
            if report.passed:
                return PhaseGateResult(PhaseVerdict.PASSED, attempt, output, "", reports)

            context.append(phase.name, attempt, report.failure_text())
            if attempt < budget:
                logger.warning(
                    "Phase %s verification %d/%d failed (%s); retrying with failure context",
                    phase.name,
                    attempt,
                    budget,
                    ", ".join(check.name for check in report.failures),
                )

        reason = f"quality gates still failing after {budget} verification attempts"
        logger.warning("Phase %s needs human input: %s", phase.name, reason)
        return PhaseGateResult(PhaseVerdict.NEEDS_HUMAN_INPUT, budget, output, reason, reports)
