from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from doyaken.approval import ApprovalDecision, ApprovalGate, requires_approval
from doyaken.backends.base import (
    AgentBackend,
    AgentRequest,
    BackendExecutionError,
    BackendInterruptedError,
    BackendTimeoutError,
)
from doyaken.backends.classify import (
    TIMEOUT_EXIT_CODE,
    Classifier,
    ErrorClass,
    classify_output,
)
from doyaken.backends.registry import AgentSpec
from doyaken.circuit_breaker import CircuitBreaker
from doyaken.confidence import ConfidenceScorer, collect_signals
from doyaken.errors import PromptNotFoundError, RunInterrupted
from doyaken.gates import InvocationOutcome, InvokeFn, PhaseVerdict, VerificationGateRunner
from doyaken.hooks import SkillHooks
from doyaken.interrupts import InterruptFlag, SleepFn, interruptible_sleep
from doyaken.models import (
    AccumulatedContext,
    ModelFallbackState,
    Phase,
    PhaseAttemptRecord,
    PhaseOutcome,
    PhaseState,
    PhaseStatus,
    RunReport,
    RunResult,
    Task,
    _utcnow_iso,
)
from doyaken.monitor import LivenessMonitor
from doyaken.pipeline import PipelineConfig
from doyaken.prompts import PromptLibrary
from doyaken.rate_limiter import RateLimiter
from doyaken.state.checkpoints import CheckpointStore
from doyaken.vcs import GitChangeDetector

logger = logging.getLogger("doyaken.orchestrator")

UNSAFE_PATH_CHARS = re.compile(r"[^A-Za-z0-9._-]+")

EventHook = Callable[[dict[str, Any]], None]
TaskDoneProbe = Callable[[str], bool]


class PhaseOrchestrator:
    """Runs one task through the phase pipeline.

    Every invocation attempt passes the circuit breaker and the rate limiter,
    runs under a liveness monitor, and is wrapped by the verification gate
    runner. Phases run strictly in order; the resume checkpoint is written
    after a phase's after-hooks finish and cleared when the task completes.
    """

    def __init__(
        self,
        pipeline: PipelineConfig,
        backend: AgentBackend,
        *,
        repo_root: Path,
        prompts: PromptLibrary,
        agent_id: str | None = None,
        spec: AgentSpec | None = None,
        model: str | None = None,
        gate_runner: VerificationGateRunner | None = None,
        breaker: CircuitBreaker | None = None,
        rate_limiter: RateLimiter | None = None,
        scorer: ConfidenceScorer | None = None,
        checkpoints: CheckpointStore | None = None,
        hooks: SkillHooks | None = None,
        approval: ApprovalGate | None = None,
        change_detector: GitChangeDetector | None = None,
        task_done_probe: TaskDoneProbe | None = None,
        classifier: Classifier = classify_output,
        interrupt: InterruptFlag | None = None,
        logs_dir: Path | None = None,
        event_hook: EventHook | None = None,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.pipeline = pipeline
        self.backend = backend
        self.repo_root = repo_root
        self.prompts = prompts
        self.agent_id = agent_id or backend.name
        self.spec = spec
        self.interrupt = interrupt or InterruptFlag()
        self.event_hook = event_hook
        self.gate_runner = gate_runner or VerificationGateRunner(
            pipeline.quality,
            repo_root=repo_root,
            gate_timeout_seconds=pipeline.gate_timeout_seconds,
            log_dir=logs_dir,
            interrupt=self.interrupt,
            event_hook=event_hook,
        )
        self.breaker = breaker
        self.rate_limiter = rate_limiter
        self.scorer = scorer or ConfidenceScorer()
        self.checkpoints = checkpoints
        self.hooks = hooks
        if self.hooks is not None and self.hooks.runner is None:
            self.hooks.runner = self.run_skill
        self.approval = approval
        self.change_detector = change_detector
        self.task_done_probe = task_done_probe
        self.classifier = classifier
        self.logs_dir = logs_dir
        self.sleep = sleep
        self.clock = clock

        default_model = model or (spec.default_model if spec else "")
        self.fallback = ModelFallbackState(default_model=default_model)
        self.attempts: list[PhaseAttemptRecord] = []
        self._open_attempt: PhaseAttemptRecord | None = None
        self._last_task_id: str | None = None

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _phase_event(self, event: str, phase: Phase, **fields: Any) -> None:
        self._emit({"event": event, "phase": phase.name, **fields})

    def _check_interrupt(self, where: str) -> None:
        self.interrupt.raise_if_set(where)

    # Attempt records

    def _open_record(
        self, phase: Phase, attempt: int, verification_attempt: int
    ) -> PhaseAttemptRecord:
        if self._open_attempt is not None:
            raise RuntimeError(
                f"Attempt {self._open_attempt.phase_name}#{self._open_attempt.attempt_number} "
                f"is still open; cannot start {phase.name}#{attempt}"
            )
        record = PhaseAttemptRecord(
            phase_name=phase.name,
            attempt_number=attempt,
            verification_attempt_number=verification_attempt,
            model=self.fallback.current_model or None,
        )
        self._open_attempt = record
        self.attempts.append(record)
        return record

    def _close_record(self, outcome: PhaseOutcome) -> None:
        record = self._open_attempt
        if record is None:
            return
        record.close(outcome)
        self._open_attempt = None
        self._emit(
            {
                "event": "attempt_finished",
                "phase": record.phase_name,
                "attempt": record.attempt_number,
                "verification_attempt": record.verification_attempt_number,
                "outcome": str(outcome),
                "model": record.model,
            }
        )

    # Invocation

    def _log_path(self, task: Task, phase: Phase, verification: int, attempt: int) -> Path | None:
        if self.logs_dir is None:
            return None
        safe_task = UNSAFE_PATH_CHARS.sub("-", task.id).strip("-") or "task"
        name = f"{phase.order_index}-{phase.name}-v{verification}-a{attempt}.log"
        return self.logs_dir / safe_task / name

    def _variables(self, task: Task, phase: Phase) -> dict[str, str]:
        recent = ""
        if self.change_detector is not None:
            recent = self.change_detector.recent_commits(task.id)
        return {
            "TASK_ID": task.id,
            "TASK_PROMPT": task.prompt,
            "RECENT_COMMITS": recent or "(none)",
            "AGENT_ID": self.agent_id,
            "PHASE": phase.name,
        }

    def render_prompt(self, phase: Phase, task: Task, context: AccumulatedContext) -> str:
        return self.prompts.render(
            phase.prompt_template,
            self._variables(task, phase),
            context=context.render() if context else "",
        )

    async def _await_breaker(self, phase: Phase) -> None:
        if self.breaker is None:
            return
        while not self.breaker.should_proceed():
            remaining = self.breaker.cooldown_remaining()
            logger.warning(
                "Circuit breaker open before %s; waiting %.0fs for cooldown", phase.name, remaining
            )
            self._emit(
                {
                    "event": "circuit_wait",
                    "phase": phase.name,
                    "cooldown_remaining_seconds": round(remaining, 1),
                }
            )
            await interruptible_sleep(
                max(remaining, 1.0),
                self.interrupt,
                sleep=self.sleep,
                clock=self.clock,
                where=f"circuit breaker cooldown before {phase.name}",
            )

    def _fall_back(self, phase: Phase) -> None:
        current = self.fallback.current_model
        if self.pipeline.no_fallback or self.spec is None:
            logger.info("Model fallback disabled; retrying %s on %s", phase.name, current)
            return
        next_model = self.spec.next_fallback(current)
        if next_model is None:
            logger.warning("Already at floor model %s; no fallback available", current)
            self._emit({"event": "model_fallback_refused", "phase": phase.name, "model": current})
            return
        self.fallback.fall_back_to(next_model)
        logger.warning("Falling back from %s to %s for %s", current, next_model, phase.name)
        self._emit(
            {
                "event": "model_fallback",
                "phase": phase.name,
                "from": current,
                "to": next_model,
            }
        )

    def _invoker(self, state: PhaseState) -> InvokeFn:
        async def _invoke(
            phase: Phase, task: Task, verification_attempt: int, context: AccumulatedContext
        ) -> InvocationOutcome:
            prompt = self.render_prompt(phase, task, context)
            max_attempts = max(1, self.pipeline.max_attempts)
            last_error = ""
            last_output = ""
            for attempt in range(1, max_attempts + 1):
                await self._await_breaker(phase)
                if self.rate_limiter is not None:
                    await self.rate_limiter.check(phase.name, self.interrupt)
                self._check_interrupt(f"before invoking {phase.name}")

                record = self._open_record(phase, attempt, verification_attempt)
                state.invocation_attempts += 1
                if self.rate_limiter is not None:
                    self.rate_limiter.record()
                log_path = self._log_path(task, phase, verification_attempt, attempt)
                if log_path is not None:
                    record.log_ref = str(log_path)
                logger.info(
                    "Phase %s: attempt %d/%d, verification %d/%d, model %s",
                    phase.name,
                    attempt,
                    max_attempts,
                    verification_attempt,
                    phase.verification_retry_budget,
                    self.fallback.current_model or "default",
                )
                self._emit(
                    {
                        "event": "attempt_started",
                        "task_id": task.id,
                        "phase": phase.name,
                        "attempt": attempt,
                        "verification_attempt": verification_attempt,
                        "model": self.fallback.current_model,
                    }
                )
                request = AgentRequest(
                    prompt=prompt,
                    phase_name=phase.name,
                    model=self.fallback.current_model,
                    timeout_seconds=phase.timeout_seconds,
                    log_path=log_path,
                )
                monitor = LivenessMonitor(
                    phase.name,
                    log_path,
                    timeout_seconds=phase.timeout_seconds,
                    interval_seconds=self.pipeline.monitor_interval_seconds,
                    stall_threshold_seconds=self.pipeline.stall_threshold_seconds,
                    event_hook=self.event_hook,
                )
                try:
                    async with monitor:
                        result = await self.backend.execute(request, self.interrupt)
                except BackendInterruptedError as exc:
                    self._close_record(PhaseOutcome.INTERRUPTED)
                    raise RunInterrupted(where=f"{phase.name} invocation") from exc
                except BackendTimeoutError as exc:
                    self._close_record(PhaseOutcome.FATAL_TIMEOUT)
                    logger.error("Phase %s timed out; not retrying", phase.name)
                    return InvocationOutcome(PhaseOutcome.FATAL_TIMEOUT, exc.output, str(exc))
                except BackendExecutionError as exc:
                    last_output = exc.output
                    last_error = str(exc)
                    error_class = self.classifier(exc.output or str(exc), exc.exit_code)
                    if exc.exit_code == TIMEOUT_EXIT_CODE:
                        self._close_record(PhaseOutcome.FATAL_TIMEOUT)
                        return InvocationOutcome(PhaseOutcome.FATAL_TIMEOUT, exc.output, last_error)
                    if not exc.retriable or error_class == ErrorClass.FATAL:
                        self._close_record(PhaseOutcome.FATAL_ERROR)
                        logger.error("Phase %s failed fatally: %s", phase.name, exc)
                        return InvocationOutcome(PhaseOutcome.FATAL_ERROR, exc.output, last_error)
                    self._close_record(PhaseOutcome.RETRYABLE_FAILURE)
                    if attempt >= max_attempts:
                        break
                    delay = self.pipeline.retry_delay_seconds * attempt
                    logger.warning(
                        "Phase %s attempt %d failed (%s, %s); retrying in %.0fs",
                        phase.name,
                        attempt,
                        exc,
                        error_class,
                        delay,
                    )
                    self._emit(
                        {
                            "event": "backend_retry",
                            "phase": phase.name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                            "error": last_error,
                            "classification": str(error_class),
                        }
                    )
                    await interruptible_sleep(
                        delay,
                        self.interrupt,
                        sleep=self.sleep,
                        clock=self.clock,
                        where=f"retry backoff for {phase.name}",
                    )
                    if error_class == ErrorClass.RETRYABLE:
                        self._fall_back(phase)
                    continue

                self._close_record(PhaseOutcome.SUCCESS)
                return InvocationOutcome(PhaseOutcome.SUCCESS, result.output)

            reason = f"{phase.name} failed after {max_attempts} attempts: {last_error}"
            logger.error(reason)
            return InvocationOutcome(PhaseOutcome.RETRYABLE_FAILURE, last_output, reason)

        return _invoke

    async def run_skill(self, skill: str, phase: Phase, task: Task) -> None:
        """Run a skill prompt through the agent once, outside the verification loop."""
        prompt = self.prompts.render(f"skills/{skill}.md", self._variables(task, phase))
        if self.rate_limiter is not None:
            await self.rate_limiter.check(f"{phase.name}:{skill}", self.interrupt)
            self.rate_limiter.record()
        request = AgentRequest(
            prompt=prompt,
            phase_name=f"{phase.name}:{skill}",
            model=self.fallback.current_model,
            timeout_seconds=phase.timeout_seconds,
            log_path=self._log_path(task, phase, 0, 0),
        )
        try:
            await self.backend.execute(request, self.interrupt)
        except BackendInterruptedError as exc:
            raise RunInterrupted(where=f"skill {skill}") from exc

    # Run

    def _next_runnable(self, states: list[PhaseState], position: int) -> Phase | None:
        for candidate in states[position + 1 :]:
            if candidate.status == PhaseStatus.PENDING and not candidate.phase.skip:
                return candidate.phase
        return None

    def _finish(
        self,
        report: RunReport,
        result: RunResult,
        reason: str = "",
        output: str = "",
    ) -> RunReport:
        report.result = result
        report.reason = reason
        report.ended_at = _utcnow_iso()
        report.attempts = list(self.attempts)
        report.model = self.fallback.current_model or None

        if self.breaker is not None and result != RunResult.INTERRUPTED:
            if result == RunResult.COMPLETED:
                has_changes = (
                    self.change_detector.has_changes() if self.change_detector else True
                )
                self.breaker.record_iteration(success=True, output=output, has_changes=has_changes)
            else:
                self.breaker.record_iteration(success=False, output=output or reason)

        log = logger.info if result == RunResult.COMPLETED else logger.warning
        log("Task %s finished: %s%s", report.task_id, result, f" ({reason})" if reason else "")
        self._emit(
            {
                "event": "run_finished",
                "task_id": report.task_id,
                "result": str(result),
                "reason": reason,
                "attempts": len(report.attempts),
            }
        )
        return report

    def _complete(self, task: Task, report: RunReport, output: str) -> RunReport:
        has_changes = self.change_detector.has_changes() if self.change_detector else False
        relocated = self.task_done_probe(task.id) if self.task_done_probe else False
        signals = collect_signals(
            output, diff_present=has_changes, task_artifact_relocated=relocated
        )
        assessment = self.scorer.evaluate(signals)
        report.confidence = assessment.to_dict()
        self._emit({"event": "confidence_evaluated", "task_id": task.id, **assessment.to_dict()})
        if not assessment.high_confidence:
            logger.warning(
                "Task %s completed with low confidence (%d/%d)",
                task.id,
                assessment.score,
                assessment.threshold,
            )

        finished = self._finish(report, RunResult.COMPLETED, output=output)
        if self.fallback.fallback_triggered:
            logger.info("Resetting model to %s", self.fallback.default_model)
        self.fallback.reset()
        if self.checkpoints is not None:
            self.checkpoints.clear()
        return finished

    async def run(self, task: Task, *, resume: bool = True) -> RunReport:
        if self._last_task_id != task.id:
            self.scorer.reset()
            self._last_task_id = task.id
        self.attempts = []
        self._open_attempt = None

        states = [PhaseState(phase=phase) for phase in self.pipeline.phases]
        report = RunReport(task_id=task.id, result=RunResult.COMPLETED, phases=states)
        context = AccumulatedContext(self.pipeline.context_line_cap)

        resume_index = -1
        if resume and self.checkpoints is not None:
            checkpoint = self.checkpoints.load(task.id)
            if checkpoint is not None:
                resume_index = checkpoint.last_completed_phase_index
                logger.info(
                    "Resuming %s after phase %s", task.id, checkpoint.last_completed_phase_name
                )
        self._emit({"event": "run_started", "task_id": task.id, "resume_after": resume_index})

        last_output = ""
        skip_next = False
        current: PhaseState | None = None
        try:
            for position, state in enumerate(states):
                phase = state.phase
                if phase.order_index <= resume_index:
                    state.status = PhaseStatus.RESUMED
                    self._emit({"event": "phase_resumed", "phase": phase.name})
                    continue
                if phase.skip or skip_next:
                    state.status = PhaseStatus.SKIPPED
                    if phase.skip:
                        state.reason = "skipped by config"
                    else:
                        state.reason = "skipped by operator"
                        skip_next = False
                    logger.info("Skipping phase %s (%s)", phase.name, state.reason)
                    self._phase_event("phase_skipped", phase, reason=state.reason)
                    continue

                self._check_interrupt(f"before {phase.name}")
                current = state
                state.status = PhaseStatus.RUNNING
                logger.info("Phase %s (%d/%d) started", phase.name, position + 1, len(states))
                self._emit({"event": "phase_started", "task_id": task.id, "phase": phase.name})

                if self.hooks is not None:
                    await self.hooks.run("before", phase, task)
                    self._check_interrupt(f"after {phase.name} before-hooks")

                result = await self.gate_runner.run_phase_with_gates(
                    phase, task, self._invoker(state), context
                )
                state.verification_attempts = result.verification_attempts
                state.last_output = result.output
                if result.verdict == PhaseVerdict.INTERRUPTED:
                    raise RunInterrupted(result.reason or "Run interrupted by operator.")
                if result.verdict == PhaseVerdict.NEEDS_HUMAN_INPUT:
                    state.status = PhaseStatus.NEEDS_HUMAN_INPUT
                    state.reason = result.reason
                    self._phase_event("phase_failed", phase, reason=result.reason)
                    return self._finish(
                        report, RunResult.NEEDS_HUMAN_INPUT, f"{phase.name}: {result.reason}",
                        context.render(),
                    )
                if result.verdict != PhaseVerdict.PASSED:
                    state.status = PhaseStatus.FAILED
                    state.reason = result.reason
                    self._phase_event("phase_failed", phase, reason=result.reason)
                    return self._finish(
                        report, RunResult.FAILED, f"{phase.name}: {result.reason}", result.output
                    )
                last_output = result.output or last_output
                self._check_interrupt(f"after {phase.name}")

                if self.hooks is not None:
                    await self.hooks.run("after", phase, task)
                if self.checkpoints is not None:
                    self.checkpoints.save(task.id, phase.order_index, phase.name)
                state.status = PhaseStatus.COMPLETED
                current = None
                logger.info(
                    "Phase %s completed after %d verification attempt(s)",
                    phase.name,
                    state.verification_attempts,
                )
                self._emit(
                    {
                        "event": "phase_completed",
                        "task_id": task.id,
                        "phase": phase.name,
                        "verification_attempts": state.verification_attempts,
                    }
                )
                self._check_interrupt(f"after {phase.name} checkpoint")

                if self.approval is not None and requires_approval(
                    self.pipeline.approval_mode, phase
                ):
                    decision = self.approval(phase, task, self._next_runnable(states, position))
                    self._phase_event("approval_decision", phase, decision=str(decision))
                    if decision == ApprovalDecision.PAUSE:
                        return self._finish(
                            report, RunResult.NEEDS_HUMAN_INPUT, f"paused after {phase.name}"
                        )
                    if decision == ApprovalDecision.ABORT:
                        return self._finish(
                            report, RunResult.INTERRUPTED, f"aborted after {phase.name}"
                        )
                    if decision == ApprovalDecision.SKIP_NEXT:
                        skip_next = True
        except RunInterrupted as exc:
            if self._open_attempt is not None:
                self._close_record(PhaseOutcome.INTERRUPTED)
            if current is not None:
                current.status = PhaseStatus.INTERRUPTED
                current.reason = exc.where or str(exc)
            return self._finish(report, RunResult.INTERRUPTED, exc.where or str(exc))
        except PromptNotFoundError as exc:
            if current is not None:
                current.status = PhaseStatus.FAILED
                current.reason = str(exc)
            return self._finish(report, RunResult.FAILED, str(exc))

        return self._complete(task, report, last_output)
