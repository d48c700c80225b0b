from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

CONTEXT_LINE_CAP = 200


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class PhaseOutcome(StrEnum):
    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    FATAL_TIMEOUT = "fatal_timeout"
    FATAL_ERROR = "fatal_error"
    INTERRUPTED = "interrupted"


class RunResult(StrEnum):
    COMPLETED = "completed"
    NEEDS_HUMAN_INPUT = "needs_human_input"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


class PhaseStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    RESUMED = "resumed"
    FAILED = "failed"
    NEEDS_HUMAN_INPUT = "needs_human_input"
    INTERRUPTED = "interrupted"


@dataclass(slots=True, frozen=True)
class Task:
    id: str
    prompt: str


@dataclass(slots=True, frozen=True)
class QualityGates:
    """Shell command per gate slot; an empty string disables the slot."""

    build: str = ""
    lint: str = ""
    format: str = ""
    test: str = ""

    def configured(self) -> list[tuple[str, str]]:
        slots = [
            ("build", self.build),
            ("lint", self.lint),
            ("format", self.format),
            ("test", self.test),
        ]
        return [(name, command.strip()) for name, command in slots if command.strip()]


@dataclass(slots=True, frozen=True)
class Phase:
    name: str
    order_index: int
    prompt_template: str
    timeout_seconds: float
    skip: bool = False
    verification_retry_budget: int = 3
    quality: QualityGates | None = None


@dataclass(slots=True)
class PhaseAttemptRecord:
    phase_name: str
    attempt_number: int
    verification_attempt_number: int
    started_at: str = field(default_factory=_utcnow_iso)
    ended_at: str | None = None
    outcome: PhaseOutcome | None = None
    log_ref: str | None = None
    model: str | None = None

    @property
    def is_open(self) -> bool:
        return self.ended_at is None

    def close(self, outcome: PhaseOutcome) -> None:
        if self.ended_at is not None:
            raise RuntimeError(
                f"Attempt {self.phase_name}#{self.attempt_number} is already closed."
            )
        self.outcome = outcome
        self.ended_at = _utcnow_iso()

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["outcome"] = str(self.outcome) if self.outcome else None
        return payload


@dataclass(slots=True)
class ContextEntry:
    phase: str
    attempt: int
    text: str

    def line_count(self) -> int:
        return len(self.text.splitlines())


class AccumulatedContext:
    """Failure excerpts fed back into the next verification attempt.

    The total line count never exceeds ``cap``; whole entries are evicted
    oldest first, and a single entry larger than the cap keeps its tail.
    """

    def __init__(self, cap: int = CONTEXT_LINE_CAP) -> None:
        if cap < 1:
            raise ValueError("context cap must be positive")
        self.cap = cap
        self.entries: list[ContextEntry] = []

    def __len__(self) -> int:
        return sum(entry.line_count() for entry in self.entries)

    def __bool__(self) -> bool:
        return bool(self.entries)

    def append(self, phase: str, attempt: int, text: str) -> None:
        lines = text.strip("\n").splitlines()
        if not lines:
            return
        if len(lines) > self.cap:
            lines = lines[-self.cap :]
        self.entries.append(ContextEntry(phase=phase, attempt=attempt, text="\n".join(lines)))
        while len(self) > self.cap:
            self.entries.pop(0)

    def clear(self) -> None:
        self.entries.clear()

    def render(self) -> str:
        blocks = [
            f"### {entry.phase} (verification attempt {entry.attempt})\n{entry.text}"
            for entry in self.entries
        ]
        return "\n\n".join(blocks)


@dataclass(slots=True)
class ModelFallbackState:
    default_model: str
    current_model: str = ""
    fallback_triggered: bool = False

    def __post_init__(self) -> None:
        if not self.current_model:
            self.current_model = self.default_model

    def fall_back_to(self, model: str) -> None:
        self.current_model = model
        self.fallback_triggered = True

    def reset(self) -> None:
        self.current_model = self.default_model
        self.fallback_triggered = False


@dataclass(slots=True, frozen=True)
class ConfidenceSignals:
    status_block_present: bool = False
    phase_complete: bool = False
    tests_status: str = ""
    diff_present: bool = False
    task_artifact_relocated: bool = False
    keywords_present: bool = False


@dataclass(slots=True)
class PhaseState:
    phase: Phase
    status: PhaseStatus = PhaseStatus.PENDING
    invocation_attempts: int = 0
    verification_attempts: int = 0
    last_output: str = ""
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.name,
            "index": self.phase.order_index,
            "status": str(self.status),
            "invocation_attempts": self.invocation_attempts,
            "verification_attempts": self.verification_attempts,
            "reason": self.reason,
        }


@dataclass(slots=True)
class RunReport:
    task_id: str
    result: RunResult
    reason: str = ""
    started_at: str = field(default_factory=_utcnow_iso)
    ended_at: str | None = None
    phases: list[PhaseState] = field(default_factory=list)
    attempts: list[PhaseAttemptRecord] = field(default_factory=list)
    confidence: dict[str, Any] | None = None
    model: str | None = None

    def phase(self, name: str) -> PhaseState | None:
        for state in self.phases:
            if state.phase.name == name:
                return state
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "result": str(self.result),
            "reason": self.reason,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "phases": [state.to_dict() for state in self.phases],
            "attempts": [record.to_dict() for record in self.attempts],
            "confidence": self.confidence,
            "model": self.model,
        }
