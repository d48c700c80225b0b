from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from doyaken.interrupts import InterruptFlag


class BackendExecutionError(RuntimeError):
    """Raised when an agent invocation fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
        output: str = "",
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable
        self.output = output


class BackendTimeoutError(BackendExecutionError):
    """Raised when an invocation exceeds its phase timeout. Never retried."""

    def __init__(self, message: str, **kwargs) -> None:
        kwargs["retriable"] = False
        super().__init__(message, **kwargs)


class BackendProcessError(BackendExecutionError):
    """Raised when the backend process cannot be started."""


class BackendInterruptedError(BackendExecutionError):
    """Raised when the operator interrupt stops an invocation."""

    def __init__(self, message: str, **kwargs) -> None:
        kwargs["retriable"] = False
        super().__init__(message, **kwargs)


@dataclass(slots=True, frozen=True)
class AgentRequest:
    prompt: str
    phase_name: str
    model: str
    timeout_seconds: float
    log_path: Path | None = None


@dataclass(slots=True, frozen=True)
class AgentResult:
    output: str
    exit_code: int
    duration_seconds: float
    model: str
    log_ref: str | None = None


class AgentBackend(ABC):
    name: str = "agent"

    @abstractmethod
    async def execute(
        self,
        request: AgentRequest,
        interrupt: InterruptFlag | None = None,
    ) -> AgentResult:
        """Run one agent invocation to completion and return its combined output."""
