from __future__ import annotations


class DoyakenError(RuntimeError):
    """Base error for engine failures surfaced to callers."""


class ConfigError(DoyakenError):
    """Raised when doyaken.toml holds an invalid value."""


class PromptNotFoundError(DoyakenError):
    """Raised when no prompt template resolves for a phase or skill."""


class StateError(DoyakenError):
    """Raised when persisted state cannot be read or written."""


class RunInterrupted(DoyakenError):
    """Raised when the operator interrupt flag is observed during a wait or invocation."""

    def __init__(self, message: str = "Run interrupted by operator.", *, where: str | None = None):
        super().__init__(message)
        self.where = where
