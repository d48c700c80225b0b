from __future__ import annotations

import re
from collections.abc import Callable
from enum import StrEnum

TRANSIENT_PATTERN = re.compile(
    r"rate.?limit|overloaded|\b429\b|\b502\b|\b503\b|\b504\b|capacity|quota",
    re.IGNORECASE,
)
TIMEOUT_EXIT_CODE = 124


class ErrorClass(StrEnum):
    RETRYABLE = "retryable"
    FATAL = "fatal"
    NONE = "none"


Classifier = Callable[[str, int | None], ErrorClass]


def classify_output(output: str, exit_code: int | None = None) -> ErrorClass:
    """Classify a failed invocation from its output and exit code."""
    if exit_code == TIMEOUT_EXIT_CODE:
        return ErrorClass.FATAL
    if TRANSIENT_PATTERN.search(output or ""):
        return ErrorClass.RETRYABLE
    return ErrorClass.NONE
