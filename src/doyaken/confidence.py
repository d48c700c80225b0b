from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from doyaken.models import ConfidenceSignals

logger = logging.getLogger("doyaken.confidence")

STATUS_MARKER = "DOYAKEN_STATUS:"
COMPLETION_KEYWORDS = re.compile(
    r"(all.*complete|implementation.*finished|task.*done"
    r"|tests.*pass(ing|ed)|successfully.*complet)",
    re.IGNORECASE,
)

POINTS = {
    "status_block": 30,
    "phase_complete": 20,
    "tests_pass": 5,
    "files_modified": 15,
    "task_in_done": 20,
    "keywords": 10,
}


@dataclass(slots=True)
class StatusBlock:
    fields: dict[str, str] = field(default_factory=dict)

    @property
    def phase_complete(self) -> bool:
        return self.fields.get("PHASE_COMPLETE", "").strip().lower() == "true"

    @property
    def tests_status(self) -> str:
        return self.fields.get("TESTS_STATUS", "").strip().lower()


def parse_status_block(output: str) -> StatusBlock | None:
    """Parse the first ``DOYAKEN_STATUS:`` block.

    The marker line is followed by indented ``KEY: value`` lines; the block
    ends at the first blank or unindented line.
    """
    lines = output.splitlines()
    for index, line in enumerate(lines):
        if STATUS_MARKER not in line:
            continue
        block = StatusBlock()
        for entry in lines[index + 1 :]:
            if not entry.strip() or not entry[0].isspace():
                break
            key, _, value = entry.strip().partition(":")
            block.fields[key.replace(" ", "")] = value.strip()
        return block
    return None


def has_completion_keywords(output: str) -> bool:
    return bool(COMPLETION_KEYWORDS.search(output))


def task_in_done(tasks_dir: Path | None, task_id: str) -> bool:
    if tasks_dir is None or not task_id:
        return False
    done_dir = tasks_dir / "4.done"
    if not done_dir.is_dir():
        return False
    return any(task_id in entry.name for entry in done_dir.iterdir())


def collect_signals(
    output: str, *, diff_present: bool, task_artifact_relocated: bool
) -> ConfidenceSignals:
    block = parse_status_block(output)
    return ConfidenceSignals(
        status_block_present=block is not None,
        phase_complete=bool(block and block.phase_complete),
        tests_status=block.tests_status if block else "",
        diff_present=diff_present,
        task_artifact_relocated=task_artifact_relocated,
        keywords_present=has_completion_keywords(output),
    )


def score_with_reasons(signals: ConfidenceSignals) -> tuple[int, list[str]]:
    earned: list[str] = []
    if signals.status_block_present:
        earned.append("status_block")
        if signals.phase_complete:
            earned.append("phase_complete")
        if signals.tests_status == "pass":
            earned.append("tests_pass")
    if signals.diff_present:
        earned.append("files_modified")
    if signals.task_artifact_relocated:
        earned.append("task_in_done")
    if signals.keywords_present:
        earned.append("keywords")
    total = min(100, sum(POINTS[name] for name in earned))
    return total, [f"{name}:+{POINTS[name]}" for name in earned]


def score(signals: ConfidenceSignals) -> int:
    return score_with_reasons(signals)[0]


@dataclass(slots=True, frozen=True)
class ConfidenceAssessment:
    score: int
    threshold: int
    reasons: tuple[str, ...]
    low_confidence_count: int
    premature_warning: bool

    @property
    def high_confidence(self) -> bool:
        return self.score >= self.threshold

    def to_dict(self) -> dict[str, object]:
        return {
            "score": self.score,
            "threshold": self.threshold,
            "reasons": list(self.reasons),
            "high_confidence": self.high_confidence,
            "low_confidence_count": self.low_confidence_count,
            "premature_warning": self.premature_warning,
        }


class ConfidenceScorer:
    """Tracks consecutive low-confidence completions across evaluations."""

    def __init__(self, threshold: int = 70, low_confidence_warn: int = 3) -> None:
        self.threshold = threshold
        self.low_confidence_warn = low_confidence_warn
        self.low_confidence_count = 0

    def evaluate(self, signals: ConfidenceSignals) -> ConfidenceAssessment:
        total, reasons = score_with_reasons(signals)
        logger.info(
            "Completion confidence %d/%d (%s)", total, self.threshold, ", ".join(reasons) or "none"
        )
        warning = False
        if total >= self.threshold:
            self.low_confidence_count = 0
        else:
            self.low_confidence_count += 1
            if self.low_confidence_count >= self.low_confidence_warn:
                warning = True
                logger.warning(
                    "%d consecutive low-confidence completions; "
                    "agent may be claiming completion prematurely",
                    self.low_confidence_count,
                )
        return ConfidenceAssessment(
            score=total,
            threshold=self.threshold,
            reasons=tuple(reasons),
            low_confidence_count=self.low_confidence_count,
            premature_warning=warning,
        )

    def reset(self) -> None:
        self.low_confidence_count = 0
