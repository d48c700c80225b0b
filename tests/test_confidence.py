from pathlib import Path

from doyaken.confidence import (
    ConfidenceScorer,
    collect_signals,
    parse_status_block,
    score,
    task_in_done,
)
from doyaken.models import ConfidenceSignals

STATUS_OUTPUT = """Implemented the parser.

DOYAKEN_STATUS:
  PHASE_COMPLETE: true
  FILES_MODIFIED: src/parser.py
  TESTS_STATUS: pass

Trailing notes.
"""


def test_parse_status_block_fields() -> None:
    block = parse_status_block(STATUS_OUTPUT)

    assert block is not None
    assert block.phase_complete is True
    assert block.tests_status == "pass"
    assert block.fields["FILES_MODIFIED"] == "src/parser.py"
    assert "Trailing" not in block.fields


def test_parse_status_block_absent() -> None:
    assert parse_status_block("nothing structured here") is None


def test_status_tests_diff_and_keywords_score_eighty() -> None:
    signals = ConfidenceSignals(
        status_block_present=True,
        phase_complete=True,
        tests_status="pass",
        diff_present=True,
        task_artifact_relocated=False,
        keywords_present=True,
    )

    assert score(signals) == 80
    assert ConfidenceScorer().evaluate(signals).high_confidence is True


def test_empty_evidence_scores_zero() -> None:
    assessment = ConfidenceScorer().evaluate(ConfidenceSignals())

    assert assessment.score == 0
    assert assessment.high_confidence is False


def test_tests_points_require_status_block() -> None:
    assert score(ConfidenceSignals(tests_status="pass", diff_present=True)) == 15


def test_score_is_capped_at_one_hundred() -> None:
    signals = ConfidenceSignals(
        status_block_present=True,
        phase_complete=True,
        tests_status="pass",
        diff_present=True,
        task_artifact_relocated=True,
        keywords_present=True,
    )

    assert score(signals) == 100


def test_collect_signals_reads_output_and_probes() -> None:
    signals = collect_signals(
        "All tasks complete.\n" + STATUS_OUTPUT, diff_present=True, task_artifact_relocated=False
    )

    assert signals.status_block_present is True
    assert signals.phase_complete is True
    assert signals.keywords_present is True
    assert score(signals) == 80


def test_task_in_done(tmp_path: Path) -> None:
    done = tmp_path / "4.done"
    done.mkdir()
    (done / "003-task-42-add-login.md").write_text("done\n", encoding="utf-8")

    assert task_in_done(tmp_path, "task-42") is True
    assert task_in_done(tmp_path, "task-7") is False
    assert task_in_done(None, "task-42") is False


def test_warns_after_consecutive_low_confidence() -> None:
    scorer = ConfidenceScorer(threshold=70, low_confidence_warn=3)
    weak = ConfidenceSignals(keywords_present=True)

    first = scorer.evaluate(weak)
    second = scorer.evaluate(weak)
    third = scorer.evaluate(weak)

    assert first.high_confidence is False
    assert [first.premature_warning, second.premature_warning] == [False, False]
    assert third.premature_warning is True
    assert third.low_confidence_count == 3


def test_high_confidence_resets_counter() -> None:
    scorer = ConfidenceScorer()
    scorer.evaluate(ConfidenceSignals())
    scorer.evaluate(ConfidenceSignals())

    strong = scorer.evaluate(
        ConfidenceSignals(
            status_block_present=True,
            phase_complete=True,
            diff_present=True,
            task_artifact_relocated=True,
        )
    )

    assert strong.high_confidence is True
    assert scorer.low_confidence_count == 0
