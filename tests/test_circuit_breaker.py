from pathlib import Path

from doyaken.circuit_breaker import BreakerState, CircuitBreaker, hash_error_tail
from doyaken.state import StateStore


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _breaker(tmp_path: Path, clock: FakeClock | None = None, **kwargs) -> CircuitBreaker:
    return CircuitBreaker(StateStore(tmp_path), "claude", clock=clock or FakeClock(), **kwargs)


def test_no_progress_opens_after_threshold(tmp_path: Path) -> None:
    events: list[dict] = []
    breaker = _breaker(tmp_path, event_hook=events.append)

    assert breaker.record_iteration(success=True, output="x" * 100) == BreakerState.CLOSED
    assert breaker.record_iteration(success=True, output="x" * 100) == BreakerState.HALF_OPEN
    assert breaker.record_iteration(success=True, output="x" * 100) == BreakerState.OPEN

    assert breaker.should_proceed() is False
    transitions = [(event["from"], event["to"]) for event in events]
    assert transitions == [("CLOSED", "HALF_OPEN"), ("HALF_OPEN", "OPEN")]


def test_progress_closes_breaker_and_resets_counters(tmp_path: Path) -> None:
    breaker = _breaker(tmp_path)
    breaker.record_iteration(success=True)
    breaker.record_iteration(success=True)
    assert breaker.state.state == BreakerState.HALF_OPEN

    breaker.record_iteration(success=True, output="changed", has_changes=True)

    assert breaker.state.state == BreakerState.CLOSED
    assert breaker.state.no_progress_count == 0


def test_same_error_repeated_opens_breaker(tmp_path: Path) -> None:
    breaker = _breaker(tmp_path, no_progress_threshold=50)
    error = "Traceback\nValueError: bad input\n"

    for _ in range(4):
        breaker.record_iteration(success=False, output=error)
    assert breaker.state.same_error_count == 4

    assert breaker.record_iteration(success=False, output=error) == BreakerState.OPEN


def test_different_errors_reset_same_error_count(tmp_path: Path) -> None:
    breaker = _breaker(tmp_path)
    breaker.record_iteration(success=False, output="error one")
    breaker.record_iteration(success=False, output="error two")

    assert breaker.state.same_error_count == 1


def test_cooldown_moves_open_to_half_open(tmp_path: Path) -> None:
    clock = FakeClock()
    breaker = _breaker(tmp_path, clock, cooldown_seconds=300)
    for _ in range(3):
        breaker.record_iteration(success=True)
    assert breaker.should_proceed() is False
    assert breaker.cooldown_remaining() == 300

    clock.now += 301

    assert breaker.should_proceed() is True
    assert breaker.state.state == BreakerState.HALF_OPEN


def test_state_survives_reload(tmp_path: Path) -> None:
    clock = FakeClock()
    breaker = _breaker(tmp_path, clock)
    for _ in range(3):
        breaker.record_iteration(success=True)

    reloaded = _breaker(tmp_path, clock)

    assert reloaded.state.state == BreakerState.OPEN
    assert reloaded.state.no_progress_count == 3


def test_declining_output_counts_as_no_progress(tmp_path: Path) -> None:
    shrinking = _breaker(tmp_path / "shrinking")
    steady = _breaker(tmp_path / "steady")
    for breaker in (shrinking, steady):
        for _ in range(3):
            breaker.record_iteration(success=True, output="x" * 5000, has_changes=True)

    shrinking.record_iteration(success=True, output="x" * 10, has_changes=True)
    steady.record_iteration(success=True, output="x" * 5000, has_changes=True)

    assert shrinking.state.no_progress_count == 1
    assert steady.state.no_progress_count == 0
    assert shrinking.record_iteration(success=True, output="x", has_changes=True) == (
        BreakerState.HALF_OPEN
    )


def test_disabled_breaker_always_proceeds(tmp_path: Path) -> None:
    breaker = _breaker(tmp_path, enabled=False)
    for _ in range(10):
        breaker.record_iteration(success=False, output="same")

    assert breaker.state.state == BreakerState.CLOSED
    assert breaker.should_proceed() is True


def test_reset_restores_closed_state(tmp_path: Path) -> None:
    breaker = _breaker(tmp_path)
    for _ in range(3):
        breaker.record_iteration(success=True)

    breaker.reset()

    assert breaker.state.state == BreakerState.CLOSED
    assert breaker.status()["no_progress_count"] == 0


def test_error_hash_uses_output_tail() -> None:
    head_a = "\n".join(f"noise {i}" for i in range(50))
    head_b = "\n".join(f"other {i}" for i in range(50))
    tail = "\n".join(f"error line {i}" for i in range(20))

    assert hash_error_tail(f"{head_a}\n{tail}") == hash_error_tail(f"{head_b}\n{tail}")
    assert hash_error_tail("") == ""
