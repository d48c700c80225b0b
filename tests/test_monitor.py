import asyncio
from pathlib import Path

from doyaken.monitor import LivenessMonitor


def test_monitor_reports_activity_stall_and_timeout(tmp_path: Path) -> None:
    log_path = tmp_path / "implement.log"
    events: list[dict] = []
    now = [0.0]

    async def scripted_sleep(seconds: float) -> None:
        now[0] += seconds
        if now[0] == 30:
            log_path.write_text("working\n", encoding="utf-8")
        await asyncio.sleep(0)

    monitor = LivenessMonitor(
        "implement",
        log_path,
        timeout_seconds=330,
        interval_seconds=30,
        stall_threshold_seconds=90,
        clock=lambda: now[0],
        sleep=scripted_sleep,
        event_hook=events.append,
    )

    async def scenario() -> None:
        async with monitor:
            while monitor.samples < 8:
                await asyncio.sleep(0)

    asyncio.run(scenario())

    statuses = [event["status"] for event in events if event["event"] == "phase_liveness"]
    assert statuses[:5] == ["active", "waiting", "waiting", "stalled", "stalled"]
    assert monitor.stall_warnings >= 2
    warnings = [event for event in events if event["event"] == "phase_timeout_approaching"]
    assert len(warnings) == 1
    assert warnings[0]["remaining_seconds"] == 120.0


def test_monitor_without_log_counts_as_waiting(tmp_path: Path) -> None:
    events: list[dict] = []
    now = [0.0]

    async def fast_sleep(seconds: float) -> None:
        now[0] += seconds
        await asyncio.sleep(0)

    monitor = LivenessMonitor(
        "plan",
        None,
        timeout_seconds=10_000,
        interval_seconds=30,
        clock=lambda: now[0],
        sleep=fast_sleep,
        event_hook=events.append,
    )

    async def scenario() -> None:
        monitor.start()
        while monitor.samples < 2:
            await asyncio.sleep(0)
        await monitor.stop()

    asyncio.run(scenario())

    assert [event["status"] for event in events][:2] == ["waiting", "waiting"]
    assert monitor.timeout_warned is False


def test_failing_event_hook_does_not_escape_the_monitor(tmp_path: Path) -> None:
    calls: list[dict] = []
    now = [0.0]

    def broken_hook(event: dict) -> None:
        calls.append(event)
        raise RuntimeError("event sink unavailable")

    async def fast_sleep(seconds: float) -> None:
        now[0] += seconds
        await asyncio.sleep(0)

    monitor = LivenessMonitor(
        "test",
        tmp_path / "test.log",
        timeout_seconds=10_000,
        clock=lambda: now[0],
        sleep=fast_sleep,
        event_hook=broken_hook,
    )

    async def scenario() -> str:
        async with monitor:
            while not calls:
                await asyncio.sleep(0)
            await asyncio.sleep(0)
            return "phase result"

    assert asyncio.run(scenario()) == "phase result"
    assert monitor.samples == 1
