from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from doyaken.interrupts import SleepFn

logger = logging.getLogger("doyaken.monitor")

TIMEOUT_WARNING_SECONDS = 120.0

EventHook = Callable[[dict[str, Any]], None]


class LivenessMonitor:
    """Background watcher for one phase invocation.

    Samples the phase log size every ``interval_seconds`` and reports
    activity, silence, stalls and an approaching timeout. It only reports;
    the invocation's own timeout is what stops a phase.
    """

    def __init__(
        self,
        phase_name: str,
        log_path: Path | None,
        *,
        timeout_seconds: float,
        interval_seconds: float = 30.0,
        stall_threshold_seconds: float = 180.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: SleepFn = asyncio.sleep,
        event_hook: EventHook | None = None,
    ) -> None:
        self.phase_name = phase_name
        self.log_path = log_path
        self.timeout_seconds = timeout_seconds
        self.interval_seconds = interval_seconds
        self.stall_threshold_seconds = stall_threshold_seconds
        self.clock = clock
        self.sleep = sleep
        self.event_hook = event_hook
        self.samples = 0
        self.stall_warnings = 0
        self.timeout_warned = False
        self._task: asyncio.Task[None] | None = None

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _log_size(self) -> int:
        if self.log_path is None:
            return 0
        try:
            return self.log_path.stat().st_size
        except FileNotFoundError:
            return 0

    async def _watch(self) -> None:
        started = self.clock()
        last_size = self._log_size()
        last_change = started
        while True:
            await self.sleep(self.interval_seconds)
            now = self.clock()
            size = self._log_size()
            elapsed = now - started
            self.samples += 1
            if size > last_size:
                last_size = size
                last_change = now
                status = "active"
                logger.info(
                    "[%s] active: %d bytes of output, %.0fs elapsed", self.phase_name, size, elapsed
                )
            else:
                silent_for = now - last_change
                if silent_for >= self.stall_threshold_seconds:
                    status = "stalled"
                    self.stall_warnings += 1
                    logger.warning(
                        "[%s] no output for %.0fs; agent may be stalled",
                        self.phase_name,
                        silent_for,
                    )
                else:
                    status = "waiting"
                    logger.info(
                        "[%s] waiting: no new output for %.0fs", self.phase_name, silent_for
                    )
            self._emit(
                {
                    "event": "phase_liveness",
                    "phase": self.phase_name,
                    "status": status,
                    "log_bytes": size,
                    "elapsed_seconds": round(elapsed, 1),
                }
            )
            remaining = self.timeout_seconds - elapsed
            if not self.timeout_warned and 0 < remaining <= TIMEOUT_WARNING_SECONDS:
                self.timeout_warned = True
                logger.warning(
                    "[%s] approaching timeout: %.0fs remaining", self.phase_name, remaining
                )
                self._emit(
                    {
                        "event": "phase_timeout_approaching",
                        "phase": self.phase_name,
                        "remaining_seconds": round(remaining, 1),
                    }
                )

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._watch(), name=f"liveness-{self.phase_name}")

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            try:
                await task
            except Exception:
                logger.warning("[%s] liveness monitor failed", self.phase_name, exc_info=True)

    async def __aenter__(self) -> LivenessMonitor:
        self.start()
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.stop()
