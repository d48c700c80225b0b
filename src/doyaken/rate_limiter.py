from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from enum import StrEnum
from typing import Any

from doyaken.interrupts import POLL_INTERVAL_SECONDS, InterruptFlag, SleepFn, interruptible_sleep
from doyaken.state.store import StateStore

logger = logging.getLogger("doyaken.rate_limiter")

WINDOW_SECONDS = 3600.0
FALLBACK_WAIT_SECONDS = 60.0
COUNTDOWN_LOG_INTERVAL = 60.0

EventHook = Callable[[dict[str, Any]], None]


class RateLimitOutcome(StrEnum):
    PROCEED = "proceed"
    WAITED = "waited"


class RateLimiter:
    """Sliding one-hour invocation quota for a single agent identity."""

    def __init__(
        self,
        store: StateStore | None,
        agent_id: str,
        *,
        calls_per_hour: int = 80,
        warning_threshold: int = 80,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
        sleep: SleepFn = asyncio.sleep,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        event_hook: EventHook | None = None,
    ) -> None:
        self.store = store
        self.agent_id = agent_id
        self.namespace = f"rate-limit-{agent_id}"
        self.calls_per_hour = calls_per_hour
        self.warning_threshold = warning_threshold
        self.enabled = enabled
        self.clock = clock
        self.sleep = sleep
        self.poll_interval = poll_interval
        self.event_hook = event_hook
        self.timestamps: list[float] = self._load()

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _load(self) -> list[float]:
        if self.store is None:
            return []
        payload = self.store.get_json(self.namespace, default={"timestamps": []})
        values = payload.get("timestamps", []) if isinstance(payload, dict) else []
        return sorted(float(value) for value in values if isinstance(value, int | float))

    def save(self) -> None:
        if self.store is not None:
            self.store.set_json(self.namespace, {"timestamps": self.timestamps})

    def prune(self) -> int:
        cutoff = self.clock() - WINDOW_SECONDS
        self.timestamps = [ts for ts in self.timestamps if ts > cutoff]
        return len(self.timestamps)

    def usage(self) -> dict[str, Any]:
        count = self.prune()
        return {
            "agent": self.agent_id,
            "calls_in_window": count,
            "calls_per_hour": self.calls_per_hour,
            "remaining": max(0, self.calls_per_hour - count),
        }

    def record(self) -> None:
        if not self.enabled:
            return
        self.prune()
        self.timestamps.append(self.clock())
        self.save()

    def _wait_until(self) -> float:
        if self.timestamps:
            return self.timestamps[0] + WINDOW_SECONDS
        return self.clock() + FALLBACK_WAIT_SECONDS

    async def check(
        self, phase_name: str = "", interrupt: InterruptFlag | None = None
    ) -> RateLimitOutcome:
        """Block until a slot is free. Raises RunInterrupted if interrupted while waiting."""
        if not self.enabled:
            return RateLimitOutcome.PROCEED

        count = self.prune()
        warn_at = self.calls_per_hour * self.warning_threshold // 100
        if count < self.calls_per_hour:
            if count >= warn_at:
                remaining = self.calls_per_hour - count
                logger.warning(
                    "Rate limit: %d/%d calls used (%d remaining)",
                    count,
                    self.calls_per_hour,
                    remaining,
                )
                self._emit(
                    {
                        "event": "rate_limit_warning",
                        "agent": self.agent_id,
                        "phase": phase_name,
                        "used": count,
                        "capacity": self.calls_per_hour,
                    }
                )
            return RateLimitOutcome.PROCEED

        while count >= self.calls_per_hour:
            wait_until = self._wait_until()
            wait_seconds = max(0.0, wait_until - self.clock())
            logger.warning(
                "Rate limit reached (%d/%d); waiting %.0fs before %s",
                count,
                self.calls_per_hour,
                wait_seconds,
                phase_name or "next invocation",
            )
            self._emit(
                {
                    "event": "rate_limit_wait",
                    "agent": self.agent_id,
                    "phase": phase_name,
                    "wait_seconds": round(wait_seconds, 1),
                }
            )
            await self._countdown(wait_until, interrupt, phase_name)
            count = self.prune()

        self.save()
        return RateLimitOutcome.WAITED

    async def _countdown(
        self, wait_until: float, interrupt: InterruptFlag | None, phase_name: str
    ) -> None:
        where = f"rate limit wait before {phase_name or 'next invocation'}"
        while True:
            if interrupt is not None:
                interrupt.raise_if_set(where)
            remaining = wait_until - self.clock()
            if remaining <= 0:
                return
            await interruptible_sleep(
                min(remaining, COUNTDOWN_LOG_INTERVAL),
                interrupt,
                sleep=self.sleep,
                clock=self.clock,
                poll_interval=self.poll_interval,
                where=where,
            )
            remaining = wait_until - self.clock()
            if remaining > 0:
                logger.info("Rate limit: %.0fs remaining", remaining)
