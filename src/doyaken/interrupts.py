from __future__ import annotations

import asyncio
import logging
import signal
import threading
import time
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager

from doyaken.errors import RunInterrupted

logger = logging.getLogger("doyaken.interrupts")

POLL_INTERVAL_SECONDS = 0.25

SleepFn = Callable[[float], Awaitable[None]]


class InterruptFlag:
    """Process-wide cooperative cancellation flag.

    Signal handlers only set the flag; every wait loop and subprocess runner
    polls it and unwinds on its own.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    def set(self, reason: str = "interrupt") -> None:
        if not self._event.is_set():
            self.reason = reason
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def clear(self) -> None:
        self.reason = None
        self._event.clear()

    def raise_if_set(self, where: str | None = None) -> None:
        if self._event.is_set():
            raise RunInterrupted(where=where)


async def interruptible_sleep(
    seconds: float,
    interrupt: InterruptFlag | None,
    *,
    sleep: SleepFn = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
    poll_interval: float = POLL_INTERVAL_SECONDS,
    where: str | None = None,
) -> None:
    """Sleep for ``seconds`` in short slices, raising RunInterrupted as soon as the flag is set."""
    deadline = clock() + max(0.0, seconds)
    while True:
        if interrupt is not None:
            interrupt.raise_if_set(where)
        remaining = deadline - clock()
        if remaining <= 0:
            return
        await sleep(min(poll_interval, remaining))


@contextmanager
def install_signal_handlers(interrupt: InterruptFlag) -> Iterator[InterruptFlag]:
    """Route SIGINT/SIGTERM into ``interrupt`` for the duration of the block."""
    if threading.current_thread() is not threading.main_thread():
        yield interrupt
        return

    def _handler(signum: int, _frame: object) -> None:
        name = signal.Signals(signum).name
        if interrupt.is_set():
            logger.warning("Second %s received; still unwinding current step", name)
        else:
            logger.warning("%s received; stopping after the current step", name)
        interrupt.set(name)

    previous = {
        signal.SIGINT: signal.getsignal(signal.SIGINT),
        signal.SIGTERM: signal.getsignal(signal.SIGTERM),
    }
    for signum in previous:
        signal.signal(signum, _handler)
    try:
        yield interrupt
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)
