from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path

from doyaken.interrupts import POLL_INTERVAL_SECONDS, InterruptFlag

logger = logging.getLogger("doyaken.backends.process")

TAIL_LIMIT_BYTES = 64 * 1024
READ_CHUNK_BYTES = 4096


@dataclass(slots=True)
class ProcessResult:
    exit_code: int | None
    output: str
    duration_seconds: float
    timed_out: bool = False
    interrupted: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.interrupted


def _signal_group(process: asyncio.subprocess.Process, signum: int) -> None:
    try:
        os.killpg(process.pid, signum)
    except ProcessLookupError:
        return
    except PermissionError:
        with contextlib.suppress(ProcessLookupError):
            process.send_signal(signum)


async def terminate_process_group(
    process: asyncio.subprocess.Process, *, grace_seconds: float = 5.0
) -> None:
    """SIGTERM the whole session, then SIGKILL whatever survives the grace period."""
    if process.returncode is not None:
        return
    _signal_group(process, signal.SIGTERM)
    try:
        await asyncio.wait_for(process.wait(), timeout=grace_seconds)
        return
    except TimeoutError:
        logger.warning("Process group %d ignored SIGTERM; sending SIGKILL", process.pid)
    _signal_group(process, signal.SIGKILL)
    await process.wait()


async def run_process(
    command: list[str] | str,
    *,
    cwd: Path | None = None,
    env: dict[str, str] | None = None,
    log_path: Path | None = None,
    timeout_seconds: float | None = None,
    interrupt: InterruptFlag | None = None,
    grace_seconds: float = 5.0,
    poll_interval: float = POLL_INTERVAL_SECONDS,
) -> ProcessResult:
    """Run ``command`` in its own session, streaming combined output to ``log_path``.

    A string command runs through the shell; a list is executed directly.
    The deadline and the interrupt flag are both checked every
    ``poll_interval`` seconds, and either one terminates the whole process
    group. Raises FileNotFoundError when the executable does not exist.
    """
    started = time.monotonic()
    if isinstance(command, str):
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(cwd) if cwd else None,
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )
    else:
        process = await asyncio.create_subprocess_exec(
            *command,
            cwd=str(cwd) if cwd else None,
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )

    tail: deque[bytes] = deque()
    tail_size = 0

    async def _pump() -> None:
        nonlocal tail_size
        assert process.stdout is not None
        log_file = None
        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            log_file = log_path.open("ab")
        try:
            while True:
                chunk = await process.stdout.read(READ_CHUNK_BYTES)
                if not chunk:
                    break
                if log_file is not None:
                    log_file.write(chunk)
                    log_file.flush()
                tail.append(chunk)
                tail_size += len(chunk)
                while tail_size > TAIL_LIMIT_BYTES and len(tail) > 1:
                    tail_size -= len(tail.popleft())
        finally:
            if log_file is not None:
                log_file.close()

    pump = asyncio.create_task(_pump())
    waiter = asyncio.create_task(process.wait())
    deadline = started + timeout_seconds if timeout_seconds else None
    timed_out = False
    interrupted = False
    try:
        while not waiter.done():
            await asyncio.wait({waiter}, timeout=poll_interval)
            if waiter.done():
                break
            if interrupt is not None and interrupt.is_set():
                interrupted = True
                break
            if deadline is not None and time.monotonic() >= deadline:
                timed_out = True
                break
        if timed_out or interrupted:
            logger.info(
                "Stopping process group %d (%s)",
                process.pid,
                "timeout" if timed_out else "interrupt",
            )
            await terminate_process_group(process, grace_seconds=grace_seconds)
        await waiter
        try:
            await asyncio.wait_for(pump, timeout=grace_seconds)
        except TimeoutError:
            pump.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pump
    except asyncio.CancelledError:
        await terminate_process_group(process, grace_seconds=grace_seconds)
        waiter.cancel()
        pump.cancel()
        raise

    output = b"".join(tail).decode("utf-8", errors="replace")
    return ProcessResult(
        exit_code=process.returncode,
        output=output,
        duration_seconds=time.monotonic() - started,
        timed_out=timed_out,
        interrupted=interrupted,
    )
