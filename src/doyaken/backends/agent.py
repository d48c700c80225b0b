from __future__ import annotations

import logging
import os
from collections.abc import Sequence
from pathlib import Path

from doyaken.backends.base import (
    AgentBackend,
    AgentRequest,
    AgentResult,
    BackendExecutionError,
    BackendInterruptedError,
    BackendProcessError,
    BackendTimeoutError,
)
from doyaken.backends.process import run_process
from doyaken.backends.registry import AgentSpec
from doyaken.interrupts import InterruptFlag

logger = logging.getLogger("doyaken.backends.agent")


class CLIAgentBackend(AgentBackend):
    """Runs a registered coding-agent CLI as a supervised subprocess."""

    def __init__(
        self,
        spec: AgentSpec,
        working_directory: Path | None = None,
        *,
        verbose: bool = False,
        extra_args: Sequence[str] = (),
        env: dict[str, str] | None = None,
        kill_grace_seconds: float = 5.0,
    ) -> None:
        self.spec = spec
        self.name = spec.name
        self.working_directory = working_directory
        self.verbose = verbose
        self.extra_args = tuple(extra_args)
        self.env = env
        self.kill_grace_seconds = kill_grace_seconds

    def build_command(self, prompt: str, model: str) -> list[str]:
        return self.spec.build_command(
            prompt, model, verbose=self.verbose, extra_args=self.extra_args
        )

    async def execute(
        self,
        request: AgentRequest,
        interrupt: InterruptFlag | None = None,
    ) -> AgentResult:
        command = self.build_command(request.prompt, request.model)
        env = os.environ.copy()
        if self.env:
            env.update(self.env)
        logger.debug(
            "Launching %s for phase %s with model %s", self.name, request.phase_name, request.model
        )
        try:
            result = await run_process(
                command,
                cwd=self.working_directory,
                env=env,
                log_path=request.log_path,
                timeout_seconds=request.timeout_seconds,
                interrupt=interrupt,
                grace_seconds=self.kill_grace_seconds,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"{self.name} binary not found: {self.spec.executable}",
                backend=self.name,
                retriable=False,
            ) from exc

        log_ref = str(request.log_path) if request.log_path else None
        if result.interrupted:
            raise BackendInterruptedError(
                f"{self.name} invocation interrupted during {request.phase_name}",
                backend=self.name,
                exit_code=result.exit_code,
                output=result.output,
            )
        if result.timed_out:
            raise BackendTimeoutError(
                f"{self.name} timed out after {request.timeout_seconds:.0f}s "
                f"during {request.phase_name}",
                backend=self.name,
                exit_code=result.exit_code,
                output=result.output,
            )
        if result.exit_code != 0:
            raise BackendExecutionError(
                f"{self.name} failed with exit code {result.exit_code}",
                backend=self.name,
                exit_code=result.exit_code,
                retriable=True,
                output=result.output,
            )
        return AgentResult(
            output=result.output,
            exit_code=0,
            duration_seconds=result.duration_seconds,
            model=request.model,
            log_ref=log_ref,
        )
