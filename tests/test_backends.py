import asyncio
import sys
from pathlib import Path

import pytest

from doyaken.backends import (
    AgentRequest,
    BackendExecutionError,
    BackendInterruptedError,
    BackendProcessError,
    BackendTimeoutError,
    CLIAgentBackend,
    ErrorClass,
    classify_output,
)
from doyaken.backends.process import run_process
from doyaken.backends.registry import AGENTS, AgentSpec, agent_names, get_agent, validate_agent
from doyaken.errors import ConfigError
from doyaken.interrupts import InterruptFlag

FAKE_AGENT = """
import sys, time
args = sys.argv[1:]
prompt = args[-1]
print("args:", " ".join(args[:-1]))
print("prompt:", prompt)
sys.stdout.flush()
if prompt == "rate":
    print("Error: 429 rate limit exceeded")
    sys.exit(3)
if prompt == "sleep":
    time.sleep(30)
print("done")
"""


def _fake_spec(tmp_path: Path) -> AgentSpec:
    script = tmp_path / "fake_agent.py"
    script.write_text(FAKE_AGENT, encoding="utf-8")
    return AgentSpec(
        name="fake",
        command=(sys.executable, str(script)),
        default_model="big",
        models=("big", "small"),
        autonomy_flags=("--yes",),
        prompt_flag="",
        fallback_chain=("big", "small"),
    )


def _request(prompt: str, tmp_path: Path, timeout: float = 30.0) -> AgentRequest:
    return AgentRequest(
        prompt=prompt,
        phase_name="implement",
        model="big",
        timeout_seconds=timeout,
        log_path=tmp_path / "logs" / "implement.log",
    )


def test_registry_lists_supported_agents() -> None:
    assert agent_names() == ["claude", "cursor", "codex", "gemini", "copilot", "opencode"]
    for spec in AGENTS.values():
        assert spec.default_model in spec.models


def test_claude_command_shape() -> None:
    command = get_agent("claude").build_command("do the thing", "sonnet")

    assert command[0] == "claude"
    assert "--dangerously-skip-permissions" in command
    assert command[command.index("--model") + 1] == "sonnet"
    assert command[-2:] == ["-p", "do the thing"]


def test_codex_takes_positional_prompt() -> None:
    command = get_agent("codex").build_command("fix it", verbose=True)

    assert command[:2] == ["codex", "exec"]
    assert command[command.index("-m") + 1] == "gpt-5"
    assert "--verbose" in command
    assert command[-1] == "fix it"


def test_validate_agent_rejects_unknown_names_and_models() -> None:
    with pytest.raises(ConfigError, match="Unknown agent"):
        validate_agent("emacs")
    with pytest.raises(ConfigError, match="not supported"):
        validate_agent("gemini", "opus")
    assert validate_agent("gemini", "gemini-2.5-flash").name == "gemini"


def test_fallback_chains_stop_at_floor() -> None:
    claude = get_agent("claude")
    assert claude.next_fallback("opus") == "sonnet"
    assert claude.next_fallback("sonnet") is None
    assert claude.next_fallback("haiku") is None
    assert claude.next_fallback("claude-opus-4") == "sonnet"
    assert get_agent("codex").next_fallback("gpt-5") == "o4-mini"
    assert get_agent("gemini").next_fallback("gemini-2.5-pro") == "gemini-2.5-flash"
    assert get_agent("cursor").next_fallback("claude-sonnet-4") is None


def test_classify_output() -> None:
    assert classify_output("HTTP 503 Service Unavailable", 1) == ErrorClass.RETRYABLE
    assert classify_output("model is overloaded", 1) == ErrorClass.RETRYABLE
    assert classify_output("anything", 124) == ErrorClass.FATAL
    assert classify_output("SyntaxError: invalid syntax", 1) == ErrorClass.NONE


def test_run_process_streams_output_to_log(tmp_path: Path) -> None:
    log_path = tmp_path / "out" / "run.log"
    result = asyncio.run(
        run_process(
            [sys.executable, "-c", "import sys; print('hello'); print('oops', file=sys.stderr)"],
            log_path=log_path,
            timeout_seconds=30,
        )
    )

    assert result.ok
    assert "hello" in result.output
    assert "oops" in result.output
    assert "hello" in log_path.read_text(encoding="utf-8")


def test_run_process_times_out_and_kills_group(tmp_path: Path) -> None:
    result = asyncio.run(
        run_process(
            [sys.executable, "-c", "import time; print('start', flush=True); time.sleep(30)"],
            cwd=tmp_path,
            timeout_seconds=0.5,
            grace_seconds=1.0,
            poll_interval=0.05,
        )
    )

    assert result.timed_out is True
    assert not result.ok
    assert result.duration_seconds < 10
    assert "start" in result.output


def test_run_process_missing_executable_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        asyncio.run(run_process([str(tmp_path / "no-such-binary")], timeout_seconds=5))


def test_cli_backend_success(tmp_path: Path) -> None:
    backend = CLIAgentBackend(_fake_spec(tmp_path), tmp_path)

    result = asyncio.run(backend.execute(_request("hello", tmp_path)))

    assert result.exit_code == 0
    assert "prompt: hello" in result.output
    assert "--yes --model big" in result.output
    assert result.log_ref == str(tmp_path / "logs" / "implement.log")
    assert "done" in (tmp_path / "logs" / "implement.log").read_text(encoding="utf-8")


def test_cli_backend_nonzero_exit_is_retriable(tmp_path: Path) -> None:
    backend = CLIAgentBackend(_fake_spec(tmp_path), tmp_path)

    with pytest.raises(BackendExecutionError) as exc_info:
        asyncio.run(backend.execute(_request("rate", tmp_path)))

    assert exc_info.value.retriable is True
    assert exc_info.value.exit_code == 3
    assert classify_output(exc_info.value.output, 3) == ErrorClass.RETRYABLE


def test_cli_backend_timeout_is_not_retriable(tmp_path: Path) -> None:
    backend = CLIAgentBackend(_fake_spec(tmp_path), tmp_path, kill_grace_seconds=1.0)

    with pytest.raises(BackendTimeoutError) as exc_info:
        asyncio.run(backend.execute(_request("sleep", tmp_path, timeout=0.5)))

    assert exc_info.value.retriable is False


def test_cli_backend_interrupt_stops_invocation(tmp_path: Path) -> None:
    backend = CLIAgentBackend(_fake_spec(tmp_path), tmp_path, kill_grace_seconds=1.0)
    interrupt = InterruptFlag()

    async def scenario() -> None:
        async def trip() -> None:
            await asyncio.sleep(0.3)
            interrupt.set("SIGINT")

        tripper = asyncio.create_task(trip())
        try:
            await backend.execute(_request("sleep", tmp_path), interrupt)
        finally:
            await tripper

    with pytest.raises(BackendInterruptedError):
        asyncio.run(scenario())


def test_cli_backend_missing_binary_is_fatal(tmp_path: Path) -> None:
    spec = AgentSpec(
        name="ghost",
        command=(str(tmp_path / "ghost-agent"),),
        default_model="m",
        models=("m",),
    )
    backend = CLIAgentBackend(spec, tmp_path)

    with pytest.raises(BackendProcessError) as exc_info:
        asyncio.run(backend.execute(_request("hello", tmp_path)))

    assert exc_info.value.retriable is False
