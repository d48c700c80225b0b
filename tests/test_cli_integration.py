import json
import shlex
import sys
from pathlib import Path

import pytest
from click.testing import CliRunner

from doyaken.backends.registry import AGENTS, AgentSpec
from doyaken.cli import cli
from doyaken.config import load_config, save_config
from doyaken.state import StateStore

FAKE_AGENT = """
import sys
prompt = sys.argv[-1]
phase = next(line for line in prompt.splitlines() if line.startswith("Phase: "))
print(f"working on {phase}")
print("All tasks complete.")
print()
print("DOYAKEN_STATUS:")
print("  PHASE_COMPLETE: true")
print("  TESTS_STATUS: pass")
"""


@pytest.fixture()
def fake_claude(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AgentSpec:
    script = tmp_path / "fake_claude.py"
    script.write_text(FAKE_AGENT, encoding="utf-8")
    spec = AgentSpec(
        name="claude",
        command=(sys.executable, str(script)),
        default_model="opus",
        models=("opus", "sonnet"),
        prompt_flag="",
        fallback_chain=("opus", "sonnet"),
    )
    monkeypatch.setitem(AGENTS, "claude", spec)
    return spec


def _init(runner: CliRunner, **overrides: object) -> Path:
    result = runner.invoke(cli, ["init"])
    assert result.exit_code == 0, result.output
    config_path = Path.cwd() / "doyaken.toml"
    config = load_config(config_path)
    config.agent.retry_delay_seconds = 0.0
    for key, value in overrides.items():
        section, field = key.split("__")
        setattr(getattr(config, section), field, value)
    save_config(config_path, config)
    return config_path


def test_init_writes_config_and_directories(tmp_path: Path) -> None:
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path):
        result = runner.invoke(cli, ["init", "--agent", "codex"])

        assert result.exit_code == 0, result.output
        assert "Initialized Doyaken" in result.output
        assert load_config(Path("doyaken.toml")).agent.name == "codex"
        for directory in ("state", "logs", "prompts", "tasks"):
            assert (Path(".doyaken") / directory).is_dir()


def test_agents_lists_registry() -> None:
    result = CliRunner().invoke(cli, ["agents"])

    assert result.exit_code == 0
    for name in ("claude", "cursor", "codex", "gemini", "copilot", "opencode"):
        assert name in result.output


def test_run_completes_and_records_report(tmp_path: Path, fake_claude: AgentSpec) -> None:
    _ = fake_claude
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path):
        _init(runner)

        result = runner.invoke(cli, ["run", "Add a health endpoint", "--task-id", "task-1"])

        assert result.exit_code == 0, result.output
        assert "Result: completed" in result.output
        store = StateStore(Path(".doyaken/state"))
        runs = store.get_json("runs", default=[])
        assert runs[-1]["task_id"] == "task-1"
        assert [phase["status"] for phase in runs[-1]["phases"]] == ["completed"] * 8
        events = store.get_json("events", default=[])
        assert any(event["event"] == "run_finished" for event in events)
        assert all("at" in event for event in events)
        assert store.get_json("checkpoint-claude", default={}) == {}
        logs = list(Path(".doyaken/logs/task-1").glob("*.log"))
        assert len(logs) == 8


def test_run_exits_two_when_gates_never_pass(tmp_path: Path, fake_claude: AgentSpec) -> None:
    _ = fake_claude
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path):
        _init(
            runner,
            quality__test_command=shlex.join([sys.executable, "-c", "raise SystemExit(1)"]),
            quality__verification_retries=1,
        )

        result = runner.invoke(cli, ["run", "Break everything", "--task-id", "task-2"])

        assert result.exit_code == 2, result.output
        assert "Result: needs_human_input" in result.output
        status = runner.invoke(cli, ["status"])
        payload = json.loads(status.stdout)
        assert payload["checkpoint"] is None
        assert payload["last_run"]["result"] == "needs_human_input"
        assert payload["circuit_breaker"]["no_progress_count"] == 1


def test_status_and_reset_breaker(tmp_path: Path) -> None:
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path):
        _init(runner)
        store = StateStore(Path(".doyaken/state"))
        store.set_json(
            "circuit-breaker-claude",
            {"state": "OPEN", "no_progress_count": 3, "open_since": 9_999_999_999.0},
        )

        status = runner.invoke(cli, ["status"])
        assert status.exit_code == 0, status.output
        assert json.loads(status.stdout)["circuit_breaker"]["state"] == "OPEN"

        reset = runner.invoke(cli, ["reset-breaker"])
        assert reset.exit_code == 0
        assert "reset for claude" in reset.output
        assert store.get_json("circuit-breaker-claude")["state"] == "CLOSED"


def test_invalid_model_is_reported(tmp_path: Path) -> None:
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path):
        _init(runner)

        result = runner.invoke(cli, ["run", "anything", "--agent", "gemini", "--model", "opus"])

        assert result.exit_code == 1
        assert "not supported" in result.output
