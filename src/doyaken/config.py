from __future__ import annotations

import json
import re
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from doyaken.errors import ConfigError

PHASE_NAMES = ("expand", "triage", "plan", "implement", "test", "docs", "review", "verify")
APPROVAL_MODES = ("full-auto", "supervised", "plan-only")
GATE_SLOTS = ("build", "lint", "format", "test")
BARE_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


@dataclass(slots=True)
class AgentConfig:
    name: str = "claude"
    model: str = ""
    max_attempts: int = 2
    retry_delay_seconds: float = 5.0
    no_fallback: bool = False
    verbose: bool = False
    extra_args: list[str] = field(default_factory=list)


@dataclass(slots=True)
class TimeoutsConfig:
    expand: int = 900
    triage: int = 540
    plan: int = 900
    implement: int = 5400
    test: int = 1800
    docs: int = 900
    review: int = 1800
    verify: int = 900


@dataclass(slots=True)
class SkipPhasesConfig:
    expand: bool = False
    triage: bool = False
    plan: bool = False
    implement: bool = False
    test: bool = False
    docs: bool = False
    review: bool = False
    verify: bool = False


@dataclass(slots=True)
class QualityConfig:
    build_command: str = ""
    lint_command: str = ""
    format_command: str = ""
    test_command: str = ""
    gate_timeout_seconds: float = 300.0
    verification_retries: int = 3
    strict: bool = False


@dataclass(slots=True)
class CircuitBreakerConfig:
    enabled: bool = True
    no_progress_threshold: int = 3
    same_error_threshold: int = 5
    output_decline_percent: int = 70
    cooldown_minutes: float = 5.0


@dataclass(slots=True)
class RateLimitConfig:
    enabled: bool = True
    calls_per_hour: int = 80
    warning_threshold: int = 80


@dataclass(slots=True)
class ExitDetectionConfig:
    confidence_threshold: int = 70
    low_confidence_warn: int = 3


@dataclass(slots=True)
class MonitorConfig:
    interval_seconds: float = 30.0
    stall_threshold_seconds: float = 180.0


@dataclass(slots=True)
class ApprovalConfig:
    mode: str = "full-auto"


@dataclass(slots=True)
class HooksConfig:
    before: dict[str, list[str]] = field(default_factory=dict)
    after: dict[str, list[str]] = field(default_factory=dict)


@dataclass(slots=True)
class PathsConfig:
    state_dir: str = ".doyaken/state"
    logs_dir: str = ".doyaken/logs"
    prompts_dir: str = ".doyaken/prompts"
    global_prompts_dir: str = "~/.doyaken/prompts"
    tasks_dir: str = ".doyaken/tasks"


def _section(cls: type, data: dict[str, Any], name: str):
    payload = data.get(name, {})
    if not isinstance(payload, dict):
        raise ConfigError(f"[{name}] must be a table")
    try:
        return cls(**payload)
    except TypeError as exc:
        raise ConfigError(f"Invalid key in [{name}]: {exc}") from exc


def _phase_quality_table(phase: str, table: Any) -> dict[str, str]:
    if not isinstance(table, dict):
        raise ConfigError(f"[phase_quality.{phase}] must be a table")
    return {str(slot): str(command) for slot, command in table.items()}


@dataclass(slots=True)
class DoyakenConfig:
    agent: AgentConfig = field(default_factory=AgentConfig)
    timeouts: TimeoutsConfig = field(default_factory=TimeoutsConfig)
    skip_phases: SkipPhasesConfig = field(default_factory=SkipPhasesConfig)
    quality: QualityConfig = field(default_factory=QualityConfig)
    phase_quality: dict[str, dict[str, str]] = field(default_factory=dict)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    exit_detection: ExitDetectionConfig = field(default_factory=ExitDetectionConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    approval: ApprovalConfig = field(default_factory=ApprovalConfig)
    hooks: HooksConfig = field(default_factory=HooksConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)

    @classmethod
    def default(cls) -> DoyakenConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> DoyakenConfig:
        phase_quality = data.get("phase_quality", {})
        if not isinstance(phase_quality, dict):
            raise ConfigError("[phase_quality] must be a table of phase tables")
        config = cls(
            agent=_section(AgentConfig, data, "agent"),
            timeouts=_section(TimeoutsConfig, data, "timeouts"),
            skip_phases=_section(SkipPhasesConfig, data, "skip_phases"),
            quality=_section(QualityConfig, data, "quality"),
            phase_quality={
                str(phase): _phase_quality_table(phase, table)
                for phase, table in phase_quality.items()
            },
            circuit_breaker=_section(CircuitBreakerConfig, data, "circuit_breaker"),
            rate_limit=_section(RateLimitConfig, data, "rate_limit"),
            exit_detection=_section(ExitDetectionConfig, data, "exit_detection"),
            monitor=_section(MonitorConfig, data, "monitor"),
            approval=_section(ApprovalConfig, data, "approval"),
            hooks=_section(HooksConfig, data, "hooks"),
            paths=_section(PathsConfig, data, "paths"),
        )
        config.validate()
        return config

    def validate(self) -> None:
        if self.agent.max_attempts < 1:
            raise ConfigError("agent.max_attempts must be at least 1")
        if self.agent.retry_delay_seconds < 0:
            raise ConfigError("agent.retry_delay_seconds must not be negative")
        for name in PHASE_NAMES:
            if getattr(self.timeouts, name) <= 0:
                raise ConfigError(f"timeouts.{name} must be positive")
        if self.quality.verification_retries < 1:
            raise ConfigError("quality.verification_retries must be at least 1")
        if self.quality.gate_timeout_seconds <= 0:
            raise ConfigError("quality.gate_timeout_seconds must be positive")
        for phase, table in self.phase_quality.items():
            if phase not in PHASE_NAMES:
                raise ConfigError(f"phase_quality.{phase} is not a pipeline phase")
            unknown = sorted(set(table) - set(GATE_SLOTS))
            if unknown:
                raise ConfigError(f"phase_quality.{phase} has unknown gates: {', '.join(unknown)}")
        if not 0 < self.circuit_breaker.output_decline_percent <= 100:
            raise ConfigError("circuit_breaker.output_decline_percent must be within 1..100")
        if self.rate_limit.calls_per_hour < 1:
            raise ConfigError("rate_limit.calls_per_hour must be at least 1")
        if not 0 <= self.rate_limit.warning_threshold <= 100:
            raise ConfigError("rate_limit.warning_threshold must be within 0..100")
        if self.approval.mode not in APPROVAL_MODES:
            raise ConfigError(
                f"approval.mode must be one of {', '.join(APPROVAL_MODES)}, "
                f"got {self.approval.mode!r}"
            )
        for when, table in (("before", self.hooks.before), ("after", self.hooks.after)):
            for phase in table:
                if phase not in PHASE_NAMES:
                    raise ConfigError(f"hooks.{when}.{phase} is not a pipeline phase")

    def to_dict(self) -> dict:
        return {
            "agent": asdict(self.agent),
            "timeouts": asdict(self.timeouts),
            "skip_phases": asdict(self.skip_phases),
            "quality": asdict(self.quality),
            "phase_quality": {phase: dict(table) for phase, table in self.phase_quality.items()},
            "circuit_breaker": asdict(self.circuit_breaker),
            "rate_limit": asdict(self.rate_limit),
            "exit_detection": asdict(self.exit_detection),
            "monitor": asdict(self.monitor),
            "approval": asdict(self.approval),
            "hooks": {
                "before": {phase: list(skills) for phase, skills in self.hooks.before.items()},
                "after": {phase: list(skills) for phase, skills in self.hooks.after.items()},
            },
            "paths": asdict(self.paths),
        }


def _toml_key(key: str) -> str:
    return key if BARE_KEY_PATTERN.match(key) else json.dumps(key, ensure_ascii=False)


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def _dump_table(name: str, table: dict[str, Any], lines: list[str]) -> None:
    scalars = {key: value for key, value in table.items() if not isinstance(value, dict)}
    nested = {key: value for key, value in table.items() if isinstance(value, dict)}
    if scalars or not nested:
        lines.append(f"[{name}]")
        for key, value in scalars.items():
            lines.append(f"{_toml_key(key)} = {_toml_value(value)}")
        lines.append("")
    for key, value in nested.items():
        _dump_table(f"{name}.{_toml_key(key)}", value, lines)


def dumps_toml(config: DoyakenConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = [
        "agent",
        "timeouts",
        "skip_phases",
        "quality",
        "phase_quality",
        "circuit_breaker",
        "rate_limit",
        "exit_detection",
        "monitor",
        "approval",
        "hooks",
        "paths",
    ]
    for section in section_order:
        if section == "phase_quality" and not data[section]:
            continue
        _dump_table(section, data[section], lines)
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> DoyakenConfig:
    if not path.exists():
        return DoyakenConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"{path}: {exc}") from exc
    return DoyakenConfig.from_dict(data)


def save_config(path: Path, config: DoyakenConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
