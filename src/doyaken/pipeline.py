from __future__ import annotations

from dataclasses import dataclass, replace

from doyaken.approval import AutonomyMode
from doyaken.config import PHASE_NAMES, DoyakenConfig
from doyaken.gates import sanitize_gates
from doyaken.models import Phase, QualityGates

DEFAULT_TIMEOUTS = {
    "expand": 900,
    "triage": 540,
    "plan": 900,
    "implement": 5400,
    "test": 1800,
    "docs": 900,
    "review": 1800,
    "verify": 900,
}

DEFAULT_PHASES: tuple[Phase, ...] = tuple(
    Phase(
        name=name,
        order_index=index,
        prompt_template=f"phases/{index}-{name}.md",
        timeout_seconds=float(DEFAULT_TIMEOUTS[name]),
    )
    for index, name in enumerate(PHASE_NAMES)
)


@dataclass(slots=True, frozen=True)
class PipelineConfig:
    """Everything the orchestrator needs for one run, fixed for the run's duration."""

    phases: tuple[Phase, ...] = DEFAULT_PHASES
    quality: QualityGates = QualityGates()
    gate_timeout_seconds: float = 300.0
    max_attempts: int = 2
    retry_delay_seconds: float = 5.0
    no_fallback: bool = False
    monitor_interval_seconds: float = 30.0
    stall_threshold_seconds: float = 180.0
    approval_mode: AutonomyMode = AutonomyMode.FULL_AUTO
    context_line_cap: int = 200

    def __post_init__(self) -> None:
        indices = [phase.order_index for phase in self.phases]
        if indices != sorted(indices) or len(set(indices)) != len(indices):
            raise ValueError("phase order_index values must be unique and ascending")

    def phase(self, name: str) -> Phase:
        for phase in self.phases:
            if phase.name == name:
                return phase
        raise KeyError(name)

    def only(self, *names: str) -> PipelineConfig:
        """Pipeline restricted to ``names``, keeping each phase's original index."""
        return replace(self, phases=tuple(phase for phase in self.phases if phase.name in names))


def build_pipeline(config: DoyakenConfig) -> PipelineConfig:
    quality = sanitize_gates(
        QualityGates(
            build=config.quality.build_command,
            lint=config.quality.lint_command,
            format=config.quality.format_command,
            test=config.quality.test_command,
        ),
        strict=config.quality.strict,
    )
    phases = []
    for phase in DEFAULT_PHASES:
        override = config.phase_quality.get(phase.name)
        phases.append(
            replace(
                phase,
                timeout_seconds=float(getattr(config.timeouts, phase.name)),
                skip=bool(getattr(config.skip_phases, phase.name)),
                verification_retry_budget=config.quality.verification_retries,
                quality=sanitize_gates(QualityGates(**override), strict=config.quality.strict)
                if override is not None
                else None,
            )
        )
    return PipelineConfig(
        phases=tuple(phases),
        quality=quality,
        gate_timeout_seconds=config.quality.gate_timeout_seconds,
        max_attempts=config.agent.max_attempts,
        retry_delay_seconds=config.agent.retry_delay_seconds,
        no_fallback=config.agent.no_fallback,
        monitor_interval_seconds=config.monitor.interval_seconds,
        stall_threshold_seconds=config.monitor.stall_threshold_seconds,
        approval_mode=AutonomyMode(config.approval.mode),
    )
