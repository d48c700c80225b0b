from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any

from doyaken.state.store import StateStore


@dataclass(slots=True, frozen=True)
class ResumeCheckpoint:
    task_id: str
    last_completed_phase_index: int
    last_completed_phase_name: str
    timestamp: str

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ResumeCheckpoint | None:
        try:
            return cls(
                task_id=str(payload["task_id"]),
                last_completed_phase_index=int(payload["last_completed_phase_index"]),
                last_completed_phase_name=str(payload.get("last_completed_phase_name", "")),
                timestamp=str(payload.get("timestamp", "")),
            )
        except (KeyError, TypeError, ValueError):
            return None


class CheckpointStore:
    """Last completed phase per agent identity, cleared when a task finishes."""

    def __init__(self, store: StateStore, agent_id: str) -> None:
        self.store = store
        self.namespace = f"checkpoint-{agent_id}"

    def load(self, task_id: str | None = None) -> ResumeCheckpoint | None:
        payload = self.store.get_json(self.namespace, default={})
        if not isinstance(payload, dict) or not payload:
            return None
        checkpoint = ResumeCheckpoint.from_dict(payload)
        if checkpoint is None:
            return None
        if task_id is not None and checkpoint.task_id != task_id:
            return None
        return checkpoint

    def save(self, task_id: str, phase_index: int, phase_name: str) -> ResumeCheckpoint:
        checkpoint = ResumeCheckpoint(
            task_id=task_id,
            last_completed_phase_index=phase_index,
            last_completed_phase_name=phase_name,
            timestamp=datetime.now(UTC).replace(microsecond=0).isoformat(),
        )
        self.store.set_json(self.namespace, asdict(checkpoint))
        return checkpoint

    def clear(self) -> None:
        self.store.delete(self.namespace)
