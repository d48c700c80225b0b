from __future__ import annotations

import hashlib
import logging
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any

from doyaken.state.store import StateStore

logger = logging.getLogger("doyaken.circuit_breaker")

OUTPUT_WINDOW = 5
ERROR_TAIL_LINES = 20
HALF_OPEN_AFTER = 2

EventHook = Callable[[dict[str, Any]], None]


class BreakerState(StrEnum):
    CLOSED = "CLOSED"
    HALF_OPEN = "HALF_OPEN"
    OPEN = "OPEN"


@dataclass(slots=True)
class CircuitBreakerState:
    state: BreakerState = BreakerState.CLOSED
    no_progress_count: int = 0
    same_error_count: int = 0
    last_error_hash: str = ""
    output_sizes: list[int] = field(default_factory=list)
    last_transition_at: float = 0.0
    open_since: float = 0.0

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> CircuitBreakerState:
        try:
            state = BreakerState(payload.get("state", "CLOSED"))
        except ValueError:
            state = BreakerState.CLOSED
        sizes = payload.get("output_sizes", [])
        return cls(
            state=state,
            no_progress_count=int(payload.get("no_progress_count", 0)),
            same_error_count=int(payload.get("same_error_count", 0)),
            last_error_hash=str(payload.get("last_error_hash", "")),
            output_sizes=[int(size) for size in sizes][-OUTPUT_WINDOW:]
            if isinstance(sizes, list)
            else [],
            last_transition_at=float(payload.get("last_transition_at", 0.0)),
            open_since=float(payload.get("open_since", 0.0)),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["state"] = str(self.state)
        return payload


def hash_error_tail(output: str, lines: int = ERROR_TAIL_LINES) -> str:
    tail = "\n".join(output.strip().splitlines()[-lines:])
    if not tail:
        return ""
    return hashlib.sha256(tail.encode("utf-8")).hexdigest()[:16]


class CircuitBreaker:
    """Stall detector over task iterations.

    CLOSED moves to HALF_OPEN after two consecutive iterations without
    progress and to OPEN at ``no_progress_threshold``. The same failure tail
    seen ``same_error_threshold`` times in a row opens the breaker from any
    state. An OPEN breaker allows one probe once the cooldown has elapsed,
    and any iteration that both succeeds and leaves a diff closes it.
    """

    def __init__(
        self,
        store: StateStore | None,
        agent_id: str,
        *,
        enabled: bool = True,
        no_progress_threshold: int = 3,
        same_error_threshold: int = 5,
        output_decline_percent: int = 70,
        cooldown_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
        event_hook: EventHook | None = None,
    ) -> None:
        self.store = store
        self.agent_id = agent_id
        self.namespace = f"circuit-breaker-{agent_id}"
        self.enabled = enabled
        self.no_progress_threshold = no_progress_threshold
        self.same_error_threshold = same_error_threshold
        self.output_decline_percent = output_decline_percent
        self.cooldown_seconds = cooldown_seconds
        self.clock = clock
        self.event_hook = event_hook
        self.state = self._load()

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _load(self) -> CircuitBreakerState:
        if self.store is None:
            return CircuitBreakerState()
        payload = self.store.get_json(self.namespace, default={})
        if not isinstance(payload, dict) or not payload:
            return CircuitBreakerState()
        return CircuitBreakerState.from_dict(payload)

    def save(self) -> None:
        if self.store is not None:
            self.store.set_json(self.namespace, self.state.to_dict())

    def _transition(self, new_state: BreakerState, reason: str) -> None:
        old_state = self.state.state
        if old_state == new_state:
            return
        now = self.clock()
        self.state.state = new_state
        self.state.last_transition_at = now
        if new_state == BreakerState.OPEN:
            self.state.open_since = now
        logger.warning("Circuit breaker %s -> %s (%s)", old_state, new_state, reason)
        self._emit(
            {
                "event": "circuit_transition",
                "agent": self.agent_id,
                "from": str(old_state),
                "to": str(new_state),
                "reason": reason,
            }
        )

    def cooldown_remaining(self) -> float:
        if self.state.state != BreakerState.OPEN:
            return 0.0
        elapsed = self.clock() - self.state.open_since
        return max(0.0, self.cooldown_seconds - elapsed)

    def should_proceed(self) -> bool:
        if not self.enabled:
            return True
        if self.state.state != BreakerState.OPEN:
            return True
        remaining = self.cooldown_remaining()
        if remaining <= 0:
            self._transition(BreakerState.HALF_OPEN, "cooldown expired")
            self.save()
            return True
        logger.info("Circuit breaker OPEN; %.0fs until cooldown expires", remaining)
        return False

    def _output_declining(self, size: int) -> bool:
        sizes = self.state.output_sizes
        if len(sizes) < 2:
            return False
        average = sum(sizes) // len(sizes)
        if average == 0:
            return False
        return size < average * self.output_decline_percent // 100

    def _record_output_size(self, size: int) -> None:
        self.state.output_sizes.append(size)
        del self.state.output_sizes[:-OUTPUT_WINDOW]

    def _on_progress(self) -> None:
        self.state.no_progress_count = 0
        self.state.same_error_count = 0
        self.state.last_error_hash = ""
        if self.state.state != BreakerState.CLOSED:
            self._transition(BreakerState.CLOSED, "progress detected")

    def _on_no_progress(self, reason: str) -> None:
        self.state.no_progress_count += 1
        count = self.state.no_progress_count
        logger.info("No progress (%s); consecutive count %d", reason, count)
        if self.state.state == BreakerState.CLOSED and count >= HALF_OPEN_AFTER:
            self._transition(BreakerState.HALF_OPEN, f"{count} iterations without progress")
        if self.state.state == BreakerState.HALF_OPEN and count >= self.no_progress_threshold:
            self._transition(BreakerState.OPEN, f"{count} iterations without progress")

    def record_iteration(
        self, *, success: bool, output: str = "", has_changes: bool = False
    ) -> BreakerState:
        """Fold one finished iteration into the automaton and persist the result."""
        if not self.enabled:
            return self.state.state

        size = len(output.encode("utf-8"))
        declining = self._output_declining(size)
        self._record_output_size(size)

        if success and has_changes and not declining:
            self._on_progress()
        elif success:
            self._on_no_progress("output declining" if declining else "no file changes")
        else:
            error_hash = hash_error_tail(output)
            if error_hash and error_hash == self.state.last_error_hash:
                self.state.same_error_count += 1
            else:
                self.state.same_error_count = 1
                self.state.last_error_hash = error_hash
            self._on_no_progress("output declining" if declining else "iteration failed")
            if error_hash and self.state.same_error_count >= self.same_error_threshold:
                self._transition(
                    BreakerState.OPEN,
                    f"same error repeated {self.state.same_error_count} times",
                )

        self.save()
        return self.state.state

    def reset(self) -> None:
        self.state = CircuitBreakerState()
        self.save()
        self._emit({"event": "circuit_reset", "agent": self.agent_id})

    def status(self) -> dict[str, Any]:
        payload = self.state.to_dict()
        payload["enabled"] = self.enabled
        payload["cooldown_remaining_seconds"] = round(self.cooldown_remaining(), 1)
        return payload
