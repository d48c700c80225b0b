from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Any, Literal

from doyaken.errors import RunInterrupted
from doyaken.models import Phase, Task

logger = logging.getLogger("doyaken.hooks")

HookWhen = Literal["before", "after"]
SkillRunner = Callable[[str, Phase, Task], Awaitable[None]]
EventHook = Callable[[dict[str, Any]], None]


class SkillHooks:
    """Best-effort skills run around each phase.

    A failing skill is logged and reported as an event; it never fails the
    phase. Interrupts still propagate.
    """

    def __init__(
        self,
        before: Mapping[str, Sequence[str]] | None = None,
        after: Mapping[str, Sequence[str]] | None = None,
        runner: SkillRunner | None = None,
        event_hook: EventHook | None = None,
    ) -> None:
        self.before = {phase: list(skills) for phase, skills in (before or {}).items()}
        self.after = {phase: list(skills) for phase, skills in (after or {}).items()}
        self.runner = runner
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def skills_for(self, when: HookWhen, phase_name: str) -> list[str]:
        table = self.before if when == "before" else self.after
        return list(table.get(phase_name, []))

    async def run(self, when: HookWhen, phase: Phase, task: Task) -> list[str]:
        """Run the configured skills and return the names of those that failed."""
        failed: list[str] = []
        skills = self.skills_for(when, phase.name)
        if not skills or self.runner is None:
            return failed
        for skill in skills:
            logger.info("Running %s-%s skill: %s", when, phase.name, skill)
            try:
                await self.runner(skill, phase, task)
            except RunInterrupted:
                raise
            except Exception as exc:
                failed.append(skill)
                logger.warning("Skill %s (%s %s) failed: %s", skill, when, phase.name, exc)
                self._emit(
                    {
                        "event": "hook_failed",
                        "when": when,
                        "phase": phase.name,
                        "skill": skill,
                        "error": str(exc),
                    }
                )
        return failed
