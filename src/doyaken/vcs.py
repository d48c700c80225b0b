from __future__ import annotations

import logging
import subprocess
from pathlib import Path

logger = logging.getLogger("doyaken.vcs")


class GitChangeDetector:
    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root

    def _run_git(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        return subprocess.run(
            ["git", "--no-pager", *args],
            cwd=self.repo_root,
            text=True,
            capture_output=True,
        )

    def has_changes(self) -> bool:
        """True when ``git diff --stat HEAD`` reports anything. Without git, assume progress."""
        try:
            proc = self._run_git(["diff", "--stat", "HEAD"])
        except FileNotFoundError:
            logger.debug("git not installed; treating iteration as progress")
            return True
        if proc.returncode != 0:
            return False
        return bool(proc.stdout.strip())

    def recent_commits(self, task_id: str, limit: int = 10) -> str:
        try:
            proc = self._run_git(["log", "--oneline", f"-{limit}", f"--grep={task_id}"])
        except FileNotFoundError:
            return ""
        if proc.returncode != 0:
            return ""
        return proc.stdout.strip()
