import subprocess
from pathlib import Path

from doyaken.vcs import GitChangeDetector


def _run(cmd: list[str], cwd: Path) -> str:
    proc = subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)
    return proc.stdout.strip()


def _init_repo_with_commits(repo: Path) -> None:
    _run(["git", "init"], cwd=repo)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo)
    _run(["git", "config", "user.name", "Test User"], cwd=repo)

    (repo / "a.txt").write_text("a\n", encoding="utf-8")
    _run(["git", "add", "a.txt"], cwd=repo)
    _run(["git", "commit", "-m", "task-7: first"], cwd=repo)

    (repo / "b.txt").write_text("b\n", encoding="utf-8")
    _run(["git", "add", "b.txt"], cwd=repo)
    _run(["git", "commit", "-m", "unrelated"], cwd=repo)


def test_has_changes_tracks_working_tree(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_repo_with_commits(repo)
    detector = GitChangeDetector(repo)

    assert detector.has_changes() is False

    (repo / "a.txt").write_text("changed\n", encoding="utf-8")

    assert detector.has_changes() is True


def test_recent_commits_filters_by_task_id(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_repo_with_commits(repo)

    commits = GitChangeDetector(repo).recent_commits("task-7")

    assert "task-7: first" in commits
    assert "unrelated" not in commits


def test_outside_a_repository_reports_nothing(tmp_path: Path) -> None:
    detector = GitChangeDetector(tmp_path)

    assert detector.has_changes() is False
    assert detector.recent_commits("task-7") == ""
