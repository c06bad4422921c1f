from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from conductor.git import GitRunner
from conductor.plan.registry import TrackRegistry

PLAN_TEXT = """# Implementation Plan

# [ ] Track: Add login flow

## [ ] Phase 1: Setup
- [ ] Task: Create schema
- [ ] Task: Wire routes
    - [ ] Add handler

## [ ] Phase 2: Polish
- [ ] Task: Write docs
"""


def _run(cmd: list[str], cwd: Path, input_text: str | None = None) -> str:
    proc = subprocess.run(
        cmd, cwd=cwd, check=True, text=True, capture_output=True, input=input_text
    )
    return proc.stdout.strip()


class GitRepo:
    """A throwaway repository with helpers for building history in tests."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def git(self, *args: str, input_text: str | None = None) -> str:
        return _run(["git", *args], cwd=self.root, input_text=input_text)

    def write(self, relative: str, content: str) -> Path:
        path = self.root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path

    def commit(self, message: str, *paths: str) -> str:
        self.git("add", *(paths or ("-A",)))
        self.git("commit", "-m", message)
        return self.head()

    def commit_file(self, relative: str, content: str, message: str) -> str:
        self.write(relative, content)
        return self.commit(message, relative)

    def head(self) -> str:
        return self.git("rev-parse", "HEAD")

    def status(self) -> str:
        return self.git("status", "--porcelain")

    def log_subjects(self) -> list[str]:
        return self.git("log", "--format=%s").splitlines()


def init_git_repo(repo_path: Path) -> GitRepo:
    repo_path.mkdir(parents=True, exist_ok=True)
    _run(["git", "init"], cwd=repo_path)
    _run(["git", "symbolic-ref", "HEAD", "refs/heads/main"], cwd=repo_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo_path)
    _run(["git", "config", "user.name", "Test User"], cwd=repo_path)
    _run(["git", "config", "commit.gpgsign", "false"], cwd=repo_path)
    repo = GitRepo(repo_path.resolve())
    repo.commit_file("seed.txt", "seed\n", "seed")
    return repo


@pytest.fixture
def repo(tmp_path: Path) -> GitRepo:
    return init_git_repo(tmp_path / "repo")


@pytest.fixture
def registry(repo: GitRepo) -> TrackRegistry:
    GitRunner(repo.root).ensure_excluded()
    return TrackRegistry(repo.root / "conductor")


@pytest.fixture
def track(repo: GitRepo, registry: TrackRegistry) -> str:
    """Register the `login` track from PLAN_TEXT and commit it."""
    registry.add_track("login", "Add login flow", PLAN_TEXT)
    repo.commit("chore(conductor): Add new track 'Add login flow'", "conductor")
    return "login"
