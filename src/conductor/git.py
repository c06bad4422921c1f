from __future__ import annotations

import logging
import os
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from conductor.errors import (
    GitCommandError,
    GitTimeout,
    GitUnavailable,
    OperationCancelled,
    RepositoryMissing,
)

log = logging.getLogger(__name__)

RUNTIME_PATTERNS = (".conductor/", ".session_log", ".plan.lock", ".registry.lock")

# (substring of lowercased stderr, classified reason); first match wins.
FAILURE_PATTERNS: tuple[tuple[str, str], ...] = (
    ("not a git repository", "not_a_repository"),
    ("could not revert", "conflict"),
    ("could not apply", "conflict"),
    ("automatic merge failed", "conflict"),
    ("conflict", "conflict"),
    ("is not possible because you have unmerged files", "conflict"),
    ("your local changes would be overwritten", "dirty"),
    ("untracked working tree files would be overwritten", "dirty"),
    ("contains modified or untracked files", "dirty"),
    ("already exists", "exists"),
    ("is already checked out", "exists"),
    ("bad object", "bad_object"),
    ("bad revision", "bad_object"),
    ("unknown revision", "bad_object"),
    ("not a valid object name", "bad_object"),
    ("invalid object name", "bad_object"),
    ("is a merge but no -m option was given", "merge_needs_mainline"),
    ("nothing to commit", "empty"),
    ("previous cherry-pick is now empty", "empty"),
)


def classify_failure(stderr: str) -> str:
    lowered = stderr.lower()
    for needle, reason in FAILURE_PATTERNS:
        if needle in lowered:
            return reason
    return "other"


class CancelToken:
    """Caller-side cancellation flag polled while a git subprocess runs."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(slots=True)
class GitResult:
    args: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class GitRunner:
    POLL_SECONDS = 0.05

    def __init__(
        self,
        repo_root: Path,
        *,
        binary: str = "git",
        timeout_seconds: float = 60.0,
        cancel_token: CancelToken | None = None,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.binary = binary
        self.timeout_seconds = timeout_seconds
        self.cancel_token = cancel_token or CancelToken()

    def run(
        self,
        args: list[str],
        *,
        check: bool = True,
        input_text: str | None = None,
        env: dict[str, str] | None = None,
        cwd: Path | None = None,
        cancellable: bool = True,
        timeout_seconds: float | None = None,
    ) -> GitResult:
        command = [self.binary, "--no-pager", *args]
        run_cwd = cwd or self.repo_root
        attempted = f"git {' '.join(args[:3])}"
        if cancellable and self.cancel_token.cancelled:
            raise OperationCancelled("Cancelled before start.", attempted=attempted)

        run_env = None
        if env is not None:
            run_env = os.environ.copy()
            run_env.update(env)

        if not Path(run_cwd).is_dir():
            raise RepositoryMissing(
                f"Working directory does not exist: {run_cwd}", attempted=attempted
            )

        log.debug("running %s in %s", command, run_cwd)
        try:
            proc = subprocess.Popen(
                command,
                cwd=run_cwd,
                stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                env=run_env,
            )
        except FileNotFoundError as exc:
            raise GitUnavailable(
                f"git binary not found: {self.binary}", attempted=attempted
            ) from exc

        limit = self.timeout_seconds if timeout_seconds is None else timeout_seconds
        deadline = time.monotonic() + limit
        pending_input = input_text
        try:
            while True:
                try:
                    stdout, stderr = proc.communicate(
                        input=pending_input, timeout=self.POLL_SECONDS
                    )
                    break
                except subprocess.TimeoutExpired:
                    pending_input = None
                    if cancellable and self.cancel_token.cancelled:
                        self._kill(proc)
                        raise OperationCancelled(
                            "Cancelled while running.", attempted=attempted, repo_state="partial"
                        ) from None
                    if time.monotonic() > deadline:
                        self._kill(proc)
                        raise GitTimeout(
                            f"Timed out after {limit:.1f}s.",
                            attempted=attempted,
                            repo_state="partial",
                        ) from None
        except KeyboardInterrupt:
            self._kill(proc)
            self.cancel_token.cancel()
            raise OperationCancelled(
                "Interrupted by user.", attempted=attempted, repo_state="partial"
            ) from None

        result = GitResult(
            args=list(args), returncode=proc.returncode, stdout=stdout, stderr=stderr
        )
        if check and not result.ok:
            raise self.error_for(result)
        return result

    @staticmethod
    def _kill(proc: subprocess.Popen[str]) -> None:
        proc.kill()
        try:
            proc.communicate(timeout=5)
        except subprocess.TimeoutExpired:
            log.warning("git process %s did not exit after kill", proc.pid)

    @staticmethod
    def error_for(result: GitResult) -> GitCommandError | RepositoryMissing:
        detail = result.stderr.strip() or result.stdout.strip() or f"exit code {result.returncode}"
        reason = classify_failure(f"{result.stderr}\n{result.stdout}")
        attempted = f"git {' '.join(result.args[:3])}"
        if reason == "not_a_repository":
            return RepositoryMissing(detail, attempted=attempted)
        return GitCommandError(
            detail,
            attempted=attempted,
            args=result.args,
            exit_code=result.returncode,
            stderr=result.stderr,
            reason=reason,
        )

    def out(self, args: list[str], **kwargs: Any) -> str:
        return self.run(args, **kwargs).stdout.strip()

    def ensure_repository(self) -> None:
        """Fail fast before any mutation when git or the repository is missing."""
        result = self.run(["rev-parse", "--is-inside-work-tree"], check=False, cancellable=False)
        if not result.ok or result.stdout.strip() != "true":
            raise RepositoryMissing(
                f"Not inside a git work tree: {self.repo_root}",
                attempted="locate repository",
            )

    def is_repository(self) -> bool:
        try:
            self.ensure_repository()
        except (RepositoryMissing, GitUnavailable):
            return False
        return True

    def head(self, *, cwd: Path | None = None) -> str:
        return self.out(["rev-parse", "HEAD"], cwd=cwd, cancellable=False)

    def current_branch(self, *, cwd: Path | None = None) -> str:
        return self.out(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd, cancellable=False)

    def branch_exists(self, branch: str) -> bool:
        result = self.run(
            ["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], check=False
        )
        return result.ok

    def commit_exists(self, sha: str) -> bool:
        result = self.run(["cat-file", "-e", f"{sha}^{{commit}}"], check=False)
        return result.ok

    def commit_reachable(self, sha: str) -> bool:
        """True when HEAD or some branch or tag still contains `sha`.

        Objects left behind by an amend or rebase stay in the object database
        until gc runs; they are not reachable.
        """
        if not self.commit_exists(sha):
            return False
        if self.run(["merge-base", "--is-ancestor", sha, "HEAD"], check=False).ok:
            return True
        result = self.run(["for-each-ref", "--contains", sha, "--format=%(refname)"], check=False)
        return any(
            ref and not ref.startswith(("refs/notes/", "refs/stash"))
            for ref in result.stdout.splitlines()
        )

    def git_common_dir(self) -> Path:
        raw = self.out(["rev-parse", "--git-common-dir"], cancellable=False)
        path = Path(raw)
        if not path.is_absolute():
            path = self.repo_root / path
        return path.resolve()

    @staticmethod
    def _status_line_path(status_line: str) -> str:
        candidate = status_line[3:].strip()
        if " -> " in candidate:
            candidate = candidate.split(" -> ", maxsplit=1)[1].strip()
        return candidate

    def dirty_paths(
        self, *, cwd: Path | None = None, ignore_prefixes: tuple[str, ...] = ()
    ) -> list[str]:
        proc = self.run(["status", "--porcelain"], cwd=cwd, cancellable=False)
        paths: list[str] = []
        for line in proc.stdout.splitlines():
            if not line.strip():
                continue
            path = self._status_line_path(line)
            if not path or path.startswith(ignore_prefixes):
                continue
            paths.append(path)
        return paths

    def unmerged_paths(self, *, cwd: Path | None = None) -> list[str]:
        proc = self.run(
            ["diff", "--name-only", "--diff-filter=U"], cwd=cwd, check=False, cancellable=False
        )
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]

    def ensure_excluded(self, patterns: tuple[str, ...] = RUNTIME_PATTERNS) -> None:
        """Keep runtime files out of `git status` via the repository-local exclude file."""
        exclude_file = self.git_common_dir() / "info" / "exclude"
        existing = ""
        if exclude_file.exists():
            existing = exclude_file.read_text(encoding="utf-8")
        present = {line.strip() for line in existing.splitlines()}
        missing = [pattern for pattern in patterns if pattern not in present]
        if not missing:
            return
        exclude_file.parent.mkdir(parents=True, exist_ok=True)
        prefix = "" if not existing or existing.endswith("\n") else "\n"
        with exclude_file.open("a", encoding="utf-8") as handle:
            handle.write(prefix + "\n".join(missing) + "\n")

    def ref_exists(self, ref: str, *, cwd: Path | None = None) -> bool:
        result = self.run(
            ["rev-parse", "-q", "--verify", ref], cwd=cwd, check=False, cancellable=False
        )
        return result.ok
