from __future__ import annotations

from typing import Any, Literal

RepoState = Literal["unchanged", "partial", "applied"]

_STATE_TEXT = {
    "unchanged": "repository unchanged",
    "partial": "repository partially modified",
    "applied": "changes fully applied",
}


class ConductorError(RuntimeError):
    """Base error: says what was attempted, why it failed and the repository state."""

    default_state: RepoState = "unchanged"

    def __init__(
        self,
        message: str,
        *,
        attempted: str | None = None,
        repo_state: RepoState | None = None,
    ) -> None:
        super().__init__(message)
        self.reason = message
        self.attempted = attempted
        self.repo_state: RepoState = repo_state or self.default_state

    def __str__(self) -> str:
        prefix = f"{self.attempted}: " if self.attempted else ""
        return f"{prefix}{self.reason} ({_STATE_TEXT[self.repo_state]})"


class MalformedPlan(ConductorError):
    """Raised when a plan document cannot be parsed into a work-item tree."""

    def __init__(self, message: str, *, line_number: int | None = None, **kwargs: Any) -> None:
        if line_number is not None:
            message = f"line {line_number}: {message}"
        kwargs.setdefault("attempted", "parse plan")
        super().__init__(message, **kwargs)
        self.line_number = line_number


class InvalidTransition(ConductorError):
    """Raised when a status change would break the parent/child invariant."""


class ConcurrentModification(ConductorError):
    """Raised when a document changed on disk since it was loaded."""


class WorkItemNotFound(ConductorError):
    """Raised when an item id does not exist in the plan."""


class UnresolvedHistory(ConductorError):
    """Raised when ghost commit references need explicit confirmation."""

    def __init__(self, message: str, *, ghosts: list | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.ghosts = list(ghosts or [])


class DirtyWorkingTree(ConductorError):
    """Raised when an operation needs a clean working tree."""

    def __init__(self, message: str, *, paths: list[str] | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.paths = list(paths or [])


class RevertConflict(ConductorError):
    """Raised when a conflicted revert session cannot proceed yet."""

    default_state = "partial"

    def __init__(self, message: str, *, paths: list[str] | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.paths = list(paths or [])


class MergeConflict(ConductorError):
    """Raised when integrating a workspace branch stops on conflicts."""

    default_state = "partial"

    def __init__(self, message: str, *, paths: list[str] | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.paths = list(paths or [])


class NoConfirmation(ConductorError):
    """Raised when a confirmation gate was not explicitly passed."""


class SessionError(ConductorError):
    """Raised for invalid revert-session lifecycle requests."""


class PathConflict(ConductorError):
    """Raised when a target path already exists."""

    def __init__(self, message: str, *, suggestion: str | None = None, **kwargs: Any) -> None:
        if suggestion:
            message = f"{message} Try '{suggestion}' instead."
        super().__init__(message, **kwargs)
        self.suggestion = suggestion


class BranchExists(PathConflict):
    """Raised when a workspace branch already exists."""


class WorkspaceNotFound(ConductorError):
    """Raised when a workspace is not registered."""


class GitError(ConductorError):
    """Raised when a git subprocess fails."""


class GitCommandError(GitError):
    def __init__(
        self,
        message: str,
        *,
        args: list[str] | None = None,
        exit_code: int | None = None,
        stderr: str = "",
        reason: str = "other",
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.git_args = list(args or [])
        self.exit_code = exit_code
        self.stderr = stderr
        self.failure_reason = reason


class GitTimeout(GitError):
    """Raised when a git subprocess exceeds its timeout."""


class OperationCancelled(GitError):
    """Raised when the caller cancels a running git subprocess."""


class GitUnavailable(GitError):
    """Raised when the git binary cannot be executed."""


class RepositoryMissing(GitError):
    """Raised when the working directory is not inside a git repository."""
