from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from conductor.config import WorkspacesConfig
from conductor.errors import (
    BranchExists,
    DirtyWorkingTree,
    GitCommandError,
    MergeConflict,
    PathConflict,
    SessionError,
    WorkspaceNotFound,
)
from conductor.git import GitRunner
from conductor.locks import file_lock, pid_alive
from conductor.state.git_notes import GitNotesStore

log = logging.getLogger(__name__)

MERGE_LOCK_FILENAME = "conductor-merge.lock"


class WorkspaceState(str, Enum):
    ACTIVE = "active"
    MERGED = "merged"
    ORPHANED = "orphaned"


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def slugify(value: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9._-]+", "-", value.strip()).strip("-.")
    return slug or "workspace"


@dataclass(slots=True)
class Workspace:
    path: Path
    branch: str
    owner: str
    base_branch: str
    state: WorkspaceState = WorkspaceState.ACTIVE
    created_at: str = ""
    pid: int = 0
    merge_commit: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": str(self.path),
            "branch": self.branch,
            "owner": self.owner,
            "base_branch": self.base_branch,
            "state": self.state.value,
            "created_at": self.created_at,
            "pid": self.pid,
            "merge_commit": self.merge_commit,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Workspace:
        return cls(
            path=Path(str(data["path"])),
            branch=str(data["branch"]),
            owner=str(data.get("owner", "")),
            base_branch=str(data.get("base_branch", "")),
            state=WorkspaceState(data.get("state", WorkspaceState.ACTIVE.value)),
            created_at=str(data.get("created_at", "")),
            pid=int(data.get("pid") or 0),
            merge_commit=data.get("merge_commit"),
        )


@dataclass(slots=True)
class MergeResult:
    workspace: Workspace
    merge_commit: str
    target_branch: str


class WorkspaceManager:
    """Creates, merges and removes isolated worktrees for concurrent work."""

    def __init__(
        self,
        git: GitRunner,
        state: GitNotesStore,
        *,
        config: WorkspacesConfig | None = None,
        main_branch: str = "main",
    ) -> None:
        self.git = git
        self.state = state
        self.config = config or WorkspacesConfig()
        self.main_branch = main_branch
        self.root = (self.git.repo_root / self.config.root).resolve()

    def _merge_target_for(self, base_ref: str | None) -> str:
        """The branch a new workspace merges back into.

        A detached HEAD or a non-branch start point falls back to the main line.
        """
        if base_ref:
            return base_ref if self.git.branch_exists(base_ref) else self.main_branch
        current = self.git.current_branch()
        return self.main_branch if current == "HEAD" else current

    def _branch_name(self, branch_hint: str) -> str:
        hint = branch_hint.strip().strip("/")
        if not hint:
            raise PathConflict("Empty branch name.", attempted="create workspace")
        if hint.startswith(self.config.branch_prefix):
            return hint
        return f"{self.config.branch_prefix}{hint}"

    def _suggest(self, branch: str, path: Path) -> str:
        counter = 2
        while True:
            candidate = f"{branch}-{counter}"
            candidate_path = path.with_name(f"{path.name}-{counter}")
            if not self.git.branch_exists(candidate) and not candidate_path.exists():
                return candidate
            counter += 1

    def create(
        self,
        owner: str,
        branch_hint: str,
        base_ref: str | None = None,
        *,
        owner_pid: int | None = None,
    ) -> Workspace:
        attempted = f"create workspace {branch_hint}"
        self.git.ensure_repository()
        branch = self._branch_name(branch_hint)
        path = self.root / slugify(branch)
        if self.git.branch_exists(branch):
            raise BranchExists(
                f"Branch '{branch}' already exists.",
                suggestion=self._suggest(branch, path),
                attempted=attempted,
            )
        if path.exists():
            raise PathConflict(
                f"Workspace directory {path} already exists.",
                suggestion=self._suggest(branch, path),
                attempted=attempted,
            )
        start_point = base_ref or "HEAD"
        base = self._merge_target_for(base_ref)
        self.git.ensure_excluded()
        self.root.mkdir(parents=True, exist_ok=True)
        self.git.run(
            ["worktree", "add", "-b", branch, str(path), start_point], cancellable=False
        )
        workspace = Workspace(
            path=path,
            branch=branch,
            owner=owner,
            base_branch=base,
            created_at=_utcnow_iso(),
            pid=owner_pid or os.getpid(),
        )
        self.state.put_workspace(workspace.to_dict())
        log.info("created workspace %s for %s at %s", branch, owner, path)
        return workspace

    def get(self, branch: str) -> Workspace:
        registered = self.state.get_workspaces()
        payload = registered.get(branch) or registered.get(self._branch_name(branch))
        if not isinstance(payload, dict):
            raise WorkspaceNotFound(
                f"No workspace registered for branch '{branch}'.", attempted="look up workspace"
            )
        return Workspace.from_dict(payload)

    def _live_worktrees(self) -> dict[str, str]:
        """Map worktree path to checked-out branch from `git worktree list --porcelain`."""
        result = self.git.run(["worktree", "list", "--porcelain"], check=False, cancellable=False)
        worktrees: dict[str, str] = {}
        current: str | None = None
        for line in result.stdout.splitlines():
            if line.startswith("worktree "):
                current = str(Path(line[len("worktree ") :]).resolve())
                worktrees[current] = ""
            elif line.startswith("branch ") and current is not None:
                worktrees[current] = line[len("branch ") :].removeprefix("refs/heads/")
        return worktrees

    def list(self) -> list[Workspace]:
        live = self._live_worktrees()
        workspaces: list[Workspace] = []
        for payload in self.state.get_workspaces().values():
            if not isinstance(payload, dict):
                continue
            workspace = Workspace.from_dict(payload)
            if workspace.state == WorkspaceState.ACTIVE:
                registered = str(workspace.path.resolve())
                vanished = not workspace.path.exists() or registered not in live
                if vanished or not pid_alive(workspace.pid):
                    workspace.state = WorkspaceState.ORPHANED
            workspaces.append(workspace)
        return sorted(workspaces, key=lambda workspace: (workspace.created_at, workspace.branch))

    def _require_clean(self, cwd: Path, label: str, attempted: str) -> None:
        dirty = self.git.dirty_paths(cwd=cwd)
        if dirty:
            raise DirtyWorkingTree(
                f"{label} has uncommitted changes: {', '.join(dirty)}",
                paths=dirty,
                attempted=attempted,
            )

    def merge(self, workspace: Workspace, target_branch: str | None = None) -> MergeResult:
        attempted = f"merge workspace {workspace.branch}"
        target = target_branch or workspace.base_branch or self.main_branch
        lock = self.git.git_common_dir() / MERGE_LOCK_FILENAME
        with file_lock(lock, self.config.merge_lock_timeout_seconds):
            if workspace.path.exists():
                self._require_clean(workspace.path, "Workspace", attempted)
            self._require_clean(self.git.repo_root, "Main working tree", attempted)
            if self.git.current_branch() != target:
                self.git.run(["checkout", target], cancellable=False)
            message = f"Merge workspace '{workspace.branch}' ({workspace.owner})"
            result = self.git.run(
                ["merge", "--no-ff", "--no-edit", "-m", message, workspace.branch], check=False
            )
            if not result.ok:
                conflicts = self.git.unmerged_paths()
                if conflicts:
                    raise MergeConflict(
                        f"Merging {workspace.branch} into {target} stopped on conflicts: "
                        f"{', '.join(conflicts)}. Resolve them and run resume, or abort.",
                        paths=conflicts,
                        attempted=attempted,
                    )
                raise self.git.error_for(result)
            return self._record_merge(workspace, target)

    def _record_merge(self, workspace: Workspace, target: str) -> MergeResult:
        merge_commit = self.git.head()
        workspace.state = WorkspaceState.MERGED
        workspace.merge_commit = merge_commit
        self.state.put_workspace(workspace.to_dict())
        log.info("merged %s into %s as %s", workspace.branch, target, merge_commit)
        return MergeResult(workspace=workspace, merge_commit=merge_commit, target_branch=target)

    def _merge_in_progress(self) -> bool:
        return self.git.ref_exists("MERGE_HEAD")

    def resume_merge(self, workspace: Workspace) -> MergeResult:
        attempted = f"resume merge of {workspace.branch}"
        if not self._merge_in_progress():
            raise SessionError("No merge is in progress.", attempted=attempted)
        conflicts = self.git.unmerged_paths()
        if conflicts:
            raise MergeConflict(
                f"Resolve the remaining conflicts first: {', '.join(conflicts)}",
                paths=conflicts,
                attempted=attempted,
            )
        self.git.run(["add", "-u"], cancellable=False)
        self.git.run(["commit", "--no-edit"], env={"GIT_EDITOR": "true"}, cancellable=False)
        return self._record_merge(workspace, self.git.current_branch())

    def abort_merge(self, workspace: Workspace) -> None:
        if not self._merge_in_progress():
            raise SessionError(
                "No merge is in progress.", attempted=f"abort merge of {workspace.branch}"
            )
        self.git.run(["merge", "--abort"], cancellable=False)
        log.info("aborted merge of %s", workspace.branch)

    def cleanup(self, workspace: Workspace, *, force: bool = False) -> None:
        attempted = f"clean up workspace {workspace.branch}"
        if workspace.path.exists():
            if not force:
                self._require_clean(workspace.path, "Workspace", attempted)
            remove = ["worktree", "remove", str(workspace.path)]
            if force:
                remove.insert(2, "--force")
            self.git.run(remove, cancellable=False)
        else:
            self.git.run(["worktree", "prune"], check=False, cancellable=False)

        if self.git.branch_exists(workspace.branch):
            try:
                self.git.run(["branch", "-D", workspace.branch], cancellable=False)
            except GitCommandError:
                log.warning("branch %s could not be deleted; restoring worktree", workspace.branch)
                self.git.run(
                    ["worktree", "add", str(workspace.path), workspace.branch],
                    check=False,
                    cancellable=False,
                )
                raise
        self.state.drop_workspace(workspace.branch)
        log.info("removed workspace %s", workspace.branch)
