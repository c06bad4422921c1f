import os
import shutil
import subprocess

import pytest

from conductor.errors import (
    BranchExists,
    DirtyWorkingTree,
    MergeConflict,
    SessionError,
    WorkspaceNotFound,
)
from conductor.git import GitRunner
from conductor.state.git_notes import GitNotesStore
from conductor.workspaces import WorkspaceManager, WorkspaceState, slugify
from conftest import GitRepo


def _manager(repo: GitRepo) -> WorkspaceManager:
    git = GitRunner(repo.root)
    return WorkspaceManager(git, GitNotesStore(repo.root, git=git))


def _dead_pid() -> int:
    proc = subprocess.Popen(["git", "--version"], stdout=subprocess.DEVNULL)
    proc.wait()
    return proc.pid


def test_slugify_flattens_branch_names() -> None:
    assert slugify("feature/x") == "feature-x"
    assert slugify("  Agent 1 / Fix: Login  ") == "Agent-1-Fix-Login"


def test_create_registers_worktree_on_new_branch(repo: GitRepo) -> None:
    manager = _manager(repo)

    workspace = manager.create("agent-1", "feature/x")

    assert workspace.branch == "feature/x"
    assert workspace.base_branch == "main"
    assert workspace.path == manager.root / "feature-x"
    assert (workspace.path / "seed.txt").read_text(encoding="utf-8") == "seed\n"
    assert GitRepo(workspace.path).git("rev-parse", "--abbrev-ref", "HEAD") == "feature/x"
    assert manager.get("feature/x").owner == "agent-1"
    assert [item.state for item in manager.list()] == [WorkspaceState.ACTIVE]
    assert repo.status() == ""


def test_create_on_existing_branch_fails_without_creating_directory(repo: GitRepo) -> None:
    repo.git("branch", "feature/x")
    manager = _manager(repo)

    with pytest.raises(BranchExists) as excinfo:
        manager.create("agent-1", "feature/x")

    assert excinfo.value.suggestion == "feature/x-2"
    assert not (manager.root / "feature-x").exists()
    assert manager.list() == []


def test_two_owners_get_separate_trees(repo: GitRepo) -> None:
    manager = _manager(repo)
    first = manager.create("agent-1", "feature/a")
    second = manager.create("agent-2", "feature/b")

    GitRepo(first.path).write("a.txt", "from a\n")

    assert first.path != second.path
    assert not (second.path / "a.txt").exists()
    assert not (repo.root / "a.txt").exists()


def test_merge_creates_no_fast_forward_commit(repo: GitRepo) -> None:
    manager = _manager(repo)
    workspace = manager.create("agent-1", "feature/x")
    GitRepo(workspace.path).commit_file("feature.txt", "feature\n", "feat: add feature")

    result = manager.merge(workspace)

    assert result.target_branch == "main"
    assert result.merge_commit == repo.head()
    parents = repo.git("rev-list", "--parents", "-n", "1", "HEAD").split()
    assert len(parents) == 3
    assert (repo.root / "feature.txt").exists()
    assert manager.get("feature/x").state == WorkspaceState.MERGED
    assert manager.get("feature/x").merge_commit == result.merge_commit


def test_merge_conflict_can_be_aborted(repo: GitRepo) -> None:
    manager = _manager(repo)
    workspace = manager.create("agent-1", "feature/x")
    GitRepo(workspace.path).commit_file("seed.txt", "from workspace\n", "feat: edit seed")
    repo.commit_file("seed.txt", "from main\n", "chore: edit seed")
    head = repo.head()

    with pytest.raises(MergeConflict) as excinfo:
        manager.merge(workspace)
    assert excinfo.value.paths == ["seed.txt"]

    manager.abort_merge(workspace)

    assert repo.head() == head
    assert repo.status() == ""
    assert manager.get("feature/x").state == WorkspaceState.ACTIVE
    with pytest.raises(SessionError):
        manager.abort_merge(workspace)


def test_resumed_merge_records_merge_commit(repo: GitRepo) -> None:
    manager = _manager(repo)
    workspace = manager.create("agent-1", "feature/x")
    GitRepo(workspace.path).commit_file("seed.txt", "from workspace\n", "feat: edit seed")
    repo.commit_file("seed.txt", "from main\n", "chore: edit seed")
    with pytest.raises(MergeConflict):
        manager.merge(workspace)

    with pytest.raises(MergeConflict):
        manager.resume_merge(workspace)
    repo.write("seed.txt", "merged\n")
    repo.git("add", "seed.txt")
    result = manager.resume_merge(workspace)

    assert result.merge_commit == repo.head()
    assert len(repo.git("rev-list", "--parents", "-n", "1", "HEAD").split()) == 3
    assert manager.get("feature/x").state == WorkspaceState.MERGED


def test_merge_refuses_dirty_workspace(repo: GitRepo) -> None:
    manager = _manager(repo)
    workspace = manager.create("agent-1", "feature/x")
    GitRepo(workspace.path).write("scratch.txt", "wip\n")
    head = repo.head()

    with pytest.raises(DirtyWorkingTree):
        manager.merge(workspace)

    assert repo.head() == head


def test_cleanup_refuses_dirty_workspace_unless_forced(repo: GitRepo) -> None:
    manager = _manager(repo)
    workspace = manager.create("agent-1", "feature/x")
    GitRepo(workspace.path).write("scratch.txt", "wip\n")

    with pytest.raises(DirtyWorkingTree):
        manager.cleanup(workspace)
    assert workspace.path.exists()

    manager.cleanup(workspace, force=True)

    assert not workspace.path.exists()
    assert not GitRunner(repo.root).branch_exists("feature/x")
    with pytest.raises(WorkspaceNotFound):
        manager.get("feature/x")


def test_workspaces_with_dead_owner_or_missing_tree_are_orphaned(repo: GitRepo) -> None:
    manager = _manager(repo)
    live = manager.create("agent-1", "feature/live", owner_pid=os.getpid())
    dead = manager.create("agent-2", "feature/dead", owner_pid=_dead_pid())
    gone = manager.create("agent-3", "feature/gone", owner_pid=os.getpid())
    shutil.rmtree(gone.path)

    states = {workspace.branch: workspace.state for workspace in manager.list()}

    assert states == {
        live.branch: WorkspaceState.ACTIVE,
        dead.branch: WorkspaceState.ORPHANED,
        gone.branch: WorkspaceState.ORPHANED,
    }

    manager.cleanup(manager.get("feature/gone"))
    assert not GitRunner(repo.root).branch_exists("feature/gone")


def test_workspace_from_detached_head_merges_into_main_line(repo: GitRepo) -> None:
    repo.git("branch", "trunk")
    repo.git("checkout", "-q", "--detach")
    git = GitRunner(repo.root)
    manager = WorkspaceManager(git, GitNotesStore(repo.root, git=git), main_branch="trunk")

    workspace = manager.create("agent-1", "feature/x")
    assert workspace.base_branch == "trunk"
    GitRepo(workspace.path).commit_file("x.txt", "x\n", "feat: x")

    result = manager.merge(workspace)

    assert result.target_branch == "trunk"
    assert repo.git("rev-parse", "--abbrev-ref", "HEAD") == "trunk"
    assert (repo.root / "x.txt").exists()
