import pytest

from conductor.errors import (
    DirtyWorkingTree,
    GitTimeout,
    NoConfirmation,
    OperationCancelled,
    RevertConflict,
    SessionError,
)
from conductor.git import GitRunner
from conductor.history.executor import RevertExecutor, SessionState
from conductor.history.planner import RevertPlanner
from conductor.plan.model import CommitKind, Status
from conductor.plan.registry import TrackRegistry
from conductor.plan.store import PlanStore
from conductor.state.git_notes import GitNotesStore
from conftest import GitRepo


def _components(
    repo: GitRepo, registry: TrackRegistry, git: GitRunner | None = None
) -> tuple[RevertPlanner, RevertExecutor]:
    git = git or GitRunner(repo.root)
    state = GitNotesStore(repo.root, git=git)
    return RevertPlanner(git, registry), RevertExecutor(git, registry, state)


def _record(store: PlanStore, item_id: str, sha: str, message: str) -> None:
    store.load()
    store.record_commit(item_id, sha[:7], CommitKind.IMPLEMENTATION, message)


def _conflicting_history(repo: GitRepo, registry: TrackRegistry, track: str) -> tuple[str, str]:
    """Two recorded commits where reverting the older one conflicts."""
    store = PlanStore(registry.track_dir(track), registry=registry)
    older = repo.commit_file("notes.txt", "one\n", "docs: start notes")
    repo.commit_file("notes.txt", "one\nedited elsewhere\n", "docs: unrelated edit")
    newer = repo.commit_file("guide.txt", "guide\n", "docs: add guide")
    _record(store, "login:2.1", older, "docs: start notes")
    _record(store, "login:2.1", newer, "docs: add guide")
    store.set_status("login:2", Status.IN_PROGRESS)
    repo.commit("chore: track progress", "conductor")
    return older, newer


def test_phase_revert_runs_to_completion(
    repo: GitRepo, registry: TrackRegistry, track: str
) -> None:
    store = PlanStore(registry.track_dir(track), registry=registry)
    c1 = repo.commit_file("docs/login.md", "# Login\n", "docs: describe login")
    _record(store, "login:2", c1, "docs: describe login")
    store.set_status("login:2", Status.IN_PROGRESS)
    c2 = repo.commit("conductor(plan): Mark phase 'Phase 2: Polish' as in progress", "conductor")
    planner, executor = _components(repo, registry)

    plan = planner.plan("login:2")
    assert [record.sha for record in plan.commits] == [c2, c1]
    session = executor.start(plan)

    assert session.state == SessionState.COMPLETED
    assert [entry["sha"] for entry in session.completed] == [c2, c1]
    assert not (repo.root / "docs" / "login.md").exists()
    phase = store.load().get("login:2")
    assert phase.status == Status.PENDING
    assert phase.commit_refs == []
    assert repo.status() == ""
    subjects = repo.log_subjects()
    assert 'Revert "docs: describe login"' in subjects
    assert executor.active() is None


def test_conflict_halts_and_abort_restores_pre_revert_head(
    repo: GitRepo, registry: TrackRegistry, track: str
) -> None:
    _conflicting_history(repo, registry, track)
    before = repo.head()
    planner, executor = _components(repo, registry)

    session = executor.start(planner.plan("login:2"))

    assert session.state == SessionState.CONFLICTED
    assert len(session.completed) == 1
    assert session.conflict_paths == ["notes.txt"]
    assert not (repo.root / "guide.txt").exists()
    assert executor.active() is not None

    aborted = executor.abort()

    assert aborted.state == SessionState.ABORTED
    assert repo.head() == before
    assert repo.status() == ""
    assert (repo.root / "guide.txt").read_text(encoding="utf-8") == "guide\n"
    assert executor.active() is None


def test_resume_after_resolving_conflict_completes_and_reconciles(
    repo: GitRepo, registry: TrackRegistry, track: str
) -> None:
    _conflicting_history(repo, registry, track)
    planner, executor = _components(repo, registry)
    executor.start(planner.plan("login:2"))

    with pytest.raises(RevertConflict):
        executor.resume()

    repo.git("rm", "-q", "notes.txt")
    session = executor.resume()

    assert session.state == SessionState.COMPLETED
    assert all(entry["revert_sha"] for entry in session.completed)
    assert repo.log_subjects()[0] == "conductor(revert): Revert phase 'Phase 2: Polish'"
    document = PlanStore(registry.track_dir(track)).load()
    assert document.get("login:2").status == Status.PENDING
    assert document.get("login:2.1").commit_refs == []
    assert repo.status() == ""


def test_second_start_while_session_open_is_rejected(
    repo: GitRepo, registry: TrackRegistry, track: str
) -> None:
    _conflicting_history(repo, registry, track)
    planner, executor = _components(repo, registry)
    executor.start(planner.plan("login:2"))

    with pytest.raises(SessionError):
        executor.start(planner.plan("login:1"))


def test_dirty_tree_is_refused_before_any_revert(
    repo: GitRepo, registry: TrackRegistry, track: str
) -> None:
    store = PlanStore(registry.track_dir(track), registry=registry)
    c1 = repo.commit_file("docs.md", "docs\n", "docs: write docs")
    _record(store, "login:2.1", c1, "docs: write docs")
    repo.commit("chore: track progress", "conductor")
    repo.write("seed.txt", "local edit\n")
    head = repo.head()
    planner, executor = _components(repo, registry)

    with pytest.raises(DirtyWorkingTree) as excinfo:
        executor.start(planner.plan("login:2"))

    assert excinfo.value.paths == ["seed.txt"]
    assert repo.head() == head
    assert executor.sessions() == []


def test_plan_with_warnings_requires_confirmation(
    repo: GitRepo, registry: TrackRegistry, track: str
) -> None:
    repo.git("checkout", "-b", "topic")
    repo.commit_file("topic.txt", "topic\n", "feat: topic work")
    repo.git("checkout", "main")
    repo.commit_file("main.txt", "main\n", "chore: main work")
    repo.git("merge", "--no-ff", "topic", "-m", "Merge branch 'topic'")
    store = PlanStore(registry.track_dir(track), registry=registry)
    _record(store, "login:1.1", repo.head(), "Merge branch 'topic'")
    repo.commit("chore: track progress", "conductor")
    planner, executor = _components(repo, registry)
    plan = planner.plan("login:1.1")

    with pytest.raises(NoConfirmation):
        executor.start(plan)
    assert executor.sessions() == []

    session = executor.start(plan, confirmed=True)
    assert session.state == SessionState.COMPLETED
    assert not (repo.root / "topic.txt").exists()
    assert (repo.root / "main.txt").exists()


def _two_independent_commits(
    repo: GitRepo, registry: TrackRegistry, track: str
) -> tuple[str, str]:
    store = PlanStore(registry.track_dir(track), registry=registry)
    first = repo.commit_file("docs/a.md", "a\n", "docs: add a")
    second = repo.commit_file("docs/b.md", "b\n", "docs: add b")
    _record(store, "login:2.1", first, "docs: add a")
    _record(store, "login:2.1", second, "docs: add b")
    store.set_status("login:2", Status.IN_PROGRESS)
    repo.commit("chore: track progress", "conductor")
    return first, second


class _CancelAfterFirstRevert(GitRunner):
    def run(self, args: list[str], **kwargs):
        result = super().run(args, **kwargs)
        if args[:2] == ["revert", "--no-edit"] and result.ok:
            self.cancel_token.cancel()
        return result


class _InterruptedRevParse(GitRunner):
    """Raises cancellation from the first `head()` that follows a revert."""

    reverted = False
    fired = False

    def run(self, args: list[str], **kwargs):
        result = super().run(args, **kwargs)
        if args[:2] == ["revert", "--no-edit"] and result.ok:
            self.reverted = True
        return result

    def head(self, **kwargs) -> str:
        if self.reverted and not self.fired:
            self.fired = True
            raise OperationCancelled("Interrupted by user.", repo_state="partial")
        return super().head(**kwargs)


class _SecondRevertTimesOut(GitRunner):
    reverts = 0

    def run(self, args: list[str], **kwargs):
        if args[:2] == ["revert", "--no-edit"]:
            self.reverts += 1
            if self.reverts == 2:
                raise GitTimeout("Timed out after 0.1s.", repo_state="partial")
        return super().run(args, **kwargs)


@pytest.mark.parametrize("runner_class", [_CancelAfterFirstRevert, _InterruptedRevParse])
def test_cancellation_mid_revert_restores_pre_revert_head(
    repo: GitRepo, registry: TrackRegistry, track: str, runner_class: type[GitRunner]
) -> None:
    _two_independent_commits(repo, registry, track)
    before = repo.head()
    git = runner_class(repo.root)
    planner, executor = _components(repo, registry, git)

    session = executor.start(planner.plan("login:2"))

    assert session.state == SessionState.ABORTED
    assert session.halt_reason.startswith("cancelled")
    assert repo.head() == before
    assert repo.status() == ""
    assert (repo.root / "docs" / "a.md").exists()
    assert (repo.root / "docs" / "b.md").exists()
    assert executor.active() is None
    assert executor.sessions()[-1].state == SessionState.ABORTED


def test_timeout_mid_revert_halts_as_conflicted(
    repo: GitRepo, registry: TrackRegistry, track: str
) -> None:
    first, second = _two_independent_commits(repo, registry, track)
    before = repo.head()
    planner, executor = _components(repo, registry, _SecondRevertTimesOut(repo.root))

    session = executor.start(planner.plan("login:2"))

    assert session.state == SessionState.CONFLICTED
    assert session.halt_reason.startswith("timed out")
    assert [entry["sha"] for entry in session.completed] == [second]
    assert [entry["sha"] for entry in session.queue] == [first]
    assert executor.active() is not None

    assert executor.abort().state == SessionState.ABORTED
    assert repo.head() == before
