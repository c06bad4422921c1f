from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from conductor.config import HistoryConfig
from conductor.errors import (
    DirtyWorkingTree,
    GitTimeout,
    NoConfirmation,
    OperationCancelled,
    RevertConflict,
    SessionError,
)
from conductor.git import GitRunner, classify_failure
from conductor.history.planner import RevertPlan
from conductor.plan.model import ItemKind
from conductor.plan.registry import TrackRegistry
from conductor.plan.store import PlanStore
from conductor.state.git_notes import GitNotesStore

log = logging.getLogger(__name__)


class SessionState(str, Enum):
    PLANNED = "planned"
    REVERTING = "reverting"
    COMPLETED = "completed"
    CONFLICTED = "conflicted"
    ABORTED = "aborted"


OPEN_SESSION_STATES = frozenset(
    {SessionState.PLANNED, SessionState.REVERTING, SessionState.CONFLICTED}
)


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class RevertSession:
    id: str
    target_id: str
    target_title: str
    target_kind: str
    state: SessionState
    pre_revert_head: str
    queue: list[dict[str, Any]] = field(default_factory=list)
    completed: list[dict[str, Any]] = field(default_factory=list)
    stale_refs: list[str] = field(default_factory=list)
    conflict_paths: list[str] = field(default_factory=list)
    conflict_diff: str = ""
    halt_reason: str = ""
    halt_head: str | None = None
    created_at: str = ""
    updated_at: str = ""

    @property
    def track_id(self) -> str:
        return self.target_id.split(":", 1)[0]

    @property
    def is_open(self) -> bool:
        return self.state in OPEN_SESSION_STATES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "target_id": self.target_id,
            "target_title": self.target_title,
            "target_kind": self.target_kind,
            "state": self.state.value,
            "pre_revert_head": self.pre_revert_head,
            "queue": list(self.queue),
            "completed": list(self.completed),
            "stale_refs": list(self.stale_refs),
            "conflict_paths": list(self.conflict_paths),
            "conflict_diff": self.conflict_diff,
            "halt_reason": self.halt_reason,
            "halt_head": self.halt_head,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RevertSession:
        return cls(
            id=str(data["id"]),
            target_id=str(data["target_id"]),
            target_title=str(data.get("target_title", "")),
            target_kind=str(data.get("target_kind", ItemKind.TASK.value)),
            state=SessionState(data.get("state", SessionState.PLANNED.value)),
            pre_revert_head=str(data["pre_revert_head"]),
            queue=list(data.get("queue", [])),
            completed=list(data.get("completed", [])),
            stale_refs=list(data.get("stale_refs", [])),
            conflict_paths=list(data.get("conflict_paths", [])),
            conflict_diff=str(data.get("conflict_diff", "")),
            halt_reason=str(data.get("halt_reason", "")),
            halt_head=data.get("halt_head"),
            created_at=str(data.get("created_at", "")),
            updated_at=str(data.get("updated_at", "")),
        )


class RevertExecutor:
    """Applies a RevertPlan one commit at a time and survives halting mid-way.

    A session moves planned -> reverting -> completed, or stops in `conflicted`
    where only `resume` or `abort` are accepted. `abort` and cancellation both
    restore the tree to the head recorded before the first revert.
    """

    def __init__(
        self,
        git: GitRunner,
        registry: TrackRegistry,
        state: GitNotesStore,
        *,
        history: HistoryConfig | None = None,
    ) -> None:
        self.git = git
        self.registry = registry
        self.state = state
        self.history = history or HistoryConfig()

    # -- session persistence ----------------------------------------------

    def _save(self, session: RevertSession) -> None:
        session.updated_at = _utcnow_iso()
        self.state.put_session(session.to_dict())

    def sessions(self) -> list[RevertSession]:
        sessions = [
            RevertSession.from_dict(payload)
            for payload in self.state.get_sessions().values()
            if isinstance(payload, dict)
        ]
        return sorted(sessions, key=lambda session: (session.created_at, session.id))

    def active(self) -> RevertSession | None:
        for session in self.sessions():
            if session.is_open:
                return session
        return None

    def _require_active(self) -> RevertSession:
        session = self.active()
        if session is None:
            raise SessionError("No revert session is in progress.", attempted="continue revert")
        return session

    # -- lifecycle ---------------------------------------------------------

    def start(self, plan: RevertPlan, *, confirmed: bool = False) -> RevertSession:
        attempted = f"revert {plan.target_id}"
        existing = self.active()
        if existing is not None:
            raise SessionError(
                f"Revert session {existing.id} for {existing.target_id} is still "
                f"{existing.state.value}; continue or abort it first.",
                attempted=attempted,
            )
        if plan.requires_confirmation and not confirmed:
            raise NoConfirmation(
                "The revert plan carries warnings that need explicit confirmation: "
                + " ".join(plan.warnings),
                attempted=attempted,
            )
        self.git.ensure_repository()
        self.git.ensure_excluded()
        dirty = self.git.dirty_paths()
        if dirty:
            raise DirtyWorkingTree(
                f"Uncommitted changes present: {', '.join(dirty)}",
                paths=dirty,
                attempted=attempted,
            )

        now = _utcnow_iso()
        session = RevertSession(
            id=uuid.uuid4().hex[:12],
            target_id=plan.target_id,
            target_title=plan.target_title,
            target_kind=plan.target_kind.value,
            state=SessionState.PLANNED,
            pre_revert_head=self.git.head(),
            queue=[
                {
                    "sha": record.sha,
                    "subject": record.subject,
                    "kind": record.kind.value,
                    "mainline": record.mainline,
                }
                for record in plan.commits
            ],
            stale_refs=plan.stale_refs,
            created_at=now,
        )
        self._save(session)
        log.info("revert session %s started for %s", session.id, plan.target_id)
        return self._drive(session)

    def _drive(self, session: RevertSession) -> RevertSession:
        """Work through the queue; any cancellation restores the pre-revert head."""
        try:
            session.state = SessionState.REVERTING
            self._save(session)
            while session.queue:
                failure = self._revert_next(session)
                if failure is not None:
                    return self._halt(session, failure)
            self._finish(session)
        except OperationCancelled as exc:
            log.warning("revert session %s cancelled; restoring", session.id)
            return self._restore(session, f"cancelled: {exc.reason}")
        except KeyboardInterrupt:
            self.git.cancel_token.cancel()
            log.warning("revert session %s interrupted; restoring", session.id)
            return self._restore(session, "cancelled: interrupted by user")
        except GitTimeout as exc:
            return self._halt(session, f"timed out: {exc.reason}")
        return session

    def _revert_next(self, session: RevertSession) -> str | None:
        """Revert the head of the queue; return the failure text when git stops."""
        entry = session.queue[0]
        args = ["revert", "--no-edit"]
        if entry.get("mainline"):
            args.extend(["-m", str(entry["mainline"])])
        args.append(entry["sha"])
        result = self.git.run(args, check=False)
        if result.ok:
            self._mark_done(session, self.git.head())
            return None
        output = f"{result.stderr}\n{result.stdout}"
        if classify_failure(output) == "empty":
            # The inverse is already in the tree.
            self.git.run(["revert", "--skip"], check=False, cancellable=False)
            self._mark_done(session, None)
            return None
        return result.stderr.strip() or result.stdout.strip()

    def _mark_done(self, session: RevertSession, revert_sha: str | None) -> None:
        entry = session.queue.pop(0)
        session.completed.append({"sha": entry["sha"], "revert_sha": revert_sha})
        self._save(session)
        log.info("reverted %s as %s", entry["sha"], revert_sha or "(no-op)")

    def _halt(self, session: RevertSession, reason: str) -> RevertSession:
        session.state = SessionState.CONFLICTED
        session.halt_reason = reason
        session.halt_head = self.git.head()
        session.conflict_paths = self.git.unmerged_paths()
        diff = self.git.run(["diff"], check=False, cancellable=False)
        session.conflict_diff = diff.stdout
        self._save(session)
        log.warning(
            "revert session %s halted on %s: %s",
            session.id,
            session.queue[0]["sha"] if session.queue else "?",
            reason,
        )
        return session

    def resume(self) -> RevertSession:
        session = self._require_active()
        attempted = f"continue revert {session.id}"
        if session.state != SessionState.CONFLICTED:
            raise SessionError(
                f"Session {session.id} is {session.state.value}, not conflicted.",
                attempted=attempted,
            )
        unmerged = self.git.unmerged_paths()
        if unmerged:
            raise RevertConflict(
                f"Resolve the remaining conflicts first: {', '.join(unmerged)}",
                paths=unmerged,
                attempted=attempted,
            )
        self.git.run(["add", "-u"], cancellable=False)
        if self.git.ref_exists("REVERT_HEAD"):
            result = self.git.run(
                ["revert", "--continue"], env={"GIT_EDITOR": "true"}, check=False
            )
            if not result.ok:
                if classify_failure(f"{result.stderr}\n{result.stdout}") != "empty":
                    raise RevertConflict(
                        result.stderr.strip() or result.stdout.strip(),
                        paths=self.git.unmerged_paths(),
                        attempted=attempted,
                    )
                self.git.run(["revert", "--skip"], check=False, cancellable=False)
                self._mark_done(session, None)
            else:
                self._mark_done(session, self.git.head())
        else:
            staged = self.git.run(["diff", "--cached", "--quiet"], check=False)
            if not staged.ok:
                entry = session.queue[0]
                message = f'Revert "{entry["subject"]}"\n\nThis reverts commit {entry["sha"]}.\n'
                self.git.run(["commit", "-F", "-"], input_text=message)
                self._mark_done(session, self.git.head())
            else:
                head = self.git.head()
                self._mark_done(session, head if head != session.halt_head else None)
        session.conflict_paths = []
        session.conflict_diff = ""
        session.halt_reason = ""
        session.halt_head = None
        return self._drive(session)

    def abort(self) -> RevertSession:
        session = self._require_active()
        return self._restore(session, "aborted by user")

    def _restore(self, session: RevertSession, reason: str) -> RevertSession:
        sequencer = self.git.git_common_dir() / "sequencer"
        if self.git.ref_exists("REVERT_HEAD") or sequencer.exists():
            self.git.run(["revert", "--abort"], check=False, cancellable=False)
        self.git.run(["reset", "--hard", session.pre_revert_head], cancellable=False)
        session.state = SessionState.ABORTED
        session.halt_reason = reason
        session.conflict_paths = []
        self._save(session)
        undone = ", ".join(entry["sha"][:12] for entry in session.completed) or "none"
        log.warning(
            "revert session %s aborted (%s); restored %s, undid completed reverts: %s",
            session.id,
            reason,
            session.pre_revert_head[:12],
            undone,
        )
        return session

    # -- reconciliation ----------------------------------------------------

    def _finish(self, session: RevertSession) -> None:
        self._reconcile(session)
        session.state = SessionState.COMPLETED
        self._save(session)
        log.info(
            "revert session %s completed: %d commits reverted",
            session.id,
            len(session.completed),
        )

    def _reconcile(self, session: RevertSession) -> None:
        store = PlanStore(self.registry.track_dir(session.track_id), registry=self.registry)
        if not store.exists():
            log.info("track %s no longer has a plan; nothing to reconcile", session.track_id)
            return
        document = store.load()
        present = {item.id for item in document.items()}
        targets = [session.target_id] if session.target_id in present else []
        store.reset_items(targets, session.stale_refs)

        paths = [
            path.relative_to(self.git.repo_root).as_posix()
            for path in (store.plan_path, store.metadata_path, self.registry.path)
            if path.exists()
        ]
        self.git.run(["add", "--", *paths], cancellable=False)
        staged = self.git.run(["diff", "--cached", "--quiet"], check=False, cancellable=False)
        if staged.ok:
            return
        message = (
            f"{self.history.revert_prefix} Revert {session.target_kind} "
            f"'{session.target_title}'"
        )
        self.git.run(["commit", "-m", message], cancellable=False)
