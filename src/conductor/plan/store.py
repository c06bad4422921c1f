from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

from conductor.errors import ConcurrentModification, MalformedPlan, WorkItemNotFound
from conductor.locks import file_lock
from conductor.plan.document import PlanDocument, parse_plan
from conductor.plan.model import CommitKind, ItemKind, Status, WorkItem, refs_match

if TYPE_CHECKING:
    from conductor.plan.registry import TrackRegistry

log = logging.getLogger(__name__)

T = TypeVar("T")

PLAN_FILENAME = "plan.md"
METADATA_FILENAME = "metadata.json"
SESSION_LOG_FILENAME = ".session_log"
LOCK_FILENAME = ".plan.lock"


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def content_token(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def atomic_write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}-", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        os.replace(temp_name, path)
    except BaseException:
        try:
            os.unlink(temp_name)
        except OSError:
            pass
        raise


class PlanStore:
    """Transactional access to one track's plan document and metadata record.

    Every mutation re-reads the plan under a lock, compares its content hash with
    the token captured by the last `load()`, and refuses to write when another
    process changed the file in between.
    """

    def __init__(
        self,
        track_dir: Path,
        *,
        registry: TrackRegistry | None = None,
        lock_timeout_seconds: float = 3.0,
    ) -> None:
        self.track_dir = track_dir.resolve()
        self.track_id = self.track_dir.name
        self.plan_path = self.track_dir / PLAN_FILENAME
        self.metadata_path = self.track_dir / METADATA_FILENAME
        self.session_log = self.track_dir / SESSION_LOG_FILENAME
        self.lock_file = self.track_dir / LOCK_FILENAME
        self.registry = registry
        self.lock_timeout_seconds = lock_timeout_seconds
        self._token: str | None = None
        self._document: PlanDocument | None = None
        self._pending_commits: dict[str, dict[str, Any]] = {}
        self._forgotten: list[str] = []

    @property
    def token(self) -> str | None:
        return self._token

    def exists(self) -> bool:
        return self.plan_path.exists()

    def _read_bytes(self) -> bytes:
        try:
            return self.plan_path.read_bytes()
        except FileNotFoundError as exc:
            raise WorkItemNotFound(
                f"Track '{self.track_id}' has no plan document at {self.plan_path}.",
                attempted="load plan",
            ) from exc

    def load(self) -> PlanDocument:
        data = self._read_bytes()
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedPlan(
                f"{self.plan_path.name} is not valid UTF-8.",
                line_number=data[: exc.start].count(b"\n") + 1,
                attempted="load plan",
            ) from exc
        document = parse_plan(text, self.track_id)
        self._token = content_token(data)
        self._document = document
        self._pending_commits = {}
        self._forgotten = []
        return document

    def document(self) -> PlanDocument:
        return self._document if self._document is not None else self.load()

    def store(self, document: PlanDocument) -> None:
        if self._token is None:
            raise ConcurrentModification(
                "Plan was never loaded; load it before writing.",
                attempted=f"write plan for {self.track_id}",
            )
        rendered = document.render().encode("utf-8")
        with file_lock(self.lock_file, self.lock_timeout_seconds):
            current = self._read_bytes()
            if content_token(current) != self._token:
                self._document = None
                raise ConcurrentModification(
                    f"{self.plan_path.name} changed on disk since it was loaded; "
                    "reload and retry.",
                    attempted=f"write plan for {self.track_id}",
                )
            if rendered != current:
                atomic_write(self.plan_path, rendered)
                self._append_session_log()
            self._write_metadata(document)
        self._token = content_token(rendered)
        document.mark_clean()
        self._document = document
        self._pending_commits = {}
        if self.registry is not None and document.track is not None:
            try:
                self.registry.set_status(self.track_id, document.track.status)
            except ConcurrentModification as exc:
                # plan.md is already written
                exc.repo_state = "partial"
                raise

    @contextmanager
    def transaction(self) -> Iterator[PlanDocument]:
        document = self.document()
        try:
            yield document
        except BaseException:
            self._document = None
            self._pending_commits = {}
            raise
        if document.dirty or self._pending_commits or self._forgotten:
            self.store(document)

    def update(self, mutator: Callable[[PlanDocument], T], attempts: int = 4) -> T:
        last_error: ConcurrentModification | None = None
        for _ in range(attempts):
            document = self.load()
            result = mutator(document)
            try:
                self.store(document)
                return result
            except ConcurrentModification as exc:
                log.info("plan %s changed during update, retrying", self.track_id)
                last_error = exc
        assert last_error is not None
        raise last_error

    # -- operations -------------------------------------------------------

    def set_status(self, item_id: str, status: Status, *, unblock: bool = False) -> WorkItem:
        with self.transaction() as document:
            item = document.set_status(item_id, status, unblock=unblock)
        log.info("%s -> %s", item_id, status.value)
        return item

    def record_commit(
        self,
        item_id: str,
        sha: str,
        kind: CommitKind,
        message: str | None = None,
    ) -> WorkItem:
        with self.transaction() as document:
            item = document.get(item_id)
            if document.add_commit_ref(item_id, sha):
                self.remember_commit(sha, kind, item_id, message)
                log.info("recorded %s commit %s on %s", kind.value, sha, item_id)
        return item

    def remember_commit(
        self, sha: str, kind: CommitKind, item_id: str, message: str | None = None
    ) -> None:
        """Queue a metadata entry for `sha`; written by the next `store()`."""
        self._pending_commits[sha] = {
            "kind": kind.value,
            "message": message or "",
            "item_id": item_id,
            "recorded_at": _utcnow_iso(),
        }

    def set_checkpoint(self, phase_id: str, sha: str) -> WorkItem:
        with self.transaction() as document:
            item = document.set_checkpoint(phase_id, sha)
        return item

    def reset_items(self, item_ids: list[str], stale_shas: list[str]) -> list[WorkItem]:
        """Drop reverted commits and reopen items that lost their only evidence."""
        touched: dict[str, WorkItem] = {}
        with self.transaction() as document:
            for item in list(document.items()):
                had_refs = bool(item.commit_refs)
                if document.remove_commit_refs(item.id, stale_shas):
                    touched[item.id] = item
                if (
                    item.kind == ItemKind.PHASE
                    and item.checkpoint_ref
                    and any(refs_match(item.checkpoint_ref, sha) for sha in stale_shas)
                ):
                    document.set_checkpoint(item.id, None)
                    touched[item.id] = item
                if had_refs and not item.commit_refs and item.status != Status.PENDING:
                    for node in document.reopen(item.id, cascade=False):
                        touched[node.id] = node
            for item_id in item_ids:
                for node in document.reopen(item_id):
                    touched[node.id] = node
            self._forget_commits(stale_shas)
        return list(touched.values())

    # -- metadata ---------------------------------------------------------

    def read_metadata(self) -> dict[str, Any]:
        if not self.metadata_path.exists():
            return {}
        try:
            payload = json.loads(self.metadata_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            log.warning("ignoring unreadable metadata record %s", self.metadata_path)
            return {}
        return payload if isinstance(payload, dict) else {}

    def commit_info(self, sha: str) -> dict[str, Any] | None:
        commits = self.read_metadata().get("commits", {})
        if not isinstance(commits, dict):
            return None
        for recorded, info in commits.items():
            if refs_match(recorded, sha) and isinstance(info, dict):
                return info
        return None

    def _forget_commits(self, shas: list[str]) -> None:
        self._pending_commits = {
            sha: info
            for sha, info in self._pending_commits.items()
            if not any(refs_match(sha, stale) for stale in shas)
        }
        self._forgotten.extend(shas)

    def _write_metadata(self, document: PlanDocument) -> None:
        now = _utcnow_iso()
        payload = self.read_metadata()
        items = payload.get("items", {})
        if not isinstance(items, dict):
            items = {}
        refreshed: dict[str, Any] = {}
        for item in document.items():
            record = items.get(item.id)
            if not isinstance(record, dict):
                record = {"id": item.id, "created_at": now, "updated_at": now}
            if record.get("status") != item.status.value or record.get("kind") != item.kind.value:
                record["updated_at"] = now
            record["kind"] = item.kind.value
            record["status"] = item.status.value
            record.setdefault("description", item.title)
            refreshed[item.id] = record

        commits = payload.get("commits", {})
        if not isinstance(commits, dict):
            commits = {}
        commits = {
            sha: info
            for sha, info in commits.items()
            if not any(refs_match(sha, stale) for stale in self._forgotten)
        }
        commits.update(self._pending_commits)
        self._forgotten = []

        track = document.track
        payload.update(
            {
                "track_id": self.track_id,
                "kind": ItemKind.TRACK.value,
                "status": track.status.value if track else Status.PENDING.value,
                "updated_at": now,
                "items": refreshed,
                "commits": commits,
            }
        )
        payload.setdefault("created_at", now)
        payload.setdefault("description", track.title if track else "")
        serialized = json.dumps(payload, ensure_ascii=False, indent=2) + "\n"
        atomic_write(self.metadata_path, serialized.encode("utf-8"))

    def _append_session_log(self) -> None:
        with self.session_log.open("a", encoding="utf-8") as handle:
            handle.write(f"{_utcnow_iso()}: Modified {PLAN_FILENAME}\n")
