from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from conductor.config import HistoryConfig
from conductor.errors import UnresolvedHistory
from conductor.git import GitRunner
from conductor.history.correlator import LOG_FORMAT, CommitCorrelator, parse_log
from conductor.plan.model import (
    CommitKind,
    CommitRecord,
    GhostReference,
    ItemKind,
    WorkItem,
    refs_match,
)
from conductor.plan.registry import REGISTRY_FILENAME, TrackRegistry, registry_link
from conductor.plan.store import METADATA_FILENAME, PLAN_FILENAME, PlanStore

log = logging.getLogger(__name__)


@dataclass(slots=True)
class RevertPlan:
    target_id: str
    target_title: str
    target_kind: ItemKind
    commits: list[CommitRecord] = field(default_factory=list)
    skipped: list[CommitRecord] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    ghosts: list[GhostReference] = field(default_factory=list)

    @property
    def track_id(self) -> str:
        return self.target_id.split(":", 1)[0]

    @property
    def requires_confirmation(self) -> bool:
        return bool(self.warnings)

    @property
    def stale_refs(self) -> list[str]:
        """Every stored reference the revert invalidates, ghosts included."""
        shas = [record.sha for record in self.commits]
        shas.extend(record.original_sha for record in self.commits if record.original_sha)
        shas.extend(ghost.sha for ghost in self.ghosts)
        return list(dict.fromkeys(shas))

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_id": self.target_id,
            "target_title": self.target_title,
            "target_kind": self.target_kind.value,
            "commits": [record.to_dict() for record in self.commits],
            "skipped": [record.to_dict() for record in self.skipped],
            "warnings": list(self.warnings),
            "ghosts": [ghost.to_dict() for ghost in self.ghosts],
            "requires_confirmation": self.requires_confirmation,
        }


class RevertPlanner:
    """Turns a work item into the newest-first list of commits that undo it."""

    def __init__(
        self,
        git: GitRunner,
        registry: TrackRegistry,
        *,
        history: HistoryConfig | None = None,
        correlator: CommitCorrelator | None = None,
    ) -> None:
        self.git = git
        self.registry = registry
        self.history = history or HistoryConfig()
        self.correlator = correlator or CommitCorrelator(
            git,
            search_limit=self.history.ghost_search_limit,
            ignore_prefixes=(
                self.history.plan_update_prefix,
                self.history.checkpoint_prefix,
                self.history.revert_prefix,
            ),
        )

    def _relative(self, path: Path) -> str:
        try:
            return path.relative_to(self.git.repo_root).as_posix()
        except ValueError:
            return path.as_posix()

    def _log(self, args: list[str]) -> list[CommitRecord]:
        result = self.git.run(["log", f"--format={LOG_FORMAT}", *args], check=False)
        if not result.ok:
            return []
        return parse_log(result.stdout)

    def _plan_update_commits(
        self, store: PlanStore, subtree: list[WorkItem]
    ) -> list[CommitRecord]:
        quoted = [f"'{item.title}'" for item in subtree]
        found: list[CommitRecord] = []
        for record in self._log(["--", self._relative(store.plan_path)]):
            if not record.subject.startswith(self.history.plan_update_prefix):
                continue
            if any(title in record.subject for title in quoted):
                record.kind = CommitKind.PLAN_UPDATE
                found.append(record)
        return found

    def _track_commits(self, store: PlanStore) -> list[CommitRecord]:
        found = self._log(["--", self._relative(store.track_dir)])
        registry_path = self._relative(self.registry.path)
        link = registry_link(store.track_id)
        found.extend(self._log([f"-S{link}", "--", registry_path]))
        return found

    def _changed_paths(self, sha: str) -> list[str]:
        result = self.git.run(
            ["diff-tree", "--no-commit-id", "--name-only", "-r", "--root", sha], check=False
        )
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def _only_plan_files(self, sha: str) -> bool:
        paths = self._changed_paths(sha)
        if not paths:
            return False
        conductor_dir = self._relative(self.registry.conductor_root)
        plan_files = {PLAN_FILENAME, METADATA_FILENAME, REGISTRY_FILENAME}
        return all(
            path.startswith(f"{conductor_dir}/") and path.rsplit("/", 1)[-1] in plan_files
            for path in paths
        )

    def classify(self, record: CommitRecord, store: PlanStore) -> CommitKind:
        if record.is_merge:
            return CommitKind.MERGE
        info = store.commit_info(record.original_sha or record.sha) or {}
        recorded = info.get("kind")
        if recorded in {kind.value for kind in CommitKind}:
            return CommitKind(recorded)
        subject = record.subject
        if subject.startswith(self.history.plan_update_prefix):
            return CommitKind.PLAN_UPDATE
        if subject.startswith(self.history.checkpoint_prefix):
            return CommitKind.CHECKPOINT
        if subject.startswith(self.history.track_creation_prefix):
            return CommitKind.TRACK_CREATION
        if record.kind == CommitKind.CHECKPOINT:
            return CommitKind.CHECKPOINT
        if self._only_plan_files(record.sha):
            return CommitKind.PLAN_UPDATE
        return CommitKind.IMPLEMENTATION

    def _patch_id(self, sha: str) -> str | None:
        diff = self.git.run(["show", "--format=", "--no-color", sha], check=False)
        if not diff.ok or not diff.stdout.strip():
            return None
        result = self.git.run(["patch-id", "--stable"], input_text=diff.stdout, check=False)
        fields = result.stdout.split()
        return fields[0] if result.ok and fields else None

    def _topological_order(self, shas: Iterable[str]) -> dict[str, int]:
        wanted = set(shas)
        result = self.git.run(["rev-list", "--topo-order", "HEAD"], check=False)
        order: dict[str, int] = {}
        for index, sha in enumerate(result.stdout.split()):
            if sha in wanted:
                order[sha] = index
                if len(order) == len(wanted):
                    break
        return order

    def plan(self, target_id: str, *, acknowledged_ghosts: Iterable[str] = ()) -> RevertPlan:
        track_id = target_id.split(":", 1)[0]
        store = PlanStore(self.registry.track_dir(track_id), registry=self.registry)
        document = store.load()
        target = document.get(target_id)
        subtree = list(target.walk())
        revert_plan = RevertPlan(
            target_id=target.id, target_title=target.title, target_kind=target.kind
        )

        def _lookup(sha: str) -> str | None:
            info = store.commit_info(sha)
            return str(info.get("message") or "") if info else None

        records, ghosts = self.correlator.resolve(subtree, _lookup)
        revert_plan.ghosts = ghosts
        acknowledged = list(acknowledged_ghosts)
        unresolved = [ghost for ghost in ghosts if not ghost.resolved]
        blocking = [
            ghost
            for ghost in unresolved
            if not any(refs_match(ghost.sha, sha) for sha in acknowledged)
        ]
        if blocking:
            listed = ", ".join(f"{ghost.sha} ({ghost.item_id})" for ghost in blocking)
            raise UnresolvedHistory(
                f"Commit references no longer resolve: {listed}. "
                "Acknowledge them explicitly to revert without them.",
                ghosts=blocking,
                attempted=f"plan revert of {target_id}",
            )
        for ghost in ghosts:
            if ghost.resolved:
                revert_plan.warnings.append(
                    f"Reference {ghost.sha} on {ghost.item_id} re-bound to "
                    f"{ghost.replacement} ({ghost.confidence})."
                )
            else:
                revert_plan.warnings.append(
                    f"Reference {ghost.sha} on {ghost.item_id} is unresolved and was "
                    "acknowledged; nothing will be reverted for it."
                )

        seeds = list(records)
        seeds.extend(self._plan_update_commits(store, subtree))
        if target.kind == ItemKind.TRACK:
            seeds.extend(self._track_commits(store))

        by_sha: dict[str, CommitRecord] = {}
        for record in seeds:
            existing = by_sha.get(record.sha)
            if existing is None:
                by_sha[record.sha] = record
            elif existing.item_id is None and record.item_id is not None:
                by_sha[record.sha] = record

        for record in by_sha.values():
            record.kind = self.classify(record, store)
            if record.kind == CommitKind.MERGE:
                record.mainline = 1
                revert_plan.warnings.append(
                    f"Commit {record.sha[:12]} is a merge; it will be reverted against "
                    "its first parent (mainline 1)."
                )

        order = self._topological_order(by_sha)
        reachable = sorted(
            (record for record in by_sha.values() if record.sha in order),
            key=lambda record: order[record.sha],
        )
        unreachable = sorted(
            (record for record in by_sha.values() if record.sha not in order),
            key=lambda record: (-record.committed_at, record.sha),
        )
        for record in unreachable:
            revert_plan.warnings.append(
                f"Commit {record.sha[:12]} is not reachable from HEAD; "
                "its revert may not apply cleanly."
            )

        patch_ids: dict[str, str] = {}
        for record in [*reachable, *unreachable]:
            patch_id = None if record.is_merge else self._patch_id(record.sha)
            if patch_id is not None and patch_id in patch_ids:
                record.kind = CommitKind.CHERRY_PICK_DUPLICATE
                revert_plan.skipped.append(record)
                revert_plan.warnings.append(
                    f"Commit {record.sha[:12]} is a cherry-pick duplicate of "
                    f"{patch_ids[patch_id][:12]}, which comes first in revert order and is "
                    "reverted in its place; skipped."
                )
                continue
            if patch_id is not None:
                patch_ids[patch_id] = record.sha
            revert_plan.commits.append(record)

        log.info(
            "planned revert of %s: %d commits, %d skipped, %d warnings",
            target_id,
            len(revert_plan.commits),
            len(revert_plan.skipped),
            len(revert_plan.warnings),
        )
        return revert_plan
