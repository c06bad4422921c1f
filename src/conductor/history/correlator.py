from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Protocol

from conductor.git import GitRunner
from conductor.plan.model import (
    CommitKind,
    CommitRecord,
    GhostReference,
    WorkItem,
    refs_match,
)

log = logging.getLogger(__name__)

LOG_FORMAT = "%H%x00%P%x00%ct%x00%B%x1e"

MessageLookup = Callable[[str], str | None]


@dataclass(slots=True)
class RefQuery:
    sha: str
    item_id: str
    title: str
    kind: CommitKind
    message: str = ""


def parse_log(output: str) -> list[CommitRecord]:
    """Parse `git log --format=LOG_FORMAT` output into commit records."""
    records: list[CommitRecord] = []
    for chunk in output.split("\x1e"):
        chunk = chunk.lstrip("\n")
        if not chunk.strip():
            continue
        fields = chunk.split("\x00", 3)
        if len(fields) < 4:
            continue
        sha, parents, committed_at, message = fields
        records.append(
            CommitRecord(
                sha=sha.strip(),
                message=message.strip(),
                parents=parents.split(),
                kind=CommitKind.IMPLEMENTATION,
                committed_at=int(committed_at or 0),
            )
        )
    return records


def read_commit(git: GitRunner, sha: str) -> CommitRecord | None:
    result = git.run(["log", "-1", f"--format={LOG_FORMAT}", sha, "--"], check=False)
    if not result.ok:
        return None
    records = parse_log(result.stdout)
    return records[0] if records else None


class ResolutionStrategy(Protocol):
    name: str

    def resolve(self, query: RefQuery) -> CommitRecord | GhostReference | None:
        """Return a record, a ghost verdict, or None to defer to the next strategy."""
        ...


class ExactShaStrategy:
    name = "exact"

    def __init__(self, git: GitRunner) -> None:
        self.git = git

    def resolve(self, query: RefQuery) -> CommitRecord | GhostReference | None:
        if not self.git.commit_exists(query.sha):
            return None
        record = read_commit(self.git, query.sha)
        if record is None:
            return None
        if not self.git.commit_reachable(query.sha):
            # rewritten; the dangling object still knows its own message
            if not query.message:
                query.message = record.message
            return None
        record.kind = query.kind
        record.item_id = query.item_id
        return record


class MessageMatchStrategy:
    """Re-bind a vanished commit by searching all refs for its recorded subject.

    Falls back to the owning item's title when no message was ever recorded.
    Exactly one candidate re-binds the ghost; none or several leave it unresolved.
    """

    name = "message"

    def __init__(
        self,
        git: GitRunner,
        *,
        search_limit: int = 5000,
        ignore_prefixes: Sequence[str] = (),
    ) -> None:
        self.git = git
        self.search_limit = search_limit
        self.ignore_prefixes = tuple(ignore_prefixes)

    def _search(self, needle: str) -> list[CommitRecord]:
        result = self.git.run(
            [
                "log",
                "--all",
                "--fixed-strings",
                f"--grep={needle}",
                f"-n{self.search_limit}",
                f"--format={LOG_FORMAT}",
            ],
            check=False,
        )
        if not result.ok:
            return []
        return parse_log(result.stdout)

    def resolve(self, query: RefQuery) -> CommitRecord | GhostReference | None:
        subject = query.message.splitlines()[0].strip() if query.message else ""
        if subject:
            candidates = [
                record for record in self._search(subject) if record.subject.strip() == subject
            ]
            confidence = "message-exact"
        else:
            candidates = [
                record
                for record in self._search(query.title)
                if query.title in record.subject
                and not record.subject.startswith("Revert ")
                and not record.subject.startswith(self.ignore_prefixes)
            ]
            confidence = "title-match"
        candidates = [record for record in candidates if not refs_match(record.sha, query.sha)]
        ghost = GhostReference(
            sha=query.sha,
            message=query.message,
            item_id=query.item_id,
            candidates=sorted(record.sha for record in candidates),
        )
        if len(candidates) == 1:
            ghost.replacement = candidates[0].sha
            ghost.confidence = confidence
        elif candidates:
            log.warning(
                "reference %s on %s matches %d commits; leaving it unresolved",
                query.sha,
                query.item_id,
                len(candidates),
            )
        return ghost


class CommitCorrelator:
    def __init__(
        self,
        git: GitRunner,
        *,
        strategies: Sequence[ResolutionStrategy] | None = None,
        search_limit: int = 5000,
        ignore_prefixes: Sequence[str] = (),
    ) -> None:
        self.git = git
        self.strategies: list[ResolutionStrategy] = list(
            strategies
            if strategies is not None
            else (
                ExactShaStrategy(git),
                MessageMatchStrategy(
                    git, search_limit=search_limit, ignore_prefixes=ignore_prefixes
                ),
            )
        )

    @staticmethod
    def queries(
        items: Iterable[WorkItem], lookup: MessageLookup | None = None
    ) -> list[RefQuery]:
        queries: list[RefQuery] = []
        seen: list[str] = []

        def _add(sha: str, item: WorkItem, kind: CommitKind) -> None:
            if any(refs_match(sha, other) for other in seen):
                return
            seen.append(sha)
            message = (lookup(sha) if lookup else None) or ""
            queries.append(
                RefQuery(sha=sha, item_id=item.id, title=item.title, kind=kind, message=message)
            )

        for item in items:
            for sha in item.commit_refs:
                _add(sha, item, CommitKind.IMPLEMENTATION)
            if item.checkpoint_ref:
                _add(item.checkpoint_ref, item, CommitKind.CHECKPOINT)
        return queries

    def resolve_query(self, query: RefQuery) -> CommitRecord | GhostReference:
        for strategy in self.strategies:
            outcome = strategy.resolve(query)
            if outcome is not None:
                log.debug("%s resolved %s via %s", query.item_id, query.sha, strategy.name)
                return outcome
        return GhostReference(sha=query.sha, message=query.message, item_id=query.item_id)

    def resolve(
        self,
        items: Iterable[WorkItem],
        lookup: MessageLookup | None = None,
    ) -> tuple[list[CommitRecord], list[GhostReference]]:
        """Bind every stored reference of `items` to a live commit or a ghost.

        Re-bound ghosts contribute a record carrying `original_sha` and the
        match confidence; they are still reported in the ghost list.
        """
        records: dict[str, CommitRecord] = {}
        ghosts: list[GhostReference] = []
        for query in self.queries(items, lookup):
            outcome = self.resolve_query(query)
            if isinstance(outcome, CommitRecord):
                records.setdefault(outcome.sha, outcome)
                continue
            ghosts.append(outcome)
            if outcome.replacement is None:
                continue
            replacement = read_commit(self.git, outcome.replacement)
            if replacement is None:
                continue
            replacement.kind = query.kind
            replacement.item_id = query.item_id
            replacement.original_sha = query.sha
            replacement.confidence = outcome.confidence
            records.setdefault(replacement.sha, replacement)
        ordered = sorted(records.values(), key=lambda record: (record.committed_at, record.sha))
        ghosts.sort(key=lambda ghost: (ghost.item_id, ghost.sha))
        return ordered, ghosts
