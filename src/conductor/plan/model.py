from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Status(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    BLOCKED = "blocked"


class ItemKind(str, Enum):
    TRACK = "track"
    PHASE = "phase"
    TASK = "task"
    SUBTASK = "subtask"


class CommitKind(str, Enum):
    IMPLEMENTATION = "implementation"
    PLAN_UPDATE = "plan_update"
    CHECKPOINT = "checkpoint"
    TRACK_CREATION = "track_creation"
    MERGE = "merge"
    CHERRY_PICK_DUPLICATE = "cherry_pick_duplicate"


STATUS_BY_MARKER = {
    " ": Status.PENDING,
    "~": Status.IN_PROGRESS,
    "x": Status.COMPLETE,
    "!": Status.BLOCKED,
}
MARKER_BY_STATUS = {status: marker for marker, status in STATUS_BY_MARKER.items()}
OPEN_STATUSES = frozenset({Status.PENDING, Status.IN_PROGRESS})

MIN_SHA_LENGTH = 7


def refs_match(left: str, right: str) -> bool:
    """Abbreviated and full shas of the same commit compare equal."""
    a = left.strip().lower()
    b = right.strip().lower()
    if len(a) < MIN_SHA_LENGTH or len(b) < MIN_SHA_LENGTH:
        return a == b
    return a.startswith(b) or b.startswith(a)


@dataclass(slots=True)
class WorkItem:
    id: str
    title: str
    kind: ItemKind
    status: Status
    commit_refs: list[str] = field(default_factory=list)
    checkpoint_ref: str | None = None
    parent_id: str | None = None
    children: list[WorkItem] = field(default_factory=list)
    line_number: int = 0

    def walk(self) -> Iterator[WorkItem]:
        yield self
        for child in self.children:
            yield from child.walk()

    def descendants(self) -> Iterator[WorkItem]:
        for child in self.children:
            yield from child.walk()

    def has_ref(self, sha: str) -> bool:
        return any(refs_match(ref, sha) for ref in self.commit_refs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "kind": self.kind.value,
            "status": self.status.value,
            "commit_refs": list(self.commit_refs),
            "checkpoint_ref": self.checkpoint_ref,
            "children": [child.to_dict() for child in self.children],
        }


@dataclass(slots=True)
class CommitRecord:
    sha: str
    message: str
    parents: list[str]
    kind: CommitKind
    item_id: str | None = None
    committed_at: int = 0
    original_sha: str | None = None
    confidence: str | None = None
    mainline: int | None = None

    @property
    def subject(self) -> str:
        return self.message.splitlines()[0] if self.message else ""

    @property
    def is_merge(self) -> bool:
        return len(self.parents) > 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "sha": self.sha,
            "subject": self.subject,
            "parents": list(self.parents),
            "kind": self.kind.value,
            "item_id": self.item_id,
            "committed_at": self.committed_at,
            "original_sha": self.original_sha,
            "confidence": self.confidence,
            "mainline": self.mainline,
        }


@dataclass(slots=True)
class GhostReference:
    sha: str
    message: str
    item_id: str
    replacement: str | None = None
    confidence: str | None = None
    candidates: list[str] = field(default_factory=list)

    @property
    def resolved(self) -> bool:
        return self.replacement is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "sha": self.sha,
            "message": self.message,
            "item_id": self.item_id,
            "replacement": self.replacement,
            "confidence": self.confidence,
            "candidates": list(self.candidates),
        }
