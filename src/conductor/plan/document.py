from __future__ import annotations

import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Literal

from conductor.errors import InvalidTransition, MalformedPlan, WorkItemNotFound
from conductor.plan.model import (
    MARKER_BY_STATUS,
    OPEN_STATUSES,
    STATUS_BY_MARKER,
    ItemKind,
    Status,
    WorkItem,
    refs_match,
)

HEADING_PATTERN = re.compile(
    r"^(?P<prefix>(?P<hashes>#{1,2})[ \t]+)\[(?P<mark>[^\]]*)\](?P<sep>[ \t]+)(?P<rest>.*)$"
)
LIST_PATTERN = re.compile(
    r"^(?P<prefix>(?P<indent>[ \t]*)[-*+][ \t]+)\[(?P<mark>[^\]]?)\](?P<sep>[ \t]+)(?P<rest>.*)$"
)
UNMARKED_NODE_PATTERN = re.compile(r"^(?:#[ \t]+Track\b|##[ \t]+Phase\b)", re.IGNORECASE)
TRAILER_PATTERN = re.compile(r"[ \t]+\[(?P<body>[^\[\]]*)\][ \t]*$")
REFS_PATTERN = re.compile(r"^[0-9a-f]{7,40}(?:[ \t]*,[ \t]*[0-9a-f]{7,40})*$")
CHECKPOINT_PATTERN = re.compile(r"^checkpoint:[ \t]*(?P<sha>[0-9a-f]{7,40})$")
FENCE_PATTERN = re.compile(r"^[ \t]*(```|~~~)")

TrailerKind = Literal["refs", "checkpoint", "opaque"]


@dataclass(slots=True)
class Trailer:
    kind: TrailerKind
    body: str

    def render(self) -> str:
        return f"[{self.body}]"


@dataclass(slots=True)
class ItemLayout:
    prefix: str
    separator: str
    title: str
    trailers: list[Trailer] = field(default_factory=list)
    eol: str = "\n"


def _split_eol(line: str) -> tuple[str, str]:
    if line.endswith("\r\n"):
        return line[:-2], "\r\n"
    if line.endswith("\n") or line.endswith("\r"):
        return line[:-1], line[-1]
    return line, ""


def _split_trailers(rest: str) -> tuple[str, list[Trailer]]:
    body = rest
    trailers: list[Trailer] = []
    while True:
        match = TRAILER_PATTERN.search(body)
        if match is None or not body[: match.start()].strip():
            break
        inner = match.group("body")
        if REFS_PATTERN.match(inner):
            trailers.insert(0, Trailer("refs", inner))
        elif CHECKPOINT_PATTERN.match(inner):
            trailers.insert(0, Trailer("checkpoint", inner))
        else:
            trailers.insert(0, Trailer("opaque", inner))
        body = body[: match.start()]
    return body, trailers


def _refs_from(trailers: list[Trailer]) -> list[str]:
    refs: list[str] = []
    for trailer in trailers:
        if trailer.kind == "refs":
            refs.extend(part.strip() for part in trailer.body.split(",") if part.strip())
    return refs


def _checkpoint_from(trailers: list[Trailer]) -> str | None:
    for trailer in trailers:
        if trailer.kind == "checkpoint":
            match = CHECKPOINT_PATTERN.match(trailer.body)
            if match:
                return match.group("sha")
    return None


def _indent_width(indent: str) -> int:
    return len(indent.expandtabs(4))


class PlanDocument:
    """A parsed plan: the work-item tree plus the raw lines it came from."""

    def __init__(self, track_id: str, lines: list[str]) -> None:
        self.track_id = track_id
        self.lines = lines
        self.track: WorkItem | None = None
        self._items: dict[str, WorkItem] = {}
        self._layouts: dict[str, ItemLayout] = {}
        self._dirty: set[str] = set()

    # -- lookup -----------------------------------------------------------

    def get(self, item_id: str) -> WorkItem:
        item = self._items.get(item_id)
        if item is None:
            raise WorkItemNotFound(
                f"No work item '{item_id}' in track '{self.track_id}'.",
                attempted="look up work item",
            )
        return item

    def items(self) -> Iterator[WorkItem]:
        if self.track is None:
            return iter(())
        return self.track.walk()

    def parent_of(self, item: WorkItem) -> WorkItem | None:
        if item.parent_id is None:
            return None
        return self._items[item.parent_id]

    def ancestors(self, item: WorkItem) -> Iterator[WorkItem]:
        parent = self.parent_of(item)
        while parent is not None:
            yield parent
            parent = self.parent_of(parent)

    def items_with_ref(self, sha: str) -> list[WorkItem]:
        return [item for item in self.items() if item.has_ref(sha)]

    @property
    def dirty(self) -> bool:
        return bool(self._dirty)

    # -- mutation ---------------------------------------------------------

    def check_transition(self, item: WorkItem, status: Status, *, unblock: bool = False) -> None:
        if item.status == status:
            return
        if item.status == Status.BLOCKED and not unblock:
            raise InvalidTransition(
                f"'{item.id}' is blocked; clear the block explicitly before changing it.",
                attempted=f"set {item.id} to {status.value}",
            )
        if status == Status.COMPLETE:
            open_children = [child.id for child in item.children if child.status in OPEN_STATUSES]
            if open_children:
                raise InvalidTransition(
                    f"'{item.id}' still has open children: {', '.join(open_children)}.",
                    attempted=f"set {item.id} to complete",
                )
        if status in OPEN_STATUSES:
            closed = [
                parent.id for parent in self.ancestors(item) if parent.status == Status.COMPLETE
            ]
            if closed:
                raise InvalidTransition(
                    f"Parent '{closed[0]}' is complete; reopen it before reopening '{item.id}'.",
                    attempted=f"set {item.id} to {status.value}",
                )

    def set_status(self, item_id: str, status: Status, *, unblock: bool = False) -> WorkItem:
        item = self.get(item_id)
        self.check_transition(item, status, unblock=unblock)
        if item.status != status:
            item.status = status
            self._dirty.add(item.id)
        return item

    def add_commit_ref(self, item_id: str, sha: str) -> bool:
        item = self.get(item_id)
        if item.has_ref(sha):
            return False
        item.commit_refs.append(sha)
        self._sync_refs(item)
        return True

    def remove_commit_refs(self, item_id: str, shas: list[str]) -> list[str]:
        item = self.get(item_id)
        removed = [ref for ref in item.commit_refs if any(refs_match(ref, sha) for sha in shas)]
        if removed:
            item.commit_refs = [ref for ref in item.commit_refs if ref not in removed]
            self._sync_refs(item)
        return removed

    def set_checkpoint(self, item_id: str, sha: str | None) -> WorkItem:
        item = self.get(item_id)
        if item.kind != ItemKind.PHASE:
            raise InvalidTransition(
                f"'{item_id}' is a {item.kind.value}; only phases carry checkpoints.",
                attempted="record checkpoint",
            )
        if item.checkpoint_ref == sha:
            return item
        item.checkpoint_ref = sha
        layout = self._layouts[item.id]
        layout.trailers = [trailer for trailer in layout.trailers if trailer.kind != "checkpoint"]
        if sha:
            layout.trailers.append(Trailer("checkpoint", f"checkpoint: {sha}"))
        self._dirty.add(item.id)
        return item

    def reopen(self, item_id: str, *, cascade: bool = True) -> list[WorkItem]:
        """Reset an item (and by default its subtree) to pending.

        Complete ancestors drop back to in progress.
        """
        item = self.get(item_id)
        touched: list[WorkItem] = []
        for node in item.walk() if cascade else [item]:
            changed = node.status != Status.PENDING or node.commit_refs or node.checkpoint_ref
            node.status = Status.PENDING
            if node.commit_refs:
                node.commit_refs = []
                self._sync_refs(node)
            if node.checkpoint_ref:
                self.set_checkpoint(node.id, None)
            if changed:
                self._dirty.add(node.id)
                touched.append(node)
        for parent in self.ancestors(item):
            if parent.status == Status.COMPLETE:
                parent.status = Status.IN_PROGRESS
                self._dirty.add(parent.id)
                touched.append(parent)
        return touched

    def _sync_refs(self, item: WorkItem) -> None:
        layout = self._layouts[item.id]
        refs_trailers = [trailer for trailer in layout.trailers if trailer.kind == "refs"]
        body = ", ".join(item.commit_refs)
        if refs_trailers:
            first = refs_trailers[0]
            layout.trailers = [
                trailer for trailer in layout.trailers if trailer.kind != "refs" or trailer is first
            ]
            if body:
                first.body = body
            else:
                layout.trailers.remove(first)
        elif body:
            index = next(
                (i for i, trailer in enumerate(layout.trailers) if trailer.kind == "checkpoint"),
                len(layout.trailers),
            )
            layout.trailers.insert(index, Trailer("refs", body))
        self._dirty.add(item.id)

    # -- rendering --------------------------------------------------------

    def _render_item(self, item: WorkItem) -> str:
        layout = self._layouts[item.id]
        marker = MARKER_BY_STATUS[item.status]
        parts = [f"{layout.prefix}[{marker}]{layout.separator}{layout.title}"]
        parts.extend(trailer.render() for trailer in layout.trailers)
        return " ".join(parts) + layout.eol

    def render(self) -> str:
        rendered = list(self.lines)
        for item_id in self._dirty:
            item = self._items[item_id]
            rendered[item.line_number] = self._render_item(item)
        return "".join(rendered)

    def mark_clean(self) -> None:
        self.lines = self.render().splitlines(keepends=True)
        self._dirty.clear()

    def to_dict(self) -> dict:
        return self.track.to_dict() if self.track else {}

    # -- construction -----------------------------------------------------

    def _register(self, item: WorkItem, layout: ItemLayout) -> None:
        self._items[item.id] = item
        self._layouts[item.id] = layout


def parse_plan(text: str, track_id: str) -> PlanDocument:
    document = PlanDocument(track_id, text.splitlines(keepends=True))
    phase: WorkItem | None = None
    task: WorkItem | None = None
    task_indent = 0
    phase_count = task_count = subtask_count = 0
    in_fence = False

    def _status(mark: str, line_number: int) -> Status:
        status = STATUS_BY_MARKER.get(mark)
        if status is None:
            raise MalformedPlan(
                f"Ambiguous status marker '[{mark}]'; expected one of [ ], [~], [x], [!].",
                line_number=line_number,
            )
        return status

    for index, raw_line in enumerate(document.lines):
        line, eol = _split_eol(raw_line)
        line_number = index + 1
        if FENCE_PATTERN.match(line):
            in_fence = not in_fence
            continue
        if in_fence:
            continue

        heading = HEADING_PATTERN.match(line)
        if heading:
            status = _status(heading.group("mark"), line_number)
            title, trailers = _split_trailers(heading.group("rest"))
            if not title.strip():
                raise MalformedPlan("Work item without a title.", line_number=line_number)
            layout = ItemLayout(
                prefix=heading.group("prefix"),
                separator=heading.group("sep"),
                title=title,
                trailers=trailers,
                eol=eol,
            )
            if heading.group("hashes") == "#":
                if document.track is not None:
                    raise MalformedPlan(
                        "Plan declares more than one track heading.", line_number=line_number
                    )
                item = WorkItem(
                    id=track_id,
                    title=title.strip(),
                    kind=ItemKind.TRACK,
                    status=status,
                    commit_refs=_refs_from(trailers),
                    line_number=index,
                )
                document.track = item
            else:
                if document.track is None:
                    raise MalformedPlan(
                        "Phase heading appears before the track heading.",
                        line_number=line_number,
                    )
                phase_count += 1
                task_count = 0
                item = WorkItem(
                    id=f"{track_id}:{phase_count}",
                    title=title.strip(),
                    kind=ItemKind.PHASE,
                    status=status,
                    commit_refs=_refs_from(trailers),
                    checkpoint_ref=_checkpoint_from(trailers),
                    parent_id=track_id,
                    line_number=index,
                )
                document.track.children.append(item)
                phase = item
                task = None
            document._register(item, layout)
            continue

        if UNMARKED_NODE_PATTERN.match(line):
            raise MalformedPlan(
                "Heading is missing its status marker.",
                line_number=line_number,
            )

        entry = LIST_PATTERN.match(line)
        if not entry:
            continue
        status = _status(entry.group("mark"), line_number)
        if phase is None:
            raise MalformedPlan(
                "Task appears before any phase heading.",
                line_number=line_number,
            )
        title, trailers = _split_trailers(entry.group("rest"))
        if not title.strip():
            raise MalformedPlan("Work item without a title.", line_number=line_number)
        layout = ItemLayout(
            prefix=entry.group("prefix"),
            separator=entry.group("sep"),
            title=title,
            trailers=trailers,
            eol=eol,
        )
        indent = _indent_width(entry.group("indent"))
        if task is not None and indent > task_indent:
            subtask_count += 1
            item = WorkItem(
                id=f"{task.id}.{subtask_count}",
                title=title.strip(),
                kind=ItemKind.SUBTASK,
                status=status,
                commit_refs=_refs_from(trailers),
                parent_id=task.id,
                line_number=index,
            )
            task.children.append(item)
        else:
            task_count += 1
            subtask_count = 0
            item = WorkItem(
                id=f"{phase.id}.{task_count}",
                title=title.strip(),
                kind=ItemKind.TASK,
                status=status,
                commit_refs=_refs_from(trailers),
                parent_id=phase.id,
                line_number=index,
            )
            phase.children.append(item)
            task = item
            task_indent = indent
        document._register(item, layout)

    if document.track is None:
        raise MalformedPlan(
            "Plan has no track heading ('# [ ] Track: ...')."
        )
    return document
