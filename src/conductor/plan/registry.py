from __future__ import annotations

import json
import logging
import re
import shutil
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from conductor.errors import ConcurrentModification, MalformedPlan, PathConflict, WorkItemNotFound
from conductor.locks import file_lock
from conductor.plan.document import parse_plan
from conductor.plan.model import MARKER_BY_STATUS, STATUS_BY_MARKER, Status
from conductor.plan.store import (
    METADATA_FILENAME,
    PLAN_FILENAME,
    atomic_write,
    content_token,
)

log = logging.getLogger(__name__)

REGISTRY_FILENAME = "tracks.md"
REGISTRY_HEADER = "# Project Tracks\n\nThis file tracks all major tracks for the project.\n"
ENTRY_PATTERN = re.compile(
    r"^##[ \t]+\[(?P<mark>[^\]]?)\][ \t]+Track:[ \t]*(?P<description>.*?)[ \t]*$"
)
LINK_PATTERN = re.compile(r"\]\(\./tracks/(?P<track_id>[^/)]+)/?\)")
TRACK_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def registry_link(track_id: str) -> str:
    return f"*Link: [./tracks/{track_id}/](./tracks/{track_id}/)*"


@dataclass(slots=True)
class TrackEntry:
    track_id: str
    description: str
    status: Status
    line_number: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "track_id": self.track_id,
            "description": self.description,
            "status": self.status.value,
        }


class TrackRegistry:
    """The project-level list of tracks in `conductor/tracks.md`."""

    def __init__(self, conductor_root: Path, *, lock_timeout_seconds: float = 3.0) -> None:
        self.conductor_root = conductor_root.resolve()
        self.path = self.conductor_root / REGISTRY_FILENAME
        self.tracks_dir = self.conductor_root / "tracks"
        self.archive_dir = self.conductor_root / "archive"
        self.lock_file = self.conductor_root / ".registry.lock"
        self.lock_timeout_seconds = lock_timeout_seconds

    def track_dir(self, track_id: str) -> Path:
        return self.tracks_dir / track_id

    def _read(self) -> str:
        if not self.path.exists():
            return ""
        return self.path.read_bytes().decode("utf-8")

    def _parse(self, text: str) -> list[TrackEntry]:
        entries: list[TrackEntry] = []
        lines = text.splitlines()
        for index, line in enumerate(lines):
            match = ENTRY_PATTERN.match(line)
            if not match:
                continue
            status = STATUS_BY_MARKER.get(match.group("mark"))
            if status is None:
                raise MalformedPlan(
                    f"Ambiguous status marker '[{match.group('mark')}]' in {REGISTRY_FILENAME}.",
                    line_number=index + 1,
                    attempted="parse track registry",
                )
            track_id = None
            for follow in lines[index + 1 : index + 4]:
                link = LINK_PATTERN.search(follow)
                if link:
                    track_id = link.group("track_id")
                    break
            if track_id is None:
                raise MalformedPlan(
                    "Track entry has no link to its track directory.",
                    line_number=index + 1,
                    attempted="parse track registry",
                )
            entries.append(
                TrackEntry(
                    track_id=track_id,
                    description=match.group("description"),
                    status=status,
                    line_number=index,
                )
            )
        return entries

    def list_tracks(self) -> list[TrackEntry]:
        return self._parse(self._read())

    def get(self, track_id: str) -> TrackEntry:
        for entry in self.list_tracks():
            if entry.track_id == track_id:
                return entry
        raise WorkItemNotFound(
            f"Track '{track_id}' is not registered in {REGISTRY_FILENAME}.",
            attempted="look up track",
        )

    def in_progress_count(self) -> int:
        return sum(1 for entry in self.list_tracks() if entry.status == Status.IN_PROGRESS)

    def _mutate(self, expected_token: str, new_text: str) -> None:
        with file_lock(self.lock_file, self.lock_timeout_seconds):
            current = self._read()
            if content_token(current.encode("utf-8")) != expected_token:
                raise ConcurrentModification(
                    f"{REGISTRY_FILENAME} changed on disk while it was being updated.",
                    attempted="update track registry",
                )
            atomic_write(self.path, new_text.encode("utf-8"))

    def add_track(self, track_id: str, description: str, plan_text: str) -> TrackEntry:
        if not TRACK_ID_PATTERN.match(track_id):
            raise PathConflict(
                f"Track id '{track_id}' is not a valid directory name.",
                attempted="add track",
            )
        track_dir = self.track_dir(track_id)
        if track_dir.exists() or any(entry.track_id == track_id for entry in self.list_tracks()):
            raise PathConflict(
                f"Track '{track_id}' already exists.",
                suggestion=f"{track_id}-2",
                attempted="add track",
            )
        parse_plan(plan_text, track_id)

        text = self._read()
        token = content_token(text.encode("utf-8"))
        body = text if text else REGISTRY_HEADER
        if not body.endswith("\n"):
            body += "\n"
        entry_block = f"\n---\n\n## [ ] Track: {description}\n{registry_link(track_id)}\n"

        track_dir.mkdir(parents=True)
        (track_dir / PLAN_FILENAME).write_text(plan_text, encoding="utf-8")
        now = _utcnow_iso()
        metadata = {
            "track_id": track_id,
            "kind": "track",
            "status": Status.PENDING.value,
            "description": description,
            "created_at": now,
            "updated_at": now,
            "items": {},
            "commits": {},
        }
        (track_dir / METADATA_FILENAME).write_text(
            json.dumps(metadata, ensure_ascii=False, indent=2) + "\n", encoding="utf-8"
        )
        try:
            self._mutate(token, body + entry_block)
        except ConcurrentModification:
            shutil.rmtree(track_dir)
            raise
        log.info("registered track %s", track_id)
        return TrackEntry(track_id, description, Status.PENDING, line_number=-1)

    def set_status(self, track_id: str, status: Status) -> None:
        text = self._read()
        if not text:
            return
        entries = [entry for entry in self._parse(text) if entry.track_id == track_id]
        if not entries or entries[0].status == status:
            return
        lines = text.splitlines(keepends=True)
        entry = entries[0]
        lines[entry.line_number] = re.sub(
            r"\[[^\]]?\]",
            f"[{MARKER_BY_STATUS[status]}]",
            lines[entry.line_number],
            count=1,
        )
        self._mutate(content_token(text.encode("utf-8")), "".join(lines))

    def archive_track(self, track_id: str) -> Path:
        entry = self.get(track_id)
        source = self.track_dir(track_id)
        target = self.archive_dir / track_id
        if target.exists():
            raise PathConflict(
                f"Archive already contains '{track_id}'.",
                attempted="archive track",
            )
        text = self._read()
        lines = text.splitlines(keepends=True)
        end = entry.line_number + 1
        while end < len(lines):
            line = lines[end].rstrip("\r\n")
            if ENTRY_PATTERN.match(line) or line.strip() == "---":
                break
            end += 1
        start = entry.line_number
        if start >= 2 and lines[start - 1].strip() == "" and lines[start - 2].strip() == "---":
            start -= 2
        new_text = "".join(lines[:start] + lines[end:])
        self._mutate(content_token(text.encode("utf-8")), new_text)
        if source.exists():
            self.archive_dir.mkdir(parents=True, exist_ok=True)
            shutil.move(str(source), str(target))
        log.info("archived track %s to %s", track_id, target)
        return target
