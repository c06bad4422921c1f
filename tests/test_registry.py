import json
from pathlib import Path

import pytest

from conductor.errors import MalformedPlan, PathConflict
from conductor.plan.model import Status
from conductor.plan.registry import TrackRegistry
from conftest import PLAN_TEXT


def test_add_track_writes_registry_plan_and_metadata(tmp_path: Path) -> None:
    registry = TrackRegistry(tmp_path / "conductor")

    registry.add_track("login", "Add login flow", PLAN_TEXT)
    registry.add_track("billing", "Add billing", PLAN_TEXT.replace("login", "billing"))

    text = registry.path.read_text(encoding="utf-8")
    assert text.startswith("# Project Tracks\n")
    assert "## [ ] Track: Add login flow\n*Link: [./tracks/login/](./tracks/login/)*\n" in text
    assert [entry.track_id for entry in registry.list_tracks()] == ["login", "billing"]
    assert (registry.track_dir("login") / "plan.md").read_text(encoding="utf-8") == PLAN_TEXT
    metadata = json.loads((registry.track_dir("login") / "metadata.json").read_text("utf-8"))
    assert metadata["track_id"] == "login"
    assert metadata["status"] == "pending"
    assert metadata["description"] == "Add login flow"


def test_add_existing_track_raises_with_suggestion(tmp_path: Path) -> None:
    registry = TrackRegistry(tmp_path / "conductor")
    registry.add_track("login", "Add login flow", PLAN_TEXT)

    with pytest.raises(PathConflict) as excinfo:
        registry.add_track("login", "Again", PLAN_TEXT)

    assert excinfo.value.suggestion == "login-2"
    assert len(registry.list_tracks()) == 1


def test_add_track_rejects_malformed_plan_without_side_effects(tmp_path: Path) -> None:
    registry = TrackRegistry(tmp_path / "conductor")

    with pytest.raises(MalformedPlan):
        registry.add_track("broken", "Broken", "## [ ] Phase 1\n")

    assert not registry.track_dir("broken").exists()
    assert registry.list_tracks() == []


def test_set_status_rewrites_only_the_marker(tmp_path: Path) -> None:
    registry = TrackRegistry(tmp_path / "conductor")
    registry.add_track("login", "Add login flow", PLAN_TEXT)
    registry.add_track("billing", "Add billing", PLAN_TEXT)
    before = registry.path.read_text(encoding="utf-8")

    registry.set_status("billing", Status.COMPLETE)

    after = registry.path.read_text(encoding="utf-8")
    assert after == before.replace("## [ ] Track: Add billing", "## [x] Track: Add billing")
    assert registry.get("billing").status == Status.COMPLETE
    assert registry.in_progress_count() == 0


def test_archive_moves_directory_and_drops_entry(tmp_path: Path) -> None:
    registry = TrackRegistry(tmp_path / "conductor")
    registry.add_track("login", "Add login flow", PLAN_TEXT)
    registry.add_track("billing", "Add billing", PLAN_TEXT)

    target = registry.archive_track("login")

    assert target == registry.archive_dir / "login"
    assert (target / "plan.md").exists()
    assert not registry.track_dir("login").exists()
    assert [entry.track_id for entry in registry.list_tracks()] == ["billing"]
    assert "tracks/login" not in registry.path.read_text(encoding="utf-8")
