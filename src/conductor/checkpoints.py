from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from conductor.config import CheckpointsConfig, HistoryConfig
from conductor.errors import ConductorError, InvalidTransition, NoConfirmation
from conductor.git import GitRunner
from conductor.history.correlator import read_commit
from conductor.plan.model import CommitKind, CommitRecord, ItemKind, Status
from conductor.plan.registry import TrackRegistry
from conductor.plan.store import PlanStore

log = logging.getLogger(__name__)


@dataclass(slots=True)
class VerificationEvidence:
    test_command: str = ""
    test_result: str = ""
    verification_steps: list[str] = field(default_factory=list)
    user_confirmed: bool = False
    notes: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "test_command": self.test_command,
            "test_result": self.test_result,
            "verification_steps": list(self.verification_steps),
            "user_confirmed": self.user_confirmed,
            "notes": self.notes,
        }


class CheckpointRecorder:
    def __init__(
        self,
        git: GitRunner,
        registry: TrackRegistry,
        *,
        history: HistoryConfig | None = None,
        config: CheckpointsConfig | None = None,
    ) -> None:
        self.git = git
        self.registry = registry
        self.history = history or HistoryConfig()
        self.config = config or CheckpointsConfig()

    def _store(self, phase_id: str) -> PlanStore:
        track_id = phase_id.split(":", 1)[0]
        return PlanStore(self.registry.track_dir(track_id), registry=self.registry)

    def checkpoint(self, phase_id: str, evidence: VerificationEvidence) -> CommitRecord:
        """Commit the finished phase, attach its evidence note and mark it complete.

        Nothing touches the repository unless the user explicitly confirmed the
        manual verification.
        """
        attempted = f"checkpoint {phase_id}"
        if not evidence.user_confirmed:
            raise NoConfirmation(
                "Manual verification was not confirmed; no checkpoint was created.",
                attempted=attempted,
            )
        store = self._store(phase_id)
        document = store.load()
        phase = document.get(phase_id)
        if phase.kind != ItemKind.PHASE:
            raise InvalidTransition(
                f"{phase_id} is a {phase.kind.value}; only phases take checkpoints.",
                attempted=attempted,
            )
        if phase.status == Status.COMPLETE and phase.checkpoint_ref:
            raise InvalidTransition(
                f"Phase '{phase.title}' already has checkpoint {phase.checkpoint_ref}.",
                attempted=attempted,
            )
        document.check_transition(phase, Status.COMPLETE)

        self.git.ensure_repository()
        self.git.ensure_excluded()
        message = f"{self.history.checkpoint_prefix} Checkpoint end of Phase '{phase.title}'"
        self.git.run(["add", "-A"], cancellable=False)
        self.git.run(["commit", "--allow-empty", "-m", message], cancellable=False)
        sha = self.git.head()

        try:
            note = {
                "phase_id": phase_id,
                "phase_title": phase.title,
                "recorded_at": datetime.now(UTC).replace(microsecond=0).isoformat(),
                **evidence.to_dict(),
            }
            self.git.run(
                [
                    "notes",
                    "--ref",
                    self.config.notes_ref,
                    "add",
                    "-f",
                    "-m",
                    json.dumps(note, ensure_ascii=False, indent=2),
                    sha,
                ],
                cancellable=False,
            )
            with store.transaction() as document:
                document.set_checkpoint(phase_id, sha[:7])
                document.set_status(phase_id, Status.COMPLETE)
                store.remember_commit(sha, CommitKind.CHECKPOINT, phase_id, message)
            self._commit_plan(store, f"Mark phase '{phase.title}' as complete")
        except ConductorError as exc:
            exc.repo_state = "partial"
            raise

        log.info("checkpoint %s recorded for %s", sha, phase_id)
        record = read_commit(self.git, sha)
        assert record is not None
        record.kind = CommitKind.CHECKPOINT
        record.item_id = phase_id
        return record

    def _commit_plan(self, store: PlanStore, summary: str) -> None:
        paths = [
            path.relative_to(self.git.repo_root).as_posix()
            for path in (store.plan_path, store.metadata_path, self.registry.path)
            if path.exists()
        ]
        self.git.run(["add", "--", *paths], cancellable=False)
        staged = self.git.run(["diff", "--cached", "--quiet"], check=False, cancellable=False)
        if not staged.ok:
            message = f"{self.history.plan_update_prefix} {summary}"
            self.git.run(["commit", "-m", message], cancellable=False)

    def show(self, sha: str) -> dict[str, Any] | None:
        result = self.git.run(
            ["notes", "--ref", self.config.notes_ref, "show", sha], check=False
        )
        if not result.ok or not result.stdout.strip():
            return None
        try:
            payload = json.loads(result.stdout)
        except json.JSONDecodeError:
            log.warning("checkpoint note on %s is not JSON", sha)
            return None
        return payload if isinstance(payload, dict) else None

    def list_checkpoints(self) -> list[dict[str, Any]]:
        result = self.git.run(["notes", "--ref", self.config.notes_ref, "list"], check=False)
        checkpoints: list[dict[str, Any]] = []
        for line in result.stdout.splitlines():
            fields = line.split()
            if len(fields) != 2:
                continue
            payload = self.show(fields[1])
            if payload is None:
                continue
            checkpoints.append({"sha": fields[1], **payload})
        return sorted(checkpoints, key=lambda entry: (entry.get("recorded_at", ""), entry["sha"]))
