from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from conductor.errors import ConcurrentModification, ConductorError, GitUnavailable
from conductor.git import GitRunner
from conductor.locks import file_lock

log = logging.getLogger(__name__)


class GitNotesStore:
    """Versioned JSON documents kept as git notes on a fixed anchor blob.

    Falls back to plain files under `.conductor/state/` when the directory is not
    a git repository or the `local` backend is requested.
    """

    NAMESPACES = {"sessions", "workspaces"}
    SCHEMA_VERSION = 1
    ANCHOR_CONTENT = "conductor-state-anchor\n"

    def __init__(
        self,
        repo_root: Path,
        *,
        backend_mode: str = "notes",
        git: GitRunner | None = None,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.git = git or GitRunner(self.repo_root)
        self.local_state_dir = self.repo_root / ".conductor" / "state"
        self.local_state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.local_state_dir / ".lock"
        if backend_mode not in {"notes", "local"}:
            raise ConductorError(
                f"Unsupported state backend mode: {backend_mode}",
                attempted="open state store",
            )
        try:
            self._git_repo_available = self.git.is_repository()
        except GitUnavailable:
            self._git_repo_available = False
        if backend_mode == "local" or not self._git_repo_available:
            self._backend_mode = "local"
        else:
            self._backend_mode = backend_mode
        if self._git_repo_available:
            self.git.ensure_excluded()
        self._anchor: str | None = None

    @property
    def git_enabled(self) -> bool:
        return self._backend_mode == "notes" and self._git_repo_available

    @property
    def backend_mode(self) -> str:
        return self._backend_mode

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in GitNotesStore.NAMESPACES:
            raise ConductorError(
                f"Unsupported namespace: {namespace}", attempted="access shared state"
            )

    def _local_file(self, namespace: str) -> Path:
        return self.local_state_dir / f"{namespace}.json"

    @staticmethod
    def _notes_ref(namespace: str) -> str:
        return f"refs/notes/conductor/state/{namespace}"

    def _anchor_object(self) -> str:
        # Content-addressed, so every clone and worktree agrees on the anchor.
        if self._anchor is None:
            self._anchor = self.git.out(
                ["hash-object", "-w", "--stdin"],
                input_text=self.ANCHOR_CONTENT,
                cancellable=False,
            )
        return self._anchor

    def _read_raw_json(self, namespace: str) -> Any:
        if self.git_enabled:
            result = self.git.run(
                ["notes", "--ref", self._notes_ref(namespace), "show", self._anchor_object()],
                check=False,
                cancellable=False,
            )
            content = result.stdout.strip()
            if not result.ok or not content:
                return None
        else:
            local_file = self._local_file(namespace)
            if not local_file.exists():
                return None
            content = local_file.read_text(encoding="utf-8")
        try:
            return json.loads(content)
        except json.JSONDecodeError:
            log.warning("ignoring unreadable %s state payload", namespace)
            return None

    def _write_raw_json(self, namespace: str, payload: Any) -> None:
        serialized = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
        if self.git_enabled:
            self.git.run(
                [
                    "notes",
                    "--ref",
                    self._notes_ref(namespace),
                    "add",
                    "-f",
                    "-m",
                    serialized,
                    self._anchor_object(),
                ],
                cancellable=False,
            )
            return
        self._local_file(namespace).write_text(serialized, encoding="utf-8")

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or self._utcnow_iso(),
                "data": raw_payload.get("data", default),
            }

        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": self._utcnow_iso(),
            "data": default if raw_payload is None else raw_payload,
        }

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        return self._normalize_envelope(self._read_raw_json(namespace), default_value)

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default).get("data")

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        self._validate_namespace(namespace)
        with file_lock(self.lock_file):
            current = self.get_envelope(namespace, default={})
            current_revision = int(current.get("revision", 1))
            if expected_revision is not None and expected_revision != current_revision:
                raise ConcurrentModification(
                    f"Concurrent state update detected for namespace '{namespace}'.",
                    attempted="write shared state",
                )
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": current_revision + 1,
                "updated_at": self._utcnow_iso(),
                "data": data,
            }
            self._write_raw_json(namespace, envelope)

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        default_value = {} if default is None else default
        last_error: ConcurrentModification | None = None
        for _ in range(4):
            current = self.get_envelope(namespace, default=default_value)
            updated = updater(current.get("data", default_value))
            try:
                self.set_json(namespace, updated, expected_revision=int(current.get("revision", 1)))
                return updated
            except ConcurrentModification as exc:
                last_error = exc
                time.sleep(0.01)
        assert last_error is not None
        raise last_error

    # -- typed accessors --------------------------------------------------

    def get_sessions(self) -> dict[str, dict[str, Any]]:
        payload = self.get_json("sessions", default={"sessions": {}})
        sessions = payload.get("sessions", {}) if isinstance(payload, dict) else {}
        return sessions if isinstance(sessions, dict) else {}

    def put_session(self, session: dict[str, Any]) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {"sessions": {}}
            result.setdefault("sessions", {})
            result["sessions"][session["id"]] = session
            return result

        self.update_json("sessions", _updater, default={"sessions": {}})

    def get_workspaces(self) -> dict[str, dict[str, Any]]:
        payload = self.get_json("workspaces", default={"workspaces": {}})
        workspaces = payload.get("workspaces", {}) if isinstance(payload, dict) else {}
        return workspaces if isinstance(workspaces, dict) else {}

    def put_workspace(self, workspace: dict[str, Any]) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {"workspaces": {}}
            result.setdefault("workspaces", {})
            result["workspaces"][workspace["branch"]] = workspace
            return result

        self.update_json("workspaces", _updater, default={"workspaces": {}})

    def drop_workspace(self, branch: str) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {"workspaces": {}}
            result.setdefault("workspaces", {}).pop(branch, None)
            return result

        self.update_json("workspaces", _updater, default={"workspaces": {}})
