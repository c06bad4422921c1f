from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

StateBackendName = Literal["notes", "local"]
LogLevelName = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

CONFIG_FILENAME = "conductor.toml"


@dataclass(slots=True)
class ProjectConfig:
    conductor_dir: str = "conductor"
    main_branch: str = "main"


@dataclass(slots=True)
class GitConfig:
    binary: str = "git"
    timeout_seconds: float = 60.0


@dataclass(slots=True)
class HistoryConfig:
    ghost_search_limit: int = 5000
    plan_update_prefix: str = "conductor(plan):"
    checkpoint_prefix: str = "conductor(checkpoint):"
    track_creation_prefix: str = "chore(conductor): Add new track"
    revert_prefix: str = "conductor(revert):"


@dataclass(slots=True)
class WorkspacesConfig:
    root: str = ".conductor/worktrees"
    branch_prefix: str = ""
    merge_lock_timeout_seconds: float = 30.0


@dataclass(slots=True)
class CheckpointsConfig:
    notes_ref: str = "refs/notes/conductor/checkpoints"


@dataclass(slots=True)
class StateConfig:
    backend: StateBackendName = "notes"


@dataclass(slots=True)
class LoggingConfig:
    level: LogLevelName = "WARNING"


@dataclass(slots=True)
class ConductorConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    git: GitConfig = field(default_factory=GitConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    workspaces: WorkspacesConfig = field(default_factory=WorkspacesConfig)
    checkpoints: CheckpointsConfig = field(default_factory=CheckpointsConfig)
    state: StateConfig = field(default_factory=StateConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> ConductorConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ConductorConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            git=GitConfig(**data.get("git", {})),
            history=HistoryConfig(**data.get("history", {})),
            workspaces=WorkspacesConfig(**data.get("workspaces", {})),
            checkpoints=CheckpointsConfig(**data.get("checkpoints", {})),
            state=StateConfig(**data.get("state", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "conductor_dir": self.project.conductor_dir,
                "main_branch": self.project.main_branch,
            },
            "git": {
                "binary": self.git.binary,
                "timeout_seconds": self.git.timeout_seconds,
            },
            "history": {
                "ghost_search_limit": self.history.ghost_search_limit,
                "plan_update_prefix": self.history.plan_update_prefix,
                "checkpoint_prefix": self.history.checkpoint_prefix,
                "track_creation_prefix": self.history.track_creation_prefix,
                "revert_prefix": self.history.revert_prefix,
            },
            "workspaces": {
                "root": self.workspaces.root,
                "branch_prefix": self.workspaces.branch_prefix,
                "merge_lock_timeout_seconds": self.workspaces.merge_lock_timeout_seconds,
            },
            "checkpoints": {
                "notes_ref": self.checkpoints.notes_ref,
            },
            "state": {
                "backend": self.state.backend,
            },
            "logging": {
                "level": self.logging.level,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ConductorConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section, values in data.items():
        lines.append(f"[{section}]")
        for key, value in values.items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ConductorConfig:
    if not path.exists():
        return ConductorConfig.default()
    return ConductorConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: ConductorConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
