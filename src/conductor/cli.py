from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from conductor.checkpoints import CheckpointRecorder, VerificationEvidence
from conductor.config import CONFIG_FILENAME, ConductorConfig, load_config, save_config
from conductor.errors import ConductorError, WorkItemNotFound
from conductor.git import GitRunner
from conductor.history import (
    CommitCorrelator,
    RevertExecutor,
    RevertPlanner,
    RevertSession,
    SessionState,
)
from conductor.history.correlator import read_commit
from conductor.plan.model import MARKER_BY_STATUS, CommitKind, Status
from conductor.plan.registry import REGISTRY_HEADER, TrackRegistry
from conductor.plan.store import PlanStore
from conductor.state import GitNotesStore
from conductor.workspaces import WorkspaceManager


config_option = click.option(
    "--config", "config_value", default=CONFIG_FILENAME, show_default=True
)


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: ConductorConfig
    git: GitRunner
    registry: TrackRegistry

    def store(self, item_id: str) -> PlanStore:
        track_id = item_id.split(":", 1)[0]
        return PlanStore(self.registry.track_dir(track_id), registry=self.registry)

    def state(self) -> GitNotesStore:
        return GitNotesStore(self.repo_root, backend_mode=self.config.state.backend, git=self.git)

    def planner(self) -> RevertPlanner:
        return RevertPlanner(self.git, self.registry, history=self.config.history)

    def executor(self) -> RevertExecutor:
        return RevertExecutor(self.git, self.registry, self.state(), history=self.config.history)

    def workspaces(self) -> WorkspaceManager:
        return WorkspaceManager(
            self.git,
            self.state(),
            config=self.config.workspaces,
            main_branch=self.config.project.main_branch,
        )

    def commit_paths(self, paths: list[Path], message: str) -> bool:
        relative = [path.relative_to(self.repo_root).as_posix() for path in paths]
        self.git.run(["add", "-A", "--", *relative], cancellable=False)
        staged = self.git.run(["diff", "--cached", "--quiet"], check=False, cancellable=False)
        if staged.ok:
            return False
        self.git.run(["commit", "-m", message], cancellable=False)
        return True


@contextmanager
def _conductor_errors() -> Iterator[None]:
    try:
        yield
    except ConductorError as exc:
        raise click.ClickException(str(exc)) from exc


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    ctx = click.get_current_context(silent=True)
    level = None
    if ctx is not None and isinstance(ctx.find_root().obj, dict):
        level = ctx.find_root().obj.get("log_level")
    logging.basicConfig(
        level=getattr(logging, (level or config.logging.level).upper(), logging.WARNING),
        format="%(levelname)s %(name)s: %(message)s",
    )
    git = GitRunner(
        repo_root, binary=config.git.binary, timeout_seconds=config.git.timeout_seconds
    )
    registry = TrackRegistry(repo_root / config.project.conductor_dir)
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        git=git,
        registry=registry,
    )


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
)
@click.pass_context
def cli(ctx: click.Context, log_level: str | None) -> None:
    """Conductor: git-correlated plan tracking, checkpoints and reverts."""
    ctx.obj = {"log_level": log_level}


@cli.command("init")
@config_option
def init_command(config_value: str) -> None:
    runtime = _load_runtime(config_value)
    save_config(runtime.config_path, runtime.config)
    runtime.registry.tracks_dir.mkdir(parents=True, exist_ok=True)
    if not runtime.registry.path.exists():
        runtime.registry.path.write_text(REGISTRY_HEADER, encoding="utf-8")
    with _conductor_errors():
        if runtime.git.is_repository():
            runtime.git.ensure_excluded()
    click.echo(f"Initialized Conductor in {runtime.repo_root}")
    click.echo(f"Config: {runtime.config_path}")
    click.echo(f"Registry: {runtime.registry.path}")


# -- tracks ---------------------------------------------------------------


@cli.group("track")
def track_group() -> None:
    """Manage the track registry."""


@track_group.command("add")
@click.argument("track_id")
@click.argument("description")
@click.option(
    "--plan-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
)
@click.option("--commit/--no-commit", default=True, show_default=True)
@config_option
def track_add_command(
    track_id: str, description: str, plan_file: Path, commit: bool, config_value: str
) -> None:
    runtime = _load_runtime(config_value)
    with _conductor_errors():
        runtime.registry.add_track(track_id, description, plan_file.read_text(encoding="utf-8"))
        if commit:
            message = f"{runtime.config.history.track_creation_prefix} '{description}'"
            runtime.commit_paths(
                [runtime.registry.track_dir(track_id), runtime.registry.path], message
            )
    click.echo(f"Added track {track_id}")


@track_group.command("list")
@click.option("--json", "as_json", is_flag=True, default=False)
@config_option
def track_list_command(as_json: bool, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    with _conductor_errors():
        entries = runtime.registry.list_tracks()
    if as_json:
        _echo_json([entry.to_dict() for entry in entries])
        return
    if not entries:
        click.echo("No tracks registered.")
        return
    for entry in entries:
        click.echo(f"[{MARKER_BY_STATUS[entry.status]}] {entry.track_id:<24} {entry.description}")


@track_group.command("archive")
@click.argument("track_id")
@click.option("--commit/--no-commit", default=True, show_default=True)
@config_option
def track_archive_command(track_id: str, commit: bool, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    with _conductor_errors():
        source = runtime.registry.track_dir(track_id)
        target = runtime.registry.archive_track(track_id)
        if commit:
            runtime.commit_paths(
                [source, target, runtime.registry.path],
                f"chore(conductor): Archive track '{track_id}'",
            )
    click.echo(f"Archived {track_id} to {target}")


# -- plan items -----------------------------------------------------------


@cli.command("status")
@click.argument("track_id", required=False)
@click.option("--json", "as_json", is_flag=True, default=False)
@config_option
def status_command(track_id: str | None, as_json: bool, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    with _conductor_errors():
        if track_id is None:
            entries = runtime.registry.list_tracks()
            payload = {
                "tracks": [entry.to_dict() for entry in entries],
                "in_progress": runtime.registry.in_progress_count(),
            }
            if as_json:
                _echo_json(payload)
                return
            for entry in entries:
                click.echo(f"[{MARKER_BY_STATUS[entry.status]}] {entry.track_id}")
            click.echo(f"{payload['in_progress']} track(s) in progress.")
            return
        document = runtime.store(track_id).load()
    if as_json:
        _echo_json(document.to_dict())
        return
    for item in document.items():
        depth = item.id.count(".") + (1 if ":" in item.id else 0)
        refs = f" [{', '.join(item.commit_refs)}]" if item.commit_refs else ""
        click.echo(f"{'  ' * depth}[{MARKER_BY_STATUS[item.status]}] {item.id} {item.title}{refs}")


@cli.command("set-status")
@click.argument("item_id")
@click.argument("status", type=click.Choice([status.value for status in Status]))
@click.option("--unblock", is_flag=True, default=False)
@config_option
def set_status_command(item_id: str, status: str, unblock: bool, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    with _conductor_errors():
        item = runtime.store(item_id).set_status(item_id, Status(status), unblock=unblock)
    click.echo(f"{item.id} is now {item.status.value}")


@cli.command("record")
@click.argument("item_id")
@click.argument("sha")
@click.option(
    "--kind",
    type=click.Choice([kind.value for kind in CommitKind]),
    default=CommitKind.IMPLEMENTATION.value,
    show_default=True,
)
@config_option
def record_command(item_id: str, sha: str, kind: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    with _conductor_errors():
        commit = read_commit(runtime.git, sha)
        if commit is None:
            raise WorkItemNotFound(f"No commit '{sha}' in this repository.", attempted="record")
        short = commit.sha[:7]
        runtime.store(item_id).record_commit(item_id, short, CommitKind(kind), commit.message)
    click.echo(f"Recorded {short} on {item_id}")


@cli.command("checkpoint")
@click.argument("phase_id")
@click.option("--test-command", default="", help="Command that verified the phase.")
@click.option("--test-result", default="", help="Outcome of the test command.")
@click.option("--step", "steps", multiple=True, help="Manual verification step.")
@click.option("--notes", default="")
@click.option("--confirm", is_flag=True, default=False, help="Confirm manual verification.")
@config_option
def checkpoint_command(
    phase_id: str,
    test_command: str,
    test_result: str,
    steps: tuple[str, ...],
    notes: str,
    confirm: bool,
    config_value: str,
) -> None:
    runtime = _load_runtime(config_value)
    evidence = VerificationEvidence(
        test_command=test_command,
        test_result=test_result,
        verification_steps=list(steps),
        user_confirmed=confirm,
        notes=notes,
    )
    recorder = CheckpointRecorder(
        runtime.git,
        runtime.registry,
        history=runtime.config.history,
        config=runtime.config.checkpoints,
    )
    with _conductor_errors():
        record = recorder.checkpoint(phase_id, evidence)
    click.echo(f"Checkpoint {record.sha[:12]} recorded for {phase_id}")


@cli.command("checkpoints")
@config_option
def checkpoints_command(config_value: str) -> None:
    runtime = _load_runtime(config_value)
    recorder = CheckpointRecorder(runtime.git, runtime.registry, config=runtime.config.checkpoints)
    with _conductor_errors():
        entries = recorder.list_checkpoints()
    if not entries:
        click.echo("No checkpoints found.")
        return
    for entry in entries:
        phase = f"{entry.get('phase_id', '?')} {entry.get('phase_title', '')}"
        click.echo(f"{entry['sha'][:12]} {phase}")


@cli.command("resolve")
@click.argument("item_id")
@config_option
def resolve_command(item_id: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    with _conductor_errors():
        store = runtime.store(item_id)
        item = store.load().get(item_id)

        def _lookup(sha: str) -> str | None:
            info = store.commit_info(sha)
            return str(info.get("message") or "") if info else None

        correlator = CommitCorrelator(
            runtime.git, search_limit=runtime.config.history.ghost_search_limit
        )
        records, ghosts = correlator.resolve(item.walk(), _lookup)
    _echo_json(
        {
            "commits": [record.to_dict() for record in records],
            "ghosts": [ghost.to_dict() for ghost in ghosts],
        }
    )


# -- revert ---------------------------------------------------------------


@cli.group("revert")
def revert_group() -> None:
    """Plan and execute git-aware reverts of work items."""


def _print_session(session: RevertSession) -> None:
    click.echo(f"Session {session.id}: {session.state.value}")
    for entry in session.completed:
        click.echo(f"  reverted {entry['sha'][:12]} -> {(entry['revert_sha'] or 'no-op')[:12]}")
    for entry in session.queue:
        click.echo(f"  pending  {entry['sha'][:12]} {entry.get('subject', '')}")
    if session.conflict_paths:
        click.echo("  conflicts: " + ", ".join(session.conflict_paths))


@revert_group.command("plan")
@click.argument("item_id")
@click.option("--ack", "acknowledged", multiple=True, help="Acknowledge an unresolved sha.")
@click.option("--json", "as_json", is_flag=True, default=False)
@config_option
def revert_plan_command(
    item_id: str, acknowledged: tuple[str, ...], as_json: bool, config_value: str
) -> None:
    runtime = _load_runtime(config_value)
    with _conductor_errors():
        plan = runtime.planner().plan(item_id, acknowledged_ghosts=acknowledged)
    if as_json:
        _echo_json(plan.to_dict())
        return
    click.echo(f"Revert plan for {plan.target_id} ({plan.target_title}):")
    for record in plan.commits:
        click.echo(f"  {record.sha[:12]} {record.kind.value:<15} {record.subject}")
    for record in plan.skipped:
        click.echo(f"  skip {record.sha[:12]} {record.kind.value}")
    for warning in plan.warnings:
        click.echo(f"  warning: {warning}")


@revert_group.command("run")
@click.argument("item_id")
@click.option("--ack", "acknowledged", multiple=True, help="Acknowledge an unresolved sha.")
@click.option("--yes", "confirmed", is_flag=True, default=False, help="Accept plan warnings.")
@config_option
def revert_run_command(
    item_id: str, acknowledged: tuple[str, ...], confirmed: bool, config_value: str
) -> None:
    runtime = _load_runtime(config_value)
    with _conductor_errors():
        plan = runtime.planner().plan(item_id, acknowledged_ghosts=acknowledged)
        session = runtime.executor().start(plan, confirmed=confirmed)
    _print_session(session)
    if session.state == SessionState.CONFLICTED:
        raise click.ClickException(
            "Revert halted on conflicts; resolve them and run 'conductor revert continue', "
            "or 'conductor revert abort'."
        )


@revert_group.command("continue")
@config_option
def revert_continue_command(config_value: str) -> None:
    runtime = _load_runtime(config_value)
    with _conductor_errors():
        session = runtime.executor().resume()
    _print_session(session)
    if session.state == SessionState.CONFLICTED:
        raise click.ClickException("Revert halted on conflicts again.")


@revert_group.command("abort")
@config_option
def revert_abort_command(config_value: str) -> None:
    runtime = _load_runtime(config_value)
    with _conductor_errors():
        session = runtime.executor().abort()
    _print_session(session)


@revert_group.command("status")
@config_option
def revert_status_command(config_value: str) -> None:
    runtime = _load_runtime(config_value)
    with _conductor_errors():
        session = runtime.executor().active()
    if session is None:
        click.echo("No revert session in progress.")
        return
    _print_session(session)


# -- workspaces -----------------------------------------------------------


@cli.group("workspace")
def workspace_group() -> None:
    """Isolated worktrees for concurrent work."""


@workspace_group.command("create")
@click.argument("owner")
@click.argument("branch")
@click.option("--base", "base_ref", default=None)
@config_option
def workspace_create_command(
    owner: str, branch: str, base_ref: str | None, config_value: str
) -> None:
    runtime = _load_runtime(config_value)
    with _conductor_errors():
        workspace = runtime.workspaces().create(
            owner, branch, base_ref, owner_pid=os.getppid()
        )
    click.echo(f"Created {workspace.branch} at {workspace.path}")


@workspace_group.command("merge")
@click.argument("branch")
@click.option("--into", "target_branch", default=None)
@click.option("--continue", "resume", is_flag=True, default=False)
@click.option("--abort", is_flag=True, default=False)
@config_option
def workspace_merge_command(
    branch: str, target_branch: str | None, resume: bool, abort: bool, config_value: str
) -> None:
    runtime = _load_runtime(config_value)
    manager = runtime.workspaces()
    with _conductor_errors():
        workspace = manager.get(branch)
        if abort:
            manager.abort_merge(workspace)
            click.echo(f"Aborted merge of {workspace.branch}")
            return
        if resume:
            result = manager.resume_merge(workspace)
        else:
            result = manager.merge(workspace, target_branch)
    click.echo(
        f"Merged {workspace.branch} into {result.target_branch} ({result.merge_commit[:12]})"
    )


@workspace_group.command("cleanup")
@click.argument("branch")
@click.option("--force", is_flag=True, default=False, help="Discard uncommitted changes.")
@click.option("--yes", is_flag=True, default=False, help="Skip the confirmation prompt.")
@config_option
def workspace_cleanup_command(branch: str, force: bool, yes: bool, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    manager = runtime.workspaces()
    with _conductor_errors():
        workspace = manager.get(branch)
        if not yes:
            click.confirm(
                f"Remove workspace {workspace.path} and delete branch {workspace.branch}?",
                abort=True,
            )
        manager.cleanup(workspace, force=force)
    click.echo(f"Removed {workspace.branch}")


@workspace_group.command("list")
@click.option("--json", "as_json", is_flag=True, default=False)
@config_option
def workspace_list_command(as_json: bool, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    with _conductor_errors():
        workspaces = runtime.workspaces().list()
    if as_json:
        _echo_json([workspace.to_dict() for workspace in workspaces])
        return
    if not workspaces:
        click.echo("No workspaces.")
        return
    for workspace in workspaces:
        click.echo(
            f"{workspace.branch:<32} {workspace.state.value:<9} {workspace.owner} {workspace.path}"
        )


def main() -> None:
    cli()
