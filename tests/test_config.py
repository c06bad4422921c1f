import tomllib
from pathlib import Path

from conductor import __version__
from conductor.config import ConductorConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "conductor.toml"
    config = ConductorConfig.default()
    config.project.conductor_dir = "planning"
    config.git.timeout_seconds = 12.5
    config.history.ghost_search_limit = 200
    config.history.plan_update_prefix = "plan:"
    config.workspaces.root = ".worktrees"
    config.workspaces.branch_prefix = "agents/"
    config.checkpoints.notes_ref = "refs/notes/checkpoints-test"
    config.state.backend = "local"
    config.logging.level = "DEBUG"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.project.conductor_dir == "planning"
    assert loaded.project.main_branch == "main"
    assert loaded.git.timeout_seconds == 12.5
    assert loaded.history.ghost_search_limit == 200
    assert loaded.history.plan_update_prefix == "plan:"
    assert loaded.history.revert_prefix == "conductor(revert):"
    assert loaded.workspaces.root == ".worktrees"
    assert loaded.workspaces.branch_prefix == "agents/"
    assert loaded.checkpoints.notes_ref == "refs/notes/checkpoints-test"
    assert loaded.state.backend == "local"
    assert loaded.logging.level == "DEBUG"


def test_missing_config_file_gives_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded == ConductorConfig.default()


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(ConductorConfig.default())

    for section in ("project", "git", "history", "workspaces", "checkpoints", "state", "logging"):
        assert f"[{section}]" in rendered
    assert "ghost_search_limit = 5000" in rendered
    assert 'branch_prefix = ""' in rendered
    assert "timeout_seconds = 60.0" in rendered
    assert tomllib.loads(rendered)["history"]["checkpoint_prefix"] == "conductor(checkpoint):"


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
