import os
import subprocess
from pathlib import Path

import pytest

from vibe_flow.sessions import SessionManager
from vibe_flow.state import StateStore
from vibe_flow.terminal import FakePtySpawner
from vibe_flow.worktree import WorktreeProvisioner


def _git(repo: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True, text=True)
    return result.stdout.strip()


@pytest.fixture()
def state_store(tmp_path: Path) -> StateStore:
    db_path = tmp_path / "state.db"
    store = StateStore(db_path)
    yield store
    store.close()


@pytest.fixture()
def git_repo(tmp_path: Path) -> Path:
    repo = tmp_path / "repo"
    repo.mkdir()
    _git(repo, "init")
    _git(repo, "config", "user.name", "tester")
    _git(repo, "config", "user.email", "tester@example.com")
    (repo / "README.md").write_text("demo\n", encoding="utf-8")
    _git(repo, "add", "README.md")
    _git(repo, "commit", "-m", "init")
    return repo


@pytest.fixture()
def home_dir(tmp_path: Path) -> Path:
    home = tmp_path / "home"
    home.mkdir()
    return home


@pytest.fixture()
def configured_store(state_store: StateStore, git_repo: Path) -> StateStore:
    state_store.update_settings(repo_root=git_repo, ai_tool="claude")
    return state_store


@pytest.fixture()
def spawner() -> FakePtySpawner:
    return FakePtySpawner()


@pytest.fixture()
def provisioner() -> WorktreeProvisioner:
    return WorktreeProvisioner()


@pytest.fixture()
def session_manager(
    configured_store: StateStore,
    provisioner: WorktreeProvisioner,
    spawner: FakePtySpawner,
    home_dir: Path,
) -> SessionManager:
    return SessionManager(
        configured_store,
        provisioner,
        shell_argv=["/bin/sh"],
        spawner=spawner,
        home=home_dir,
        base_env={"PATH": os.environ.get("PATH", "/usr/bin:/bin"), "TASK_ID": "stale"},
    )
