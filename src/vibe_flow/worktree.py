"""Git worktree provisioning for task sessions."""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from . import metrics
from .errors import ConfigError
from .errors import VcsError

logger = logging.getLogger(__name__)

# On-disk contract: external tooling expects task worktrees here.
WORKTREE_DIR = Path(".vibe-flow") / "worktrees"


@dataclass(frozen=True)
class WorktreeResult:
    path: Path
    created: bool


@dataclass(frozen=True)
class RepoStatus:
    branch: str
    status: str


def worktree_path(repo_root: Path | str, task_id: str) -> Path:
    if not task_id or Path(task_id).name != task_id or task_id in {".", ".."}:
        raise ConfigError(f"Invalid task id for worktree: {task_id!r}")
    return Path(repo_root) / WORKTREE_DIR / task_id


def require_repo_root(repo_root: Path | str | None) -> Path:
    if repo_root is None or not str(repo_root).strip():
        raise ConfigError("Repository path not configured")
    return Path(repo_root)


class WorktreeProvisioner:
    """Create and inspect per-task git worktrees."""

    def __init__(self, git_bin: str = "git") -> None:
        self.git_bin = git_bin

    # ------------------------------------------------------------------
    def ensure(self, repo_root: Path | str | None, task_id: str, branch_name: str) -> WorktreeResult:
        root = require_repo_root(repo_root)
        target_path = worktree_path(root, task_id)
        if target_path.exists():
            metrics.record_worktree("reused")
            return WorktreeResult(path=target_path, created=False)

        # An existing branch is attached, never recreated.
        if self._branch_exists(root, branch_name):
            args = ["worktree", "add", str(target_path), branch_name]
        else:
            args = ["worktree", "add", "-b", branch_name, str(target_path)]
        try:
            self._run_git(root, args)
        except VcsError:
            metrics.record_worktree("failed")
            raise
        logger.info("Created worktree for task %s on %s at %s", task_id, branch_name, target_path)
        metrics.record_worktree("created")
        return WorktreeResult(path=target_path, created=True)

    # Repository inspection --------------------------------------------
    def status(self, repo_root: Path | str | None) -> RepoStatus:
        root = require_repo_root(repo_root)
        branch = self._run_git(root, ["branch", "--show-current"]).strip()
        status = self._run_git(root, ["status", "--short"]).strip()
        return RepoStatus(branch=branch, status=status)

    def diff(self, repo_root: Path | str | None, task_id: str | None = None) -> str:
        return self._run_git(self._target_dir(repo_root, task_id), ["diff"])

    def commit(self, repo_root: Path | str | None, message: str, task_id: str | None = None) -> None:
        cwd = self._target_dir(repo_root, task_id)
        self._run_git(cwd, ["add", "."])
        self._run_git(cwd, ["commit", "-m", message])

    # ------------------------------------------------------------------
    def _target_dir(self, repo_root: Path | str | None, task_id: str | None) -> Path:
        root = require_repo_root(repo_root)
        return worktree_path(root, task_id) if task_id else root

    def _branch_exists(self, repo_root: Path, branch: str) -> bool:
        try:
            self._run_git(repo_root, ["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"])
        except VcsError:
            return False
        return True

    def _run_git(self, cwd: Path, args: Iterable[str]) -> str:
        cmd = [self.git_bin, *args]
        try:
            result = subprocess.run(
                cmd,
                cwd=cwd,
                check=True,
                text=True,
                capture_output=True,
            )
        except subprocess.CalledProcessError as exc:
            raise VcsError(f"Git command failed: {' '.join(cmd)}", command=cmd, stderr=exc.stderr or "") from exc
        except OSError as exc:
            raise VcsError(f"Git command failed: {' '.join(cmd)}", command=cmd, stderr=str(exc)) from exc
        return result.stdout
