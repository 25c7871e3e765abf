"""Terminal session ownership: one live pseudo-terminal process per session key."""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Any
from typing import Mapping
from typing import Optional
from typing import Protocol
from typing import Sequence

from . import metrics
from .errors import ConfigError
from .errors import DirectoryUnavailable
from .errors import SessionNotFound
from .errors import SpawnError
from .errors import VcsError
from .state import StateStore
from .state import Task
from .state import TaskStatus
from .terminal import SPAWN_ERRORS
from .terminal import PtyProcess
from .terminal import Spawner
from .terminal import TerminalProcess
from .terminal import TerminalSize
from .worktree import WorktreeProvisioner
from .worktree import require_repo_root

logger = logging.getLogger(__name__)

DEFAULT_SESSION_KEY = "default"
TASK_ENV_KEYS = ("TASK_ID", "TASK_TITLE", "TASK_DESCRIPTION", "TASK_STATUS")


class SessionListener(Protocol):
    def session_output(self, key: str, data: bytes) -> None: ...

    def session_exited(self, key: str, exit_code: int | None) -> None: ...


@dataclass
class SessionRecord:
    key: str
    process: TerminalProcess
    cwd: Path
    env: dict[str, str]
    size: TerminalSize
    started_at: float = field(default_factory=time.time)

    @property
    def pid(self) -> int:
        return self.process.pid

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionKey": self.key,
            "pid": self.pid,
            "cwd": str(self.cwd),
            "cols": self.size.cols,
            "rows": self.size.rows,
            "env": sorted(self.env),
            "startedAt": self.started_at,
        }


def task_environment(task: Task | None) -> dict[str, str]:
    """Task context exported to a session; only in-progress tasks get any."""
    if task is None or task.status != TaskStatus.IN_PROGRESS:
        return {}
    return {
        "TASK_ID": task.id,
        "TASK_TITLE": task.title,
        "TASK_DESCRIPTION": task.description,
        "TASK_STATUS": task.status.value,
    }


def _is_accessible(path: Path) -> bool:
    return path.is_dir() and os.access(path, os.R_OK | os.X_OK)


class SessionManager:
    """Owns the map from session key to live terminal process.

    All bookkeeping happens on the event loop. At most one record exists per
    key: ``create`` kills any previous process for the key before spawning and
    again when committing the new record, so overlapping ``create`` calls for
    the same key still leave a single live process behind.
    """

    def __init__(
        self,
        store: StateStore,
        provisioner: WorktreeProvisioner,
        *,
        shell_argv: Sequence[str],
        spawner: Spawner | None = None,
        term: str = "xterm-color",
        default_size: TerminalSize | None = None,
        home: Path | None = None,
        base_env: Mapping[str, str] | None = None,
    ) -> None:
        self._store = store
        self._provisioner = provisioner
        self._shell_argv = list(shell_argv)
        self._spawner: Spawner = spawner or PtyProcess.spawn
        self._term = term
        self._home = home
        self._base_env = dict(base_env) if base_env is not None else None
        self._sessions: dict[str, SessionRecord] = {}
        self._listener: SessionListener | None = None
        self.default_size = default_size or TerminalSize()

    def set_listener(self, listener: SessionListener | None) -> None:
        self._listener = listener

    # Queries ----------------------------------------------------------
    def get(self, key: str) -> Optional[SessionRecord]:
        return self._sessions.get(key)

    def records(self) -> list[SessionRecord]:
        return list(self._sessions.values())

    def __contains__(self, key: object) -> bool:
        return key in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    # Lifecycle --------------------------------------------------------
    async def create(self, key: str = DEFAULT_SESSION_KEY, *, size: TerminalSize | None = None) -> SessionRecord:
        size = size or self.default_size
        self._discard(key, reason="replaced")

        settings = self._store.get_settings()
        repo_root = require_repo_root(settings.repo_root)
        task = None if key == DEFAULT_SESSION_KEY else self._store.get_task(key)

        cwd = await self._resolve_working_dir(repo_root, task)
        if not _is_accessible(cwd):
            metrics.record_spawn("directory_unavailable")
            logger.error("Directory not accessible for session %s: %s", key, cwd)
            raise DirectoryUnavailable(cwd)

        env = task_environment(task)
        if env:
            logger.info("Injected task details for task %s into environment", key)

        logger.info("Spawning %s in %s (%dx%d) for session %s", self._shell_argv[0], cwd, size.cols, size.rows, key)
        try:
            process = await self._spawner(self._shell_argv, cwd=cwd, env=self._child_env(env), size=size)
        except SPAWN_ERRORS as exc:
            metrics.record_spawn("spawn_error")
            logger.error("Spawn failed for session %s: %s", key, exc)
            raise SpawnError(f"Failed to spawn terminal process: {exc}") from exc

        self._discard(key, reason="superseded")
        record = SessionRecord(key=key, process=process, cwd=cwd, env=env, size=size)
        self._sessions[key] = record
        process.start(
            lambda data: self._handle_output(record, data),
            lambda code: self._handle_exit(record, code),
        )
        metrics.record_spawn("ok")
        metrics.set_active_sessions(len(self._sessions))
        return record

    def write(self, key: str, data: bytes) -> None:
        self._require(key).process.write(data)

    def resize(self, key: str, cols: int, rows: int) -> None:
        record = self._require(key)
        size = TerminalSize(cols=cols, rows=rows)
        record.process.resize(size)
        record.size = size

    def destroy(self, key: str) -> bool:
        return self._discard(key, reason="destroyed")

    def shutdown(self) -> None:
        for key in list(self._sessions):
            self._discard(key, reason="shutdown")

    # Internals --------------------------------------------------------
    def _require(self, key: str) -> SessionRecord:
        record = self._sessions.get(key)
        if record is None:
            raise SessionNotFound(key)
        return record

    def _discard(self, key: str, *, reason: str) -> bool:
        record = self._sessions.pop(key, None)
        if record is None:
            return False
        logger.info("Killing session %s (pid %s): %s", key, record.pid, reason)
        record.process.kill()
        metrics.set_active_sessions(len(self._sessions))
        return True

    async def _resolve_working_dir(self, repo_root: Path, task: Task | None) -> Path:
        candidate: Path | None = repo_root
        if task is not None:
            try:
                result = await asyncio.to_thread(
                    self._provisioner.ensure, repo_root, task.id, task.branch_name
                )
            except (ConfigError, VcsError) as exc:
                logger.warning("Worktree for task %s unavailable: %s", task.id, exc)
                candidate = None
            else:
                candidate = result.path
        if candidate is not None and _is_accessible(candidate):
            return candidate
        home = self._home or Path.home()
        logger.warning("Working directory %s is unavailable. Falling back to home directory %s.", candidate or "for task", home)
        return home

    def _child_env(self, task_env: Mapping[str, str]) -> dict[str, str]:
        parent = self._base_env if self._base_env is not None else dict(os.environ)
        env = {key: value for key, value in parent.items() if key not in TASK_ENV_KEYS}
        env["TERM"] = self._term
        env.update(task_env)
        return env

    def _handle_output(self, record: SessionRecord, data: bytes) -> None:
        if self._sessions.get(record.key) is not record:
            return
        if self._listener is not None:
            self._listener.session_output(record.key, data)

    def _handle_exit(self, record: SessionRecord, exit_code: int | None) -> None:
        if self._sessions.get(record.key) is not record:
            return
        del self._sessions[record.key]
        metrics.set_active_sessions(len(self._sessions))
        logger.info("Session %s exited with code %s", record.key, exit_code)
        if self._listener is not None:
            self._listener.session_exited(record.key, exit_code)
