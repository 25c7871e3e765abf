"""Start the configured coding assistant inside a task's terminal session."""
from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Iterable
from typing import Mapping

from . import metrics
from .errors import ConfigError
from .errors import VibeFlowError
from .sessions import SessionManager
from .state import LaunchStatus
from .state import StateStore

logger = logging.getLogger(__name__)

KNOWN_TOOLS = ("claude", "codex", "gemini")
TOOL_CONFIG_DIRS = {
    "claude": ".anthropic",
    "gemini": ".gemini",
}


class AssistantLauncher:
    """Types the assistant's invocation line into a task session.

    ``launch`` never raises: the outcome is logged, counted and stored on the
    task as ``launchStatus``/``launchError``.
    """

    def __init__(
        self,
        store: StateStore,
        sessions: SessionManager,
        *,
        commands: Mapping[str, str] | None = None,
    ) -> None:
        self._store = store
        self._sessions = sessions
        self._commands = dict(commands or {})

    def command_for(self, tool: str) -> str:
        return self._commands.get(tool, tool)

    async def launch(self, task_id: str) -> bool:
        tool = self._store.get_settings().ai_tool
        try:
            if not tool:
                raise ConfigError("No assistant tool configured")
            if task_id not in self._sessions:
                await self._sessions.create(task_id)
            command = self.command_for(tool)
            self._sessions.write(task_id, f"{command}\r".encode("utf-8"))
        except (VibeFlowError, OSError) as exc:
            logger.warning("Assistant launch failed for task %s: %s", task_id, exc)
            self._store.record_launch(task_id, LaunchStatus.FAILED, str(exc))
            metrics.record_launch("failed")
            return False
        logger.info("Launched %s for task %s", tool, task_id)
        self._store.record_launch(task_id, LaunchStatus.LAUNCHED)
        metrics.record_launch("launched")
        return True


# Tool detection -------------------------------------------------------
def _search_path(home: Path, base_path: str | None) -> str:
    extra = [
        "/opt/homebrew/bin",
        "/usr/local/bin",
        "/usr/bin",
        "/bin",
        str(home / ".local" / "bin"),
        str(home / "bin"),
    ]
    if base_path:
        extra.append(base_path)
    return os.pathsep.join(extra)


def detect_assistant_tools(
    tools: Iterable[str] = KNOWN_TOOLS,
    *,
    home: Path | None = None,
    path: str | None = None,
) -> dict[str, bool]:
    """Report which assistant tools look installed.

    A tool counts as installed when its executable is on ``PATH`` (extended
    with common install locations) or its config directory exists in ``home``.
    """
    home = home or Path.home()
    search = _search_path(home, path if path is not None else os.environ.get("PATH"))
    results: dict[str, bool] = {}
    for tool in tools:
        location = shutil.which(tool, path=search)
        if location:
            logger.debug("Tool %s found at %s", tool, location)
            results[tool] = True
            continue
        config_dir = TOOL_CONFIG_DIRS.get(tool)
        results[tool] = bool(config_dir) and (home / config_dir).exists()
    return results
