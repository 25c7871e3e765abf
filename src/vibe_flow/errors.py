"""Error taxonomy shared by provisioning, sessions and routing."""
from __future__ import annotations

from pathlib import Path
from typing import Sequence


class VibeFlowError(Exception):
    """Base class for failures surfaced to the operator."""


class ConfigError(VibeFlowError):
    """Raised when required configuration (e.g. the repository root) is missing."""


class VcsError(VibeFlowError):
    """Raised when a git command fails; keeps the tool's own diagnostic."""

    def __init__(self, message: str, *, command: Sequence[str] = (), stderr: str = "") -> None:
        self.command = list(command)
        self.stderr = stderr.strip()
        detail = f"{message}: {self.stderr}" if self.stderr else message
        super().__init__(detail)


class DirectoryUnavailable(VibeFlowError):
    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(f"Directory not accessible: {path}")


class SpawnError(VibeFlowError):
    """Raised when the terminal process cannot be started."""


class SessionNotFound(VibeFlowError):
    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"No live session for {key!r}")
