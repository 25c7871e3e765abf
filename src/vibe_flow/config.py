"""Configuration loading for vibe-flow."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel
from pydantic import Field
from pydantic import ValidationError
from pydantic import field_validator


DEFAULT_ASSISTANT_COMMANDS = {
    "claude": "claude",
    "codex": "codex",
    "gemini": "gemini",
}


class ServerConfig(BaseModel):
    """Top-level service configuration."""

    host: str = "127.0.0.1"
    port: int = 3001
    state_path: Path = Field(default=Path("~/.vibe_flow/state.db"), alias="state_db")
    repo_root: Path | None = Field(default=None, alias="repo")
    ai_tool: str | None = None
    shell: str | None = None
    term: str = "xterm-color"
    default_cols: int = Field(default=80, gt=0)
    default_rows: int = Field(default=30, gt=0)
    git_bin: str = "git"
    assistant_commands: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_ASSISTANT_COMMANDS))

    model_config = {
        "populate_by_name": True,
    }

    @field_validator("repo_root", mode="before")
    @classmethod
    def _blank_repo_is_unset(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    def expanded_state_path(self) -> Path:
        return self.state_path.expanduser()

    def expanded_repo_root(self) -> Path | None:
        return self.repo_root.expanduser().resolve() if self.repo_root else None

    def shell_argv(self) -> list[str]:
        shell = self.shell or os.environ.get("SHELL") or "/bin/sh"
        return [shell]


def load_yaml(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle)


def load_server_config(path: Path | None = None) -> ServerConfig:
    if path is None:
        return ServerConfig()
    raw = load_yaml(path)
    try:
        return ServerConfig.model_validate(raw or {})
    except ValidationError as exc:
        raise ValueError(f"Invalid server config at {path}: {exc}") from exc
