"""Task board service pairing each task with a git worktree and a live terminal."""

from .config import ServerConfig
from .config import load_server_config
from .sessions import SessionManager
from .sessions import SessionRecord
from .router import ChannelRouter
from .router import Channel
from .worktree import WorktreeProvisioner
from .worktree import WorktreeResult

__version__ = "0.1.0"

__all__ = [
    "ServerConfig",
    "load_server_config",
    "SessionManager",
    "SessionRecord",
    "ChannelRouter",
    "Channel",
    "WorktreeProvisioner",
    "WorktreeResult",
]
