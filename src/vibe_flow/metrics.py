"""Prometheus metrics helpers for vibe-flow components."""
from __future__ import annotations

from prometheus_client import Counter
from prometheus_client import Gauge

SESSIONS_ACTIVE = Gauge(
    "vibe_flow_sessions_active",
    "Number of live terminal sessions",
)
SESSION_SPAWNS_TOTAL = Counter(
    "vibe_flow_session_spawns_total",
    "Terminal session spawn attempts grouped by outcome",
    labelnames=("result",),
)
WORKTREES_TOTAL = Counter(
    "vibe_flow_worktrees_total",
    "Worktree provisioning requests grouped by outcome",
    labelnames=("result",),
)
ASSISTANT_LAUNCHES_TOTAL = Counter(
    "vibe_flow_assistant_launches_total",
    "Assistant launches grouped by outcome",
    labelnames=("result",),
)


def record_spawn(result: str) -> None:
    """Count a session spawn attempt (ok, directory_unavailable, spawn_error, ...)."""

    SESSION_SPAWNS_TOTAL.labels(result=result).inc()


def set_active_sessions(count: int) -> None:
    SESSIONS_ACTIVE.set(count)


def record_worktree(result: str) -> None:
    WORKTREES_TOTAL.labels(result=result).inc()


def record_launch(result: str) -> None:
    """Count an assistant launch (launched or failed)."""

    ASSISTANT_LAUNCHES_TOTAL.labels(result=result).inc()
