"""SQLite-backed persistence for tasks and operator settings."""
from __future__ import annotations

import sqlite3
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any
from typing import Optional


class TaskStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "inprogress"
    IN_REVIEW = "inreview"
    DONE = "done"
    CANCELLED = "cancelled"


class LaunchStatus(str, Enum):
    PENDING = "pending"
    LAUNCHED = "launched"
    FAILED = "failed"


@dataclass
class Task:
    id: str
    title: str
    description: str
    status: TaskStatus
    branch_name: str
    created_at: str
    launch_status: LaunchStatus | None = None
    launch_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "branchName": self.branch_name,
            "createdAt": self.created_at,
            "launchStatus": self.launch_status.value if self.launch_status else None,
            "launchError": self.launch_error,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Task":
        launch = row["launch_status"]
        return cls(
            id=row["id"],
            title=row["title"],
            description=row["description"] or "",
            status=TaskStatus(row["status"]),
            branch_name=row["branch_name"],
            created_at=row["created_at"],
            launch_status=LaunchStatus(launch) if launch else None,
            launch_error=row["launch_error"],
        )


@dataclass(frozen=True)
class AppSettings:
    repo_root: Path | None
    ai_tool: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "repoPath": str(self.repo_root) if self.repo_root else "",
            "aiTool": self.ai_tool or "",
        }


def default_branch_name() -> str:
    return f"feature/task-{int(time.time() * 1000)}"


class StateStore:
    """Encapsulates SQLite operations for tasks and runtime settings."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        # Shared between the event loop and worker threads.
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    def close(self) -> None:
        self._conn.close()

    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.executescript(
            """
            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                description TEXT,
                status TEXT NOT NULL,
                branch_name TEXT NOT NULL,
                created_at TEXT NOT NULL,
                launch_status TEXT,
                launch_error TEXT,
                updated_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS settings (
                name TEXT PRIMARY KEY,
                value TEXT,
                updated_at INTEGER NOT NULL
            );
            """
        )
        self._conn.commit()

    # Tasks ------------------------------------------------------------
    def create_task(
        self,
        *,
        title: str,
        description: str = "",
        status: TaskStatus = TaskStatus.TODO,
        branch_name: str | None = None,
    ) -> Task:
        task = Task(
            id=str(uuid.uuid4()),
            title=title,
            description=description,
            status=TaskStatus(status),
            branch_name=branch_name or default_branch_name(),
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        self._conn.execute(
            """
            INSERT INTO tasks (id, title, description, status, branch_name, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                task.id,
                task.title,
                task.description,
                task.status.value,
                task.branch_name,
                task.created_at,
                int(time.time()),
            ),
        )
        self._conn.commit()
        return task

    def get_task(self, task_id: str) -> Optional[Task]:
        row = self._conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if not row:
            return None
        return Task.from_row(row)

    def list_tasks(self) -> list[Task]:
        cur = self._conn.execute("SELECT * FROM tasks ORDER BY created_at ASC, rowid ASC")
        return [Task.from_row(row) for row in cur.fetchall()]

    def update_task(
        self,
        task_id: str,
        *,
        title: str | None = None,
        description: str | None = None,
        status: TaskStatus | str | None = None,
    ) -> Optional[Task]:
        # branch_name is fixed at creation.
        task = self.get_task(task_id)
        if task is None:
            return None
        if title is not None:
            task.title = title
        if description is not None:
            task.description = description
        if status is not None:
            task.status = TaskStatus(status)
        self._conn.execute(
            "UPDATE tasks SET title = ?, description = ?, status = ?, updated_at = ? WHERE id = ?",
            (task.title, task.description, task.status.value, int(time.time()), task_id),
        )
        self._conn.commit()
        return task

    def delete_task(self, task_id: str) -> bool:
        cur = self._conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        self._conn.commit()
        return cur.rowcount > 0

    def record_launch(self, task_id: str, status: LaunchStatus, error: str | None = None) -> None:
        self._conn.execute(
            "UPDATE tasks SET launch_status = ?, launch_error = ?, updated_at = ? WHERE id = ?",
            (status.value, error, int(time.time()), task_id),
        )
        self._conn.commit()

    # Settings ---------------------------------------------------------
    def get_settings(self) -> AppSettings:
        rows = {
            row["name"]: row["value"]
            for row in self._conn.execute("SELECT name, value FROM settings")
        }
        repo = rows.get("repo_root")
        return AppSettings(
            repo_root=Path(repo) if repo else None,
            ai_tool=rows.get("ai_tool") or None,
        )

    def update_settings(self, *, repo_root: Path | str | None = None, ai_tool: str | None = None) -> AppSettings:
        updates: dict[str, str] = {}
        if repo_root is not None:
            updates["repo_root"] = str(repo_root)
        if ai_tool is not None:
            updates["ai_tool"] = ai_tool
        now = int(time.time())
        for name, value in updates.items():
            self._conn.execute(
                """
                INSERT INTO settings (name, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (name, value, now),
            )
        self._conn.commit()
        return self.get_settings()

    def seed_settings(self, *, repo_root: Path | None, ai_tool: str | None) -> AppSettings:
        """Fill unset settings from static configuration without overwriting operator choices."""
        current = self.get_settings()
        return self.update_settings(
            repo_root=repo_root if current.repo_root is None and repo_root else None,
            ai_tool=ai_tool if current.ai_tool is None and ai_tool else None,
        )
