"""Background setup that follows task creation."""
from __future__ import annotations

import asyncio
import logging

from . import metrics
from .errors import VibeFlowError
from .launcher import AssistantLauncher
from .sessions import SessionManager
from .state import LaunchStatus
from .state import StateStore
from .state import Task
from .worktree import WorktreeProvisioner

logger = logging.getLogger(__name__)


class TaskLifecycleCoordinator:
    """Provision, open a session, then launch the assistant, in that order.

    ``task_created`` only schedules the work; callers never wait for it and
    never see its failures.
    """

    def __init__(
        self,
        store: StateStore,
        provisioner: WorktreeProvisioner,
        sessions: SessionManager,
        launcher: AssistantLauncher,
    ) -> None:
        self._store = store
        self._provisioner = provisioner
        self._sessions = sessions
        self._launcher = launcher
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def task_created(self, task: Task) -> asyncio.Task[None]:
        job = asyncio.get_running_loop().create_task(self.setup(task), name=f"task-setup-{task.id}")
        self._pending.add(job)
        job.add_done_callback(self._finished)
        return job

    async def setup(self, task: Task) -> None:
        if self._store.get_task(task.id) is None:
            logger.info("Task %s removed before setup, skipping", task.id)
            return
        self._store.record_launch(task.id, LaunchStatus.PENDING)
        repo_root = self._store.get_settings().repo_root

        try:
            await asyncio.to_thread(self._provisioner.ensure, repo_root, task.id, task.branch_name)
        except VibeFlowError as exc:
            self._fail(task.id, "Worktree provisioning", exc)
            return

        if task.id not in self._sessions:
            try:
                await self._sessions.create(task.id)
            except (VibeFlowError, OSError) as exc:
                self._fail(task.id, "Session start", exc)
                return

        await self._launcher.launch(task.id)

    async def drain(self) -> None:
        """Wait for every scheduled setup to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        for job in list(self._pending):
            job.cancel()
        await self.drain()

    # ------------------------------------------------------------------
    def _fail(self, task_id: str, stage: str, exc: Exception) -> None:
        logger.error("%s failed for task %s: %s", stage, task_id, exc)
        self._store.record_launch(task_id, LaunchStatus.FAILED, f"{stage} failed: {exc}")
        metrics.record_launch("failed")

    def _finished(self, job: asyncio.Task[None]) -> None:
        self._pending.discard(job)
        if job.cancelled():
            return
        exc = job.exception()
        if exc is not None:
            logger.error("Task setup crashed: %s", exc, exc_info=exc)
