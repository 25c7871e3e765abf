"""FastAPI application exposing tasks, git helpers and terminal sessions."""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from typing import AsyncIterator
from typing import Optional

from fastapi import Depends
from fastapi import FastAPI
from fastapi import HTTPException
from fastapi import Query
from fastapi import Request
from fastapi import WebSocket
from fastapi import WebSocketDisconnect
from fastapi import status
from fastapi.responses import JSONResponse
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST
from prometheus_client import generate_latest
from pydantic import BaseModel
from pydantic import Field

from .config import ServerConfig
from .errors import ConfigError
from .errors import VcsError
from .launcher import AssistantLauncher
from .launcher import detect_assistant_tools
from .lifecycle import TaskLifecycleCoordinator
from .router import Channel
from .router import ChannelRouter
from .sessions import DEFAULT_SESSION_KEY
from .sessions import SessionManager
from .state import AppSettings
from .state import StateStore
from .state import TaskStatus
from .terminal import Spawner
from .terminal import TerminalSize
from .worktree import WorktreeProvisioner

logger = logging.getLogger(__name__)


class TaskCreateRequest(BaseModel):
    title: str = Field(min_length=1)
    description: str = ""
    status: TaskStatus = TaskStatus.TODO


class TaskUpdateRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    status: Optional[TaskStatus] = None


class ConfigUpdateRequest(BaseModel):
    repo_path: Optional[str] = Field(default=None, alias="repoPath")
    ai_tool: Optional[str] = Field(default=None, alias="aiTool")

    model_config = {"populate_by_name": True}


class WorktreeRequest(BaseModel):
    task_id: str = Field(alias="taskId", min_length=1)
    branch_name: Optional[str] = Field(default=None, alias="branchName")

    model_config = {"populate_by_name": True}


class CommitRequest(BaseModel):
    task_id: Optional[str] = Field(default=None, alias="taskId")
    message: str = Field(min_length=1)

    model_config = {"populate_by_name": True}


@dataclass
class Services:
    store: StateStore
    provisioner: WorktreeProvisioner
    sessions: SessionManager
    router: ChannelRouter
    launcher: AssistantLauncher
    lifecycle: TaskLifecycleCoordinator


def build_services(
    config: ServerConfig,
    *,
    store: StateStore | None = None,
    spawner: Spawner | None = None,
    home: Path | None = None,
) -> Services:
    store = store or StateStore(config.expanded_state_path())
    provisioner = WorktreeProvisioner(git_bin=config.git_bin)
    sessions = SessionManager(
        store,
        provisioner,
        shell_argv=config.shell_argv(),
        spawner=spawner,
        term=config.term,
        default_size=TerminalSize(cols=config.default_cols, rows=config.default_rows),
        home=home,
    )
    router = ChannelRouter(sessions)
    launcher = AssistantLauncher(store, sessions, commands=config.assistant_commands)
    lifecycle = TaskLifecycleCoordinator(store, provisioner, sessions, launcher)
    return Services(
        store=store,
        provisioner=provisioner,
        sessions=sessions,
        router=router,
        launcher=launcher,
        lifecycle=lifecycle,
    )


def create_app(
    config: ServerConfig,
    *,
    store: StateStore | None = None,
    spawner: Spawner | None = None,
    home: Path | None = None,
) -> FastAPI:
    owns_store = store is None
    services = build_services(config, store=store, spawner=spawner, home=home)
    seeded = services.store.seed_settings(repo_root=config.expanded_repo_root(), ai_tool=config.ai_tool)
    logger.info("Repository root: %s, assistant: %s", seeded.repo_root or "<unset>", seeded.ai_tool or "<unset>")

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        try:
            yield
        finally:
            await services.lifecycle.close()
            services.sessions.shutdown()
            if owns_store:
                services.store.close()

    app = FastAPI(title="vibe-flow", version="0.1.0", lifespan=lifespan)
    app.state.services = services

    @app.exception_handler(ConfigError)
    async def config_error_handler(_request: Request, exc: ConfigError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})

    @app.exception_handler(VcsError)
    async def vcs_error_handler(_request: Request, exc: VcsError) -> JSONResponse:
        logger.error("%s", exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": str(exc), "stderr": exc.stderr},
        )

    def current_settings() -> AppSettings:
        return services.store.get_settings()

    def require_repository(settings: AppSettings = Depends(current_settings)) -> AppSettings:
        if settings.repo_root is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Repository not selected")
        return settings

    @app.get("/healthz")
    def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/metrics")
    def metrics_endpoint() -> Response:
        payload = generate_latest()
        return Response(content=payload, media_type=CONTENT_TYPE_LATEST)

    # Configuration ----------------------------------------------------
    @app.get("/api/config")
    def get_config(settings: AppSettings = Depends(current_settings)) -> dict[str, Any]:
        return settings.to_dict()

    @app.put("/api/config")
    def update_config(payload: ConfigUpdateRequest) -> dict[str, Any]:
        repo_root: Optional[Path] = None
        if payload.repo_path:
            repo_root = Path(payload.repo_path).expanduser()
            if not repo_root.is_dir():
                raise ConfigError(f"Repository path does not exist: {repo_root}")
            repo_root = repo_root.resolve()
        settings = services.store.update_settings(
            repo_root=repo_root if repo_root is not None else payload.repo_path,
            ai_tool=payload.ai_tool,
        )
        logger.info("Settings updated: repository %s, assistant %s", settings.repo_root, settings.ai_tool)
        return settings.to_dict()

    # Tasks ------------------------------------------------------------
    @app.get("/api/tasks")
    def list_tasks(_settings: AppSettings = Depends(require_repository)) -> list[dict[str, Any]]:
        return [task.to_dict() for task in services.store.list_tasks()]

    @app.post("/api/tasks")
    async def create_task(
        payload: TaskCreateRequest,
        _settings: AppSettings = Depends(require_repository),
    ) -> dict[str, Any]:
        task = services.store.create_task(
            title=payload.title,
            description=payload.description,
            status=payload.status,
        )
        logger.info("Created task %s (%s)", task.id, task.branch_name)
        services.lifecycle.task_created(task)
        return task.to_dict()

    @app.put("/api/tasks/{task_id}")
    def update_task(
        task_id: str,
        payload: TaskUpdateRequest,
        _settings: AppSettings = Depends(require_repository),
    ) -> dict[str, Any]:
        task = services.store.update_task(
            task_id,
            title=payload.title,
            description=payload.description,
            status=payload.status,
        )
        if task is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
        return task.to_dict()

    @app.delete("/api/tasks/{task_id}")
    async def delete_task(task_id: str, _settings: AppSettings = Depends(require_repository)) -> dict[str, bool]:
        if not services.store.delete_task(task_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
        services.sessions.destroy(task_id)
        return {"success": True}

    # Git --------------------------------------------------------------
    @app.post("/api/git/worktree")
    async def create_worktree(
        payload: WorktreeRequest,
        settings: AppSettings = Depends(require_repository),
    ) -> dict[str, Any]:
        branch = payload.branch_name
        if not branch:
            task = services.store.get_task(payload.task_id)
            if task is None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
            branch = task.branch_name
        result = await asyncio.to_thread(services.provisioner.ensure, settings.repo_root, payload.task_id, branch)
        return {"success": True, "path": str(result.path), "created": result.created}

    @app.get("/api/git/status")
    async def git_status(settings: AppSettings = Depends(require_repository)) -> dict[str, str]:
        repo_status = await asyncio.to_thread(services.provisioner.status, settings.repo_root)
        return {"branch": repo_status.branch, "status": repo_status.status}

    @app.get("/api/git/diff")
    async def git_diff(
        task_id: Optional[str] = Query(default=None, alias="taskId"),
        settings: AppSettings = Depends(require_repository),
    ) -> dict[str, str]:
        diff = await asyncio.to_thread(services.provisioner.diff, settings.repo_root, task_id)
        return {"diff": diff}

    @app.post("/api/git/commit")
    async def git_commit(
        payload: CommitRequest,
        settings: AppSettings = Depends(require_repository),
    ) -> dict[str, bool]:
        await asyncio.to_thread(services.provisioner.commit, settings.repo_root, payload.message, payload.task_id)
        return {"success": True}

    # Sessions ---------------------------------------------------------
    @app.get("/api/sessions")
    async def list_sessions() -> list[dict[str, Any]]:
        return [record.to_dict() for record in services.sessions.records()]

    @app.get("/api/system/ai-tools")
    async def ai_tools() -> dict[str, bool]:
        return await asyncio.to_thread(detect_assistant_tools)

    @app.websocket("/ws/terminal")
    async def terminal_socket(websocket: WebSocket) -> None:
        await _serve_terminal(services.router, websocket)

    return app


async def _serve_terminal(router: ChannelRouter, websocket: WebSocket) -> None:
    await websocket.accept()
    channel = Channel(websocket.send_json)
    writer = asyncio.create_task(channel.pump(), name=f"{channel.name}-writer")
    logger.info("Terminal client connected: %s", channel.name)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                payload = json.loads(raw)
            except json.JSONDecodeError:
                channel.post_error(DEFAULT_SESSION_KEY, "Invalid message: not JSON")
                continue
            await router.handle(channel, payload)
    except WebSocketDisconnect:
        logger.info("Terminal client disconnected: %s", channel.name)
    finally:
        router.disconnect(channel)
        writer.cancel()
        try:
            await writer
        except (asyncio.CancelledError, WebSocketDisconnect, RuntimeError, OSError):
            pass
