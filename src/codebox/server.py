"""codebox Server — FastAPI host for the sandboxed code-execution subsystem.

Startup sequence:
1. Load codebox.yaml (defaults if absent)
2. Initialize SQLite database
3. Reset projects stuck in ``running`` (crash recovery)
4. Bring up the sandbox stack (networks, proxy, sandbox container)
5. Start FastAPI (uvicorn)

If step 4 fails the server still starts: ``/health`` reports the feature as
unavailable and project routes answer 503.

Shutdown:
1. Cancel running tasks
2. Stop the sandbox and proxy containers
3. Close database
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from fastapi import Body, FastAPI, HTTPException
from pydantic import BaseModel, Field

from codebox.config import CodeboxConfig, load_config_or_default, resolve_config_path
from codebox.errors import (
    InfrastructureError,
    InvalidProjectName,
    ProjectAlreadyExists,
    ProjectNotFound,
    ProjectQuotaExceeded,
)
from codebox.executor import TaskExecutor
from codebox.feed import TaskFeed
from codebox.models import TaskCallbacks, validate_project_name
from codebox.registry import ProjectRegistry
from codebox.sandbox.docker import DockerCLI

logger = logging.getLogger(__name__)


class CodeboxServer:
    """Encapsulates all server components and lifecycle."""

    def __init__(
        self,
        config_path: Path | None = None,
        *,
        config: CodeboxConfig | None = None,
        docker: DockerCLI | None = None,
    ):
        self.config_path = resolve_config_path(config_path)
        self.config = config
        self.docker = docker

        # Components (initialized in start())
        self.registry: ProjectRegistry | None = None
        self.executor: TaskExecutor | None = None
        self.feed = TaskFeed()
        self.unavailable_reason: str | None = None

    async def start(self) -> None:
        """Initialize all components."""
        logger.info("codebox server starting")

        # 1. Load config
        if self.config is None:
            self.config = load_config_or_default(self.config_path)

        # 2. Initialize database
        db_path = Path(self.config.storage.db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.registry = ProjectRegistry(str(db_path))
        await self.registry.initialize()

        if not self.config.code_execution.enabled:
            self.unavailable_reason = "Code execution is disabled in config."
            logger.info("Code execution disabled — not starting sandbox")
            return

        # 3 + 4. Recovery and sandbox stack
        self.executor = TaskExecutor(self.config.code_execution, self.registry, self.docker)
        try:
            summary = await self.executor.initialize()
        except InfrastructureError as e:
            self.unavailable_reason = str(e)
            logger.error("Code execution unavailable: %s", e)
            return

        self.unavailable_reason = None
        logger.info("codebox server started (recovery: %s)", summary)

    async def stop(self) -> None:
        """Graceful shutdown — stop all components."""
        logger.info("codebox server shutting down")

        if self.executor and self.executor.initialized:
            try:
                await self.executor.destroy_sandbox()
            except Exception:
                logger.exception("Sandbox teardown failed")
        if self.registry:
            await self.registry.close()

        logger.info("codebox server stopped")

    def require_executor(self) -> TaskExecutor:
        if self.executor is None or not self.executor.initialized:
            raise HTTPException(
                status_code=503,
                detail=self.unavailable_reason or "Code execution is not available.",
            )
        return self.executor


# ── Request bodies ───────────────────────────────────────────────────────────


class CreateProjectRequest(BaseModel):
    name: str
    user_id: str = "default"


class StartTaskRequest(BaseModel):
    prompt: str = Field(min_length=10, max_length=10_000)
    user_id: str = "default"


# ── FastAPI App ──────────────────────────────────────────────────────────────

_server = CodeboxServer()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan — startup and shutdown."""
    await _server.start()
    yield
    await _server.stop()


_ERROR_STATUS = {
    InvalidProjectName: 400,
    ProjectAlreadyExists: 409,
    ProjectQuotaExceeded: 429,
    ProjectNotFound: 404,
}


def _project_error(e: Exception) -> HTTPException:
    return HTTPException(status_code=_ERROR_STATUS.get(type(e), 400), detail=str(e))


def create_app(config_path: Path | None = None, server: CodeboxServer | None = None) -> FastAPI:
    """Create the FastAPI application."""
    global _server
    _server = server or CodeboxServer(config_path)

    app = FastAPI(
        title="codebox",
        version="0.1.0",
        description="Sandboxed coding-agent execution service",
        lifespan=lifespan,
    )

    @app.get("/health")
    async def health():
        """Sandbox/proxy container status and running-task count."""
        if _server.executor is None or not _server.executor.initialized:
            return {
                "status": "unavailable",
                "reason": _server.unavailable_reason or "starting",
            }
        status = await _server.executor.health_check()
        return {
            "status": "ok" if status.healthy else "degraded",
            **status.model_dump(mode="json"),
        }

    @app.get("/projects")
    async def list_projects(user_id: str | None = None):
        executor = _server.require_executor()
        projects = await executor.list_projects(user_id)
        return {
            "projects": [
                {**p.model_dump(mode="json"), "running": executor.is_task_running(p.name)}
                for p in projects
            ]
        }

    @app.post("/projects", status_code=201)
    async def create_project(body: CreateProjectRequest):
        executor = _server.require_executor()
        try:
            project = await executor.create_project(body.name, body.user_id)
        except (InvalidProjectName, ProjectAlreadyExists, ProjectQuotaExceeded) as e:
            raise _project_error(e) from e
        return project.model_dump(mode="json")

    @app.get("/projects/{name}")
    async def get_project(name: str, limit: int = 20):
        executor = _server.require_executor()
        project = await executor.get_project(name)
        if project is None or project.id is None:
            raise HTTPException(status_code=404, detail=f'Project "{name}" not found.')
        history = await _server.registry.get_task_history(project.id, limit=limit)
        return {
            "project": project.model_dump(mode="json"),
            "running": executor.is_task_running(name),
            "tasks": [t.model_dump(mode="json") for t in history],
        }

    @app.delete("/projects/{name}")
    async def delete_project(name: str):
        executor = _server.require_executor()
        try:
            await executor.delete_project(name)
        except (InvalidProjectName, ProjectNotFound) as e:
            raise _project_error(e) from e
        _server.feed.clear(name)
        return {"deleted": name}

    @app.post("/projects/{name}/tasks", status_code=202)
    async def start_task(name: str, body: StartTaskRequest):
        """Start a task; the project is created on first use."""
        executor = _server.require_executor()
        try:
            validate_project_name(name)
            if await executor.get_project(name) is None:
                await executor.create_project(name, body.user_id)
        except (InvalidProjectName, ProjectAlreadyExists, ProjectQuotaExceeded) as e:
            raise _project_error(e) from e

        base = _server.feed.callbacks_for(name)
        rejected: list[str] = []

        async def on_error(text: str, project_name: str) -> None:
            rejected.append(text)
            await base.on_error(text, project_name)

        task = await executor.run_task_in_background(
            name,
            body.prompt,
            body.user_id,
            TaskCallbacks(on_progress=base.on_progress, on_complete=base.on_complete, on_error=on_error),
        )
        if task is None:
            raise HTTPException(status_code=409, detail=rejected[-1] if rejected else "Task rejected.")
        return {"project": name, "status": "started"}

    @app.delete("/projects/{name}/tasks")
    async def cancel_task(name: str):
        executor = _server.require_executor()
        return {"project": name, "cancelled": await executor.cancel_task(name)}

    @app.get("/projects/{name}/events")
    async def project_events(name: str, kind: str | None = None, limit: int = 50):
        return {"project": name, "events": _server.feed.query(name, kind=kind, limit=limit)}

    @app.put("/credentials")
    async def push_credentials(body: dict[str, Any] = Body(...)):
        executor = _server.require_executor()
        return {"pushed": await executor.push_credentials(json.dumps(body))}

    return app
