"""HTTP lock service and session control routes.

The FileCoordinator is exposed on one local port so in-process workers and
externally spawned agents share the same lease table. When an Orchestrator is
attached, the same app also serves the control routes the CLI uses to steer a
running session.

Lock Routes:
    POST /locks/acquire  {"workerId": 0, "paths": ["src/a.ts"]}
    POST /locks/release  {"workerId": 0}
    POST /locks/renew    {"workerId": 0}
    GET  /locks/check?path=src/a.ts
    GET  /locks[?workerId=0]
    GET  /health

Control Routes:
    GET  /session, GET /session/log?limit=20
    POST /session/pause | /session/resume | /session/stop
    POST /review/{issue_id}/approve
    POST /review/{issue_id}/reject  {"requeue": true}
    POST /commit/{issue_id}
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING, Any

import structlog
import uvicorn
from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from autobuild.coordinator.file_coordinator import FileCoordinator
from autobuild.exceptions import AutoBuildError, ReviewError, SessionStateError

if TYPE_CHECKING:
    from autobuild.engine.orchestrator import Orchestrator

log = structlog.get_logger(__name__)


class WorkerRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    worker_id: int


class AcquireRequest(WorkerRequest):
    paths: list[str] = Field(default_factory=list)


class RejectRequest(BaseModel):
    requeue: bool = True


def create_app(coordinator: FileCoordinator, orchestrator: Orchestrator | None = None) -> FastAPI:
    """Build the FastAPI app for a coordinator and optional orchestrator.

    Lock handlers are plain functions, so FastAPI runs them in its thread
    pool; the coordinator's own lock makes that safe. Control handlers are
    coroutines and run on the orchestrator's event loop.
    """
    app = FastAPI(title="AutoBuild File Coordinator")

    @app.post("/locks/acquire")
    def acquire(request: AcquireRequest) -> dict[str, Any]:
        try:
            result = coordinator.acquire(request.worker_id, request.paths)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e)) from e
        return result.to_dict()

    @app.post("/locks/release")
    def release(request: WorkerRequest) -> dict[str, Any]:
        return {"released": coordinator.release(request.worker_id)}

    @app.post("/locks/renew")
    def renew(request: WorkerRequest) -> dict[str, Any]:
        return {"renewed": coordinator.renew(request.worker_id)}

    @app.get("/locks/check")
    def check(path: str) -> dict[str, Any]:
        try:
            lease = coordinator.check(path)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e)) from e
        return {"locked": lease is not None, "lock": lease.to_dict(coordinator.now()) if lease else None}

    @app.get("/locks")
    def list_locks(worker_id: int | None = Query(default=None, alias="workerId")) -> dict[str, Any]:
        leases = coordinator.all_locks() if worker_id is None else coordinator.locks_for(worker_id)
        now = coordinator.now()
        return {"locks": [lease.to_dict(now) for lease in leases]}

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"status": "healthy", "service": "autobuild-coordinator", "locks": len(coordinator.all_locks())}

    if orchestrator is not None:
        _add_control_routes(app, orchestrator)

    return app


def _add_control_routes(app: FastAPI, orchestrator: Orchestrator) -> None:
    async def call(operation: Any, *args: Any, **kwargs: Any) -> dict[str, Any]:
        try:
            await operation(*args, **kwargs)
        except ReviewError as e:
            raise HTTPException(status_code=404, detail=e.message) from e
        except SessionStateError as e:
            raise HTTPException(status_code=409, detail=e.message) from e
        except AutoBuildError as e:
            log.error("control_request_failed", error=e.message, exc_info=True)
            raise HTTPException(status_code=422, detail=e.message) from e
        return session()

    @app.get("/session")
    def session() -> dict[str, Any]:
        payload = orchestrator.snapshot().model_dump(mode="json", by_alias=True)
        payload["awaitingCommit"] = orchestrator.awaiting_commit()
        return payload

    @app.get("/session/log")
    def session_log(limit: int = 20) -> dict[str, Any]:
        return {"entries": [entry.to_dict() for entry in orchestrator.activity.recent(limit)]}

    @app.post("/session/pause")
    async def pause() -> dict[str, Any]:
        return await call(orchestrator.pause)

    @app.post("/session/resume")
    async def resume() -> dict[str, Any]:
        return await call(orchestrator.resume)

    @app.post("/session/stop")
    async def stop() -> dict[str, Any]:
        return await call(orchestrator.stop)

    @app.post("/review/{issue_id}/approve")
    async def approve(issue_id: str) -> dict[str, Any]:
        return await call(orchestrator.approve, issue_id)

    @app.post("/review/{issue_id}/reject")
    async def reject(issue_id: str, request: RejectRequest | None = None) -> dict[str, Any]:
        requeue = request.requeue if request is not None else True
        return await call(orchestrator.reject, issue_id, requeue=requeue)

    @app.post("/commit/{issue_id}")
    async def commit(issue_id: str) -> dict[str, Any]:
        return await call(orchestrator.trigger_commit, issue_id)


async def run_cleanup_loop(coordinator: FileCoordinator, interval: float) -> None:
    """Purge expired leases every ``interval`` seconds until cancelled."""
    while True:
        await asyncio.sleep(interval)
        coordinator.cleanup_expired()


class CoordinatorServer:
    """Runs the app under uvicorn as a task on the current event loop.

    Example:
        >>> server = CoordinatorServer(coordinator, host="127.0.0.1", port=7433)
        >>> await server.start()
        >>> ...
        >>> await server.stop()
    """

    def __init__(
        self,
        coordinator: FileCoordinator,
        host: str = "127.0.0.1",
        port: int = 7433,
        cleanup_interval: float = 60.0,
        orchestrator: Orchestrator | None = None,
    ) -> None:
        self.coordinator = coordinator
        self.host = host
        self.port = port
        self.cleanup_interval = cleanup_interval
        self.app = create_app(coordinator, orchestrator)
        self._server = uvicorn.Server(uvicorn.Config(self.app, host=host, port=port, log_level="warning"))
        self._serve_task: asyncio.Task[None] | None = None
        self._cleanup_task: asyncio.Task[None] | None = None

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    async def start(self) -> None:
        """Start serving and wait until the socket is bound.

        Raises:
            RuntimeError: If uvicorn exits before it starts listening.
        """
        self._serve_task = asyncio.create_task(self._server.serve(), name="autobuild-coordinator")
        self._cleanup_task = asyncio.create_task(
            run_cleanup_loop(self.coordinator, self.cleanup_interval), name="autobuild-lock-cleanup"
        )
        while not self._server.started:
            if self._serve_task.done():
                await self.stop()
                raise RuntimeError(f"Lock service failed to start on {self.url}")
            await asyncio.sleep(0.05)
        log.info("coordinator_started", url=self.url)

    async def serve_forever(self) -> None:
        """Start and block until the server exits."""
        await self.start()
        serve_task = self._serve_task
        if serve_task is None:
            raise RuntimeError(f"Lock service on {self.url} was stopped during startup")
        try:
            await serve_task
        finally:
            await self.stop()

    async def stop(self) -> None:
        self._server.should_exit = True
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._cleanup_task
            self._cleanup_task = None
        if self._serve_task is not None:
            with contextlib.suppress(asyncio.CancelledError, SystemExit):
                await self._serve_task
            self._serve_task = None
        log.info("coordinator_stopped", url=self.url)
