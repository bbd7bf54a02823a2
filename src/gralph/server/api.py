"""FastAPI app exposing session status and stop control over HTTP."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from gralph import __version__
from gralph.config import ServerSettings
from gralph.core.tasks import count_remaining_tasks
from gralph.state import (
    OsProcessProbe,
    ProcessController,
    ProcessProbe,
    SessionStatus,
    StateError,
    StateStore,
)

logger = logging.getLogger(__name__)

SERVICE_NAME = "gralph-server"
LOCAL_ORIGINS = ("http://localhost", "http://127.0.0.1", "http://[::1]")
WILDCARD_HOSTS = frozenset({"", "0.0.0.0", "::"})  # noqa: S104


class ApiError(Exception):
    """Error rendered as ``{"error": message}`` with the given status code."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


def cors_origins(host: str, *, open_access: bool) -> list[str]:
    if open_access:
        return ["*"]
    origins = list(LOCAL_ORIGINS)
    host = host.strip()
    if host not in WILDCARD_HOSTS:
        origin = f"http://{host}"
        if origin not in origins:
            origins.append(origin)
    return origins


def enrich_session(session: dict[str, Any], probe: ProcessProbe) -> dict[str, Any]:
    """Add live remaining-task count and liveness; dead running sessions read as stale."""

    fields = dict(session)
    task_file = fields.get("task_file") or "PRD.md"
    directory = fields.get("dir")

    remaining = -1
    if directory:
        task_path = Path(str(directory)) / str(task_file)
        if task_path.is_file():
            remaining = count_remaining_tasks(task_path)
    if remaining < 0:
        last = fields.get("last_task_count")
        if isinstance(last, int) and not isinstance(last, bool):
            remaining = last

    status = fields.get("status")
    pid = fields.get("pid")
    is_alive = False
    if status == SessionStatus.RUNNING.value and isinstance(pid, int) and pid > 0:
        if probe.is_alive(pid):
            is_alive = True
        else:
            status = SessionStatus.STALE.value

    fields["current_remaining"] = remaining
    fields["is_alive"] = is_alive
    fields["status"] = status
    return fields


def create_app(
    settings: ServerSettings,
    store: StateStore,
    *,
    probe: ProcessProbe | None = None,
    processes: ProcessController | None = None,
) -> FastAPI:
    """Create the status API bound to one state store."""

    probe = probe or OsProcessProbe()
    processes = processes or ProcessController()
    token = (settings.token or "").strip()

    app = FastAPI(title="Gralph", version=__version__, docs_url=None, redoc_url=None)
    app.state.store = store

    def require_token(request: Request) -> None:
        if not token:
            return
        parts = request.headers.get("authorization", "").split()
        if len(parts) != 2 or parts[0].lower() != "bearer" or parts[1] != token:
            raise ApiError(401, "Invalid or missing Bearer token")

    @app.exception_handler(ApiError)
    async def _api_error(_request: Request, error: ApiError) -> JSONResponse:
        return JSONResponse({"error": error.message}, status_code=error.status_code)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(_request: Request, error: StarletteHTTPException) -> JSONResponse:
        if error.status_code == 404:
            message = "Unknown endpoint"
        elif error.status_code == 405:
            message = "Method not allowed"
        else:
            message = str(error.detail)
        return JSONResponse({"error": message}, status_code=error.status_code)

    @app.middleware("http")
    async def _limit_body(request: Request, call_next):  # noqa: ANN001, ANN202
        length = request.headers.get("content-length")
        if length is not None:
            try:
                too_large = int(length) > settings.max_body_bytes
            except ValueError:
                return JSONResponse({"error": "Invalid Content-Length"}, status_code=400)
            if too_large:
                return JSONResponse({"error": "Request body too large"}, status_code=413)
        return await call_next(request)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins(settings.host, open_access=settings.open),
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
        expose_headers=["Content-Length", "Content-Type"],
        max_age=86400,
    )

    @app.get("/", dependencies=[Depends(require_token)])
    def root() -> dict[str, str]:
        return {"status": "ok", "service": SERVICE_NAME}

    @app.get("/status", dependencies=[Depends(require_token)])
    def list_sessions() -> dict[str, list[dict[str, Any]]]:
        try:
            sessions = store.list()
        except StateError as error:
            logger.warning("Failed to list sessions: %s", error)
            sessions = []
        return {"sessions": [enrich_session(session, probe) for session in sessions]}

    @app.get("/status/{name}", dependencies=[Depends(require_token)])
    def get_session(name: str) -> dict[str, Any]:
        try:
            session = store.get(name)
        except StateError as error:
            logger.warning("Failed to read session %s: %s", name, error)
            raise ApiError(500, "Failed to read session") from error
        if session is None:
            raise ApiError(404, f"Session not found: {name}")
        return enrich_session(session, probe)

    @app.post("/stop/{name}", dependencies=[Depends(require_token)])
    def stop_session(name: str) -> dict[str, Any]:
        try:
            session = store.get(name)
            if session is None:
                raise ApiError(404, f"Session not found: {name}")
            tmux_session = str(session.get("tmux_session") or "").strip()
            pid = session.get("pid")
            if tmux_session:
                processes.kill_tmux_session(tmux_session)
            elif isinstance(pid, int) and pid > 0 and probe.is_alive(pid):
                processes.terminate_pid(pid)
            store.set(
                name,
                {"status": SessionStatus.STOPPED.value, "pid": 0, "tmux_session": ""},
            )
        except StateError as error:
            logger.warning("Failed to stop session %s: %s", name, error)
            raise ApiError(500, "Failed to stop session") from error
        logger.info("Stopped session %s via API", name)
        return {"success": True, "message": "Session stopped"}

    return app


def run_server(
    settings: ServerSettings,
    store: StateStore,
    *,
    probe: ProcessProbe | None = None,
) -> None:
    """Validate bind settings, initialise the store and serve until interrupted."""

    settings.validate()
    store.init()
    app = create_app(settings, store, probe=probe)
    logger.info("Serving gralph status on %s:%s", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level="info")
