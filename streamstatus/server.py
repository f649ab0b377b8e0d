"""
HTTP server for Stream Status (FastAPI + uvicorn).

Routes are thin: each one delegates to `streamstatus.api` and lets the
exception handlers below turn domain errors into status codes.
"""

from __future__ import annotations

import logging
import socket
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from . import api
from .core.config import VERSION, Config
from .core.db import Database, open_db
from .core.errors import ConflictError, NotFoundError, ValidationError
from .discovery import (
    discover_server,
    install_shutdown_hooks,
    lock_file_path,
    make_lock,
    remove_lock,
    write_lock,
)

logger = logging.getLogger(__name__)

BIND_RETRIES = 3


def configure_logging(level: str) -> None:
    """Configure root logging for CLI and server processes."""

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


# ── Request bodies ────────────────────────────────────────────────────────────


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class StreamPatch(_Body):
    status: Optional[str] = None
    progress: Optional[int] = None
    current_phase: Optional[int] = Field(default=None, alias="currentPhase")
    blocked_by: Optional[str] = Field(default=None, alias="blockedBy")


class ArchiveRequest(_Body):
    summary: Optional[str] = None
    delete_worktree: bool = Field(default=True, alias="deleteWorktree")
    cleanup_plan_files: bool = Field(default=True, alias="cleanupPlanFiles")


class BulkArchiveRequest(ArchiveRequest):
    stream_ids: List[str] = Field(alias="streamIds")


class ReconcileRequest(_Body):
    dry_run: bool = Field(default=True, alias="dryRun")
    auto_archive_stale: bool = Field(default=False, alias="autoArchiveStale")


# ── App ───────────────────────────────────────────────────────────────────────


def _error(status_code: int, error: str, details: Optional[str] = None) -> JSONResponse:
    body: Dict[str, Any] = {"error": error}
    if details is not None:
        body["details"] = details
    return JSONResponse(status_code=status_code, content=body)


def create_app(config: Config, db: Database) -> FastAPI:
    app = FastAPI(
        title="Stream Status API",
        description="Development stream tracking and reconciliation",
        version=VERSION,
    )

    @app.exception_handler(ValidationError)
    async def _validation_error(request: Request, exc: ValidationError):
        return _error(400, str(exc), exc.field)

    @app.exception_handler(RequestValidationError)
    async def _request_validation_error(request: Request, exc: RequestValidationError):
        return _error(400, "Invalid request body", str(exc))

    @app.exception_handler(ConflictError)
    async def _conflict(request: Request, exc: ConflictError):
        return _error(409, str(exc))

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError):
        return _error(404, "Stream not found", exc.stream_id)

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception):
        logger.exception(f"{request.method} {request.url.path} failed")
        return _error(500, "Internal server error", str(exc))

    @app.get("/api/stats")
    def get_stats() -> Dict[str, Any]:
        return api.stats(db=db)

    @app.get("/api/streams")
    def get_streams(
        status: Optional[str] = None,
        category: Optional[str] = None,
        priority: Optional[str] = None,
    ) -> Dict[str, Any]:
        return api.list_streams(db=db, status=status, category=category, priority=priority)

    # Registered before /api/streams/{stream_id} routes that share the prefix
    @app.post("/api/streams/archive-bulk")
    def post_archive_bulk(body: BulkArchiveRequest) -> Dict[str, Any]:
        return api.archive_bulk(
            body.stream_ids,
            db=db,
            config=config,
            summary=body.summary,
            delete_worktree=body.delete_worktree,
            cleanup_plan_files=body.cleanup_plan_files,
        )

    @app.get("/api/streams/{stream_id}")
    def get_stream(stream_id: str) -> Dict[str, Any]:
        return api.get_stream(stream_id, db=db)

    @app.patch("/api/streams/{stream_id}")
    def patch_stream(stream_id: str, body: StreamPatch) -> Dict[str, Any]:
        return api.update_stream(
            stream_id,
            db=db,
            status=body.status,
            progress=body.progress,
            current_phase=body.current_phase,
            blocked_by=body.blocked_by,
        )

    @app.post("/api/streams/{stream_id}/archive")
    def post_archive(stream_id: str, body: Optional[ArchiveRequest] = None) -> Dict[str, Any]:
        body = body or ArchiveRequest()
        return api.archive_stream(
            stream_id,
            db=db,
            config=config,
            summary=body.summary,
            delete_worktree=body.delete_worktree,
            cleanup_plan_files=body.cleanup_plan_files,
        )

    @app.get("/api/commits")
    def get_commits(stream_id: Optional[str] = None, limit: int = 20) -> Dict[str, Any]:
        return api.commits(db=db, stream_id=stream_id, limit=limit)

    @app.get("/api/reconciliation/status")
    def get_reconciliation_status() -> Dict[str, Any]:
        return api.reconcile(db=db, config=config, dry_run=True)

    @app.post("/api/reconciliation/run")
    def post_reconciliation_run(body: Optional[ReconcileRequest] = None) -> Dict[str, Any]:
        body = body or ReconcileRequest()
        return api.reconcile(
            db=db,
            config=config,
            dry_run=body.dry_run,
            auto_archive_stale=body.auto_archive_stale,
        )

    @app.get("/api/reconciliation/worktrees")
    def get_worktrees() -> Dict[str, Any]:
        return api.worktrees(config=config)

    @app.get("/api/reconciliation/merged")
    def get_merged(base: Optional[str] = None) -> Dict[str, Any]:
        return api.merged_branches(config=config, base=base)

    return app


# ── Process ───────────────────────────────────────────────────────────────────


def _bind(host: str, port: int) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind((host, port))
    except OSError:
        sock.close()
        raise
    sock.listen(128)
    return sock


def run_server(config: Config) -> Dict[str, Any]:
    """Become the project's API server, unless a healthy one already runs.

    Returns {"port", "existing"}; when `existing` is False this only
    returns after the server has shut down.
    """
    sock: Optional[socket.socket] = None
    for attempt in range(1, BIND_RETRIES + 1):
        found = discover_server(config)
        if found.existing:
            logger.info(f"Server already running for {config.project_name} on port {found.port}")
            return {"port": found.port, "existing": True}
        try:
            sock = _bind(config.api_host, found.port)
            break
        except OSError as e:
            # Lost the race for this port to another process
            logger.warning(
                f"Bind to port {found.port} failed ({e}), attempt {attempt}/{BIND_RETRIES}"
            )
    if sock is None:
        raise RuntimeError(f"Could not bind a port for {config.project_name}")

    port = sock.getsockname()[1]
    db = open_db(config.resolved_db_path)
    db.ensure_main_stream(str(config.resolved_project_root), config.main_branch)

    path = lock_file_path(config.cache_root, config.project_name)
    write_lock(path, make_lock(config, port))
    install_shutdown_hooks(path)
    logger.info(f"Stream Status API for {config.project_name} on http://{config.api_host}:{port}")

    app = create_app(config, db)
    server = uvicorn.Server(
        uvicorn.Config(app, log_config=None, log_level=config.log_level.lower())
    )
    try:
        server.run(sockets=[sock])
    finally:
        remove_lock(path)
        sock.close()
        db.close()
    return {"port": port, "existing": False}
