"""Dashboard HTTP API over one project's store and the port registry.

Each request re-reads the durable stores; the app keeps only the
ProjectContext it was created with.
"""

import logging
import sqlite3

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from . import config
from .builders import BuilderManager
from .context import ProjectContext
from .errors import ConflictError, ContentionError, InvalidTransitionError, NotFoundError
from .liveness import pid_alive
from .models.responses import CompletedOut, ErrorDetail, HealthOut, PortsOut, StateOut, StatusUpdate
from .models.state import Builder

logger = logging.getLogger("agentfarm.dashboard")

router = APIRouter(prefix="/api")


def get_ctx(request: Request) -> ProjectContext:
    return request.app.state.ctx


@router.get("/health", response_model=HealthOut, summary="Liveness and store check")
async def health(ctx: ProjectContext = Depends(get_ctx)):
    db_status = "ok"
    try:
        await ctx.store().get_architect()
    except (sqlite3.Error, ContentionError) as e:
        logger.warning("Health check store read failed: %s", e)
        db_status = "error"
    return {
        "app": "agent-farm",
        "version": config.APP_VERSION,
        "status": "ok" if db_status == "ok" else "degraded",
        "project_root": str(ctx.project_root),
        "base_port": ctx.ports.base_port,
        "db": db_status,
    }


@router.get("/state", response_model=StateOut, summary="Current project snapshot")
async def get_state(ctx: ProjectContext = Depends(get_ctx)):
    state = await ctx.store().load_all()
    alive = {}
    if state.architect:
        alive["architect"] = pid_alive(state.architect.pid)
    for b in state.builders:
        alive[f"builder:{b.id}"] = pid_alive(b.pid)
    for u in state.utils:
        alive[f"util:{u.id}"] = pid_alive(u.pid)
    return {"project_root": str(ctx.project_root), "ports": ctx.ports, "state": state, "alive": alive}


@router.get("/ports", response_model=PortsOut, summary="Machine-wide port allocations")
async def get_ports(ctx: ProjectContext = Depends(get_ctx)):
    return {"allocations": await ctx.registry().list_allocations()}


@router.put(
    "/builders/{builder_id}/status",
    response_model=Builder,
    responses={404: {"model": ErrorDetail}, 409: {"model": ErrorDetail}},
    summary="Move a builder along its lifecycle",
)
async def put_builder_status(builder_id: str, body: StatusUpdate, ctx: ProjectContext = Depends(get_ctx)):
    return await BuilderManager(ctx).set_status(builder_id, body.status)


@router.delete(
    "/builders/{builder_id}",
    response_model=CompletedOut,
    responses={404: {"model": ErrorDetail}},
    summary="Complete a builder (release session and port)",
)
async def delete_builder(builder_id: str, ctx: ProjectContext = Depends(get_ctx)):
    released = await BuilderManager(ctx).complete(builder_id)
    if not released:
        raise NotFoundError(f"Builder not found: {builder_id}")
    return {"id": builder_id, "released": True}


def _error(status_code: int, exc: Exception, error: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc), "error": error})


def create_app(ctx: ProjectContext) -> FastAPI:
    app = FastAPI(title="agent-farm", version=config.APP_VERSION)
    app.state.ctx = ctx
    app.include_router(router)

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return _error(404, exc, "not_found")

    @app.exception_handler(ConflictError)
    async def conflict_handler(request: Request, exc: ConflictError):
        return _error(409, exc, "conflict")

    @app.exception_handler(InvalidTransitionError)
    async def transition_handler(request: Request, exc: InvalidTransitionError):
        return _error(409, exc, "invalid_transition")

    @app.exception_handler(ContentionError)
    async def contention_handler(request: Request, exc: ContentionError):
        logger.error("Store contention on %s %s: %s", request.method, request.url.path, exc)
        return _error(503, exc, "db_busy")

    @app.exception_handler(sqlite3.OperationalError)
    async def db_exception_handler(request: Request, exc: sqlite3.OperationalError):
        """Return structured 503 responses for database errors."""
        logger.error("Database error on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=503,
            content={"detail": "Database temporarily unavailable", "error": "db_error"},
        )

    return app


def run_dashboard(ctx: ProjectContext, port: int | None = None):
    """Serve the dashboard in the foreground (blocks until interrupted)."""
    port = port or ctx.ports.dashboard_port
    logger.info("Dashboard on http://%s:%d", config.BIND_HOST, port)
    uvicorn.run(create_app(ctx), host=config.BIND_HOST, port=port, log_level=config.LOG_LEVEL.lower())
