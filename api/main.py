"""
api/main.py -- FastAPI application entry point for realmgate.

Run with:      uvicorn api.main:app --host 0.0.0.0 --port 9080

Middleware stack (outermost to innermost):
  1. CORSMiddleware     -- adds CORS headers for the service's own origin
  2. SlowAPIMiddleware  -- enforces per-route rate limits from api.limiter

Lifespan handles startup (service graph, OIDC discovery, access-policy
rebuild, maintenance task) and shutdown (cancel task, close HTTP clients
and the DB engine) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.auth import router as auth_router
from api.routes.device import router as device_router
from api.routes.v1.api_keys import router as api_keys_router
from api.routes.v1.nodes import router as nodes_router
from api.routes.v1.worker import router as worker_router
from api.services import Services, build_services, get_services
from core.config import get_settings
from mesh.acl import PolicySyncError
from mesh.client import MeshControlError

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("realmgate.api")

# ---------------------------------------------------------------------------
# Background maintenance task
# ---------------------------------------------------------------------------


async def _run_sweeps(services: Services) -> None:
    """Purge expired sessions, stale auth states and finished device requests.

    Each step runs in a worker thread so SQLite I/O never blocks the event
    loop, and a failing step does not stop the others.
    """
    steps = (
        ("sessions", services.store.purge_expired_sessions),
        ("auth states", services.auth_states.cleanup),
        ("device requests", services.device_flow.sweep),
    )
    for label, step in steps:
        try:
            removed = await asyncio.to_thread(step)
        except Exception:
            logger.exception("Sweep of expired %s failed", label)
            continue
        if removed:
            logger.info("Swept %d expired %s", removed, label)


async def _maintenance_loop(app: FastAPI) -> None:
    """Run the sweeps every SWEEP_INTERVAL_SECONDS.

    Runs as a background asyncio task started in lifespan startup.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    interval = app.state.services.settings.sweep_interval_seconds
    while True:
        await asyncio.sleep(interval)
        await _run_sweeps(app.state.services)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Services first -- OIDC discovery runs here; an unreachable issuer
         aborts startup.
      2. Access policy rebuild -- a failure only logs a warning; logins
         re-add their own rule.
      3. Maintenance task last -- references app.state.services.
    """
    settings = get_settings()
    logger.info("realmgate starting up (public URL %s)", settings.public_url)
    app.state.services = await build_services(settings)
    if settings.acl_init_on_startup:
        try:
            rules = await app.state.services.acl.rebuild_policy()
            logger.info("Access policy initialized with %d rule(s)", rules)
        except PolicySyncError as e:
            logger.warning("Access policy initialization failed: %s", e)
    app.state.maintenance_task = asyncio.create_task(_maintenance_loop(app))

    yield

    app.state.maintenance_task.cancel()
    await app.state.services.aclose()
    logger.info("realmgate shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="realmgate",
    description="Multi-tenant control plane for a mesh-networking control service.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=[get_settings().public_url],
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-Session-Token"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, tags=["Auth"])
app.include_router(device_router, tags=["Device flow"])
app.include_router(worker_router, prefix="/api/v1", tags=["Workers"])
app.include_router(nodes_router, prefix="/api/v1", tags=["Nodes"])
app.include_router(api_keys_router, prefix="/api/v1", tags=["API keys"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error and Retry-After."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for every HTTPException raised by a route.

    Routes raise with detail={"code", "message"}; that dict becomes the
    error field as-is.
    """
    headers = getattr(exc, "headers", None)
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=headers)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=headers,
    )


@app.exception_handler(MeshControlError)
async def mesh_control_error_handler(request: Request, exc: MeshControlError) -> JSONResponse:
    """Return 502 when the mesh-control service fails. Details stay in the log."""
    logger.error("Mesh-control failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=502,
        content=ErrorResponse(
            error=ErrorDetail(
                code="mesh_control_error",
                message="The mesh-control service is unavailable or rejected the request.",
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is logged only, never written to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# No rate limit and no auth -- load balancers and monitors must reach it.
# ---------------------------------------------------------------------------


@app.get("/health", tags=["Health"])
@app.get("/api/v1/health", include_in_schema=False)
async def health(services: Services = Depends(get_services)) -> HealthResponse:
    """Return liveness plus database and mesh-control reachability."""
    components = {"app": "ok"}
    components["database"] = "ok" if await asyncio.to_thread(services.store.ping) else "error"
    try:
        await services.mesh.health()
        components["mesh_control"] = "ok"
    except MeshControlError:
        components["mesh_control"] = "error"
    status = "healthy" if all(v == "ok" for v in components.values()) else "degraded"
    return HealthResponse(status=status, version=VERSION, components=components)
