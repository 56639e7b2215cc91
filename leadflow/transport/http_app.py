# leadflow/transport/http_app.py
"""
HTTP surface of the dispatch engine.

Endpoint groups:
1. Public: /health, /ready
2. Monitoring: /metrics (METRICS_TOKEN or internal network)
3. Triggers: /triggers/* (TRIGGER_TOKEN), called by the document store
   and external schedulers; always acknowledged once authenticated
4. RPC: /rpc/* (caller identity forwarded by the auth proxy)
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Callable

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from leadflow.config import settings
from leadflow.core.dispatch.jobs import build_job_handlers
from leadflow.core.dispatch.orchestrator import (
    TICK_REMINDER_SWEEP,
    TICK_SCHEDULED_TRANSITIONS,
    DispatchOrchestrator,
)
from leadflow.core.dispatch.rpc import DispatchRpcService
from leadflow.core.domain import CallerContext, Closer, Lead
from leadflow.core.errors import DispatchError
from leadflow.infra.db_async import close_pool, init_pool
from leadflow.infra.http_client import close_all_sessions
from leadflow.infra.logging_config import get_logger, setup_logging
from leadflow.infra.metrics import get_metrics_collector, inc_counter
from leadflow.infra.migrations_async import get_schema_info, validate_schema_version
from leadflow.infra.notification_channels import get_notification_channel
from leadflow.infra.pg_dispatch_repo_async import get_dispatch_repo
from leadflow.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
)
from leadflow.transport.schemas import (
    AcceptJobResponse,
    AssignResponse,
    DocumentChangeTrigger,
    ErrorBody,
    ErrorResponse,
    LeadCreatedTrigger,
    LeadIdRequest,
    TeamIdRequest,
    TeamStatsResponse,
    TriggerAck,
)
from leadflow.transport.security import (
    SecurityHeaders,
    check_configured_tokens,
    get_caller,
    require_metrics_auth,
    require_trigger_auth,
    sanitize_error_message,
)

setup_logging(
    level=settings.log_level,
    use_json=settings.is_production or settings.log_json
)

logger = get_logger(__name__)

_HTTP_ERROR_CODES = {
    400: "invalid-argument",
    401: "unauthenticated",
    403: "permission-denied",
    404: "not-found",
    409: "failed-precondition",
    503: "unavailable",
}

# Documented failure bodies of the /rpc/* routes
RPC_ERROR_RESPONSES = {status: {"model": ErrorResponse} for status in (400, 401, 403, 404, 409, 503)}


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_orchestrator(request: Request) -> DispatchOrchestrator:
    return request.app.state.orchestrator


def get_rpc_service(request: Request) -> DispatchRpcService:
    return request.app.state.rpc


def require_metrics_enabled() -> None:
    if not settings.enable_metrics:
        raise HTTPException(status_code=404, detail="Not Found")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        return SecurityHeaders.add_security_headers(response)


# ============================================================================
# LIFESPAN
# ============================================================================

def _build_job_worker(orchestrator: DispatchOrchestrator, job_repo):
    from leadflow.infra.job_worker import JobWorker

    worker = JobWorker(
        repo=job_repo,
        poll_interval=settings.job_worker_poll_interval,
        batch_size=settings.job_worker_batch_size,
        base_retry_delay=settings.job_worker_base_retry_delay,
        stale_timeout=settings.job_worker_stale_timeout,
        completed_ttl_days=settings.job_cleanup_completed_ttl_days,
        failed_ttl_days=settings.job_cleanup_failed_ttl_days,
    )
    for job_type, handler in build_job_handlers(orchestrator).items():
        worker.register(job_type, handler)
    return worker


def _build_tick_scheduler(orchestrator: DispatchOrchestrator):
    from leadflow.infra.tick_scheduler import TickScheduler

    async def run_tick(name: str) -> None:
        result = await orchestrator.on_tick(name)
        logger.info(f"Tick {name}: ok={result.ok} {result.detail}")

    return TickScheduler(
        run_tick,
        {
            TICK_REMINDER_SWEEP: settings.reminder_sweep_interval_seconds,
            TICK_SCHEDULED_TRANSITIONS: settings.promotion_interval_seconds,
        },
    )


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""

    logger.info(f"Starting application: env={settings.app_env}, run_mode={settings.run_mode}")

    if settings.is_production and settings.log_level.upper() == "DEBUG":
        logger.critical("LOG_LEVEL=DEBUG is not allowed in production")
        raise RuntimeError("LOG_LEVEL=DEBUG in production")

    check_configured_tokens()

    await init_pool()
    logger.info("Database pool initialized")

    # Migrations run separately: python -m leadflow.infra.migrate
    try:
        schema_result = await validate_schema_version()
        logger.info(f"Schema validated: {schema_result['current_version']}")
    except Exception:
        await close_pool()
        raise

    notifier = get_notification_channel()
    orchestrator = DispatchOrchestrator.build(get_dispatch_repo(), notifier, settings)
    fastapi_app.state.orchestrator = orchestrator
    fastapi_app.state.rpc = DispatchRpcService(orchestrator)
    logger.info(f"Dispatch engine ready: push_channel={notifier.name}")

    # Background processing only in "all" / "worker" mode
    background = settings.run_mode in ("all", "worker")

    job_worker = None
    if background and settings.job_worker_enabled:
        from leadflow.infra.pg_job_repo_async import get_job_repo

        fastapi_app.state.job_repo = get_job_repo()
        job_worker = _build_job_worker(orchestrator, fastapi_app.state.job_repo)
        await job_worker.start()
    else:
        logger.info(f"Job worker skipped (run_mode={settings.run_mode}, enabled={settings.job_worker_enabled})")

    ticks = None
    if background and settings.tick_scheduler_enabled:
        ticks = _build_tick_scheduler(orchestrator)
        await ticks.start()
    else:
        logger.info(f"Tick scheduler skipped (run_mode={settings.run_mode}, enabled={settings.tick_scheduler_enabled})")

    logger.info("Application startup complete")

    yield

    logger.info("Shutting down application")
    if ticks is not None:
        await ticks.stop()
    if job_worker is not None:
        await job_worker.stop()
    await close_all_sessions()
    await close_pool()
    logger.info("Application shutdown complete")


# ============================================================================
# CREATE APP
# ============================================================================

app = FastAPI(
    title="Leadflow",
    description="Lead dispatch and closer rotation engine",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

if settings.is_production or settings.is_staging:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins if settings.allowed_origins != ["*"] else [],
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Authorization"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
app.add_middleware(RequestIDMiddleware)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

def _error_response(status_code: int, code: str, message: str, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorBody(code=code, message=message)).model_dump(),
        headers=headers,
    )


@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError):
    """Typed engine errors become ``{"error": {"code", "message"}}``."""
    message = exc.message
    if exc.status_code == 500:
        logger.error(f"Internal error on {request.url.path}: {exc.message}")
        message = sanitize_error_message(exc, settings.is_production)
    inc_counter("rpc_errors", code=exc.code)
    return _error_response(exc.status_code, exc.code, message)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    if exc.status_code >= 500:
        logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})
    code = _HTTP_ERROR_CODES.get(exc.status_code, "internal")
    return _error_response(exc.status_code, code, str(exc.detail), headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    if request.url.path.startswith("/triggers/"):
        # Redelivery cannot fix a malformed payload
        logger.warning(f"Malformed trigger payload on {request.url.path}: {exc.errors()}")
        return JSONResponse(status_code=200, content={"status": "done"})
    return _error_response(400, "invalid-argument", "Malformed request body")


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc.__class__.__name__}", exc_info=True)
    return _error_response(500, "internal", sanitize_error_message(exc, settings.is_production))


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

@app.get("/health")
def health():
    """Liveness probe. Minimal information."""
    return {"status": "healthy"}


@app.get("/ready")
async def readiness():
    """Readiness probe: database reachable and schema at the expected version."""
    try:
        info = await get_schema_info()
    except Exception as exc:
        logger.warning(f"Readiness check failed: {exc.__class__.__name__}: {exc}")
        return JSONResponse(status_code=503, content={"status": "unhealthy"})

    if not info["is_compatible"]:
        return JSONResponse(status_code=503, content={"status": "unhealthy"})
    return {"status": "healthy"}


# ============================================================================
# MONITORING
# ============================================================================

@app.get("/metrics", dependencies=[Depends(require_metrics_enabled), Depends(require_metrics_auth)])
async def metrics(request: Request):
    """In-process counters and histograms, plus trigger outbox depth."""
    data = get_metrics_collector().get_metrics()
    job_repo = getattr(request.app.state, "job_repo", None)
    if job_repo is not None:
        data["jobs"] = await job_repo.count_by_status()
    return data


# ============================================================================
# TRIGGERS
# ============================================================================

def _parse_snapshot(parse: Callable[[dict], Any], doc: dict, path: str):
    try:
        return parse(doc)
    except (KeyError, ValueError, TypeError) as exc:
        logger.warning(f"Unparseable document on {path}: {exc.__class__.__name__}: {exc}")
        return None


@app.post("/triggers/leads/created", response_model=TriggerAck, dependencies=[Depends(require_trigger_auth)])
async def trigger_lead_created(
    payload: LeadCreatedTrigger,
    request: Request,
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    lead = _parse_snapshot(Lead.from_doc, payload.lead, request.url.path)
    if lead is not None:
        await orchestrator.on_lead_created(lead)
    return TriggerAck()


@app.post("/triggers/leads/updated", response_model=TriggerAck, dependencies=[Depends(require_trigger_auth)])
async def trigger_lead_updated(
    payload: DocumentChangeTrigger,
    request: Request,
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    before = _parse_snapshot(Lead.from_doc, payload.before, request.url.path)
    after = _parse_snapshot(Lead.from_doc, payload.after, request.url.path)
    if before is not None and after is not None:
        await orchestrator.on_lead_updated(before, after)
    return TriggerAck()


@app.post("/triggers/closers/updated", response_model=TriggerAck, dependencies=[Depends(require_trigger_auth)])
async def trigger_closer_updated(
    payload: DocumentChangeTrigger,
    request: Request,
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    before = _parse_snapshot(Closer.from_doc, payload.before, request.url.path)
    after = _parse_snapshot(Closer.from_doc, payload.after, request.url.path)
    if before is not None and after is not None:
        await orchestrator.on_closer_updated(before, after)
    return TriggerAck()


@app.post("/triggers/ticks/{name}", response_model=TriggerAck, dependencies=[Depends(require_trigger_auth)])
async def trigger_tick(name: str, orchestrator: DispatchOrchestrator = Depends(get_orchestrator)):
    """Run a periodic job now (external cron, or manual catch-up)."""
    result = await orchestrator.on_tick(name)
    logger.info(f"Tick {name} via HTTP: ok={result.ok} {result.detail}")
    return TriggerAck()


# ============================================================================
# RPC
# ============================================================================

@app.post("/rpc/manualAssign", response_model=AssignResponse, responses=RPC_ERROR_RESPONSES)
async def rpc_manual_assign(
    body: LeadIdRequest,
    caller: CallerContext | None = Depends(get_caller),
    service: DispatchRpcService = Depends(get_rpc_service),
):
    return AssignResponse(**await service.manual_assign(body.lead_id, caller))


@app.post("/rpc/selfAssign", response_model=AssignResponse, responses=RPC_ERROR_RESPONSES)
async def rpc_self_assign(
    body: LeadIdRequest,
    caller: CallerContext | None = Depends(get_caller),
    service: DispatchRpcService = Depends(get_rpc_service),
):
    return AssignResponse(**await service.self_assign(body.lead_id, caller))


@app.post("/rpc/acceptJob", response_model=AcceptJobResponse, responses=RPC_ERROR_RESPONSES)
async def rpc_accept_job(
    body: LeadIdRequest,
    caller: CallerContext | None = Depends(get_caller),
    service: DispatchRpcService = Depends(get_rpc_service),
):
    return AcceptJobResponse(**await service.accept_job(body.lead_id, caller))


@app.post("/rpc/teamStats", response_model=TeamStatsResponse, responses=RPC_ERROR_RESPONSES)
async def rpc_team_stats(
    body: TeamIdRequest,
    caller: CallerContext | None = Depends(get_caller),
    service: DispatchRpcService = Depends(get_rpc_service),
):
    return TeamStatsResponse(**await service.team_stats(body.team_id, caller))


# ============================================================================
# CATCH-ALL
# ============================================================================

@app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "DELETE", "PATCH"], include_in_schema=False)
async def catch_all(path: str):
    logger.warning(f"404 - Unknown route accessed: {path}")
    raise HTTPException(status_code=404, detail="Not found")


def main() -> None:
    import uvicorn

    uvicorn.run(
        "leadflow.transport.http_app:app",
        host="0.0.0.0",
        port=8099,
        reload=not settings.is_production,
        log_level=settings.log_level.lower(),
        access_log=not settings.is_production,
        server_header=False,
        date_header=False,
    )


if __name__ == "__main__":
    main()
