"""
Reecher API entrypoint: logging, error reporting, middlewares and routers.

Run locally with ``uvicorn reecher.main:app --reload`` from ``backend/``.
"""
import asyncio
import contextvars
import logging
import uuid
from contextlib import asynccontextmanager
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request as StarletteRequest
from starlette.responses import Response as StarletteResponse
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pythonjsonlogger import json as jsonlogger
import sentry_sdk
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from reecher.config import settings
from reecher.database import db
from reecher.errors import CooldownActive, ReecherError
from reecher.metrics import metrics
from reecher.routes import channel, events, internal, sync, webhooks
from reecher.services import close_services, get_services
from reecher.sse import progress_broadcaster
from reecher.tasks import cancel_background_tasks

# Correlation id of the HTTP request being served; "-" for background work
request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="-")

_MAX_REQUEST_ID_LENGTH = 64


class _RequestIdFilter(logging.Filter):
    """Stamp log records with the request id of the current context."""
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get()  # type: ignore[attr-defined]
        return True


def configure_logging() -> None:
    request_filter = _RequestIdFilter()
    if settings.ENVIRONMENT in ("development", "testing"):
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)-7s %(name)s [%(request_id)s] %(message)s",
        )
        for existing in logging.getLogger().handlers:
            existing.addFilter(request_filter)
        return

    stream = logging.StreamHandler()
    stream.addFilter(request_filter)
    stream.setFormatter(jsonlogger.JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(request_id)s %(message)s",
        rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        static_fields={"service": "reecher-api", "environment": settings.ENVIRONMENT},
    ))
    logging.basicConfig(level=logging.INFO, handlers=[stream])
    # Per-request access lines are already covered by X-Request-ID tracing
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def init_sentry() -> None:
    if not settings.SENTRY_DSN:
        return
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        traces_sample_rate=0.1 if settings.ENVIRONMENT == "production" else 1.0,
        integrations=[AsyncioIntegration()],
        send_default_pii=False,
    )
    sentry_sdk.set_tag("service", "reecher-api")


configure_logging()
init_sentry()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.STORE_BACKEND == "postgres":
        await db.connect()
        await db.apply_schema()

    services = get_services()
    reaper_task = None
    if settings.REAPER_ENABLED:
        reaper_task = asyncio.create_task(services.reaper.run_forever(settings.REAPER_INTERVAL_SECONDS))
        logger.info("[REAPER] Sweeping every %ds", settings.REAPER_INTERVAL_SECONDS)
    yield
    # Shutdown: background tasks first, then connections
    if reaper_task is not None:
        reaper_task.cancel()
        try:
            await reaper_task
        except asyncio.CancelledError:
            pass
    await close_services()
    await cancel_background_tasks()
    progress_broadcaster.clear()
    if settings.STORE_BACKEND == "postgres":
        await db.close()


# Create FastAPI app
app = FastAPI(
    title="Reecher API",
    description="Backend API for Reecher - WhatsApp channel lifecycle and group sync",
    version="1.0.0",
    docs_url="/docs" if settings.ENVIRONMENT == "development" else None,
    redoc_url="/redoc" if settings.ENVIRONMENT == "development" else None,
    lifespan=lifespan,
)


@app.exception_handler(ReecherError)
async def reecher_error_handler(request: Request, exc: ReecherError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    headers = {}
    if isinstance(exc, CooldownActive):
        headers["Retry-After"] = str(exc.retry_after_seconds)
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict(), headers=headers)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Baseline response headers; the API serves JSON and SSE only."""
    _HEADERS = {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "Referrer-Policy": "no-referrer",
    }

    async def dispatch(self, request: StarletteRequest, call_next) -> StarletteResponse:
        response = await call_next(request)
        for name, value in self._HEADERS.items():
            response.headers.setdefault(name, value)
        if settings.ENVIRONMENT == "production":
            response.headers["Strict-Transport-Security"] = "max-age=63072000; includeSubDomains"
        return response


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Accept the caller's X-Request-ID (bounded) or mint one, and echo it back."""
    async def dispatch(self, request: StarletteRequest, call_next) -> StarletteResponse:
        incoming = request.headers.get("x-request-id", "")[:_MAX_REQUEST_ID_LENGTH]
        request_id = incoming or uuid.uuid4().hex[:16]
        token = request_id_var.set(request_id)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers["X-Request-ID"] = request_id
        return response


app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After"],
)

for module in (channel, sync, events, webhooks, internal):
    app.include_router(module.router, prefix="/api")


@app.get("/")
async def root():
    return {"name": "Reecher API", "version": app.version, "status": "running"}


@app.get("/health")
async def health_check():
    """Liveness plus store reachability; 503 when Postgres does not answer."""
    store_ok = True
    if settings.STORE_BACKEND == "postgres":
        try:
            await db.fetchval("SELECT 1")
        except Exception as e:
            logger.warning("Health check: database unreachable: %s", e)
            store_ok = False
    return JSONResponse(
        status_code=200 if store_ok else 503,
        content={
            "status": "healthy" if store_ok else "degraded",
            "store": {"backend": settings.STORE_BACKEND, "ok": store_ok},
            "active_syncs": int(metrics.sync_runs_active.value),
            "sse_connections": progress_broadcaster.active_connections,
        },
    )


@app.get("/metrics")
async def prometheus_metrics():
    """Prometheus-compatible metrics endpoint."""
    return PlainTextResponse(
        content=metrics.render(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "reecher.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        reload=settings.ENVIRONMENT == "development"
    )
