from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tokenline.api.error_handling import error_response, register_exception_handlers
from tokenline.api.routes import router
from tokenline.api.schemas import Envelope
from tokenline.config import Settings
from tokenline.logging import get_logger, set_correlation_id
from tokenline.service.refresh import TransparentRefresh
from tokenline.service.runtime import get_runtime
from tokenline.storage.errors import StoreUnavailable

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

_cleanup_task: asyncio.Task | None = None


async def _run_token_cleanup(interval_seconds: int, retention_days: int) -> None:
    """Periodically delete rotation tokens past expiry plus the retention window."""
    retention = timedelta(days=retention_days)
    while True:
        try:
            purged = await get_runtime().tokens.purge_expired(retention)
            if purged:
                logger.info("token_cleanup_completed", purged=purged)
        except StoreUnavailable as exc:
            logger.error("token_cleanup_store_unavailable", backend=exc.backend)
        except Exception as exc:
            logger.error("token_cleanup_failed", error_type=type(exc).__name__, error=str(exc))
        await asyncio.sleep(interval_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the retention sweep on startup and release the store on shutdown."""
    global _cleanup_task
    try:
        runtime = get_runtime()
        _cleanup_task = asyncio.create_task(
            _run_token_cleanup(
                runtime.settings.token_cleanup_interval_seconds,
                runtime.settings.token_retention_days,
            )
        )
    except Exception as exc:
        logger.error("startup_failed", error_type=type(exc).__name__, error=str(exc))

    yield

    try:
        if _cleanup_task:
            _cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _cleanup_task
        get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="tokenline", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # no wildcard while credentials are allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "X-Request-ID",
        _settings.refresh_header_name,
    ],
    expose_headers=["X-Request-ID", "X-Access-Token", _settings.refresh_header_name],
    max_age=3600,
)


# Registered first so it runs innermost, after the correlation id is set
app.middleware("http")(TransparentRefresh(get_runtime))


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # responses may carry fresh credentials
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault(
            "Cache-Control", "no-store, no-cache, must-revalidate, private"
        )
    return response


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Bind the X-Request-ID header (or a fresh uuid) to every log line of the request."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz", tags=["health"])
async def healthz():
    runtime = get_runtime()
    try:
        await asyncio.to_thread(runtime.store.verify_connection)
    except StoreUnavailable as exc:
        logger.error("healthz_store_unavailable", backend=exc.backend)
        return error_response(503, "token store unavailable", code="service_unavailable")
    return JSONResponse(
        content=Envelope(
            status="ok",
            data={
                "status": "healthy",
                "store": runtime.settings.store_backend.value,
                "version": __version__,
            },
        ).model_dump()
    )
