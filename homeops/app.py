from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from homeops.api.error_handling import register_exception_handlers
from homeops.api.routes import attach_principal, router
from homeops.config import Settings
from homeops.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

_sweep_task: asyncio.Task | None = None


async def _run_sweeps(interval_seconds: int) -> None:
    """Expire stale invitations, refresh tokens and MFA enrollments on a fixed cadence."""
    from homeops.service.runtime import get_runtime

    interval = max(interval_seconds, 60)
    try:
        while True:
            try:
                await asyncio.to_thread(get_runtime().sweep)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("sweep_failed", error=str(exc))
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("sweep_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _sweep_task
    from homeops.service.runtime import get_runtime

    runtime = get_runtime()
    _sweep_task = asyncio.create_task(_run_sweeps(runtime.settings.sweep_interval_seconds))

    yield

    if _sweep_task:
        _sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _sweep_task
        _sweep_task = None
    try:
        if runtime.cache is not None:
            await runtime.cache.close()
        if hasattr(runtime.store, "close"):
            runtime.store.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="HomeOps", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return [_settings.app_web_origin]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Account-Id", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def authenticate_request(request: Request, call_next):
    """Attach the bearer principal, if any; guards decide whether one is required."""
    attach_principal(request)
    return await call_next(request)


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Take X-Request-ID from the client or mint one, and echo it on the response."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from homeops.service.runtime import get_runtime

    checks = await get_runtime().health()
    healthy = all(v in ("ok", "disabled") for v in checks.values())
    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
