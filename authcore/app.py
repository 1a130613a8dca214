from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from authcore.api.error_handling import register_exception_handlers
from authcore.api.routes import auth_router, mcp_router, oauth_router
from authcore.config import Settings
from authcore.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

_cleanup_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the expiry sweeper on startup; stop it and release pools on shutdown."""
    global _cleanup_task
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    _cleanup_task = asyncio.create_task(
        _run_maintenance(runtime.settings.cleanup_interval_seconds)
    )

    yield

    if _cleanup_task:
        _cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _cleanup_task
        _cleanup_task = None
    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


async def _run_maintenance(interval_seconds: int) -> None:
    """Periodically drop expired sessions and authorization codes."""
    from authcore.service.runtime import get_runtime

    interval = max(interval_seconds, 30)
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                sessions, codes, buckets = await asyncio.to_thread(get_runtime().run_maintenance)
                logger.debug(
                    "maintenance_sweep",
                    sessions_removed=sessions,
                    codes_removed=codes,
                    buckets_removed=buckets,
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("maintenance_sweep_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("maintenance_task_cancelled")
        raise


app = FastAPI(title="authcore", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts; no wildcard because credentials are allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with its X-Request-ID (generated if absent)."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    if request.url.path.startswith(("/auth/", "/oauth2/", "/token", "/mcp/")):
        response.headers.setdefault("Cache-Control", "no-store")
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    # The custom-scheme redirect page relies on one inline script
    response.headers.setdefault(
        "Content-Security-Policy",
        "default-src 'self'; script-src 'self' 'unsafe-inline'; frame-ancestors 'none'; base-uri 'self'",
    )
    return response


register_exception_handlers(app)
app.include_router(auth_router)
app.include_router(oauth_router)
app.include_router(mcp_router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    return {
        "status": "healthy",
        "version": __version__,
        "providers": runtime.auth.list_providers(),
        "store": "memory" if runtime.settings.use_memory_store else "postgres",
        "redis": runtime.cache is not None,
    }


def create_app() -> FastAPI:
    return app
