from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fingerauth.api.error_handling import register_exception_handlers
from fingerauth.api.routes import router
from fingerauth.config import get_settings
from fingerauth.logging import get_logger, set_correlation_id
from fingerauth.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup; flush pending mail and close the pool on shutdown."""
    get_runtime()
    yield
    try:
        runtime = get_runtime()
        await runtime.otp.drain()
        close = getattr(runtime.store, "close", None)
        if callable(close):
            close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


async def add_correlation_id(request, call_next):
    """Tag the request with X-Request-ID (client supplied or generated)."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault(
            "Cache-Control", "no-store, no-cache, must-revalidate, private"
        )
    response.headers.setdefault(
        "Permissions-Policy", "camera=(), microphone=(), geolocation=(), payment=()"
    )
    return response


async def health() -> Dict[str, Any]:
    """Store connectivity check."""

    async def _run_bounded(label: str, func) -> bool:
        try:
            return bool(
                await asyncio.wait_for(
                    asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS
                )
            )
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    runtime = get_runtime()
    store_type = "memory" if runtime.settings.use_memory_store else "postgres"
    db_ok = await _run_bounded("database", runtime.store.ping)
    return {
        "status": "healthy" if db_ok else "unhealthy",
        "checks": {
            "database": {"status": "healthy" if db_ok else "unhealthy", "type": store_type}
        },
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    settings = get_settings()
    application = FastAPI(title="Fingerauth", version=__version__, lifespan=lifespan)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            "Authorization",
            "Accept-Language",
            "Sec-CH-UA",
            "X-Request-ID",
        ],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )
    application.middleware("http")(add_correlation_id)
    application.middleware("http")(add_security_headers)
    register_exception_handlers(application)
    application.include_router(router)
    application.get("/healthz")(health)
    return application


app = create_app()
