from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from authflow.api.error_handling import rate_limited_response, register_exception_handlers
from authflow.api.routes import router
from authflow.config import Settings
from authflow.logging import get_logger, set_correlation_id
from authflow.service.errors import RateLimitedError

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"
__build__ = _settings.build_sha


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    from authflow.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        if runtime.settings.cleanup_enabled:
            runtime.cleanup.start()
        else:
            logger.info("cleanup_scheduler_disabled")
    except Exception as exc:
        logger.error("startup_failed", error_type=type(exc).__name__, error=str(exc))

    yield

    try:
        runtime = get_runtime()
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Authflow", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def enforce_address_rate_limit(request: Request, call_next):
    """Token bucket per client address in front of every route.

    Fails closed: if the limiter or its store is unavailable the request is
    rejected with 429.
    """
    from authflow.service.runtime import get_runtime

    address = request.client.host if request.client else "unknown"
    try:
        runtime = get_runtime()
    except Exception as exc:
        logger.error("rate_limit_backend_error", guard="address", error=str(exc))
        return rate_limited_response(
            RateLimitedError(
                "request guard unavailable", detail={"reason": "guard_unavailable"}
            )
        )
    try:
        await runtime.rate_limiter.check_address(address)
    except RateLimitedError as exc:
        return rate_limited_response(exc)
    return await call_next(request)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Add correlation ID to each request for tracing.

    The ID is taken from the X-Request-ID header when the client sends one,
    otherwise generated. It is bound for structured logging and returned in
    the X-Request-ID response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> JSONResponse:
    """Report directory and ephemeral store reachability plus build info."""
    from authflow.service.runtime import get_runtime
    from authflow.storage.memory_cache import MemoryCache

    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    runtime = get_runtime()
    db_ok = await _run_bounded("database", runtime.store.verify_connection)
    checks["database"] = {
        "status": "healthy" if db_ok else "unhealthy",
        "type": "memory" if runtime.settings.use_memory_store else "postgres",
    }

    if isinstance(runtime.cache, MemoryCache):
        cache_ok = True
        checks["redis"] = {"status": "not_configured", "fallback": "in_process"}
    else:
        cache_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if cache_ok else "unhealthy"}

    healthy = db_ok and cache_ok
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "build": __build__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )
