from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI

from sessiongate.api.error_handling import register_exception_handlers
from sessiongate.api.routes import router
from sessiongate.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the expiry sweeper with the app and release the store on exit."""
    from sessiongate.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        if runtime.settings.session_sweeper_enabled:
            await runtime.sweeper.start()
    except Exception as exc:
        logger.error("startup_sweeper_failed", error=str(exc))

    yield

    try:
        runtime = get_runtime()
        await runtime.sweeper.stop()
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="sessiongate", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Reuse the caller's X-Request-ID or mint one, and echo it back."""
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
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault(
            "Cache-Control", "no-store, no-cache, must-revalidate, private"
        )
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store reachability and sweeper state."""
    from sessiongate.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    try:
        await runtime.sessions.verify_store()
        store_ok = True
    except Exception as exc:
        logger.error("health_check_store_failed", error=str(exc))
        store_ok = False
    checks["store"] = {
        "status": "healthy" if store_ok else "unhealthy",
        "type": "memory" if runtime.settings.use_memory_store else "postgres",
    }
    checks["cache"] = {"status": "healthy", "entries": len(runtime.cache)}
    checks["sweeper"] = {
        "status": "running" if runtime.sweeper.running else "stopped",
        "last_removed": runtime.sweeper.last_removed,
    }
    return {
        "status": "healthy" if store_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
