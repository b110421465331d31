from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI

from authcore.api.error_handling import register_exception_handlers
from authcore.api.routes import router
from authcore.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        runtime.auth.tokens.ensure_configured()
    except Exception as exc:
        # Startup continues; token issuance reports the missing setting per request
        logger.error("startup_signing_config_missing", error=str(exc))

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="AuthCore", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Attach a correlation id (client X-Request-ID or a new UUID) to logs and the response."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store and cache reachability."""
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, bool] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component=label)
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    if hasattr(runtime.store, "_connect"):
        def _db_check() -> None:
            with runtime.store._connect() as conn:
                conn.execute("SELECT 1").fetchone()

        checks["database"] = await _run_bounded("database", _db_check)
    else:
        checks["database"] = True
    if runtime.cache is not None:
        checks["redis"] = await _run_bounded("redis", runtime.cache.verify_connection)
    healthy = all(checks.values())
    return {"status": "ok" if healthy else "degraded", "checks": checks, "version": __version__}


def create_app() -> FastAPI:
    return app
