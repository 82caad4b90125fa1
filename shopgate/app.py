from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from shopgate.api.admission import AdmissionMiddleware
from shopgate.api.error_handling import register_exception_handlers
from shopgate.api.routes import router
from shopgate.api.schemas import HealthResponse
from shopgate.config import Settings
from shopgate.logging import get_logger, set_correlation_id
from shopgate.service.metrics import (
    REQUEST_DURATION,
    REQUESTS_PROCESSED,
    register_default_metrics,
    render_metrics,
)

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"
__build__ = _settings.build_sha

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Register metrics and build the runtime on startup; release it on shutdown."""
    from shopgate.service.runtime import get_runtime

    register_default_metrics()
    runtime = get_runtime()
    logger.info("startup_complete", version=__version__, build=__build__)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Shopgate", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Storefront client and local dev hosts; no wildcard while credentials are allowed
    return [_settings.app_base_url, "http://localhost:3000", "http://127.0.0.1:3000"]


# Middleware added first runs innermost: admission sits right above the router,
# CORS (added last) is the outermost layer.
app.add_middleware(AdmissionMiddleware, router=app.router)


@app.middleware("http")
async def record_request_metrics(request: Request, call_next):
    started = time.perf_counter()
    try:
        return await call_next(request)
    finally:
        REQUESTS_PROCESSED.inc()
        REQUEST_DURATION.observe(time.perf_counter() - started)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("Cache-Control", "no-store")
    return response


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Echo X-Request-ID, generating one when the client sent none."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-CSRF-Token", "X-Request-ID"],
    expose_headers=["Link", "X-Request-ID"],
    max_age=300,
)


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz", response_model=HealthResponse)
async def health() -> Dict[str, Any]:
    """Report account directory and cache connectivity with build info."""
    from shopgate.service.runtime import get_runtime

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
    store_type = type(runtime.store).__name__
    cache_type = type(runtime.cache).__name__
    db_ok = await _run_bounded("database", runtime.store.verify_connection)
    cache_ok = await _run_bounded("cache", runtime.cache.verify_connection)
    checks: Dict[str, Dict[str, Any]] = {
        "database": {"status": "healthy" if db_ok else "unhealthy", "type": store_type},
        "cache": {"status": "healthy" if cache_ok else "unhealthy", "type": cache_type},
    }
    return {
        "status": "healthy" if db_ok and cache_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "build": __build__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/metrics", response_class=Response)
async def metrics() -> Response:
    """Prometheus text exposition of the process-wide metrics registry."""
    info = (
        "# HELP shopgate_info Application version info\n"
        "# TYPE shopgate_info gauge\n"
        f'shopgate_info{{version="{__version__}",build="{__build__}"}} 1\n'
    )
    return Response(
        content=info + render_metrics(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )