from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from salonauth.api.csrf import CSRF_HEADER_NAME, CsrfOptions, CsrfProtection
from salonauth.api.error_handling import register_exception_handlers
from salonauth.api.routes import router
from salonauth.config import get_settings
from salonauth.logging import get_logger, set_correlation_id
from salonauth.result import Err, Ok
from salonauth.service.runtime import get_runtime
from salonauth.service.sessions import purge_expired_sessions

logger = get_logger(__name__)

__version__ = "0.1.0"

_settings = get_settings()

_cleanup_task: asyncio.Task | None = None


async def _run_session_cleanup(interval_seconds: int) -> None:
    """Background loop purging expired sessions."""
    try:
        while True:
            runtime = get_runtime()
            match await purge_expired_sessions(runtime.session_deps()):
                case Err(error):
                    logger.warning("session_cleanup_failed", error=error.message)
                case Ok(_):
                    pass
            await asyncio.sleep(interval_seconds)
    except asyncio.CancelledError:
        logger.info("session_cleanup_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _cleanup_task
    runtime = get_runtime()
    _cleanup_task = asyncio.create_task(
        _run_session_cleanup(runtime.settings.session_cleanup_interval_seconds)
    )

    yield

    if _cleanup_task:
        _cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _cleanup_task
        _cleanup_task = None
    if runtime.cache is not None:
        await runtime.cache.close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="Salon Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # no wildcard while credentials are allowed
    return [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


if _settings.csrf_enabled:
    app.middleware("http")(
        CsrfProtection(
            CsrfOptions(
                exclude_paths=tuple(_settings.csrf_exclude_paths),
                session_required=_settings.csrf_session_required,
                exempt_bearer_requests=_settings.csrf_exempt_bearer_requests,
            ),
            lambda: get_runtime().sessions,
        )
    )


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/"):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    response.headers.setdefault("API-Version", __version__)
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind ``X-Request-ID`` (or a fresh UUID) to the request's log lines and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


# added last so it wraps every other middleware, including CSRF rejections
app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", CSRF_HEADER_NAME, "X-Request-ID"],
    expose_headers=["X-Request-ID", CSRF_HEADER_NAME, "API-Version", "Retry-After"],
    max_age=3600,
)


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Probe storage and, when configured, Redis."""
    runtime = get_runtime()
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

    db_ok = await _run_bounded("database", runtime.store.ping)
    checks["database"] = {
        "status": "healthy" if db_ok else "unhealthy",
        "type": "memory" if runtime.settings.use_memory_store else "postgres",
    }

    redis_ok = True
    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
    else:
        checks["redis"] = {"status": "not_configured"}

    return {
        "status": "healthy" if db_ok and redis_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
