from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from moodcircle.api.error_handling import register_exception_handlers
from moodcircle.api.routes import router
from moodcircle.config import Settings
from moodcircle.logging import get_logger, set_correlation_id
from moodcircle.service.errors import ServiceError

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


_cleanup_task: asyncio.Task | None = None


async def _run_otp_cleanup(interval_seconds: int) -> None:
    """Periodically delete expired one-time codes until cancelled."""
    from moodcircle.service.runtime import get_runtime

    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await asyncio.to_thread(get_runtime().auth.purge_expired_codes)
            except asyncio.CancelledError:
                raise
            except ServiceError as exc:
                logger.warning("otp_cleanup_failed", error_code=exc.error_code)
            except Exception as exc:
                logger.warning("otp_cleanup_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("otp_cleanup_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global _cleanup_task
    from moodcircle.service.runtime import get_runtime

    runtime = get_runtime()
    interval = runtime.settings.otp_cleanup_interval_seconds
    if interval > 0:
        _cleanup_task = asyncio.create_task(_run_otp_cleanup(interval))
        logger.info("otp_cleanup_scheduled", interval_seconds=interval)

    yield

    if _cleanup_task:
        _cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _cleanup_task
        _cleanup_task = None
    get_runtime().close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="MoodCircle Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts only; never a wildcard
    return [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with a correlation id for log tracing.

    The id comes from the client's X-Request-ID header when present and is
    echoed back in the response header of the same name.
    """
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
    # Token-bearing responses must not be cached by proxies
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health():
    from moodcircle.service.runtime import get_runtime

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
    store_ok = await _run_bounded("store", runtime.store.verify_connection)
    checks: Dict[str, Dict[str, Any]] = {
        "store": {
            "status": "healthy" if store_ok else "unhealthy",
            "type": type(runtime.store).__name__,
        },
        "email": {"status": "configured" if runtime.email.is_configured else "dev_mode"},
    }
    body = {
        "status": "healthy" if store_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(status_code=200 if store_ok else 503, content=body)
