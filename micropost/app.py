from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI

from micropost.api.error_handling import error_response, register_exception_handlers
from micropost.api.routes import router
from micropost.config import Settings
from micropost.logging import get_logger, set_correlation_id
from micropost.service.errors import DatabaseError
from micropost.service.runtime import Runtime, get_runtime

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

_cleanup_task: asyncio.Task | None = None


async def _run_token_sweep(runtime: Runtime, interval_seconds: int) -> None:
    """Background loop reaping expired blacklist, refresh and reset rows."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(runtime.sweep_expired_tokens)
        except DatabaseError as exc:
            # the next pass retries; a failed sweep never stops the loop
            logger.error("token_sweep_failed", operation=exc.operation)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _cleanup_task
    runtime = get_runtime()
    interval = runtime.settings.token_cleanup_interval_seconds
    if interval > 0:
        _cleanup_task = asyncio.create_task(_run_token_sweep(runtime, interval))
        logger.info("token_sweep_scheduled", interval_seconds=interval)

    yield

    if _cleanup_task:
        _cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _cleanup_task
        _cleanup_task = None
    logger.info("shutdown_complete")


app = FastAPI(title="Micropost API", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag logs and the response with ``X-Request-ID`` (client-supplied or generated)."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router, prefix=_settings.api_base_path)


@app.get("/healthz")
async def healthz() -> Dict[str, Any]:
    """Liveness plus a read of the JSON database."""
    runtime = get_runtime()
    try:
        await asyncio.to_thread(runtime.users.count)
    except DatabaseError as exc:
        logger.error("healthz_database_unavailable", operation=exc.operation)
        return error_response(503, "Database unavailable", code="DATABASE_ERROR")
    return {"status": "healthy", "version": __version__}
