from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from structlog.contextvars import bind_contextvars, reset_contextvars

from trendfeed.api.routes import router
from trendfeed.dependencies import get_container, get_settings, get_telemetry
from trendfeed.errors import PlatformError, TrendFeedError, public_error_payload
from trendfeed.logging_config import configure_application_logging
from trendfeed.services.scheduler_service import SchedulerService

LOGGER = logging.getLogger("trendfeed.api")


def health_check() -> dict[str, str]:
    return {"status": "ok"}


@asynccontextmanager
async def app_lifespan(_: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    configure_application_logging(settings)
    if settings.admin_token is None:
        LOGGER.warning("admin routes are open; set TRENDFEED_ADMIN_TOKEN to require X-Admin-Token")
    container = get_container()
    scheduler: SchedulerService | None = None

    if settings.scheduler_enabled:
        scheduler = container.build_scheduler()
        scheduler.start()

    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.stop()


async def trendfeed_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, TrendFeedError)
    if isinstance(exc, PlatformError):
        LOGGER.warning(
            "platform failure surfaced as generic error path=%s code=%s status=%s reason=%s detail=%s",
            request.url.path,
            exc.code,
            exc.http_status,
            exc.reason,
            exc.message,
        )
    else:
        LOGGER.info(
            "request rejected path=%s code=%s",
            request.url.path,
            exc.code,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "error": public_error_payload(exc)},
    )


def create_app() -> FastAPI:
    app = FastAPI(title="TrendFeed API", version="0.1.0", lifespan=app_lifespan)

    async def request_context_middleware(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        telemetry = get_telemetry()
        incoming_request_id = request.headers.get("X-Request-ID")
        request_id = (
            incoming_request_id.strip()
            if isinstance(incoming_request_id, str) and incoming_request_id.strip()
            else str(uuid4())
        )
        context_tokens = bind_contextvars(
            http_request_id=request_id,
            http_method=request.method,
            http_path=request.url.path,
        )
        started_at = perf_counter()
        telemetry.emit(
            "http.request.start",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        try:
            response = await call_next(request)
        except Exception as exc:
            telemetry.emit(
                "http.request.error",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                duration_ms=int((perf_counter() - started_at) * 1000),
                error_type=type(exc).__name__,
            )
            raise
        else:
            response.headers["X-Request-ID"] = request_id
            telemetry.emit(
                "http.request.finish",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                duration_ms=int((perf_counter() - started_at) * 1000),
                status_code=response.status_code,
            )
            return response
        finally:
            reset_contextvars(**context_tokens)

    app.middleware("http")(request_context_middleware)
    app.add_exception_handler(TrendFeedError, trendfeed_error_handler)
    app.include_router(router)
    app.add_api_route(
        "/health",
        health_check,
        methods=["GET"],
        tags=["system"],
        operation_id="health_check",
    )

    return app


app = create_app()
