"""
FastAPI application of the notification dispatch service.

Endpoints:
- POST /events, GET /events/types: event ingestion
- /notifications/...: direct submission, user feeds, queue administration
- /emails/templates...: template catalogue and previews
- GET /health, GET /health/detailed

Run with:
    uvicorn api.main:app --port 3005

At startup the lifespan connects to Redis (failing fast when it is not
reachable), builds the DispatchRuntime and, unless SERVICE_RUN_WORKERS=false,
starts the queue workers in the same process. Shutdown drains in-flight
jobs before closing connections.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from api.routes import emails, events, get_runtime, notifications
from dispatch.runtime import DispatchRuntime
from shared.config import Settings, get_settings
from shared.errors import NotificationServiceError, ServiceUnavailableError, ValidationError

logging.basicConfig(
    level=get_settings().service.log_level,
    format="%(asctime)s | %(name)-24s | %(levelname)-5s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("notification_api")


def create_app(runtime: Optional[DispatchRuntime] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the application.

    Args:
        runtime: An already built runtime (tests). When omitted, the lifespan
                 connects one from settings and closes it on shutdown.
        settings: Settings used when the runtime is created here
    """
    settings = settings or (runtime.settings if runtime else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.runtime is None
        if owned:
            app.state.runtime = await DispatchRuntime.connect(settings)
            if settings.service.run_workers:
                app.state.runtime.start_workers()
        logger.info(f"{settings.service.name} started")
        yield
        logger.info(f"{settings.service.name} shutting down")
        if owned:
            await app.state.runtime.close()
            app.state.runtime = None

    app = FastAPI(
        title="Notification Service",
        description="""
        Asynchronous notification dispatch for the e-commerce platform.

        Domain events are routed to email and in-app jobs, processed by
        queue workers, and stored in per-user notification feeds.
        """,
        version=settings.service.version,
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    # =========================================================================
    # Error handling
    # =========================================================================

    @app.exception_handler(NotificationServiceError)
    async def handle_service_error(request: Request, exc: NotificationServiceError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RedisError)
    async def handle_redis_error(request: Request, exc: RedisError):
        logger.error(f"{request.method} {request.url.path}: Redis error: {exc}")
        error = ServiceUnavailableError("Notification storage is unavailable")
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [{"field": ".".join(str(p) for p in e["loc"]), "message": e["msg"]} for e in exc.errors()]
        error = ValidationError("Invalid request", details={"errors": errors})
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    # =========================================================================
    # Health Check
    # =========================================================================

    @app.get("/health", tags=["Health"])
    async def health_check():
        return {
            "status": "healthy",
            "service": settings.service.name,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/health/detailed", tags=["Health"])
    async def detailed_health(request: Request):
        """Redis connectivity, queue counts and mail transport."""
        report = await get_runtime(request).health()
        status_code = 200 if report["status"] == "healthy" else 503
        return JSONResponse(status_code=status_code, content=report)

    app.include_router(events)
    app.include_router(notifications)
    app.include_router(emails)
    return app


app = create_app()
