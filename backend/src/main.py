"""
FastAPI application entry point with health endpoints and service routing.

This module provides the main FastAPI application instance: CORS and rate
limiting, request logging, engine error mapping, health endpoints, and the
lifespan that starts the event bus, notification relay, optional Redis geo
index and dispatch sweep, and stops them in reverse order.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from src.api.v1 import api_router
from src.cache.redis_client import RedisClient, close_redis_client, get_redis_client
from src.core.config import get_settings
from src.core.logging import (
    clear_context,
    configure_logging,
    get_logger,
    get_request_id,
    log_performance,
    set_request_id,
)
from src.database.connection import (
    check_database_health,
    close_database_connections,
    get_session_factory,
)
from src.services.dispatch.coordinator import DispatchSweeper
from src.services.dispatch.geo_index import RedisGeoIndex, rebuild_redis_index
from src.services.errors import EngineError, ErrorKind
from src.services.events.bus import EventBus
from src.services.notifications.relay import NotificationRelay
from src.services.notifications.senders import build_senders

# Configure logging before application initialization
configure_logging()
logger = get_logger(__name__)

settings = get_settings()

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[settings.rate_limit_default],
    enabled=settings.rate_limit_enabled and not settings.is_test,
)

ERROR_STATUS_CODES = {
    ErrorKind.INVALID_TRANSITION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.NO_ACTIVE_SESSION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.ALREADY_SETTLED: status.HTTP_409_CONFLICT,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorKind.SESSION_ALREADY_OPEN: status.HTTP_409_CONFLICT,
    ErrorKind.SESSION_NOT_ENDED: status.HTTP_400_BAD_REQUEST,
    ErrorKind.COURIER_ROLLBACK_FAILED: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Cache-Control": "no-store",
}


async def connect_geo_cache() -> Optional[RedisClient]:
    """Connect Redis and rebuild the courier GEO set when the Redis backend is configured."""
    if settings.geo_index_backend != "redis":
        return None
    try:
        redis_client = await get_redis_client()
    except ConnectionError as e:
        logger.warning("Redis unavailable, using database geo index", error=str(e))
        return None

    async with get_session_factory()() as session:
        await rebuild_redis_index(
            session, RedisGeoIndex(redis_client, settings.redis_geo_key)
        )
    return redis_client


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan context manager for startup and shutdown events.

    Args:
        app: FastAPI application instance

    Yields:
        None during application runtime
    """
    logger.info(
        "Application starting",
        environment=settings.environment,
        debug=settings.debug,
        version=settings.app_version,
    )

    with log_performance(logger, "application_startup"):
        bus = EventBus(queue_size=settings.event_subscriber_queue_size)
        await bus.start()
        relay = NotificationRelay(bus, build_senders(settings), settings)
        redis_client = await connect_geo_cache()
        sweeper = DispatchSweeper(
            get_session_factory(), relay=relay, redis_client=redis_client, settings=settings
        )
        if settings.dispatch_sweep_enabled:
            sweeper.start()

        app.state.bus = bus
        app.state.relay = relay
        app.state.redis_client = redis_client
        app.state.sweeper = sweeper
        app.state.session_factory = get_session_factory()

    yield

    logger.info("Application shutting down")
    with log_performance(logger, "application_shutdown"):
        await sweeper.stop()
        if redis_client is not None:
            await close_redis_client()
        await bus.stop()
        await close_database_connections()
        logger.info("Resources cleaned up successfully")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Order lifecycle and courier dispatch API",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
    debug=settings.debug,
)

# Configure rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    for header, value in SECURITY_HEADERS.items():
        response.headers.setdefault(header, value)
    return response


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    """
    Middleware for request logging and correlation ID management.

    Sets request ID for correlation, logs request details, and measures
    response time. Clears context after request processing.
    """
    request_id = set_request_id(request.headers.get("X-Request-ID"))

    logger.info(
        "Request received",
        method=request.method,
        path=request.url.path,
        client_host=request.client.host if request.client else None,
    )

    try:
        with log_performance(
            logger,
            "request_processing",
            method=request.method,
            path=request.url.path,
        ):
            response = await call_next(request)

        response.headers["X-Request-ID"] = request_id

        logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
        )
        return response
    except Exception as e:
        logger.error(
            "Request failed",
            method=request.method,
            path=request.url.path,
            error=str(e),
            error_type=type(e).__name__,
        )
        raise
    finally:
        clear_context()


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    """
    Convert engine errors into JSON responses.

    The error kind selects the status code; the error context is returned
    as details.
    """
    status_code = ERROR_STATUS_CODES.get(exc.kind, status.HTTP_400_BAD_REQUEST)
    log = logger.error if status_code >= 500 else logger.warning
    log(
        "Engine error",
        method=request.method,
        path=request.url.path,
        error_kind=exc.kind.value,
        error=exc.message,
        context=exc.context,
    )
    return JSONResponse(
        status_code=status_code,
        content={
            "error": exc.kind.value,
            "message": exc.message,
            "details": {k: str(v) for k, v in exc.context.items()},
            "request_id": get_request_id(),
        },
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    logger.warning(
        "Request validation failed",
        method=request.method,
        path=request.url.path,
        errors=exc.errors(),
    )

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "VALIDATION_ERROR",
            "message": "Request validation failed",
            "details": jsonable_errors(exc),
            "request_id": get_request_id(),
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Handle unexpected exceptions with a generic error response.

    Logs error with full context and avoids exposing internal details.
    """
    logger.error(
        "Unhandled exception",
        method=request.method,
        path=request.url.path,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "INTERNAL_ERROR",
            "message": "An unexpected error occurred",
            "request_id": get_request_id(),
        },
    )


@app.get("/health", status_code=status.HTTP_200_OK, tags=["Health"], summary="Health check")
async def health_check() -> dict[str, str]:
    return {
        "status": "healthy",
        "service": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
    }


@app.get("/ready", tags=["Health"], summary="Readiness check")
async def readiness_check(request: Request):
    """
    Readiness check for orchestration.

    Verifies the order store and, when in use, the Redis geo index.
    """
    database_ok = await check_database_health(max_retries=1)
    redis_client: Optional[RedisClient] = getattr(request.app.state, "redis_client", None)
    redis_ok = await redis_client.health_check() if redis_client is not None else None

    checks = {
        "database": "healthy" if database_ok else "unhealthy",
        "redis": "not_configured" if redis_ok is None else ("healthy" if redis_ok else "unhealthy"),
    }
    ready = database_ok and redis_ok is not False

    if not ready:
        logger.warning("Readiness check failed", **checks)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "not_ready", "service": settings.app_name, **checks},
        )
    return {"status": "ready", "service": settings.app_name, **checks}


@app.get("/live", status_code=status.HTTP_200_OK, tags=["Health"], summary="Liveness check")
async def liveness_check() -> dict[str, str]:
    return {
        "status": "alive",
        "service": settings.app_name,
        "version": settings.app_version,
    }


app.include_router(api_router, prefix=settings.api_v1_prefix)
