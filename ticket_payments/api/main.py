"""
Main FastAPI application.

Ticket payment API with:
- CORS configuration
- Error handling
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import asyncio
import time
import uuid
from contextlib import asynccontextmanager, suppress
from typing import Any, AsyncGenerator

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ticket_payments import __version__
from ticket_payments.config import get_settings
from ticket_payments.core.errors import PaymentError
from ticket_payments.database.connection import close_db, init_db
from ticket_payments.monitoring.logging import setup_logging

from .dependencies import Services, build_services
from .routes import admin_router, monitoring_router, mpesa_router, payment_router, webhook_router

# Setup logging first
setup_logging()
logger = structlog.get_logger(__name__)

settings = get_settings()


async def _evict_rate_limit_entries(services: Services) -> None:
    """Drop idle rate limit identities once per window."""
    limiter = services.rate_limiter
    while True:
        await asyncio.sleep(limiter.window_seconds)
        removed = limiter.evict_expired()
        if removed:
            logger.debug("rate_limit_entries_evicted", removed=removed)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    # Startup
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        production=settings.is_production,
        test_mode=settings.is_test_mode,
        mpesa_env=settings.mpesa_env,
    )

    try:
        await init_db()
        logger.info("database_initialized")
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise

    services = getattr(app.state, "services", None)
    if services is None:
        services = build_services(settings)
        app.state.services = services
    eviction_task = asyncio.create_task(_evict_rate_limit_entries(services))

    yield

    # Shutdown
    logger.info("application_shutdown")
    eviction_task.cancel()
    with suppress(asyncio.CancelledError):
        await eviction_task

    try:
        await services.close()
        await close_db()
        logger.info("database_connections_closed")
    except Exception as e:
        logger.error("shutdown_error", error=str(e))


# Create FastAPI application
app = FastAPI(
    title="Ticket Payments",
    description=(
        "Event ticket payments over M-Pesa STK Push and Stripe embedded checkout. "
        "Provider callbacks, webhooks and status queries are reconciled through one "
        "transaction lifecycle."
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins_list(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
    """
    Add request ID to all requests for tracing.

    Also adds timing information and structured logging context.
    """
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    start_time = time.time()

    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    logger.info(
        "request_started",
        client_host=request.client.host if request.client else None,
    )

    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_seconds=time.time() - start_time,
        )
        return response

    except Exception as e:
        logger.error(
            "request_failed",
            error=str(e),
            duration_seconds=time.time() - start_time,
        )
        raise

    finally:
        structlog.contextvars.clear_contextvars()


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError) -> JSONResponse:
    """Map domain errors to their HTTP status and error body."""
    log = logger.error if exc.http_status >= 500 else logger.warning
    log(
        "payment_error",
        error_code=exc.error_code,
        error=exc.message,
        path=request.url.path,
        context=exc.context,
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed input is a 400 with the offending field paths."""
    details = [
        ".".join(str(part) for part in error["loc"] if part not in ("body", "path", "query"))
        for error in exc.errors()
    ]
    logger.warning("request_validation_failed", path=request.url.path, details=details)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "success": False,
            "error": "validation_error",
            "message": "Invalid request",
            "details": details,
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled exceptions.
    """
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error": "internal_error",
            "message": "An unexpected error occurred. Please try again later.",
        },
    )


# Include routers
app.include_router(mpesa_router)
app.include_router(payment_router)
app.include_router(webhook_router)
app.include_router(admin_router)
app.include_router(monitoring_router)


@app.get("/", tags=["root"])
async def root() -> dict[str, Any]:
    """Root endpoint with API information."""
    return {
        "service": settings.app_name,
        "version": __version__,
        "status": "operational",
        "environment": settings.app_env,
        "test_mode": settings.is_test_mode,
        "mpesa_env": settings.mpesa_env,
        "docs": "/docs",
        "health": "/health",
        "metrics": "/metrics",
    }


def run() -> None:
    """Serve the API with uvicorn."""
    import uvicorn

    uvicorn.run(
        "ticket_payments.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
