"""
Main FastAPI application.

Merchant payment request and reconciliation API with:
- CORS configuration
- Error handling ({kind, message} bodies)
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from merchant_payments import __version__
from merchant_payments.config import get_settings
from merchant_payments.core.exceptions import PaymentError
from merchant_payments.database.connection import close_db, get_session_factory, init_db
from merchant_payments.monitoring.logging import setup_logging

from .routes import (
    admin_router,
    daraja_router,
    merchant_router,
    monitoring_router,
    payment_router,
    transaction_router,
)
from .services import ServiceContainer, build_services

# Setup logging first
setup_logging()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Builds the service graph unless one was injected, and tears down what
    it built.
    """
    settings = get_settings()
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        mpesa_environment=settings.mpesa_environment,
    )

    owns_services = app.state.services is None
    if owns_services:
        try:
            await init_db()
            logger.info("database_initialized")
        except Exception as e:
            logger.error("database_initialization_failed", error=str(e))
            raise
        app.state.services = build_services(settings, get_session_factory())

    yield

    logger.info("application_shutdown")
    if owns_services:
        try:
            await app.state.services.aclose()
            await close_db()
            logger.info("database_connections_closed")
        except Exception as e:
            logger.error("shutdown_error", error=str(e))


async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
    """
    Add request ID to all requests for tracing.

    Honours an incoming X-Request-ID so traces can span services.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    start_time = time.perf_counter()

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
            duration_seconds=time.perf_counter() - start_time,
        )
        return response

    except Exception as e:
        logger.error(
            "request_failed",
            error=str(e),
            duration_seconds=time.perf_counter() - start_time,
        )
        raise

    finally:
        structlog.contextvars.clear_contextvars()


async def payment_error_handler(request: Request, exc: PaymentError) -> JSONResponse:
    """Render domain errors as {kind, message} with the kind's status code."""
    log = logger.warning if exc.http_status < 500 else logger.error
    log(
        "payment_error",
        kind=exc.kind,
        message=exc.message,
        path=request.url.path,
        **{k: v for k, v in exc.context.items() if isinstance(v, (str, int, float, type(None)))},
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request body/query validation failures are InvalidInput."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    if location:
        message = f"{location}: {message}"
    logger.warning("request_validation_failed", path=request.url.path, errors=len(errors))
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"kind": "InvalidInput", "message": message},
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled exceptions."""
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "kind": "InternalError",
            "message": "An unexpected error occurred. Please try again later.",
        },
    )


def create_app(services: Optional[ServiceContainer] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        services: Prebuilt services; when given, the lifespan neither
            creates tables nor closes connections
    """
    settings = get_settings()

    app = FastAPI(
        title="Merchant Payments",
        description=(
            "M-Pesa STK push payment requests for merchants, with idempotent "
            "callback reconciliation, transaction reporting and analytics."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(add_request_id_middleware)

    app.add_exception_handler(PaymentError, payment_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    app.include_router(daraja_router)
    app.include_router(payment_router)
    app.include_router(transaction_router)
    app.include_router(merchant_router)
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
            "mpesa_environment": settings.mpesa_environment,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "merchant_payments.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )
