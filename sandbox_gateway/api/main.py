"""
Main FastAPI application.

Payment gateway sandbox API with:
- CORS configuration
- Engine error rendering
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
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from sandbox_gateway import __version__
from sandbox_gateway.config import Settings, get_settings
from sandbox_gateway.core.errors import ReviewRequiredError, SandboxError
from sandbox_gateway.database.connection import init_db
from sandbox_gateway.monitoring.logging import setup_logging

from .routes import (
    admin_router,
    checkout_router,
    fraud_router,
    monitoring_router,
    session_router,
    subscription_router,
    webhook_router,
)
from .services import Services, build_services

logger = structlog.get_logger(__name__)


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """
    Build the application.

    When ``services`` is given (tests) it is used as-is and no background
    loops are started; otherwise the lifespan handler builds and owns them.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        logger.info("application_startup", app_name=settings.app_name, env=settings.app_env)

        if getattr(app.state, "services", None) is not None:
            yield
            return

        built = build_services(settings)
        try:
            await init_db(built.engine)
            logger.info("database_initialized")
        except Exception as e:
            logger.error("database_initialization_failed", error=str(e))
            raise

        app.state.services = built
        await built.start_background()

        yield

        logger.info("application_shutdown")
        try:
            await built.aclose()
        except Exception as e:
            logger.error("services_shutdown_error", error=str(e))

    app = FastAPI(
        title="Payment Gateway Sandbox",
        description=(
            "Simulated checkout sessions, recurring billing, fraud gating and signed webhooks. "
            "No real money moves."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    if services is not None:
        app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """Bind a request ID into the log context and echo it back."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.time()

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
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

    @app.exception_handler(SandboxError)
    async def sandbox_error_handler(request: Request, exc: SandboxError) -> JSONResponse:
        if isinstance(exc, ReviewRequiredError):
            return JSONResponse(
                status_code=status.HTTP_202_ACCEPTED,
                content={
                    "status": "pending_review",
                    "session_id": exc.session_id,
                    "review_id": exc.review_id,
                    "score": exc.score,
                    "level": exc.level,
                },
            )

        log = logger.warning if exc.http_status < 500 else logger.error
        log(
            "sandbox_error",
            error_code=exc.error_code,
            error=exc.message,
            path=request.url.path,
        )
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "message": "An unexpected error occurred. Please try again later.",
            },
        )

    app.include_router(session_router)
    app.include_router(checkout_router)
    app.include_router(subscription_router)
    app.include_router(webhook_router)
    app.include_router(fraud_router)
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
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


def run() -> None:
    """Console entry point: serve the API with uvicorn."""
    import uvicorn

    settings = get_settings()
    setup_logging(settings)
    uvicorn.run(
        "sandbox_gateway.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
