"""FastAPI application setup with lifespan and exception handlers."""

from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from vidsum import __version__
from vidsum.api.routes import router
from vidsum.config import settings
from vidsum.errors import ValidationError, VidsumError
from vidsum.services.container import Services, build_services

logger = logging.getLogger(__name__)


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the API around ``services`` (the configured defaults when None)."""
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager.

        Startup:
            - Initialize database schema (SQL store only)

        Shutdown:
            - Cancel outstanding stage deliveries
            - Close database connections
        """
        # Startup
        logger.info("Starting vidsum API...")
        if services.uses_database:
            from vidsum.db import init_database

            await init_database()
        logger.info("API startup complete")

        yield

        # Shutdown
        logger.info("Shutting down vidsum API...")
        await services.dispatcher.shutdown()
        if services.uses_database:
            from vidsum.db import shutdown

            await shutdown()
        logger.info("API shutdown complete")

    app = FastAPI(
        title="vidsum API",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=services.settings.server.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    @app.exception_handler(VidsumError)
    async def vidsum_exception_handler(request: Request, exc: VidsumError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.code, "detail": exc.message},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        # Malformed parameters share the 400 shape of ValidationError
        return JSONResponse(
            status_code=ValidationError.status_code,
            content={"error": ValidationError.code, "detail": str(exc.errors())},
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler to prevent stack traces in API responses."""
        logger.error(f"Unhandled exception in {request.method} {request.url.path}: {type(exc).__name__}: {str(exc)}")
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_error",
                "detail": "Internal server error",
            }
        )

    return app


app = create_app()
