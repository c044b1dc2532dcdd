"""FastAPI server for the Value Resolver.

Main entry point for the API server.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.routes import admin, health, resolution
from core.observability.logging import configure_logging, get_logger
from value_resolver.errors import (
    ConfigError,
    NotFoundError,
    RefreshInProgressError,
    ResolutionTimeoutError,
    SourceQueryError,
    ValueResolverError,
)
from value_resolver.service import ValueResolverService, build_service


logger = get_logger(__name__)

# Application error → HTTP status
ERROR_STATUS = {
    ConfigError: 400,
    NotFoundError: 404,
    RefreshInProgressError: 409,
    SourceQueryError: 502,
}


def status_for(error: ValueResolverError) -> int:
    for error_type, status in ERROR_STATUS.items():
        if isinstance(error, error_type):
            return status
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    if app.state.service is None:
        app.state.service = build_service()
    settings = app.state.service.settings
    configure_logging(
        level=getattr(logging, settings.log_level, logging.INFO),
        json_format=settings.log_json,
    )
    logger.info(
        "Value Resolver API starting up",
        extra_fields={"db_path": str(settings.db_path), "sources": app.state.service.sources.names()},
    )

    yield

    # Shutdown
    logger.info("Value Resolver API shutting down")


def create_app(service: Optional[ValueResolverService] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        service: Pre-built service (tests); built from settings at startup when omitted
    """
    app = FastAPI(
        title="Value Resolver API",
        description="Resolve free-text terms to canonical values from refreshable value stores",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.service = service

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ValueResolverError)
    async def handle_value_resolver_error(request: Request, exc: ValueResolverError) -> JSONResponse:
        status = status_for(exc)
        if status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=status, content={"detail": exc.to_dict()})

    @app.exception_handler(ResolutionTimeoutError)
    async def handle_timeout(request: Request, exc: ResolutionTimeoutError) -> JSONResponse:
        logger.warning(f"{request.method} {request.url.path} timed out: {exc}")
        return JSONResponse(status_code=504, content={"detail": exc.to_dict()})

    # Include routers
    app.include_router(health.router, tags=["Health"])
    app.include_router(admin.router, prefix="/admin", tags=["Administration"])
    app.include_router(resolution.router, prefix="/v1", tags=["Resolution"])

    return app


# Default app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.server:app", host="0.0.0.0", port=8000, reload=True)
