"""FastAPI application entrypoint and configuration.

This module provides the application factory that configures logging,
opens the PostGIS connection pool for the lifetime of the app, sets up CORS
and gzip middleware, maps the service's error taxonomy to JSON responses,
includes the tiles router and exposes a health check endpoint.

Example:
    The application can be run with uvicorn:
        $ uvicorn cadastre_tiles.main:app --reload

    Or imported and used programmatically:
        >>> from cadastre_tiles.main import app
        >>> # Use app in ASGI server
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator
from typing import cast

import fastapi
from fastapi import exceptions, responses
from fastapi.middleware import cors, gzip

from cadastre_tiles.api import tiles
from cadastre_tiles.core import config, errors
from cadastre_tiles.db import database

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


@contextlib.asynccontextmanager
async def lifespan(app: fastapi.FastAPI) -> AsyncIterator[None]:
    """Open the connection pool on startup and close it on shutdown."""
    settings = config.get_settings()
    app.state.pool = database.create_pool(settings)
    logger.info(
        "Opened connection pool (min=%s, max=%s)",
        settings.pool_min_size,
        settings.pool_max_size,
    )
    try:
        yield
    finally:
        app.state.pool.closeall()
        app.state.pool = None
        logger.info("Closed connection pool")


async def _service_error_handler(
    request: fastapi.Request, exc: Exception
) -> responses.JSONResponse:
    error = cast(errors.TileServiceError, exc)
    if error.status_code >= 500:
        logger.error(
            "%s on %s %s: %s", error.error, request.method, request.url.path, error
        )
    return responses.JSONResponse(
        status_code=error.status_code, content=error.to_dict()
    )


async def _validation_error_handler(
    request: fastapi.Request, exc: Exception
) -> responses.JSONResponse:
    details = cast(exceptions.RequestValidationError, exc).errors()
    message = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
        for error in details
    )
    return responses.JSONResponse(
        status_code=400,
        content={"error": "InvalidRequest", "message": message},
    )


def create_app() -> fastapi.FastAPI:
    """Create and configure the FastAPI application.

    Configures root logging from ``settings.log_level``, registers the
    connection pool lifespan, CORS and gzip middleware, the error handlers
    and the tiles router, and adds a health check endpoint. CORS origins
    are configured from settings.

    Returns:
        Configured FastAPI application instance ready for ASGI server.

    Example:
        The app can be used with uvicorn or other ASGI servers:
            >>> app = create_app()
            >>> # Or use the module-level app instance:
            >>> from cadastre_tiles.main import app
    """
    settings = config.get_settings()
    logging.basicConfig(level=settings.log_level.upper(), format=_LOG_FORMAT)

    app = fastapi.FastAPI(title="Cadastre Tiles", version="0.1.0", lifespan=lifespan)

    app.include_router(tiles.router)

    app.add_middleware(
        cors.CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.allow_origins,
        allow_methods=["GET"],
        allow_headers=["*"],
    )
    app.add_middleware(gzip.GZipMiddleware, minimum_size=1000)  # type: ignore[arg-type]

    app.add_exception_handler(errors.TileServiceError, _service_error_handler)
    app.add_exception_handler(
        exceptions.RequestValidationError, _validation_error_handler
    )

    @app.get("/health")
    async def health() -> dict[str, str]:  # type: ignore[misc]
        """Health check endpoint for monitoring and load balancers.

        Returns:
            Dictionary with status "ok" if the service is running.
        """
        return {"status": "ok"}

    return app


app = create_app()
