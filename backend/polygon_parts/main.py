"""FastAPI application entrypoint and configuration.

This module provides the main FastAPI application factory that sets up
logging, CORS middleware, the polygon parts router, the mapping of
service errors to HTTP responses and a health check endpoint.

Example:
    The application can be run with uvicorn:
        $ uvicorn polygon_parts.main:app --reload

    Or imported and used programmatically:
        >>> from polygon_parts.main import app
        >>> # Use app in ASGI server
"""

import fastapi
from fastapi import responses
from fastapi.middleware import cors

from polygon_parts.api import polygon_parts
from polygon_parts.core import config, errors
from polygon_parts.core import logging as app_logging


async def polygon_parts_error_handler(
    _request: fastapi.Request,
    exc: Exception,
) -> responses.JSONResponse:
    """Translate a PolygonPartsError into its HTTP status and message."""
    status_code = getattr(exc, "status_code", 500)
    return responses.JSONResponse(
        status_code=status_code,
        content={"detail": str(exc)},
    )


def create_app() -> fastapi.FastAPI:
    """Create and configure the FastAPI application.

    Configures the package logger, includes the polygon parts router,
    registers the error handler and adds a health check endpoint. CORS
    origins are configured from settings.

    Returns:
        Configured FastAPI application instance ready for ASGI server.

    Example:
        The app can be used with uvicorn or other ASGI servers:
            >>> app = create_app()
            >>> # Or use the module-level app instance:
            >>> from polygon_parts.main import app
    """
    settings = config.get_settings()
    app_logging.configure_logging(settings.log_level)
    app = fastapi.FastAPI(title="Polygon Parts", version="0.1.0")

    app.include_router(polygon_parts.router)
    app.add_exception_handler(errors.PolygonPartsError, polygon_parts_error_handler)

    app.add_middleware(
        cors.CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
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
