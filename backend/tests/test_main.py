"""Tests for the FastAPI main application factory and health checks.

This module validates that:
    - The FastAPI app is correctly instantiated via main.create_app,
    - OpenAPI metadata (title, version) matches the project contract,
    - The polygon parts routes and the health check are registered,
    - Service errors are translated into their HTTP status codes,
    - Logging is configured without duplicating handlers.

See Also:
    - backend/polygon_parts/main.py for the application factory.
"""

from __future__ import annotations

import logging
from typing import cast

import pytest
from fastapi import testclient

from polygon_parts import main
from polygon_parts.core import errors
from polygon_parts.core import logging as app_logging


def test_create_app() -> None:
    """Test that create_app returns a configured FastAPI instance."""
    app = main.create_app()
    assert app.title == "Polygon Parts"
    assert app.version == "0.1.0"


def test_health_endpoint() -> None:
    """Test the health check endpoint returns ok status."""
    client = testclient.TestClient(main.create_app())
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_app_includes_routes() -> None:
    """Test that the polygon parts routes are included in the app."""
    app = main.create_app()
    routes: list[str] = [
        cast(str, getattr(route, "path", ""))
        for route in app.routes  # type: ignore[attr-defined]
        if hasattr(route, "path")
    ]
    assert "/health" in routes
    assert "/polygon-parts" in routes
    assert "/polygon-parts/exists" in routes
    assert "/polygon-parts/{name}/find" in routes
    assert "/polygon-parts/{name}/aggregate" in routes


@pytest.mark.parametrize(
    ("error", "status_code"),
    [
        (errors.NotFoundError("missing"), 404),
        (errors.ConflictError("exists"), 409),
        (errors.ValidationError("bad name"), 400),
        (errors.GeometryOperationError("kernel"), 500),
        (errors.TransactionFailure("rolled back"), 500),
    ],
)
def test_errors_map_to_status_codes(
    error: errors.PolygonPartsError,
    status_code: int,
) -> None:
    """Test each service error is returned with its status and message."""
    app = main.create_app()

    @app.get("/raise")
    def raise_error() -> None:
        raise error

    client = testclient.TestClient(app)
    response = client.get("/raise")
    assert response.status_code == status_code
    assert response.json() == {"detail": str(error)}


def test_configure_logging_is_idempotent() -> None:
    """Test repeated configuration keeps a single handler."""
    app_logging.configure_logging("DEBUG")
    logger = app_logging.configure_logging("WARNING")
    handlers = [
        h
        for h in logger.handlers
        if isinstance(h, logging.StreamHandler)
        and h.formatter is not None
        and h.formatter._fmt == app_logging.LOG_FORMAT
    ]
    assert len(handlers) == 1
    assert logger.level == logging.WARNING
