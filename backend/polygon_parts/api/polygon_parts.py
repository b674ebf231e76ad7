"""Polygon parts ingestion, validation, lookup, find and aggregation endpoints.

Layers are addressed by product id and product type on ingestion and by
their polygon parts entity name on queries. Every endpoint delegates to
the PolygonPartsManager; its errors are mapped to HTTP status codes by the
application's exception handler.

Example:
    Create a layer and find the polygon parts inside an area:
        >>> response = client.post("/polygon-parts", json=payload)
        >>> name = response.json()["polygonPartsEntityName"]
        >>> # Returns: "blue_marble_orthophoto"
        >>> response = client.post(
        ...     f"/polygon-parts/{name}/find",
        ...     params={"shouldClip": True},
        ...     json={"filter": feature_collection},
        ... )
        >>> response.json()["type"]
        'FeatureCollection'
"""

from typing import Any

import fastapi
from fastapi import responses

from polygon_parts.api import schemas
from polygon_parts.core import config
from polygon_parts.db import database
from polygon_parts.services import polygon_parts_manager

router = fastapi.APIRouter(prefix="/polygon-parts", tags=["polygon-parts"])


def _get_manager(
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> polygon_parts_manager.PolygonPartsManager:
    """Resolve the polygon parts manager dependency.

    Args:
        settings: Application settings (injected via FastAPI Depends).

    Returns:
        PolygonPartsManager over the configured partition store.
    """
    return polygon_parts_manager.PolygonPartsManager(
        database.get_partition_store(settings),
        settings,
    )


@router.post("", status_code=201)
def create_polygon_parts(
    body: schemas.PolygonPartsPayloadRequest,
    manager: polygon_parts_manager.PolygonPartsManager = fastapi.Depends(  # noqa: B008
        _get_manager
    ),
) -> dict[str, str]:
    """Create a layer and resolve its first batch of parts.

    Returns:
        Dictionary with the polygon parts entity name of the new layer.

    Raises:
        ConflictError: If the layer already exists (409 status code).
    """
    name = manager.create_polygon_parts(body.to_payload())
    return {"polygonPartsEntityName": name}


@router.put("")
def update_polygon_parts(
    body: schemas.PolygonPartsPayloadRequest,
    is_swap: bool = fastapi.Query(False, alias="isSwap"),  # noqa: B008
    manager: polygon_parts_manager.PolygonPartsManager = fastapi.Depends(  # noqa: B008
        _get_manager
    ),
) -> dict[str, str]:
    """Add parts to a layer, or replace all of them when ``isSwap`` is set.

    Raises:
        NotFoundError: If the layer does not exist (404 status code).
    """
    name = manager.update_polygon_parts(body.to_payload(), is_swap)
    return {"polygonPartsEntityName": name}


@router.post("/exists")
def exists_polygon_parts(
    body: schemas.ExistsRequest,
    manager: polygon_parts_manager.PolygonPartsManager = fastapi.Depends(  # noqa: B008
        _get_manager
    ),
) -> dict[str, str]:
    """Report the entity name of an existing layer, 404 otherwise."""
    name = manager.exists_polygon_parts(body.product_id, body.product_type.value)
    return {"polygonPartsEntityName": name}


@router.post("/validate")
def validate_polygon_parts(
    body: schemas.ValidatePolygonPartsRequest,
    manager: polygon_parts_manager.PolygonPartsManager = fastapi.Depends(  # noqa: B008
        _get_manager
    ),
) -> responses.JSONResponse:
    """Check a batch of parts before it is ingested.

    Returns:
        The failing parts with their violations and the counts of small
        geometries and small holes; 200 when the batch is clean, 422
        otherwise.

    Raises:
        ConflictError: If a new layer already exists (409 status code).
        NotFoundError: If the layer of an update does not exist (404 status
            code).
    """
    report = manager.validate_polygon_parts(
        body.product_id,
        body.product_type.value,
        body.job_type,
        body.to_validation_parts(),
    )
    return responses.JSONResponse(
        status_code=200 if report.is_valid else 422,
        content={
            "parts": [
                {"id": part_id, "errors": [v.value for v in violations]}
                for part_id, violations in report.violations.items()
            ],
            "smallGeometriesCount": report.small_geometries_count,
            "smallHolesCount": report.small_holes_count,
        },
    )


@router.post("/{name}/find")
def find_polygon_parts(
    name: str,
    body: schemas.FilterRequest,
    should_clip: bool = fastapi.Query(alias="shouldClip"),  # noqa: B008
    manager: polygon_parts_manager.PolygonPartsManager = fastapi.Depends(  # noqa: B008
        _get_manager
    ),
) -> dict[str, Any]:
    """Find the polygon parts of a layer intersecting the filter.

    Args:
        name: Polygon parts entity name of the layer.
        body: Optional GeoJSON filter of Polygon/MultiPolygon features.
        should_clip: Whether output geometries are clipped to the filter.
        manager: Polygon parts manager (injected via FastAPI Depends).

    Returns:
        GeoJSON FeatureCollection of polygon parts.

    Example:
        Unclipped find over two request features:
            >>> response = client.post(
            ...     "/polygon-parts/blue_marble_orthophoto/find",
            ...     params={"shouldClip": False},
            ...     json={"filter": {"type": "FeatureCollection",
            ...                      "features": [feature_a, feature_b]}},
            ... )
            >>> # A polygon part matched by both features carries
            >>> # "requestFeatureId": ["a", "b"]
    """
    return manager.find_polygon_parts(name, body.to_geojson(), should_clip)


@router.post("/{name}/aggregate")
def aggregate_layer_metadata(
    name: str,
    body: schemas.FilterRequest,
    manager: polygon_parts_manager.PolygonPartsManager = fastapi.Depends(  # noqa: B008
        _get_manager
    ),
) -> dict[str, Any]:
    """Aggregate the footprint and metadata of a layer's polygon parts.

    Returns:
        GeoJSON Feature with the aggregated footprint and metadata.

    Raises:
        NotFoundError: If the layer does not exist or no polygon part
            matches the filter (404 status code).
    """
    return manager.aggregate_layer_metadata(name, body.to_geojson())
