"""Request models of the polygon parts API.

Pydantic models validate ingestion payloads, validation requests and
find/aggregate filters at the boundary, so that the services receive
well-formed metadata and geometries. Only validation requests may carry
topologically invalid geometries, which the validation reports. Field
names follow the camelCase JSON contract of the API; malformed bodies are
rejected with HTTP 422.

Example:
    Validate an ingestion body and convert it for the services:
        >>> request = PolygonPartsPayloadRequest.model_validate(body)
        >>> payload = request.to_payload()
        >>> payload.product_type
        'Orthophoto'
"""

from __future__ import annotations

import datetime
import uuid
from typing import TYPE_CHECKING, Any, Literal

import pydantic
from pydantic import alias_generators

from polygon_parts.core import errors
from polygon_parts.db import models
from polygon_parts.utils import geometry

if TYPE_CHECKING:
    from collections.abc import Iterable

MIN_RESOLUTION_DEGREE = 0.000000167638063430786
MAX_RESOLUTION_DEGREE = 0.703125
MIN_RESOLUTION_METER = 0.0185
MAX_RESOLUTION_METER = 78271.52
MIN_HORIZONTAL_ACCURACY_CE90 = 0.01
MAX_HORIZONTAL_ACCURACY_CE90 = 4000

PRODUCT_ID_PATTERN = r"^[A-Za-z][A-Za-z0-9_]{0,37}$"
PRODUCT_VERSION_PATTERN = r"^[1-9]\d*(\.(0|[1-9]\d?))?$"


def _is_position(value: Any) -> bool:
    return (
        isinstance(value, list | tuple)
        and len(value) >= 2
        and all(
            isinstance(item, int | float) and not isinstance(item, bool)
            for item in value
        )
    )


def _polygon_rings(polygon: Any) -> list[list[Any]]:
    if not isinstance(polygon, list | tuple):
        raise ValueError("Polygon coordinates must be a list of rings")
    for ring in polygon:
        if not isinstance(ring, list | tuple):
            raise ValueError("Polygon rings must be lists of positions")
        if not all(_is_position(position) for position in ring):
            raise ValueError("Positions must be lists of at least two numbers")
    return [list(ring) for ring in polygon]


def _rings(geojson: dict[str, Any]) -> list[list[Any]]:
    coordinates = geojson.get("coordinates") or []
    if geojson["type"] == "Polygon":
        return _polygon_rings(coordinates)
    if not isinstance(coordinates, list | tuple):
        raise ValueError("MultiPolygon coordinates must be a list of polygons")
    return [ring for polygon in coordinates for ring in _polygon_rings(polygon)]


def validate_geometry(
    geojson: dict[str, Any],
    allowed_types: tuple[str, ...],
    *,
    require_valid: bool = True,
) -> dict[str, Any]:
    """Check that a GeoJSON geometry is a well-formed polygonal geometry.

    Coordinates must be nested as the type requires, with numeric
    positions. Rings must be closed and hold at least four positions,
    the geometry must lie inside [-180,-90,180,90] and, with
    ``require_valid``, be valid (no self-intersection, no overlapping
    multipolygon members).

    Args:
        geojson: GeoJSON geometry mapping.
        allowed_types: Accepted GeoJSON geometry types.
        require_valid: Whether topologically invalid geometries are rejected.

    Returns:
        The unchanged mapping.

    Raises:
        ValueError: If any rule is violated.
    """
    if geojson.get("type") not in allowed_types:
        raise ValueError(f"Geometry type must be one of {', '.join(allowed_types)}")
    rings = _rings(geojson)
    if not rings:
        raise ValueError("Geometry has no rings")
    for ring in rings:
        if len(ring) < 4:
            raise ValueError("Polygon rings must have at least 4 positions")
        if list(ring[0]) != list(ring[-1]):
            raise ValueError("Polygon rings must be closed")
    try:
        shape = geometry.from_geojson(geojson)
    except errors.GeometryOperationError as exc:
        raise ValueError(str(exc)) from exc
    if require_valid and not shape.is_valid:
        raise ValueError("Geometry is not valid")
    if not geometry.is_within_world(shape):
        raise ValueError("Geometry must lie within [-180,-90,180,90]")
    return geojson


def _as_utc(value: datetime.datetime) -> datetime.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.UTC)
    return value.astimezone(datetime.UTC)


class CamelModel(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(
        alias_generator=alias_generators.to_camel,
        populate_by_name=True,
    )


class PartMetadataRequest(CamelModel):
    """Descriptive metadata of one submitted part."""

    source_id: str | None = None
    source_name: str = pydantic.Field(min_length=1)
    imaging_time_begin_utc: datetime.datetime = pydantic.Field(
        alias="imagingTimeBeginUTC"
    )
    imaging_time_end_utc: datetime.datetime = pydantic.Field(
        alias="imagingTimeEndUTC"
    )
    resolution_degree: float = pydantic.Field(
        ge=MIN_RESOLUTION_DEGREE,
        le=MAX_RESOLUTION_DEGREE,
    )
    resolution_meter: float = pydantic.Field(
        ge=MIN_RESOLUTION_METER,
        le=MAX_RESOLUTION_METER,
    )
    source_resolution_meter: float = pydantic.Field(
        ge=MIN_RESOLUTION_METER,
        le=MAX_RESOLUTION_METER,
    )
    horizontal_accuracy_ce90: float = pydantic.Field(
        alias="horizontalAccuracyCE90",
        ge=MIN_HORIZONTAL_ACCURACY_CE90,
        le=MAX_HORIZONTAL_ACCURACY_CE90,
    )
    sensors: list[str] = pydantic.Field(min_length=1)
    countries: list[str] | None = None
    cities: list[str] | None = None
    description: str | None = None

    @pydantic.field_validator("imaging_time_begin_utc", "imaging_time_end_utc")
    @classmethod
    def _imaging_time_in_past(cls, value: datetime.datetime) -> datetime.datetime:
        value = _as_utc(value)
        if value > datetime.datetime.now(tz=datetime.UTC):
            raise ValueError("Imaging time must be in the past")
        return value

    @pydantic.model_validator(mode="after")
    def _imaging_time_range(self) -> PartMetadataRequest:
        if self.imaging_time_begin_utc > self.imaging_time_end_utc:
            raise ValueError(
                "imagingTimeBeginUTC must be earlier than or equal to"
                " imagingTimeEndUTC"
            )
        return self


class PartDataRequest(PartMetadataRequest):
    """One submitted part: descriptive metadata and a Polygon footprint."""

    footprint: dict[str, Any]

    @pydantic.field_validator("footprint")
    @classmethod
    def _valid_footprint(cls, value: dict[str, Any]) -> dict[str, Any]:
        return validate_geometry(value, ("Polygon",))

    def to_part_data(self) -> models.PartData:
        return models.PartData(
            source_id=self.source_id,
            source_name=self.source_name,
            imaging_time_begin_utc=self.imaging_time_begin_utc,
            imaging_time_end_utc=self.imaging_time_end_utc,
            resolution_degree=self.resolution_degree,
            resolution_meter=self.resolution_meter,
            source_resolution_meter=self.source_resolution_meter,
            horizontal_accuracy_ce90=self.horizontal_accuracy_ce90,
            sensors=tuple(self.sensors),
            countries=tuple(self.countries) if self.countries is not None else None,
            cities=tuple(self.cities) if self.cities is not None else None,
            description=self.description,
            footprint=geometry.from_geojson(self.footprint),
        )


class PolygonPartsPayloadRequest(CamelModel):
    """Body of the create and update operations."""

    catalog_id: uuid.UUID
    product_id: str = pydantic.Field(pattern=PRODUCT_ID_PATTERN)
    product_type: models.ProductType
    product_version: str = pydantic.Field(pattern=PRODUCT_VERSION_PATTERN)
    parts_data: list[PartDataRequest] = pydantic.Field(min_length=1)

    def to_payload(self) -> models.PolygonPartsPayload:
        """Convert the request into the services' payload model."""
        return models.PolygonPartsPayload(
            catalog_id=str(self.catalog_id),
            product_id=self.product_id,
            product_type=self.product_type.value,
            product_version=self.product_version,
            parts_data=tuple(part.to_part_data() for part in self.parts_data),
        )


class ExistsRequest(CamelModel):
    """Body of the exists operation."""

    product_id: str = pydantic.Field(pattern=PRODUCT_ID_PATTERN)
    product_type: models.ProductType


class FilterProperties(CamelModel):
    """Resolution bounds of a filter feature; other properties are kept."""

    model_config = pydantic.ConfigDict(extra="allow")

    min_resolution_deg: float | None = pydantic.Field(
        default=None,
        ge=MIN_RESOLUTION_DEGREE,
        le=MAX_RESOLUTION_DEGREE,
    )
    max_resolution_deg: float | None = pydantic.Field(
        default=None,
        ge=MIN_RESOLUTION_DEGREE,
        le=MAX_RESOLUTION_DEGREE,
    )


def _check_unique_ids(ids: Iterable[models.FeatureId | None]) -> None:
    present = [feature_id for feature_id in ids if feature_id is not None]
    if len(present) != len(set(present)):
        raise ValueError("Feature ids must be unique")


class FilterFeature(pydantic.BaseModel):
    """GeoJSON Feature with a Polygon or MultiPolygon geometry."""

    type: Literal["Feature"]
    id: str | int | None = None
    geometry: dict[str, Any]
    properties: FilterProperties | None = None

    @pydantic.field_validator("geometry")
    @classmethod
    def _valid_geometry(cls, value: dict[str, Any]) -> dict[str, Any]:
        return validate_geometry(value, ("Polygon", "MultiPolygon"))


class FilterFeatureCollection(pydantic.BaseModel):
    """GeoJSON FeatureCollection of filter features."""

    type: Literal["FeatureCollection"]
    features: list[FilterFeature]

    @pydantic.model_validator(mode="after")
    def _unique_feature_ids(self) -> FilterFeatureCollection:
        _check_unique_ids(feature.id for feature in self.features)
        return self


class FilterRequest(pydantic.BaseModel):
    """Body of the find and aggregate operations."""

    filter: FilterFeatureCollection | None = None

    def to_geojson(self) -> dict[str, Any] | None:
        """Filter as a plain GeoJSON mapping with camelCase properties."""
        if self.filter is None:
            return None
        return self.filter.model_dump(by_alias=True, exclude_none=True)


class ValidationFeature(pydantic.BaseModel):
    """Candidate part of a validation request.

    The geometry must be well formed but may be topologically invalid;
    invalid geometries are reported by the validation itself.
    """

    type: Literal["Feature"]
    id: str = pydantic.Field(min_length=1)
    geometry: dict[str, Any]
    properties: PartMetadataRequest

    @pydantic.field_validator("geometry")
    @classmethod
    def _well_formed_geometry(cls, value: dict[str, Any]) -> dict[str, Any]:
        return validate_geometry(
            value,
            ("Polygon", "MultiPolygon"),
            require_valid=False,
        )


class ValidationFeatureCollection(pydantic.BaseModel):
    type: Literal["FeatureCollection"]
    features: list[ValidationFeature] = pydantic.Field(min_length=1)

    @pydantic.model_validator(mode="after")
    def _unique_feature_ids(self) -> ValidationFeatureCollection:
        _check_unique_ids(feature.id for feature in self.features)
        return self


class ValidatePolygonPartsRequest(CamelModel):
    """Body of the validate operation."""

    catalog_id: uuid.UUID
    product_id: str = pydantic.Field(pattern=PRODUCT_ID_PATTERN)
    product_type: models.ProductType
    product_version: str = pydantic.Field(pattern=PRODUCT_VERSION_PATTERN)
    job_type: models.JobType
    feature_collection: ValidationFeatureCollection

    def to_validation_parts(self) -> list[models.ValidationPart]:
        return [
            models.ValidationPart(
                id=feature.id,
                footprint=geometry.from_geojson(feature.geometry),
                resolution_degree=feature.properties.resolution_degree,
            )
            for feature in self.feature_collection.features
        ]
