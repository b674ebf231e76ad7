"""Data models for raw parts, polygon parts and layer naming.

This module defines the core data structures shared by the partition
stores and the services. Records are immutable dataclasses whose
footprints are shapely geometries in EPSG:4326 degrees.

- PartData / PolygonPartsPayload: an ingestion request before storage.
- RawPart: one stored ingested footprint, possibly overlapping others.
- Partition: one non-overlapping polygon part derived from a RawPart.
- FilterFeature: one feature of a find/aggregate filter.
- EntityNames / EntitiesMetadata: resolved collection names of a layer.
- Resolution: the outcome of one overlap resolution run.
- ValidationPart / ValidationReport: input and outcome of a parts
  validation before ingestion.

Example:
    Creating a partition that covers a whole raw part:
        >>> from polygon_parts.db import models
        >>> partition = models.Partition.from_part(raw_part)
        >>> partition.part_id == raw_part.id
        True
"""

from __future__ import annotations

import dataclasses
import datetime
import enum
import uuid
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from shapely.geometry.base import BaseGeometry
    from shapely.geometry.polygon import Polygon

FeatureId = str | int


class ProductType(enum.StrEnum):
    """Raster product types that own polygon parts layers."""

    ORTHOPHOTO = "Orthophoto"
    ORTHOPHOTO_HISTORY = "OrthophotoHistory"
    ORTHOPHOTO_BEST = "OrthophotoBest"
    RASTER_MAP = "RasterMap"
    RASTER_MAP_BEST = "RasterMapBest"
    RASTER_AID = "RasterAid"
    RASTER_AID_BEST = "RasterAidBest"
    RASTER_VECTOR = "RasterVector"
    RASTER_VECTOR_BEST = "RasterVectorBest"


class JobType(enum.StrEnum):
    """Ingestion job a batch of parts is validated for."""

    INGESTION_NEW = "Ingestion_New"
    INGESTION_UPDATE = "Ingestion_Update"
    INGESTION_SWAP_UPDATE = "Ingestion_Swap_Update"


class PartViolation(enum.StrEnum):
    """Reasons a part fails validation."""

    INVALID_GEOMETRY = "InvalidGeometry"
    SMALL_GEOMETRY = "SmallGeometry"
    SMALL_HOLES = "SmallHoles"
    RESOLUTION = "Resolution"


@dataclasses.dataclass(frozen=True, kw_only=True)
class PartData:
    """Descriptive metadata and footprint of one submitted part."""

    source_id: str | None = None
    source_name: str
    imaging_time_begin_utc: datetime.datetime
    imaging_time_end_utc: datetime.datetime
    resolution_degree: float
    resolution_meter: float
    source_resolution_meter: float
    horizontal_accuracy_ce90: float
    sensors: tuple[str, ...]
    countries: tuple[str, ...] | None = None
    cities: tuple[str, ...] | None = None
    description: str | None = None
    footprint: Polygon


@dataclasses.dataclass(frozen=True, kw_only=True)
class PolygonPartsPayload:
    """Layer-level metadata plus the ordered list of submitted parts."""

    catalog_id: str
    product_id: str
    product_type: str
    product_version: str
    parts_data: tuple[PartData, ...]


@dataclasses.dataclass(frozen=True, kw_only=True)
class PartRecord:
    """Attributes shared by raw parts and polygon parts."""

    id: str
    catalog_id: str
    product_id: str
    product_type: str
    source_id: str | None = None
    source_name: str
    product_version: str
    ingestion_date_utc: datetime.datetime
    imaging_time_begin_utc: datetime.datetime
    imaging_time_end_utc: datetime.datetime
    resolution_degree: float
    resolution_meter: float
    source_resolution_meter: float
    horizontal_accuracy_ce90: float
    sensors: tuple[str, ...]
    countries: tuple[str, ...] | None = None
    cities: tuple[str, ...] | None = None
    description: str | None = None
    footprint: Polygon
    insertion_order: int


@dataclasses.dataclass(frozen=True, kw_only=True)
class RawPart(PartRecord):
    """One ingested footprint before overlap resolution.

    Attributes:
        is_processed: False until consumed by the overlap resolver, then
            permanently True.
    """

    is_processed: bool = False

    @classmethod
    def from_payload(
        cls,
        payload: PolygonPartsPayload,
        part: PartData,
        *,
        insertion_order: int,
        ingestion_date_utc: datetime.datetime | None = None,
    ) -> RawPart:
        """Build a raw part from one submitted part and its layer metadata.

        Args:
            payload: Ingestion payload holding the layer-level metadata.
            part: The submitted part.
            insertion_order: Per-layer sequence number assigned by the store.
            ingestion_date_utc: Ingestion timestamp, defaults to now (UTC).

        Returns:
            A new unprocessed RawPart with a fresh id.
        """
        return cls(
            id=str(uuid.uuid4()),
            catalog_id=payload.catalog_id,
            product_id=payload.product_id,
            product_type=payload.product_type,
            product_version=payload.product_version,
            ingestion_date_utc=ingestion_date_utc
            or datetime.datetime.now(tz=datetime.UTC),
            insertion_order=insertion_order,
            **{
                field.name: getattr(part, field.name)
                for field in dataclasses.fields(PartData)
            },
        )


@dataclasses.dataclass(frozen=True, kw_only=True)
class Partition(PartRecord):
    """One piece of the maintained non-overlapping coverage.

    Attributes:
        part_id: Id of the owning RawPart. Several partitions may share it
            when later parts split the raw part's footprint.
    """

    part_id: str

    @classmethod
    def from_part(
        cls,
        part: RawPart,
        footprint: Polygon | None = None,
    ) -> Partition:
        """Create a partition owned by ``part``.

        Args:
            part: The owning raw part.
            footprint: Footprint of the partition, defaults to the raw
                part's own footprint.

        Returns:
            A new Partition with a fresh id.
        """
        values = {
            field.name: getattr(part, field.name)
            for field in dataclasses.fields(PartRecord)
        }
        values.update(id=str(uuid.uuid4()), part_id=part.id)
        if footprint is not None:
            values["footprint"] = footprint
        return cls(**values)

    def with_footprint(self, footprint: Polygon) -> Partition:
        """Return a replacement partition carrying a new footprint."""
        return dataclasses.replace(self, id=str(uuid.uuid4()), footprint=footprint)


@dataclasses.dataclass(frozen=True)
class FilterFeature:
    """One feature of a find or aggregate filter.

    Attributes:
        id: Feature id as submitted, None when the feature has no id.
        geometry: Polygon or MultiPolygon geometry of the feature.
        min_resolution_deg: Coarsest accepted resolution degree.
        max_resolution_deg: Finest accepted resolution degree
            (aggregation only).
    """

    id: FeatureId | None
    geometry: BaseGeometry
    min_resolution_deg: float | None = None
    max_resolution_deg: float | None = None

    def accepts_resolution(self, resolution_degree: float) -> bool:
        """Check a resolution degree against the feature's bounds."""
        if (
            self.min_resolution_deg is not None
            and resolution_degree > self.min_resolution_deg
        ):
            return False
        if (
            self.max_resolution_deg is not None
            and resolution_degree < self.max_resolution_deg
        ):
            return False
        return True


@dataclasses.dataclass(frozen=True)
class EntityNames:
    """Physical name of one collection, bare and schema qualified."""

    entity_name: str
    qualified_name: str


@dataclasses.dataclass(frozen=True)
class EntitiesMetadata:
    """Identifier of a layer and the names of its two collections."""

    entity_identifier: str
    parts: EntityNames
    polygon_parts: EntityNames


@dataclasses.dataclass
class Resolution:
    """Outcome of one overlap resolution run.

    Attributes:
        inserted: Partitions to insert, in creation order.
        deleted: Ids of existing partitions to delete.
        processed: Ids of raw parts consumed by the run.
    """

    inserted: list[Partition] = dataclasses.field(default_factory=list)
    deleted: list[str] = dataclasses.field(default_factory=list)
    processed: list[str] = dataclasses.field(default_factory=list)


@dataclasses.dataclass(frozen=True)
class ValidationPart:
    """One candidate part of a validation request.

    Attributes:
        id: Feature id of the part in the request.
        footprint: Polygon or MultiPolygon footprint, possibly invalid.
        resolution_degree: Resolution of the part in degrees.
    """

    id: str
    footprint: BaseGeometry
    resolution_degree: float


@dataclasses.dataclass
class ValidationReport:
    """Outcome of a parts validation.

    Attributes:
        violations: Violations per failing part id, in request order.
        small_geometries_count: Number of polygon components below the
            minimum area.
        small_holes_count: Number of interior rings below the minimum hole
            area.
    """

    violations: dict[str, list[PartViolation]] = dataclasses.field(
        default_factory=dict
    )
    small_geometries_count: int = 0
    small_holes_count: int = 0

    @property
    def is_valid(self) -> bool:
        return not self.violations

    def add(self, part_id: str, violation: PartViolation) -> None:
        found = self.violations.setdefault(part_id, [])
        if violation not in found:
            found.append(violation)
