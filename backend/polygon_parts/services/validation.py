"""Validation of candidate parts before they are ingested.

A batch is checked without touching the layer:

1. Geometry validity: an invalid footprint is reported and skipped by the
   other checks.
2. Small geometries: every polygon component of a footprint must cover at
   least the minimum area, measured in square meters in an equal-area
   projection.
3. Small holes: every interior ring must enclose at least the minimum hole
   area, measured the same way.
4. Resolution: on an update, a part may not intersect an existing polygon
   part of a finer (smaller) resolution degree.

Example:
    Validate a batch for a new layer:
        >>> report = validate(parts, [], ValidationOptions())
        >>> report.is_valid
        True
"""

from __future__ import annotations

import dataclasses
import logging
from typing import TYPE_CHECKING

from shapely.strtree import STRtree

from polygon_parts.db import models
from polygon_parts.utils import geometry

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class ValidationOptions:
    """Area thresholds of the validation, in square meters."""

    min_area_square_meter: float = 5.0
    min_hole_area_square_meter: float = 5.0


def small_geometries(
    parts: Sequence[models.ValidationPart],
    min_area: float,
) -> tuple[int, list[str]]:
    """Count polygon components below ``min_area`` square meters.

    Returns:
        Number of small components and the ids of the parts owning them.
    """
    count = 0
    ids: list[str] = []
    for part in parts:
        small = sum(
            1
            for polygon in geometry.explode_polygons(part.footprint)
            if geometry.area_square_meters(polygon) < min_area
        )
        if small:
            count += small
            ids.append(part.id)
    return count, ids


def small_holes(
    parts: Sequence[models.ValidationPart],
    min_area: float,
) -> tuple[int, list[str]]:
    """Count interior rings enclosing less than ``min_area`` square meters.

    Returns:
        Number of small holes and the ids of the parts owning them.
    """
    count = 0
    ids: list[str] = []
    for part in parts:
        small = sum(
            1
            for polygon in geometry.explode_polygons(part.footprint)
            for area in geometry.hole_areas_square_meters(polygon)
            if area < min_area
        )
        if small:
            count += small
            ids.append(part.id)
    return count, ids


def coarser_than_existing(
    parts: Sequence[models.ValidationPart],
    existing: Sequence[models.Partition],
) -> list[str]:
    """Ids of parts intersecting a polygon part of finer resolution."""
    if not parts or not existing:
        return []
    tree = STRtree([partition.footprint for partition in existing])
    ids: list[str] = []
    for part in parts:
        with geometry.geometry_operation("intersects"):
            hits = tree.query(part.footprint, predicate="intersects")
        if any(
            existing[int(i)].resolution_degree < part.resolution_degree
            for i in hits
        ):
            ids.append(part.id)
    return ids


def validate(
    parts: Sequence[models.ValidationPart],
    existing: Sequence[models.Partition],
    options: ValidationOptions,
) -> models.ValidationReport:
    """Run every check over a batch of candidate parts.

    Args:
        parts: Candidate parts, in request order.
        existing: Polygon parts the batch would be resolved against; empty
            for a new layer or a swap.
        options: Area thresholds.

    Returns:
        ValidationReport listing the violations of each failing part.

    Raises:
        GeometryOperationError: If a geometry operation fails.
    """
    report = models.ValidationReport()
    valid: list[models.ValidationPart] = []
    for part in parts:
        if part.footprint.is_valid:
            valid.append(part)
        else:
            report.add(part.id, models.PartViolation.INVALID_GEOMETRY)

    report.small_geometries_count, small_ids = small_geometries(
        valid, options.min_area_square_meter
    )
    report.small_holes_count, hole_ids = small_holes(
        valid, options.min_hole_area_square_meter
    )
    resolution_ids = coarser_than_existing(valid, existing)

    checks = (
        (small_ids, models.PartViolation.SMALL_GEOMETRY),
        (hole_ids, models.PartViolation.SMALL_HOLES),
        (resolution_ids, models.PartViolation.RESOLUTION),
    )
    for ids, violation in checks:
        for part_id in ids:
            report.add(part_id, violation)

    # keep request order
    order = {part.id: index for index, part in enumerate(parts)}
    report.violations = dict(
        sorted(report.violations.items(), key=lambda item: order[item[0]])
    )
    logger.debug(
        "Validated %d parts: %d failing, %d small geometries, %d small holes",
        len(parts),
        len(report.violations),
        report.small_geometries_count,
        report.small_holes_count,
    )
    return report
