"""Aggregation of a layer's polygon parts into one footprint and metadata.

The partitions selected by the filter (every partition without one) are
reduced in two independent ways:

1. Geometry: union of the footprints, optionally smoothed by a
   ``buffer(+eps)`` / ``buffer(-eps)`` pass, falling back to the raw union
   when smoothing collapses it, then the first polygon component is kept,
   rounded to a fixed precision, and its bounding box is derived.
2. Scalars: imaging time range, best/worst resolutions and accuracies and
   the sorted union of sensor names.

Aggregating an empty selection is an error: there is nothing to report.

Example:
    Aggregate a whole layer:
        >>> feature = aggregate(partitions, [], AggregationOptions())
        >>> feature["properties"]["productBoundingBox"]
        '34.1,31.2,35.3,32.9'
"""

from __future__ import annotations

import dataclasses
import logging
from typing import TYPE_CHECKING, Any

from polygon_parts.core import errors
from polygon_parts.services import find
from polygon_parts.utils import geometry

if TYPE_CHECKING:
    from collections.abc import Sequence

    from shapely.geometry.base import BaseGeometry

    from polygon_parts.db import models

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class AggregationOptions:
    """Tuning of the aggregation geometry pipeline."""

    smoothing_enabled: bool = True
    smoothing_buffer: float = 1e-7
    precision: int = 10


def union_footprints(partitions: Sequence[models.Partition]) -> BaseGeometry:
    return geometry.union(partition.footprint for partition in partitions)


def smooth(footprint: BaseGeometry, options: AggregationOptions) -> BaseGeometry:
    """Dissolve slivers with a buffer pass, keeping the input if it empties."""
    if not options.smoothing_enabled:
        return footprint
    with geometry.geometry_operation("buffer"):
        smoothed = footprint.buffer(options.smoothing_buffer).buffer(
            -options.smoothing_buffer
        )
    if smoothed.is_empty:
        logger.debug("Smoothing collapsed the footprint, using the raw union")
        return footprint
    return smoothed


def representative_footprint(
    footprint: BaseGeometry,
    options: AggregationOptions,
) -> tuple[dict[str, Any], str]:
    """Pick the first polygon component and derive its bounding box.

    Returns:
        Tuple of the rounded GeoJSON polygon and its bbox string.

    Raises:
        GeometryOperationError: If the footprint has no polygon component.
    """
    components = geometry.explode_polygons(footprint)
    if not components:
        raise errors.GeometryOperationError(
            "Aggregated footprint has no polygonal component"
        )
    selected = components[0]
    return (
        geometry.to_geojson(selected, options.precision),
        geometry.bbox_string(selected, options.precision),
    )


def aggregate_metadata(partitions: Sequence[models.Partition]) -> dict[str, Any]:
    """Scalar and array aggregates of the selected partitions."""
    resolution_degrees = [p.resolution_degree for p in partitions]
    resolution_meters = [p.resolution_meter for p in partitions]
    accuracies = [p.horizontal_accuracy_ce90 for p in partitions]
    return {
        "imagingTimeBeginUTC": min(
            p.imaging_time_begin_utc for p in partitions
        ).isoformat(),
        "imagingTimeEndUTC": max(
            p.imaging_time_end_utc for p in partitions
        ).isoformat(),
        "maxResolutionDeg": min(resolution_degrees),
        "minResolutionDeg": max(resolution_degrees),
        "maxResolutionMeter": min(resolution_meters),
        "minResolutionMeter": max(resolution_meters),
        "minHorizontalAccuracyCE90": min(accuracies),
        "maxHorizontalAccuracyCE90": max(accuracies),
        "sensors": sorted({sensor for p in partitions for sensor in p.sensors}),
    }


def aggregate(
    partitions: Sequence[models.Partition],
    features: Sequence[models.FilterFeature],
    options: AggregationOptions,
) -> dict[str, Any]:
    """Aggregate the partitions selected by ``features``.

    Args:
        partitions: Partitions of the layer in storage order.
        features: Parsed filter features (with max resolution bounds);
            empty selects every partition.
        options: Geometry pipeline options.

    Returns:
        GeoJSON Feature with the representative footprint as geometry and
        the aggregated metadata plus ``productBoundingBox`` as properties.

    Raises:
        NotFoundError: If no partition is selected.
        GeometryOperationError: If a geometry operation fails.
    """
    selected = find.select_partitions(partitions, features)
    if not selected:
        raise errors.NotFoundError("No polygon parts to aggregate")

    unioned = union_footprints(selected)
    footprint, bbox = representative_footprint(smooth(unioned, options), options)

    properties = aggregate_metadata(selected)
    properties["productBoundingBox"] = bbox
    return {"type": "Feature", "geometry": footprint, "properties": properties}
