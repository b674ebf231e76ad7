"""Spatial find queries over the polygon parts of a layer.

A polygon part matches a filter feature when their geometries intersect
and, when the feature carries ``minResolutionDeg``, the part's resolution
degree is finer than or equal to it. Without a filter (or with an empty
one) every polygon part matches.

Two output modes are supported:

- clipped: each matching polygon part is intersected with every matching
  filter feature separately and each resulting simple polygon is emitted
  with the single ``requestFeatureId`` of the feature that produced it.
- unclipped: each matching polygon part is emitted once, whole, with the
  id of the matching feature, or the list of ids when several matched.

Example:
    Clip a layer to a request polygon:
        >>> features = parse_filter(request_body["filter"])
        >>> collection = find(partitions, features, should_clip=True)
        >>> collection["type"]
        'FeatureCollection'
"""

from __future__ import annotations

import datetime
from typing import TYPE_CHECKING, Any

from polygon_parts.db import models
from polygon_parts.utils import geometry

if TYPE_CHECKING:
    from collections.abc import Sequence

OUTPUT_PROPERTIES: dict[str, str] = {
    "id": "id",
    "partId": "part_id",
    "catalogId": "catalog_id",
    "productId": "product_id",
    "productType": "product_type",
    "productVersion": "product_version",
    "sourceId": "source_id",
    "sourceName": "source_name",
    "ingestionDateUTC": "ingestion_date_utc",
    "imagingTimeBeginUTC": "imaging_time_begin_utc",
    "imagingTimeEndUTC": "imaging_time_end_utc",
    "resolutionDegree": "resolution_degree",
    "resolutionMeter": "resolution_meter",
    "sourceResolutionMeter": "source_resolution_meter",
    "horizontalAccuracyCE90": "horizontal_accuracy_ce90",
    "sensors": "sensors",
    "countries": "countries",
    "cities": "cities",
    "description": "description",
}


def parse_filter(
    feature_collection: dict[str, Any] | None,
    *,
    with_max_resolution: bool = False,
) -> list[models.FilterFeature]:
    """Convert a GeoJSON filter feature collection into filter features.

    Args:
        feature_collection: GeoJSON FeatureCollection or None.
        with_max_resolution: Whether ``maxResolutionDeg`` bounds apply
            (aggregation); find only honours ``minResolutionDeg``.

    Returns:
        Filter features in request order; empty for a missing filter.
    """
    if not feature_collection:
        return []
    features = []
    for feature in feature_collection.get("features") or []:
        properties = feature.get("properties") or {}
        features.append(
            models.FilterFeature(
                id=feature.get("id"),
                geometry=geometry.from_geojson(feature["geometry"]),
                min_resolution_deg=properties.get("minResolutionDeg"),
                max_resolution_deg=(
                    properties.get("maxResolutionDeg")
                    if with_max_resolution
                    else None
                ),
            )
        )
    return features


def matching_features(
    partition: models.Partition,
    features: Sequence[models.FilterFeature],
) -> list[models.FilterFeature]:
    """Filter features matched by a partition, in request order."""
    with geometry.geometry_operation("intersects"):
        return [
            feature
            for feature in features
            if feature.accepts_resolution(partition.resolution_degree)
            and partition.footprint.intersects(feature.geometry)
        ]


def select_partitions(
    partitions: Sequence[models.Partition],
    features: Sequence[models.FilterFeature],
) -> list[models.Partition]:
    """Partitions matching at least one feature, or all without features."""
    if not features:
        return list(partitions)
    return [
        partition
        for partition in partitions
        if matching_features(partition, features)
    ]


def partition_properties(partition: models.Partition) -> dict[str, Any]:
    """Output properties of a partition, omitting absent values."""
    properties: dict[str, Any] = {}
    for key, attribute in OUTPUT_PROPERTIES.items():
        value = getattr(partition, attribute)
        if value is None:
            continue
        if isinstance(value, datetime.datetime):
            value = value.isoformat()
        elif isinstance(value, tuple):
            value = list(value)
        properties[key] = value
    return properties


def _feature(
    partition: models.Partition,
    footprint: Any,
    request_feature_id: Any = None,
) -> dict[str, Any]:
    properties = partition_properties(partition)
    if request_feature_id is not None:
        properties["requestFeatureId"] = request_feature_id
    return {
        "type": "Feature",
        "geometry": geometry.to_geojson(footprint),
        "properties": properties,
    }


def _clipped_features(
    partition: models.Partition,
    matches: Sequence[models.FilterFeature],
) -> list[dict[str, Any]]:
    output = []
    for feature in matches:
        with geometry.geometry_operation("intersection"):
            clipped = partition.footprint.intersection(feature.geometry)
        output.extend(
            _feature(partition, component, feature.id)
            for component in geometry.explode_polygons(clipped)
        )
    return output


def _request_feature_id(matches: Sequence[models.FilterFeature]) -> Any:
    ids = [feature.id for feature in matches if feature.id is not None]
    if not ids:
        return None
    if len(ids) == 1:
        return ids[0]
    return ids


def find(
    partitions: Sequence[models.Partition],
    features: Sequence[models.FilterFeature],
    should_clip: bool,
) -> dict[str, Any]:
    """Answer a find query over a layer's partitions.

    Args:
        partitions: Partitions of the layer in storage order. The caller may
            pre-filter them spatially; non-matching ones are skipped here.
        features: Parsed filter features; empty matches everything.
        should_clip: Whether to clip outputs to the filter geometries.

    Returns:
        GeoJSON FeatureCollection of Polygon features.

    Raises:
        GeometryOperationError: If a geometry operation fails.
    """
    output: list[dict[str, Any]] = []
    for partition in partitions:
        if not features:
            output.append(_feature(partition, partition.footprint))
            continue
        matches = matching_features(partition, features)
        if not matches:
            continue
        if should_clip:
            output.extend(_clipped_features(partition, matches))
        else:
            output.append(
                _feature(
                    partition,
                    partition.footprint,
                    _request_feature_id(matches),
                )
            )
    return {"type": "FeatureCollection", "features": output}
