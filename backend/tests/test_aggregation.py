"""Tests for the aggregation engine."""

from __future__ import annotations

import datetime
from collections.abc import Callable
from typing import TYPE_CHECKING

import pytest
from shapely.geometry import MultiPolygon, Polygon, box, shape

from polygon_parts.core import errors
from polygon_parts.services import aggregation, find
from polygon_parts.utils import geometry

if TYPE_CHECKING:
    from polygon_parts.db import models

PartitionFactory = Callable[..., "models.Partition"]

OPTIONS = aggregation.AggregationOptions()


def test_aggregate_min_max_resolution(make_partition: PartitionFactory) -> None:
    partitions = [
        make_partition(box(0, 0, 1, 1), resolution_degree=0.02, resolution_meter=20),
        make_partition(box(1, 0, 2, 1), resolution_degree=0.01, resolution_meter=10),
        make_partition(box(2, 0, 3, 1), resolution_degree=0.03, resolution_meter=30),
    ]
    properties = aggregation.aggregate(partitions, [], OPTIONS)["properties"]
    assert properties["maxResolutionDeg"] == 0.01
    assert properties["minResolutionDeg"] == 0.03
    assert properties["maxResolutionMeter"] == 10
    assert properties["minResolutionMeter"] == 30


def test_aggregate_metadata_times_accuracy_and_sensors(
    make_partition: PartitionFactory,
) -> None:
    partitions = [
        make_partition(
            box(0, 0, 1, 1),
            imaging_time_begin_utc=datetime.datetime(2021, 5, 1, tzinfo=datetime.UTC),
            imaging_time_end_utc=datetime.datetime(2021, 6, 1, tzinfo=datetime.UTC),
            horizontal_accuracy_ce90=5.0,
            sensors=("WV02", "GeoEye"),
        ),
        make_partition(
            box(1, 0, 2, 1),
            imaging_time_begin_utc=datetime.datetime(2021, 4, 1, tzinfo=datetime.UTC),
            imaging_time_end_utc=datetime.datetime(2021, 5, 1, tzinfo=datetime.UTC),
            horizontal_accuracy_ce90=20.0,
            sensors=("WV02", "Pleiades"),
        ),
    ]
    metadata = aggregation.aggregate_metadata(partitions)
    assert metadata["imagingTimeBeginUTC"] == "2021-04-01T00:00:00+00:00"
    assert metadata["imagingTimeEndUTC"] == "2021-06-01T00:00:00+00:00"
    assert metadata["minHorizontalAccuracyCE90"] == 5.0
    assert metadata["maxHorizontalAccuracyCE90"] == 20.0
    assert metadata["sensors"] == ["GeoEye", "Pleiades", "WV02"]


def test_aggregate_footprint_dissolves_adjacent_parts(
    make_partition: PartitionFactory,
) -> None:
    partitions = [make_partition(box(0, 0, 1, 1)), make_partition(box(1, 0, 2, 1))]
    feature = aggregation.aggregate(partitions, [], OPTIONS)
    assert feature["type"] == "Feature"
    assert feature["geometry"]["type"] == "Polygon"
    assert shape(feature["geometry"]).area == pytest.approx(2.0)
    assert feature["properties"]["productBoundingBox"] == "0,0,2,1"


def test_aggregate_keeps_first_component(make_partition: PartitionFactory) -> None:
    partitions = [make_partition(box(0, 0, 1, 1)), make_partition(box(5, 5, 6, 6))]
    unioned = aggregation.smooth(aggregation.union_footprints(partitions), OPTIONS)
    expected = geometry.explode_polygons(unioned)[0]
    feature = aggregation.aggregate(partitions, [], OPTIONS)
    assert feature["properties"]["productBoundingBox"] == geometry.bbox_string(
        expected, OPTIONS.precision
    )
    assert shape(feature["geometry"]).area == pytest.approx(1.0)


def test_smoothing_falls_back_to_raw_union() -> None:
    footprint = Polygon([(0, 0), (1, 0), (1, 1), (0, 1)])
    # an erosion first collapses the unit square
    options = aggregation.AggregationOptions(smoothing_buffer=-1.0)
    assert aggregation.smooth(footprint, options) is footprint


def test_smoothing_disabled_is_identity() -> None:
    union = MultiPolygon([box(0, 0, 1, 1), box(1.00000001, 0, 2, 1)])
    options = aggregation.AggregationOptions(smoothing_enabled=False)
    assert aggregation.smooth(union, options) is union


def test_smoothing_dissolves_gap() -> None:
    union = MultiPolygon([box(0, 0, 1, 1), box(1.00000001, 0, 2, 1)])
    smoothed = aggregation.smooth(union, OPTIONS)
    assert smoothed.geom_type == "Polygon"


def test_aggregate_filter_selects_partitions(make_partition: PartitionFactory) -> None:
    partitions = [
        make_partition(box(0, 0, 1, 1), resolution_degree=0.001),
        make_partition(box(5, 5, 6, 6), resolution_degree=0.5),
    ]
    features = find.parse_filter(
        {
            "type": "FeatureCollection",
            "features": [
                {
                    "type": "Feature",
                    "geometry": geometry.to_geojson(box(-10, -10, 10, 10)),
                    "properties": {"maxResolutionDeg": 0.01},
                }
            ],
        },
        with_max_resolution=True,
    )
    properties = aggregation.aggregate(partitions, features, OPTIONS)["properties"]
    assert properties["maxResolutionDeg"] == 0.5
    assert properties["productBoundingBox"] == "5,5,6,6"


def test_aggregate_empty_selection_raises(make_partition: PartitionFactory) -> None:
    with pytest.raises(errors.NotFoundError):
        aggregation.aggregate([], [], OPTIONS)
