"""Tests for the shapely geometry helpers."""

from __future__ import annotations

import pytest
from shapely.geometry import GeometryCollection, LineString, MultiPolygon, Polygon, box

from polygon_parts.core import errors
from polygon_parts.utils import geometry


def test_explode_polygons_splits_difference() -> None:
    diff = box(0, 0, 3, 1).difference(box(1, -1, 2, 2))
    components = geometry.explode_polygons(diff)
    assert sorted(p.bounds for p in components) == [
        (0.0, 0.0, 1.0, 1.0),
        (2.0, 0.0, 3.0, 1.0),
    ]


def test_explode_polygons_drops_lines_and_empties() -> None:
    collection = GeometryCollection(
        [
            box(0, 0, 1, 1),
            LineString([(2, 2), (3, 3)]),
            MultiPolygon([box(4, 4, 5, 5), box(6, 6, 7, 7)]),
        ]
    )
    assert len(geometry.explode_polygons(collection)) == 3
    assert geometry.explode_polygons(Polygon()) == []
    assert geometry.explode_polygons(None) == []


def test_overlaps_interior_ignores_touching() -> None:
    assert not geometry.overlaps_interior(box(0, 0, 1, 1), box(1, 0, 2, 1))
    assert geometry.overlaps_interior(box(0, 0, 1, 1), box(0.5, 0, 2, 1))
    assert not geometry.overlaps_interior(box(0, 0, 1, 1), box(5, 5, 6, 6))


def test_to_geojson_rounds_coordinates() -> None:
    polygon = Polygon([(0.123456, 0), (1, 0), (1, 1), (0.123456, 0)])
    result = geometry.to_geojson(polygon, precision=2)
    assert result["type"] == "Polygon"
    assert result["coordinates"][0][0] == [0.12, 0.0]


def test_from_geojson_round_trip() -> None:
    polygon = box(0, 0, 1, 1)
    assert geometry.from_geojson(geometry.to_geojson(polygon)).equals(polygon)


def test_from_geojson_wraps_kernel_errors() -> None:
    with pytest.raises(errors.GeometryOperationError):
        geometry.from_geojson(
            {"type": "Polygon", "coordinates": [[[0, 0], [1, 1], [0, 0]]]}
        )


def test_bbox_string_without_exponent() -> None:
    assert geometry.bbox_string(box(-0.0000001, 0, 1.5, 2), 10) == "-0.0000001,0,1.5,2"


def test_format_number_negative_zero() -> None:
    assert geometry.format_number(-0.00000000001, 10) == "0"


def test_is_within_world() -> None:
    assert geometry.is_within_world(box(-180, -90, 180, 90))
    assert not geometry.is_within_world(box(170, 0, 181, 1))


def test_area_square_meters_of_one_degree_at_equator() -> None:
    assert geometry.area_square_meters(box(0, 0, 1, 1)) == pytest.approx(
        1.234e10,
        rel=0.01,
    )


def test_area_square_meters_shrinks_with_latitude() -> None:
    equator = geometry.area_square_meters(box(0, 0, 1, 1))
    north = geometry.area_square_meters(box(0, 60, 1, 61))
    assert north / equator == pytest.approx(0.49, rel=0.03)


def test_hole_areas_square_meters() -> None:
    polygon = Polygon(
        box(0, 0, 3, 3).exterior.coords,
        [box(1, 1, 2, 2).exterior.coords],
    )
    [hole] = geometry.hole_areas_square_meters(polygon)
    assert hole == pytest.approx(geometry.area_square_meters(box(1, 1, 2, 2)))
    assert geometry.hole_areas_square_meters(box(0, 0, 1, 1)) == []
