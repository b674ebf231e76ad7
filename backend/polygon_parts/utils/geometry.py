"""Geometry kernel helpers built on shapely.

This module wraps the shapely operations used by the overlap resolver,
the find engine, the aggregation engine and the parts validation:
GeoJSON conversion, explosion of (multi-)geometries into simple polygons,
coordinate rounding, the bounding box string and areas in square meters
(through pyproj). GEOS and PROJ failures are re-raised as
GeometryOperationError so the services can abort cleanly.

Example:
    Explode a difference into its polygon components:
        >>> from shapely.geometry import box
        >>> from polygon_parts.utils import geometry
        >>> diff = box(0, 0, 3, 1).difference(box(1, 0, 2, 1))
        >>> [p.bounds for p in geometry.explode_polygons(diff)]
        [(0.0, 0.0, 1.0, 1.0), (2.0, 0.0, 3.0, 1.0)]
"""

from __future__ import annotations

import contextlib
import threading
from typing import TYPE_CHECKING, Any

import pyproj
import shapely
from pyproj import exceptions as pyproj_exceptions
from shapely import geometry as shapely_geometry
from shapely import ops
from shapely.errors import GEOSException, ShapelyError

from polygon_parts.core import errors

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from shapely.geometry.base import BaseGeometry

WORLD_BOUNDS = (-180.0, -90.0, 180.0, 90.0)
# Global equal-area projection (WGS 84 / NSIDC EASE-Grid 2.0 Global), meters.
EQUAL_AREA_CRS = "EPSG:6933"


@contextlib.contextmanager
def geometry_operation(description: str) -> Iterator[None]:
    """Re-raise geometry kernel failures as GeometryOperationError.

    Args:
        description: Short name of the operation, used in the message.

    Raises:
        GeometryOperationError: If shapely/GEOS fails inside the block.
    """
    try:
        yield
    except (
        GEOSException,
        ShapelyError,
        pyproj_exceptions.ProjError,
        ValueError,
    ) as exc:
        raise errors.GeometryOperationError(
            f"Geometry operation '{description}' failed: {exc}"
        ) from exc


def from_geojson(geojson: dict[str, Any]) -> BaseGeometry:
    """Build a shapely geometry from a GeoJSON geometry mapping."""
    with geometry_operation("from geojson"):
        return shapely_geometry.shape(geojson)


def to_geojson(
    geom: BaseGeometry,
    precision: int | None = None,
) -> dict[str, Any]:
    """Serialize a geometry to a GeoJSON mapping with list coordinates.

    Args:
        geom: Geometry to serialize.
        precision: Decimal digits to round coordinates to, None keeps
            full precision.

    Returns:
        GeoJSON geometry dictionary.
    """
    mapping = shapely_geometry.mapping(geom)
    return {
        "type": mapping["type"],
        "coordinates": _listify(mapping["coordinates"], precision),
    }


def _listify(coordinates: Any, precision: int | None) -> Any:
    if isinstance(coordinates, (int, float)):
        value = float(coordinates)
        return round(value, precision) if precision is not None else value
    return [_listify(item, precision) for item in coordinates]


def explode_polygons(geom: BaseGeometry | None) -> list[shapely_geometry.Polygon]:
    """Split a geometry into its maximal simple polygon components.

    Non-polygonal components (lines or points left by touching geometries)
    and empty components are dropped.

    Args:
        geom: Any shapely geometry, possibly a collection.

    Returns:
        Polygon components in the geometry's enumeration order.
    """
    return list(_iter_polygons(geom))


def _iter_polygons(geom: BaseGeometry | None) -> Iterator[shapely_geometry.Polygon]:
    if geom is None or geom.is_empty:
        return
    if isinstance(geom, shapely_geometry.Polygon):
        yield geom
    elif isinstance(
        geom,
        (shapely_geometry.MultiPolygon, shapely_geometry.GeometryCollection),
    ):
        for part in geom.geoms:
            yield from _iter_polygons(part)


def union(geoms: Iterable[BaseGeometry]) -> BaseGeometry:
    """Union geometries, returning an empty collection for no input."""
    with geometry_operation("union"):
        return shapely.union_all(list(geoms))


def overlaps_interior(a: BaseGeometry, b: BaseGeometry) -> bool:
    """Check whether two geometries share interior area.

    Geometries that only touch along a boundary are not overlapping.
    """
    with geometry_operation("intersects"):
        return a.intersects(b) and not a.touches(b)


def is_within_world(geom: BaseGeometry) -> bool:
    """Check that a geometry lies inside [-180,-90,180,90]."""
    min_x, min_y, max_x, max_y = geom.bounds
    return (
        min_x >= WORLD_BOUNDS[0]
        and min_y >= WORLD_BOUNDS[1]
        and max_x <= WORLD_BOUNDS[2]
        and max_y <= WORLD_BOUNDS[3]
    )


def format_number(value: float, precision: int) -> str:
    """Format a coordinate without exponent and trailing zeros."""
    text = f"{value:.{precision}f}".rstrip("0").rstrip(".")
    return "0" if text in ("", "-0") else text


def bbox_string(geom: BaseGeometry, precision: int) -> str:
    """Return the geometry bounds as ``"minX,minY,maxX,maxY"``."""
    return ",".join(format_number(value, precision) for value in geom.bounds)


_transformers = threading.local()


def _equal_area_transformer() -> pyproj.Transformer:
    # pyproj transformers must not be shared between threads
    transformer = getattr(_transformers, "equal_area", None)
    if transformer is None:
        transformer = pyproj.Transformer.from_crs(
            "EPSG:4326",
            EQUAL_AREA_CRS,
            always_xy=True,
        )
        _transformers.equal_area = transformer
    return transformer


def area_square_meters(geom: BaseGeometry) -> float:
    """Area of an EPSG:4326 geometry in square meters.

    The geometry is projected to a global equal-area projection first, so
    areas are comparable across latitudes.
    """
    with geometry_operation("equal area transform"):
        projected = ops.transform(_equal_area_transformer().transform, geom)
        return float(projected.area)


def hole_areas_square_meters(polygon: shapely_geometry.Polygon) -> list[float]:
    """Areas in square meters of the polygons bounded by each interior ring."""
    return [
        area_square_meters(shapely_geometry.Polygon(ring.coords))
        for ring in polygon.interiors
    ]
