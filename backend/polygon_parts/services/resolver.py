"""Overlap resolution of newly ingested parts into polygon parts.

The resolver turns the unprocessed raw parts of a layer into polygon parts
so that no two polygon parts of the layer overlap. Overlaps are decided by
insertion order: a part inserted later always claims the contested area
from anything inserted before it, whether that is an existing polygon part
or another part of the same batch (last write wins).

For every "older" geometry (an existing polygon part, or a batch member)
the union of all later batch members whose interiors intersect it is
subtracted once. The remainder is exploded into simple polygons and
components below the configured minimum area are dropped. Batch members
that no later member overlaps are inserted verbatim, whatever their area.

Example:
    Resolve a layer inside a store session:
        >>> with store.session(metadata) as session:
        ...     resolution = resolve_layer(session, min_area=1e-10)
        >>> len(resolution.inserted), len(resolution.deleted)
        (3, 1)
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Protocol

from shapely.strtree import STRtree

from polygon_parts.core import errors
from polygon_parts.db import models
from polygon_parts.utils import geometry

if TYPE_CHECKING:
    from collections.abc import Sequence

    from shapely.geometry.polygon import Polygon

logger = logging.getLogger(__name__)


class ResolverSessionProtocol(Protocol):
    """Subset of a layer session used by the resolver."""

    def unprocessed_parts(self) -> list[models.RawPart]: ...

    def intersecting_partitions(self) -> list[models.Partition]:
        """Polygon parts intersecting any unprocessed part."""
        ...

    def apply(self, resolution: models.Resolution) -> None: ...


def _check_deadline(deadline: float | None) -> None:
    if deadline is not None and time.monotonic() > deadline:
        raise errors.TransactionFailure(
            "Polygon parts resolution exceeded its deadline"
        )


def _newer_intersectors(
    older: models.PartRecord,
    batch: Sequence[models.RawPart],
    tree: STRtree,
) -> list[models.RawPart]:
    """Batch members inserted after ``older`` that overlap its interior."""
    with geometry.geometry_operation("intersects"):
        candidates = tree.query(older.footprint, predicate="intersects")
    newer = [
        batch[index]
        for index in sorted(int(i) for i in candidates)
        if batch[index].insertion_order > older.insertion_order
    ]
    return [
        part
        for part in newer
        if geometry.overlaps_interior(older.footprint, part.footprint)
    ]


def _remainder(
    older: models.PartRecord,
    newer: Sequence[models.RawPart],
    min_area: float,
) -> list[Polygon]:
    """Subtract the union of the newer footprints and drop tiny leftovers."""
    claimed = geometry.union(part.footprint for part in newer)
    with geometry.geometry_operation("difference"):
        diff = older.footprint.difference(claimed)
    return [
        component
        for component in geometry.explode_polygons(diff)
        if component.area >= min_area
    ]


def resolve(
    unprocessed: Sequence[models.RawPart],
    existing: Sequence[models.Partition],
    min_area: float,
    deadline: float | None = None,
) -> models.Resolution:
    """Compute the polygon parts changes caused by a batch of raw parts.

    Args:
        unprocessed: New raw parts of the layer, in any order.
        existing: Current polygon parts of the layer. Only those whose
            footprint intersects a batch member matter; others are ignored.
        min_area: Minimum area of a difference remainder component.
        deadline: ``time.monotonic()`` value after which the run fails.

    Returns:
        Resolution with the partitions to insert, the ids of partitions to
        delete and the ids of raw parts to mark processed.

    Raises:
        GeometryOperationError: If a geometry operation fails.
        TransactionFailure: If the deadline is exceeded.
    """
    batch = sorted(unprocessed, key=lambda part: part.insertion_order)
    resolution = models.Resolution(processed=[part.id for part in batch])
    if not batch:
        return resolution

    tree = STRtree([part.footprint for part in batch])

    for partition in existing:
        _check_deadline(deadline)
        newer = _newer_intersectors(partition, batch, tree)
        if not newer:
            continue
        resolution.deleted.append(partition.id)
        resolution.inserted.extend(
            partition.with_footprint(component)
            for component in _remainder(partition, newer, min_area)
        )

    for part in batch:
        _check_deadline(deadline)
        newer = _newer_intersectors(part, batch, tree)
        if not newer:
            resolution.inserted.append(models.Partition.from_part(part))
            continue
        resolution.inserted.extend(
            models.Partition.from_part(part, component)
            for component in _remainder(part, newer, min_area)
        )

    return resolution


def resolve_layer(
    session: ResolverSessionProtocol,
    min_area: float,
    deadline: float | None = None,
) -> models.Resolution:
    """Resolve all unprocessed parts of the session's layer and apply them.

    Must run inside a layer session so that the changes are committed
    atomically, or not at all.

    Args:
        session: Open layer session of a partition store.
        min_area: Minimum area of a difference remainder component.
        deadline: ``time.monotonic()`` value after which the run fails.

    Returns:
        The applied Resolution.
    """
    unprocessed = session.unprocessed_parts()
    logger.debug(
        "Starting polygon parts resolution with %d unprocessed parts",
        len(unprocessed),
    )
    existing = session.intersecting_partitions()
    logger.debug("Found %d existing polygon parts affected", len(existing))

    resolution = resolve(unprocessed, existing, min_area, deadline)
    _check_deadline(deadline)
    session.apply(resolution)

    logger.debug(
        "Inserted %d polygon parts, deleted %d, processed %d parts",
        len(resolution.inserted),
        len(resolution.deleted),
        len(resolution.processed),
    )
    return resolution
