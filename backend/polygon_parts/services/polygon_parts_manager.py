"""Orchestration of the polygon parts operations exposed to the API.

The manager resolves layer names through the naming policy, opens the
store sessions of the write operations, runs the overlap resolver inside
them and delegates the read operations to the find and aggregation
engines. It never deals with HTTP; failures surface as PolygonPartsError
subclasses.

Example:
    Ingest a new layer and query it:
        >>> manager = PolygonPartsManager(store, settings)
        >>> name = manager.create_polygon_parts(payload)
        >>> manager.find_polygon_parts(name, None, should_clip=False)
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any

from polygon_parts.core import errors
from polygon_parts.db import models
from polygon_parts.services import aggregation, find, resolver, validation
from polygon_parts.utils import geometry

if TYPE_CHECKING:
    from collections.abc import Sequence

    from shapely.geometry.base import BaseGeometry

    from polygon_parts.core import config
    from polygon_parts.db import database

logger = logging.getLogger(__name__)


class PolygonPartsManager:
    """Entry point of the ingestion, validation and query flows."""

    def __init__(
        self,
        store: database.PartitionStoreProtocol,
        settings: config.Settings,
    ) -> None:
        self.store = store
        self.settings = settings
        self.naming = settings.naming_policy()
        self.aggregation_options = aggregation.AggregationOptions(
            smoothing_enabled=settings.aggregation_smoothing_enabled,
            smoothing_buffer=settings.aggregation_smoothing_buffer,
            precision=settings.aggregation_geometry_precision,
        )
        self.validation_options = validation.ValidationOptions(
            min_area_square_meter=settings.validation_min_area_square_meter,
            min_hole_area_square_meter=(
                settings.validation_min_hole_area_square_meter
            ),
        )

    def _deadline(self) -> float | None:
        if self.settings.resolver_timeout_seconds is None:
            return None
        return time.monotonic() + self.settings.resolver_timeout_seconds

    def _ingest(
        self,
        metadata: models.EntitiesMetadata,
        payload: models.PolygonPartsPayload,
        *,
        create: bool = False,
        is_swap: bool = False,
    ) -> None:
        deadline = self._deadline()
        try:
            with self.store.session(
                metadata,
                create=create,
                timeout=self.settings.resolver_timeout_seconds,
            ) as session:
                if is_swap:
                    logger.debug("Discarding layer '%s'", metadata.entity_identifier)
                    session.truncate()
                inserted = session.insert_parts(payload)
                logger.debug(
                    "Inserted %d parts into '%s'",
                    inserted,
                    metadata.parts.qualified_name,
                )
                resolver.resolve_layer(
                    session,
                    self.settings.min_polygon_part_area,
                    deadline,
                )
        except errors.PolygonPartsError as exc:
            logger.error(
                "Polygon parts ingestion of '%s' failed: %s",
                metadata.entity_identifier,
                exc,
            )
            raise

    def create_polygon_parts(self, payload: models.PolygonPartsPayload) -> str:
        """Create a layer and resolve its first batch of parts.

        Args:
            payload: Validated ingestion payload.

        Returns:
            Polygon parts entity name of the new layer.

        Raises:
            ConflictError: If the layer already exists.
            GeometryOperationError: If the resolver's geometry work fails.
            TransactionFailure: If the transaction fails; nothing is created.
        """
        metadata = self.naming.from_product(payload.product_id, payload.product_type)
        logger.info(
            "Creating polygon parts layer '%s' for catalog id %s",
            metadata.entity_identifier,
            payload.catalog_id,
        )
        self._ingest(metadata, payload, create=True)
        return metadata.polygon_parts.entity_name

    def update_polygon_parts(
        self,
        payload: models.PolygonPartsPayload,
        is_swap: bool,
    ) -> str:
        """Append (or with ``is_swap`` replace) the parts of a layer.

        A swap discards every raw part and polygon part of the layer in the
        same transaction, so the new batch resolves as if against an empty
        layer. Insertion orders keep increasing across swaps.

        Returns:
            Polygon parts entity name of the layer.

        Raises:
            NotFoundError: If the layer does not exist.
            GeometryOperationError: If the resolver's geometry work fails.
            TransactionFailure: If the transaction fails; nothing changes.
        """
        metadata = self.naming.from_product(payload.product_id, payload.product_type)
        logger.info(
            "Updating polygon parts layer '%s' for catalog id %s (swap: %s)",
            metadata.entity_identifier,
            payload.catalog_id,
            is_swap,
        )
        self._ingest(metadata, payload, is_swap=is_swap)
        return metadata.polygon_parts.entity_name

    def exists_polygon_parts(self, product_id: str, product_type: str) -> str:
        """Return the layer's polygon parts entity name if it exists.

        Raises:
            NotFoundError: If the layer's collections do not exist.
        """
        metadata = self.naming.from_product(product_id, product_type)
        logger.info("Checking polygon parts layer '%s'", metadata.entity_identifier)
        if not self.store.exists(metadata):
            raise errors.NotFoundError(
                f"Polygon parts layer '{metadata.entity_identifier}' doesn't exist"
            )
        return metadata.polygon_parts.entity_name

    def validate_polygon_parts(
        self,
        product_id: str,
        product_type: str,
        job_type: models.JobType,
        parts: Sequence[models.ValidationPart],
    ) -> models.ValidationReport:
        """Check a batch of parts before it is ingested.

        A new layer must not exist yet and an update must target an
        existing one, as the ingestion itself would require. Only an
        append update is checked against the layer's polygon parts; a swap
        replaces them.

        Args:
            product_id: Product id of the layer.
            product_type: Product type of the layer.
            job_type: Ingestion job the batch is meant for.
            parts: Candidate parts, in request order.

        Returns:
            ValidationReport of the batch.

        Raises:
            ConflictError: If a new layer already exists.
            NotFoundError: If the layer of an update does not exist.
        """
        metadata = self.naming.from_product(product_id, product_type)
        logger.info(
            "Validating %d parts of '%s' for %s",
            len(parts),
            metadata.entity_identifier,
            job_type.value,
        )
        exists = self.store.exists(metadata)
        if job_type is models.JobType.INGESTION_NEW and exists:
            raise errors.ConflictError(
                f"Polygon parts layer '{metadata.entity_identifier}' already exists"
            )
        if job_type is not models.JobType.INGESTION_NEW and not exists:
            raise errors.NotFoundError(
                f"Polygon parts layer '{metadata.entity_identifier}' doesn't exist"
            )

        existing: list[models.Partition] = []
        if job_type is models.JobType.INGESTION_UPDATE and parts:
            footprint = geometry.union(
                part.footprint for part in parts if part.footprint.is_valid
            )
            if not footprint.is_empty:
                existing = self.store.partitions(metadata, footprint)
        report = validation.validate(parts, existing, self.validation_options)
        if not report.is_valid:
            logger.warning(
                "Validation of '%s' failed for %d of %d parts",
                metadata.entity_identifier,
                len(report.violations),
                len(parts),
            )
        return report

    def _candidates(
        self,
        metadata: models.EntitiesMetadata,
        features: Sequence[models.FilterFeature],
    ) -> list[models.Partition]:
        footprint: BaseGeometry | None = None
        if features:
            footprint = geometry.union(feature.geometry for feature in features)
        return self.store.partitions(metadata, footprint)

    def find_polygon_parts(
        self,
        name: str,
        feature_collection: dict[str, Any] | None,
        should_clip: bool,
    ) -> dict[str, Any]:
        """Find the polygon parts of a layer matching a filter.

        Args:
            name: Polygon parts entity name of the layer.
            feature_collection: GeoJSON filter, None matches everything.
            should_clip: Whether outputs are clipped to the filter.

        Returns:
            GeoJSON FeatureCollection of the matching polygon parts.

        Raises:
            ValidationError: If the name is not a valid layer name.
            NotFoundError: If the layer does not exist.
        """
        metadata = self.naming.from_resource_identifier(name)
        logger.info(
            "Finding polygon parts of '%s' (clip: %s)",
            metadata.entity_identifier,
            should_clip,
        )
        features = find.parse_filter(feature_collection)
        partitions = self._candidates(metadata, features)
        result = find.find(partitions, features, should_clip)
        logger.debug(
            "Found %d features in %d candidate polygon parts",
            len(result["features"]),
            len(partitions),
        )
        return result

    def aggregate_layer_metadata(
        self,
        name: str,
        feature_collection: dict[str, Any] | None,
    ) -> dict[str, Any]:
        """Aggregate the polygon parts of a layer selected by a filter.

        Returns:
            GeoJSON Feature with the aggregated footprint and metadata.

        Raises:
            ValidationError: If the name is not a valid layer name.
            NotFoundError: If the layer does not exist or nothing matches.
        """
        metadata = self.naming.from_resource_identifier(name)
        logger.info("Aggregating polygon parts of '%s'", metadata.entity_identifier)
        features = find.parse_filter(feature_collection, with_max_resolution=True)
        partitions = self._candidates(metadata, features)
        return aggregation.aggregate(
            partitions,
            features,
            self.aggregation_options,
        )

