"""Shared fixtures building parts, partitions and in-memory stores.

Factories return plain model instances with sensible metadata so that each
test only spells out the footprint and the attributes it is about.
"""

from __future__ import annotations

import dataclasses
import datetime
from collections.abc import Callable
from typing import Any

import pytest
from shapely.geometry import box

from polygon_parts.core import config
from polygon_parts.db import database, models, naming

BEGIN = datetime.datetime(2022, 1, 1, tzinfo=datetime.UTC)
END = datetime.datetime(2022, 1, 2, tzinfo=datetime.UTC)
CATALOG_ID = "c52d8189-7e07-456a-8c6b-53859523c3e9"


@pytest.fixture
def make_part_data() -> Callable[..., models.PartData]:
    def factory(footprint: Any = None, **overrides: Any) -> models.PartData:
        values: dict[str, Any] = {
            "source_name": "string",
            "imaging_time_begin_utc": BEGIN,
            "imaging_time_end_utc": END,
            "resolution_degree": 0.01,
            "resolution_meter": 8000.0,
            "source_resolution_meter": 8000.0,
            "horizontal_accuracy_ce90": 10.0,
            "sensors": ("string",),
            "footprint": footprint if footprint is not None else box(0, 0, 1, 1),
        }
        values.update(overrides)
        return models.PartData(**values)

    return factory


@pytest.fixture
def make_payload(
    make_part_data: Callable[..., models.PartData],
) -> Callable[..., models.PolygonPartsPayload]:
    def factory(
        *parts: models.PartData | Any,
        product_id: str = "blue_marble",
        product_type: str = "Orthophoto",
    ) -> models.PolygonPartsPayload:
        parts_data = tuple(
            part if isinstance(part, models.PartData) else make_part_data(part)
            for part in parts
        )
        return models.PolygonPartsPayload(
            catalog_id=CATALOG_ID,
            product_id=product_id,
            product_type=product_type,
            product_version="1.0",
            parts_data=parts_data,
        )

    return factory


@pytest.fixture
def make_raw_part(
    make_payload: Callable[..., models.PolygonPartsPayload],
) -> Callable[..., models.RawPart]:
    def factory(
        footprint: Any,
        insertion_order: int,
        **overrides: Any,
    ) -> models.RawPart:
        payload = make_payload(footprint)
        part = models.RawPart.from_payload(
            payload,
            payload.parts_data[0],
            insertion_order=insertion_order,
        )
        return dataclasses.replace(part, **overrides) if overrides else part

    return factory


@pytest.fixture
def make_partition(
    make_raw_part: Callable[..., models.RawPart],
) -> Callable[..., models.Partition]:
    def factory(
        footprint: Any,
        insertion_order: int = 1,
        **overrides: Any,
    ) -> models.Partition:
        part = make_raw_part(footprint, insertion_order, **overrides)
        return models.Partition.from_part(part)

    return factory


@pytest.fixture
def memory_settings() -> config.Settings:
    return config.Settings(storage_backend="memory")


@pytest.fixture
def store() -> database.InMemoryPartitionStore:
    return database.InMemoryPartitionStore()


@pytest.fixture
def metadata() -> models.EntitiesMetadata:
    return naming.LayerNamingPolicy().from_product("blue_marble", "Orthophoto")
