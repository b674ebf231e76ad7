"""Tests for the PolygonPartsManager orchestration over an in-memory store."""

from __future__ import annotations

import itertools
from collections.abc import Callable
from concurrent import futures
from typing import Any

import pytest
import shapely
from shapely.geometry import box

from polygon_parts.core import config, errors
from polygon_parts.db import database, models
from polygon_parts.services import polygon_parts_manager, resolver
from polygon_parts.utils import geometry

PayloadFactory = Callable[..., models.PolygonPartsPayload]


@pytest.fixture
def manager(
    store: database.InMemoryPartitionStore,
    memory_settings: config.Settings,
) -> polygon_parts_manager.PolygonPartsManager:
    return polygon_parts_manager.PolygonPartsManager(store, memory_settings)


def _filter(geom: Any, **properties: Any) -> dict[str, Any]:
    return {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "id": "request",
                "geometry": geometry.to_geojson(geom),
                "properties": properties,
            }
        ],
    }


def test_create_returns_entity_name(
    manager: polygon_parts_manager.PolygonPartsManager,
    make_payload: PayloadFactory,
) -> None:
    name = manager.create_polygon_parts(make_payload(box(0, 0, 1, 1)))
    assert name == "blue_marble_orthophoto"
    assert manager.exists_polygon_parts("blue_marble", "Orthophoto") == name


def test_create_twice_conflicts(
    manager: polygon_parts_manager.PolygonPartsManager,
    make_payload: PayloadFactory,
) -> None:
    manager.create_polygon_parts(make_payload(box(0, 0, 1, 1)))
    with pytest.raises(errors.ConflictError):
        manager.create_polygon_parts(make_payload(box(0, 0, 1, 1)))


def test_update_missing_layer_not_found(
    manager: polygon_parts_manager.PolygonPartsManager,
    make_payload: PayloadFactory,
) -> None:
    with pytest.raises(errors.NotFoundError):
        manager.update_polygon_parts(make_payload(box(0, 0, 1, 1)), is_swap=False)


def test_exists_missing_layer_not_found(
    manager: polygon_parts_manager.PolygonPartsManager,
) -> None:
    with pytest.raises(errors.NotFoundError):
        manager.exists_polygon_parts("blue_marble", "RasterMap")


def test_update_then_find_clipped(
    manager: polygon_parts_manager.PolygonPartsManager,
    make_payload: PayloadFactory,
) -> None:
    name = manager.create_polygon_parts(make_payload(box(0, 0, 2, 2)))
    manager.update_polygon_parts(make_payload(box(1, 0, 3, 2)), is_swap=False)

    result = manager.find_polygon_parts(name, _filter(box(0, 0, 4, 1)), True)
    features = result["features"]
    assert len(features) == 2
    areas = sorted(
        geometry.from_geojson(feature["geometry"]).area for feature in features
    )
    assert areas == pytest.approx([1.0, 2.0])
    assert {f["properties"]["requestFeatureId"] for f in features} == {"request"}


def test_swap_replaces_layer(
    manager: polygon_parts_manager.PolygonPartsManager,
    make_payload: PayloadFactory,
) -> None:
    name = manager.create_polygon_parts(make_payload(box(0, 0, 1, 1)))
    manager.update_polygon_parts(make_payload(box(5, 5, 6, 6)), is_swap=True)
    features = manager.find_polygon_parts(name, None, False)["features"]
    assert len(features) == 1
    assert geometry.from_geojson(features[0]["geometry"]).equals(box(5, 5, 6, 6))


def test_find_accepts_qualified_name(
    manager: polygon_parts_manager.PolygonPartsManager,
    make_payload: PayloadFactory,
) -> None:
    manager.create_polygon_parts(make_payload(box(0, 0, 1, 1)))
    result = manager.find_polygon_parts(
        "polygon_parts.blue_marble_orthophoto",
        None,
        False,
    )
    assert len(result["features"]) == 1


def test_find_invalid_name(
    manager: polygon_parts_manager.PolygonPartsManager,
) -> None:
    with pytest.raises(errors.ValidationError):
        manager.find_polygon_parts("not a layer", None, False)


def test_find_missing_layer(
    manager: polygon_parts_manager.PolygonPartsManager,
) -> None:
    with pytest.raises(errors.NotFoundError):
        manager.find_polygon_parts("blue_marble_orthophoto", None, False)


def test_aggregate_layer_metadata(
    manager: polygon_parts_manager.PolygonPartsManager,
    make_payload: PayloadFactory,
    make_part_data: Callable[..., models.PartData],
) -> None:
    name = manager.create_polygon_parts(
        make_payload(
            make_part_data(box(0, 0, 1, 1), resolution_degree=0.01),
            make_part_data(box(1, 0, 2, 1), resolution_degree=0.03),
        )
    )
    feature = manager.aggregate_layer_metadata(name, None)
    assert feature["properties"]["maxResolutionDeg"] == 0.01
    assert feature["properties"]["minResolutionDeg"] == 0.03
    assert feature["properties"]["productBoundingBox"] == "0,0,2,1"

    with pytest.raises(errors.NotFoundError):
        manager.aggregate_layer_metadata(name, _filter(box(10, 10, 11, 11)))


def test_failed_resolution_leaves_layer_unchanged(
    monkeypatch: pytest.MonkeyPatch,
    manager: polygon_parts_manager.PolygonPartsManager,
    make_payload: PayloadFactory,
) -> None:
    name = manager.create_polygon_parts(make_payload(box(0, 0, 2, 2)))

    def fail(*_args: Any, **_kwargs: Any) -> models.Resolution:
        raise errors.GeometryOperationError("kernel failure")

    monkeypatch.setattr(resolver, "resolve", fail)
    with pytest.raises(errors.GeometryOperationError):
        manager.update_polygon_parts(make_payload(box(1, 1, 3, 3)), is_swap=True)

    features = manager.find_polygon_parts(name, None, False)["features"]
    assert len(features) == 1
    assert geometry.from_geojson(features[0]["geometry"]).equals(box(0, 0, 2, 2))


def test_concurrent_updates_keep_partitions_disjoint(
    store: database.InMemoryPartitionStore,
    metadata: models.EntitiesMetadata,
    manager: polygon_parts_manager.PolygonPartsManager,
    make_payload: PayloadFactory,
) -> None:
    manager.create_polygon_parts(make_payload(box(0, 0, 4, 4)))
    payloads = [
        make_payload(box(i * 0.5, 0, i * 0.5 + 3, 3), box(0, i * 0.5, 3, i * 0.5 + 1))
        for i in range(12)
    ]

    with futures.ThreadPoolExecutor(max_workers=12) as executor:
        results = list(
            executor.map(
                lambda payload: manager.update_polygon_parts(payload, is_swap=False),
                payloads,
            )
        )

    assert results == ["blue_marble_orthophoto"] * 12
    parts = store.parts(metadata)
    assert len(parts) == 25
    assert len({part.insertion_order for part in parts}) == 25
    assert all(part.is_processed for part in parts)

    partitions = store.partitions(metadata)
    for first, second in itertools.combinations(partitions, 2):
        assert first.footprint.intersection(second.footprint).area < 1e-10
    covered = shapely.union_all([p.footprint for p in partitions])
    expected = shapely.union_all([part.footprint for part in parts])
    assert covered.symmetric_difference(expected).area < 1e-9


def _validation_part(
    part_id: str,
    footprint: Any,
    resolution_degree: float,
) -> models.ValidationPart:
    return models.ValidationPart(
        id=part_id,
        footprint=footprint,
        resolution_degree=resolution_degree,
    )


def test_validate_new_layer(
    manager: polygon_parts_manager.PolygonPartsManager,
) -> None:
    report = manager.validate_polygon_parts(
        "blue_marble",
        "Orthophoto",
        models.JobType.INGESTION_NEW,
        [_validation_part("a", box(0, 0, 0.001, 0.001), 0.0001)],
    )
    assert report.is_valid


def test_validate_new_existing_layer_conflicts(
    manager: polygon_parts_manager.PolygonPartsManager,
    make_payload: PayloadFactory,
) -> None:
    manager.create_polygon_parts(make_payload(box(0, 0, 1, 1)))
    with pytest.raises(errors.ConflictError):
        manager.validate_polygon_parts(
            "blue_marble",
            "Orthophoto",
            models.JobType.INGESTION_NEW,
            [_validation_part("a", box(0, 0, 1, 1), 0.0001)],
        )


@pytest.mark.parametrize(
    "job_type",
    [models.JobType.INGESTION_UPDATE, models.JobType.INGESTION_SWAP_UPDATE],
)
def test_validate_update_missing_layer_not_found(
    manager: polygon_parts_manager.PolygonPartsManager,
    job_type: models.JobType,
) -> None:
    with pytest.raises(errors.NotFoundError):
        manager.validate_polygon_parts(
            "blue_marble",
            "Orthophoto",
            job_type,
            [_validation_part("a", box(0, 0, 1, 1), 0.0001)],
        )


def test_validate_update_checks_resolution_against_layer(
    manager: polygon_parts_manager.PolygonPartsManager,
    make_payload: PayloadFactory,
    make_part_data: Callable[..., models.PartData],
) -> None:
    manager.create_polygon_parts(
        make_payload(make_part_data(box(0, 0, 1, 1), resolution_degree=0.0001))
    )
    parts = [_validation_part("a", box(0.5, 0.5, 2, 2), 0.001)]

    report = manager.validate_polygon_parts(
        "blue_marble",
        "Orthophoto",
        models.JobType.INGESTION_UPDATE,
        parts,
    )
    assert report.violations == {"a": [models.PartViolation.RESOLUTION]}

    swap = manager.validate_polygon_parts(
        "blue_marble",
        "Orthophoto",
        models.JobType.INGESTION_SWAP_UPDATE,
        parts,
    )
    assert swap.is_valid
