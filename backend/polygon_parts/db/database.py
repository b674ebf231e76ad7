"""Partition stores holding the raw parts and polygon parts of each layer.

Every layer owns two collections: the ordered log of raw parts and the
current set of non-overlapping polygon parts. Reads (find, aggregate) go
through ``partitions()``; every mutation goes through a layer session,
which is serialized per layer and commits atomically or not at all.

Two backends share the PartitionStoreProtocol:

- InMemoryPartitionStore: for tests and local development. Sessions
  work on a copy of the layer state guarded by a per-layer lock and
  publish it on success; spatial lookups use a shapely STRtree.
- PostgresPartitionStore: PostGIS tables per layer, one transaction per
  session serialized by an advisory lock, transactional DDL on create.

Example:
    Ingest into a new layer and read its polygon parts:
        >>> store = get_partition_store(settings)
        >>> with store.session(metadata, create=True) as session:
        ...     session.insert_parts(payload)
        ...     resolver.resolve_layer(session, settings.min_polygon_part_area)
        >>> store.partitions(metadata)
"""

from __future__ import annotations

import contextlib
import dataclasses
import datetime
import decimal
import functools
import logging
import threading
import uuid
from typing import TYPE_CHECKING, Protocol, TypeVar, cast

import psycopg2
import psycopg2.extensions
import psycopg2.extras
from psycopg2 import sql
from shapely import wkb
from shapely.strtree import STRtree

from polygon_parts.core import errors
from polygon_parts.db import models

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from shapely.geometry.base import BaseGeometry

    from polygon_parts.core import config

logger = logging.getLogger(__name__)


class LayerSessionProtocol(Protocol):
    """Mutations of one layer inside a single atomic session."""

    def truncate(self) -> None: ...

    def insert_parts(self, payload: models.PolygonPartsPayload) -> int: ...

    def unprocessed_parts(self) -> list[models.RawPart]: ...

    def intersecting_partitions(self) -> list[models.Partition]: ...

    def apply(self, resolution: models.Resolution) -> None: ...


class PartitionStoreProtocol(Protocol):
    """Protocol interface for storing and querying layers' polygon parts.

    Implementations provide persistence for raw parts and polygon parts,
    supporting both in-memory (testing) and PostgreSQL (production)
    backends.
    """

    def exists(self, metadata: models.EntitiesMetadata) -> bool: ...

    def session(
        self,
        metadata: models.EntitiesMetadata,
        *,
        create: bool = False,
        timeout: float | None = None,
    ) -> contextlib.AbstractContextManager[LayerSessionProtocol]: ...

    def partitions(
        self,
        metadata: models.EntitiesMetadata,
        footprint: BaseGeometry | None = None,
    ) -> list[models.Partition]: ...

    def parts(self, metadata: models.EntitiesMetadata) -> list[models.RawPart]: ...


T = TypeVar("T", bound=models.PartRecord)


def _query_intersecting(
    records: Sequence[T],
    footprints: Sequence[BaseGeometry],
) -> list[T]:
    """Records intersecting any of the footprints, in input order."""
    if not records or not footprints:
        return []
    tree = STRtree([record.footprint for record in records])
    hits: set[int] = set()
    for footprint in footprints:
        hits.update(int(i) for i in tree.query(footprint, predicate="intersects"))
    return [records[i] for i in sorted(hits)]


@dataclasses.dataclass
class _LayerState:
    parts: dict[str, models.RawPart] = dataclasses.field(default_factory=dict)
    partitions: dict[str, models.Partition] = dataclasses.field(
        default_factory=dict
    )
    next_insertion_order: int = 1

    def copy(self) -> _LayerState:
        return _LayerState(
            parts=dict(self.parts),
            partitions=dict(self.partitions),
            next_insertion_order=self.next_insertion_order,
        )


class _InMemoryLayerSession(LayerSessionProtocol):
    def __init__(self, state: _LayerState) -> None:
        self._state = state

    def truncate(self) -> None:
        # insertion orders keep increasing across swaps
        self._state.parts.clear()
        self._state.partitions.clear()

    def insert_parts(self, payload: models.PolygonPartsPayload) -> int:
        for part_data in payload.parts_data:
            part = models.RawPart.from_payload(
                payload,
                part_data,
                insertion_order=self._state.next_insertion_order,
            )
            self._state.next_insertion_order += 1
            self._state.parts[part.id] = part
        return len(payload.parts_data)

    def unprocessed_parts(self) -> list[models.RawPart]:
        return sorted(
            (part for part in self._state.parts.values() if not part.is_processed),
            key=lambda part: part.insertion_order,
        )

    def intersecting_partitions(self) -> list[models.Partition]:
        return _query_intersecting(
            list(self._state.partitions.values()),
            [part.footprint for part in self.unprocessed_parts()],
        )

    def apply(self, resolution: models.Resolution) -> None:
        for partition_id in resolution.deleted:
            del self._state.partitions[partition_id]
        for partition in resolution.inserted:
            self._state.partitions[partition.id] = partition
        for part_id in resolution.processed:
            self._state.parts[part_id] = dataclasses.replace(
                self._state.parts[part_id],
                is_processed=True,
            )


class InMemoryPartitionStore(PartitionStoreProtocol):
    """Simple in-memory store for tests and local development.

    Layers are kept in a dictionary keyed by the qualified polygon parts
    name. Data is lost when the process exits.
    """

    def __init__(self) -> None:
        """Initialize an empty in-memory store."""
        self._layers: dict[str, _LayerState] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    @staticmethod
    def _key(metadata: models.EntitiesMetadata) -> str:
        return metadata.polygon_parts.qualified_name

    def _layer_lock(self, key: str) -> threading.Lock:
        with self._registry_lock:
            return self._locks.setdefault(key, threading.Lock())

    def _state(self, metadata: models.EntitiesMetadata) -> _LayerState:
        state = self._layers.get(self._key(metadata))
        if state is None:
            raise errors.NotFoundError(
                f"Table with the name '{metadata.polygon_parts.qualified_name}'"
                " doesn't exist"
            )
        return state

    def exists(self, metadata: models.EntitiesMetadata) -> bool:
        return self._key(metadata) in self._layers

    @contextlib.contextmanager
    def session(
        self,
        metadata: models.EntitiesMetadata,
        *,
        create: bool = False,
        timeout: float | None = None,
    ) -> Iterator[LayerSessionProtocol]:
        """Open an atomic session on a layer.

        Args:
            metadata: Names of the layer.
            create: Create the layer; it must not exist yet.
            timeout: Seconds to wait for the layer lock, None waits forever.

        Raises:
            ConflictError: If ``create`` and the layer exists.
            NotFoundError: If not ``create`` and the layer does not exist.
            TransactionFailure: If the layer lock cannot be acquired.
        """
        key = self._key(metadata)
        lock = self._layer_lock(key)
        if not lock.acquire(timeout=-1 if timeout is None else timeout):
            raise errors.TransactionFailure(
                f"Could not lock layer '{metadata.entity_identifier}'"
            )
        try:
            current = self._layers.get(key)
            if create:
                if current is not None:
                    raise errors.ConflictError(
                        f"Table with the name '{key}' already exists"
                    )
                state = _LayerState()
            else:
                state = self._state(metadata).copy()
            yield _InMemoryLayerSession(state)
            self._layers[key] = state
        finally:
            lock.release()

    def partitions(
        self,
        metadata: models.EntitiesMetadata,
        footprint: BaseGeometry | None = None,
    ) -> list[models.Partition]:
        records = list(self._state(metadata).partitions.values())
        if footprint is None:
            return records
        return _query_intersecting(records, [footprint])

    def parts(self, metadata: models.EntitiesMetadata) -> list[models.RawPart]:
        return sorted(
            self._state(metadata).parts.values(),
            key=lambda part: part.insertion_order,
        )


COMMON_COLUMNS = (
    "id",
    "catalog_id",
    "product_id",
    "product_type",
    "source_id",
    "source_name",
    "product_version",
    "ingestion_date_utc",
    "imaging_time_begin_utc",
    "imaging_time_end_utc",
    "resolution_degree",
    "resolution_meter",
    "source_resolution_meter",
    "horizontal_accuracy_ce90",
    "sensors",
    "countries",
    "cities",
    "description",
)
PARTITION_COLUMNS = (*COMMON_COLUMNS, "part_id", "insertion_order")
NUMERIC_COLUMNS = (
    "resolution_degree",
    "resolution_meter",
    "source_resolution_meter",
    "horizontal_accuracy_ce90",
)
ARRAY_COLUMNS = ("sensors", "countries", "cities")

COMMON_COLUMNS_SQL = """
  id uuid PRIMARY KEY,
  catalog_id uuid NOT NULL,
  product_id text NOT NULL,
  product_type text NOT NULL,
  source_id text,
  source_name text NOT NULL,
  product_version text NOT NULL,
  ingestion_date_utc timestamptz NOT NULL DEFAULT now(),
  imaging_time_begin_utc timestamptz NOT NULL,
  imaging_time_end_utc timestamptz NOT NULL,
  resolution_degree numeric NOT NULL,
  resolution_meter numeric NOT NULL,
  source_resolution_meter numeric NOT NULL,
  horizontal_accuracy_ce90 numeric NOT NULL,
  sensors text[] NOT NULL,
  countries text[],
  cities text[],
  description text,
  footprint geometry(Polygon, 4326) NOT NULL,
  CHECK (imaging_time_begin_utc <= imaging_time_end_utc),
  CHECK (ST_IsValid(footprint)),
"""

CREATE_PARTS_TABLE_SQL = (
    "CREATE TABLE {table} ("
    + COMMON_COLUMNS_SQL
    + """
  insertion_order bigint GENERATED ALWAYS AS IDENTITY UNIQUE,
  is_processed_part boolean NOT NULL DEFAULT false
);
CREATE INDEX ON {table} USING gist (footprint);
CREATE INDEX ON {table} (is_processed_part);
"""
)

CREATE_POLYGON_PARTS_TABLE_SQL = (
    "CREATE TABLE {table} ("
    + COMMON_COLUMNS_SQL
    + """
  part_id uuid NOT NULL,
  insertion_order bigint NOT NULL
);
CREATE INDEX ON {table} USING gist (footprint);
CREATE INDEX ON {table} (part_id);
CREATE INDEX ON {table} (insertion_order);
CREATE INDEX ON {table} (resolution_degree);
"""
)


def _identifier(qualified_name: str) -> sql.Identifier:
    schema, _, name = qualified_name.partition(".")
    return sql.Identifier(schema, name)


def _select_sql(columns: Sequence[str], table: str) -> sql.Composed:
    return sql.SQL("SELECT {columns}, ST_AsBinary(footprint) AS footprint FROM {table}").format(
        columns=sql.SQL(", ").join(sql.Identifier(column) for column in columns),
        table=_identifier(table),
    )


def _insert_sql(columns: Sequence[str], table: str) -> tuple[sql.Composed, str]:
    query = sql.SQL("INSERT INTO {table} ({columns}, footprint) VALUES %s").format(
        table=_identifier(table),
        columns=sql.SQL(", ").join(sql.Identifier(column) for column in columns),
    )
    template = (
        "("
        + ", ".join(f"%({column})s" for column in columns)
        + ", ST_GeomFromWKB(%(footprint)s, 4326))"
    )
    return query, template


class _PostgresLayerSession(LayerSessionProtocol):
    def __init__(
        self,
        cursor: psycopg2.extensions.cursor,
        metadata: models.EntitiesMetadata,
        chunk_size: int,
    ) -> None:
        self._cursor = cursor
        self._metadata = metadata
        self._chunk_size = chunk_size

    @property
    def _parts_table(self) -> str:
        return self._metadata.parts.qualified_name

    @property
    def _polygon_parts_table(self) -> str:
        return self._metadata.polygon_parts.qualified_name

    def truncate(self) -> None:
        self._cursor.execute(
            sql.SQL("TRUNCATE {parts}, {polygon_parts}").format(
                parts=_identifier(self._parts_table),
                polygon_parts=_identifier(self._polygon_parts_table),
            )
        )

    def insert_parts(self, payload: models.PolygonPartsPayload) -> int:
        columns = [c for c in COMMON_COLUMNS if c != "ingestion_date_utc"]
        query, template = _insert_sql(columns, self._parts_table)
        rows = [
            PostgresPartitionStore._part_data_to_row(payload, part_data)
            for part_data in payload.parts_data
        ]
        psycopg2.extras.execute_values(
            self._cursor,
            query,
            rows,
            template=template,
            page_size=self._chunk_size,
        )
        return len(rows)

    def unprocessed_parts(self) -> list[models.RawPart]:
        query = _select_sql(
            (*COMMON_COLUMNS, "insertion_order", "is_processed_part"),
            self._parts_table,
        ) + sql.SQL(" WHERE NOT is_processed_part ORDER BY insertion_order")
        self._cursor.execute(query)
        return [
            PostgresPartitionStore._part_from_row(cast(dict[str, object], row))
            for row in self._cursor.fetchall()
        ]

    def intersecting_partitions(self) -> list[models.Partition]:
        query = _select_sql(PARTITION_COLUMNS, self._polygon_parts_table) + sql.SQL(
            " pp WHERE EXISTS (SELECT 1 FROM {parts} u"
            " WHERE NOT u.is_processed_part"
            " AND ST_Intersects(pp.footprint, u.footprint))"
            " ORDER BY pp.insertion_order, pp.id"
        ).format(parts=_identifier(self._parts_table))
        self._cursor.execute(query)
        return [
            PostgresPartitionStore._partition_from_row(cast(dict[str, object], row))
            for row in self._cursor.fetchall()
        ]

    def apply(self, resolution: models.Resolution) -> None:
        if resolution.deleted:
            self._cursor.execute(
                sql.SQL("DELETE FROM {table} WHERE id = ANY(%s::uuid[])").format(
                    table=_identifier(self._polygon_parts_table)
                ),
                (resolution.deleted,),
            )
        if resolution.inserted:
            query, template = _insert_sql(
                PARTITION_COLUMNS,
                self._polygon_parts_table,
            )
            psycopg2.extras.execute_values(
                self._cursor,
                query,
                [
                    PostgresPartitionStore._partition_to_row(partition)
                    for partition in resolution.inserted
                ],
                template=template,
                page_size=self._chunk_size,
            )
        if resolution.processed:
            self._cursor.execute(
                sql.SQL(
                    "UPDATE {table} SET is_processed_part = true"
                    " WHERE id = ANY(%s::uuid[])"
                ).format(table=_identifier(self._parts_table)),
                (resolution.processed,),
            )


class PostgresPartitionStore(PartitionStoreProtocol):
    """PostgreSQL/PostGIS-backed partition store.

    Each layer is a pair of tables in the configured schema. Sessions run
    in one transaction holding a per-layer advisory lock, so concurrent
    ingestions of a layer serialize and a failure leaves no trace. The
    PostGIS extension and the schema are created on initialization.
    """

    def __init__(self, settings: config.Settings) -> None:
        """Initialize the store with database settings.

        Args:
            settings: Application settings containing database connection
                URL, schema and insert chunk size.
        """
        self.settings = settings
        self._ensure_schema()

    def _connection(self) -> psycopg2.extensions.connection:
        return psycopg2.connect(self.settings.database_url)

    def _ensure_schema(self) -> None:
        with contextlib.closing(self._connection()) as conn:
            with conn, conn.cursor() as cur:
                cur.execute("CREATE EXTENSION IF NOT EXISTS postgis;")
                cur.execute(
                    sql.SQL("CREATE SCHEMA IF NOT EXISTS {schema}").format(
                        schema=sql.Identifier(self.settings.db_schema)
                    )
                )

    @staticmethod
    def _tables_exist(
        cur: psycopg2.extensions.cursor,
        metadata: models.EntitiesMetadata,
    ) -> tuple[bool, bool]:
        cur.execute(
            "SELECT to_regclass(%s) IS NOT NULL AS parts,"
            " to_regclass(%s) IS NOT NULL AS polygon_parts",
            (metadata.parts.qualified_name, metadata.polygon_parts.qualified_name),
        )
        row = cast(dict[str, bool], cur.fetchone())
        return bool(row["parts"]), bool(row["polygon_parts"])

    @staticmethod
    def _create_tables(
        cur: psycopg2.extensions.cursor,
        metadata: models.EntitiesMetadata,
    ) -> None:
        cur.execute(
            sql.SQL(CREATE_PARTS_TABLE_SQL).format(
                table=_identifier(metadata.parts.qualified_name)
            )
        )
        cur.execute(
            sql.SQL(CREATE_POLYGON_PARTS_TABLE_SQL).format(
                table=_identifier(metadata.polygon_parts.qualified_name)
            )
        )

    def exists(self, metadata: models.EntitiesMetadata) -> bool:
        with contextlib.closing(self._connection()) as conn:
            with conn, conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                return all(self._tables_exist(cur, metadata))

    @contextlib.contextmanager
    def session(
        self,
        metadata: models.EntitiesMetadata,
        *,
        create: bool = False,
        timeout: float | None = None,
    ) -> Iterator[LayerSessionProtocol]:
        """Open a transaction on a layer, serialized by an advisory lock.

        Args:
            metadata: Names of the layer.
            create: Create the layer tables; they must not exist yet.
            timeout: Lock wait and statement timeout in seconds, None for no
                timeout.

        Raises:
            ConflictError: If ``create`` and a table of the layer exists.
            NotFoundError: If not ``create`` and a table is missing.
            TransactionFailure: If the database fails; nothing is committed.
        """
        try:
            with contextlib.closing(self._connection()) as conn:
                with conn, conn.cursor(
                    cursor_factory=psycopg2.extras.RealDictCursor
                ) as cur:
                    # The timeouts must be set before waiting on the lock.
                    if timeout is not None:
                        milliseconds = max(int(timeout * 1000), 1)
                        cur.execute("SET LOCAL lock_timeout = %s", (milliseconds,))
                        cur.execute(
                            "SET LOCAL statement_timeout = %s",
                            (milliseconds,),
                        )
                    cur.execute(
                        "SELECT pg_advisory_xact_lock(hashtext(%s))",
                        (metadata.polygon_parts.qualified_name,),
                    )
                    existing = self._tables_exist(cur, metadata)
                    if create:
                        if any(existing):
                            raise errors.ConflictError(
                                "Table with the name "
                                f"'{metadata.polygon_parts.qualified_name}'"
                                " already exists"
                            )
                        self._create_tables(cur, metadata)
                    elif not all(existing):
                        raise errors.NotFoundError(
                            "Table with the name "
                            f"'{metadata.polygon_parts.qualified_name}'"
                            " doesn't exist"
                        )
                    yield _PostgresLayerSession(
                        cur,
                        metadata,
                        self.settings.chunk_size,
                    )
        except psycopg2.Error as exc:
            raise errors.TransactionFailure(
                f"Polygon parts transaction failed: {exc}"
            ) from exc

    def partitions(
        self,
        metadata: models.EntitiesMetadata,
        footprint: BaseGeometry | None = None,
    ) -> list[models.Partition]:
        query = _select_sql(PARTITION_COLUMNS, metadata.polygon_parts.qualified_name)
        params: tuple[object, ...] = ()
        if footprint is not None:
            query += sql.SQL(
                " WHERE ST_Intersects(footprint, ST_GeomFromWKB(%s, 4326))"
            )
            params = (psycopg2.Binary(footprint.wkb),)
        query += sql.SQL(" ORDER BY insertion_order, id")
        with contextlib.closing(self._connection()) as conn:
            with conn, conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                if not self._tables_exist(cur, metadata)[1]:
                    raise errors.NotFoundError(
                        "Table with the name "
                        f"'{metadata.polygon_parts.qualified_name}' doesn't exist"
                    )
                cur.execute(query, params)
                return [
                    self._partition_from_row(cast(dict[str, object], row))
                    for row in cur.fetchall()
                ]

    def parts(self, metadata: models.EntitiesMetadata) -> list[models.RawPart]:
        query = _select_sql(
            (*COMMON_COLUMNS, "insertion_order", "is_processed_part"),
            metadata.parts.qualified_name,
        ) + sql.SQL(" ORDER BY insertion_order")
        with contextlib.closing(self._connection()) as conn:
            with conn, conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                if not self._tables_exist(cur, metadata)[0]:
                    raise errors.NotFoundError(
                        "Table with the name "
                        f"'{metadata.parts.qualified_name}' doesn't exist"
                    )
                cur.execute(query)
                return [
                    self._part_from_row(cast(dict[str, object], row))
                    for row in cur.fetchall()
                ]

    @staticmethod
    def _part_data_to_row(
        payload: models.PolygonPartsPayload,
        part_data: models.PartData,
    ) -> dict[str, object]:
        """Convert a submitted part to a parts table row dictionary.

        Args:
            payload: Ingestion payload with the layer-level metadata.
            part_data: The submitted part.

        Returns:
            Dictionary suitable for parameterized SQL insertion.
        """
        return {
            "id": str(uuid.uuid4()),
            "catalog_id": payload.catalog_id,
            "product_id": payload.product_id,
            "product_type": payload.product_type,
            "source_id": part_data.source_id,
            "source_name": part_data.source_name,
            "product_version": payload.product_version,
            "imaging_time_begin_utc": part_data.imaging_time_begin_utc,
            "imaging_time_end_utc": part_data.imaging_time_end_utc,
            "resolution_degree": part_data.resolution_degree,
            "resolution_meter": part_data.resolution_meter,
            "source_resolution_meter": part_data.source_resolution_meter,
            "horizontal_accuracy_ce90": part_data.horizontal_accuracy_ce90,
            "sensors": list(part_data.sensors),
            "countries": _list_or_none(part_data.countries),
            "cities": _list_or_none(part_data.cities),
            "description": part_data.description,
            "footprint": psycopg2.Binary(part_data.footprint.wkb),
        }

    @staticmethod
    def _partition_to_row(partition: models.Partition) -> dict[str, object]:
        """Convert a Partition to a polygon parts table row dictionary."""
        row: dict[str, object] = {
            column: getattr(partition, column) for column in PARTITION_COLUMNS
        }
        for column in ARRAY_COLUMNS:
            row[column] = _list_or_none(cast(tuple[str, ...] | None, row[column]))
        row["footprint"] = psycopg2.Binary(partition.footprint.wkb)
        return row

    @staticmethod
    def _record_values(row: dict[str, object]) -> dict[str, object]:
        values = dict(row)
        for column in NUMERIC_COLUMNS:
            values[column] = float(cast(decimal.Decimal, values[column]))
        for column in ARRAY_COLUMNS:
            value = values.get(column)
            values[column] = tuple(cast(list[str], value)) if value is not None else None
        for column in ("id", "catalog_id", "part_id"):
            if values.get(column) is not None:
                values[column] = str(values[column])
        values["insertion_order"] = int(cast(int, values["insertion_order"]))
        values["ingestion_date_utc"] = cast(datetime.datetime, values["ingestion_date_utc"])
        values["footprint"] = wkb.loads(bytes(cast(memoryview, values["footprint"])))
        return values

    @staticmethod
    def _part_from_row(row: dict[str, object]) -> models.RawPart:
        """Convert a parts table row to a RawPart."""
        values = PostgresPartitionStore._record_values(row)
        values["is_processed"] = bool(values.pop("is_processed_part"))
        return models.RawPart(**values)  # type: ignore[arg-type]

    @staticmethod
    def _partition_from_row(row: dict[str, object]) -> models.Partition:
        """Convert a polygon parts table row to a Partition."""
        return models.Partition(**PostgresPartitionStore._record_values(row))  # type: ignore[arg-type]


def _list_or_none(values: Sequence[str] | None) -> list[str] | None:
    return list(values) if values is not None else None


@functools.cache
def _in_memory_store() -> InMemoryPartitionStore:
    return InMemoryPartitionStore()


def get_partition_store(settings: config.Settings) -> PartitionStoreProtocol:
    """Factory function to create a partition store.

    Args:
        settings: Application settings selecting the backend.

    Returns:
        The process-wide InMemoryPartitionStore for the "memory" backend,
        a PostgresPartitionStore otherwise.
    """
    if settings.storage_backend == "memory":
        return _in_memory_store()
    return PostgresPartitionStore(settings)
