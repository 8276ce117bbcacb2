import logging
import os
import re
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Sequence
from urllib.parse import parse_qs, unquote, urlsplit

import duckdb
import pyarrow as pa

from mmdb_core.settings import DUCKLAKE_CATALOG_NAME
from mmdb_ingestion import sql
from mmdb_ingestion.domain import Schema
from mmdb_ingestion.exceptions import StorageError, StoreConnectionError
from mmdb_ingestion.schema_inference import COLUMN_KIND_TO_SQL_TYPE, schema_to_arrow, schema_to_sql

logger = logging.getLogger(__name__)

IDENTIFIER_PATTERN = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class StoreSettings:
    duckdb_path: str = ":memory:"
    ducklake_attach_sql: str | None = None
    catalog: str | None = None
    data_path: str | None = None

    @property
    def is_ducklake(self) -> bool:
        return self.ducklake_attach_sql is not None


def parse_connection_string(dsn: str) -> StoreSettings:
    """
    Supported forms:
      duckdb://                      in-memory DuckDB
      duckdb:///path/to/file.duckdb  DuckDB database file
      ducklake:///path/to/catalog.ducklake?data_path=/dir&catalog=name
    """
    parts = urlsplit(dsn)
    location = unquote(parts.netloc + parts.path)
    options = parse_qs(parts.query)

    if parts.scheme == "duckdb":
        if options:
            raise StoreConnectionError(f"duckdb:// connection strings take no options: {dsn}")
        return StoreSettings(duckdb_path=location or ":memory:")

    if parts.scheme == "ducklake":
        if not location:
            raise StoreConnectionError(f"Missing DuckLake catalog path in connection string: {dsn}")
        unknown = set(options) - {"data_path", "catalog"}
        if unknown:
            raise StoreConnectionError(f"Unknown DuckLake options {sorted(unknown)} in connection string: {dsn}")

        catalog = options.get("catalog", [DUCKLAKE_CATALOG_NAME])[0]
        if not IDENTIFIER_PATTERN.match(catalog):
            raise StoreConnectionError(f"Invalid DuckLake catalog name {catalog!r}")

        data_path = options["data_path"][0] if "data_path" in options else None
        attach_options = ["TYPE DUCKLAKE"]
        if data_path:
            attach_options.append(f"DATA_PATH {sql.sql_quote(data_path)}")
        attach_sql = f"ATTACH {sql.sql_quote(location)} AS {catalog} ({', '.join(attach_options)})"
        return StoreSettings(ducklake_attach_sql=attach_sql, catalog=catalog, data_path=data_path)

    raise StoreConnectionError(f"Unsupported connection string scheme {parts.scheme!r}: {dsn}")


class ArrowRowBatch:
    """
    Rows staged for one INSERT into one table.

    Rows are converted into a pyarrow Table typed from the table schema and
    inserted in one statement. A batch is sent at most once.
    """

    def __init__(self, store: "GeoLakeStore", table_name: str, schema: Schema):
        self._store = store
        self._table_name = table_name
        self._schema = schema
        self._arrow_schema = schema_to_arrow(schema)
        self._rows: list[tuple[Any, ...]] = []
        self._sent = False

    def __len__(self) -> int:
        return len(self._rows)

    @property
    def table_name(self) -> str:
        return self._table_name

    def append(self, row: Sequence[Any]) -> None:
        if self._sent:
            raise StorageError(f"Batch for {self._table_name} has already been sent")
        if len(row) != len(self._schema):
            raise StorageError(
                f"Expected {len(self._schema)} values for {self._table_name}, got {len(row)}"
            )
        self._rows.append(tuple(row))

    def send(self) -> int:
        if self._sent:
            raise StorageError(f"Batch for {self._table_name} has already been sent")
        self._sent = True

        row_count = len(self._rows)
        if row_count == 0:
            return 0

        try:
            columns = list(zip(*self._rows))
            arrays = [pa.array(values, type=field.type) for values, field in zip(columns, self._arrow_schema)]
            table = pa.Table.from_arrays(arrays, schema=self._arrow_schema)
        except (pa.ArrowException, OverflowError, TypeError, ValueError) as e:
            raise StorageError(f"Cannot convert batch for {self._table_name} to Arrow: {e}") from e

        self._store.insert_arrow(self._table_name, self._schema, table)
        self._rows = []
        return row_count


class GeoLakeStore:
    """
    DuckDB (optionally DuckLake) store for the network and value tables.

    Besides the data tables the store keeps:
      _table_retention   TTL (in partitions) recorded when a table is created
    """

    BATCH_RELATION = "__batch_rows"

    def __init__(self, settings: StoreSettings):
        self._settings = settings
        self._connection: duckdb.DuckDBPyConnection | None = None
        self._functions: set[str] = set()

    def __enter__(self) -> "GeoLakeStore":
        if self._connection is not None:
            raise RuntimeError("Store connection already open")

        settings = self._settings
        try:
            if settings.data_path:
                os.makedirs(settings.data_path, exist_ok=True)
            if settings.duckdb_path != ":memory:":
                Path(settings.duckdb_path).parent.mkdir(parents=True, exist_ok=True)

            conn = duckdb.connect(settings.duckdb_path)
            if settings.ducklake_attach_sql:
                conn.execute(settings.ducklake_attach_sql)
                conn.execute(f"USE {settings.catalog}")
        except (duckdb.Error, OSError) as e:
            raise StoreConnectionError(f"Cannot open store: {e}") from e

        self._connection = conn
        self._bootstrap()

        logger.debug("Store connected. duckdb=%s ducklake=%s", settings.duckdb_path, settings.is_ducklake)
        return self

    def __exit__(self, exc_type, exc_value, tb) -> None:
        if self._connection is None:
            return
        try:
            self._connection.close()
        finally:
            self._connection = None
            self._functions.clear()

    def _require_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            raise RuntimeError("Store is not connected; use it as a context manager")
        return self._connection

    @property
    def is_ducklake(self) -> bool:
        return self._settings.is_ducklake

    # ----------------------------
    # Statement execution
    # ----------------------------
    def execute(self, statement: str, params: Sequence[Any] | None = None) -> None:
        conn = self._require_connection()
        try:
            conn.execute(statement, params)
        except duckdb.Error as e:
            raise StorageError(f"Statement failed: {e}\n{statement}") from e

    def query(self, statement: str, params: Sequence[Any] | None = None) -> tuple[list[str], list[tuple[Any, ...]]]:
        conn = self._require_connection()
        try:
            cursor = conn.execute(statement, params)
            columns = [d[0] for d in cursor.description]
            return columns, cursor.fetchall()
        except duckdb.Error as e:
            raise StorageError(f"Query failed: {e}\n{statement}") from e

    def query_scalar(self, statement: str, params: Sequence[Any] | None = None) -> Any:
        _, rows = self.query(statement, params)
        if not rows:
            return None
        return rows[0][0]

    @contextmanager
    def transaction(self):
        self.execute("BEGIN TRANSACTION")
        try:
            yield self
        except Exception:
            self.execute("ROLLBACK")
            raise
        else:
            self.execute("COMMIT")

    # ----------------------------
    # Batches and functions
    # ----------------------------
    def prepare_batch(self, table_name: str, schema: Schema) -> ArrowRowBatch:
        self._require_connection()
        return ArrowRowBatch(self, table_name, schema)

    def insert_arrow(self, table_name: str, schema: Schema, table: pa.Table) -> None:
        conn = self._require_connection()
        casts = [(column.name, COLUMN_KIND_TO_SQL_TYPE[column.kind]) for column in schema]
        statement = sql.insert_batch_sql(table_name, self.BATCH_RELATION, casts)
        try:
            conn.register(self.BATCH_RELATION, table)
            try:
                conn.execute(statement)
            finally:
                conn.unregister(self.BATCH_RELATION)
        except duckdb.Error as e:
            raise StorageError(f"Batch insert into {table_name} failed: {e}") from e

    def register_function(
        self,
        name: str,
        function: Callable[..., Any],
        parameters: list[Any],
        return_type: Any,
    ) -> None:
        conn = self._require_connection()
        try:
            if name in self._functions:
                conn.remove_function(name)
                self._functions.discard(name)
            # NULL inputs reach the function and None results become NULL
            conn.create_function(name, function, parameters, return_type, null_handling="special")
        except duckdb.Error as e:
            raise StorageError(f"Cannot register function {name}: {e}") from e
        self._functions.add(name)
        logger.info("Registered function %s", name)

    def drop_function(self, name: str) -> None:
        if name not in self._functions:
            return
        conn = self._require_connection()
        logger.info("Dropping function %s", name)
        try:
            conn.remove_function(name)
        except duckdb.Error as e:
            raise StorageError(f"Cannot drop function {name}: {e}") from e
        self._functions.discard(name)

    # ----------------------------
    # DDL
    # ----------------------------
    def table_exists(self, name: str) -> bool:
        return self.query_scalar(sql.table_exists_sql(), [name]) is not None

    def create_partitioned_table(self, name: str, schema: Schema, ttl: int) -> None:
        """
        Create a table partitioned by date unless it already exists.

        The TTL is recorded with the table on creation only; an existing
        table keeps the TTL it was created with.
        """
        if self.table_exists(name):
            logger.info("Table %s already exists", name)
        else:
            logger.info("Creating table %s", name)
            self.execute(sql.create_table_sql(name, schema_to_sql(schema)))
            if self.is_ducklake:
                self.execute(sql.set_partitioned_by_sql(name))

        self.execute(sql.record_retention_sql(), [name, ttl, utc_now_naive(), name])

    def drop_table(self, name: str) -> None:
        logger.info("Dropping table %s", name)
        self.execute(sql.drop_table_sql(name))
        self.execute(sql.delete_retention_sql(), [name])

    def create_latest_partition_view(self, name: str, source_table: str) -> None:
        logger.info("Creating view %s over the latest partition of %s", name, source_table)
        self.execute(sql.create_latest_partition_view_sql(name, source_table))

    def drop_view(self, name: str) -> None:
        logger.info("Dropping view %s", name)
        self.execute(sql.drop_view_sql(name))

    def drop_partition(self, name: str, partition: date) -> None:
        logger.info("Dropping partition %s of %s", partition, name)
        self.execute(sql.drop_partition_sql(name), [partition])

    def apply_retention(self, name: str, as_of: date) -> date | None:
        """Delete partitions that outlived the table's TTL; returns the cutoff used."""
        ttl = self.query_scalar(sql.select_retention_sql(), [name])
        if ttl is None:
            return None
        cutoff = as_of - timedelta(days=int(ttl))
        logger.info("Expiring partitions of %s up to %s (ttl=%s)", name, cutoff, ttl)
        self.execute(sql.expire_partitions_sql(name), [cutoff])
        return cutoff

    def _bootstrap(self) -> None:
        self.execute(sql.create_retention_table_sql())
