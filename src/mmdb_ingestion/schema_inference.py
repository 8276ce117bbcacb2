import logging
from typing import Any, Iterable, Mapping

import pyarrow as pa

from mmdb_core.settings import COL_NETWORK, COL_PARTITION, COL_POINTER
from mmdb_ingestion.domain import Column, ColumnKind, Schema, TypedValue, ValueKind
from mmdb_ingestion.exceptions import SchemaError
from mmdb_ingestion.flatten import flatten_record
from mmdb_ingestion.sql import sql_identifier_quote

logger = logging.getLogger(__name__)


VALUE_KIND_TO_COLUMN_KIND: dict[ValueKind, ColumnKind] = {
    ValueKind.BOOL: "Boolean",
    # Raw bytes land in a text column; invalid UTF-8 is backslash-escaped.
    ValueKind.BYTES: "String",
    ValueKind.TEXT: "String",
    ValueKind.UINT16: "UInt16",
    ValueKind.UINT32: "UInt32",
    ValueKind.INT32: "Int32",
    ValueKind.UINT64: "UInt64",
    ValueKind.UINT128: "UInt128",
    ValueKind.FLOAT32: "Float32",
    ValueKind.FLOAT64: "Float64",
}

COLUMN_KIND_TO_SQL_TYPE: dict[ColumnKind, str] = {
    "Boolean": "BOOLEAN",
    "String": "VARCHAR",
    "UInt16": "USMALLINT",
    "UInt32": "UINTEGER",
    "Int32": "INTEGER",
    "UInt64": "UBIGINT",
    "UInt128": "UHUGEINT",
    "Float32": "FLOAT",
    "Float64": "DOUBLE",
    "Date": "DATE",
}

COLUMN_KIND_TO_ARROW_TYPE: dict[ColumnKind, pa.DataType] = {
    "Boolean": pa.bool_(),
    "String": pa.string(),
    "UInt16": pa.uint16(),
    "UInt32": pa.uint32(),
    "Int32": pa.int32(),
    "UInt64": pa.uint64(),
    # Sent as decimal text, cast to UHUGEINT on insert
    "UInt128": pa.string(),
    "Float32": pa.float32(),
    "Float64": pa.float64(),
    "Date": pa.date32(),
}

NETWORK_COLUMN = Column(COL_NETWORK, "String")
POINTER_COLUMN = Column(COL_POINTER, "UInt64")
PARTITION_COLUMN = Column(COL_PARTITION, "Date")


def column_kind_for(path: str, value: Any) -> ColumnKind:
    if isinstance(value, TypedValue) and value.kind in VALUE_KIND_TO_COLUMN_KIND:
        return VALUE_KIND_TO_COLUMN_KIND[value.kind]
    raise SchemaError(path, f"Unsupported type {type(value).__name__}")


def infer_schema(
    sample: Mapping[str, Any],
    key_column: Column,
    allow_list: Iterable[str] | None = None,
) -> Schema:
    """
    Infer a table schema from one sample record.

    The schema is: key column, one column per flattened leaf (sorted path
    order), then the partition column. A non-empty allow_list keeps only the
    listed paths. Any leaf with an unsupported kind aborts inference.
    """
    allowed = set(allow_list or ())

    columns: list[Column] = [key_column]
    for path, value in flatten_record(sample):
        if allowed and path not in allowed:
            continue
        columns.append(Column(path, column_kind_for(path, value)))
    columns.append(PARTITION_COLUMN)

    if allowed:
        missing = sorted(allowed - {c.name for c in columns})
        if missing:
            logger.warning("Allow-listed columns not present in the sample record: %s", missing)

    return Schema(tuple(columns))


def network_table_schema() -> Schema:
    return Schema((NETWORK_COLUMN, POINTER_COLUMN, PARTITION_COLUMN))


def schema_to_sql(schema: Schema) -> str:
    return ", ".join(
        f"{sql_identifier_quote(column.name)} {COLUMN_KIND_TO_SQL_TYPE[column.kind]}" for column in schema
    )


def schema_to_arrow(schema: Schema) -> pa.Schema:
    return pa.schema(
        [pa.field(column.name, COLUMN_KIND_TO_ARROW_TYPE[column.kind], nullable=True) for column in schema]
    )
