from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Literal, Union

from mmdb_core.settings import HISTORY_SUFFIX, NETWORKS_SUFFIX, VALUES_SUFFIX


class ValueKind(Enum):
    """Leaf value kinds a MaxMind DB data section can hold."""
    BOOL = "bool"
    BYTES = "bytes"
    TEXT = "utf8_string"
    UINT16 = "uint16"
    UINT32 = "uint32"
    INT32 = "int32"
    UINT64 = "uint64"
    UINT128 = "uint128"
    FLOAT32 = "float"
    FLOAT64 = "double"


@dataclass(frozen=True)
class TypedValue:
    """
    A decoded leaf together with the wire type it was stored as.

    Python collapses uint16..uint128 into int and float/double into float, so
    the kind is kept alongside the value for schema inference.
    """
    kind: ValueKind
    value: Any

    def to_python(self) -> Any:
        if self.kind is ValueKind.BYTES:
            return self.value.decode("utf-8", errors="backslashreplace")
        if self.kind is ValueKind.UINT128:
            # No Arrow type holds 128-bit unsigned ints; the store casts it back.
            return str(self.value)
        return self.value


# Arrays decode to plain lists and are not a supported leaf kind.
AttributeValue = Union[TypedValue, "AttributeRecord", list[Any]]
AttributeRecord = dict[str, AttributeValue]
FlatRecord = list[tuple[str, Any]]

ColumnKind = Literal[
    "Boolean",
    "String",
    "UInt16",
    "UInt32",
    "Int32",
    "UInt64",
    "UInt128",
    "Float32",
    "Float64",
    "Date",
]


@dataclass(frozen=True)
class Column:
    name: str
    kind: ColumnKind


@dataclass(frozen=True)
class Schema:
    """
    Ordered, name-unique table columns.

    columns[0]:    the key column (network prefix or pointer)
    columns[1:-1]: value columns
    columns[-1]:   the partition column
    """
    columns: tuple[Column, ...]

    def __post_init__(self) -> None:
        names = [c.name for c in self.columns]
        if len(self.columns) < 2:
            raise ValueError("A schema needs at least a key and a partition column")
        if duplicates := sorted({n for n in names if names.count(n) > 1}):
            raise ValueError(f"Duplicate column names in schema: {duplicates}")

    def __len__(self) -> int:
        return len(self.columns)

    def __iter__(self):
        return iter(self.columns)

    @property
    def key_column(self) -> Column:
        return self.columns[0]

    @property
    def value_columns(self) -> tuple[Column, ...]:
        return self.columns[1:-1]

    @property
    def partition_column(self) -> Column:
        return self.columns[-1]

    @property
    def names(self) -> list[str]:
        return [c.name for c in self.columns]


@dataclass(frozen=True)
class NetworkEntry:
    """One enumerated network and the data-section offset of its record."""
    network: str
    offset: int


@dataclass(frozen=True)
class RunContext:
    """Per-run context."""
    name: str
    partition: date

    @property
    def networks_table(self) -> str:
        return f"{self.name}{NETWORKS_SUFFIX}{HISTORY_SUFFIX}"

    @property
    def values_table(self) -> str:
        return f"{self.name}{VALUES_SUFFIX}{HISTORY_SUFFIX}"

    @property
    def networks_dictionary(self) -> str:
        return f"{self.name}{NETWORKS_SUFFIX}"

    @property
    def values_dictionary(self) -> str:
        return f"{self.name}{VALUES_SUFFIX}"

    @property
    def function_name(self) -> str:
        return self.name


@dataclass(frozen=True)
class PipelineResult:
    """Totals reported once the batch pipeline has drained the source."""
    networks_total: int
    values_total: int
    flushes: int
