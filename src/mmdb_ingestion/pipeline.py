from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Hashable, Iterator, Mapping, Protocol, Sequence

from mmdb_ingestion.domain import NetworkEntry, PipelineResult, Schema, TypedValue
from mmdb_ingestion.exceptions import ProjectionError
from mmdb_ingestion.flatten import flatten_to_dict
from mmdb_ingestion.pointer_index import PointerIndex

logger = logging.getLogger(__name__)


class NetworkEnumeration(Protocol):
    def __iter__(self) -> Iterator[NetworkEntry]:
        ...

    def check(self) -> None:
        ...


class NetworkSource(Protocol):
    def networks(self, *, skip_aliases: bool = True) -> NetworkEnumeration:
        ...

    def decode(self, offset: Hashable) -> Mapping[str, Any]:
        ...


class RowBatch(Protocol):
    def __len__(self) -> int:
        ...

    def append(self, row: Sequence[Any]) -> None:
        ...

    def send(self) -> int:
        ...


class BatchTarget(Protocol):
    def prepare_batch(self, table_name: str, schema: Schema) -> RowBatch:
        ...


@dataclass(frozen=True)
class PipelineConfig:
    networks_table: str
    values_table: str
    partition: date
    batch_size: int = 1_000_000

    def __post_init__(self) -> None:
        if self.batch_size <= 0:
            raise ValueError("batch_size must be positive")


def project_record(record: Mapping[str, Any], schema: Schema, key: Any, partition: date) -> tuple[Any, ...]:
    """
    Build a value-table row: (key, <value columns in schema order>, partition).

    Every value column must exist in the flattened record.
    """
    flattened = flatten_to_dict(record)
    values: list[Any] = [key]
    for column in schema.value_columns:
        if column.name not in flattened:
            raise ProjectionError(column.name, "Record has no value for schema column")
        value = flattened[column.name]
        values.append(value.to_python() if isinstance(value, TypedValue) else value)
    values.append(partition)
    return tuple(values)


class BatchPipeline:
    """
    Streams every network of the source into two batched tables.

    networks table: (network, pointer, partition), one row per network
    values table:   (pointer, <attributes>, partition), one row per distinct record

    Both batches are flushed every `batch_size` networks and once more at the end.
    """

    def __init__(
        self,
        *,
        source: NetworkSource,
        target: BatchTarget,
        network_schema: Schema,
        value_schema: Schema,
        config: PipelineConfig,
    ):
        self.source = source
        self.target = target
        self.network_schema = network_schema
        self.value_schema = value_schema
        self.config = config

    def run(self) -> PipelineResult:
        config = self.config
        index = PointerIndex()

        network_batch, value_batch = self._new_batches()
        networks_total = 0
        values_total = 0
        flushes = 0

        cursor = self.source.networks(skip_aliases=True)
        for entry in cursor:
            pointer, is_new = index.resolve(entry.offset)

            if is_new:
                record = self.source.decode(entry.offset)
                value_batch.append(project_record(record, self.value_schema, pointer, config.partition))
                values_total += 1

            network_batch.append((entry.network, pointer, config.partition))
            networks_total += 1

            if networks_total % config.batch_size == 0:
                self._flush(network_batch, value_batch, networks_total, values_total)
                flushes += 1
                network_batch, value_batch = self._new_batches()

        # Cursor errors are only reported once iteration is over
        cursor.check()

        self._flush(network_batch, value_batch, networks_total, values_total)
        flushes += 1

        return PipelineResult(networks_total=networks_total, values_total=values_total, flushes=flushes)

    def _new_batches(self) -> tuple[RowBatch, RowBatch]:
        return (
            self.target.prepare_batch(self.config.networks_table, self.network_schema),
            self.target.prepare_batch(self.config.values_table, self.value_schema),
        )

    def _flush(self, network_batch: RowBatch, value_batch: RowBatch, networks_total: int, values_total: int) -> None:
        network_batch.send()
        value_batch.send()
        logger.info("Inserted %s networks and %s values", networks_total, values_total)
