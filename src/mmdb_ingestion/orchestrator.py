from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any

from mmdb_ingestion.config import LoadSpec
from mmdb_ingestion.dictionaries import FlatDictionary, IPTrieDictionary
from mmdb_ingestion.domain import PipelineResult, RunContext, Schema
from mmdb_ingestion.flatten import flatten_to_dict
from mmdb_ingestion.lake_store import GeoLakeStore, parse_connection_string
from mmdb_ingestion.lookup_function import GeoLookupFunction
from mmdb_ingestion.mmdb_source import MMDBSource
from mmdb_ingestion.pipeline import BatchPipeline, PipelineConfig
from mmdb_ingestion.schema_inference import POINTER_COLUMN, infer_schema, network_table_schema, schema_to_sql

logger = logging.getLogger(__name__)

# The first record of the data section is the schema sample
SAMPLE_RECORD_OFFSET = 0


@dataclass(frozen=True)
class LoadReport:
    value_schema: Schema
    pipeline: PipelineResult
    test_result: str | None = None


def build_lookup_function(store: GeoLakeStore, ctx: RunContext) -> GeoLookupFunction:
    return GeoLookupFunction(
        ctx.function_name,
        IPTrieDictionary(store, ctx.networks_dictionary),
        FlatDictionary(store, ctx.values_dictionary),
    )


class GeoIPLoadOrchestrator:
    """
    Coordinates: infer schema -> prepare tables -> stream networks -> publish lookups.

    Re-running with the same partition is idempotent: tables and views are
    created only if missing and the partition is dropped before insertion.
    Any failure aborts the run; recovery is a full re-run.
    """

    def __init__(self, spec: LoadSpec, *, today: date | None = None):
        self.spec = spec
        self.today = today or date.today()

    def run(self) -> LoadReport:
        spec = self.spec
        ctx = RunContext(name=spec.name, partition=spec.partition)

        with GeoLakeStore(parse_connection_string(spec.dsn)) as store, MMDBSource(spec.mmdb_path) as source:
            network_schema = network_table_schema()
            value_schema = infer_schema(source.decode(SAMPLE_RECORD_OFFSET), POINTER_COLUMN, spec.columns)
            logger.info("Networks schema: %s", schema_to_sql(network_schema))
            logger.info("Values schema: %s", schema_to_sql(value_schema))

            lookup = build_lookup_function(store, ctx)

            if spec.drop:
                self._drop_objects(store, ctx)
            self._create_objects(store, ctx, network_schema, value_schema)

            with store.transaction():
                store.drop_partition(ctx.networks_table, ctx.partition)
                store.drop_partition(ctx.values_table, ctx.partition)

            pipeline = BatchPipeline(
                source=source,
                target=store,
                network_schema=network_schema,
                value_schema=value_schema,
                config=PipelineConfig(
                    networks_table=ctx.networks_table,
                    values_table=ctx.values_table,
                    partition=ctx.partition,
                    batch_size=spec.batch_size,
                ),
            )
            result = pipeline.run()
            logger.info(
                "Loaded partition %s: %s networks, %s distinct values",
                ctx.partition,
                result.networks_total,
                result.values_total,
            )

            store.apply_retention(ctx.networks_table, self.today)
            store.apply_retention(ctx.values_table, self.today)

            lookup.register(store)
            if spec.reload:
                logger.info("Reloading %s and %s", ctx.networks_dictionary, ctx.values_dictionary)
                lookup.reload()

            test_result = None
            if spec.test:
                test_result = self._run_test_query(store, source, lookup, value_schema)

        logger.info("Ingestion run complete.")
        return LoadReport(value_schema=value_schema, pipeline=result, test_result=test_result)

    def _drop_objects(self, store: GeoLakeStore, ctx: RunContext) -> None:
        store.drop_function(ctx.function_name)
        store.drop_view(ctx.networks_dictionary)
        store.drop_view(ctx.values_dictionary)
        store.drop_table(ctx.networks_table)
        store.drop_table(ctx.values_table)

    def _create_objects(self, store: GeoLakeStore, ctx: RunContext, network_schema: Schema, value_schema: Schema) -> None:
        store.create_partitioned_table(ctx.networks_table, network_schema, self.spec.ttl)
        store.create_partitioned_table(ctx.values_table, value_schema, self.spec.ttl)
        store.create_latest_partition_view(ctx.networks_dictionary, ctx.networks_table)
        store.create_latest_partition_view(ctx.values_dictionary, ctx.values_table)

    def _run_test_query(
        self,
        store: GeoLakeStore,
        source: MMDBSource,
        lookup: GeoLookupFunction,
        value_schema: Schema,
    ) -> str | None:
        if not value_schema.value_columns:
            logger.warning("Values table has no attribute columns; skipping test query")
            return None

        attribute = value_schema.value_columns[0].name
        ip = self.spec.test_ip
        query = f"SELECT {lookup.name}(?, ?)"

        logger.info("Running test query: %s with (%s, %s)", query, attribute, ip)
        logger.info("This may take some time as the dictionary gets loaded in memory")
        lookup.refresh_if_stale()
        value = store.query_scalar(query, [attribute, ip])
        logger.info("Test query result: %s", value)

        expected = self._reference_value(source, attribute, ip)
        if expected != value:
            logger.warning("Test query result %r differs from the source database value %r", value, expected)
        return value

    @staticmethod
    def _reference_value(source: MMDBSource, attribute: str, ip: str) -> Any:
        record = source.reference_lookup(ip)
        if record is None:
            return None
        value = flatten_to_dict(record).get(attribute)
        if value is None:
            return None
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="backslashreplace")
        return str(value)
