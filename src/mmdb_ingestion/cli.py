import argparse
import logging
from datetime import date
from typing import Any, Sequence

from mmdb_ingestion.config import LoadSpec, build_load_spec, load_spec_from_yaml, parse_column_allow_list
from mmdb_ingestion.exceptions import IngestionError
from mmdb_ingestion.orchestrator import GeoIPLoadOrchestrator

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    # Only flags given on the command line show up in the namespace, so they
    # can be layered over the config file and the LoadSpec defaults.
    parser = argparse.ArgumentParser(
        prog="mmdb-lakehouse",
        description="Load a MaxMind DB file into DuckDB/DuckLake as deduplicated network and value tables.",
        argument_default=argparse.SUPPRESS,
    )
    parser.add_argument("--config", help="YAML file with default values for the options below")
    parser.add_argument("--dsn", help="Store connection string (duckdb://... or ducklake://...)")
    parser.add_argument("--mmdb", dest="mmdb_path", help="MMDB file path")
    parser.add_argument("--name", help="Prefix of the created tables, views and function")
    parser.add_argument("--partition", type=date.fromisoformat, help="Partition date (YYYY-MM-DD), default today")
    parser.add_argument("--batch", dest="batch_size", type=int, help="Number of networks to insert at once")
    parser.add_argument(
        "--columns",
        type=parse_column_allow_list,
        help="Comma-separated flattened columns to keep, e.g. country_iso_code,city_names_en",
    )
    parser.add_argument(
        "--drop",
        action="store_true",
        help="Drop previous tables if they exist. Regardless of this flag, the current partition is always "
             "dropped to ensure idempotence.",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Reload the lookup structures to ensure the new data is used right after insertion",
    )
    parser.add_argument(
        "--test",
        action="store_true",
        help="Run a test query after insertion to ensure the lookup function works as expected",
    )
    parser.add_argument(
        "--ttl",
        type=int,
        help="Number of partitions (days) to keep. This is not updated if the tables already exist.",
    )
    parser.add_argument("--test-ip", dest="test_ip", help="Address used by the test query")
    return parser


def resolve_load_spec(argv: Sequence[str] | None = None) -> LoadSpec:
    args: dict[str, Any] = vars(build_parser().parse_args(argv))
    config_path = args.pop("config", None)

    values: dict[str, Any] = load_spec_from_yaml(config_path) if config_path else {}
    values.update(args)
    return build_load_spec(values)


def main(argv: Sequence[str] | None = None) -> int:
    try:
        spec = resolve_load_spec(argv)
        GeoIPLoadOrchestrator(spec).run()
    except IngestionError as e:
        logger.error("Load failed: %s", e)
        return 1
    return 0
