import ipaddress
import logging
import re
from datetime import date
from pathlib import Path
from typing import Any, Self

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from mmdb_core.settings import (
    COL_NETWORK,
    COL_PARTITION,
    COL_POINTER,
    DEFAULT_BATCH_SIZE,
    DEFAULT_DSN,
    DEFAULT_MMDB_PATH,
    DEFAULT_NAME,
    DEFAULT_TEST_IP,
    DEFAULT_TTL_PARTITIONS,
)
from mmdb_ingestion.exceptions import ConfigError

logger = logging.getLogger(__name__)


class StrictBaseModel(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)


class LoadSpec(StrictBaseModel):
    dsn: str = DEFAULT_DSN
    mmdb_path: str = DEFAULT_MMDB_PATH
    # Prefix for every created object: <name>_networks_history, <name>_values, <name>(), ...
    name: str = DEFAULT_NAME
    partition: date = Field(default_factory=date.today)
    batch_size: int = DEFAULT_BATCH_SIZE
    # Flattened column names to keep; empty keeps every column
    columns: list[str] = Field(default_factory=lambda: list())

    # Drop previous tables if they exist. The current partition is always dropped.
    drop: bool = False
    # Reload the lookup structures right after insertion
    reload: bool = False
    # Run a test query after insertion
    test: bool = False
    # Number of partitions (days) to keep. Not updated if the tables already exist.
    ttl: int = DEFAULT_TTL_PARTITIONS
    test_ip: str = DEFAULT_TEST_IP

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        if not re.match(r"^[a-zA-Z_][a-zA-Z0-9_]*$", value):
            raise ValueError(f"Invalid name '{value}'. Must start with a letter or underscore, "
                             "followed by letters, digits, or underscores.")
        return value

    @field_validator("test_ip")
    @classmethod
    def validate_test_ip(cls, value: str) -> str:
        ipaddress.ip_address(value)
        return value

    @model_validator(mode="after")
    def validate_options(self) -> Self:
        if self.batch_size <= 0:
            raise ValueError("batch_size must be positive")

        if self.ttl <= 0:
            raise ValueError("ttl must be at least one partition")

        if duplicates := {c for c in self.columns if self.columns.count(c) > 1}:
            raise ValueError(f"Duplicate columns in allow-list: {sorted(duplicates)}")

        if reserved := {COL_NETWORK, COL_POINTER, COL_PARTITION} & set(self.columns):
            raise ValueError(f"Reserved column names in allow-list: {sorted(reserved)}")

        return self


def parse_column_allow_list(value: str) -> list[str]:
    """'a, b,,c' -> ['a', 'b', 'c']"""
    return [column.strip() for column in value.split(",") if column.strip()]


def load_spec_from_yaml(file_path: str | Path) -> dict[str, Any]:
    """Read a YAML config file into raw LoadSpec fields (validated later, merged with CLI flags)."""
    try:
        with open(file_path, "r") as file:
            data = yaml.safe_load(file)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Error loading config from {file_path}: {e}") from e

    if data is None:
        logger.warning("Config file %s is empty", file_path)
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {file_path} must contain a mapping, got {type(data).__name__}")

    if isinstance(data.get("columns"), str):
        data["columns"] = parse_column_allow_list(data["columns"])
    if isinstance(data.get("partition"), str):
        try:
            data["partition"] = date.fromisoformat(data["partition"])
        except ValueError as e:
            raise ConfigError(f"Invalid partition date in {file_path}: {e}") from e
    return data


def build_load_spec(values: dict[str, Any]) -> LoadSpec:
    try:
        return LoadSpec.model_validate(values)
    except ValidationError as e:
        raise ConfigError(f"Invalid load configuration: {e}") from e
