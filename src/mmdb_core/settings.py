import os
from typing import Any
from pathlib import Path

PROJECT_NAME = "mmdb_lakehouse"

# Paths
PROJECT_ROOT_DIR = Path(__file__).parent.parent.parent.resolve()

DUCKLAKE_DATA_DIR = PROJECT_ROOT_DIR / "data"
DUCKLAKE_STORAGE_DIR = DUCKLAKE_DATA_DIR / "storage"

DUCKLAKE_CATALOG_NAME = "geoip_catalog"
DUCKLAKE_CATALOG_DB_PATH = DUCKLAKE_DATA_DIR / "catalog.ducklake"

LOG_FOLDER = PROJECT_ROOT_DIR / "logs"

os.makedirs(LOG_FOLDER, exist_ok=True)

# Defaults for a load run
DEFAULT_DSN = f"ducklake://{DUCKLAKE_CATALOG_DB_PATH}?data_path={DUCKLAKE_STORAGE_DIR}&catalog={DUCKLAKE_CATALOG_NAME}"
DEFAULT_MMDB_PATH = "example.mmdb"
DEFAULT_NAME = "example_mmdb"
DEFAULT_BATCH_SIZE = 1_000_000
DEFAULT_TTL_PARTITIONS = 30
DEFAULT_TEST_IP = "1.1.1.1"

# Reserved columns
COL_NETWORK = "network"
COL_POINTER = "pointer"
COL_PARTITION = "partition"

# Object names derived from the naming prefix
NETWORKS_SUFFIX = "_networks"
VALUES_SUFFIX = "_values"
HISTORY_SUFFIX = "_history"
TABLE_RETENTION = "_table_retention"

# Lookup structures reload once their content is older than the max lifetime
DICTIONARY_LIFETIME_MIN_SECONDS = 0
DICTIONARY_LIFETIME_MAX_SECONDS = 3600


# Logging Configuration

LOGGING_CONFIG: dict[str, Any] = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
            "level": "INFO",
        },
        "rotating_file": {
            "class": "logging.handlers.RotatingFileHandler",
            "formatter": "standard",
            "level": "DEBUG",
            "filename": str(LOG_FOLDER / "ingestion.log"),
            "maxBytes": 10485760,  # 10MB
            "backupCount": 5,
            "encoding": "utf8",
        },
    },
    "loggers": {
        "": {  # root logger
            "handlers": ["console", "rotating_file"],
            "level": "DEBUG",
            "propagate": True
        },
    }

}
