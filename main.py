import sys
from logging.config import dictConfig

from mmdb_core.settings import LOGGING_CONFIG
from mmdb_ingestion.cli import main

dictConfig(LOGGING_CONFIG)

if __name__ == "__main__":
    sys.exit(main())
