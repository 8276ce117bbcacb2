from __future__ import annotations

from datetime import date
from pathlib import Path
from typing import Any

import pytest

from mmdb_builder import build_mmdb, f64, text, u16, u32

PARTITION = date(2024, 5, 1)


def city_record(iso_code: str, name: str, asn: int, latitude: float, longitude: float) -> dict[str, Any]:
    return {
        "location": {
            "longitude": f64(longitude),
            "latitude": f64(latitude),
            "accuracy_radius": u16(1000),
        },
        "country": {
            "names": {"en": text(name)},
            "iso_code": text(iso_code),
        },
        "asn": u32(asn),
    }


AUSTRALIA = city_record("AU", "Australia", 13335, -33.494, 143.2104)
UNITED_STATES = city_record("US", "United States", 15169, 37.751, -97.822)
SWITZERLAND = city_record("CH", "Switzerland", 19281, 47.1449, 8.1551)

# Enumerated in this order; 5 networks sharing 3 distinct records
NETWORKS = [
    ("1.0.0.0/24", AUSTRALIA),
    ("1.1.1.0/24", AUSTRALIA),
    ("8.8.8.0/24", UNITED_STATES),
    ("9.9.9.0/24", SWITZERLAND),
    ("9.9.10.0/24", UNITED_STATES),
]


@pytest.fixture
def ipv4_mmdb(tmp_path: Path) -> Path:
    return build_mmdb(tmp_path / "ipv4.mmdb", NETWORKS)


@pytest.fixture
def ipv6_mmdb(tmp_path: Path) -> Path:
    return build_mmdb(
        tmp_path / "ipv6.mmdb",
        NETWORKS + [("2001:db8::/32", SWITZERLAND)],
        ip_version=6,
        record_size=28,
        ipv4_aliases=("::ffff:0:0/96",),
    )


@pytest.fixture
def duckdb_dsn(tmp_path: Path) -> str:
    return f"duckdb://{tmp_path / 'geo.duckdb'}"
