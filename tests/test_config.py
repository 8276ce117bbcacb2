from datetime import date
from pathlib import Path

import pytest

from mmdb_ingestion import cli
from mmdb_ingestion.config import LoadSpec, build_load_spec, load_spec_from_yaml, parse_column_allow_list
from mmdb_ingestion.exceptions import ConfigError


def write_config(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "load.yaml"
    path.write_text(text)
    return path


def test_defaults():
    spec = LoadSpec()

    assert spec.name == "example_mmdb"
    assert spec.batch_size == 1_000_000
    assert spec.ttl == 30
    assert spec.columns == []
    assert spec.partition == date.today()
    assert not (spec.drop or spec.reload or spec.test)


@pytest.mark.parametrize(
    "values",
    [
        {"name": "1geo"},
        {"name": "geo-ip"},
        {"batch_size": 0},
        {"ttl": 0},
        {"columns": ["asn", "asn"]},
        {"columns": ["pointer"]},
        {"test_ip": "999.1.1.1"},
        {"unknown_option": True},
        {"batch_size": "100"},
    ],
)
def test_invalid_values_are_config_errors(values):
    with pytest.raises(ConfigError):
        build_load_spec(values)


def test_parse_column_allow_list():
    assert parse_column_allow_list(" country_iso_code, ,city_names_en,") == ["country_iso_code", "city_names_en"]
    assert parse_column_allow_list("") == []


def test_load_spec_from_yaml(tmp_path: Path):
    path = write_config(
        tmp_path,
        "name: geoip\n"
        "mmdb_path: /data/GeoLite2-City.mmdb\n"
        "partition: '2024-05-01'\n"
        "columns: country_iso_code, asn\n"
        "ttl: 7\n",
    )

    spec = build_load_spec(load_spec_from_yaml(path))

    assert spec.name == "geoip"
    assert spec.partition == date(2024, 5, 1)
    assert spec.columns == ["country_iso_code", "asn"]
    assert spec.ttl == 7


def test_yaml_dates_and_lists_are_accepted(tmp_path: Path):
    path = write_config(tmp_path, "partition: 2024-05-01\ncolumns: [asn]\n")

    spec = build_load_spec(load_spec_from_yaml(path))

    assert spec.partition == date(2024, 5, 1)
    assert spec.columns == ["asn"]


def test_empty_yaml_file(tmp_path: Path):
    assert load_spec_from_yaml(write_config(tmp_path, "")) == {}


@pytest.mark.parametrize("text", ["- a\n- b\n", "name: [unclosed\n", "partition: 'May 1st'\n"])
def test_bad_yaml_files(tmp_path: Path, text: str):
    with pytest.raises(ConfigError):
        load_spec_from_yaml(write_config(tmp_path, text))


def test_missing_yaml_file(tmp_path: Path):
    with pytest.raises(ConfigError):
        load_spec_from_yaml(tmp_path / "missing.yaml")


def test_cli_flags():
    spec = cli.resolve_load_spec(
        [
            "--dsn", "duckdb://",
            "--mmdb", "city.mmdb",
            "--name", "city",
            "--partition", "2024-05-01",
            "--batch", "500",
            "--columns", "country_iso_code,asn",
            "--drop", "--reload", "--test",
            "--ttl", "3",
            "--test-ip", "8.8.8.8",
        ]
    )

    assert spec == LoadSpec(
        dsn="duckdb://",
        mmdb_path="city.mmdb",
        name="city",
        partition=date(2024, 5, 1),
        batch_size=500,
        columns=["country_iso_code", "asn"],
        drop=True,
        reload=True,
        test=True,
        ttl=3,
        test_ip="8.8.8.8",
    )


def test_cli_flags_override_config_file(tmp_path: Path):
    path = write_config(tmp_path, "name: from_file\nttl: 7\ndrop: true\n")

    spec = cli.resolve_load_spec(["--config", str(path), "--name", "from_cli"])

    assert spec.name == "from_cli"
    assert spec.ttl == 7
    assert spec.drop


def test_unset_flags_keep_defaults():
    assert cli.resolve_load_spec([]).batch_size == 1_000_000


def test_main_reports_failures(tmp_path: Path, caplog):
    exit_code = cli.main(["--dsn", "duckdb://", "--mmdb", str(tmp_path / "missing.mmdb")])

    assert exit_code == 1
    assert "Load failed" in caplog.text


def test_main_rejects_invalid_configuration():
    assert cli.main(["--batch", "0"]) == 1
