from pathlib import Path

import pytest

from conftest import AUSTRALIA, NETWORKS, SWITZERLAND
from mmdb_builder import (
    DataSection,
    boolean,
    build_mmdb,
    encode,
    encode_pointer,
    f32,
    i32,
    raw_bytes,
    text,
    u16,
    u64,
    u128,
)
from mmdb_ingestion.domain import NetworkEntry, TypedValue, ValueKind
from mmdb_ingestion.exceptions import EnumerationError, SourceDecodeError, SourceOpenError
from mmdb_ingestion.mmdb_source import MMDBSource


def test_open_missing_file_raises_source_open_error(tmp_path: Path):
    with pytest.raises(SourceOpenError):
        with MMDBSource(tmp_path / "missing.mmdb"):
            pass


def test_open_garbage_file_raises_source_open_error(tmp_path: Path):
    path = tmp_path / "garbage.mmdb"
    path.write_bytes(b"not a maxmind database")

    with pytest.raises(SourceOpenError):
        with MMDBSource(path):
            pass


def test_metadata(ipv4_mmdb: Path):
    with MMDBSource(ipv4_mmdb) as source:
        assert source.metadata.database_type == "Test-City"
        assert source.metadata.ip_version == 4
        assert source.metadata.record_size == 24
        assert source.metadata.languages == ("en",)


def test_decode_sample_record_keeps_wire_types(ipv4_mmdb: Path):
    with MMDBSource(ipv4_mmdb) as source:
        record = source.decode(0)

    assert record == AUSTRALIA
    assert record["location"]["accuracy_radius"] == TypedValue(ValueKind.UINT16, 1000)


def test_ipv4_networks_are_enumerated_in_address_order(ipv4_mmdb: Path):
    with MMDBSource(ipv4_mmdb) as source:
        cursor = source.networks()
        entries = list(cursor)
        cursor.check()

    assert [e.network for e in entries] == [network for network, _ in NETWORKS]
    # Networks sharing a record share its offset
    assert entries[0].offset == entries[1].offset == 0
    assert entries[2].offset == entries[4].offset
    assert len({e.offset for e in entries}) == 3


def test_cursor_is_single_pass(ipv4_mmdb: Path):
    with MMDBSource(ipv4_mmdb) as source:
        cursor = source.networks()
        list(cursor)
        with pytest.raises(EnumerationError):
            iter(cursor)


@pytest.mark.parametrize("record_size", [24, 28, 32])
def test_every_record_size_is_readable(tmp_path: Path, record_size: int):
    path = build_mmdb(tmp_path / f"rs{record_size}.mmdb", NETWORKS, record_size=record_size)

    with MMDBSource(path) as source:
        networks = [entry.network for entry in source.networks()]
        offset = source.lookup_offset("9.9.9.9")
        record = source.decode(offset)

    assert networks == [network for network, _ in NETWORKS]
    assert record == SWITZERLAND


def test_ipv6_tree_skips_aliases_and_reports_ipv4_networks(ipv6_mmdb: Path):
    with MMDBSource(ipv6_mmdb) as source:
        networks = [entry.network for entry in source.networks(skip_aliases=True)]

    assert networks == [network for network, _ in NETWORKS] + ["2001:db8::/32"]


def test_ipv6_tree_without_alias_skipping_reports_aliased_networks(ipv6_mmdb: Path):
    with MMDBSource(ipv6_mmdb) as source:
        networks = [entry.network for entry in source.networks(skip_aliases=False)]

    aliased = [network for network in networks if network.startswith("::ffff:")]
    assert len(aliased) == len(NETWORKS)
    assert all(network.endswith("/120") for network in aliased)
    assert len(networks) == 2 * len(NETWORKS) + 1


def test_alias_pointing_directly_at_an_ipv4_record_is_skipped(tmp_path: Path):
    # The whole IPv4 space is one record, so ::ffff:0:0/96 holds a data pointer
    path = build_mmdb(
        tmp_path / "one_ipv4_record.mmdb",
        [("0.0.0.0/0", AUSTRALIA), ("2001:db8::/32", SWITZERLAND)],
        ip_version=6,
        ipv4_aliases=("::ffff:0:0/96",),
    )

    with MMDBSource(path) as source:
        skipped = [entry.network for entry in source.networks(skip_aliases=True)]
        assert source.decode(source.lookup_offset("203.0.113.9")) == AUSTRALIA
    with MMDBSource(path) as source:
        everything = [entry.network for entry in source.networks(skip_aliases=False)]

    assert skipped == ["0.0.0.0/0", "2001:db8::/32"]
    assert len(everything) == 3


def test_lookup_offset(ipv6_mmdb: Path):
    with MMDBSource(ipv6_mmdb) as source:
        assert source.decode(source.lookup_offset("1.1.1.1")) == AUSTRALIA
        assert source.decode(source.lookup_offset("2001:db8::1")) == SWITZERLAND
        assert source.lookup_offset("4.4.4.4") is None
        assert source.lookup_offset("2002::1") is None


def test_lookup_offset_rejects_ipv6_in_ipv4_database(ipv4_mmdb: Path):
    with MMDBSource(ipv4_mmdb) as source:
        with pytest.raises(SourceDecodeError):
            source.lookup_offset("2001:db8::1")


def test_reference_lookup_uses_maxminddb(ipv4_mmdb: Path):
    with MMDBSource(ipv4_mmdb) as source:
        reference = source.reference_lookup("8.8.8.8")

    assert reference["country"]["iso_code"] == "US"
    assert reference["location"]["accuracy_radius"] == 1000


def test_decode_follows_pointers_and_all_types(tmp_path: Path):
    data = DataSection()
    shared = data.add(text("shared value"))
    record = {
        "flag": boolean(True),
        "blob": raw_bytes(b"\x00\xff"),
        "small": u16(0),
        "signed": i32(-42),
        "big": u64(2**63),
        "huge": u128(2**100),
        "ratio": f32(0.5),
        "names": [text("a"), text("b")],
    }
    # A map whose "ref" value is a pointer to the shared string
    offset = data.add_raw(
        encode({"ref": text("x")})[:-2] + encode_pointer(shared)
    )
    plain = data.add(record)
    path = build_mmdb(tmp_path / "types.mmdb", [("10.0.0.0/8", offset), ("11.0.0.0/8", plain)], data=data)

    with MMDBSource(path) as source:
        assert source.decode(offset) == {"ref": text("shared value")}
        assert source.decode(plain) == record


def test_decode_out_of_range_offset(ipv4_mmdb: Path):
    with MMDBSource(ipv4_mmdb) as source:
        with pytest.raises(SourceDecodeError):
            source.decode(source.data_section_size + 10)


def test_decode_non_map_value(tmp_path: Path):
    data = DataSection()
    scalar = data.add(text("just a string"))
    path = build_mmdb(tmp_path / "scalar.mmdb", [("10.0.0.0/8", scalar)], data=data)

    with MMDBSource(path) as source:
        with pytest.raises(SourceDecodeError):
            source.decode(scalar)


def test_corrupt_tree_is_reported_by_check(tmp_path: Path):
    data = DataSection()
    data.add({"ok": text("yes")})
    # Record pointing far beyond the data section
    path = build_mmdb(tmp_path / "corrupt.mmdb", [("10.0.0.0/8", 0), ("11.0.0.0/8", 5000)], data=data)

    with MMDBSource(path) as source:
        cursor = source.networks()
        entries = list(cursor)
        with pytest.raises(EnumerationError):
            cursor.check()

    assert entries == [NetworkEntry("10.0.0.0/8", 0)]


def test_source_must_be_open(ipv4_mmdb: Path):
    source = MMDBSource(ipv4_mmdb)
    with pytest.raises(RuntimeError):
        source.decode(0)
