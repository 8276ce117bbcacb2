from mmdb_builder import text, u32
from mmdb_ingestion.flatten import flatten_record, flatten_to_dict


def test_flatten_joins_nested_keys_with_underscores():
    assert flatten_record({"a": 1, "b": {"c": 2, "d": 3}}) == [("a", 1), ("b_c", 2), ("b_d", 3)]


def test_flatten_sorts_sibling_keys_at_every_level():
    record = {
        "z": {"y": 1, "b": 2},
        "a": {"k": {"q": 3, "c": 4}},
        "m": 5,
    }

    assert [path for path, _ in flatten_record(record)] == ["a_k_c", "a_k_q", "m", "z_b", "z_y"]


def test_flatten_is_deterministic_regardless_of_insertion_order():
    first = {"country": {"iso_code": text("FR"), "names": {"en": text("France")}}, "asn": u32(3215)}
    second = {"asn": u32(3215), "country": {"names": {"en": text("France")}, "iso_code": text("FR")}}

    assert flatten_record(first) == flatten_record(first)
    assert flatten_record(first) == flatten_record(second)


def test_flatten_keeps_lists_as_leaves():
    record = {"subdivisions": [{"iso_code": text("IDF")}], "postal": {"code": text("75001")}}

    assert flatten_record(record) == [
        ("postal_code", text("75001")),
        ("subdivisions", [{"iso_code": text("IDF")}]),
    ]


def test_flatten_empty_nested_record_has_no_leaves():
    assert flatten_record({"empty": {}, "x": 1}) == [("x", 1)]


def test_flatten_to_dict():
    assert flatten_to_dict({"a": {"b": 1}, "c": 2}) == {"a_b": 1, "c": 2}
