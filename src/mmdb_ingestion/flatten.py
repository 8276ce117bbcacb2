from typing import Any, Mapping

from mmdb_ingestion.domain import FlatRecord


def flatten_record(record: Mapping[str, Any], parent: str = "") -> FlatRecord:
    """
    Flatten a nested record into (path, leaf) pairs.

    Paths join keys with "_": {"city": {"names": {"en": x}}} -> ("city_names_en", x).

    Sibling keys are sorted at every level. The source's key order is not
    stable across decoders, and both the inferred schema and the projected rows
    depend on this order.
    """
    pairs: FlatRecord = []

    for key in sorted(record.keys()):
        value = record[key]
        name = parent + key
        if isinstance(value, Mapping):
            pairs.extend(flatten_record(value, name + "_"))
        else:
            pairs.append((name, value))

    return pairs


def flatten_to_dict(record: Mapping[str, Any]) -> dict[str, Any]:
    return dict(flatten_record(record))
