from __future__ import annotations

import ipaddress
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Protocol, Sequence

from mmdb_core.settings import (
    COL_NETWORK,
    COL_POINTER,
    DICTIONARY_LIFETIME_MAX_SECONDS,
    DICTIONARY_LIFETIME_MIN_SECONDS,
)
from mmdb_ingestion.pointer_index import NO_DATA_POINTER
from mmdb_ingestion.sql import sql_identifier_quote

logger = logging.getLogger(__name__)


class QuerySource(Protocol):
    def query(self, statement: str, params: Sequence[Any] | None = None) -> tuple[list[str], list[tuple[Any, ...]]]:
        ...


class _RefreshableDictionary(ABC):
    """
    In-memory keyed structure loaded from a view over the latest partition.

    Content is reloaded once it is older than the maximum lifetime, and never
    more often than the minimum lifetime unless reload() is called.
    """

    def __init__(
        self,
        store: QuerySource,
        source_view: str,
        *,
        lifetime_min_seconds: float = DICTIONARY_LIFETIME_MIN_SECONDS,
        lifetime_max_seconds: float = DICTIONARY_LIFETIME_MAX_SECONDS,
    ):
        if lifetime_min_seconds > lifetime_max_seconds:
            raise ValueError("lifetime_min_seconds must not exceed lifetime_max_seconds")
        self._store = store
        self.source_view = source_view
        self._lifetime_min = lifetime_min_seconds
        self._lifetime_max = lifetime_max_seconds
        self._loaded_at: float | None = None

    @property
    def is_loaded(self) -> bool:
        return self._loaded_at is not None

    def is_stale(self) -> bool:
        if self._loaded_at is None:
            return True
        return time.monotonic() - self._loaded_at >= self._lifetime_max

    def refresh_if_stale(self) -> bool:
        if not self.is_stale():
            return False
        self.reload()
        return True

    def reload(self) -> None:
        if self._loaded_at is not None and time.monotonic() - self._loaded_at < self._lifetime_min:
            return
        started = time.monotonic()
        columns, rows = self._store.query(f"SELECT * FROM {sql_identifier_quote(self.source_view)}")
        self._load(columns, rows)
        self._loaded_at = time.monotonic()
        logger.info(
            "Loaded %s rows into dictionary %s in %.2fs", len(rows), self.source_view, self._loaded_at - started
        )

    @abstractmethod
    def _load(self, columns: list[str], rows: list[tuple[Any, ...]]) -> None:
        ...


class IPTrieDictionary(_RefreshableDictionary):
    """
    Longest-prefix-match lookup from IP address to pointer.

    Networks are bucketed by (ip version, prefix length); a lookup masks the
    address for each stored prefix length, longest first.
    """

    def __init__(self, store: QuerySource, source_view: str, **lifetime: float):
        super().__init__(store, source_view, **lifetime)
        self._buckets: dict[int, dict[int, dict[int, int]]] = {4: {}, 6: {}}
        self._prefix_lengths: dict[int, list[int]] = {4: [], 6: []}

    def __len__(self) -> int:
        return sum(len(b) for buckets in self._buckets.values() for b in buckets.values())

    def _load(self, columns: list[str], rows: list[tuple[Any, ...]]) -> None:
        network_idx = columns.index(COL_NETWORK)
        pointer_idx = columns.index(COL_POINTER)

        buckets: dict[int, dict[int, dict[int, int]]] = {4: {}, 6: {}}
        for row in rows:
            network = ipaddress.ip_network(row[network_idx])
            by_length = buckets[network.version].setdefault(network.prefixlen, {})
            by_length[int(network.network_address)] = int(row[pointer_idx])

        self._buckets = buckets
        self._prefix_lengths = {version: sorted(b, reverse=True) for version, b in buckets.items()}

    def get_pointer(self, ip: str) -> int:
        """Pointer of the most specific network containing ip, NO_DATA_POINTER when none does."""
        address = ipaddress.ip_address(ip)
        if address.version == 6 and address.ipv4_mapped is not None:
            address = address.ipv4_mapped

        bits = int(address)
        max_length = address.max_prefixlen
        buckets = self._buckets[address.version]
        for length in self._prefix_lengths[address.version]:
            key = (bits >> (max_length - length)) << (max_length - length) if length else 0
            pointer = buckets[length].get(key)
            if pointer is not None:
                return pointer
        return NO_DATA_POINTER


class FlatDictionary(_RefreshableDictionary):
    """Pointer -> attribute row lookup."""

    def __init__(self, store: QuerySource, source_view: str, **lifetime: float):
        super().__init__(store, source_view, **lifetime)
        self._rows: dict[int, tuple[Any, ...]] = {}
        self._attributes: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._rows)

    @property
    def attributes(self) -> list[str]:
        return list(self._attributes)

    def _load(self, columns: list[str], rows: list[tuple[Any, ...]]) -> None:
        pointer_idx = columns.index(COL_POINTER)
        self._attributes = {name: i for i, name in enumerate(columns)}
        self._rows = {int(row[pointer_idx]): row for row in rows}

    def get(self, attribute: str, pointer: int) -> Any:
        if attribute not in self._attributes:
            raise ValueError(f"Unknown attribute {attribute!r} in dictionary {self.source_view}")
        row = self._rows.get(pointer)
        if row is None:
            return None
        return row[self._attributes[attribute]]
