from __future__ import annotations

import ipaddress
import logging
import mmap
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

import maxminddb
from maxminddb import InvalidDatabaseError

from mmdb_ingestion.domain import AttributeRecord, NetworkEntry, TypedValue, ValueKind
from mmdb_ingestion.exceptions import EnumerationError, SourceDecodeError, SourceOpenError

logger = logging.getLogger(__name__)


METADATA_START_MARKER = b"\xab\xcd\xefMaxMind.com"
DATA_SECTION_SEPARATOR_SIZE = 16
IPV4_SUBTREE_DEPTH = 96

# Data section type numbers
_EXTENDED = 0
_POINTER = 1
_UTF8_STRING = 2
_DOUBLE = 3
_BYTES = 4
_UINT16 = 5
_UINT32 = 6
_MAP = 7
_INT32 = 8
_UINT64 = 9
_UINT128 = 10
_ARRAY = 11
_BOOLEAN = 14
_FLOAT = 15

_UINT_KINDS: dict[int, tuple[ValueKind, int]] = {
    _UINT16: (ValueKind.UINT16, 2),
    _UINT32: (ValueKind.UINT32, 4),
    _UINT64: (ValueKind.UINT64, 8),
    _UINT128: (ValueKind.UINT128, 16),
}


@dataclass(frozen=True)
class MMDBMetadata:
    database_type: str
    ip_version: int
    node_count: int
    record_size: int
    build_epoch: int
    languages: tuple[str, ...]

    @property
    def node_byte_size(self) -> int:
        return self.record_size // 4

    @property
    def search_tree_size(self) -> int:
        return self.node_count * self.node_byte_size

    @property
    def bit_count(self) -> int:
        return 128 if self.ip_version == 6 else 32


class DataSectionDecoder:
    """
    Decodes MMDB data section values, keeping each leaf's wire type.

    Offsets are relative to the start of the data section, which is also the
    base of the format's internal pointers.
    """

    def __init__(self, buffer: Any, data_section_start: int, data_section_end: int):
        self._buffer = buffer
        self._start = data_section_start
        self._size = data_section_end - data_section_start

    @property
    def size(self) -> int:
        return self._size

    def decode(self, offset: int) -> Any:
        value, _ = self._decode(offset)
        return value

    def _read(self, offset: int, size: int) -> bytes:
        if offset < 0 or offset + size > self._size:
            raise SourceDecodeError(f"Read of {size} bytes at offset {offset} is outside the data section")
        start = self._start + offset
        return bytes(self._buffer[start:start + size])

    def _decode(self, offset: int) -> tuple[Any, int]:
        ctrl = self._read(offset, 1)[0]
        cursor = offset + 1
        type_num = ctrl >> 5

        if type_num == _POINTER:
            pointer, cursor = self._decode_pointer(ctrl, cursor)
            value, _ = self._decode(pointer)
            return value, cursor

        if type_num == _EXTENDED:
            type_num = 7 + self._read(cursor, 1)[0]
            cursor += 1
            if type_num <= _MAP:
                raise SourceDecodeError(f"Invalid extended type {type_num} at offset {offset}")

        size, cursor = self._decode_size(ctrl, cursor)

        if type_num == _MAP:
            return self._decode_map(size, cursor)
        if type_num == _ARRAY:
            return self._decode_array(size, cursor)
        if type_num == _BOOLEAN:
            if size > 1:
                raise SourceDecodeError(f"Invalid boolean size {size} at offset {offset}")
            return TypedValue(ValueKind.BOOL, bool(size)), cursor

        raw = self._read(cursor, size)
        cursor += size

        if type_num == _UTF8_STRING:
            try:
                return TypedValue(ValueKind.TEXT, raw.decode("utf-8")), cursor
            except UnicodeDecodeError as e:
                raise SourceDecodeError(f"Invalid UTF-8 string at offset {offset}") from e
        if type_num == _BYTES:
            return TypedValue(ValueKind.BYTES, raw), cursor
        if type_num == _DOUBLE:
            if size != 8:
                raise SourceDecodeError(f"Invalid double size {size} at offset {offset}")
            return TypedValue(ValueKind.FLOAT64, struct.unpack("!d", raw)[0]), cursor
        if type_num == _FLOAT:
            if size != 4:
                raise SourceDecodeError(f"Invalid float size {size} at offset {offset}")
            return TypedValue(ValueKind.FLOAT32, struct.unpack("!f", raw)[0]), cursor
        if type_num == _INT32:
            if size > 4:
                raise SourceDecodeError(f"Invalid int32 size {size} at offset {offset}")
            return TypedValue(ValueKind.INT32, int.from_bytes(raw.rjust(4, b"\x00"), "big", signed=True)), cursor
        if type_num in _UINT_KINDS:
            kind, max_size = _UINT_KINDS[type_num]
            if size > max_size:
                raise SourceDecodeError(f"Invalid {kind.value} size {size} at offset {offset}")
            return TypedValue(kind, int.from_bytes(raw, "big")), cursor

        raise SourceDecodeError(f"Unsupported data type {type_num} at offset {offset}")

    def _decode_pointer(self, ctrl: int, cursor: int) -> tuple[int, int]:
        size = ((ctrl >> 3) & 0x3) + 1
        raw = int.from_bytes(self._read(cursor, size), "big")
        prefix = ctrl & 0x7
        if size == 1:
            pointer = (prefix << 8) | raw
        elif size == 2:
            pointer = ((prefix << 16) | raw) + 2048
        elif size == 3:
            pointer = ((prefix << 24) | raw) + 526336
        else:
            pointer = raw
        return pointer, cursor + size

    def _decode_size(self, ctrl: int, cursor: int) -> tuple[int, int]:
        size = ctrl & 0x1F
        if size < 29:
            return size, cursor

        extra_bytes = size - 28
        raw = int.from_bytes(self._read(cursor, extra_bytes), "big")
        if size == 29:
            size = 29 + raw
        elif size == 30:
            size = 285 + raw
        else:
            size = 65821 + raw
        return size, cursor + extra_bytes

    def _decode_map(self, size: int, cursor: int) -> tuple[AttributeRecord, int]:
        record: AttributeRecord = {}
        for _ in range(size):
            key, cursor = self._decode(cursor)
            if not isinstance(key, TypedValue) or key.kind is not ValueKind.TEXT:
                raise SourceDecodeError(f"Map key at offset {cursor} is not a string")
            value, cursor = self._decode(cursor)
            record[key.value] = value
        return record, cursor

    def _decode_array(self, size: int, cursor: int) -> tuple[list[Any], int]:
        items: list[Any] = []
        for _ in range(size):
            item, cursor = self._decode(cursor)
            items.append(item)
        return items, cursor


class NetworkCursor:
    """
    Forward-only, single-pass iteration over (network, offset) pairs.

    A corrupt search tree stops the iteration and is recorded rather than
    raised; call check() once the loop is done.
    """

    def __init__(self, source: "MMDBSource", *, skip_aliases: bool):
        self._source = source
        self._skip_aliases = skip_aliases
        self._started = False
        self.error: EnumerationError | None = None

    def __iter__(self) -> Iterator[NetworkEntry]:
        if self._started:
            raise EnumerationError("Network cursor is single-pass; reopen the source to iterate again")
        self._started = True
        return self._walk()

    def check(self) -> None:
        if self.error is not None:
            raise self.error

    def _walk(self) -> Iterator[NetworkEntry]:
        source = self._source
        meta = source.metadata
        node_count = meta.node_count
        bit_count = meta.bit_count

        # (node, network bits so far, depth)
        stack: list[tuple[int, int, int]] = [(0, 0, 0)]
        while stack:
            node, ip, depth = stack.pop()

            if node == node_count:
                continue

            # Before the record check: an alias may point straight at an IPv4 record
            if self._skip_aliases and source.is_ipv4_alias(node, ip):
                continue

            if node > node_count:
                offset = node - node_count - DATA_SECTION_SEPARATOR_SIZE
                if not 0 <= offset < source.data_section_size:
                    self.error = EnumerationError(f"Record at depth {depth} points outside the data section")
                    return
                yield NetworkEntry(source.format_network(ip, depth), offset)
                continue

            if depth >= bit_count:
                self.error = EnumerationError(f"Search tree is deeper than {bit_count} bits")
                return

            left, right = source.read_node(node, 0), source.read_node(node, 1)
            stack.append((right, ip | (1 << (bit_count - depth - 1)), depth + 1))
            stack.append((left, ip, depth + 1))


class MMDBSource:
    """
    Read access to a MaxMind DB file.

    maxminddb parses the metadata and answers reference lookups; the search
    tree and data section are read from a memory map so that every network can
    be reported with the data-section offset of its record.
    """

    def __init__(self, path: str | Path):
        self._path = Path(path)
        self._reader: Any = None
        self._file: Any = None
        self._buffer: mmap.mmap | None = None
        self._decoder: DataSectionDecoder | None = None
        self._ipv4_start = 0
        self.metadata: MMDBMetadata | None = None

    def __enter__(self) -> "MMDBSource":
        if self._buffer is not None:
            raise RuntimeError("Source already open")
        try:
            self._open()
        except Exception:
            self.close()
            raise
        logger.debug(
            "Opened %s: type=%s ip_version=%s nodes=%s record_size=%s",
            self._path,
            self.metadata.database_type,
            self.metadata.ip_version,
            self.metadata.node_count,
            self.metadata.record_size,
        )
        return self

    def __exit__(self, exc_type, exc_value, tb) -> None:
        self.close()

    def _open(self) -> None:
        try:
            self._reader = maxminddb.open_database(str(self._path))
            raw = self._reader.metadata()
            self._file = open(self._path, "rb")
            self._buffer = mmap.mmap(self._file.fileno(), 0, access=mmap.ACCESS_READ)
        except (OSError, ValueError, InvalidDatabaseError) as e:
            raise SourceOpenError(f"Cannot open MMDB file {self._path}: {e}") from e

        self.metadata = MMDBMetadata(
            database_type=raw.database_type,
            ip_version=raw.ip_version,
            node_count=raw.node_count,
            record_size=raw.record_size,
            build_epoch=raw.build_epoch,
            languages=tuple(raw.languages),
        )
        if self.metadata.record_size not in (24, 28, 32):
            raise SourceOpenError(f"Unsupported record size {self.metadata.record_size} in {self._path}")

        data_start = self.metadata.search_tree_size + DATA_SECTION_SEPARATOR_SIZE
        data_end = self._buffer.rfind(METADATA_START_MARKER)
        if data_end < data_start:
            raise SourceOpenError(f"Search tree and data section do not fit in {self._path}")

        self._decoder = DataSectionDecoder(self._buffer, data_start, data_end)
        self._ipv4_start = self._find_ipv4_start()

    def close(self) -> None:
        self._decoder = None
        if self._buffer is not None:
            self._buffer.close()
            self._buffer = None
        if self._file is not None:
            self._file.close()
            self._file = None
        if self._reader is not None:
            self._reader.close()
            self._reader = None

    def _require_decoder(self) -> DataSectionDecoder:
        if self._decoder is None:
            raise RuntimeError("Source is not open; use it as a context manager")
        return self._decoder

    # ----------------------------
    # Public API
    # ----------------------------
    @property
    def data_section_size(self) -> int:
        return self._require_decoder().size

    def decode(self, offset: int) -> AttributeRecord:
        """Decode the record stored at a data-section offset."""
        record = self._require_decoder().decode(offset)
        if not isinstance(record, dict):
            raise SourceDecodeError(f"Value at offset {offset} is not a map")
        return record

    def networks(self, *, skip_aliases: bool = True) -> NetworkCursor:
        self._require_decoder()
        return NetworkCursor(self, skip_aliases=skip_aliases)

    def lookup_offset(self, ip: str) -> int | None:
        """Data-section offset of the record for ip, or None when no network contains it."""
        self._require_decoder()
        meta = self.metadata
        try:
            address = ipaddress.ip_address(ip)
        except ValueError as e:
            raise SourceDecodeError(f"Invalid IP address {ip!r}") from e
        if address.version == 6 and meta.ip_version == 4:
            raise SourceDecodeError(f"Cannot look up IPv6 address {ip} in an IPv4-only database")

        bits = int(address)
        bit_count = address.max_prefixlen
        node = self._ipv4_start if address.version == 4 and meta.ip_version == 6 else 0

        for i in range(bit_count):
            if node >= meta.node_count:
                break
            node = self.read_node(node, (bits >> (bit_count - 1 - i)) & 1)

        if node == meta.node_count:
            return None
        if node > meta.node_count:
            return node - meta.node_count - DATA_SECTION_SEPARATOR_SIZE
        raise SourceDecodeError(f"Search tree for {ip} does not end in a record")

    def reference_lookup(self, ip: str) -> Any:
        """The record as decoded by the maxminddb library itself."""
        if self._reader is None:
            raise RuntimeError("Source is not open; use it as a context manager")
        return self._reader.get(ip)

    # ----------------------------
    # Search tree helpers
    # ----------------------------
    def read_node(self, node: int, index: int) -> int:
        meta = self.metadata
        base = node * meta.node_byte_size
        buffer = self._buffer

        if meta.record_size == 24:
            offset = base + index * 3
            return int.from_bytes(buffer[offset:offset + 3], "big")

        if meta.record_size == 28:
            if index == 0:
                raw = buffer[base:base + 4]
                return ((raw[3] & 0xF0) << 20) | int.from_bytes(raw[0:3], "big")
            raw = buffer[base + 3:base + 7]
            return ((raw[0] & 0x0F) << 24) | int.from_bytes(raw[1:4], "big")

        offset = base + index * 4
        return int.from_bytes(buffer[offset:offset + 4], "big")

    def _find_ipv4_start(self) -> int:
        if self.metadata.ip_version != 6:
            return 0
        node = 0
        for _ in range(IPV4_SUBTREE_DEPTH):
            if node >= self.metadata.node_count:
                break
            node = self.read_node(node, 0)
        return node

    def is_ipv4_alias(self, node: int, ip: int) -> bool:
        """True for subtrees such as ::ffff:0:0/96 that re-point at the IPv4 subtree under ::/96."""
        if self.metadata.ip_version != 6 or self._ipv4_start == 0:
            return False
        if node != self._ipv4_start:
            return False
        # Anything inside ::/96 is the IPv4 subtree itself
        return ip >> (self.metadata.bit_count - IPV4_SUBTREE_DEPTH) != 0

    def format_network(self, ip: int, depth: int) -> str:
        if self.metadata.ip_version == 4:
            return str(ipaddress.IPv4Network((ip, depth)))
        if depth >= IPV4_SUBTREE_DEPTH and ip >> 32 == 0:
            return str(ipaddress.IPv4Network((ip, depth - IPV4_SUBTREE_DEPTH)))
        return str(ipaddress.IPv6Network((ip, depth)))
