from typing import Any

from duckdb.sqltypes import VARCHAR

from mmdb_ingestion.dictionaries import FlatDictionary, IPTrieDictionary
from mmdb_ingestion.lake_store import GeoLakeStore
from mmdb_ingestion.pointer_index import NO_DATA_POINTER


class GeoLookupFunction:
    """
    Single-step lookup: ip -> pointer (networks dictionary) -> attribute (values dictionary).

    Registered in DuckDB as  <name>(attribute VARCHAR, ip VARCHAR) -> VARCHAR.
    The function body runs inside a DuckDB query and cannot query the same
    connection, so both structures are loaded outside of it (reload or
    refresh_if_stale) before the function is used.
    """

    def __init__(self, name: str, networks: IPTrieDictionary, values: FlatDictionary):
        self.name = name
        self.networks = networks
        self.values = values

    def __call__(self, attribute: str | None, ip: str | None) -> str | None:
        if attribute is None or ip is None:
            return None
        value = self.lookup(attribute, ip)
        if value is None:
            return None
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    def lookup(self, attribute: str, ip: str) -> Any:
        if not (self.networks.is_loaded and self.values.is_loaded):
            raise RuntimeError(f"Lookup structures of {self.name} are not loaded; call reload() first")
        pointer = self.networks.get_pointer(ip)
        if pointer == NO_DATA_POINTER:
            return None
        return self.values.get(attribute, pointer)

    def refresh_if_stale(self) -> None:
        self.networks.refresh_if_stale()
        self.values.refresh_if_stale()

    def reload(self) -> None:
        self.networks.reload()
        self.values.reload()

    def register(self, store: GeoLakeStore) -> None:
        store.register_function(self.name, self.__call__, [VARCHAR, VARCHAR], VARCHAR)
