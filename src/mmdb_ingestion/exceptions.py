class IngestionError(Exception):
    """Base class for every failure that aborts a load run."""


class ConfigError(IngestionError):
    pass


class StoreConnectionError(IngestionError):
    """The store connection string is invalid or the store cannot be opened."""


class SourceOpenError(IngestionError):
    pass


class SourceDecodeError(IngestionError):
    pass


class EnumerationError(IngestionError):
    """The network cursor hit a corrupt search tree while iterating."""


class StorageError(IngestionError):
    """A DDL/DML statement or a batch send failed."""


class SchemaError(IngestionError):
    def __init__(self, path: str, message: str):
        super().__init__(f"{message} (key: {path})")
        self.path = path


class ProjectionError(IngestionError):
    def __init__(self, column: str, message: str):
        super().__init__(f"{message} (column: {column})")
        self.column = column
