from mmdb_core.settings import COL_PARTITION, TABLE_RETENTION


def sql_quote(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def sql_identifier_quote(identifier: str) -> str:
    escaped = identifier.replace('"', '""')
    return f'"{escaped}"'


PARTITION = sql_identifier_quote(COL_PARTITION)


def create_table_sql(name: str, columns_sql: str) -> str:
    return f"CREATE TABLE IF NOT EXISTS {sql_identifier_quote(name)} ({columns_sql})"


def set_partitioned_by_sql(name: str) -> str:
    # DuckLake only; plain DuckDB tables are filtered on the column instead.
    return f"ALTER TABLE {sql_identifier_quote(name)} SET PARTITIONED BY ({PARTITION})"


def table_exists_sql() -> str:
    return """
        SELECT 1
        FROM information_schema.tables
        WHERE table_catalog = current_database()
          AND table_schema = current_schema()
          AND table_name = ?
        LIMIT 1
    """


def drop_table_sql(name: str) -> str:
    return f"DROP TABLE IF EXISTS {sql_identifier_quote(name)}"


def drop_view_sql(name: str) -> str:
    return f"DROP VIEW IF EXISTS {sql_identifier_quote(name)}"


def drop_partition_sql(name: str) -> str:
    return f"DELETE FROM {sql_identifier_quote(name)} WHERE {PARTITION} = ?"


def expire_partitions_sql(name: str) -> str:
    return f"DELETE FROM {sql_identifier_quote(name)} WHERE {PARTITION} <= ?"


def create_latest_partition_view_sql(name: str, source_table: str) -> str:
    source = sql_identifier_quote(source_table)
    return f"""
        CREATE VIEW IF NOT EXISTS {sql_identifier_quote(name)} AS
        SELECT *
        FROM {source}
        WHERE {PARTITION} = (SELECT MAX({PARTITION}) FROM {source})
    """


def create_retention_table_sql() -> str:
    return f"""
        CREATE TABLE IF NOT EXISTS {TABLE_RETENTION} (
          table_name      VARCHAR   NOT NULL,
          ttl_partitions  INTEGER   NOT NULL,
          created_at_utc  TIMESTAMP NOT NULL
        )
    """


def record_retention_sql() -> str:
    # Written once per table; an existing TTL is never updated.
    return f"""
        INSERT INTO {TABLE_RETENTION} (table_name, ttl_partitions, created_at_utc)
        SELECT ?, ?, ?
        WHERE NOT EXISTS (SELECT 1 FROM {TABLE_RETENTION} WHERE table_name = ?)
    """


def select_retention_sql() -> str:
    return f"SELECT ttl_partitions FROM {TABLE_RETENTION} WHERE table_name = ?"


def delete_retention_sql() -> str:
    return f"DELETE FROM {TABLE_RETENTION} WHERE table_name = ?"


def insert_batch_sql(name: str, relation: str, column_casts: list[tuple[str, str]]) -> str:
    """INSERT ... SELECT from a registered Arrow relation, casting each column to its table type."""
    targets = ", ".join(sql_identifier_quote(column) for column, _ in column_casts)
    selects = ", ".join(
        f"CAST({sql_identifier_quote(column)} AS {sql_type})" for column, sql_type in column_casts
    )
    return f"INSERT INTO {sql_identifier_quote(name)} ({targets}) SELECT {selects} FROM {relation}"
