from __future__ import annotations

import logging
import time
from typing import List

import psycopg2
from snowflake.connector.errors import Error as SnowflakeError

from pg_to_snowflake.errors import MigrationConnectionError
from pg_to_snowflake.models import SourceColumn, SourceTable

LOG = logging.getLogger(__name__)

_SOURCE_TABLES_SQL = """
    SELECT table_schema, table_name
    FROM information_schema.tables
    WHERE table_type = 'BASE TABLE'
      AND table_schema NOT IN ('pg_catalog', 'information_schema')
    ORDER BY table_schema, table_name
"""

_SOURCE_COLUMNS_SQL = """
    SELECT column_name, data_type, character_maximum_length
    FROM information_schema.columns
    WHERE table_schema = %s AND table_name = %s
    ORDER BY ordinal_position
"""

_DEST_TABLE_EXISTS_SQL = """
    SELECT COUNT(*) AS n
    FROM information_schema.tables
    WHERE UPPER(table_schema) = UPPER(%s) AND UPPER(table_name) = UPPER(%s)
"""

_DEST_COLUMNS_SQL = """
    SELECT column_name
    FROM information_schema.columns
    WHERE UPPER(table_schema) = UPPER(%s) AND UPPER(table_name) = UPPER(%s)
    ORDER BY ordinal_position
"""


class SchemaReflector:
    """Source and destination metadata lookups for one table pipeline."""

    def __init__(self, source, warehouse=None, dest_schema: str = "PUBLIC", logger: logging.Logger | None = None):
        self.source = source
        self.warehouse = warehouse
        self.dest_schema = dest_schema
        self.log = logger or LOG

    # ------------------------ Source ------------------------

    def list_source_tables(self) -> List[SourceTable]:
        t0 = time.perf_counter()
        try:
            rows = self.source.query(_SOURCE_TABLES_SQL)
        except psycopg2.Error as e:
            raise MigrationConnectionError(f"Could not list source tables: {e}") from e
        tables = [SourceTable(schema=r[0], name=r[1]) for r in rows]
        self.log.info("Discovered %d source tables (%.3fs)", len(tables), time.perf_counter() - t0)
        return tables

    def list_source_columns(self, table: SourceTable) -> List[SourceColumn]:
        try:
            rows = self.source.query(_SOURCE_COLUMNS_SQL, (table.schema, table.name))
        except psycopg2.Error as e:
            raise MigrationConnectionError(f"Could not read columns of {table}: {e}", table=str(table)) from e
        cols = [SourceColumn(name=r[0], declared_type=r[1], max_length=r[2]) for r in rows]
        self.log.info("Discovered %d source columns for %s", len(cols), table)
        return cols

    # ------------------------ Destination ------------------------

    def destination_table_exists(self, name: str) -> bool:
        try:
            rows = self.warehouse.execute(_DEST_TABLE_EXISTS_SQL, (self.dest_schema, name))
        except SnowflakeError as e:
            raise MigrationConnectionError(f"Could not check destination table {name}: {e}", table=name) from e
        exists = bool(rows) and int(rows[0]["n"]) > 0
        self.log.info("Destination table %s.%s exists? %s", self.dest_schema, name, exists)
        return exists

    def list_destination_columns(self, name: str) -> List[str]:
        try:
            rows = self.warehouse.execute(_DEST_COLUMNS_SQL, (self.dest_schema, name))
        except SnowflakeError as e:
            raise MigrationConnectionError(f"Could not read destination columns of {name}: {e}", table=name) from e
        cols = [r["column_name"] for r in rows]
        self.log.info("Destination %s.%s currently has %d columns", self.dest_schema, name, len(cols))
        return cols
