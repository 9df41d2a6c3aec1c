from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional, Sequence

from snowflake.connector.errors import Error as SnowflakeError

from pg_to_snowflake.errors import (
    DestinationDDLError,
    LoadError,
    MigrationConnectionError,
    SchemaMismatchError,
    SwapTransactionError,
)
from pg_to_snowflake.models import DestinationColumn, quote_identifier

LOG = logging.getLogger(__name__)

STAGING_SUFFIX = "_STAGING"
CHUNK_PATTERN = ".*_chunk_[0-9]+[.]csv[.]gz"

FILE_FORMAT = (
    "TYPE = CSV "
    "FIELD_DELIMITER = ',' "
    "FIELD_OPTIONALLY_ENCLOSED_BY = '\"' "
    "SKIP_HEADER = 1 "
    "COMPRESSION = GZIP "
    "EMPTY_FIELD_AS_NULL = TRUE "
    "NULL_IF = () "
    "BINARY_FORMAT = HEX"
)

_WAREHOUSE_ERRORS = (SnowflakeError, MigrationConnectionError)


class TableLoader:
    """
    Destination side of one table pipeline: schema, staging load, swap.

    Snowflake DDL commits implicitly, so the BEGIN/COMMIT around the swap does
    not make `SWAP WITH` revertible by ROLLBACK alone; a failed swap is undone
    with a compensating second exchange.
    """

    def __init__(
        self,
        warehouse,
        schema: str = "PUBLIC",
        skip_bad_rows: bool = True,
        max_rejected_rows: Optional[int] = None,
        add_missing_columns: bool = True,
        logger: logging.Logger | None = None,
    ):
        self.warehouse = warehouse
        self.schema = schema
        self.skip_bad_rows = skip_bad_rows
        self.max_rejected_rows = max_rejected_rows
        self.add_missing_columns = add_missing_columns
        self.log = logger or LOG

    def fq(self, name: str) -> str:
        return f"{quote_identifier(self.schema)}.{quote_identifier(name)}"

    def staging_name(self, name: str) -> str:
        return name + STAGING_SUFFIX

    # ------------------------ Schema ------------------------

    def ensure_schema(self, name: str, columns: Sequence[DestinationColumn], reflector) -> Dict[str, Any]:
        """
        • Creates the destination table from mapped columns when absent.
        • Otherwise adds source columns the destination lacks (additive only).
        • Fails with SchemaMismatchError if the destination then has no columns.
        """
        t0 = time.perf_counter()
        fq = self.fq(name)
        created = False
        missing_added: List[str] = []
        try:
            if not reflector.destination_table_exists(name):
                col_defs = ", ".join(c.ddl() for c in columns)
                create_sql = f"CREATE TABLE IF NOT EXISTS {fq} ({col_defs})"
                self.log.debug("CREATE TABLE SQL: %s", create_sql)
                self.warehouse.execute(create_sql)
                created = True
                self.log.info("✅ Created table %s", fq)
            elif self.add_missing_columns:
                have = {c.upper() for c in reflector.list_destination_columns(name)}
                missing = [c for c in columns if c.name.upper() not in have]
                for col in missing:
                    sql = f"ALTER TABLE {fq} ADD COLUMN {col.ddl()}"
                    self.log.debug("ALTER SQL: %s", sql)
                    self.warehouse.execute(sql)
                    missing_added.append(col.name)
                if missing_added:
                    self.log.info("🆕 Added %s new column(s) to %s: %s", len(missing_added), fq, ", ".join(missing_added))
        except SnowflakeError as e:
            raise DestinationDDLError(f"Could not prepare destination table {fq}: {e}", table=name) from e

        dest_cols = reflector.list_destination_columns(name)
        if not dest_cols:
            raise SchemaMismatchError(f"Destination table {fq} reports zero columns; skipping load", table=name)
        return {
            "created": created,
            "missing_added": missing_added,
            "columns": dest_cols,
            "elapsed": round(time.perf_counter() - t0, 3),
        }

    # ------------------------ Staging load ------------------------

    @staticmethod
    def copy_columns(source_names: Sequence[str], destination_names: Sequence[str]) -> List[str]:
        """Destination spelling of each source column, matched case-insensitively."""
        by_upper = {d.upper(): d for d in destination_names}
        return [by_upper.get(n.upper(), n) for n in source_names]

    def load_staging(self, name: str, column_names: Sequence[str], stage_path: str) -> Dict[str, int]:
        t0 = time.perf_counter()
        staging = self.fq(self.staging_name(name))
        col_list = ", ".join(quote_identifier(c) for c in column_names)
        on_error = "'CONTINUE'" if self.skip_bad_rows else "'ABORT_STATEMENT'"
        copy_sql = (
            f"COPY INTO {staging} ({col_list}) FROM {stage_path} "
            f"PATTERN = '{CHUNK_PATTERN}' "
            f"FILE_FORMAT = ({FILE_FORMAT}) "
            f"ON_ERROR = {on_error}"
        )
        try:
            self.warehouse.execute(f"CREATE OR REPLACE TABLE {staging} LIKE {self.fq(name)}")
            self.log.debug("COPY SQL: %s", copy_sql)
            results = self.warehouse.execute(copy_sql)
        except _WAREHOUSE_ERRORS as e:
            self.drop_staging(name)
            raise LoadError(f"COPY into {staging} failed: {e}", table=name) from e

        loaded = sum(int(r.get("rows_loaded") or 0) for r in results)
        rejected = sum(int(r.get("errors_seen") or 0) for r in results)
        if rejected:
            first = next((r.get("first_error") for r in results if r.get("first_error")), None)
            self.log.warning("COPY into %s rejected %d row(s); first error: %s", staging, rejected, first)
        if self.max_rejected_rows is not None and rejected > self.max_rejected_rows:
            self.drop_staging(name)
            raise LoadError(
                f"COPY into {staging} rejected {rejected} row(s) (limit {self.max_rejected_rows})",
                table=name, rows_loaded=loaded, rows_rejected=rejected,
            )
        self.log.info(
            "Loaded %d row(s) into %s, %d rejected (%.3fs)",
            loaded, staging, rejected, time.perf_counter() - t0,
        )
        return {"rows_loaded": loaded, "rows_rejected": rejected}

    def drop_staging(self, name: str) -> None:
        staging = self.fq(self.staging_name(name))
        try:
            self.warehouse.execute(f"DROP TABLE IF EXISTS {staging}")
        except _WAREHOUSE_ERRORS as e:
            self.log.warning("Could not drop staging table %s: %s", staging, e)

    # ------------------------ Swap ------------------------

    def swap(self, name: str) -> None:
        """
        Exchange the staging table into place and drop the previous content.
        Any failure leaves the pre-swap table under `name` and raises
        SwapTransactionError.
        """
        t0 = time.perf_counter()
        live = self.fq(name)
        staging = self.fq(self.staging_name(name))
        swapped = False
        dropped = False
        try:
            self.warehouse.begin()
            self.warehouse.execute(f"ALTER TABLE {live} SWAP WITH {staging}")
            swapped = True
            self.warehouse.execute(f"DROP TABLE IF EXISTS {staging}")
            dropped = True
            self.warehouse.commit()
        except _WAREHOUSE_ERRORS as e:
            self.log.critical("Swap of %s failed, rolling back: %s", live, e)
            self._rollback_swap(name, swapped, dropped)
            raise SwapTransactionError(f"Swap of {live} failed and was rolled back: {e}", table=name) from e
        self.log.info("✅ Swapped %s into %s (%.3fs)", staging, live, time.perf_counter() - t0)

    def _rollback_swap(self, name: str, swapped: bool, dropped: bool) -> None:
        live = self.fq(name)
        staging = self.fq(self.staging_name(name))
        try:
            self.warehouse.rollback()
        except _WAREHOUSE_ERRORS:
            self.log.warning("ROLLBACK after failed swap of %s failed", live, exc_info=True)
        if not swapped:
            self.drop_staging(name)
            return
        try:
            if dropped:
                self.warehouse.execute(f"UNDROP TABLE {staging}")
            self.warehouse.execute(f"ALTER TABLE {live} SWAP WITH {staging}")
            self.log.warning("Restored pre-swap content of %s", live)
        except _WAREHOUSE_ERRORS:
            self.log.critical(
                "Could not restore %s; previous content is in %s", live, staging, exc_info=True,
            )
            return
        self.drop_staging(name)

    # ------------------------ After swap ------------------------

    def count_rows(self, name: str) -> int:
        rows = self.warehouse.execute(f"SELECT COUNT(*) AS row_count FROM {self.fq(name)}")
        return int(rows[0]["row_count"]) if rows else 0
