from __future__ import annotations

import logging
import os
import re
import shutil
import time
from typing import List

import psycopg2
from snowflake.connector.errors import Error as SnowflakeError

from pg_to_snowflake.MigrationConfig import MigrationConfig
from pg_to_snowflake.chunk_writer import ChunkWriter
from pg_to_snowflake.compressor import compress_chunk
from pg_to_snowflake.errors import (
    DestinationNameError,
    ExportStreamError,
    MigrationConnectionError,
    SwapTransactionError,
)
from pg_to_snowflake.models import (
    Chunk,
    SourceColumn,
    SourceTable,
    TableResult,
    TableState,
    quote_identifier,
)
from pg_to_snowflake.reflector import SchemaReflector
from pg_to_snowflake.stage_uploader import StageUploader, stage_location
from pg_to_snowflake.table_loader import TableLoader
from pg_to_snowflake.type_mapper import destination_column_for

# Module-level logger for helpers
LOG = logging.getLogger(__name__)

ERROR_TEXT_LIMIT = 500
_WHITESPACE = re.compile(r"\s+")

# ============================== Helpers (module-level; stateless) ===============================

def truncate_error(exc: BaseException, limit: int = ERROR_TEXT_LIMIT) -> str:
    text = _WHITESPACE.sub(" ", str(exc) or exc.__class__.__name__).strip()
    return text[:limit]


def format_status_line(result: TableResult) -> str:
    """`<table> - SUCCESS|FAILED - <ms>ms[ - Rows affected: N][ - ERROR: ...]`"""
    status = "SUCCESS" if result.succeeded else "FAILED"
    line = f"{result.table} - {status} - {result.elapsed_ms}ms"
    if result.succeeded:
        line += f" - Rows affected: {result.rows}"
    if result.error:
        line += f" - ERROR: {result.error}"
    return line


def _export_sql(table: SourceTable, columns: List[SourceColumn]) -> str:
    col_list = ", ".join(quote_identifier(c.name) for c in columns)
    sql = f"SELECT {col_list} FROM {table.qualified_name}"
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("Export SQL: %s", sql)
    return sql


# ============================== Engine (single class) ===============================

class MigrationEngine:
    """
    Runs one table through DISCOVER → ENSURE_SCHEMA → EXPORT → LOAD_STAGING → SWAP.
    Holds no per-table state, so one instance serves every worker of a run.
    """

    def __init__(self, config: MigrationConfig, run_id: str, logger: logging.Logger | None = None):
        self.config = config
        self.run_id = run_id
        self.log = logger or logging.getLogger(__name__)
        self.log.debug("MigrationEngine initialized for run %s with logger=%r", run_id, self.log.name)

    def table_dir(self, destination: str) -> str:
        if not destination:
            raise DestinationNameError("Empty destination name has no work directory")
        return os.path.join(self.config.work_dir, self.run_id, destination)

    def _enter(self, result: TableResult, state: TableState, t0: float) -> None:
        result.state = state
        self.log.info("%s -> %s (%.3fs)", result.table, state.value, time.perf_counter() - t0)

    # ------------------------ Export ------------------------

    def export(
        self,
        table: SourceTable,
        columns: List[SourceColumn],
        src,
        uploader: StageUploader,
    ) -> List[Chunk]:
        """
        Stream the table into chunks; each closed chunk is compressed and
        uploaded before the next row is pulled from the source cursor.
        """
        cfg = self.config
        dest = table.destination_name

        def _ship(chunk: Chunk) -> None:
            compress_chunk(chunk)
            uploader.upload(chunk, table=str(table))

        writer = ChunkWriter(
            directory=self.table_dir(dest),
            prefix=dest,
            columns=[c.name for c in columns],
            max_bytes=cfg.chunk_max_bytes,
            on_chunk=_ship,
            trim_strings=cfg.trim_strings,
            logger=self.log,
        )
        cursor_name = f"pg2sf_{dest.lower()}"[:63]
        t0 = time.perf_counter()
        try:
            for row in src.stream(_export_sql(table, columns), cfg.fetch_size, name=cursor_name):
                writer.write(row)
            chunks = writer.close()
        except psycopg2.Error as e:
            writer.discard()
            raise ExportStreamError(f"Export of {table} failed after {writer.rows_written} rows: {e}", table=str(table)) from e
        except BaseException:
            writer.discard()
            raise
        self.log.info(
            "Exported %d rows of %s in %d chunk(s) (%.3fs)",
            writer.rows_written, table, len(chunks), time.perf_counter() - t0,
        )
        return chunks

    # ------------------------ One table ------------------------

    def migrate_table(self, table: SourceTable, src, warehouse) -> TableResult:
        """
        Never raises for per-table failures: the error is recorded on the
        returned TableResult (state FAILED, stage = state that failed).
        """
        cfg = self.config
        dest = table.destination_name
        result = TableResult(table=str(table), destination=dest)
        t0 = time.perf_counter()

        reflector = SchemaReflector(src, warehouse, cfg.snowflake.schema, logger=self.log)
        loader = TableLoader(
            warehouse,
            schema=cfg.snowflake.schema,
            skip_bad_rows=cfg.skip_bad_rows,
            max_rejected_rows=cfg.max_rejected_rows,
            add_missing_columns=cfg.add_missing_columns,
            logger=self.log,
        )
        stage_path = stage_location(cfg.stage_name, self.run_id, dest)
        uploader = StageUploader(warehouse, stage_path, cfg.retry, logger=self.log)

        try:
            self._enter(result, TableState.DISCOVER, t0)
            if not dest:
                raise DestinationNameError(f"{table} has no usable destination name", table=str(table))
            columns = reflector.list_source_columns(table)
            if not columns:
                self.log.info("%s has no columns; nothing to load", table)
                result.state = TableState.DONE
                return result

            self._enter(result, TableState.ENSURE_SCHEMA, t0)
            ensured = loader.ensure_schema(dest, [destination_column_for(c) for c in columns], reflector)

            self._enter(result, TableState.EXPORT, t0)
            chunks = self.export(table, columns, src, uploader)
            result.chunks = len(chunks)
            if not chunks:
                self.log.info("%s produced no chunks; keeping %s as is", table, dest)
                result.state = TableState.DONE
                return result

            self._enter(result, TableState.LOAD_STAGING, t0)
            copy_cols = loader.copy_columns([c.name for c in columns], ensured["columns"])
            loaded = loader.load_staging(dest, copy_cols, stage_path)

            self._enter(result, TableState.SWAP, t0)
            loader.swap(dest)
            uploader.purge()

            try:
                result.rows = loader.count_rows(dest)
            except (SnowflakeError, MigrationConnectionError):
                self.log.warning("Could not count rows of %s after swap", dest, exc_info=True)
                result.rows = loaded["rows_loaded"]
            result.state = TableState.DONE
        except Exception as e:
            result.stage = result.state.value
            result.error = truncate_error(e)
            result.state = TableState.FAILED
            if isinstance(e, SwapTransactionError):
                self.log.critical("Swap transaction failed for %s", table, exc_info=True)
            else:
                self.log.error("Migration of %s failed at %s", table, result.stage, exc_info=True)
            uploader.purge()
        finally:
            if dest:
                shutil.rmtree(self.table_dir(dest), ignore_errors=True)
            result.elapsed_ms = int((time.perf_counter() - t0) * 1000)
            line = format_status_line(result)
            if result.succeeded:
                self.log.info("%s", line)
            else:
                self.log.error("%s", line)
        return result
