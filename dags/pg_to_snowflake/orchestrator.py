from __future__ import annotations

import logging
import time
import uuid
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from pg_to_snowflake.MigrationConfig import MigrationConfig
from pg_to_snowflake.connections import SourceConnectionProvider, WarehouseConnectionProvider
from pg_to_snowflake.engine import MigrationEngine, truncate_error
from pg_to_snowflake.errors import DestinationNameError
from pg_to_snowflake.models import (
    MIGRATION_RUN,
    MigrationRun,
    RunSummary,
    SourceTable,
    TableResult,
    TableState,
)
from pg_to_snowflake.reflector import SchemaReflector

LOG = logging.getLogger(__name__)


def new_run_id(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"{now.strftime('%Y%m%dT%H%M%SZ')}_{uuid.uuid4().hex[:8]}"


class MigrationOrchestrator:
    """
    Fans the per-table pipeline out over a bounded thread pool.

    Each worker takes its own source connection from the pool and its own
    warehouse connection; the MigrationRun counters are the only state the
    workers share.
    """

    def __init__(
        self,
        config: MigrationConfig,
        source: SourceConnectionProvider,
        warehouse: WarehouseConnectionProvider,
        run_state: MigrationRun = MIGRATION_RUN,
        logger: logging.Logger | None = None,
    ):
        self.config = config
        self.source = source
        self.warehouse = warehouse
        self.run_state = run_state
        self.log = logger or LOG

    # ------------------------ Run-level steps ------------------------

    def discover(self) -> List[SourceTable]:
        with self.source.connection() as src:
            return SchemaReflector(src, logger=self.log).list_source_tables()

    def ensure_stage(self) -> None:
        with self.warehouse.connection() as wh:
            wh.execute(f"CREATE STAGE IF NOT EXISTS {self.config.stage_name}")
        self.log.info("Stage %s ready", self.config.stage_name)

    def claim_destinations(self, tables: List[SourceTable]) -> Tuple[List[SourceTable], List[TableResult]]:
        """
        Split discovered tables into those that own their destination name and
        those sharing it with another source table. Every table of a shared
        name is failed, since both would load into one destination.
        """
        by_dest: Dict[str, List[SourceTable]] = defaultdict(list)
        for t in tables:
            by_dest[t.destination_name].append(t)

        runnable: List[SourceTable] = []
        rejected: List[TableResult] = []
        for t in tables:
            rivals = [r for r in by_dest[t.destination_name] if r is not t]
            if not t.destination_name or not rivals:
                runnable.append(t)
                continue
            err = DestinationNameError(
                f"{t} maps to destination {t.destination_name}, as does {', '.join(str(r) for r in rivals)}",
                table=str(t),
            )
            self.log.error("%s; skipping", err)
            rejected.append(TableResult(
                table=str(t),
                destination=t.destination_name,
                state=TableState.FAILED,
                stage=err.stage,
                error=truncate_error(err),
            ))
            self.run_state.record(False)
        return runnable, rejected

    def _run_table(self, engine: MigrationEngine, table: SourceTable) -> TableResult:
        try:
            with self.source.connection() as src, self.warehouse.connection() as wh:
                result = engine.migrate_table(table, src, wh)
        except Exception as e:
            # connection could not be obtained for this table
            self.log.error("Could not start migration of %s", table, exc_info=True)
            result = TableResult(
                table=str(table),
                destination=table.destination_name,
                state=TableState.FAILED,
                stage=getattr(e, "stage", "CONNECT"),
                error=truncate_error(e),
            )
        self.run_state.record(result.succeeded)
        return result

    # ------------------------ Entry point ------------------------

    def run(self, run_id: Optional[str] = None) -> Optional[RunSummary]:
        """
        Migrate every source base table. Returns None (and does nothing) when a
        run is already in progress. Discovery failures abort the run and are
        raised; per-table failures are only recorded.
        """
        if not self.run_state.try_start():
            self.log.warning("Migration already running; new run request rejected")
            return None

        t0 = time.perf_counter()
        run_id = run_id or new_run_id()
        summary = RunSummary(run_id=run_id)
        try:
            self.log.info("Migration run %s started", run_id)
            tables = self.discover()
            summary.tables_attempted = len(tables)
            if not tables:
                self.log.info("No source tables found")
                return summary
            runnable, rejected = self.claim_destinations(tables)
            summary.results.extend(rejected)

            if runnable:
                self.ensure_stage()
                engine = MigrationEngine(self.config, run_id)
                workers = max(1, min(self.config.max_workers, len(runnable)))
                with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="pg2sf") as pool:
                    futures = [pool.submit(self._run_table, engine, t) for t in runnable]
                    for fut in as_completed(futures):
                        summary.results.append(fut.result())

            summary.results.sort(key=lambda r: r.table)
            summary.succeeded = sum(1 for r in summary.results if r.succeeded)
            summary.failed = len(summary.results) - summary.succeeded
            self.log.info(
                "Migration run %s finished: %d attempted, %d succeeded, %d failed (%.3fs)",
                run_id, summary.tables_attempted, summary.succeeded, summary.failed,
                time.perf_counter() - t0,
            )
            return summary
        except Exception:
            self.log.error("Migration run %s aborted", run_id, exc_info=True)
            raise
        finally:
            self.run_state.finish()


def run_migration(
    config: MigrationConfig,
    source: SourceConnectionProvider | None = None,
    warehouse: WarehouseConnectionProvider | None = None,
    run_state: MigrationRun = MIGRATION_RUN,
) -> Optional[RunSummary]:
    """Open (or use the injected) providers, run once, close what was opened here."""
    own_source = source is None
    own_warehouse = warehouse is None
    source = source or SourceConnectionProvider(config.source)
    warehouse = warehouse or WarehouseConnectionProvider(config.snowflake)
    if run_state.running:
        LOG.warning("Migration already running; new run request rejected")
        return None
    try:
        source.open()
        warehouse.open()
        return MigrationOrchestrator(config, source, warehouse, run_state).run()
    finally:
        if own_source:
            source.close()
        if own_warehouse:
            warehouse.close()
