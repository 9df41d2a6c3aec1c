import os
import threading

import pytest

from pg_to_snowflake.errors import MigrationConnectionError
from pg_to_snowflake.models import TableState
from pg_to_snowflake.orchestrator import MigrationOrchestrator, new_run_id, run_migration
from pg_to_snowflake.type_mapper import MAX_TEXT_LENGTH


def _orchestrator(config, source_provider, warehouse_provider, run_state):
    return MigrationOrchestrator(config, source_provider, warehouse_provider, run_state)


def _by_table(summary):
    return {r.table: r for r in summary.results}


def test_run_id_format():
    rid = new_run_id()
    stamp, suffix = rid.split("_")
    assert len(stamp) == 16 and stamp.endswith("Z")
    assert len(suffix) == 8


def test_orders_and_empty_end_to_end(config, source_db, warehouse, source_provider, warehouse_provider, run_state):
    source_db.add_table(
        "public", "Orders",
        columns=[("id", "integer", None), ("note", "text", None)],
        rows=[(i, f"order note {i}, with comma") for i in range(150)],
    )
    source_db.add_table("public", "Empty", columns=[("id", "integer", None)], rows=[])

    summary = _orchestrator(config, source_provider, warehouse_provider, run_state).run()

    assert (summary.tables_attempted, summary.succeeded, summary.failed) == (2, 2, 0)
    assert warehouse.tables["ORDERS"]["columns"] == [("id", "INTEGER"), ("note", f"VARCHAR({MAX_TEXT_LENGTH})")]
    assert warehouse.row_count("ORDERS") == 150
    assert "EMPTY" in warehouse.tables
    assert warehouse.row_count("EMPTY") == 0

    results = _by_table(summary)
    assert results["public.Orders"].rows == 150
    assert results["public.Orders"].chunks > 1
    assert results["public.Empty"].chunks == 0
    assert results["public.Empty"].state is TableState.DONE

    # staging and local artifacts are cleaned up
    assert warehouse.stage == {}
    assert "ORDERS_STAGING" not in warehouse.tables
    assert not warehouse.executed('COPY INTO "PUBLIC"."EMPTY_STAGING"')
    assert not any(files for _, _, files in os.walk(config.work_dir))

    assert run_state.snapshot() == {"running": False, "success_count": 2, "failure_count": 0}


def test_swap_failure_isolated_to_one_table(config, source_db, warehouse, source_provider, warehouse_provider, run_state):
    for name in ("alpha", "beta", "gamma"):
        source_db.add_table("public", name, columns=[("id", "integer", None)], rows=[(i,) for i in range(20)])
    warehouse.add_table("BETA", [("id", "INTEGER")], rows=[[i] for i in range(7)])
    warehouse.fail_on(r'^ALTER TABLE "PUBLIC"\."BETA" SWAP WITH', message="Snowflake connection lost")

    summary = _orchestrator(config, source_provider, warehouse_provider, run_state).run()

    assert (summary.succeeded, summary.failed) == (2, 1)
    beta = _by_table(summary)["public.beta"]
    assert beta.state is TableState.FAILED
    assert beta.stage == "SWAP"
    assert "connection lost" in beta.error
    assert warehouse.row_count("BETA") == 7
    assert warehouse.row_count("ALPHA") == 20
    assert warehouse.row_count("GAMMA") == 20


def test_export_failure_uploads_nothing_loadable(make_config, source_db, warehouse, source_provider, warehouse_provider, run_state):
    config = make_config(chunk_max_bytes=64)
    source_db.add_table("public", "big", columns=[("id", "integer", None)], rows=[(i,) for i in range(100)], fail_after=60)
    warehouse.add_table("BIG", [("id", "INTEGER")], rows=[[1], [2]])

    summary = _orchestrator(config, source_provider, warehouse_provider, run_state).run()

    result = summary.results[0]
    assert result.state is TableState.FAILED
    assert result.stage == "EXPORT"
    assert warehouse.row_count("BIG") == 2
    assert warehouse.stage == {}
    assert warehouse.executed("REMOVE @MIGRATION_STAGE/")
    assert not warehouse.executed("COPY INTO")


def test_upload_failure_fails_only_that_table(config, source_db, warehouse, source_provider, warehouse_provider, run_state):
    source_db.add_table("public", "ok", columns=[("id", "integer", None)], rows=[(1,)])
    source_db.add_table("public", "bad", columns=[("id", "integer", None)], rows=[(1,)])
    warehouse.fail_on(r"^PUT .*BAD_chunk_", times=10, message="stage unavailable")

    summary = _orchestrator(config, source_provider, warehouse_provider, run_state).run()

    results = _by_table(summary)
    assert results["public.ok"].succeeded
    assert results["public.bad"].stage == "EXPORT"
    assert len(warehouse.executed("PUT 'file://")) >= config.retry.max_attempts


def test_table_without_columns_counts_as_success(config, source_db, warehouse, source_provider, warehouse_provider, run_state):
    source_db.add_table("public", "hollow", columns=[])
    summary = _orchestrator(config, source_provider, warehouse_provider, run_state).run()
    assert summary.succeeded == 1
    assert "HOLLOW" not in warehouse.tables


def test_discovery_failure_aborts_and_releases_guard(config, source_db, source_provider, warehouse_provider, run_state):
    source_db.unreachable = True
    with pytest.raises(MigrationConnectionError):
        _orchestrator(config, source_provider, warehouse_provider, run_state).run()
    assert run_state.running is False


def test_second_run_is_rejected_while_running(config, source_db, warehouse, source_provider, warehouse_provider, run_state):
    gate = threading.Event()
    slow = source_db.add_table("public", "slow", columns=[("id", "integer", None)], rows=[(1,), (2,)], gate=gate)
    orch = _orchestrator(config, source_provider, warehouse_provider, run_state)

    outcome = {}
    first = threading.Thread(target=lambda: outcome.setdefault("summary", orch.run()))
    first.start()
    try:
        assert slow.started.wait(5)
        before = run_state.snapshot()
        statements_before = len(warehouse.statements)

        assert orch.run() is None
        assert run_migration(config, source_provider, warehouse_provider, run_state) is None

        assert run_state.snapshot() == before
        assert len(warehouse.statements) == statements_before
        assert source_db.streams == ["public.slow"]
    finally:
        gate.set()
        first.join(10)

    assert outcome["summary"].succeeded == 1
    assert run_state.running is False


def test_run_migration_closes_injected_providers_only_when_owned(config, source_db, source_provider, warehouse_provider, run_state):
    summary = run_migration(config, source_provider, warehouse_provider, run_state)
    assert summary.tables_attempted == 0
    # injected providers stay open for the caller
    with source_provider.connection():
        pass


def test_tables_sharing_a_destination_are_both_failed(config, source_db, warehouse, source_provider, warehouse_provider, run_state):
    source_db.add_table("public", "Orders", columns=[("id", "integer", None)], rows=[(i,) for i in range(300)])
    source_db.add_table("sales", "orders", columns=[("id", "integer", None)], rows=[(i,) for i in range(50)])
    source_db.add_table("public", "customers", columns=[("id", "integer", None)], rows=[(1,), (2,)])

    summary = _orchestrator(config, source_provider, warehouse_provider, run_state).run()

    assert (summary.tables_attempted, summary.succeeded, summary.failed) == (3, 1, 2)
    results = _by_table(summary)
    for name in ("public.Orders", "sales.orders"):
        assert results[name].state is TableState.FAILED
        assert results[name].stage == "DISCOVER"
        assert "ORDERS" in results[name].error
    assert "ORDERS" not in warehouse.tables
    assert warehouse.row_count("CUSTOMERS") == 2
    assert source_db.streams == ["public.customers"]
    assert run_state.snapshot() == {"running": False, "success_count": 1, "failure_count": 2}


def test_unnamed_destination_leaves_sibling_work_alone(config, source_db, warehouse, source_provider, warehouse_provider, run_state):
    source_db.add_table("public", "???", columns=[("id", "integer", None)], rows=[(1,)])
    source_db.add_table("public", "alpha", columns=[("id", "integer", None)], rows=[(i,) for i in range(10)])

    summary = _orchestrator(config, source_provider, warehouse_provider, run_state).run()

    results = _by_table(summary)
    assert results["public.???"].state is TableState.FAILED
    assert results["public.???"].stage == "DISCOVER"
    assert results["public.alpha"].succeeded
    assert warehouse.row_count("ALPHA") == 10


def test_existing_upper_case_destination_columns(config, source_db, warehouse, source_provider, warehouse_provider, run_state):
    source_db.add_table("public", "orders", columns=[("id", "integer", None), ("note", "text", None)],
                        rows=[(i, f"n{i}") for i in range(25)])
    warehouse.add_table("ORDERS", [("ID", "INTEGER"), ("NOTE", "VARCHAR")], rows=[[0, "old"]])

    summary = _orchestrator(config, source_provider, warehouse_provider, run_state).run()

    assert summary.succeeded == 1
    assert warehouse.row_count("ORDERS") == 25
    assert all('("ID", "NOTE")' in s for s in warehouse.executed("COPY INTO"))
