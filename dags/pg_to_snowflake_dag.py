from __future__ import annotations

import logging
from typing import Any, Dict

import pendulum

from airflow.decorators import dag, task
from airflow.models import Variable

from pg_to_snowflake.MigrationConfig import load_config
from pg_to_snowflake.alerts import format_run_summary, send_discord_alert
from pg_to_snowflake.logging_config import configure_logging
from pg_to_snowflake.orchestrator import run_migration

log = logging.getLogger(__name__)


def _env_file() -> str | None:
    path = Variable.get("PG_TO_SNOWFLAKE_ENV", default_var="").strip()
    return path or None


@dag(
    dag_id="pg_to_snowflake_migration",
    schedule="0 1 * * *",
    start_date=pendulum.datetime(2025, 8, 18, tz="UTC"),
    catchup=False,
    max_active_runs=1,
    tags=["pg2sf", "snowflake", "migration"],
    description="Full reload of every PostgreSQL base table into Snowflake",
)
def pg_to_snowflake_migration():

    @task
    def migrate() -> Dict[str, Any]:
        cfg = load_config(_env_file())
        configure_logging(log_dir=cfg.log_dir)
        summary = run_migration(cfg)
        if summary is None:
            log.warning("Another migration run is active; this run was rejected.")
            return {"rejected": True}
        log.info(
            "Migration %s: attempted=%d succeeded=%d failed=%d",
            summary.run_id, summary.tables_attempted, summary.succeeded, summary.failed,
        )
        return summary.as_dict()

    @task(do_xcom_push=False)
    def alert_on_failures(summary: Dict[str, Any]) -> None:
        if summary.get("rejected"):
            log.info("Run was rejected; nothing to report.")
            return
        if not int(summary.get("failed", 0)):
            log.info("All %s table(s) migrated; no alerting.", summary.get("tables_attempted", 0))
            return
        cfg = load_config(_env_file())
        send_discord_alert(format_run_summary(summary), cfg.discord_webhook)

    alert_on_failures(migrate())


pg_to_snowflake_migration()
