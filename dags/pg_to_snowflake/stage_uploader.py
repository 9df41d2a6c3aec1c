from __future__ import annotations

import logging
import os
import time

from snowflake.connector.errors import Error as SnowflakeError

from pg_to_snowflake.MigrationConfig import RetryPolicy
from pg_to_snowflake.errors import MigrationConnectionError, UploadError
from pg_to_snowflake.models import Chunk

LOG = logging.getLogger(__name__)


def stage_location(stage_name: str, run_id: str, table: str) -> str:
    """Per-run, per-table namespace inside the named stage."""
    return f"@{stage_name}/{run_id}/{table}/"


class StageUploader:
    def __init__(self, warehouse, stage_path: str, retry: RetryPolicy | None = None, logger: logging.Logger | None = None):
        self.warehouse = warehouse
        self.stage_path = stage_path
        self.retry = retry or RetryPolicy()
        self.log = logger or LOG
        self.uploaded: list[str] = []

    def upload(self, chunk: Chunk, table: str | None = None) -> None:
        """
        PUT one artifact, retrying with linear backoff. Deletes the local file
        on success; raises UploadError once attempts are exhausted.
        """
        name = os.path.basename(chunk.local_path)
        last_error: Exception | None = None
        for attempt in range(1, self.retry.max_attempts + 1):
            t0 = time.perf_counter()
            try:
                self.warehouse.upload_file(chunk.local_path, self.stage_path)
            except (SnowflakeError, MigrationConnectionError, OSError) as e:
                last_error = e
                self.log.warning(
                    "Upload of %s failed (attempt %d/%d): %s",
                    name, attempt, self.retry.max_attempts, e,
                )
                if attempt < self.retry.max_attempts:
                    self.retry.sleep(self.retry.delay_for(attempt))
                continue
            self.uploaded.append(name)
            self.log.info("Uploaded %s to %s (%.3fs)", name, self.stage_path, time.perf_counter() - t0)
            os.remove(chunk.local_path)
            return
        raise UploadError(
            f"Upload of {name} failed after {self.retry.max_attempts} attempts: {last_error}",
            table=table,
            attempts=self.retry.max_attempts,
        ) from last_error

    def purge(self) -> None:
        """Best-effort removal of everything under this stage path."""
        if not self.uploaded:
            return
        try:
            self.warehouse.execute(f"REMOVE {self.stage_path}")
            self.log.info("Removed staged artifacts under %s", self.stage_path)
        except (SnowflakeError, MigrationConnectionError) as e:
            self.log.warning("Could not remove staged artifacts under %s: %s", self.stage_path, e)
