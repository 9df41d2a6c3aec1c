from __future__ import annotations

import logging
import re
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

import psycopg2
import psycopg2.pool
import snowflake.connector
from snowflake.connector.errors import Error as SnowflakeError

from pg_to_snowflake.MigrationConfig import SnowflakeSettings, SourceSettings
from pg_to_snowflake.errors import MigrationConnectionError

LOG = logging.getLogger(__name__)
SNOWFLAKE_LOG = logging.getLogger("pg_to_snowflake.snowflake")

_TERMINATED = re.compile(r"terminated connection|connection was terminated", re.IGNORECASE)


# ============================== Source (PostgreSQL) ===============================

class SourceSession:
    """One pooled source connection, used by a single table pipeline."""

    def __init__(self, conn, logger: logging.Logger | None = None):
        self.conn = conn
        self.log = logger or LOG

    def query(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[tuple]:
        t0 = time.perf_counter()
        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug("Source query: %s params=%r", sql, params)
        with self.conn.cursor() as c:
            c.execute(sql, params)
            rows = c.fetchall()
        self.conn.commit()
        self.log.debug("Source query returned %d rows (%.3fs)", len(rows), time.perf_counter() - t0)
        return rows

    def stream(self, sql: str, itersize: int, name: str = "pg2sf_export") -> Iterator[tuple]:
        """
        Server-side cursor; the driver pulls `itersize` rows per round trip and
        no more until the consumer asks for them.
        """
        cur = self.conn.cursor(name=name)
        cur.itersize = itersize
        try:
            cur.execute(sql)
            for row in cur:
                yield tuple(row)
        finally:
            try:
                cur.close()
            finally:
                self.conn.rollback()


class SourceConnectionProvider:
    def __init__(
        self,
        settings: SourceSettings,
        pool_factory: Callable[..., Any] = psycopg2.pool.ThreadedConnectionPool,
        logger: logging.Logger | None = None,
    ):
        self.settings = settings
        self._pool_factory = pool_factory
        self._pool = None
        self.log = logger or LOG

    def open(self) -> "SourceConnectionProvider":
        if self._pool is not None:
            return self
        s = self.settings
        self.log.info("Opening source pool %s@%s:%s/%s (max=%d)", s.user, s.host, s.port, s.database, s.max_connections)
        try:
            self._pool = self._pool_factory(
                s.min_connections,
                s.max_connections,
                host=s.host,
                port=s.port,
                dbname=s.database,
                user=s.user,
                password=s.password,
            )
        except psycopg2.Error as e:
            raise MigrationConnectionError(f"Source database unreachable: {e}") from e
        return self

    def close(self) -> None:
        if self._pool is not None:
            self.log.info("Closing source pool")
            self._pool.closeall()
            self._pool = None

    def __enter__(self) -> "SourceConnectionProvider":
        return self.open()

    def __exit__(self, *exc) -> None:
        self.close()

    @contextmanager
    def connection(self) -> Iterator[SourceSession]:
        if self._pool is None:
            raise MigrationConnectionError("Source connection provider is not open")
        try:
            conn = self._pool.getconn()
        except psycopg2.Error as e:
            raise MigrationConnectionError(f"Could not obtain source connection: {e}") from e
        try:
            yield SourceSession(conn, self.log)
        finally:
            # a connection the server dropped must not go back into the pool
            self._pool.putconn(conn, close=bool(getattr(conn, "closed", 0)))


# ============================== Destination (Snowflake) ===============================

class WarehouseSession:
    """
    One Snowflake connection, used by a single table pipeline.

    Rows come back as dicts keyed by lower-cased column name. A statement
    failing because the server terminated the connection is re-run once on
    a fresh connection.
    """

    def __init__(self, connect: Callable[[], Any], logger: logging.Logger | None = None):
        self._connect = connect
        self.log = logger or SNOWFLAKE_LOG
        self.conn = self._open()

    def _open(self):
        try:
            return self._connect()
        except SnowflakeError as e:
            raise MigrationConnectionError(f"Snowflake unreachable: {e}") from e

    def _run(self, sql: str, params: Optional[Sequence[Any]]) -> List[Dict[str, Any]]:
        cur = self.conn.cursor()
        try:
            cur.execute(sql, params)
            if not cur.description:
                return []
            names = [d[0].lower() for d in cur.description]
            return [dict(zip(names, row)) for row in cur.fetchall()]
        finally:
            cur.close()

    def execute(self, sql: str, params: Optional[Sequence[Any]] = None, *, retry: bool = True) -> List[Dict[str, Any]]:
        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug("Snowflake SQL: %s params=%r", sql, params)
        try:
            return self._run(sql, params)
        except SnowflakeError as e:
            if retry and _TERMINATED.search(str(e)):
                self.log.warning("Snowflake connection was terminated. Retrying...")
                self.reconnect()
                return self.execute(sql, params, retry=False)
            raise

    def reconnect(self) -> None:
        try:
            self.conn.close()
        except SnowflakeError:
            self.log.debug("Ignoring error while closing terminated connection", exc_info=True)
        self.conn = self._open()

    def upload_file(self, local_path: str, stage_path: str) -> List[Dict[str, Any]]:
        local = local_path.replace("\\", "/")
        return self.execute(f"PUT 'file://{local}' {stage_path} AUTO_COMPRESS=FALSE OVERWRITE=TRUE")

    def begin(self) -> None:
        self.execute("BEGIN", retry=False)

    def commit(self) -> None:
        self.execute("COMMIT", retry=False)

    def rollback(self) -> None:
        self.execute("ROLLBACK", retry=False)

    def close(self) -> None:
        try:
            self.conn.close()
        except SnowflakeError:
            self.log.debug("Error closing Snowflake connection", exc_info=True)


class WarehouseConnectionProvider:
    def __init__(
        self,
        settings: SnowflakeSettings,
        connect: Callable[..., Any] = snowflake.connector.connect,
        logger: logging.Logger | None = None,
    ):
        self.settings = settings
        self._connect = connect
        self._lock = threading.Lock()
        self._open = False
        self.log = logger or SNOWFLAKE_LOG

    def open(self) -> "WarehouseConnectionProvider":
        with self._lock:
            self._open = True
        return self

    def close(self) -> None:
        with self._lock:
            self._open = False

    def __enter__(self) -> "WarehouseConnectionProvider":
        return self.open()

    def __exit__(self, *exc) -> None:
        self.close()

    def new_session(self) -> WarehouseSession:
        if not self._open:
            raise MigrationConnectionError("Warehouse connection provider is not open")
        kwargs = self.settings.connect_kwargs()
        return WarehouseSession(lambda: self._connect(**kwargs), self.log)

    @contextmanager
    def connection(self) -> Iterator[WarehouseSession]:
        session = self.new_session()
        try:
            yield session
        finally:
            session.close()
