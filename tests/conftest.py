from __future__ import annotations

import csv
import dataclasses
import gzip
import io
import os
import re
import threading
from typing import Any, Dict, List, Optional, Tuple

import psycopg2
import pytest
from snowflake.connector.errors import ProgrammingError

from pg_to_snowflake.MigrationConfig import MigrationConfig, RetryPolicy, SnowflakeSettings, SourceSettings
from pg_to_snowflake.connections import SourceConnectionProvider, WarehouseConnectionProvider
from pg_to_snowflake.models import MigrationRun

_QUOTED = r'"((?:[^"]|"")+)"'
_FQ = re.compile(_QUOTED + r"\." + _QUOTED)


def _unquote(s: str) -> str:
    return s.replace('""', '"')


def _fq_names(sql: str) -> List[Tuple[str, str]]:
    return [(_unquote(a), _unquote(b)) for a, b in _FQ.findall(sql)]


# ============================== Fake PostgreSQL ===============================

class FakeSourceTable:
    def __init__(self, columns, rows=None, fail_after: Optional[int] = None, gate: Optional[threading.Event] = None):
        self.columns = list(columns)           # [(name, data_type, character_maximum_length)]
        self.rows = list(rows or [])
        self.fail_after = fail_after
        self.gate = gate
        self.started = threading.Event()


class FakeSourceDB:
    def __init__(self):
        self.tables: Dict[Tuple[str, str], FakeSourceTable] = {}
        self.streams: List[str] = []
        self.unreachable = False
        self._lock = threading.Lock()

    def add_table(self, schema: str, name: str, columns, rows=None, **kw) -> FakeSourceTable:
        t = FakeSourceTable(columns, rows, **kw)
        self.tables[(schema, name)] = t
        return t


class FakePgCursor:
    def __init__(self, db: FakeSourceDB, name: Optional[str] = None):
        self.db = db
        self.name = name
        self.itersize = 2000
        self._rows: List[tuple] = []
        self._table: Optional[FakeSourceTable] = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def execute(self, sql: str, params=None):
        if self.db.unreachable:
            raise psycopg2.OperationalError("could not connect to server")
        if "information_schema.tables" in sql:
            self._rows = sorted(self.db.tables.keys())
        elif "information_schema.columns" in sql:
            t = self.db.tables.get(tuple(params))
            self._rows = [tuple(c) for c in t.columns] if t else []
        else:
            schema, name = _fq_names(sql)[-1]
            self._table = self.db.tables[(schema, name)]
            self._rows = [tuple(r) for r in self._table.rows]
            with self.db._lock:
                self.db.streams.append(f"{schema}.{name}")

    def fetchall(self):
        return list(self._rows)

    def __iter__(self):
        t = self._table
        if t is not None:
            t.started.set()
            if t.gate is not None:
                t.gate.wait(10)
        for i, row in enumerate(self._rows):
            if t is not None and t.fail_after is not None and i >= t.fail_after:
                raise psycopg2.OperationalError("server closed the connection unexpectedly")
            yield row

    def close(self):
        pass


class FakePgConnection:
    closed = 0

    def __init__(self, db: FakeSourceDB):
        self.db = db

    def cursor(self, name=None, **kw):
        return FakePgCursor(self.db, name)

    def commit(self):
        pass

    def rollback(self):
        pass


class FakePool:
    def __init__(self, db: FakeSourceDB, minconn, maxconn, **kwargs):
        self.db = db
        self.kwargs = kwargs
        self.out = 0
        self.closed = False

    def getconn(self):
        if self.db.unreachable:
            raise psycopg2.OperationalError("could not connect to server")
        self.out += 1
        return FakePgConnection(self.db)

    def putconn(self, conn, close=False):
        self.out -= 1

    def closeall(self):
        self.closed = True


# ============================== Fake Snowflake ===============================

class FakeWarehouse:
    """
    In-memory Snowflake: interprets the statements the loader, uploader and
    reflector emit. DDL applies immediately, as it does in Snowflake.
    """

    def __init__(self, schema: str = "PUBLIC"):
        self.schema = schema
        self.tables: Dict[str, Dict[str, Any]] = {}
        self.dropped: Dict[str, Dict[str, Any]] = {}
        self.stage: Dict[str, bytes] = {}
        self.statements: List[str] = []
        self.connects = 0
        self._rules: List[List[Any]] = []
        self._lock = threading.RLock()

    # --- setup helpers ---
    def add_table(self, name: str, columns: List[Tuple[str, str]], rows=None):
        self.tables[name] = {"columns": list(columns), "rows": [list(r) for r in (rows or [])]}

    def row_count(self, name: str) -> int:
        return len(self.tables[name]["rows"])

    def fail_on(self, pattern: str, times: int = 1, message: str = "simulated failure"):
        self._rules.append([re.compile(pattern), times, message])

    def executed(self, prefix: str) -> List[str]:
        return [s for s in self.statements if s.startswith(prefix)]

    # --- interpreter ---
    def execute(self, sql: str, params=None) -> List[Dict[str, Any]]:
        stmt = " ".join(sql.split())
        with self._lock:
            self.statements.append(stmt)
            for rule in self._rules:
                if rule[1] > 0 and rule[0].search(stmt):
                    rule[1] -= 1
                    raise ProgrammingError(msg=rule[2])
            return self._dispatch(stmt, params)

    def _dispatch(self, stmt: str, params) -> List[Dict[str, Any]]:
        upper = stmt.upper()
        if upper in ("BEGIN", "COMMIT", "ROLLBACK") or upper.startswith("CREATE STAGE"):
            return []
        if "INFORMATION_SCHEMA.TABLES" in upper:
            _, name = params
            return [{"n": 1 if self._find(name) else 0}]
        if "INFORMATION_SCHEMA.COLUMNS" in upper:
            _, name = params
            key = self._find(name)
            cols = self.tables[key]["columns"] if key else []
            return [{"column_name": c} for c, _ in cols]
        if upper.startswith("PUT "):
            m = re.match(r"PUT 'file://(.+?)' (\S+)", stmt)
            local, path = m.group(1), m.group(2)
            with open(local, "rb") as fh:
                self.stage[path + os.path.basename(local)] = fh.read()
            return [{"source": os.path.basename(local), "status": "UPLOADED"}]
        if upper.startswith("REMOVE "):
            prefix = stmt.split()[1]
            for k in [k for k in self.stage if k.startswith(prefix)]:
                del self.stage[k]
            return []
        names = [n for _, n in _fq_names(stmt)]
        if upper.startswith("CREATE TABLE IF NOT EXISTS"):
            if names[0] not in self.tables:
                inner = stmt[stmt.index("(", stmt.index(names[0])) + 1: stmt.rindex(")")]
                cols = [(_unquote(c), t.strip()) for c, t in re.findall(_QUOTED + r"\s+(.+?)(?=,\s*\"|$)", inner)]
                self.add_table(names[0], cols)
            return []
        if upper.startswith("CREATE OR REPLACE TABLE") and " LIKE " in upper:
            self.tables[names[0]] = {"columns": list(self.tables[names[1]]["columns"]), "rows": []}
            return []
        if upper.startswith("ALTER TABLE") and " SWAP WITH " in upper:
            a, b = names[0], names[1]
            self.tables[a], self.tables[b] = self.tables[b], self.tables[a]
            return []
        if upper.startswith("ALTER TABLE") and " ADD COLUMN " in upper:
            col = re.search(r"ADD COLUMN " + _QUOTED + r"\s+(.+)$", stmt)
            t = self.tables[names[0]]
            t["columns"].append((_unquote(col.group(1)), col.group(2)))
            for r in t["rows"]:
                r.append(None)
            return []
        if upper.startswith("DROP TABLE IF EXISTS"):
            if names[0] in self.tables:
                self.dropped[names[0]] = self.tables.pop(names[0])
            return []
        if upper.startswith("UNDROP TABLE"):
            self.tables[names[0]] = self.dropped.pop(names[0])
            return []
        if upper.startswith("COPY INTO"):
            return self._copy(stmt, names[0])
        if upper.startswith("SELECT COUNT(*) AS ROW_COUNT"):
            return [{"row_count": len(self.tables[names[0]]["rows"])}]
        raise ProgrammingError(msg=f"fake warehouse cannot interpret: {stmt}")

    def _find(self, name: str) -> Optional[str]:
        return next((k for k in self.tables if k.upper() == name.upper()), None)

    def _copy(self, stmt: str, target: str) -> List[Dict[str, Any]]:
        col_part = stmt[stmt.index("(") + 1: stmt.index(") FROM")]
        columns = [_unquote(c) for c in re.findall(_QUOTED, col_part)]
        location = re.search(r" FROM (@\S+)", stmt).group(1)
        pattern = re.search(r"PATTERN = '([^']+)'", stmt).group(1)
        table = self.tables[target]
        order = [c for c, _ in table["columns"]]
        unknown = [c for c in columns if c not in order]
        if unknown:
            raise ProgrammingError(msg=f"invalid identifier '\"{unknown[0]}\"'")
        results = []
        for key in sorted(k for k in self.stage if k.startswith(location)):
            if not re.fullmatch(pattern, os.path.basename(key)):
                continue
            text = gzip.decompress(self.stage[key]).decode("utf-8")
            records = list(csv.reader(io.StringIO(text)))[1:]
            for rec in records:
                values = dict(zip(columns, (v if v != "" else None for v in rec)))
                table["rows"].append([values.get(c) for c in order])
            results.append({
                "file": key, "status": "LOADED", "rows_parsed": len(records),
                "rows_loaded": len(records), "errors_seen": 0, "first_error": None,
            })
        return results or [{"status": "Copy executed with 0 files processed."}]


class FakeSnowflakeCursor:
    def __init__(self, wh: FakeWarehouse):
        self.wh = wh
        self.description = None
        self._rows: List[tuple] = []

    def execute(self, sql, params=None):
        rows = self.wh.execute(sql, params)
        if rows:
            keys = list(rows[0].keys())
            self.description = [(k.upper(),) for k in keys]
            self._rows = [tuple(r.get(k) for k in keys) for r in rows]
        else:
            self.description = None
            self._rows = []
        return self

    def fetchall(self):
        return list(self._rows)

    def close(self):
        pass


class FakeSnowflakeConnection:
    def __init__(self, wh: FakeWarehouse):
        self.wh = wh

    def cursor(self):
        return FakeSnowflakeCursor(self.wh)

    def close(self):
        pass


# ============================== Fixtures ===============================

@pytest.fixture
def config(tmp_path) -> MigrationConfig:
    return MigrationConfig(
        source=SourceSettings(host="pg", database="app", user="etl"),
        snowflake=SnowflakeSettings(account="acct", user="loader", database="ANALYTICS"),
        work_dir=str(tmp_path / "work"),
        chunk_max_bytes=1024,
        fetch_size=50,
        max_workers=3,
        retry=RetryPolicy.immediate(),
    )


@pytest.fixture
def make_config(config):
    def _make(**changes) -> MigrationConfig:
        return dataclasses.replace(config, **changes)
    return _make


@pytest.fixture
def source_db() -> FakeSourceDB:
    return FakeSourceDB()


@pytest.fixture
def warehouse() -> FakeWarehouse:
    return FakeWarehouse()


@pytest.fixture
def source_provider(config, source_db):
    provider = SourceConnectionProvider(config.source, pool_factory=lambda *a, **kw: FakePool(source_db, *a, **kw))
    with provider:
        yield provider


@pytest.fixture
def warehouse_provider(config, warehouse):
    def _connect(**kwargs):
        warehouse.connects += 1
        return FakeSnowflakeConnection(warehouse)

    provider = WarehouseConnectionProvider(config.snowflake, connect=_connect)
    with provider:
        yield provider


@pytest.fixture
def run_state() -> MigrationRun:
    return MigrationRun()
