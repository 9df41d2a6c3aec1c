from __future__ import annotations

import enum
import json
import re
import threading
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

# Source length sentinels meaning "no declared maximum".
UNBOUNDED_LENGTHS = (-1, 2_147_483_647)

_NON_IDENT = re.compile(r"[^A-Za-z0-9_]+")


# ============================== Helpers ===============================

def _json_sanitize(value: Any) -> Any:
    """Round-trip through JSON so the value only holds primitives (XCom-safe)."""
    return json.loads(json.dumps(value, default=str))


def normalize(name: str) -> str:
    """
    Destination table name for a source table name.

    Trim, collapse every run of characters outside [A-Za-z0-9_] into one
    underscore, strip leading/trailing underscores, uppercase.
    """
    collapsed = _NON_IDENT.sub("_", name.strip())
    return collapsed.strip("_").upper()


def quote_identifier(ident: str) -> str:
    return '"' + ident.replace('"', '""') + '"'


# ============================== Data model ===============================

@dataclass(frozen=True)
class SourceTable:
    schema: str
    name: str

    @property
    def qualified_name(self) -> str:
        return f"{quote_identifier(self.schema)}.{quote_identifier(self.name)}"

    @property
    def destination_name(self) -> str:
        return normalize(self.name)

    def __str__(self) -> str:
        return f"{self.schema}.{self.name}"


@dataclass(frozen=True)
class SourceColumn:
    name: str
    declared_type: str
    max_length: Optional[int] = None

    @property
    def is_unbounded(self) -> bool:
        return self.max_length is None or self.max_length in UNBOUNDED_LENGTHS


@dataclass(frozen=True)
class DestinationColumn:
    name: str
    type: str

    def ddl(self) -> str:
        return f"{quote_identifier(self.name)} {self.type}"


@dataclass
class Chunk:
    sequence: int
    local_path: str
    row_count: int = 0
    byte_size: int = 0
    compressed: bool = False


class TableState(str, enum.Enum):
    DISCOVER = "DISCOVER"
    ENSURE_SCHEMA = "ENSURE_SCHEMA"
    EXPORT = "EXPORT"
    LOAD_STAGING = "LOAD_STAGING"
    SWAP = "SWAP"
    DONE = "DONE"
    FAILED = "FAILED"


@dataclass
class TableResult:
    table: str
    destination: str
    state: TableState = TableState.DISCOVER
    rows: int = 0
    chunks: int = 0
    elapsed_ms: int = 0
    stage: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.state is TableState.DONE


@dataclass
class RunSummary:
    run_id: str
    tables_attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    results: List[TableResult] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return _json_sanitize(asdict(self))


# ============================== Run exclusivity ===============================

class MigrationRun:
    """
    Process-wide run state: {running, success_count, failure_count}.

    All mutation happens under one lock because table workers finish
    concurrently. A start request while running is refused, never queued.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.running = False
        self.success_count = 0
        self.failure_count = 0

    def try_start(self) -> bool:
        with self._lock:
            if self.running:
                return False
            self.running = True
            self.success_count = 0
            self.failure_count = 0
            return True

    def record(self, succeeded: bool) -> None:
        with self._lock:
            if succeeded:
                self.success_count += 1
            else:
                self.failure_count += 1

    def finish(self) -> None:
        with self._lock:
            self.running = False

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "running": self.running,
                "success_count": self.success_count,
                "failure_count": self.failure_count,
            }


MIGRATION_RUN = MigrationRun()
