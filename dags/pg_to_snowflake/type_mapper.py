from __future__ import annotations

import logging
import re
from typing import Dict, Optional

from pg_to_snowflake.models import UNBOUNDED_LENGTHS, DestinationColumn, SourceColumn

LOG = logging.getLogger(__name__)

# Snowflake's widest VARCHAR / CHAR.
MAX_TEXT_LENGTH = 16_777_216

MAX_VARCHAR = f"VARCHAR({MAX_TEXT_LENGTH})"
FALLBACK_TYPE = MAX_VARCHAR

_LENGTH_SUFFIX = re.compile(r"\(.*\)")
_SPACES = re.compile(r"\s+")

# keyword -> Snowflake type; "{n}" marks a length-carrying type
_TYPE_MAP: Dict[str, str] = {
    # integers
    "tinyint": "SMALLINT",
    "smallint": "SMALLINT",
    "int2": "SMALLINT",
    "smallserial": "SMALLINT",
    "int": "INTEGER",
    "integer": "INTEGER",
    "int4": "INTEGER",
    "serial": "INTEGER",
    "bigint": "BIGINT",
    "int8": "BIGINT",
    "bigserial": "BIGINT",
    # fixed point
    "decimal": "NUMBER(38, 10)",
    "numeric": "NUMBER(38, 10)",
    "money": "NUMBER(38, 4)",
    "smallmoney": "NUMBER(38, 4)",
    # floating
    "float": "FLOAT",
    "real": "FLOAT",
    "double precision": "FLOAT",
    "float4": "FLOAT",
    "float8": "FLOAT",
    # boolean
    "bit": "BOOLEAN",
    "boolean": "BOOLEAN",
    "bool": "BOOLEAN",
    # temporal
    "date": "DATE",
    "time": "TIME",
    "time without time zone": "TIME",
    "datetime": "TIMESTAMP_NTZ",
    "datetime2": "TIMESTAMP_NTZ",
    "smalldatetime": "TIMESTAMP_NTZ",
    "timestamp": "TIMESTAMP_NTZ",
    "timestamp without time zone": "TIMESTAMP_NTZ",
    "datetimeoffset": "TIMESTAMP_TZ",
    "timestamptz": "TIMESTAMP_TZ",
    "timestamp with time zone": "TIMESTAMP_TZ",
    # bounded character
    "char": "CHAR({n})",
    "nchar": "CHAR({n})",
    "character": "CHAR({n})",
    "bpchar": "CHAR({n})",
    "varchar": "VARCHAR({n})",
    "nvarchar": "VARCHAR({n})",
    "character varying": "VARCHAR({n})",
    # long / opaque text
    "text": MAX_VARCHAR,
    "ntext": MAX_VARCHAR,
    "xml": MAX_VARCHAR,
    "json": MAX_VARCHAR,
    "jsonb": MAX_VARCHAR,
    "sql_variant": MAX_VARCHAR,
    "hierarchyid": MAX_VARCHAR,
    "citext": MAX_VARCHAR,
    "uniqueidentifier": "VARCHAR(36)",
    "uuid": "VARCHAR(36)",
    # binary
    "binary": "BINARY",
    "varbinary": "BINARY",
    "image": "BINARY",
    "bytea": "BINARY",
}


def _keyword(declared_type: str | None) -> str:
    t = _LENGTH_SUFFIX.sub(" ", (declared_type or "").lower())
    return _SPACES.sub(" ", t).strip()


def _text_length(max_length: Optional[int]) -> int:
    if max_length is None or max_length in UNBOUNDED_LENGTHS:
        return MAX_TEXT_LENGTH
    return min(max(int(max_length), 1), MAX_TEXT_LENGTH)


def map_type(declared_type: str | None, max_length: Optional[int] = None) -> str:
    """
    Destination type for a source column.

    Never raises: unknown keywords fall back to max-width VARCHAR so that
    source schema drift doesn't block a migration.
    """
    key = _keyword(declared_type)
    template = _TYPE_MAP.get(key)
    if template is None:
        LOG.debug("Unmapped source type %r -> %s", declared_type, FALLBACK_TYPE)
        return FALLBACK_TYPE
    if "{n}" in template:
        return template.format(n=_text_length(max_length))
    return template


def destination_column_for(column: SourceColumn) -> DestinationColumn:
    dest = DestinationColumn(name=column.name, type=map_type(column.declared_type, column.max_length))
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug(
            "Mapped column %s: %s(%s) -> %s",
            column.name, column.declared_type, column.max_length, dest.type,
        )
    return dest
