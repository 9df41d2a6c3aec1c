from __future__ import annotations

# ============================== Error taxonomy ===============================


class MigrationError(Exception):
    """Base class for every failure raised by the migration engine."""

    stage: str = "UNKNOWN"

    def __init__(self, message: str, *, table: str | None = None):
        super().__init__(message)
        self.table = table


class ConfigurationError(MigrationError):
    """Required configuration is missing or malformed; a run cannot start."""

    stage = "CONFIG"


class MigrationConnectionError(MigrationError, ConnectionError):
    """Source or destination is unreachable."""

    stage = "CONNECT"


class SchemaMismatchError(MigrationError):
    """Destination table reports no columns, so a load would run blind."""

    stage = "ENSURE_SCHEMA"


class DestinationDDLError(MigrationError):
    """CREATE / ALTER of the destination table was refused by the warehouse."""

    stage = "ENSURE_SCHEMA"


class DestinationNameError(MigrationError):
    """Source table name is unusable as a destination: empty after normalisation, or taken by another table."""

    stage = "DISCOVER"



class ExportStreamError(MigrationError):
    """The row-producing query failed mid-stream."""

    stage = "EXPORT"


class UploadError(MigrationError):
    """A chunk could not be pushed to the staging area within the retry bound."""

    stage = "EXPORT"

    def __init__(self, message: str, *, table: str | None = None, attempts: int = 0):
        super().__init__(message, table=table)
        self.attempts = attempts


class LoadError(MigrationError):
    """Bulk load into the staging table failed or rejected too many rows."""

    stage = "LOAD_STAGING"

    def __init__(self, message: str, *, table: str | None = None,
                 rows_loaded: int = 0, rows_rejected: int = 0):
        super().__init__(message, table=table)
        self.rows_loaded = rows_loaded
        self.rows_rejected = rows_rejected


class SwapTransactionError(MigrationError):
    """The swap transaction failed and was rolled back."""

    stage = "SWAP"
