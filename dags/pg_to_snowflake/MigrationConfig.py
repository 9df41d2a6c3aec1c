from __future__ import annotations

import os
import tempfile
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional

from dotenv import load_dotenv

from pg_to_snowflake.errors import ConfigurationError

DEFAULT_CHUNK_MAX_BYTES = 50 * 1024 * 1024

# ============================== Config model ===============================


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_seconds: float = 1.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False, compare=False)

    def delay_for(self, attempt: int) -> float:
        """Linear backoff: attempt × base delay."""
        return attempt * self.backoff_seconds

    @classmethod
    def immediate(cls, max_attempts: int = 3) -> "RetryPolicy":
        return cls(max_attempts=max_attempts, backoff_seconds=0.0, sleep=lambda _s: None)


@dataclass(frozen=True)
class SourceSettings:
    host: str
    database: str
    user: str
    password: str = ""
    port: int = 5432
    min_connections: int = 1
    max_connections: int = 10


@dataclass(frozen=True)
class SnowflakeSettings:
    account: str
    user: str
    database: str
    password: str = ""
    warehouse: Optional[str] = None
    schema: str = "PUBLIC"
    role: Optional[str] = None
    authenticator: Optional[str] = None

    def connect_kwargs(self) -> Dict[str, str]:
        kwargs = {
            "account": self.account,
            "user": self.user,
            "password": self.password,
            "database": self.database,
            "schema": self.schema,
        }
        for key in ("warehouse", "role", "authenticator"):
            value = getattr(self, key)
            if value:
                kwargs[key] = value
        return kwargs


@dataclass(frozen=True)
class MigrationConfig:
    source: SourceSettings
    snowflake: SnowflakeSettings
    stage_name: str = "MIGRATION_STAGE"
    work_dir: str = field(default_factory=tempfile.gettempdir)
    chunk_max_bytes: int = DEFAULT_CHUNK_MAX_BYTES
    fetch_size: int = 20_000
    max_workers: int = 10
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    skip_bad_rows: bool = True
    max_rejected_rows: Optional[int] = None
    add_missing_columns: bool = True
    trim_strings: bool = True
    log_dir: Optional[str] = None
    discord_webhook: str = ""


# ============================== Loading ===============================

_REQUIRED = (
    "SOURCE_PG_HOST",
    "SOURCE_PG_DATABASE",
    "SOURCE_PG_USER",
    "SNOWFLAKE_ACCOUNT",
    "SNOWFLAKE_USER",
    "SNOWFLAKE_DATABASE",
)

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _int(env: Mapping[str, str], key: str, default: Optional[int], minimum: int = 0) -> Optional[int]:
    raw = (env.get(key) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}") from e
    if value < minimum:
        raise ConfigurationError(f"{key} must be >= {minimum}, got {value}")
    return value


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = (env.get(key) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}") from e
    if value < 0:
        raise ConfigurationError(f"{key} must be >= 0, got {value}")
    return value


def _bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = (env.get(key) or "").strip().lower()
    if not raw:
        return default
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    raise ConfigurationError(f"{key} must be a boolean, got {raw!r}")


def config_from_mapping(env: Mapping[str, str]) -> MigrationConfig:
    missing: List[str] = [k for k in _REQUIRED if not (env.get(k) or "").strip()]
    if missing:
        raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")

    source = SourceSettings(
        host=env["SOURCE_PG_HOST"].strip(),
        port=_int(env, "SOURCE_PG_PORT", 5432, minimum=1),
        database=env["SOURCE_PG_DATABASE"].strip(),
        user=env["SOURCE_PG_USER"].strip(),
        password=env.get("SOURCE_PG_PASSWORD", ""),
        max_connections=_int(env, "MIGRATION_MAX_WORKERS", 10, minimum=1),
    )
    snowflake = SnowflakeSettings(
        account=env["SNOWFLAKE_ACCOUNT"].strip(),
        user=env["SNOWFLAKE_USER"].strip(),
        password=env.get("SNOWFLAKE_PASSWORD", ""),
        database=env["SNOWFLAKE_DATABASE"].strip(),
        warehouse=(env.get("SNOWFLAKE_WAREHOUSE") or "").strip() or None,
        schema=(env.get("SNOWFLAKE_SCHEMA") or "").strip() or "PUBLIC",
        role=(env.get("SNOWFLAKE_ROLE") or "").strip() or None,
        authenticator=(env.get("SNOWFLAKE_AUTHENTICATOR") or "").strip() or None,
    )
    retry = RetryPolicy(
        max_attempts=_int(env, "MIGRATION_UPLOAD_ATTEMPTS", 3, minimum=1),
        backoff_seconds=_float(env, "MIGRATION_UPLOAD_BACKOFF_SECONDS", 1.0),
    )
    return MigrationConfig(
        source=source,
        snowflake=snowflake,
        stage_name=(env.get("MIGRATION_STAGE") or "").strip() or "MIGRATION_STAGE",
        work_dir=(env.get("MIGRATION_WORK_DIR") or "").strip() or tempfile.gettempdir(),
        chunk_max_bytes=_int(env, "MIGRATION_CHUNK_MAX_BYTES", DEFAULT_CHUNK_MAX_BYTES, minimum=1),
        fetch_size=_int(env, "MIGRATION_FETCH_SIZE", 20_000, minimum=1),
        max_workers=_int(env, "MIGRATION_MAX_WORKERS", 10, minimum=1),
        retry=retry,
        skip_bad_rows=_bool(env, "MIGRATION_SKIP_BAD_ROWS", True),
        max_rejected_rows=_int(env, "MIGRATION_MAX_REJECTED_ROWS", None),
        add_missing_columns=_bool(env, "MIGRATION_ADD_MISSING_COLUMNS", True),
        trim_strings=_bool(env, "MIGRATION_TRIM_STRINGS", True),
        log_dir=(env.get("MIGRATION_LOG_DIR") or "").strip() or None,
        discord_webhook=(env.get("DISCORD_WEBHOOK") or "").strip(),
    )


def load_config(env_file: Optional[str] = None) -> MigrationConfig:
    """
    Build the run configuration from the process environment.
    • env_file (or a .env found from the cwd) is loaded first without overriding
      variables already set in the environment.
    • Raises ConfigurationError when a required key is absent.
    """
    if env_file and not os.path.exists(env_file):
        raise ConfigurationError(f"Environment file not found: {env_file}")
    load_dotenv(env_file, override=False)
    return config_from_mapping(os.environ)
