from __future__ import annotations

import logging
import os
import threading
from datetime import datetime

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
FILE_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"
ROOT_LOGGER = "pg_to_snowflake"


class SubsystemFileHandler(logging.Handler):
    """
    Append-only file sink: a record from `pg_to_snowflake.<subsystem>[...]`
    goes to `<log_dir>/<subsystem>/<YYYYMMDD>.txt`.
    """

    def __init__(self, log_dir: str, level: int = logging.NOTSET, clock=datetime.now):
        super().__init__(level)
        self.log_dir = log_dir
        self._clock = clock
        self._file_lock = threading.Lock()
        self.setFormatter(logging.Formatter(FILE_FORMAT))

    def path_for(self, record: logging.LogRecord) -> str:
        parts = record.name.split(".")
        subsystem = parts[1] if len(parts) > 1 and parts[0] == ROOT_LOGGER else "general"
        day = self._clock().strftime("%Y%m%d")
        return os.path.join(self.log_dir, subsystem, f"{day}.txt")

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format(record)
            path = self.path_for(record)
            with self._file_lock:
                os.makedirs(os.path.dirname(path), exist_ok=True)
                with open(path, "a", encoding="utf-8") as fh:
                    fh.write(line + "\n")
        except Exception:
            self.handleError(record)


def configure_logging(level: int | str = logging.INFO, log_dir: str | None = None) -> logging.Logger:
    """Console output in the usual format plus, optionally, per-subsystem dated files."""
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)
    if not any(getattr(h, "_pg2sf_console", False) for h in logger.handlers):
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(LOG_FORMAT))
        console._pg2sf_console = True
        logger.addHandler(console)
    if log_dir and not any(isinstance(h, SubsystemFileHandler) and h.log_dir == log_dir for h in logger.handlers):
        logger.addHandler(SubsystemFileHandler(log_dir))
    return logger
