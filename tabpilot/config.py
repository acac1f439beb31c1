from __future__ import annotations

import logging
import os
from pathlib import Path

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _env_timeout_seconds(name: str, default: float, *, min_value: float = 0.0, max_value: float = 30.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError:
        return default
    return min(max(parsed, min_value), max_value)


def _env_int(name: str, default: int, *, min_value: int = 0, max_value: int = 600_000) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw.strip())
    except ValueError:
        return default
    return min(max(parsed, min_value), max_value)


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


DEFAULT_TIMEOUT_MS = _env_int("TABPILOT_TIMEOUT_MS", 15_000, min_value=1)
STATE_DB_PATH = Path(os.getenv("TABPILOT_STATE_DB", "~/.tabpilot/state.sqlite3")).expanduser()
DEFAULT_CDP_URL = (os.getenv("TABPILOT_CDP_URL") or "").strip() or None
CDP_PROBE_ENABLED = _env_flag("TABPILOT_CDP_PROBE", True)
CDP_PROBE_TIMEOUT_S = _env_timeout_seconds("TABPILOT_CDP_PROBE_TIMEOUT_S", 2.0, min_value=0.1)
DOWNLOAD_DIR = Path(os.getenv("TABPILOT_DOWNLOAD_DIR", "artifacts/downloads"))

WORLD_NAME = "tabpilot"
HANDLE_PREFIX = "tp:el:v1:"

POLL_INTERVAL_MS = 200
SETTLE_MIN_MS = 200
SETTLE_MAX_MS = 1000
TITLE_RETRY_MIN_MS = 200
TITLE_RETRY_MAX_MS = 2000

EXPLAIN_MAX_REJECTED = 10
DELTA_FOCUS_TEXT_MAX = 120
SNAPSHOT_TEXT_MAX = 500
RESULT_TEXT_MAX = 240
RESPONSE_BUFFER_SIZE = 80
DOWNLOAD_FILENAME_MAX = 180


def configure_logging(level: str | int | None = None, log_file: str | None = None) -> None:
    """Configure root logging for the command line entry point.

    Reports are written to stdout, so log records always go to stderr and,
    when ``log_file`` (or ``TABPILOT_LOG_FILE``) is set, to that file too.
    """
    if level is None:
        level = os.getenv("TABPILOT_LOG_LEVEL", "WARNING")
    if isinstance(level, str):
        level = logging.getLevelName(level.strip().upper())
        if not isinstance(level, int):
            level = logging.WARNING
    logging.basicConfig(level=level, format=LOG_FORMAT)

    log_file = log_file or os.getenv("TABPILOT_LOG_FILE")
    if not log_file:
        return
    path = Path(log_file).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(path, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(file_handler)
