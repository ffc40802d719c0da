from __future__ import annotations
import os

def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default

DB_URL = os.getenv("SCHEMA_ENGINE_DB_URL", "sqlite+aiosqlite:///./schema_engine.db")
LOG_LEVEL = os.getenv("SCHEMA_ENGINE_LOG_LEVEL", "INFO").upper()

# Batch runs
MAX_BATCH_ROWS = _int("SCHEMA_ENGINE_MAX_BATCH_ROWS", 500)
RUN_CONCURRENCY = max(1, _int("SCHEMA_ENGINE_RUN_CONCURRENCY", 1))
STALE_RUN_MINUTES = _int("SCHEMA_ENGINE_STALE_RUN_MINUTES", 60)
RUN_RETENTION_DAYS = _int("SCHEMA_ENGINE_RUN_RETENTION_DAYS", 30)

# Collaborators
FETCH_TIMEOUT = _int("SCHEMA_ENGINE_FETCH_TIMEOUT", 30)
SECONDS_PER_ROW = _int("SCHEMA_ENGINE_SECONDS_PER_ROW", 12)
