"""Process-level configuration for the queue service.

Values come from environment variables (set by the deployment or a local
shell).  Per-unit behaviour such as priorities and minimum numbers lives in
the ``unit_settings`` table instead; see :mod:`models`.
"""

from __future__ import annotations

import os

PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_DB_FILENAME = os.path.join(PROJECT_DIR, "queue.db")

DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DEFAULT_DB_FILENAME}")
REDIS_URL = os.getenv("REDIS_URL")
PORT = int(os.getenv("PORT", 8000))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Conflicts (lost counter race, locked row) are retried this many times
# before the caller sees a 409.
MAX_RETRY_ATTEMPTS = int(os.getenv("MAX_RETRY_ATTEMPTS", 3))
RETRY_BACKOFF_SECONDS = float(os.getenv("RETRY_BACKOFF_SECONDS", 0.05))
LOCK_TIMEOUT_SECONDS = float(os.getenv("LOCK_TIMEOUT_SECONDS", 5))

DEFAULT_TIMEZONE = os.getenv("DEFAULT_TIMEZONE", "UTC")

SSE_HEARTBEAT_SECONDS = float(os.getenv("SSE_HEARTBEAT_SECONDS", 5))
BOARD_CACHE_TTL = int(os.getenv("BOARD_CACHE_TTL", 30))


def is_postgres(url: str) -> bool:
    return url.startswith("postgres")
