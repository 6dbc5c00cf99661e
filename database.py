"""Engine and session handling.

SQLite is used for local development and tests; PostgreSQL is used when
``DATABASE_URL`` starts with ``postgres``.  Lock waits are bounded on both
backends so a contended row surfaces as an ``OperationalError`` (turned into
``Conflict`` by :func:`run_in_transaction`) instead of blocking forever.
"""

from __future__ import annotations

import logging
import random
import time
from datetime import date, datetime, timedelta, timezone
from datetime import time as dt_time
from typing import Callable, Optional, Tuple, TypeVar
from zoneinfo import ZoneInfo

from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

import config
from errors import Conflict
import models  # noqa: F401  (registers the tables on SQLModel.metadata)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def make_engine(url: Optional[str] = None, lock_timeout: Optional[float] = None) -> Engine:
    url = url or config.DATABASE_URL
    lock_timeout = config.LOCK_TIMEOUT_SECONDS if lock_timeout is None else lock_timeout

    if config.is_postgres(url):
        if url.startswith("postgres://"):
            # SQLAlchemy 2 only accepts the postgresql:// scheme.
            url = url.replace("postgres://", "postgresql://", 1)
        timeout_ms = int(lock_timeout * 1000)
        return create_engine(
            url,
            pool_pre_ping=True,
            connect_args={
                "options": f"-c lock_timeout={timeout_ms} -c statement_timeout={timeout_ms * 2}",
            },
        )

    connect_args = {"check_same_thread": False, "timeout": lock_timeout}
    if url in ("sqlite://", "sqlite:///:memory:"):
        # One shared connection, otherwise every session sees an empty database.
        return create_engine(url, connect_args=connect_args, poolclass=StaticPool)
    return create_engine(url, connect_args=connect_args)


def init_db(engine: Engine) -> None:
    """Create tables if they do not exist."""
    SQLModel.metadata.create_all(engine)
    logger.info("Database schema ready (%s)", engine.url.get_backend_name())


def get_session(engine: Engine) -> Session:
    return Session(engine, expire_on_commit=False)


def supports_row_locks(engine: Engine) -> bool:
    return engine.dialect.name != "sqlite"


# ===== DAY HELPERS =====


def local_day(now_utc: datetime, tz_name: str) -> date:
    """Calendar day of a naive-UTC instant in the unit's timezone."""
    aware = now_utc.replace(tzinfo=timezone.utc)
    return aware.astimezone(ZoneInfo(tz_name)).date()


def day_window_utc(day: date, tz_name: str) -> Tuple[datetime, datetime]:
    """Naive-UTC [start, end) bounds of a local calendar day."""
    tz = ZoneInfo(tz_name)
    start_local = datetime.combine(day, dt_time.min, tzinfo=tz)
    end_local = datetime.combine(day + timedelta(days=1), dt_time.min, tzinfo=tz)
    start = start_local.astimezone(timezone.utc).replace(tzinfo=None)
    end = end_local.astimezone(timezone.utc).replace(tzinfo=None)
    return start, end


# ===== TRANSACTIONS =====


def run_in_transaction(
    engine: Engine,
    work: Callable[[Session], T],
    attempts: Optional[int] = None,
    backoff: Optional[float] = None,
) -> T:
    """Run ``work`` in its own transaction, retrying on ``Conflict``.

    Each attempt gets a fresh session, so ``work`` always re-reads the
    current state.  Lock timeouts and "database is locked" errors count as
    conflicts.  After the last attempt the ``Conflict`` reaches the caller.
    """
    attempts = attempts or config.MAX_RETRY_ATTEMPTS
    backoff = config.RETRY_BACKOFF_SECONDS if backoff is None else backoff

    for attempt in range(1, attempts + 1):
        session = get_session(engine)
        try:
            with session.begin():
                return work(session)
        except (Conflict, OperationalError) as exc:
            if attempt == attempts:
                if isinstance(exc, Conflict):
                    raise
                raise Conflict("The database is busy, please try again") from exc
            logger.warning("Conflict on attempt %d/%d: %s", attempt, attempts, exc)
            time.sleep(backoff * attempt * random.uniform(0.5, 1.5))
        finally:
            session.close()

    raise Conflict("No attempts were made")
