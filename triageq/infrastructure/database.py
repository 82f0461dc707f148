"""SQLite persistence for TriageQ

All triage state (messages, summaries, workflow checkpoints, batch leases) lives
in ONE SQLite database, reached through a `Database` handle. The handle is built
once per process by the API composition root and injected into the stores;
tests build one per case against a temporary file.

Fetch and summarize workers write concurrently, so connections are pooled,
opened in WAL mode, and write paths are wrapped in `retry_on_db_lock`.
"""

from __future__ import annotations

import atexit
import os
import random
import sqlite3
import time
from collections.abc import Callable, Generator
from contextlib import contextmanager
from functools import lru_cache, wraps
from pathlib import Path
from queue import Empty, Full, Queue
from threading import Lock
from typing import Any, TypeVar

from triageq.config import (
    DB_CONNECT_TIMEOUT,
    DB_PATH,
    DB_POOL_SIZE,
    DB_POOL_TIMEOUT,
    DB_RETRY_BASE_DELAY,
    DB_RETRY_JITTER,
    DB_RETRY_MAX,
    DB_RETRY_MAX_DELAY,
    DB_TEMP_CONN_MAX,
)
from triageq.observability.logging import get_logger
from triageq.observability.telemetry import counter, log_event

F = TypeVar("F", bound=Callable[..., Any])

DEFAULT_DB_PATH = Path(__file__).parent.parent / "data" / "triageq.db"

_CONNECTION_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA foreign_keys=ON",
)

logger = get_logger(__name__)


def _is_lock_error(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return "locked" in message or "busy" in message


def retry_on_db_lock(
    max_retries: int = DB_RETRY_MAX,
    base_delay: float = DB_RETRY_BASE_DELAY,
    max_delay: float = DB_RETRY_MAX_DELAY,
) -> Callable[[F], F]:
    """
    Retry a write path while SQLite reports SQLITE_BUSY / "database is locked".

    Any other OperationalError propagates on the first attempt.

    Usage:
        @retry_on_db_lock()
        def put_summary(self, summary):
            with self.db.transaction() as conn:
                ...

    Side Effects:
        - Sleeps with capped exponential backoff plus jitter between attempts
        - Increments the ``database.lock_retry`` counter per retry
    """

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            attempt = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except sqlite3.OperationalError as exc:
                    if not _is_lock_error(exc):
                        raise
                    if attempt >= max_retries:
                        logger.error("%s: still locked after %d retries", func.__name__, attempt)
                        raise

                    backoff = min(base_delay * (2**attempt), max_delay)
                    backoff += random.uniform(0, backoff * DB_RETRY_JITTER)
                    attempt += 1
                    counter("database.lock_retry")
                    logger.warning(
                        "%s: database locked, retry %d/%d in %.2fs",
                        func.__name__,
                        attempt,
                        max_retries,
                        backoff,
                    )
                    time.sleep(backoff)

        return wrapper  # type: ignore[return-value]

    return decorator


def _open_connection(db_path: Path) -> sqlite3.Connection:
    """
    Open one configured connection, refusing a corrupt database file.

    Raises:
        RuntimeError: quick_check failed or the file is not a database
    """
    conn = sqlite3.connect(str(db_path), timeout=DB_CONNECT_TIMEOUT, check_same_thread=False)
    try:
        verdict = conn.execute("PRAGMA quick_check(1)").fetchone()[0]
    except sqlite3.DatabaseError as exc:
        verdict = str(exc)
    if verdict != "ok":
        conn.close()
        counter("database.corruption_detected")
        logger.critical("Refusing corrupt database %s: %s", db_path, verdict)
        raise RuntimeError(f"Database corruption detected: {verdict}")

    for pragma in _CONNECTION_PRAGMAS:
        conn.execute(pragma)
    conn.row_factory = sqlite3.Row
    return conn


class DatabaseConnectionPool:
    """
    Fixed-size pool of SQLite connections shared by worker threads.

    When every pooled connection is checked out for longer than
    ``DB_POOL_TIMEOUT``, an overflow connection is opened instead (at most
    ``temp_conn_max`` at once) and closed again on return.
    """

    def __init__(self, db_path: Path, pool_size: int = DB_POOL_SIZE):
        self.db_path = db_path
        self.pool_size = pool_size
        self.pool: Queue[sqlite3.Connection] = Queue(maxsize=pool_size)
        self.temp_conn_max = DB_TEMP_CONN_MAX
        self.closed = False
        self._lock = Lock()
        self._overflow: set[int] = set()

        for _ in range(pool_size):
            try:
                self.pool.put_nowait(_open_connection(db_path))
            except (RuntimeError, sqlite3.Error) as exc:
                logger.warning("Could not pre-open pooled connection: %s", exc)

        atexit.register(self.close_all)

    @property
    def temp_conn_count(self) -> int:
        with self._lock:
            return len(self._overflow)

    def get_connection(self) -> sqlite3.Connection:
        """
        Check out a connection, opening an overflow one if the pool stays empty.

        Raises:
            RuntimeError: the pool is closed, or the overflow limit is reached
        """
        if self.closed:
            raise RuntimeError("Connection pool has been closed")

        try:
            return self.pool.get(timeout=DB_POOL_TIMEOUT)
        except Empty:
            pass

        with self._lock:
            in_overflow = len(self._overflow)
            if in_overflow >= self.temp_conn_max:
                raise RuntimeError(
                    f"Database connection pool exhausted (pool_size={self.pool_size}, "
                    f"temp_conn_max={self.temp_conn_max})"
                )
            conn = _open_connection(self.db_path)
            self._overflow.add(id(conn))

        log_event(
            "database.pool_exhausted",
            pool_size=self.pool_size,
            temp_conn_count=in_overflow + 1,
        )
        return conn

    def return_connection(self, conn: sqlite3.Connection) -> None:
        """
        Hand a connection back.

        Side Effects:
            - Closes overflow connections and connections returned after close_all()
        """
        with self._lock:
            overflow = id(conn) in self._overflow
            self._overflow.discard(id(conn))

        if overflow or self.closed:
            conn.close()
            return

        try:
            self.pool.put_nowait(conn)
        except Full:
            conn.close()

    def close_all(self) -> None:
        """Close every idle pooled connection; checked-out ones close on return."""
        self.closed = True
        while True:
            try:
                self.pool.get_nowait().close()
            except Empty:
                break


class Database:
    """Process-scoped handle on the TriageQ SQLite database."""

    def __init__(self, db_path: Path | str, pool_size: int = DB_POOL_SIZE):
        self.path = Path(db_path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.pool = DatabaseConnectionPool(self.path, pool_size=pool_size)

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        conn = self.pool.get_connection()
        try:
            yield conn
        finally:
            self.pool.return_connection(conn)

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Connection whose work commits on clean exit and rolls back on any error.

        Side Effects:
            - Commits or rolls back the connection's open transaction
        """
        with self.connection() as conn:
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            conn.commit()

    def init_schema(self) -> None:
        """Create tables and indexes (idempotent)."""
        from triageq.infrastructure.database_schema import init_schema

        with self.transaction() as conn:
            init_schema(conn)
        logger.info("Database ready: %s", self.path)

    def validate_schema(self) -> bool:
        from triageq.infrastructure.database_schema import validate_schema

        with self.connection() as conn:
            return validate_schema(conn)

    def pool_stats(self) -> dict[str, Any]:
        available = self.pool.pool.qsize()
        in_use = self.pool.pool_size - available
        return {
            "pool_size": self.pool.pool_size,
            "available": available,
            "in_use": in_use,
            "overflow": self.pool.temp_conn_count,
            "closed": self.pool.closed,
        }

    def close(self) -> None:
        self.pool.close_all()


def get_db_path() -> Path:
    """TRIAGEQ_DB_PATH if set, otherwise the configured path or the packaged data dir."""
    configured = os.getenv("TRIAGEQ_DB_PATH") or DB_PATH
    return Path(configured) if configured else DEFAULT_DB_PATH


@lru_cache(maxsize=1)
def get_database() -> Database:
    """
    Process-wide Database for the API composition root.

    Side Effects:
        - Opens the connection pool and initializes the schema on first call
    """
    db = Database(get_db_path())
    db.init_schema()
    return db
