"""Database access for TrackQ

All entities (taxonomy, sessions, suggestions, feedback, offline cache) live in
ONE SQLite database. A ``Database`` is constructed once by the composition
root and passed to every repository; nothing opens its own connection.

Provides:
- Connection pooling (reuses connections, WAL mode, foreign keys on)
- ``connection()`` / ``transaction()`` context managers
- Nested ``transaction()`` calls on the same thread join the outer transaction,
  so a multi-step mutation commits or rolls back as a unit
- ``retry_on_db_lock`` for writes that can hit SQLITE_BUSY
"""

from __future__ import annotations

import atexit
import os
import random
import sqlite3
import threading
import time
from collections.abc import Callable, Generator
from contextlib import contextmanager
from functools import wraps
from pathlib import Path
from queue import Empty, Full, Queue
from typing import Any, TypeVar

from trackq.config import (
    DATA_DIR,
    DB_CONNECT_TIMEOUT,
    DB_POOL_SIZE,
    DB_POOL_TIMEOUT,
    DB_RETRY_BASE_DELAY,
    DB_RETRY_JITTER,
    DB_RETRY_MAX,
    DB_RETRY_MAX_DELAY,
    DB_TEMP_CONN_MAX,
)
from trackq.observability.logging import get_logger
from trackq.observability.telemetry import counter, log_event

F = TypeVar("F", bound=Callable[..., Any])

DEFAULT_DB_PATH = DATA_DIR / "trackq.db"

logger = get_logger(__name__)


def retry_on_db_lock(
    max_retries: int = DB_RETRY_MAX,
    base_delay: float = DB_RETRY_BASE_DELAY,
    max_delay: float = DB_RETRY_MAX_DELAY,
) -> Callable[[F], F]:
    """
    Decorator to retry database operations on SQLITE_BUSY errors

    Only "database is locked"/"busy" errors are retried, with exponential
    backoff plus jitter. Every other sqlite error propagates immediately.

    Side Effects:
        - Sleeps between retries
        - Logs a warning per retry and an error when retries are exhausted
    """

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            attempt = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except sqlite3.OperationalError as e:
                    message = str(e).lower()
                    if "locked" not in message and "busy" not in message:
                        raise
                    if attempt >= max_retries:
                        logger.error(
                            "Database lock retry exhausted after %d attempts: %s",
                            max_retries,
                            e,
                        )
                        raise

                    delay = min(base_delay * (2**attempt), max_delay)
                    sleep_time = delay + random.uniform(0, delay * DB_RETRY_JITTER)
                    logger.warning(
                        "Database locked (attempt %d/%d), retrying in %.2fs: %s",
                        attempt + 1,
                        max_retries,
                        sleep_time,
                        e,
                    )
                    counter("database.lock_retry")
                    time.sleep(sleep_time)
                    attempt += 1

        return wrapper  # type: ignore[return-value]

    return decorator


class DatabaseConnectionPool:
    """
    Thread-safe connection pool for SQLite

    Maintains a pool of reusable connections; when exhausted, hands out a
    bounded number of temporary connections that are closed on return.
    """

    def __init__(self, db_path: Path, pool_size: int = DB_POOL_SIZE):
        self.db_path = db_path
        self.pool_size = pool_size
        self.pool: Queue[sqlite3.Connection] = Queue(maxsize=pool_size)
        self.lock = threading.Lock()
        self.closed = False
        self.temp_conn_max = DB_TEMP_CONN_MAX
        self._temporary: set[int] = set()
        for _ in range(self.pool_size):
            self.pool.put(self._create_connection())

        atexit.register(self.close_all)

    @property
    def temp_conn_count(self) -> int:
        return len(self._temporary)

    def _create_connection(self) -> sqlite3.Connection:
        """
        Create a configured SQLite connection

        Raises:
            RuntimeError: If database corruption is detected
        """
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=DB_CONNECT_TIMEOUT,
            check_same_thread=False,
        )

        try:
            result = conn.execute("PRAGMA quick_check(1)").fetchone()
        except sqlite3.DatabaseError as e:
            conn.close()
            logger.critical("Database corruption or error during integrity check: %s", e)
            counter("database.corruption_detected")
            raise RuntimeError(f"Database corruption detected: {e}") from e
        if result[0] != "ok":
            conn.close()
            logger.critical("Database corruption detected: %s", result[0])
            counter("database.corruption_detected")
            raise RuntimeError(f"Database corruption detected: {result[0]}")

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row
        return conn

    def get_connection(self) -> sqlite3.Connection:
        """
        Get connection from pool

        Raises:
            RuntimeError: If pool closed or temporary connection limit exceeded
        """
        if self.closed:
            raise RuntimeError("Connection pool has been closed")

        try:
            return self.pool.get(block=True, timeout=DB_POOL_TIMEOUT)
        except Empty:
            with self.lock:
                if len(self._temporary) >= self.temp_conn_max:
                    logger.critical(
                        "Temporary connection limit reached: %d/%d (pool_size=%d)",
                        len(self._temporary),
                        self.temp_conn_max,
                        self.pool_size,
                    )
                    raise RuntimeError(
                        "Database connection pool exhausted and temporary "
                        f"connection limit reached. pool_size={self.pool_size}, "
                        f"temp_conn_max={self.temp_conn_max}."
                    ) from None
                conn = self._create_connection()
                self._temporary.add(id(conn))
                temp_count = len(self._temporary)

            logger.error(
                "Connection pool exhausted (pool_size=%d). Created temporary connection %d/%d.",
                self.pool_size,
                temp_count,
                self.temp_conn_max,
            )
            log_event(
                "database.pool_exhausted",
                pool_size=self.pool_size,
                temp_conn_count=temp_count,
            )
            return conn

    def return_connection(self, conn: sqlite3.Connection) -> None:
        """
        Return connection to pool (temporary connections are closed instead)
        """
        with self.lock:
            is_temp = id(conn) in self._temporary
            self._temporary.discard(id(conn))

        if self.closed or is_temp:
            conn.close()
            return

        try:
            self.pool.put_nowait(conn)
        except Full:
            logger.warning("Failed to return connection to pool (pool full), closing")
            conn.close()

    def close_all(self) -> None:
        self.closed = True
        while True:
            try:
                self.pool.get_nowait().close()
            except Empty:
                break


def get_db_path() -> Path:
    """
    Get database path (environment-aware)

    Checks TRACKQ_DB_PATH first, falls back to trackq/data/trackq.db.
    """
    if env_path := os.getenv("TRACKQ_DB_PATH"):
        return Path(env_path)
    return DEFAULT_DB_PATH


class Database:
    """
    The single structured store shared by every TrackQ service.

    Usage:
        db = Database(path)
        with db.transaction() as conn:
            conn.execute("UPDATE projects ...")
            conn.execute("UPDATE activity_sessions ...")
        # commits on success, rolls back on error
    """

    def __init__(
        self,
        db_path: Path | str | None = None,
        pool_size: int = DB_POOL_SIZE,
        initialize: bool = True,
    ):
        self.db_path = Path(db_path) if db_path is not None else get_db_path()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._pool = DatabaseConnectionPool(self.db_path, pool_size=pool_size)
        self._local = threading.local()

        if initialize:
            from trackq.infrastructure.database_schema import init_schema

            with self.transaction() as conn:
                init_schema(conn)

    def _active(self) -> sqlite3.Connection | None:
        return getattr(self._local, "conn", None)

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Pooled connection for reads; reuses this thread's open transaction if any.
        """
        active = self._active()
        if active is not None:
            yield active
            return

        conn = self._pool.get_connection()
        try:
            yield conn
        finally:
            self._pool.return_connection(conn)

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database transactions

        Commits on success, rolls back on error. A nested call on the same
        thread joins the outer transaction; only the outermost commits.

        Side Effects:
            - Commits or rolls back on the pooled connection
        """
        active = self._active()
        if active is not None:
            yield active
            return

        with self.connection() as conn:
            self._local.conn = conn
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                self._local.conn = None

    def close(self) -> None:
        self._pool.close_all()

    def pool_stats(self) -> dict[str, Any]:
        available = self._pool.pool.qsize()
        in_use = self._pool.pool_size - available
        return {
            "pool_size": self._pool.pool_size,
            "available": available,
            "in_use": in_use,
            "temporary": self._pool.temp_conn_count,
            "closed": self._pool.closed,
        }
