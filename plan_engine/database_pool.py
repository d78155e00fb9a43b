"""
Pooled connections to the plan registry.

Registry reads are frequent and tiny (version lookups, list queries), so a
fixed set of autocommit connections is opened lazily and handed out per
request. Plan files are not pooled; see ``database.plan_db_connection``.
"""

import logging
import queue
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

logger = logging.getLogger(__name__)

_REGISTRY_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA foreign_keys=ON",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=5000",
)


class RegistryPool:
    """
    Bounded set of registry connections.

    At most ``size`` connections exist at once; a caller that finds none idle
    waits up to ``wait_seconds`` and then gets ``TimeoutError``. Connections
    run with ``isolation_level=None``; multi-statement writes open their own
    ``BEGIN``.
    """

    def __init__(self, db_path: str, size: int = 5, wait_seconds: float = 30.0):
        self.db_path = db_path
        self.size = size
        self.wait_seconds = wait_seconds
        self._idle: "queue.LifoQueue[sqlite3.Connection]" = queue.LifoQueue()
        self._opened = 0
        self._closed = False
        self._lock = threading.Lock()
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        logger.info("Registry pool ready for %s (size %s)", db_path, size)

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            timeout=self.wait_seconds,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        for pragma in _REGISTRY_PRAGMAS:
            conn.execute(pragma)
        return conn

    def acquire(self) -> sqlite3.Connection:
        try:
            return self._idle.get_nowait()
        except queue.Empty:
            pass
        with self._lock:
            if self._closed:
                raise RuntimeError("Registry pool is closed")
            if self._opened < self.size:
                self._opened += 1
                return self._open()
        try:
            return self._idle.get(timeout=self.wait_seconds)
        except queue.Empty:
            raise TimeoutError(f"No registry connection free after {self.wait_seconds}s") from None

    def release(self, conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            conn.rollback()
        with self._lock:
            if self._closed:
                conn.close()
                self._opened -= 1
                return
        self._idle.put(conn)

    @contextmanager
    def checkout(self) -> Iterator[sqlite3.Connection]:
        conn = self.acquire()
        try:
            yield conn
        except Exception as exc:
            logger.error("Registry query failed: %s", exc)
            raise
        finally:
            self.release(conn)

    def close(self) -> None:
        with self._lock:
            self._closed = True
        while True:
            try:
                conn = self._idle.get_nowait()
            except queue.Empty:
                break
            conn.close()
            with self._lock:
                self._opened -= 1
        logger.info("Registry pool for %s closed", self.db_path)


_registry_pool: Optional[RegistryPool] = None
_registry_lock = threading.Lock()


def open_registry_pool(db_path: str, size: int = 5) -> RegistryPool:
    """Replace the process-wide pool; an existing pool is closed first."""
    global _registry_pool
    with _registry_lock:
        if _registry_pool is not None:
            _registry_pool.close()
        _registry_pool = RegistryPool(db_path, size=size)
        return _registry_pool


def close_registry_pool() -> None:
    global _registry_pool
    with _registry_lock:
        if _registry_pool is not None:
            _registry_pool.close()
            _registry_pool = None


@contextmanager
def get_db() -> Iterator[sqlite3.Connection]:
    """Yield a registry connection from the shared pool."""
    pool = _registry_pool
    if pool is None:
        raise RuntimeError("Registry pool is not open; call init_db() first")
    with pool.checkout() as conn:
        yield conn
