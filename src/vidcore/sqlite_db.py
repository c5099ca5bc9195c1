"""Per-thread sqlite-utils connections.

sqlite3 connections must not cross threads, while the worker pool shares one
queue object (and one record store) between all of its threads. Each thread
gets its own connection to the same file, lazily opened and configured for
WAL so readers never block the writer.
"""

import logging
import sqlite3
import threading
from pathlib import Path

from sqlite_utils import Database

logger = logging.getLogger(__name__)

BUSY_TIMEOUT_MS = 5000


def open_database(db_path: str) -> Database:
    """Open a sqlite-utils Database with the pragmas the stores rely on."""
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    # Closed from whichever thread calls close(); each is still used by one thread only
    db = Database(sqlite3.connect(str(path), check_same_thread=False))
    db.conn.execute("PRAGMA journal_mode=WAL")
    db.conn.execute("PRAGMA synchronous=NORMAL")  # Faster writes, still crash-safe
    db.conn.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
    db.conn.commit()
    return db


class ThreadLocalDatabase:
    """Hands every calling thread its own Database on the same file."""

    def __init__(self, db_path: str):
        self.db_path = str(db_path)
        self._local = threading.local()
        self._lock = threading.Lock()
        self._all = []

    def get(self) -> Database:
        db = getattr(self._local, "db", None)
        if db is None:
            db = open_database(self.db_path)
            self._local.db = db
            with self._lock:
                self._all.append(db)
        return db

    def release(self) -> None:
        """Close the calling thread's connection, if it opened one."""
        db = getattr(self._local, "db", None)
        if db is None:
            return
        self._local.db = None
        with self._lock:
            self._all = [other for other in self._all if other is not db]
        try:
            db.conn.close()
        except sqlite3.Error as e:
            logger.warning("Closing %s failed: %s", self.db_path, e)

    @property
    def open_connections(self) -> int:
        with self._lock:
            return len(self._all)

    def close(self) -> None:
        """Close every connection opened through this object."""
        with self._lock:
            for db in self._all:
                try:
                    db.conn.close()
                except sqlite3.Error as e:
                    logger.warning("Closing %s failed: %s", self.db_path, e)
            self._all.clear()
        self._local = threading.local()
