"""
Database connection management.
"""
import sqlite3
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Union

from .schema import SchemaState, init_schema

MEMORY = ":memory:"


class DBManager:
    """
    Owns the catalog database file for the lifetime of the process.

    All writes go through one connection guarded by a lock. File-backed
    databases give every reading thread its own connection so reads do not
    queue behind writers (WAL mode).
    """

    def __init__(self, db_path: Union[Path, str]):
        self.db_path = db_path
        self.schema: Optional[SchemaState] = None
        self._conn: Optional[sqlite3.Connection] = None
        self._write_lock = threading.Lock()
        self._init_lock = threading.Lock()
        self._local = threading.local()
        self._readers: List[sqlite3.Connection] = []

    @property
    def in_memory(self) -> bool:
        return str(self.db_path) == MEMORY

    def connect(self) -> sqlite3.Connection:
        """
        Opens the writer connection and applies the schema exactly once,
        even when several threads race on first access.
        """
        with self._init_lock:
            if self._conn:
                return self._conn

            logging.info(f"Connecting to database: {self.db_path}")
            if not self.in_memory:
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

            conn = self._open()
            self.schema = init_schema(conn)
            self._conn = conn
            return conn

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        if not self.in_memory:
            conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA busy_timeout=5000;")
        return conn

    @contextmanager
    def write(self) -> Iterator[sqlite3.Connection]:
        """Serialized write transaction: commits on success, rolls back on error."""
        conn = self.connect()
        with self._write_lock:
            try:
                yield conn
                conn.commit()
            except BaseException:
                conn.rollback()
                raise

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        if self.in_memory:
            # A second connection would see a different, empty database
            with self._write_lock:
                yield conn
            return

        reader = getattr(self._local, "conn", None)
        if reader is None:
            reader = self._open()
            self._local.conn = reader
            with self._init_lock:
                self._readers.append(reader)
        yield reader

    def close(self):
        with self._init_lock:
            for reader in self._readers:
                reader.close()
            self._readers.clear()
            self._local = threading.local()
            if self._conn:
                self._conn.close()
                self._conn = None
                self.schema = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def write_lock(self) -> threading.Lock:
        """Returns the write lock for callers batching their own statements."""
        return self._write_lock
