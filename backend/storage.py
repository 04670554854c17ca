# storage.py
"""
Owned SQLite handle for the store_metrics database.

A single Database is opened at process start (api.py lifespan or the CLI),
passed to every component, and closed on shutdown. The connection runs in
autocommit mode; multi-statement work goes through transaction().
"""

import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import pandas as pd

from config import TABLE_NAME, log
from errors import StorageError


@contextmanager
def storage_errors(action: str):
    """Translate sqlite3 failures into StorageError."""
    try:
        yield
    except sqlite3.Error as e:
        raise StorageError(str(e), message=f"Database error while {action}") from e


class Database:
    def __init__(self, path: str, timeout: float = 5.0):
        self.path = path
        self.timeout = timeout
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    # -----------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------

    def open(self) -> "Database":
        if self._conn is not None:
            return self
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        log(f"Opening database at: {self.path}")
        with storage_errors("opening the database"):
            conn = sqlite3.connect(
                self.path,
                timeout=self.timeout,
                isolation_level=None,
                check_same_thread=False,
            )
        conn.row_factory = sqlite3.Row
        self._conn = conn
        return self

    def close(self):
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                log("Database connection closed")

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def __enter__(self) -> "Database":
        return self.open()

    def __exit__(self, *exc):
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageError("Database not initialized", message="Failed to initialize database")
        return self._conn

    # -----------------------------------------------------
    # Statement helpers
    # -----------------------------------------------------

    @contextmanager
    def cursor(self) -> Iterator[sqlite3.Cursor]:
        with self._lock:
            cur = self.conn.cursor()
            try:
                yield cur
            finally:
                cur.close()

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run one statement and return the number of changed rows."""
        with storage_errors("executing a statement"), self.cursor() as cur:
            cur.execute(sql, tuple(params))
            return max(cur.rowcount, 0)

    def run_sql_dicts(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        """
        Helper: run SQL and return a list of dicts instead of tuples.
        """
        with storage_errors("running a query"), self.cursor() as cur:
            cur.execute(sql, tuple(params))
            return [dict(r) for r in cur.fetchall()]

    def scalar(self, sql: str, params: Sequence[Any] = ()) -> Any:
        with storage_errors("running a query"), self.cursor() as cur:
            row = cur.execute(sql, tuple(params)).fetchone()
            return None if row is None else row[0]

    def iter_frames(
        self,
        sql: str,
        params: Sequence[Any] = (),
        chunk_rows: int = 1000,
    ) -> Tuple[List[str], Iterator[pd.DataFrame]]:
        """
        Execute `sql` now and return (columns, frames). `frames` fetches the
        result `chunk_rows` at a time; values are kept as SQLite returned them.
        """
        with storage_errors("running a query"), self._lock:
            cur = self.conn.cursor()
            try:
                cur.execute(sql, tuple(params))
            except BaseException:
                cur.close()
                raise
            columns = [d[0] for d in cur.description or []]

        def frames() -> Iterator[pd.DataFrame]:
            try:
                while True:
                    with storage_errors("reading query results"), self._lock:
                        rows = cur.fetchmany(chunk_rows)
                    if not rows:
                        break
                    yield pd.DataFrame([tuple(r) for r in rows], columns=columns, dtype=object)
            finally:
                cur.close()

        return columns, frames()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        BEGIN ... COMMIT around the block. Any exception, a failed COMMIT or
        cancellation included, rolls the transaction back.
        """
        with self._lock:
            conn = self.conn
            with storage_errors("starting a transaction"):
                conn.execute("BEGIN")
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                self._rollback(conn)
                raise

    def _rollback(self, conn: sqlite3.Connection):
        # sqlite may already have rolled back on its own (e.g. disk full)
        if not conn.in_transaction:
            return
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            log(f"Rollback failed: {e}", level="ERROR")

    # -----------------------------------------------------
    # Table introspection
    # -----------------------------------------------------

    def table_exists(self, table: str = TABLE_NAME) -> bool:
        name = self.scalar(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?",
            (table,),
        )
        return name is not None

    def table_info(self, table: str = TABLE_NAME) -> List[Dict[str, Any]]:
        return self.run_sql_dicts("SELECT * FROM pragma_table_info(?)", (table,))

    def table_columns(self, table: str = TABLE_NAME) -> List[str]:
        return [c["name"] for c in self.table_info(table)]

    def row_count(self, table: str = TABLE_NAME) -> int:
        return int(self.scalar(f'SELECT COUNT(*) FROM "{table}"') or 0)

    def drop_table(self, table: str = TABLE_NAME):
        self.execute(f'DROP TABLE IF EXISTS "{table}"')

    def vacuum(self):
        self.execute("VACUUM")

    def size_bytes(self) -> int:
        if not os.path.exists(self.path):
            return 0
        return os.path.getsize(self.path)
