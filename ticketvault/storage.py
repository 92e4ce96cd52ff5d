"""
Live dataset storage on SQLite.

The whole ticket-tracking dataset sits in one database file. SQLite gives the
engine the single property it cannot do without: a destructive replace or
wipe runs inside one transaction, so readers see either the old dataset or the
new one and a failure anywhere rolls everything back.

Connections are opened per operation (autocommit mode, explicit BEGIN), with
foreign keys enforced.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Generator, Iterable, List, Optional, Set, Union

from ticketvault import config
from ticketvault.models import BOOLEAN, INTEGER, TABLES, TABLES_BY_NAME, Table

logger = logging.getLogger(__name__)

_SQL_TYPES = {BOOLEAN: "INTEGER", INTEGER: "INTEGER"}


def _quote(identifier: str) -> str:
    return f'"{identifier}"'


def _create_table_sql(table: Table) -> str:
    parts = []
    for column in table.columns:
        sql = f"{_quote(column.name)} {_SQL_TYPES.get(column.type, 'TEXT')}"
        if not column.nullable:
            sql += " NOT NULL"
        if column.default is not None:
            sql += f" DEFAULT {int(column.default) if column.type == BOOLEAN else repr(column.default)}"
        if column.unique:
            sql += " UNIQUE"
        if column.references:
            sql += f" REFERENCES {_quote(column.references)}(id)"
        parts.append(sql)
    parts.append(f"PRIMARY KEY ({', '.join(_quote(c) for c in table.primary_key)})")
    return f"CREATE TABLE IF NOT EXISTS {_quote(table.name)} ({', '.join(parts)})"


def _to_python(table: Table, row: sqlite3.Row, columns: Iterable[str]) -> Dict[str, Any]:
    booleans = {c.name for c in table.columns if c.type == BOOLEAN}
    result = {}
    for name in columns:
        value = row[name]
        if name in booleans and value is not None:
            value = bool(value)
        result[name] = value
    return result


class Dataset:
    """Handle on the live dataset database."""

    def __init__(self, db_path: Optional[Union[Path, str]] = None) -> None:
        self.db_path = Path(db_path or config.DB_PATH)

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path, isolation_level=None, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def initialize(self) -> None:
        """Create any missing tables."""
        with self.connection() as conn:
            for table in TABLES:
                conn.execute(_create_table_sql(table))

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self, defer_foreign_keys: bool = False) -> Generator[sqlite3.Connection, None, None]:
        """
        Run a block as one write transaction.

        BEGIN IMMEDIATE takes the write lock up front, so no other writer can
        interleave. With defer_foreign_keys the constraint check moves to
        COMMIT; a violation there raises and the block is rolled back like
        any other failure.
        """
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            if defer_foreign_keys:
                conn.execute("PRAGMA defer_foreign_keys = ON")
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
        finally:
            conn.close()

    @contextmanager
    def snapshot(self) -> Generator[sqlite3.Connection, None, None]:
        """Read-only transaction: every read inside sees the same dataset."""
        conn = self._connect()
        try:
            conn.execute("BEGIN")
            try:
                yield conn
            finally:
                conn.execute("COMMIT")
        finally:
            conn.close()

    # ── Row I/O (all take an open connection) ─────────────────────────────────

    @staticmethod
    def fetch_all(
        conn: sqlite3.Connection, table_name: str, columns: Optional[Iterable[str]] = None
    ) -> List[Dict[str, Any]]:
        """Every row of a table in insertion order."""
        table = TABLES_BY_NAME[table_name]
        names = list(columns) if columns is not None else [c.name for c in table.columns]
        select = ", ".join(_quote(n) for n in names)
        cursor = conn.execute(f"SELECT {select} FROM {_quote(table_name)} ORDER BY rowid")
        return [_to_python(table, row, names) for row in cursor.fetchall()]

    @staticmethod
    def fetch_one(
        conn: sqlite3.Connection, table_name: str, column: str, value: Any
    ) -> Optional[Dict[str, Any]]:
        table = TABLES_BY_NAME[table_name]
        cursor = conn.execute(
            f"SELECT * FROM {_quote(table_name)} WHERE {_quote(column)} = ?", (value,)
        )
        row = cursor.fetchone()
        if row is None:
            return None
        return _to_python(table, row, [c.name for c in table.columns])

    @staticmethod
    def insert(conn: sqlite3.Connection, table_name: str, row: Dict[str, Any]) -> None:
        """Insert one row; columns the row omits take their declared default."""
        table = TABLES_BY_NAME[table_name]
        names = [c.name for c in table.columns]
        values = []
        for column in table.columns:
            value = row.get(column.name, column.default)
            if column.type == BOOLEAN and value is not None:
                value = int(value)
            values.append(value)
        placeholders = ", ".join("?" for _ in names)
        conn.execute(
            f"INSERT INTO {_quote(table_name)} ({', '.join(_quote(n) for n in names)}) "
            f"VALUES ({placeholders})",
            values,
        )

    @staticmethod
    def update(conn: sqlite3.Connection, table_name: str, row_id: str, values: Dict[str, Any]) -> None:
        table = TABLES_BY_NAME[table_name]
        booleans = {c.name for c in table.columns if c.type == BOOLEAN}
        assignments = ", ".join(f"{_quote(k)} = ?" for k in values)
        params = [int(v) if k in booleans and v is not None else v for k, v in values.items()]
        conn.execute(
            f"UPDATE {_quote(table_name)} SET {assignments} WHERE id = ?", [*params, row_id]
        )

    @staticmethod
    def delete_all(conn: sqlite3.Connection, table_name: str) -> int:
        """Delete every row of a table and return how many were removed."""
        cursor = conn.execute(f"DELETE FROM {_quote(table_name)}")
        return cursor.rowcount

    @staticmethod
    def count(conn: sqlite3.Connection, table_name: str) -> int:
        return conn.execute(f"SELECT COUNT(*) FROM {_quote(table_name)}").fetchone()[0]

    def dump(self) -> Dict[str, List[Dict[str, Any]]]:
        """Every row of every table, server-local columns included."""
        with self.snapshot() as conn:
            return {table.name: self.fetch_all(conn, table.name) for table in TABLES}


# ── Module-level accessor ──────────────────────────────────────────────────────
# Callers go through get_dataset() so the database location is read from
# config at call time. Schema creation happens once per database path.
_initialized: Set[Path] = set()
_init_lock = threading.Lock()


def get_dataset() -> Dataset:
    dataset = Dataset(config.DB_PATH)
    with _init_lock:
        if dataset.db_path not in _initialized or not dataset.db_path.exists():
            dataset.initialize()
            _initialized.add(dataset.db_path)
            logger.debug("Dataset schema ready at %s", dataset.db_path)
    return dataset
