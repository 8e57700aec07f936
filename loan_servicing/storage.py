"""
Storage Backend Module

Document store behind the loan repository and the audit trail: JSON records
keyed by id within a table. InMemoryStorage backs tests; SQLiteStorage
persists to a file. Both support ``atomic()`` so a version check and the
writes that depend on it run as one unit.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from datetime import datetime
import copy
import sqlite3
import json
import threading
from dataclasses import dataclass
from pathlib import Path
from contextlib import contextmanager


Record = Dict[str, Any]


@dataclass(frozen=True)
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def base_dict(self) -> Record:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
        }


def _detached(record: Record) -> Record:
    # JSON round-trip: callers never share mutable state with the store
    return json.loads(json.dumps(record, default=str))


def _matches(record: Record, filters: Record) -> bool:
    return all(key in record and record[key] == value for key, value in filters.items())


class StorageInterface(ABC):
    """
    Abstract document store.

    Backends hold a reentrant ``_lock``; ``atomic`` keeps it for the whole
    block and rolls back on any exception.
    """

    @abstractmethod
    def save(self, table: str, record_id: str, data: Record) -> None:
        """Insert or replace a record"""

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Record]:
        """Record by id, or None"""

    @abstractmethod
    def load_all(self, table: str) -> List[Record]:
        """Every record of a table in insertion order"""

    @abstractmethod
    def find(self, table: str, filters: Record) -> List[Record]:
        """Records whose fields equal every filter value, in insertion order"""

    @abstractmethod
    def count(self, table: str) -> int:
        pass

    @abstractmethod
    def begin_transaction(self) -> None:
        pass

    @abstractmethod
    def commit(self) -> None:
        pass

    @abstractmethod
    def rollback(self) -> None:
        pass

    def exists(self, table: str, record_id: str) -> bool:
        return self.load(table, record_id) is not None

    def close(self) -> None:
        """Release the backend (no-op by default)"""

    @contextmanager
    def atomic(self):
        with self._lock:
            self.begin_transaction()
            try:
                yield self
                self.commit()
            except Exception:
                self.rollback()
                raise


class InMemoryStorage(StorageInterface):
    """Dict-backed store; a transaction snapshots every table and restores it on rollback"""

    def __init__(self):
        self._tables: Dict[str, Dict[str, Record]] = {}
        self._lock = threading.RLock()
        self._snapshot: Optional[Dict[str, Dict[str, Record]]] = None

    def _table(self, table: str) -> Dict[str, Record]:
        return self._tables.setdefault(table, {})

    def save(self, table: str, record_id: str, data: Record) -> None:
        with self._lock:
            self._table(table)[record_id] = _detached(data)

    def load(self, table: str, record_id: str) -> Optional[Record]:
        with self._lock:
            record = self._table(table).get(record_id)
            return None if record is None else _detached(record)

    def load_all(self, table: str) -> List[Record]:
        return self.find(table, {})

    def find(self, table: str, filters: Record) -> List[Record]:
        with self._lock:
            return [_detached(record) for record in self._table(table).values()
                    if _matches(record, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def begin_transaction(self) -> None:
        with self._lock:
            if self._snapshot is None:
                self._snapshot = copy.deepcopy(self._tables)

    def commit(self) -> None:
        with self._lock:
            self._snapshot = None

    def rollback(self) -> None:
        with self._lock:
            if self._snapshot is not None:
                self._tables = self._snapshot
                self._snapshot = None


class SQLiteStorage(StorageInterface):
    """One SQLite table per record table, each row a JSON document"""

    URL_PREFIX = "sqlite:///"

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # Autocommit mode; begin_transaction opens transactions explicitly
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False,
                                           isolation_level=None)
        self._lock = threading.RLock()
        self._in_transaction = False
        self._known_tables: set = set()

        if self.db_path != ":memory:":
            self._connection.execute("PRAGMA journal_mode = WAL")

    @classmethod
    def from_url(cls, database_url: str) -> 'SQLiteStorage':
        """Open a ``sqlite:///path`` URL; an empty path means in-memory"""
        if not database_url.startswith(cls.URL_PREFIX):
            raise ValueError(f"Unsupported database URL: {database_url}")
        return cls(database_url[len(cls.URL_PREFIX):] or ":memory:")

    def _execute(self, table: str, sql: str, params: tuple = ()) -> List[tuple]:
        with self._lock:
            if table not in self._known_tables:
                self._connection.execute(
                    f"CREATE TABLE IF NOT EXISTS {table} (id TEXT PRIMARY KEY, data TEXT NOT NULL)"
                )
                self._known_tables.add(table)
            return self._connection.execute(sql.format(table=table), params).fetchall()

    def save(self, table: str, record_id: str, data: Record) -> None:
        # Upsert keeps the original rowid, so insertion order survives updates
        self._execute(
            table,
            "INSERT INTO {table} (id, data) VALUES (?, ?) "
            "ON CONFLICT(id) DO UPDATE SET data = excluded.data",
            (record_id, json.dumps(data, default=str)),
        )

    def load(self, table: str, record_id: str) -> Optional[Record]:
        rows = self._execute(table, "SELECT data FROM {table} WHERE id = ?", (record_id,))
        return json.loads(rows[0][0]) if rows else None

    def load_all(self, table: str) -> List[Record]:
        rows = self._execute(table, "SELECT data FROM {table} ORDER BY rowid")
        return [json.loads(row[0]) for row in rows]

    def find(self, table: str, filters: Record) -> List[Record]:
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        return self._execute(table, "SELECT COUNT(*) FROM {table}")[0][0]

    def begin_transaction(self) -> None:
        with self._lock:
            if not self._in_transaction:
                # Take the write lock up front so the version check cannot go stale
                self._connection.execute("BEGIN IMMEDIATE")
                self._in_transaction = True

    def commit(self) -> None:
        with self._lock:
            if self._in_transaction:
                self._connection.execute("COMMIT")
                self._in_transaction = False

    def rollback(self) -> None:
        with self._lock:
            if self._in_transaction:
                self._connection.execute("ROLLBACK")
                self._in_transaction = False
                # Tables created inside the transaction are gone too
                self._known_tables.clear()

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
