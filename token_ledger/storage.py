"""
Storage Backend Module

Keyed JSON record tables with atomic blocks: an in-memory backend for tests
and a SQLite backend for durable ledgers. Token amounts are written as
integer strings so any backend can hold them without loss.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Tuple, Union
from datetime import datetime
import sqlite3
import json
import threading
from pathlib import Path
from contextlib import contextmanager
from dataclasses import dataclass, asdict


Record = Dict[str, Any]


@dataclass
class StorageRecord:
    """Base class for records with an id and timestamps"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Record:
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        return result


class StorageInterface(ABC):
    """
    Abstract table-of-records store

    Records are JSON-compatible dicts addressed by (table, record_id).
    Tables spring into existence on first use. Writes made inside
    ``atomic()`` become visible to other connections only when the
    outermost block exits without an exception.
    """

    @abstractmethod
    def save(self, table: str, record_id: str, data: Record) -> None:
        """Insert or replace one record"""

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Record]:
        """One record, or None if it was never saved"""

    @abstractmethod
    def load_all(self, table: str) -> List[Record]:
        """Every record of a table in first-insertion order"""

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Remove one record; False if it did not exist"""

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Record]:
        """Records whose fields equal every filter value (None included)"""

    @abstractmethod
    def count(self, table: str) -> int:
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    def begin_transaction(self) -> None:
        pass

    def commit(self) -> None:
        pass

    def rollback(self) -> None:
        pass

    @contextmanager
    def atomic(self):
        """Run a block as one transaction, rolling back if it raises"""
        self.begin_transaction()
        try:
            yield
            self.commit()
        except Exception:
            self.rollback()
            raise


def _matches(record: Record, filters: Dict[str, Any]) -> bool:
    return all(key in record and record[key] == value for key, value in filters.items())


def _copy(record: Record) -> Record:
    return json.loads(json.dumps(record, default=str))


class InMemoryStorage(StorageInterface):
    """
    Dict-backed storage for tests

    Transactions keep a journal of the prior value of each key written, so a
    rollback costs time proportional to the writes it undoes rather than to
    the size of the store. Nested blocks join the outermost one.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Record]] = {}
        self._lock = threading.RLock()
        self._journal: Dict[Tuple[str, str], Optional[Record]] = {}
        self._depth = 0

    def _table(self, table: str) -> Dict[str, Record]:
        return self._data.setdefault(table, {})

    def _remember(self, table: str, record_id: str) -> None:
        if self._depth and (table, record_id) not in self._journal:
            self._journal[(table, record_id)] = self._table(table).get(record_id)

    def save(self, table: str, record_id: str, data: Record) -> None:
        with self._lock:
            self._remember(table, record_id)
            self._table(table)[record_id] = _copy(data)

    def load(self, table: str, record_id: str) -> Optional[Record]:
        with self._lock:
            record = self._table(table).get(record_id)
            return None if record is None else _copy(record)

    def load_all(self, table: str) -> List[Record]:
        with self._lock:
            return [_copy(record) for record in self._table(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            if record_id not in self._table(table):
                return False
            self._remember(table, record_id)
            del self._data[table][record_id]
            return True

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Record]:
        with self._lock:
            return [
                _copy(record) for record in self._table(table).values()
                if _matches(record, filters)
            ]

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def clear_table(self, table: str) -> None:
        with self._lock:
            for record_id in list(self._table(table)):
                self._remember(table, record_id)
            self._data[table] = {}

    def begin_transaction(self) -> None:
        self._lock.acquire()
        self._depth += 1

    def commit(self) -> None:
        self._depth -= 1
        if self._depth == 0:
            self._journal = {}
        self._lock.release()

    def rollback(self) -> None:
        """Undo the journalled writes once the outermost block unwinds"""
        self._depth -= 1
        if self._depth == 0:
            for (table, record_id), record in self._journal.items():
                if record is None:
                    self._table(table).pop(record_id, None)
                else:
                    self._table(table)[record_id] = record
            self._journal = {}
        self._lock.release()

    def close(self) -> None:
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite storage, one two-column table per record table

    Each row holds the record id and its JSON payload. Upserts keep the
    original rowid so load_all returns records in first-insertion order.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._known_tables: set = set()

        if self.db_path != ":memory:":
            self._connection.execute("PRAGMA journal_mode = WAL")
            self._connection.commit()

    def _write(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        cursor = self._connection.execute(sql, params)
        if not self._in_transaction:
            self._connection.commit()
        return cursor

    def _ensure_table(self, table: str) -> None:
        if table not in self._known_tables:
            self._write(f"CREATE TABLE IF NOT EXISTS {table} (id TEXT PRIMARY KEY, data TEXT NOT NULL)")
            self._known_tables.add(table)

    def save(self, table: str, record_id: str, data: Record) -> None:
        with self._lock:
            self._ensure_table(table)
            self._write(
                f"INSERT INTO {table} (id, data) VALUES (?, ?) "
                f"ON CONFLICT(id) DO UPDATE SET data = excluded.data",
                (record_id, json.dumps(data, default=str))
            )

    def load(self, table: str, record_id: str) -> Optional[Record]:
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            return json.loads(row['data']) if row else None

    def load_all(self, table: str) -> List[Record]:
        with self._lock:
            self._ensure_table(table)
            rows = self._connection.execute(f"SELECT data FROM {table} ORDER BY rowid").fetchall()
            return [json.loads(row['data']) for row in rows]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            return self._write(f"DELETE FROM {table} WHERE id = ?", (record_id,)).rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)
            ).fetchone()
            return row is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Record]:
        """Filter in Python; None must match JSON null, which SQL equality cannot"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return self._connection.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._write(f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        # The connection opens the SQLite transaction lazily on the first write
        with self._lock:
            self._in_transaction = True

    def commit(self) -> None:
        with self._lock:
            if self._in_transaction:
                self._connection.commit()
                self._in_transaction = False

    def rollback(self) -> None:
        with self._lock:
            if self._in_transaction:
                self._connection.rollback()
                self._in_transaction = False
                # Tables created inside the transaction are gone too
                self._known_tables.clear()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL

    Supported forms: ``memory://`` and ``sqlite:///path/to/file.db``
    (``sqlite://`` or ``sqlite:///:memory:`` for an in-memory database).
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
