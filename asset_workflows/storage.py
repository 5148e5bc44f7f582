"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). Records are JSON documents keyed by id; the
interface adds create-only inserts and compare-and-swap writes so callers can
keep one-row-per-entity and optimistic-concurrency guarantees.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from datetime import datetime, timezone
from enum import Enum
import sqlite3
import json
import re
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import DuplicateRecord


_TABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _check_table(table: str) -> str:
    if not _TABLE_NAME.match(table):
        raise ValueError(f"Invalid table name: {table!r}")
    return table


def _matches(record: Dict[str, Any], expected: Dict[str, Any]) -> bool:
    for key, value in expected.items():
        if key not in record or record[key] != value:
            return False
    return True


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        for key, value in result.items():
            if isinstance(value, datetime):
                result[key] = value.isoformat()
            elif isinstance(value, Enum):
                result[key] = value.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])

        return cls(**data)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save (insert or replace) a record"""
        pass

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record, raising DuplicateRecord if the id exists"""
        pass

    @abstractmethod
    def compare_and_swap(self, table: str, record_id: str,
                         expected: Dict[str, Any], data: Dict[str, Any]) -> bool:
        """Replace a record only if its stored fields match ``expected``"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
            self.commit()
        except Exception:
            self.rollback()
            raise


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._data[_check_table(table)] = {}

    @staticmethod
    def _copy(data: Any) -> Any:
        # JSON round trip: detaches callers from stored state
        return json.loads(json.dumps(data, default=str))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            self._data[table][record_id] = self._copy(data)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                raise DuplicateRecord(f"Record {record_id} already exists in {table}",
                                      {'table': table, 'id': record_id})
            self._data[table][record_id] = self._copy(data)

    def compare_and_swap(self, table: str, record_id: str,
                         expected: Dict[str, Any], data: Dict[str, Any]) -> bool:
        with self._lock:
            self._ensure_table(table)
            current = self._data[table].get(record_id)
            if current is None or not _matches(current, expected):
                return False
            self._data[table][record_id] = self._copy(data)
            return True

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return self._copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [self._copy(record) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [self._copy(record) for record in self._data[table].values()
                    if _matches(record, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._data[_check_table(table)] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    @contextmanager
    def atomic(self):
        """Snapshot-and-restore transaction; holds the lock for its duration. Nests."""
        with self._lock:
            snapshot = self._copy(self._data)
            try:
                yield
            except Exception:
                self._data = snapshot
                raise


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._depth = 0
        self._known_tables = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        with self._lock:
            if table in self._known_tables:
                return
            _check_table(table)
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            self._autocommit()
            self._known_tables.add(table)

    def _autocommit(self) -> None:
        if not self._in_transaction:
            self._connection.commit()

    def _load_locked(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        row = self._connection.execute(
            f"SELECT data FROM {table} WHERE id = ?", (record_id,)
        ).fetchone()
        return json.loads(row['data']) if row else None

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, json.dumps(data, default=str), record_id, now, now))
            self._autocommit()

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            try:
                self._connection.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                """, (record_id, json.dumps(data, default=str), now, now))
            except sqlite3.IntegrityError as e:
                raise DuplicateRecord(f"Record {record_id} already exists in {table}",
                                      {'table': table, 'id': record_id}) from e
            self._autocommit()

    def compare_and_swap(self, table: str, record_id: str,
                         expected: Dict[str, Any], data: Dict[str, Any]) -> bool:
        with self._lock:
            self._ensure_table(table)
            current = self._load_locked(table, record_id)
            if current is None or not _matches(current, expected):
                return False
            self._connection.execute(f"""
                UPDATE {table} SET data = ?, updated_at = ? WHERE id = ?
            """, (json.dumps(data, default=str), datetime.now(timezone.utc).isoformat(), record_id))
            self._autocommit()
            return True

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return self._load_locked(table, record_id)

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT data FROM {table} ORDER BY created_at")
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            self._autocommit()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)
            )
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (JSON key matching)"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT COUNT(*) as count FROM {table}")
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
            self._autocommit()

    def begin_transaction(self) -> None:
        # The lock is held until commit/rollback so other threads cannot
        # interleave writes into this connection's open transaction.
        # A nested call opens a savepoint inside the outer transaction.
        self._lock.acquire()
        try:
            if self._depth == 0:
                if not self._connection.in_transaction:
                    self._connection.execute("BEGIN")
            else:
                self._connection.execute(f"SAVEPOINT sp_{self._depth}")
        except Exception:
            self._lock.release()
            raise
        self._depth += 1
        self._in_transaction = True

    def commit(self) -> None:
        self._depth -= 1
        try:
            if self._depth:
                self._connection.execute(f"RELEASE SAVEPOINT sp_{self._depth}")
            else:
                self._connection.commit()
        finally:
            self._in_transaction = self._depth > 0
            self._lock.release()

    def rollback(self) -> None:
        self._depth -= 1
        try:
            if self._depth:
                self._connection.execute(f"ROLLBACK TO SAVEPOINT sp_{self._depth}")
                self._connection.execute(f"RELEASE SAVEPOINT sp_{self._depth}")
            else:
                self._connection.rollback()
        finally:
            # Tables created inside the undone block are gone too
            self._known_tables.clear()
            self._in_transaction = self._depth > 0
            self._lock.release()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """Build a storage backend from a ``sqlite:///path`` or ``memory://`` URL"""
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
