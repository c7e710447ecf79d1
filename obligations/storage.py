"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). All monetary values stored as Decimal strings.

Both backends support atomic units of work with real rollback and
version-checked writes so concurrent settlements cannot lose updates.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime, date, timezone
from enum import Enum
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import ConcurrencyError


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
            if isinstance(value, (datetime, date)):
                result[key] = value.isoformat()
            elif isinstance(value, Decimal):
                result[key] = str(value)
            elif isinstance(value, Enum):
                result[key] = value.value
        return result


def _copy(data: Any) -> Any:
    """Deep copy through JSON to prevent external mutation"""
    return json.loads(json.dumps(data, default=str))


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
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

    @abstractmethod
    def begin_transaction(self) -> None:
        """Start a transaction owned by the calling thread"""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit the current transaction"""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Discard every write made since begin_transaction"""
        pass

    @abstractmethod
    def in_transaction(self) -> bool:
        """Check if the calling thread has an open transaction"""
        pass

    @abstractmethod
    def save_versioned(self, table: str, record_id: str, data: Dict[str, Any],
                       expected_version: Optional[int]) -> None:
        """
        Save a record only if its stored version still matches

        Args:
            table: Table name
            record_id: Record ID
            data: Record data, carrying its new "version"
            expected_version: Version the caller read, or None for a new record

        Raises:
            ConcurrencyError: If the stored version differs
        """
        pass

    @contextmanager
    def atomic(self):
        """
        Context manager for atomic operations.
        Nested blocks join the outermost one; only the outermost commits.
        """
        outermost = not self.in_transaction()
        if outermost:
            self.begin_transaction()
        try:
            yield
            if outermost:
                self.commit()
        except Exception:
            if outermost:
                self.rollback()
            raise

    @staticmethod
    def _check_version(table: str, record_id: str, current: Optional[Dict[str, Any]],
                       expected_version: Optional[int]) -> None:
        """Raise ConcurrencyError unless current matches expected_version"""
        actual_version = current.get('version') if current else None
        if expected_version is None:
            if current is not None:
                raise ConcurrencyError(table.rstrip('s'), record_id, 0, actual_version)
            return
        if actual_version != expected_version:
            raise ConcurrencyError(table.rstrip('s'), record_id, expected_version, actual_version)


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing.
    Transactions snapshot all tables and hold the lock until commit/rollback,
    so writers from other threads wait for the unit of work to finish.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None
        self._tx_thread: Optional[int] = None

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            self._data[table][record_id] = _copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return _copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [_copy(record) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            results = []
            for record in self._data[table].values():
                if all(key in record and record[key] == value for key, value in filters.items()):
                    results.append(_copy(record))
            return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}

    def save_versioned(self, table: str, record_id: str, data: Dict[str, Any],
                       expected_version: Optional[int]) -> None:
        """Compare-and-swap save under the storage lock"""
        with self._lock:
            self._ensure_table(table)
            self._check_version(table, record_id, self._data[table].get(record_id), expected_version)
            self._data[table][record_id] = _copy(data)

    def begin_transaction(self) -> None:
        """Snapshot every table and keep the lock for this thread"""
        self._lock.acquire()
        self._snapshot = _copy(self._data)
        self._tx_thread = threading.get_ident()

    def commit(self) -> None:
        """Drop the snapshot and release the lock"""
        if self._tx_thread != threading.get_ident():
            return
        self._snapshot = None
        self._tx_thread = None
        self._lock.release()

    def rollback(self) -> None:
        """Restore the snapshot and release the lock"""
        if self._tx_thread != threading.get_ident():
            return
        self._data = self._snapshot
        self._snapshot = None
        self._tx_thread = None
        self._lock.release()

    def in_transaction(self) -> bool:
        return self._tx_thread == threading.get_ident()

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def get_all_data(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Get all data for debugging/inspection"""
        with self._lock:
            return _copy(self._data)


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # DEFERRED isolation so writes stay uncommitted until commit()
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tx_thread: Optional[int] = None
        self._tables: set = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock:
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
            if not self.in_transaction():
                self._connection.commit()
            self._tables.add(table)

    def _commit_unless_in_transaction(self) -> None:
        if self._tx_thread is None:
            self._connection.commit()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            # Use INSERT OR REPLACE to handle updates
            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, now, now))

            self._commit_unless_in_transaction()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))

            self._commit_unless_in_transaction()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        with self._lock:
            self._ensure_table(table)
            if not filters:
                return self.load_all(table)

            conditions = []
            params = []
            for key, value in filters.items():
                conditions.append("json_extract(data, ?) = ?")
                params.extend([f"$.{key}", value])

            cursor = self._connection.execute(f"""
                SELECT data FROM {table}
                WHERE {" AND ".join(conditions)}
                ORDER BY created_at
            """, params)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
            self._commit_unless_in_transaction()

    def save_versioned(self, table: str, record_id: str, data: Dict[str, Any],
                       expected_version: Optional[int]) -> None:
        """Compare-and-swap save under the storage lock"""
        with self._lock:
            self._check_version(table, record_id, self.load(table, record_id), expected_version)
            self.save(table, record_id, data)

    def begin_transaction(self) -> None:
        """Start a database transaction and keep the lock for this thread"""
        self._lock.acquire()
        # SQLite with isolation_level='DEFERRED' opens the transaction on first write
        self._tx_thread = threading.get_ident()

    def commit(self) -> None:
        """Commit current transaction"""
        if self._tx_thread != threading.get_ident():
            return
        try:
            self._connection.commit()
        finally:
            self._tx_thread = None
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction"""
        if self._tx_thread != threading.get_ident():
            return
        try:
            self._connection.rollback()
        finally:
            # Tables created inside the transaction are gone too
            self._tables.clear()
            self._tx_thread = None
            self._lock.release()

    def in_transaction(self) -> bool:
        return self._tx_thread == threading.get_ident()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def storage_from_url(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a database URL

    Args:
        database_url: "memory://" or "sqlite:///<path>" ("sqlite://" for an in-memory database)

    Returns:
        Storage backend instance

    Raises:
        ValueError: If the URL scheme is not supported
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):].lstrip("/") or ":memory:"
        if database_url.startswith("sqlite:////"):
            path = "/" + path
        return SQLiteStorage(path)
    raise ValueError(f"Unsupported database URL: {database_url}")
