"""
Storage Backend Module

Provides the ledger store's repository interface and implementations for
in-memory (testing) and SQLite (persistence). All monetary values are stored
as Decimal strings.

Transactions are opened with ``atomic()``; inside one, ``lock_record()`` takes
a row-level lock that is held until the outermost transaction commits or rolls
back. Read-check-then-write sequences on a loan must run under both.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Tuple, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .logging_config import get_logger


logger = get_logger("loan_ledger.storage")

# Tables owned by the ledger
LEDGER_TABLES = ("users", "creditors", "debtors", "loans", "repayments", "audit_log")


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        # Convert datetime objects to ISO strings
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        # Convert Decimal objects to strings
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        # Convert ISO strings back to datetime objects
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])

        return cls(**data)


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class _RowLock:
    """Row lock plus the number of threads holding or waiting for it"""

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self):
        self._row_locks: Dict[Tuple[str, str], _RowLock] = {}
        self._row_locks_guard = threading.Lock()
        self._local = threading.local()

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

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    # Transaction nesting and row locks are tracked per thread

    def _depth(self) -> int:
        return getattr(self._local, 'depth', 0)

    def _held_locks(self) -> List[Tuple[str, str]]:
        if not hasattr(self._local, 'held'):
            self._local.held = []
        return self._local.held

    @property
    def in_transaction(self) -> bool:
        return self._depth() > 0

    @contextmanager
    def atomic(self):
        """
        Context manager for atomic operations

        Nested blocks join the outermost transaction. Any exception escaping the
        outermost block rolls back every write made inside it.
        """
        depth = self._depth()
        self._local.depth = depth + 1
        if depth == 0:
            self._enter_transaction()
        try:
            yield
            if depth == 0:
                self.commit()
        except BaseException:
            if depth == 0:
                self.rollback()
            raise
        finally:
            self._local.depth = depth
            if depth == 0:
                self._release_row_locks()
                self._exit_transaction()

    def _enter_transaction(self) -> None:
        self.begin_transaction()

    def _exit_transaction(self) -> None:
        pass

    def lock_record(self, table: str, record_id: str) -> None:
        """
        Take the row lock for ``(table, record_id)``

        Blocks until no other transaction holds it; released when the current
        outermost transaction ends. Re-locking a row already held is a no-op.
        """
        if not self.in_transaction:
            raise RuntimeError("lock_record() must be called inside atomic()")

        key = (table, record_id)
        held = self._held_locks()
        if key in held:
            return

        with self._row_locks_guard:
            row_lock = self._row_locks.get(key)
            if row_lock is None:
                row_lock = self._row_locks[key] = _RowLock()
            row_lock.users += 1
        row_lock.lock.acquire()
        held.append(key)

    def _release_row_locks(self) -> None:
        held = self._held_locks()
        while held:
            key = held.pop()
            with self._row_locks_guard:
                row_lock = self._row_locks[key]
                row_lock.users -= 1
                # Last holder or waiter drops the entry
                if row_lock.users == 0:
                    del self._row_locks[key]
            row_lock.lock.release()


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing

    Writes made inside a transaction are buffered per thread and only become
    visible to other threads on commit (read-committed).
    """

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    @staticmethod
    def _copy(record: Dict[str, Any]) -> Dict[str, Any]:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(record, default=str))

    def _pending(self) -> Optional[Dict[str, Dict[str, Optional[Dict[str, Any]]]]]:
        if self.in_transaction:
            if getattr(self._local, 'pending', None) is None:
                self._local.pending = {}
            return self._local.pending
        return None

    def _view(self, table: str) -> Dict[str, Dict[str, Any]]:
        """Committed rows overlaid with this thread's uncommitted writes"""
        self._ensure_table(table)
        pending = self._pending()
        if not pending or table not in pending:
            return self._data[table]
        merged = dict(self._data[table])
        for record_id, record in pending[table].items():
            if record is None:
                merged.pop(record_id, None)
            else:
                merged[record_id] = record
        return merged

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            pending = self._pending()
            if pending is not None:
                pending.setdefault(table, {})[record_id] = self._copy(data)
            else:
                self._data[table][record_id] = self._copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            record = self._view(table).get(record_id)
            if record:
                return self._copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            return [self._copy(record) for record in self._view(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            if record_id not in self._view(table):
                return False
            pending = self._pending()
            if pending is not None:
                pending.setdefault(table, {})[record_id] = None
            else:
                del self._data[table][record_id]
            return True

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            return record_id in self._view(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            return [
                self._copy(record) for record in self._view(table).values()
                if _matches(record, filters)
            ]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            return len(self._view(table))

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            pending = self._pending()
            if pending is not None:
                pending[table] = {record_id: None for record_id in self._view(table)}
            else:
                self._data[table] = {}

    def begin_transaction(self) -> None:
        """Start buffering writes for this thread"""
        self._local.pending = {}

    def commit(self) -> None:
        """Apply this thread's buffered writes"""
        pending = getattr(self._local, 'pending', None) or {}
        with self._lock:
            for table, rows in pending.items():
                self._ensure_table(table)
                for record_id, record in rows.items():
                    if record is None:
                        self._data[table].pop(record_id, None)
                    else:
                        self._data[table][record_id] = record
        self._local.pending = None

    def rollback(self) -> None:
        """Discard this thread's buffered writes"""
        self._local.pending = None

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def get_all_data(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Get all committed data for debugging/inspection"""
        with self._lock:
            return json.loads(json.dumps(self._data, default=str))


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence

    One connection is shared by all threads. A transaction holds the connection
    lock from begin to commit/rollback, so transactions are serialized and
    never observe each other's uncommitted rows.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:", tables=LEDGER_TABLES):
        super().__init__()
        self.db_path = str(db_path)
        # isolation_level 'DEFERRED': sqlite3 opens the transaction implicitly on first write
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._known_tables = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

        for table in tables:
            self._ensure_table(table)

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._known_tables:
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
            if not self.in_transaction:
                self._connection.commit()
            self._known_tables.add(table)

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

            # Only commit if not in transaction
            if not self.in_transaction:
                self._connection.commit()

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

            if not self.in_transaction:
                self._connection.commit()
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
                conditions.append("json_extract(data, ?) IS ?")
                params.extend([f"$.{key}", value])

            cursor = self._connection.execute(f"""
                SELECT data FROM {table}
                WHERE {" AND ".join(conditions)}
                ORDER BY created_at
            """, params)

            # json_extract loses the distinction between 1 and true; re-check in Python
            records = [json.loads(row['data']) for row in cursor.fetchall()]
            return [record for record in records if _matches(record, filters)]

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

            if not self.in_transaction:
                self._connection.commit()

    def _enter_transaction(self) -> None:
        # Held until _exit_transaction; other threads block on their next call
        self._lock.acquire()

    def _exit_transaction(self) -> None:
        self._lock.release()

    def commit(self) -> None:
        """Commit current transaction"""
        with self._lock:
            self._connection.commit()

    def rollback(self) -> None:
        """Rollback current transaction"""
        with self._lock:
            self._connection.rollback()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Create a storage backend from a URL

    Supported: ``memory://`` and ``sqlite:///path/to.db`` (``sqlite://`` alone
    is an in-process SQLite database).
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        storage = SQLiteStorage(path or ":memory:")
        logger.info(f"Opened SQLite ledger store at {path or ':memory:'}")
        return storage
    raise ValueError(f"Unsupported database URL: {database_url}")
