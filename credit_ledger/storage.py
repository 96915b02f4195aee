"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). All monetary values stored as Decimal strings.

Both backends enforce named uniqueness constraints at the storage level: a
record saved with ``unique_keys={"idempotency_key": "abc"}`` owns that key and
any other record trying to claim it is rejected with UniqueViolation, even when
the two writes race.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union, get_type_hints
from decimal import Decimal
from datetime import datetime, date
from enum import Enum
import copy
import sqlite3
import json
import threading
import typing
from dataclasses import dataclass, asdict, fields
from pathlib import Path
from contextlib import contextmanager

from .errors import UniqueViolation, ValidationError


def to_storable(value: Any) -> Any:
    """Convert Decimal, date, datetime and Enum values to JSON-safe forms"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: to_storable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_storable(v) for v in value]
    return value


def _coerce(value: Any, hint: Any) -> Any:
    """Rebuild a typed value from its stored form using a type hint"""
    if value is None:
        return None
    origin = typing.get_origin(hint)
    if origin is Union:
        args = [a for a in typing.get_args(hint) if a is not type(None)]
        return _coerce(value, args[0]) if len(args) == 1 else value
    if hint is Decimal:
        return Decimal(str(value))
    if hint is datetime:
        return datetime.fromisoformat(value) if isinstance(value, str) else value
    if hint is date:
        return date.fromisoformat(value) if isinstance(value, str) else value
    if isinstance(hint, type) and issubclass(hint, Enum):
        return hint(value)
    return value


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return to_storable(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary, restoring typed fields"""
        hints = get_type_hints(cls)
        known = {f.name for f in fields(cls)}
        kwargs = {
            key: _coerce(value, hints.get(key))
            for key, value in data.items() if key in known
        }
        return cls(**kwargs)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any],
             unique_keys: Optional[Dict[str, Optional[str]]] = None) -> None:
        """Save a record, claiming the given unique keys for it"""
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
        """Delete a record and release its unique keys"""
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
    def lookup_unique(self, table: str, constraint: str, key: str) -> Optional[str]:
        """Return the id of the record holding a unique key, if any"""
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
    @contextmanager
    def atomic(self):
        """All-or-nothing unit of work; nested calls join the outer unit"""
        pass


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._unique: Dict[str, Dict[str, Dict[str, str]]] = {}
        self._lock = threading.RLock()
        self._depth = 0

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}
        if table not in self._unique:
            self._unique[table] = {}

    @contextmanager
    def atomic(self):
        """Hold the store lock and restore a snapshot if the unit fails"""
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            snapshot = copy.deepcopy((self._data, self._unique))
            self._depth = 1
            try:
                yield
            except BaseException:
                self._data, self._unique = snapshot
                raise
            finally:
                self._depth = 0

    def save(self, table: str, record_id: str, data: Dict[str, Any],
             unique_keys: Optional[Dict[str, Optional[str]]] = None) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            claims = {name: str(key) for name, key in (unique_keys or {}).items() if key is not None}

            for name, key in claims.items():
                owner = self._unique[table].get(name, {}).get(key)
                if owner is not None and owner != record_id:
                    raise UniqueViolation(table, name, key, owner)

            for name, key in claims.items():
                self._unique[table].setdefault(name, {})[key] = record_id

            # Deep copy to prevent external mutation
            self._data[table][record_id] = json.loads(json.dumps(data, default=str))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return json.loads(json.dumps(record))
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [json.loads(json.dumps(record)) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            for keys in self._unique[table].values():
                for key in [k for k, owner in keys.items() if owner == record_id]:
                    del keys[key]
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
                    results.append(json.loads(json.dumps(record)))
            return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def lookup_unique(self, table: str, constraint: str, key: str) -> Optional[str]:
        with self._lock:
            self._ensure_table(table)
            return self._unique[table].get(constraint, {}).get(str(key))

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}
            self._unique[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # DEFERRED isolation: the module opens a transaction before the first write
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._known_tables = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

        with self._lock:
            self._connection.execute("""
                CREATE TABLE IF NOT EXISTS _unique_keys (
                    tbl TEXT NOT NULL,
                    name TEXT NOT NULL,
                    key TEXT NOT NULL,
                    record_id TEXT NOT NULL,
                    PRIMARY KEY (tbl, name, key)
                )
            """)
            self._connection.execute("""
                CREATE INDEX IF NOT EXISTS idx_unique_keys_owner
                ON _unique_keys(tbl, record_id)
            """)
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._known_tables:
            return
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
        self._known_tables.add(table)

    @contextmanager
    def atomic(self):
        """One SQLite transaction; commit on success, rollback on any failure"""
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            self._depth = 1
            try:
                yield
                self._connection.commit()
            except BaseException:
                self._connection.rollback()
                # Tables created inside the failed unit were rolled back too
                self._known_tables.clear()
                raise
            finally:
                self._depth = 0

    def save(self, table: str, record_id: str, data: Dict[str, Any],
             unique_keys: Optional[Dict[str, Optional[str]]] = None) -> None:
        """Save a record to SQLite"""
        with self.atomic():
            self._ensure_table(table)

            for name, key in (unique_keys or {}).items():
                if key is None:
                    continue
                key = str(key)
                try:
                    self._connection.execute("""
                        INSERT INTO _unique_keys (tbl, name, key, record_id)
                        VALUES (?, ?, ?, ?)
                    """, (table, name, key, record_id))
                except sqlite3.IntegrityError:
                    owner = self.lookup_unique(table, name, key)
                    if owner != record_id:
                        raise UniqueViolation(table, name, key, owner)

            now = datetime.now().isoformat()
            data_json = json.dumps(data, default=str)

            # INSERT OR REPLACE keeps the original created_at
            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, now, now))

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
                SELECT data FROM {table} ORDER BY created_at, rowid
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self.atomic():
            self._ensure_table(table)
            self._connection.execute("""
                DELETE FROM _unique_keys WHERE tbl = ? AND record_id = ?
            """, (table, record_id))
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
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
        return [
            record for record in self.load_all(table)
            if all(key in record and record[key] == value for key, value in filters.items())
        ]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def lookup_unique(self, table: str, constraint: str, key: str) -> Optional[str]:
        with self._lock:
            cursor = self._connection.execute("""
                SELECT record_id FROM _unique_keys WHERE tbl = ? AND name = ? AND key = ?
            """, (table, constraint, str(key)))
            row = cursor.fetchone()
            return row['record_id'] if row else None

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self.atomic():
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
            self._connection.execute("DELETE FROM _unique_keys WHERE tbl = ?", (table,))

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """Build a storage backend from a database URL"""
    if database_url in ("memory://", ":memory:"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:")
    raise ValidationError(f"Unsupported database URL: {database_url}")
