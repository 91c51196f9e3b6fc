"""
Storage Backend Module

Provides the abstract storage interface and implementations for in-memory
(testing), SQLite (single node persistence) and PostgreSQL (production).
Records are stored as JSON documents keyed by id; monetary values are stored
as Decimal strings and never as floats.

Every backend supports nested atomic units (outermost unit is a database
transaction, inner units are savepoints), a row read that takes a write lock
(``load_for_update``), soft deletion and a collision-free named counter
(``next_sequence``).
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union, get_type_hints
from decimal import Decimal
from datetime import datetime, date, timezone
from enum import Enum
import copy
import sqlite3
import json
import threading
import typing
from dataclasses import dataclass, asdict, fields
from pathlib import Path
from contextlib import contextmanager


SEQUENCES_TABLE = "sequences"


def _to_storable(value: Any) -> Any:
    """Convert a single field value to its JSON representation"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def _coerce(value: Any, annotation: Any) -> Any:
    """Convert a stored JSON value back to the annotated Python type"""
    if value is None:
        return None

    # Unwrap Optional[X]
    if typing.get_origin(annotation) is Union:
        candidates = [arg for arg in typing.get_args(annotation) if arg is not type(None)]
        if len(candidates) == 1:
            annotation = candidates[0]
        else:
            return value

    if annotation is Decimal:
        return Decimal(str(value))
    if annotation is datetime:
        return value if isinstance(value, datetime) else datetime.fromisoformat(value)
    if annotation is date:
        return value if isinstance(value, date) else date.fromisoformat(value)
    if isinstance(annotation, type) and issubclass(annotation, Enum):
        return value if isinstance(value, annotation) else annotation(value)
    return value


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
            result[key] = _to_storable(value)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary, restoring Decimal, date and Enum fields"""
        hints = get_type_hints(cls)
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            # Storage bookkeeping keys such as deleted_at are not record fields
            if key not in known:
                continue
            kwargs[key] = _coerce(value, hints.get(key))
        return cls(**kwargs)


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
    def load_all(self, table: str, include_deleted: bool = False) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Hard delete a record from storage"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any], include_deleted: bool = False) -> List[Dict[str, Any]]:
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
        """Start a transaction, or a savepoint when one is already open"""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit the innermost open transaction or savepoint"""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Roll back the innermost open transaction or savepoint"""
        pass

    @property
    @abstractmethod
    def in_transaction(self) -> bool:
        """True while an atomic unit is open on this storage"""
        pass

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """
        Load a record and lock it until the surrounding transaction ends.

        Backends that serialize whole transactions need nothing beyond a
        plain load.
        """
        return self.load(table, record_id)

    def soft_delete(self, table: str, record_id: str) -> bool:
        """Mark a record deleted without removing it"""
        data = self.load(table, record_id)
        if data is None:
            return False
        data['deleted_at'] = datetime.now(timezone.utc).isoformat()
        self.save(table, record_id, data)
        return True

    def next_sequence(self, name: str) -> int:
        """
        Return the next value of a named counter, starting at 1.

        The read and the increment happen inside one atomic unit against a
        locked row, so two callers can never receive the same value.
        """
        with self.atomic():
            row = self.load_for_update(SEQUENCES_TABLE, name)
            value = (int(row['value']) if row else 0) + 1
            self.save(SEQUENCES_TABLE, name, {"id": name, "value": value})
        return value

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield self
        except BaseException:
            self.rollback()
            raise
        else:
            self.commit()


def _matches(record: Dict[str, Any], filters: Dict[str, Any], include_deleted: bool) -> bool:
    if not include_deleted and record.get('deleted_at'):
        return False
    for key, value in filters.items():
        if key not in record or record[key] != _to_storable(value):
            return False
    return True


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing.

    Transactions are snapshots: each begin pushes a deep copy of the data,
    rollback restores it. The storage lock is held for the whole unit so
    concurrent units run one after another.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._snapshots: List[Dict[str, Dict[str, Dict[str, Any]]]] = []

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
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

    def load_all(self, table: str, include_deleted: bool = False) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return self.find(table, {}, include_deleted=include_deleted)

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

    def find(self, table: str, filters: Dict[str, Any], include_deleted: bool = False) -> List[Dict[str, Any]]:
        """Find records matching filters, in insertion order"""
        with self._lock:
            self._ensure_table(table)
            return [
                json.loads(json.dumps(record))
                for record in self._data[table].values()
                if _matches(record, filters, include_deleted)
            ]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}

    def begin_transaction(self) -> None:
        self._lock.acquire()
        self._snapshots.append(copy.deepcopy(self._data))

    def commit(self) -> None:
        if not self._snapshots:
            return
        self._snapshots.pop()
        self._lock.release()

    def rollback(self) -> None:
        if not self._snapshots:
            return
        self._data = self._snapshots.pop()
        self._lock.release()

    @property
    def in_transaction(self) -> bool:
        return bool(self._snapshots)

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # Autocommit mode; transactions are opened explicitly with BEGIN IMMEDIATE
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._known_tables = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

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
                    updated_at TEXT NOT NULL,
                    deleted_at TEXT
                )
            """)
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            self._known_tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            self._connection.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at, deleted_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at,
                    deleted_at = excluded.deleted_at
            """, (record_id, data_json, data.get('created_at', now), now, data.get('deleted_at')))

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

    def load_all(self, table: str, include_deleted: bool = False) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return self.find(table, {}, include_deleted=include_deleted)

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
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

    def find(self, table: str, filters: Dict[str, Any], include_deleted: bool = False) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at, rowid
            """)

            results = []
            for row in cursor.fetchall():
                record = json.loads(row['data'])
                if _matches(record, filters, include_deleted):
                    results.append(record)
            return results

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

    def next_sequence(self, name: str) -> int:
        """Atomic upsert-and-read on a dedicated counter table"""
        with self._lock:
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {SEQUENCES_TABLE}_counter (
                    name TEXT PRIMARY KEY,
                    value INTEGER NOT NULL
                )
            """)
            with self.atomic():
                self._connection.execute(f"""
                    INSERT INTO {SEQUENCES_TABLE}_counter (name, value) VALUES (?, 1)
                    ON CONFLICT(name) DO UPDATE SET value = value + 1
                """, (name,))
                cursor = self._connection.execute(f"""
                    SELECT value FROM {SEQUENCES_TABLE}_counter WHERE name = ?
                """, (name,))
                return int(cursor.fetchone()['value'])

    def begin_transaction(self) -> None:
        """Start a transaction, or a savepoint inside an open one"""
        self._lock.acquire()
        try:
            if self._depth == 0:
                # Take the write lock up front so read-check-write units serialize
                self._connection.execute("BEGIN IMMEDIATE")
            else:
                self._connection.execute(f"SAVEPOINT sp_{self._depth}")
            self._depth += 1
        except Exception:
            self._lock.release()
            raise

    def commit(self) -> None:
        """Commit current transaction"""
        if self._depth == 0:
            return
        try:
            self._depth -= 1
            if self._depth == 0:
                self._connection.execute("COMMIT")
            else:
                self._connection.execute(f"RELEASE SAVEPOINT sp_{self._depth}")
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction"""
        if self._depth == 0:
            return
        try:
            self._depth -= 1
            # Tables created inside the unit are rolled back with it
            self._known_tables.clear()
            if self._depth == 0:
                self._connection.execute("ROLLBACK")
            else:
                self._connection.execute(f"ROLLBACK TO SAVEPOINT sp_{self._depth}")
                self._connection.execute(f"RELEASE SAVEPOINT sp_{self._depth}")
        finally:
            self._lock.release()

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """PostgreSQL storage backend with ACID transaction support"""

    def __init__(self, connection_string: str):
        import psycopg2
        import psycopg2.extras
        self.psycopg2 = psycopg2
        self.extras = psycopg2.extras

        self.connection_string = connection_string
        self._connection = None
        self._lock = threading.RLock()
        self._depth = 0
        self._known_tables = set()
        self._connect()

    def _connect(self) -> None:
        """Establish database connection"""
        with self._lock:
            self._connection = self.psycopg2.connect(
                self.connection_string,
                cursor_factory=self.extras.RealDictCursor
            )
            self._connection.autocommit = False  # We handle transactions manually

    def _finish_statement(self) -> None:
        """Commit immediately when not inside an atomic unit"""
        if self._depth == 0:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._known_tables:
            return
        with self._lock:
            with self._connection.cursor() as cursor:
                cursor.execute(f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        id TEXT PRIMARY KEY,
                        data JSONB NOT NULL,
                        created_at TIMESTAMPTZ DEFAULT NOW(),
                        updated_at TIMESTAMPTZ DEFAULT NOW(),
                        deleted_at TIMESTAMPTZ
                    )
                """)
                cursor.execute(f"""
                    CREATE INDEX IF NOT EXISTS idx_{table}_data
                    ON {table} USING gin(data)
                """)
                cursor.execute(f"""
                    CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                    ON {table}(created_at)
                """)
            self._finish_statement()
            self._known_tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to PostgreSQL using UPSERT"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc)
            data_json = json.dumps(data, default=str)

            with self._connection.cursor() as cursor:
                cursor.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at, deleted_at)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        data = EXCLUDED.data,
                        updated_at = EXCLUDED.updated_at,
                        deleted_at = EXCLUDED.deleted_at
                """, (record_id, data_json, data.get('created_at', now), now, data.get('deleted_at')))
            self._finish_statement()

    def _load(self, table: str, record_id: str, lock: bool) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            suffix = " FOR UPDATE" if lock and self._depth > 0 else ""
            with self._connection.cursor() as cursor:
                cursor.execute(f"""
                    SELECT data FROM {table} WHERE id = %s{suffix}
                """, (record_id,))
                row = cursor.fetchone()
            self._finish_statement()
            if row:
                return dict(row['data'])
            return None

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from PostgreSQL"""
        return self._load(table, record_id, lock=False)

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record holding a row lock until the transaction ends"""
        return self._load(table, record_id, lock=True)

    def load_all(self, table: str, include_deleted: bool = False) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return self.find(table, {}, include_deleted=include_deleted)

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from PostgreSQL"""
        with self._lock:
            self._ensure_table(table)
            with self._connection.cursor() as cursor:
                cursor.execute(f"""
                    DELETE FROM {table} WHERE id = %s
                """, (record_id,))
                deleted = cursor.rowcount > 0
            self._finish_statement()
            return deleted

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            with self._connection.cursor() as cursor:
                cursor.execute(f"""
                    SELECT 1 FROM {table} WHERE id = %s LIMIT 1
                """, (record_id,))
                found = cursor.fetchone() is not None
            self._finish_statement()
            return found

    def find(self, table: str, filters: Dict[str, Any], include_deleted: bool = False) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB operators"""
        with self._lock:
            self._ensure_table(table)

            conditions = []
            params = []
            if not include_deleted:
                conditions.append("deleted_at IS NULL")
            for key, value in filters.items():
                conditions.append("data ->> %s = %s")
                params.extend([key, str(_to_storable(value))])
            where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

            with self._connection.cursor() as cursor:
                cursor.execute(f"""
                    SELECT data FROM {table}
                    {where_clause}
                    ORDER BY created_at
                """, params)
                rows = cursor.fetchall()
            self._finish_statement()
            return [dict(row['data']) for row in rows]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            with self._connection.cursor() as cursor:
                cursor.execute(f"""
                    SELECT COUNT(*) as count FROM {table}
                """)
                total = cursor.fetchone()['count']
            self._finish_statement()
            return total

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            with self._connection.cursor() as cursor:
                cursor.execute(f"DELETE FROM {table}")
            self._finish_statement()

    def next_sequence(self, name: str) -> int:
        """Atomic counter using INSERT ... ON CONFLICT ... RETURNING"""
        with self._lock:
            with self._connection.cursor() as cursor:
                cursor.execute(f"""
                    CREATE TABLE IF NOT EXISTS {SEQUENCES_TABLE}_counter (
                        name TEXT PRIMARY KEY,
                        value BIGINT NOT NULL
                    )
                """)
                cursor.execute(f"""
                    INSERT INTO {SEQUENCES_TABLE}_counter (name, value) VALUES (%s, 1)
                    ON CONFLICT (name) DO UPDATE
                        SET value = {SEQUENCES_TABLE}_counter.value + 1
                    RETURNING value
                """, (name,))
                value = int(cursor.fetchone()['value'])
            self._finish_statement()
            return value

    def begin_transaction(self) -> None:
        """Start a transaction (implicit in psycopg2) or a savepoint"""
        self._lock.acquire()
        if self._depth > 0:
            with self._connection.cursor() as cursor:
                cursor.execute(f"SAVEPOINT sp_{self._depth}")
        self._depth += 1

    def commit(self) -> None:
        """Commit current transaction"""
        if self._depth == 0:
            return
        try:
            self._depth -= 1
            if self._depth == 0:
                self._connection.commit()
            else:
                with self._connection.cursor() as cursor:
                    cursor.execute(f"RELEASE SAVEPOINT sp_{self._depth}")
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction"""
        if self._depth == 0:
            return
        try:
            self._depth -= 1
            # Tables created inside the unit are rolled back with it
            self._known_tables.clear()
            if self._depth == 0:
                self._connection.rollback()
            else:
                with self._connection.cursor() as cursor:
                    cursor.execute(f"ROLLBACK TO SAVEPOINT sp_{self._depth}")
        finally:
            self._lock.release()

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def close(self) -> None:
        """Close PostgreSQL connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL.

    ``memory://`` gives InMemoryStorage, ``sqlite:///path.db`` (or
    ``sqlite://`` for an in-memory database) gives SQLiteStorage and
    ``postgresql://...`` gives PostgreSQLStorage.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite:///"):] if database_url.startswith("sqlite:///") else ""
        return SQLiteStorage(path or ":memory:")
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url)
    raise ValueError(f"Unsupported database URL: {database_url}")
