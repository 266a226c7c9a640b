"""
Storage Backend Module

Provides the abstract keyed record store used by every component, with
in-memory (testing), SQLite and PostgreSQL implementations. Records are JSON
documents keyed by id; balances are stored as integers in the smallest
currency unit.

The store is the only concurrency primitive in the system: ``atomic()``
groups writes into one all-or-nothing unit, and ``conditional_update()``
re-checks preconditions against the current record at write time.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union, Iterable
from datetime import datetime, timezone
import copy
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from enum import Enum
from pathlib import Path
from contextlib import contextmanager


class StorageError(Exception):
    """Base class for storage layer failures"""


class StorageUnavailableError(StorageError):
    """The backing store cannot be reached or failed unexpectedly"""


class StorageConflictError(StorageError):
    """A concurrent writer holds the data; the caller may retry"""


class ConditionFailed(StorageError):
    """A conditional update found the record in an unexpected state"""

    def __init__(self, table: str, record_id: str, field: str, detail: str = ""):
        self.table = table
        self.record_id = record_id
        self.field = field
        self.detail = detail
        message = f"Condition on {table}/{record_id} failed for '{field}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        for key, value in result.items():
            if isinstance(value, Enum):
                result[key] = value.value
            elif isinstance(value, datetime):
                result[key] = value.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        data = dict(data)
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
        """
        Context manager for atomic operations.

        Nested blocks join the outermost one: only the outermost block
        commits, and an exception escaping any level rolls back everything.
        """
        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        else:
            self.commit()

    def _load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record that is about to be rewritten in the current transaction"""
        return self.load(table, record_id)

    def conditional_update(
        self,
        table: str,
        record_id: str,
        expected: Optional[Dict[str, Any]] = None,
        at_least: Optional[Dict[str, int]] = None,
        increments: Optional[Dict[str, int]] = None,
        updates: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Atomically verify preconditions on a record and modify it.

        Args:
            table: Table holding the record
            record_id: Record key
            expected: Field values the record must currently hold. A tuple,
                list or set value means "any of these".
            at_least: Integer floors the current field values must meet
            increments: Integer deltas to add to fields
            updates: Field values to overwrite

        Returns:
            The record as written

        Raises:
            ConditionFailed: If the record is missing or a precondition fails
        """
        with self.atomic():
            record = self._load_for_update(table, record_id)
            if record is None:
                raise ConditionFailed(table, record_id, "id", "record not found")

            for key, value in (expected or {}).items():
                current = record.get(key)
                if isinstance(value, (tuple, list, set, frozenset)):
                    if current not in value:
                        raise ConditionFailed(table, record_id, key, f"{current!r} not in {sorted(value)!r}")
                elif current != value:
                    raise ConditionFailed(table, record_id, key, f"expected {value!r}, found {current!r}")

            for key, floor in (at_least or {}).items():
                current = record.get(key, 0)
                if current < floor:
                    raise ConditionFailed(table, record_id, key, f"{current} < {floor}")

            for key, delta in (increments or {}).items():
                record[key] = record.get(key, 0) + delta

            if updates:
                record.update(updates)

            self.save(table, record_id, record)
            return record


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing.

    ``atomic()`` holds the store lock for the whole block and restores a
    snapshot of the data on rollback.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._depth = 0
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None

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

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [json.loads(json.dumps(record)) for record in self._data[table].values()]

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
            return [
                json.loads(json.dumps(record))
                for record in self._data[table].values()
                if _matches(record, filters)
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
        if self._depth == 0:
            self._snapshot = copy.deepcopy(self._data)
        self._depth += 1

    def commit(self) -> None:
        try:
            self._depth -= 1
            if self._depth == 0:
                self._snapshot = None
        finally:
            self._lock.release()

    def rollback(self) -> None:
        try:
            self._depth -= 1
            if self._depth == 0 and self._snapshot is not None:
                self._data = self._snapshot
                self._snapshot = None
        finally:
            self._lock.release()

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence.

    Transactions are opened with ``BEGIN IMMEDIATE`` so the write lock is
    taken before any precondition is read; concurrent writers from other
    processes wait up to ``timeout`` seconds and then surface as
    ``StorageConflictError``.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:", timeout: float = 5.0):
        self.db_path = str(db_path)
        try:
            # Autocommit mode; transactions are issued explicitly
            self._connection = sqlite3.connect(
                self.db_path, check_same_thread=False, isolation_level=None, timeout=timeout
            )
        except sqlite3.Error as e:
            raise StorageUnavailableError(f"Cannot open SQLite database {self.db_path}: {e}") from e
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._tables: set = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._execute("PRAGMA journal_mode = WAL")
                self._execute("PRAGMA synchronous = NORMAL")

    def _execute(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
        if self._connection is None:
            raise StorageUnavailableError("SQLite connection is closed")
        try:
            return self._connection.execute(sql, tuple(params))
        except sqlite3.OperationalError as e:
            message = str(e).lower()
            if "locked" in message or "busy" in message:
                raise StorageConflictError(str(e)) from e
            raise StorageUnavailableError(str(e)) from e
        except sqlite3.DatabaseError as e:
            raise StorageUnavailableError(str(e)) from e

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock:
            self._execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            self._execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            row = self._execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,)).fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"""
                SELECT data FROM {table} ORDER BY created_at, rowid
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            row = self._execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,)).fetchone()
            return row is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            row = self._execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """).fetchone()
            return row['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._execute(f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        """Start (or join) a write transaction"""
        self._lock.acquire()
        if self._depth == 0:
            try:
                self._execute("BEGIN IMMEDIATE")
            except StorageError:
                self._lock.release()
                raise
        self._depth += 1

    def commit(self) -> None:
        """Commit the outermost transaction"""
        try:
            self._depth -= 1
            if self._depth == 0:
                try:
                    self._execute("COMMIT")
                except StorageError:
                    if self._connection is not None and self._connection.in_transaction:
                        self._connection.rollback()
                    raise
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Rollback the outermost transaction"""
        try:
            self._depth -= 1
            if self._depth == 0:
                # Tables created inside the transaction are gone as well
                self._tables.clear()
                if self._connection is not None and self._connection.in_transaction:
                    self._execute("ROLLBACK")
        finally:
            self._lock.release()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """
    PostgreSQL storage backend.

    Records live in JSONB columns; rows rewritten by ``conditional_update``
    are locked with ``SELECT ... FOR UPDATE`` until the transaction ends.
    """

    def __init__(self, connection_string: str):
        try:
            import psycopg2
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self._connection = None
        self._lock = threading.RLock()
        self._depth = 0
        self._tables: set = set()
        self._connect()

    def _connect(self) -> None:
        """Establish database connection"""
        with self._lock:
            try:
                self._connection = self.psycopg2.connect(
                    self.connection_string,
                    cursor_factory=self.extras.RealDictCursor
                )
            except self.psycopg2.Error as e:
                raise StorageUnavailableError(f"Cannot connect to PostgreSQL: {e}") from e
            self._connection.autocommit = False

    def _run(self, sql: str, params: Iterable[Any] = (), fetch: Optional[str] = None):
        """Execute a statement, committing immediately outside transactions"""
        if self._connection is None:
            raise StorageUnavailableError("PostgreSQL connection is closed")
        cursor = self._connection.cursor()
        try:
            cursor.execute(sql, tuple(params))
            if fetch == "one":
                result = cursor.fetchone()
            elif fetch == "all":
                result = cursor.fetchall()
            else:
                result = cursor.rowcount
            if self._depth == 0:
                self._connection.commit()
            return result
        except self.psycopg2.extensions.TransactionRollbackError as e:
            if self._depth == 0:
                self._connection.rollback()
            raise StorageConflictError(str(e)) from e
        except self.psycopg2.OperationalError as e:
            raise StorageUnavailableError(str(e)) from e
        finally:
            cursor.close()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock:
            self._run(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data JSONB NOT NULL,
                    created_at TIMESTAMP DEFAULT NOW(),
                    updated_at TIMESTAMP DEFAULT NOW()
                )
            """)
            self._run(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_data
                ON {table} USING gin(data)
            """)
            self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to PostgreSQL using UPSERT"""
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc)
            self._run(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    data = EXCLUDED.data,
                    updated_at = EXCLUDED.updated_at
            """, (record_id, json.dumps(data, default=str), now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from PostgreSQL"""
        with self._lock:
            self._ensure_table(table)
            row = self._run(f"SELECT data FROM {table} WHERE id = %s", (record_id,), fetch="one")
            return dict(row['data']) if row else None

    def _load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            row = self._run(
                f"SELECT data FROM {table} WHERE id = %s FOR UPDATE", (record_id,), fetch="one"
            )
            return dict(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            rows = self._run(f"SELECT data FROM {table} ORDER BY created_at", fetch="all")
            return [dict(row['data']) for row in rows]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from PostgreSQL"""
        with self._lock:
            self._ensure_table(table)
            return self._run(f"DELETE FROM {table} WHERE id = %s", (record_id,)) > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            row = self._run(f"SELECT 1 FROM {table} WHERE id = %s LIMIT 1", (record_id,), fetch="one")
            return row is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB containment"""
        with self._lock:
            self._ensure_table(table)
            if not filters:
                return self.load_all(table)
            rows = self._run(f"""
                SELECT data FROM {table}
                WHERE data @> %s::jsonb
                ORDER BY created_at
            """, (json.dumps(filters, default=str),), fetch="all")
            return [dict(row['data']) for row in rows]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return self._run(f"SELECT COUNT(*) as count FROM {table}", fetch="one")['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._run(f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        """Start (or join) a database transaction"""
        # psycopg2 opens the transaction implicitly on the first statement
        self._lock.acquire()
        self._depth += 1

    def commit(self) -> None:
        """Commit the outermost transaction"""
        try:
            self._depth -= 1
            if self._depth == 0 and self._connection is not None:
                try:
                    self._connection.commit()
                except self.psycopg2.extensions.TransactionRollbackError as e:
                    raise StorageConflictError(str(e)) from e
                except self.psycopg2.OperationalError as e:
                    raise StorageUnavailableError(str(e)) from e
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Rollback the outermost transaction"""
        try:
            self._depth -= 1
            if self._depth == 0 and self._connection is not None:
                self._tables.clear()
                self._connection.rollback()
        finally:
            self._lock.release()

    def close(self) -> None:
        """Close PostgreSQL connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
