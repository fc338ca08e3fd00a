"""
Storage Backend Module

Provides the async transactional store interface the lending core consumes,
and an in-memory implementation for tests and local runs. Records are stored
as JSON-safe dicts; monetary values are Decimal strings.

Filters are dicts of ``column -> value``. A column may carry a lookup suffix:
``__in``, ``__ne``, ``__lt``, ``__lte``, ``__gt``, ``__gte`` or
``__icontains``. Ordering lookups compare ISO dates, integers and strings.
"""

from abc import ABC, abstractmethod
from collections import namedtuple
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
import asyncio
import json
import threading

from .errors import IntegrityViolation


UniqueConstraint = namedtuple("UniqueConstraint", ["table", "columns"])
ForeignKey = namedtuple("ForeignKey", ["table", "column", "ref_table"])


class AsyncStorageInterface(ABC):
    """Abstract interface for async storage backends"""

    @abstractmethod
    async def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record; raises IntegrityViolation on constraint failure"""
        pass

    @abstractmethod
    async def insert_many(self, table: str, rows: Sequence[Tuple[str, Dict[str, Any]]]) -> int:
        """Insert several records at once; all or none are written"""
        pass

    @abstractmethod
    async def update(self, table: str, record_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Apply changes to a record, returning the updated record (None if absent)"""
        pass

    @abstractmethod
    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record by id"""
        pass

    @abstractmethod
    async def find(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Sequence[str] = (),
        descending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    async def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        """Count records matching filters"""
        pass

    @abstractmethod
    async def sum(self, table: str, column: str, filters: Optional[Dict[str, Any]] = None) -> Optional[Decimal]:
        """Sum a numeric column; None when nothing matched (SQL NULL semantics)"""
        pass

    @abstractmethod
    async def delete_where(self, table: str, filters: Dict[str, Any]) -> int:
        """Delete records matching filters, returning how many were removed"""
        pass

    @abstractmethod
    async def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def atomic(self):
        """
        Async context manager running a batch of reads/writes atomically.

        Yields a storage handle bound to the transaction. Everything written
        through it commits together when the block exits normally and is
        discarded when the block raises.
        """
        pass

    async def close(self) -> None:
        """Close storage connection (default no-op)"""
        pass


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, expected in filters.items():
        column, _, lookup = key.partition("__")
        actual = record.get(column)
        if lookup == "":
            if actual != expected:
                return False
        elif lookup == "in":
            if actual not in expected:
                return False
        elif lookup == "ne":
            if actual == expected:
                return False
        elif lookup == "icontains":
            if actual is None or str(expected).lower() not in str(actual).lower():
                return False
        elif lookup in ("lt", "lte", "gt", "gte"):
            if actual is None:
                return False
            if lookup == "lt" and not actual < expected:
                return False
            if lookup == "lte" and not actual <= expected:
                return False
            if lookup == "gt" and not actual > expected:
                return False
            if lookup == "gte" and not actual >= expected:
                return False
        else:
            raise ValueError(f"Unsupported filter lookup: {key}")
    return True


def _sort_key(columns: Sequence[str]):
    def key(record: Dict[str, Any]):
        return tuple((record.get(c) is None, record.get(c) if record.get(c) is not None else "") for c in columns)
    return key


class InMemoryStorage:
    """
    Synchronous in-memory table set with unique and foreign-key constraints.

    The async backend stages transactions on a copy of this object.
    """

    def __init__(
        self,
        unique_constraints: Iterable[UniqueConstraint] = (),
        foreign_keys: Iterable[ForeignKey] = ()
    ):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._unique = list(unique_constraints)
        self._foreign_keys = list(foreign_keys)
        self._lock = threading.RLock()

    def copy(self) -> 'InMemoryStorage':
        """Deep copy of all tables sharing the same constraint definitions"""
        with self._lock:
            clone = InMemoryStorage(self._unique, self._foreign_keys)
            clone._data = json.loads(json.dumps(self._data))
            return clone

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        if table not in self._data:
            self._data[table] = {}
        return self._data[table]

    def _check_constraints(self, table: str, record_id: str, record: Dict[str, Any]) -> None:
        rows = self._table(table)
        for constraint in self._unique:
            if constraint.table != table:
                continue
            values = tuple(record.get(c) for c in constraint.columns)
            if any(v is None for v in values):
                continue  # NULLs never collide
            for other_id, other in rows.items():
                if other_id == record_id:
                    continue
                if tuple(other.get(c) for c in constraint.columns) == values:
                    raise IntegrityViolation(IntegrityViolation.UNIQUE, table, constraint.columns)

        for fk in self._foreign_keys:
            if fk.table != table:
                continue
            ref = record.get(fk.column)
            if ref is not None and ref not in self._table(fk.ref_table):
                raise IntegrityViolation(IntegrityViolation.FOREIGN_KEY, table, (fk.column,))

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            rows = self._table(table)
            if record_id in rows:
                raise IntegrityViolation(IntegrityViolation.UNIQUE, table, ("id",))
            record = json.loads(json.dumps(data, default=str))
            self._check_constraints(table, record_id, record)
            rows[record_id] = record

    def update(self, table: str, record_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with self._lock:
            rows = self._table(table)
            if record_id not in rows:
                return None
            record = dict(rows[record_id])
            record.update(json.loads(json.dumps(changes, default=str)))
            self._check_constraints(table, record_id, record)
            rows[record_id] = record
            return json.loads(json.dumps(record))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._table(table).get(record_id)
            if record is not None:
                return json.loads(json.dumps(record))
            return None

    def find(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Sequence[str] = (),
        descending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[Dict[str, Any]]:
        with self._lock:
            results = [r for r in self._table(table).values() if _matches(r, filters or {})]
            if order_by:
                results.sort(key=_sort_key(order_by), reverse=descending)
            results = results[offset:]
            if limit is not None:
                results = results[:limit]
            return [json.loads(json.dumps(r)) for r in results]

    def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        with self._lock:
            return sum(1 for r in self._table(table).values() if _matches(r, filters or {}))

    def sum(self, table: str, column: str, filters: Optional[Dict[str, Any]] = None) -> Optional[Decimal]:
        with self._lock:
            values = [
                Decimal(str(r[column]))
                for r in self._table(table).values()
                if _matches(r, filters or {}) and r.get(column) is not None
            ]
            if not values:
                return None
            return sum(values, Decimal('0'))

    def delete_where(self, table: str, filters: Dict[str, Any]) -> int:
        with self._lock:
            rows = self._table(table)
            doomed = [rid for rid, r in rows.items() if _matches(r, filters)]
            for rid in doomed:
                del rows[rid]
            return len(doomed)

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._data[table] = {}


class InMemorySession(AsyncStorageInterface):
    """Async view over a staged InMemoryStorage inside one transaction"""

    def __init__(self, staged: InMemoryStorage):
        self._staged = staged

    async def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        self._staged.insert(table, record_id, data)

    async def insert_many(self, table: str, rows: Sequence[Tuple[str, Dict[str, Any]]]) -> int:
        for record_id, data in rows:
            self._staged.insert(table, record_id, data)
        return len(rows)

    async def update(self, table: str, record_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return self._staged.update(table, record_id, changes)

    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        return self._staged.load(table, record_id)

    async def find(self, table, filters=None, order_by=(), descending=False, limit=None, offset=0):
        return self._staged.find(table, filters, order_by, descending, limit, offset)

    async def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        return self._staged.count(table, filters)

    async def sum(self, table: str, column: str, filters: Optional[Dict[str, Any]] = None) -> Optional[Decimal]:
        return self._staged.sum(table, column, filters)

    async def delete_where(self, table: str, filters: Dict[str, Any]) -> int:
        return self._staged.delete_where(table, filters)

    async def clear_table(self, table: str) -> None:
        self._staged.clear_table(table)

    @asynccontextmanager
    async def atomic(self):
        # Already inside a transaction; nested blocks join it
        yield self


class AsyncInMemoryStorage(AsyncStorageInterface):
    """
    Async in-memory store with all-or-nothing transactions.

    Transactions are serialised with an asyncio.Lock and run against a copy
    of the tables that replaces the committed state only on success. Writes
    made outside a transaction take the same lock, so they are never lost
    to a concurrent commit. Reads never block.
    """

    def __init__(
        self,
        unique_constraints: Iterable[UniqueConstraint] = (),
        foreign_keys: Iterable[ForeignKey] = ()
    ):
        self._store = InMemoryStorage(unique_constraints, foreign_keys)
        self._lock = asyncio.Lock()

    async def _write(self, operation: str, *args):
        async with self._lock:
            staged = self._store.copy()
            result = getattr(staged, operation)(*args)
            self._store = staged
            return result

    async def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        await self._write("insert", table, record_id, data)

    async def insert_many(self, table: str, rows: Sequence[Tuple[str, Dict[str, Any]]]) -> int:
        async with self.atomic() as session:
            return await session.insert_many(table, rows)

    async def update(self, table: str, record_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return await self._write("update", table, record_id, changes)

    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        return self._store.load(table, record_id)

    async def find(self, table, filters=None, order_by=(), descending=False, limit=None, offset=0):
        return self._store.find(table, filters, order_by, descending, limit, offset)

    async def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        return self._store.count(table, filters)

    async def sum(self, table: str, column: str, filters: Optional[Dict[str, Any]] = None) -> Optional[Decimal]:
        return self._store.sum(table, column, filters)

    async def delete_where(self, table: str, filters: Dict[str, Any]) -> int:
        return await self._write("delete_where", table, filters)

    async def clear_table(self, table: str) -> None:
        await self._write("clear_table", table)

    @asynccontextmanager
    async def atomic(self):
        """Run a transaction: commit on normal exit, discard on exception"""
        async with self._lock:
            staged = self._store.copy()
            yield InMemorySession(staged)
            # Only reached when the block did not raise
            self._store = staged
