"""SQLite-backed document store for the production tracker."""

from __future__ import annotations

import json
import logging
import pickle
import sqlite3
from contextlib import contextmanager
from typing import Any, Generic, Iterator, List, Optional, Sequence, TypeVar

from .domain import Counter, FabricCut, FreedQuantity, Inspection, Loom, Order, Warp
from .errors import TransactionConflictError
from .repository import (
    COLLECTION_INDEXES,
    DuplicateRecordError,
    RecordNotFoundError,
    RepositoryError,
    TransactionState,
    check_membership_values,
    index_key,
)

T = TypeVar("T")

logger = logging.getLogger(__name__)


def _encode(value: Any) -> str:
    return json.dumps(index_key(value), default=str)


class SQLiteRepository(Generic[T]):
    """Collection that persists pickled documents inside SQLite.

    Indexed fields are mirrored into ``<table>_index`` rows written in the same
    transaction as the document itself.
    """

    def __init__(
        self,
        connection: sqlite3.Connection,
        table: str,
        *,
        indexed_fields: Sequence[str] = (),
        state: TransactionState,
    ) -> None:
        self._connection = connection
        self._table = table
        self._index_table = f"{table}_index"
        self._indexed_fields = tuple(indexed_fields)
        self._state = state
        self.name = table
        with self._state.transaction():
            self._run(
                f"CREATE TABLE IF NOT EXISTS {table} ("
                "id TEXT PRIMARY KEY, payload BLOB NOT NULL)"
            )
            self._run(
                f"CREATE TABLE IF NOT EXISTS {self._index_table} ("
                "field TEXT NOT NULL, value TEXT NOT NULL, id TEXT NOT NULL)"
            )
            self._run(
                f"CREATE INDEX IF NOT EXISTS {self._index_table}_lookup "
                f"ON {self._index_table} (field, value)"
            )
            self._run(
                f"CREATE INDEX IF NOT EXISTS {self._index_table}_by_id "
                f"ON {self._index_table} (id)"
            )

    def _run(self, sql: str, params: Sequence[Any] = ()) -> int:
        try:
            with self._state.lock:
                return self._connection.execute(sql, params).rowcount
        except sqlite3.DatabaseError as exc:
            raise RepositoryError(f"{self._table}: {exc}") from exc

    def _fetch(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        try:
            with self._state.lock:
                return self._connection.execute(sql, params).fetchall()
        except sqlite3.DatabaseError as exc:
            raise RepositoryError(f"{self._table}: {exc}") from exc

    def _load(self, sql: str, params: Sequence[Any] = ()) -> List[T]:
        return [pickle.loads(row[0]) for row in self._fetch(sql, params)]

    def __contains__(self, item_id: object) -> bool:
        if not isinstance(item_id, str):
            return False
        rows = self._fetch(f"SELECT 1 FROM {self._table} WHERE id = ? LIMIT 1", (item_id,))
        return bool(rows)

    def __iter__(self) -> Iterator[T]:
        return iter(self.list())

    def __len__(self) -> int:  # pragma: no cover - simple delegation
        rows = self._fetch(f"SELECT COUNT(1) FROM {self._table}")
        return int(rows[0][0]) if rows else 0

    def _write_index(self, item_id: str, item: T) -> None:
        self._run(f"DELETE FROM {self._index_table} WHERE id = ?", (item_id,))
        for field_name in self._indexed_fields:
            self._run(
                f"INSERT INTO {self._index_table} (field, value, id) VALUES (?, ?, ?)",
                (field_name, _encode(getattr(item, field_name, None)), item_id),
            )

    # ------------------------------------------------------------------
    # CRUD operations
    # ------------------------------------------------------------------
    def add(self, item_id: str, item: T) -> None:
        with self._state.transaction():
            if item_id in self:
                raise DuplicateRecordError(f"Record with id {item_id!r} already exists")
            self._run(
                f"INSERT INTO {self._table} (id, payload) VALUES (?, ?)",
                (item_id, pickle.dumps(item)),
            )
            self._write_index(item_id, item)

    def upsert(self, item_id: str, item: T) -> None:
        with self._state.transaction():
            self._run(
                f"INSERT INTO {self._table} (id, payload) VALUES (?, ?) "
                "ON CONFLICT(id) DO UPDATE SET payload = excluded.payload",
                (item_id, pickle.dumps(item)),
            )
            self._write_index(item_id, item)

    def get(self, item_id: str) -> T:
        documents = self._load(
            f"SELECT payload FROM {self._table} WHERE id = ?", (item_id,)
        )
        if not documents:
            raise RecordNotFoundError(
                f"Record with id {item_id!r} not found in {self._table}"
            )
        return documents[0]

    def remove(self, item_id: str) -> None:
        with self._state.transaction():
            deleted = self._run(f"DELETE FROM {self._table} WHERE id = ?", (item_id,))
            if deleted == 0:
                raise RecordNotFoundError(f"Record with id {item_id!r} not found")
            self._run(f"DELETE FROM {self._index_table} WHERE id = ?", (item_id,))

    def list(self) -> List[T]:
        return self._load(f"SELECT payload FROM {self._table} ORDER BY id")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def find(self, **equals: Any) -> List[T]:
        indexed = [name for name in equals if name in self._indexed_fields]
        if not indexed:
            documents = self.list()
        else:
            clauses = " AND ".join(
                f"id IN (SELECT id FROM {self._index_table} WHERE field = ? AND value = ?)"
                for _ in indexed
            )
            params: List[Any] = []
            for name in indexed:
                params.extend([name, _encode(equals[name])])
            documents = self._load(
                f"SELECT payload FROM {self._table} WHERE {clauses} ORDER BY id",
                params,
            )
        return [
            document
            for document in documents
            if all(
                index_key(getattr(document, name, None)) == index_key(value)
                for name, value in equals.items()
            )
        ]

    def find_in(self, field_name: str, values: Sequence[Any]) -> List[T]:
        check_membership_values(values)
        wanted = {index_key(value) for value in values}
        if not wanted:
            return []
        if field_name not in self._indexed_fields:
            documents = self.list()
        else:
            placeholders = ", ".join("?" for _ in wanted)
            documents = self._load(
                f"SELECT payload FROM {self._table} WHERE id IN ("
                f"SELECT id FROM {self._index_table} "
                f"WHERE field = ? AND value IN ({placeholders})) ORDER BY id",
                [field_name, *(_encode(value) for value in wanted)],
            )
        return [
            document
            for document in documents
            if index_key(getattr(document, field_name, None)) in wanted
        ]


class TrackerDatabase:
    """Convenience facade bundling SQLite collections for all document types."""

    def __init__(self, path: str) -> None:
        connection = sqlite3.connect(
            path, check_same_thread=False, isolation_level=None
        )
        connection.row_factory = sqlite3.Row
        self._connection = connection
        self._state = TransactionState(
            begin=self._begin, commit=self._commit, rollback=self._rollback
        )
        self.orders: SQLiteRepository[Order] = self._collection("orders")
        self.warps: SQLiteRepository[Warp] = self._collection("warps")
        self.looms: SQLiteRepository[Loom] = self._collection("looms")
        self.fabric_cuts: SQLiteRepository[FabricCut] = self._collection("fabric_cuts")
        self.freed_quantities: SQLiteRepository[FreedQuantity] = self._collection(
            "freed_quantities"
        )
        self.counters: SQLiteRepository[Counter] = self._collection("counters")
        self.inspections: SQLiteRepository[Inspection] = self._collection("inspections")
        logger.info("Opened document store at %s", path)

    def _collection(self, name: str) -> SQLiteRepository:
        return SQLiteRepository(
            self._connection,
            name,
            indexed_fields=COLLECTION_INDEXES[name],
            state=self._state,
        )

    def _begin(self) -> None:
        try:
            self._connection.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as exc:
            raise TransactionConflictError(f"Could not start transaction: {exc}") from exc

    def _commit(self) -> None:
        try:
            self._connection.execute("COMMIT")
        except sqlite3.OperationalError as exc:
            self._rollback()
            raise TransactionConflictError(f"Could not commit transaction: {exc}") from exc

    def _rollback(self) -> None:
        if self._connection.in_transaction:
            self._connection.execute("ROLLBACK")

    def collection(self, name: str) -> SQLiteRepository:
        return getattr(self, name)

    @contextmanager
    def transaction(self) -> Iterator["TrackerDatabase"]:
        """All-or-nothing unit of work backed by ``BEGIN IMMEDIATE``."""

        with self._state.transaction():
            yield self

    @property
    def connection(self) -> sqlite3.Connection:
        return self._connection

    def close(self) -> None:
        self._connection.close()

    def __enter__(self) -> "TrackerDatabase":  # pragma: no cover - convenience
        return self

    def __exit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        traceback: Optional[BaseException],
    ) -> None:  # pragma: no cover - convenience
        self.close()


__all__ = ["SQLiteRepository", "TrackerDatabase"]
