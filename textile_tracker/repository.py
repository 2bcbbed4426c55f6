"""In-memory document collections used by the service layer and the tests."""

from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from enum import Enum
from typing import (
    Any,
    Callable,
    ContextManager,
    Dict,
    Generic,
    Iterable,
    Iterator,
    List,
    Mapping,
    MutableMapping,
    Optional,
    Protocol,
    Sequence,
    Set,
    TypeVar,
)

from .domain import Counter, FabricCut, FreedQuantity, Inspection, Loom, Order, Warp
from .errors import NotFoundError, StoreError

T = TypeVar("T")

# Largest value list accepted by ``find_in``; callers chunk longer lists.
MEMBERSHIP_FILTER_LIMIT = 10

# Secondary indexes maintained alongside every write, per collection.
COLLECTION_INDEXES: Mapping[str, Sequence[str]] = {
    "orders": ("status",),
    "warps": ("order_id", "loom_id", "status", "warp_number"),
    "looms": ("status",),
    "fabric_cuts": ("warp_id", "fabric_number"),
    "freed_quantities": ("order_id",),
    "counters": (),
    "inspections": ("fabric_cut_id", "fabric_number", "inspection_type"),
}


class RepositoryError(StoreError):
    """Base exception for repository errors."""


class DuplicateRecordError(RepositoryError):
    """Raised when attempting to insert a record that already exists."""


class RecordNotFoundError(NotFoundError, RepositoryError):
    """Raised when a requested record is missing."""


def index_key(value: Any) -> Any:
    """Normalise a field value so enum members and their raw values index alike."""

    if isinstance(value, Enum):
        return value.value
    return value


def check_membership_values(values: Sequence[Any]) -> None:
    if len(values) > MEMBERSHIP_FILTER_LIMIT:
        raise RepositoryError(
            f"Membership filters accept at most {MEMBERSHIP_FILTER_LIMIT} values, "
            f"got {len(values)}"
        )


class TransactionState:
    """Re-entrant transaction bookkeeping shared by the collections of one store.

    The outermost ``transaction()`` holds the store lock for its whole
    duration, so a read-decide-write sequence cannot interleave with another
    writer. Nested calls join the outer transaction.
    """

    def __init__(
        self,
        *,
        begin: Optional[Callable[[], None]] = None,
        commit: Optional[Callable[[], None]] = None,
        rollback: Optional[Callable[[], None]] = None,
    ) -> None:
        self.lock = threading.RLock()
        self.depth = 0
        self._undo: List[Callable[[], None]] = []
        self._begin = begin
        self._commit = commit
        self._rollback = rollback

    @property
    def active(self) -> bool:
        return self.depth > 0

    def record_undo(self, action: Callable[[], None]) -> None:
        if self.depth:
            self._undo.append(action)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self.lock:
            if self.depth:
                self.depth += 1
                try:
                    yield
                finally:
                    self.depth -= 1
                return
            if self._begin is not None:
                self._begin()
            self.depth = 1
            self._undo = []
            try:
                yield
            except BaseException:
                self.depth = 0
                for action in reversed(self._undo):
                    action()
                self._undo = []
                if self._rollback is not None:
                    self._rollback()
                raise
            self.depth = 0
            self._undo = []
            if self._commit is not None:
                self._commit()


class InMemoryRepository(Generic[T]):
    """Generic document collection backed by a dictionary.

    Documents are deep-copied on the way in and out so callers never mutate
    stored state without an explicit ``upsert``.
    """

    def __init__(
        self,
        name: str = "",
        *,
        indexed_fields: Sequence[str] = (),
        state: Optional[TransactionState] = None,
    ) -> None:
        self.name = name
        self._items: MutableMapping[str, T] = {}
        self._state = state or TransactionState()
        self._indexed_fields = tuple(indexed_fields)
        self._indexes: Dict[str, Dict[Any, Set[str]]] = {
            field_name: {} for field_name in self._indexed_fields
        }

    def __contains__(self, item_id: object) -> bool:
        with self._state.lock:
            return item_id in self._items

    def __len__(self) -> int:  # pragma: no cover - convenience
        with self._state.lock:
            return len(self._items)

    # ------------------------------------------------------------------
    # Raw writes (index maintenance and undo journal)
    # ------------------------------------------------------------------
    def _index(self, item_id: str, item: T) -> None:
        for field_name, index in self._indexes.items():
            key = index_key(getattr(item, field_name, None))
            index.setdefault(key, set()).add(item_id)

    def _unindex(self, item_id: str, item: T) -> None:
        for field_name, index in self._indexes.items():
            key = index_key(getattr(item, field_name, None))
            bucket = index.get(key)
            if bucket is not None:
                bucket.discard(item_id)
                if not bucket:
                    del index[key]

    def _put(self, item_id: str, item: T) -> None:
        previous = self._items.get(item_id)
        if previous is not None:
            self._unindex(item_id, previous)
        self._items[item_id] = item
        self._index(item_id, item)
        if previous is None:
            self._state.record_undo(lambda: self._delete(item_id))
        else:
            self._state.record_undo(lambda: self._put(item_id, previous))

    def _delete(self, item_id: str) -> None:
        previous = self._items.pop(item_id)
        self._unindex(item_id, previous)
        self._state.record_undo(lambda: self._put(item_id, previous))

    # ------------------------------------------------------------------
    # CRUD operations
    # ------------------------------------------------------------------
    def add(self, item_id: str, item: T) -> None:
        with self._state.lock:
            if item_id in self._items:
                raise DuplicateRecordError(f"Record with id {item_id!r} already exists")
            self._put(item_id, copy.deepcopy(item))

    def upsert(self, item_id: str, item: T) -> None:
        with self._state.lock:
            self._put(item_id, copy.deepcopy(item))

    def get(self, item_id: str) -> T:
        with self._state.lock:
            try:
                return copy.deepcopy(self._items[item_id])
            except KeyError as exc:
                raise RecordNotFoundError(
                    f"Record with id {item_id!r} not found in {self.name or 'collection'}"
                ) from exc

    def remove(self, item_id: str) -> None:
        with self._state.lock:
            if item_id not in self._items:
                raise RecordNotFoundError(f"Record with id {item_id!r} not found")
            self._delete(item_id)

    def list(self) -> List[T]:
        with self._state.lock:
            return [copy.deepcopy(item) for item in self._items.values()]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def _ids_for(self, field_name: str, value: Any) -> Optional[Set[str]]:
        index = self._indexes.get(field_name)
        if index is None:
            return None
        return set(index.get(index_key(value), ()))

    def find(self, **equals: Any) -> List[T]:
        """Return documents whose fields equal all given values."""

        with self._state.lock:
            candidate_ids: Optional[Set[str]] = None
            for field_name, value in equals.items():
                ids = self._ids_for(field_name, value)
                if ids is not None:
                    candidate_ids = ids if candidate_ids is None else candidate_ids & ids
            if candidate_ids is None:
                pool: Iterable[T] = self._items.values()
            else:
                pool = [self._items[item_id] for item_id in candidate_ids]
            return [
                copy.deepcopy(item)
                for item in pool
                if all(
                    index_key(getattr(item, field_name, None)) == index_key(value)
                    for field_name, value in equals.items()
                )
            ]

    def find_in(self, field_name: str, values: Sequence[Any]) -> List[T]:
        """Return documents whose field is one of ``values`` (capped list)."""

        check_membership_values(values)
        wanted = {index_key(value) for value in values}
        with self._state.lock:
            ids: Set[str] = set()
            index = self._indexes.get(field_name)
            if index is not None:
                for key in wanted:
                    ids.update(index.get(key, ()))
                pool: Iterable[T] = [self._items[item_id] for item_id in ids]
            else:
                pool = self._items.values()
            return [
                copy.deepcopy(item)
                for item in pool
                if index_key(getattr(item, field_name, None)) in wanted
            ]

    def __iter__(self) -> Iterator[T]:
        return iter(self.list())


class DocumentStore(Protocol):
    """What the services need from a store: named collections and transactions."""

    orders: Any
    warps: Any
    looms: Any
    fabric_cuts: Any
    freed_quantities: Any
    counters: Any
    inspections: Any

    def collection(self, name: str) -> Any: ...

    def transaction(self) -> ContextManager[Any]: ...

    def close(self) -> None: ...


class InMemoryStore:
    """Document store facade bundling in-memory collections."""

    def __init__(self) -> None:
        self._state = TransactionState()
        self.orders: InMemoryRepository[Order] = self._collection("orders")
        self.warps: InMemoryRepository[Warp] = self._collection("warps")
        self.looms: InMemoryRepository[Loom] = self._collection("looms")
        self.fabric_cuts: InMemoryRepository[FabricCut] = self._collection("fabric_cuts")
        self.freed_quantities: InMemoryRepository[FreedQuantity] = self._collection(
            "freed_quantities"
        )
        self.counters: InMemoryRepository[Counter] = self._collection("counters")
        self.inspections: InMemoryRepository[Inspection] = self._collection("inspections")

    def _collection(self, name: str) -> InMemoryRepository:
        return InMemoryRepository(
            name, indexed_fields=COLLECTION_INDEXES[name], state=self._state
        )

    def collection(self, name: str) -> InMemoryRepository:
        return getattr(self, name)

    @contextmanager
    def transaction(self) -> Iterator["InMemoryStore"]:
        """All-or-nothing unit of work; writes are undone if the block raises."""

        with self._state.transaction():
            yield self

    def close(self) -> None:  # pragma: no cover - nothing to release
        pass


__all__ = [
    "MEMBERSHIP_FILTER_LIMIT",
    "COLLECTION_INDEXES",
    "DocumentStore",
    "InMemoryRepository",
    "InMemoryStore",
    "TransactionState",
    "RepositoryError",
    "DuplicateRecordError",
    "RecordNotFoundError",
    "index_key",
    "check_membership_values",
]
