"""Batched cross-collection reads that rebuild joined views.

The store has no joins. A listing declares which related documents it needs
as a tree of :class:`Relation` objects; :class:`EnrichmentPipeline` walks that
tree one hop at a time, reading every distinct foreign key of a hop in
parallel and never reading the same key twice within one call.

Pipelines must not be run inside a store transaction: the worker threads
would wait on the lock held by the transaction.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, is_dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .repository import (
    MEMBERSHIP_FILTER_LIMIT,
    DocumentStore,
    RecordNotFoundError,
    index_key,
)

logger = logging.getLogger(__name__)

KeyGetter = Callable[[Any], Optional[str]]
Fallback = Callable[[Any], Optional[Dict[str, Any]]]


@dataclass(frozen=True)
class Relation:
    """One hop from a document to a related document in another collection.

    ``key`` reads the foreign key off the source document. ``fallback``
    receives the source document when the related one is missing and may
    return a substitute view (for instance a snapshot stored on the source).
    """

    name: str
    collection: str
    key: KeyGetter
    children: Tuple["Relation", ...] = ()
    fallback: Optional[Fallback] = None


def to_view(document: Any) -> Dict[str, Any]:
    """Plain dictionary view of a stored document."""

    if is_dataclass(document):
        return asdict(document)
    return dict(document)


def chunked(values: Sequence[Any], size: int = MEMBERSHIP_FILTER_LIMIT) -> List[List[Any]]:
    return [list(values[start : start + size]) for start in range(0, len(values), size)]


class EnrichmentPipeline:
    """Stitch related documents onto base documents with bounded fan-out."""

    def __init__(self, store: DocumentStore, max_workers: int = 8) -> None:
        self.store = store
        self.max_workers = max(1, max_workers)

    # ------------------------------------------------------------------
    # Batched reads
    # ------------------------------------------------------------------
    def _get_or_none(self, collection: str, key: str) -> Optional[Any]:
        try:
            return self.store.collection(collection).get(key)
        except RecordNotFoundError:
            return None

    def fetch_many(self, collection: str, keys: Iterable[Optional[str]]) -> Dict[str, Any]:
        """Point-read every distinct key in parallel; missing keys are omitted."""

        distinct = list(dict.fromkeys(key for key in keys if key))
        if not distinct:
            return {}
        workers = min(self.max_workers, len(distinct))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            documents = list(
                executor.map(lambda key: self._get_or_none(collection, key), distinct)
            )
        return {
            key: document
            for key, document in zip(distinct, documents)
            if document is not None
        }

    def group_by(
        self, collection: str, field_name: str, values: Iterable[Optional[str]]
    ) -> Dict[str, List[Any]]:
        """Documents of ``collection`` grouped by ``field_name`` for each value.

        Values are split into membership filters no larger than the store's
        cap and the chunks are queried in parallel.
        """

        distinct = list(dict.fromkeys(value for value in values if value))
        grouped: Dict[str, List[Any]] = {value: [] for value in distinct}
        if not distinct:
            return grouped
        repository = self.store.collection(collection)
        chunks = chunked(distinct)
        workers = min(self.max_workers, len(chunks))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            results = list(
                executor.map(lambda chunk: repository.find_in(field_name, chunk), chunks)
            )
        for documents in results:
            for document in documents:
                grouped.setdefault(index_key(getattr(document, field_name)), []).append(
                    document
                )
        return grouped

    # ------------------------------------------------------------------
    # Stitching
    # ------------------------------------------------------------------
    def enrich(
        self, documents: Sequence[Any], relations: Sequence[Relation]
    ) -> List[Dict[str, Any]]:
        """Return one view per document with every relation attached."""

        started = time.perf_counter()
        views = [to_view(document) for document in documents]
        cache: Dict[str, Dict[str, Optional[Any]]] = defaultdict(dict)
        level: List[Tuple[Any, Dict[str, Any], Sequence[Relation]]] = [
            (document, view, relations) for document, view in zip(documents, views)
        ]
        hops = 0
        reads = 0

        while level:
            wanted: Dict[str, List[str]] = defaultdict(list)
            for document, _, pending in level:
                for relation in pending:
                    key = relation.key(document)
                    if key and key not in cache[relation.collection]:
                        wanted[relation.collection].append(key)
            for collection, keys in wanted.items():
                keys = list(dict.fromkeys(keys))
                found = self.fetch_many(collection, keys)
                reads += len(keys)
                for key in keys:
                    cache[collection][key] = found.get(key)

            next_level: List[Tuple[Any, Dict[str, Any], Sequence[Relation]]] = []
            for document, view, pending in level:
                for relation in pending:
                    key = relation.key(document)
                    related = cache[relation.collection].get(key) if key else None
                    if related is None:
                        view[relation.name] = self._fallback(relation, document, key)
                        continue
                    related_view = to_view(related)
                    view[relation.name] = related_view
                    if relation.children:
                        next_level.append((related, related_view, relation.children))
            level = next_level
            hops += 1

        logger.debug(
            "Enriched %d documents over %d hops with %d point reads in %.1f ms",
            len(views),
            hops,
            reads,
            (time.perf_counter() - started) * 1000,
        )
        return views

    def _fallback(
        self, relation: Relation, document: Any, key: Optional[str]
    ) -> Optional[Dict[str, Any]]:
        if not key:
            return None
        substitute = relation.fallback(document) if relation.fallback else None
        logger.warning(
            "Missing %s %r referenced as %s; %s",
            relation.collection,
            key,
            relation.name,
            "using stored snapshot" if substitute is not None else "leaving it empty",
        )
        return substitute


__all__ = ["EnrichmentPipeline", "Relation", "chunked", "to_view"]
