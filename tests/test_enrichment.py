import threading
from collections import Counter
from operator import attrgetter

import pytest

from textile_tracker.enrichment import EnrichmentPipeline, Relation, chunked
from textile_tracker.errors import StoreError
from textile_tracker.repository import MEMBERSHIP_FILTER_LIMIT, RepositoryError
from textile_tracker.services import FABRIC_CUT_RELATIONS


class CountingCollection:
    def __init__(self, inner, name, reads, lock):
        self._inner = inner
        self._name = name
        self._reads = reads
        self._lock = lock

    def get(self, item_id):
        with self._lock:
            self._reads[(self._name, item_id)] += 1
        return self._inner.get(item_id)

    def find_in(self, field_name, values):
        with self._lock:
            self._reads[(self._name, "find_in")] += 1
        return self._inner.find_in(field_name, values)


class CountingStore:
    def __init__(self, store):
        self._store = store
        self.reads = Counter()
        self._lock = threading.Lock()

    def collection(self, name):
        return CountingCollection(self._store.collection(name), name, self.reads, self._lock)


def test_each_distinct_key_is_read_once(service, store, order, warp):
    service.create_fabric_cuts(warp.id, [{"quantity": q} for q in (1, 2, 3, 4, 5)])
    counting = CountingStore(store)
    pipeline = EnrichmentPipeline(counting, max_workers=4)

    views = pipeline.enrich(store.fabric_cuts.list(), FABRIC_CUT_RELATIONS)

    assert len(views) == 5
    assert all(view["warp"]["order"]["id"] == order.id for view in views)
    assert counting.reads[("warps", warp.id)] == 1
    assert counting.reads[("orders", order.id)] == 1
    assert counting.reads[("looms", warp.loom_id)] == 1
    assert max(counting.reads.values()) == 1


def test_missing_documents_use_fallback_or_none(service, store, warp, loom):
    cut = service.create_fabric_cuts(warp.id, [{"quantity": 5}])[0]
    store.looms.remove(loom.id)
    store.orders.remove(warp.order_id)

    view = EnrichmentPipeline(store).enrich(
        [store.fabric_cuts.get(cut["id"])], FABRIC_CUT_RELATIONS
    )[0]

    assert view["loom"] == {
        "id": loom.id,
        "loom_name": "L-01",
        "company_name": "ASHOK TEXTILES",
        "status": None,
        "snapshot": True,
    }
    assert view["warp"]["id"] == warp.id
    assert view["warp"]["order"] is None


def test_documents_without_foreign_key_get_none(service, store, order):
    warp = service.create_warp(order.id, 10)
    view = EnrichmentPipeline(store).enrich(
        [store.warps.get(warp.id)], (Relation("loom", "looms", key=attrgetter("loom_id")),)
    )[0]
    assert view["loom"] is None


def test_store_failures_propagate(store, warp):
    class BrokenCollection:
        def get(self, item_id):
            raise RepositoryError("store offline")

    class BrokenStore:
        def collection(self, name):
            return BrokenCollection()

    pipeline = EnrichmentPipeline(BrokenStore())
    with pytest.raises(StoreError):
        pipeline.enrich([store.warps.get(warp.id)], (Relation("order", "orders", key=attrgetter("order_id")),))


def test_group_by_chunks_membership_filters(service, store, order):
    warps = [service.create_warp(order.id, 10) for _ in range(MEMBERSHIP_FILTER_LIMIT + 3)]
    counting = CountingStore(store)

    grouped = EnrichmentPipeline(counting, max_workers=2).group_by(
        "warps", "order_id", [order.id, "other-order"]
    )
    assert {warp.id for warp in grouped[order.id]} == {warp.id for warp in warps}
    assert grouped["other-order"] == []

    by_id = EnrichmentPipeline(counting).group_by("warps", "id", [warp.id for warp in warps])
    assert all(len(by_id[warp.id]) == 1 for warp in warps)
    assert counting.reads[("warps", "find_in")] == 3


def test_membership_filter_cap_is_enforced(store):
    with pytest.raises(RepositoryError):
        store.warps.find_in("order_id", [str(n) for n in range(MEMBERSHIP_FILTER_LIMIT + 1)])


def test_chunked_sizes():
    assert [len(chunk) for chunk in chunked(list(range(23)))] == [10, 10, 3]
    assert chunked([]) == []
