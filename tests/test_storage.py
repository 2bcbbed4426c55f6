import threading

import pytest

from textile_tracker import LoomStatus, ProductionService, Settings, WarpStatus
from textile_tracker.domain import Loom
from textile_tracker.errors import InsufficientQuantityError, NotFoundError, StoreError
from textile_tracker.repository import DuplicateRecordError, InMemoryStore, RepositoryError
from textile_tracker.storage import TrackerDatabase


@pytest.fixture
def database(tmp_path):
    db = TrackerDatabase(str(tmp_path / "tracker.sqlite3"))
    yield db
    db.close()


def test_crud_and_indexed_queries(database):
    idle = Loom(id="l1", company_name="ASHOK TEXTILES", loom_name="L-01")
    busy = Loom(id="l2", company_name="ASHOK TEXTILES", loom_name="L-02", status=LoomStatus.BUSY)
    database.looms.add(idle.id, idle)
    database.looms.add(busy.id, busy)

    with pytest.raises(DuplicateRecordError):
        database.looms.add(idle.id, idle)
    assert database.looms.get("l2").loom_name == "L-02"
    assert [loom.id for loom in database.looms.find(status=LoomStatus.IDLE)] == ["l1"]
    assert [loom.id for loom in database.looms.find(status="busy")] == ["l2"]

    busy.status = LoomStatus.IDLE
    database.looms.upsert(busy.id, busy)
    assert {loom.id for loom in database.looms.find_in("status", ["idle"])} == {"l1", "l2"}

    database.looms.remove("l1")
    with pytest.raises(NotFoundError):
        database.looms.get("l1")
    with pytest.raises(NotFoundError):
        database.looms.remove("l1")


def test_transaction_rolls_back_sqlite_writes(database):
    loom = Loom(id="l1", company_name="ASHOK TEXTILES", loom_name="L-01")
    with pytest.raises(RuntimeError):
        with database.transaction():
            database.looms.add(loom.id, loom)
            raise RuntimeError("abort")
    assert database.looms.list() == []
    assert database.looms.find(status=LoomStatus.IDLE) == []


def test_transaction_rolls_back_in_memory_writes():
    store = InMemoryStore()
    loom = Loom(id="l1", company_name="ASHOK TEXTILES", loom_name="L-01")
    store.looms.add(loom.id, loom)
    with pytest.raises(RuntimeError):
        with store.transaction():
            loom.status = LoomStatus.MAINTENANCE
            store.looms.upsert(loom.id, loom)
            store.looms.add("l2", Loom(id="l2", company_name="X", loom_name="L-02"))
            raise RuntimeError("abort")
    assert store.looms.get("l1").status is LoomStatus.IDLE
    assert [item.id for item in store.looms.find(status=LoomStatus.IDLE)] == ["l1"]
    assert "l2" not in store.looms


def test_service_runs_on_sqlite(database):
    service = ProductionService(database, Settings(fanout_workers=4))
    order = service.create_order("Oxford Stripe", "D-4411", "bulk", 1000, 1100)
    loom = service.register_loom("L-01")
    warp = service.create_warp(order.id, 1100, loom.id, warp_number="W5")

    with pytest.raises(InsufficientQuantityError):
        service.create_warp(order.id, 1)
    assert database.warps.find(order_id=order.id)[0].status is WarpStatus.ACTIVE

    cuts = service.create_fabric_cuts(warp.id, [{"quantity": 30}])
    children = service.split_fabric_cut(cuts[0]["id"], [10, 10, 10])
    assert service.lookup_by_scan_code("W5/01/02")["id"] == children[1].id

    service.update_warp(warp.id, status="stopped", remaining_quantity=100)
    service.create_warp(order.id, 100)
    assert service.available_quantity(order.id).freed_quantity == 0
    assert len(service.list_looms()) == 1


def test_data_survives_reopen(tmp_path):
    path = str(tmp_path / "tracker.sqlite3")
    first = TrackerDatabase(path)
    ProductionService(first).register_loom("L-07")
    first.close()

    second = TrackerDatabase(path)
    try:
        assert [loom.loom_name for loom in second.looms.find(status="idle")] == ["L-07"]
    finally:
        second.close()


def test_concurrent_warp_creation_on_sqlite(database):
    service = ProductionService(database, Settings())
    order = service.create_order("Oxford Stripe", "D-4411", "bulk", 1000, 1100)
    barrier = threading.Barrier(8)
    outcomes = []
    lock = threading.Lock()

    def attempt():
        barrier.wait()
        try:
            service.create_warp(order.id, 600)
            result = "ok"
        except InsufficientQuantityError:
            result = "rejected"
        with lock:
            outcomes.append(result)

    workers = [threading.Thread(target=attempt) for _ in range(8)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()

    assert sorted(outcomes) == ["ok"] + ["rejected"] * 7
    assert len(database.warps.find(order_id=order.id)) == 1
    assert service.available_quantity(order.id).available_quantity == 500


def test_sqlite_constraint_failures_surface_as_store_errors(database):
    database.connection.execute(
        "CREATE TRIGGER looms_frozen BEFORE INSERT ON looms "
        "BEGIN SELECT RAISE(ABORT, 'looms are frozen'); END"
    )
    loom = Loom(id="l1", company_name="ASHOK TEXTILES", loom_name="L-01")

    with pytest.raises(StoreError, match="looms are frozen"):
        database.looms.add(loom.id, loom)
    with pytest.raises(RepositoryError):
        database.looms._run("INSERT INTO looms (id, payload) VALUES (?, NULL)", ("l2",))
    assert database.looms.list() == []
