import pytest

from textile_tracker import LoomStatus, ProductionService, Settings
from textile_tracker.errors import (
    ActiveWarpsExistError,
    LoomBusyError,
    NotFoundError,
    ValidationError,
)


def test_register_loom_defaults_company(service, settings):
    loom = service.register_loom("L-09")
    assert loom.company_name == settings.default_company_name
    assert loom.status is LoomStatus.IDLE


def test_register_loom_cannot_start_busy(service):
    with pytest.raises(ValidationError):
        service.register_loom("L-02", status="busy")


def test_delete_idle_loom(service, loom):
    service.delete_loom(loom.id)
    with pytest.raises(NotFoundError):
        service.get_loom(loom.id)


def test_delete_busy_loom_fails(service, warp, loom):
    with pytest.raises(LoomBusyError):
        service.delete_loom(loom.id)


def test_delete_checks_active_warps_independently_of_status(service, store, warp, loom):
    stale = store.looms.get(loom.id)
    stale.status = LoomStatus.IDLE
    store.looms.upsert(stale.id, stale)

    with pytest.raises(ActiveWarpsExistError):
        service.delete_loom(loom.id)


def test_delete_keeps_history_on_warps_and_cuts(service, store, warp, loom):
    cuts = service.create_fabric_cuts(warp.id, [{"quantity": 12}])
    service.update_warp(warp.id, status="complete")

    service.delete_loom(loom.id)

    assert store.warps.get(warp.id).loom_id == loom.id
    view = service.get_fabric_cut(cuts[0]["id"])
    assert view["loom"]["loom_name"] == "L-01"
    assert view["loom"]["snapshot"] is True


def test_manual_status_changes(service, loom, warp):
    with pytest.raises(LoomBusyError):
        service.set_loom_status(loom.id, "maintenance")
    with pytest.raises(ValidationError):
        service.set_loom_status(loom.id, "busy")

    spare = service.register_loom("L-02")
    assert service.set_loom_status(spare.id, "maintenance").status is LoomStatus.MAINTENANCE
    assert service.set_loom_status(spare.id, "idle").status is LoomStatus.IDLE


def test_update_loom_ignores_status_while_busy(service, loom, warp):
    updated = service.update_loom(loom.id, loom_name="L-01A", status="maintenance")
    assert updated.loom_name == "L-01A"
    assert updated.status is LoomStatus.BUSY


def test_list_looms_shows_active_warp_and_production(service, order, loom, warp):
    service.create_fabric_cuts(warp.id, [{"quantity": 10}, {"quantity": 15}])
    idle = service.register_loom("L-02")

    views = {view["id"]: view for view in service.list_looms()}

    busy_view = views[loom.id]
    assert busy_view["active_warp"]["id"] == warp.id
    assert busy_view["order"]["order_number"] == order.order_number
    assert busy_view["fabric_cut_stats"] == {"total_cuts": 2, "total_production": 25}
    assert views[idle.id]["active_warp"] is None
    assert [each.id for each in service.list_idle_looms()] == [idle.id]


def test_double_booked_loom_listing_warns(store, caplog):
    service = ProductionService(store, Settings(allow_loom_double_booking=True))
    order = service.create_order("A", "D-1", "bulk", 100, 200)
    loom = service.register_loom("L-01")
    first = service.create_warp(order.id, 50, loom.id)
    service.create_warp(order.id, 50, loom.id)

    with caplog.at_level("WARNING", logger="textile_tracker.services"):
        view = service.list_looms()[0]

    assert view["active_warp"]["id"] == first.id
    assert view["active_warp_count"] == 2
    assert "runs 2 active warps" in caplog.text
