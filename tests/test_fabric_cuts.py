from datetime import datetime, timezone

import pytest

from textile_tracker import Inspection
from textile_tracker.errors import (
    AlreadyInspectedError,
    InvalidTransitionError,
    NotFoundError,
    QuantityMismatchError,
    ValidationError,
)


def make_cuts(service, warp, *quantities):
    return service.create_fabric_cuts(warp.id, [{"quantity": q} for q in quantities])


def test_cut_numbers_continue_per_warp(service, order, warp):
    first = make_cuts(service, warp, 10, 20)
    second = make_cuts(service, warp, 30)
    other_warp = service.create_warp(order.id, 50, warp_number="W6")
    other = make_cuts(service, other_warp, 5)

    assert [cut["fabric_number"] for cut in first + second] == ["W5-01", "W5-02", "W5-03"]
    assert second[0]["scan_payload"] == "W5/03"
    assert other[0]["fabric_number"] == "W6-01"


def test_cut_labels_carry_order_and_loom(service, order, warp):
    label = make_cuts(service, warp, 42.5)[0]["label"]
    assert label["order_number"] == order.order_number
    assert label["design_name"] == "Oxford Stripe"
    assert label["loom_name"] == "L-01"
    assert label["company_name"] == "ASHOK TEXTILES"
    assert label["quantity"] == 42.5
    assert label["total_cuts"] == 1


def test_cuts_require_active_warp_and_positive_quantities(service, warp):
    with pytest.raises(ValidationError):
        service.create_fabric_cuts(warp.id, [])
    with pytest.raises(ValidationError):
        make_cuts(service, warp, 10, 0)
    with pytest.raises(NotFoundError):
        service.create_fabric_cuts("missing", [{"quantity": 1}])

    service.update_warp(warp.id, status="complete")
    with pytest.raises(InvalidTransitionError):
        make_cuts(service, warp, 10)


def test_scan_lookup_accepts_equivalent_spellings(service, order, warp):
    cut = make_cuts(service, warp, 10)[0]

    for spelling in ("W5/01", "W5-01", "W5/1", "W5-1"):
        view = service.lookup_by_scan_code(spelling)
        assert view["id"] == cut["id"]
        assert view["warp"]["order"]["id"] == order.id
        assert view["loom"]["loom_name"] == "L-01"


def test_scan_lookup_errors(service, warp):
    cut = make_cuts(service, warp, 10)[0]
    with pytest.raises(NotFoundError):
        service.lookup_by_scan_code("W5/02")

    service.mark_inspection_arrival(cut["id"])
    with pytest.raises(AlreadyInspectedError):
        service.lookup_by_scan_code("W5/01")
    assert service.find_by_scan_code("W5/01")["id"] == cut["id"]


def test_split_scenario(service, warp):
    cuts = make_cuts(service, warp, 10, 10, 30)
    parent = cuts[2]
    assert parent["fabric_number"] == "W5-03"

    children = service.split_fabric_cut(parent["id"], [10, 10, 10])

    assert [child.fabric_number for child in children] == ["W5-03/01", "W5-03/02", "W5-03/03"]
    assert [child.scan_payload for child in children] == ["W5/03/01", "W5/03/02", "W5/03/03"]
    assert all(child.parent_fabric_id == parent["id"] for child in children)
    assert all(child.loom_name == "L-01" for child in children)
    with pytest.raises(NotFoundError):
        service.find_by_scan_code("W5-03")
    for child in children:
        assert service.lookup_by_scan_code(child.scan_payload)["id"] == child.id
        assert service.lookup_by_scan_code(child.fabric_number)["id"] == child.id


def test_split_replay_fails_closed(service, warp):
    parent = make_cuts(service, warp, 30)[0]
    service.split_fabric_cut(parent["id"], [15, 15])
    with pytest.raises(NotFoundError):
        service.split_fabric_cut(parent["id"], [15, 15])


@pytest.mark.parametrize(
    "parts",
    [[30], [10, 10], [10, 10, 10.02], [20, 20]],
)
def test_split_requires_conserved_quantity(service, store, warp, parts):
    parent = make_cuts(service, warp, 30)[0]
    with pytest.raises(QuantityMismatchError):
        service.split_fabric_cut(parent["id"], parts)
    assert store.fabric_cuts.get(parent["id"]).quantity == 30


def test_split_within_tolerance(service, warp):
    parent = make_cuts(service, warp, 30)[0]
    children = service.split_fabric_cut(parent["id"], [10, 10, 10.005])
    assert len(children) == 3


def test_split_children_are_unscanned_and_drop_parent_inspections(service, store, warp):
    parent = make_cuts(service, warp, 20)[0]
    service.mark_inspection_arrival(parent["id"])
    service.record_inspection(parent["id"], "grey", inspected_quantity=20)

    children = service.split_fabric_cut(parent["id"], [12, 8])

    assert all(child.inspection_arrival is None for child in children)
    assert store.inspections.list() == []


def test_sub_cuts_cannot_be_split_again(service, warp):
    parent = make_cuts(service, warp, 20)[0]
    child = service.split_fabric_cut(parent["id"], [10, 10])[0]
    with pytest.raises(ValidationError):
        service.split_fabric_cut(child.id, [5, 5])


def test_split_keeps_snapshot_after_loom_deletion(service, warp, loom):
    parent = make_cuts(service, warp, 20)[0]
    service.update_warp(warp.id, status="complete")
    service.delete_loom(loom.id)

    children = service.split_fabric_cut(parent["id"], [10, 10])

    view = service.get_fabric_cut(children[0].id)
    assert view["loom"]["loom_name"] == "L-01"
    assert view["loom"]["company_name"] == "ASHOK TEXTILES"


def test_inspection_arrival_and_history(service, warp):
    first, second, third = make_cuts(service, warp, 10, 20, 30)
    early = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
    late = datetime(2024, 3, 1, 15, 0, tzinfo=timezone.utc)
    service.mark_inspection_arrival(first["id"], arrived_at=early)
    service.mark_inspection_arrival(second["id"], arrived_at=late)

    with pytest.raises(AlreadyInspectedError):
        service.mark_inspection_arrival(first["id"])

    assert service.pending_inspection_count() == 1
    assert [view["id"] for view in service.loom_in_history()] == [second["id"], first["id"]]
    assert len(service.recent_inspection_arrivals(early.date())) == 2
    assert service.recent_inspection_arrivals(datetime(2024, 3, 2).date()) == []
    pending = service.list_fabric_cuts(pending_only=True)
    assert [view["id"] for view in pending] == [third["id"]]


def test_update_and_delete_report_history(service, warp):
    first, second = make_cuts(service, warp, 10, 20)
    service.mark_inspection_arrival(first["id"])

    cut, in_history = service.update_fabric_cut_quantity(first["id"], 11)
    assert cut.quantity == 11
    assert in_history is True
    assert service.update_fabric_cut_quantity(second["id"], 21)[1] is False
    with pytest.raises(ValidationError):
        service.update_fabric_cut_quantity(second["id"], 0)

    assert service.delete_fabric_cut(first["id"]) is True
    assert service.delete_fabric_cut(second["id"]) is False
    assert service.list_fabric_cuts_for_warp(warp.id) == []


def test_production_by_order(service, order, warp):
    make_cuts(service, warp, 10.111, 20.222)
    report = service.production_by_order(order.id)

    assert report["total_production"] == 30.33
    assert report["warps"][0]["production"]["total_cuts"] == 2
    assert len(report["production_by_date"]) == 1
    assert report["production_by_date"][0]["quantity"] == 30.33


def test_order_listing_progress(service, order, warp):
    make_cuts(service, warp, 250)
    view = service.list_orders()[0]
    assert view["production"]["total_warps"] == 1
    assert view["production"]["active_warps"] == 1
    assert view["production"]["progress_percentage"] == 25.0
    assert view["production"]["remaining_quantity"] == 750
    assert [v["id"] for v in service.list_active_orders()] == [order.id]


def test_scan_code_image(service, warp):
    cut = make_cuts(service, warp, 10)[0]
    svg = service.render_scan_code(cut["id"])
    assert svg.lstrip().startswith(b"<")
    assert b"svg" in svg


def test_inspection_listing_joins_three_hops(service, order, warp):
    cut = make_cuts(service, warp, 10)[0]
    inspection = service.record_inspection(
        cut["id"], "folding", inspected_quantity=10, mistake_quantity=1, inspectors=["Asha"]
    )
    assert isinstance(inspection, Inspection)

    views = service.list_inspections("folding")
    assert len(views) == 1
    assert views[0]["fabric_cut"]["warp"]["order"]["order_number"] == order.order_number
    assert views[0]["fabric_cut"]["loom"]["loom_name"] == "L-01"
    assert service.list_inspections("grey") == []

    with pytest.raises(ValidationError):
        service.record_inspection(cut["id"], "folding", inspected_quantity=1, mistake_quantity=2)
