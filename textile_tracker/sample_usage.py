"""Demonstration script for the textile production tracker."""

from __future__ import annotations

from pprint import pprint

from . import InMemoryStore, ProductionService, Settings
from .errors import InsufficientQuantityError, NotFoundError
from .logging_setup import configure_logging


def main() -> None:
    configure_logging("INFO")
    tracker = ProductionService(InMemoryStore(), Settings())

    # Looms and the order
    loom_a = tracker.register_loom("L-01", "ASHOK TEXTILES")
    loom_b = tracker.register_loom("L-02", "SHREE JOB WORKS")

    order = tracker.create_order(
        design_name="Oxford Stripe",
        design_number="D-4411",
        order_type="bulk",
        order_quantity=1000,
        warping_quantity=1100,
        construction="40x40 / 132x72",
        merchandiser="R. Mehta",
    )
    print(f"Order {order.order_number} created")

    warp_a = tracker.create_warp(order.id, 1100, loom_a.id, warp_number="W5")
    try:
        tracker.create_warp(order.id, 1)
    except InsufficientQuantityError as exc:
        print(f"Second warp rejected: {exc}")

    cuts = tracker.create_fabric_cuts(warp_a.id, [{"quantity": 30}, {"quantity": 45.5}])
    for cut in cuts:
        pprint(cut["label"])

    children = tracker.split_fabric_cut(cuts[0]["id"], [10, 10, 10])
    print("Split into", [child.fabric_number for child in children])
    try:
        tracker.find_by_scan_code("W5/01")
    except NotFoundError:
        print("W5/01 was split and no longer resolves")
    print("W5-01/02 resolves to", tracker.lookup_by_scan_code("W5/01/02")["fabric_number"])

    tracker.update_warp(warp_a.id, status="stopped", remaining_quantity=100)
    pprint(tracker.available_quantity(order.id))

    warp_b = tracker.create_warp(order.id, 100, loom_b.id, warp_number="W6")
    print(f"Warp {warp_b.warp_number} reused the freed quantity")
    pprint(tracker.available_quantity(order.id))

    pprint(tracker.list_looms())
    pprint(tracker.production_by_order(order.id))


if __name__ == "__main__":  # pragma: no cover - manual execution helper
    main()
