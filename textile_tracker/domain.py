"""Core data structures for the textile production tracker."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    """Lifecycle stages for a customer order."""

    NEW = "NEW"
    RUNNING = "RUNNING"
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


ACTIVE_ORDER_STATUSES = frozenset(
    {OrderStatus.NEW, OrderStatus.RUNNING, OrderStatus.PENDING}
)


class OrderType(str, Enum):
    """Order families; each keeps its own yearly numbering sequence."""

    BULK = "bulk"
    SAMPLE = "sample"

    @property
    def prefix(self) -> str:
        return "B" if self is OrderType.BULK else "S"


class WarpStatus(str, Enum):
    ACTIVE = "active"
    COMPLETE = "complete"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self is not WarpStatus.ACTIVE


class LoomStatus(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    MAINTENANCE = "maintenance"


@dataclass(slots=True)
class Order:
    """A customer order with its billable and warping (buffer) quantity."""

    id: str
    order_number: str
    design_name: str
    design_number: str
    order_type: OrderType
    order_quantity: float
    warping_quantity: float
    status: OrderStatus = OrderStatus.NEW
    count: str = ""
    construction: str = ""
    merchandiser: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class Loom:
    """A weaving loom owned by a (job-work) company."""

    id: str
    company_name: str
    loom_name: str
    status: LoomStatus = LoomStatus.IDLE
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class Warp:
    """A loom-assigned production run drawn from an order's warping quantity.

    ``original_quantity`` and ``used_quantity`` are only set once a warp is
    stopped or completed. ``reused_quantity`` records how much of the warp was
    drawn from the order's freed pool when it was created.
    """

    id: str
    warp_number: str
    order_id: str
    quantity: float
    loom_id: Optional[str] = None
    status: WarpStatus = WarpStatus.ACTIVE
    original_quantity: Optional[float] = None
    used_quantity: Optional[float] = None
    reused_quantity: float = 0.0
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    completion_date: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def allocated_quantity(self) -> float:
        """Quantity this warp holds against its order's warping budget."""

        if self.status is WarpStatus.STOPPED and self.original_quantity is not None:
            gross = self.original_quantity
        else:
            gross = self.quantity
        return gross - self.reused_quantity


@dataclass(slots=True)
class FreedQuantity:
    """Capacity returned to an order when a warp stopped early."""

    id: str
    order_id: str
    total_freed_quantity: float
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class FabricCut:
    """A scannable piece of finished fabric produced from a warp.

    Loom and company names are copied from the loom at creation time so the
    cut still reads correctly after the loom is deleted.
    """

    id: str
    warp_id: str
    warp_number: str
    fabric_number: str
    cut_number: int
    quantity: float
    scan_payload: str
    total_cuts: int = 1
    sub_cut_number: Optional[int] = None
    parent_fabric_id: Optional[str] = None
    loom_id: Optional[str] = None
    loom_name: Optional[str] = None
    company_name: Optional[str] = None
    inspection_arrival: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class Counter:
    """Sequence document used for order numbering."""

    id: str
    count: int = 0


@dataclass(slots=True)
class Inspection:
    """Downstream quality inspection recorded against a fabric cut."""

    id: str
    fabric_cut_id: str
    fabric_number: str
    warp_id: str
    inspection_type: str
    inspected_quantity: float = 0.0
    mistake_quantity: float = 0.0
    inspectors: List[str] = field(default_factory=list)
    inspection_date: Optional[date] = None
    notes: str = ""
    created_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class AllocationSummary:
    """Snapshot of an order's warping budget."""

    order_id: str
    warping_quantity: float
    order_quantity: float
    allocated_quantity: float
    freed_quantity: float
    available_quantity: float


__all__ = [
    "utcnow",
    "OrderStatus",
    "ACTIVE_ORDER_STATUSES",
    "OrderType",
    "WarpStatus",
    "LoomStatus",
    "Order",
    "Loom",
    "Warp",
    "FreedQuantity",
    "FabricCut",
    "Counter",
    "Inspection",
    "AllocationSummary",
]
