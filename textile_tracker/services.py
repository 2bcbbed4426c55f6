"""Service layer that implements the production tracking rules."""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, datetime
from enum import Enum
from operator import attrgetter
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Type,
    TypeVar,
    Union,
)
from uuid import uuid4

from .codes import (
    decode_scan_code,
    fabric_number,
    scan_payload,
    sub_cut_fabric_number,
    sub_cut_scan_payload,
    warp_code,
)
from .config import Settings
from .domain import (
    ACTIVE_ORDER_STATUSES,
    AllocationSummary,
    Counter,
    FabricCut,
    FreedQuantity,
    Inspection,
    Loom,
    LoomStatus,
    Order,
    OrderStatus,
    OrderType,
    Warp,
    WarpStatus,
    utcnow,
)
from .enrichment import EnrichmentPipeline, Relation, to_view
from .errors import (
    ActiveWarpsExistError,
    AlreadyInspectedError,
    InsufficientQuantityError,
    InvalidTransitionError,
    LoomBusyError,
    NotFoundError,
    QuantityMismatchError,
    TransactionConflictError,
    ValidationError,
)
from .labels import render_scan_code_svg
from .repository import DocumentStore, RecordNotFoundError

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Enum)
R = TypeVar("R")

# Slack for float comparisons on quantities.
EPSILON = 1e-9
# Allowed difference between a split's parts and the parent quantity.
SPLIT_TOLERANCE = 0.01

QuantityInput = Union[float, int, Mapping[str, Any]]


def _new_id() -> str:
    return str(uuid4())


def _coerce(enum_type: Type[E], value: Union[E, str], label: str) -> E:
    if isinstance(value, enum_type):
        return value
    text = str(value).strip()
    for candidate in (text, text.upper(), text.lower()):
        try:
            return enum_type(candidate)
        except ValueError:
            continue
    raise ValidationError(f"Unknown {label} {value!r}")


def _require_positive(value: Any, label: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{label} must be a number, got {value!r}") from exc
    if number <= 0:
        raise ValidationError(f"{label} must be greater than zero")
    return number


def _cut_quantity(entry: QuantityInput) -> float:
    if isinstance(entry, Mapping):
        if "quantity" not in entry:
            raise ValidationError("Each fabric cut needs a quantity")
        return _require_positive(entry["quantity"], "Fabric cut quantity")
    return _require_positive(entry, "Fabric cut quantity")


def _loom_snapshot(cut: FabricCut) -> Optional[Dict[str, Any]]:
    if cut.loom_name is None and cut.company_name is None:
        return None
    return {
        "id": cut.loom_id,
        "loom_name": cut.loom_name,
        "company_name": cut.company_name,
        "status": None,
        "snapshot": True,
    }


def _production(cuts: Iterable[FabricCut]) -> Dict[str, Any]:
    cuts = list(cuts)
    return {
        "total_cuts": len(cuts),
        "total_production": round(sum(cut.quantity for cut in cuts), 2),
    }


def _newest_first(views: List[Dict[str, Any]], field_name: str = "created_at") -> List[Dict[str, Any]]:
    return sorted(
        views,
        key=lambda view: (view.get(field_name) is not None, view.get(field_name)),
        reverse=True,
    )


ORDER_OF_WARP = Relation("order", "orders", key=attrgetter("order_id"))
LOOM_OF_WARP = Relation("loom", "looms", key=attrgetter("loom_id"))
WARP_RELATIONS = (ORDER_OF_WARP, LOOM_OF_WARP)
FABRIC_CUT_RELATIONS = (
    Relation("warp", "warps", key=attrgetter("warp_id"), children=(ORDER_OF_WARP,)),
    Relation("loom", "looms", key=attrgetter("loom_id"), fallback=_loom_snapshot),
)
INSPECTION_RELATIONS = (
    Relation(
        "fabric_cut",
        "fabric_cuts",
        key=attrgetter("fabric_cut_id"),
        children=FABRIC_CUT_RELATIONS,
    ),
)

_UPDATABLE_ORDER_FIELDS = {
    "design_name",
    "design_number",
    "order_quantity",
    "warping_quantity",
    "count",
    "construction",
    "merchandiser",
}


class ProductionService:
    """High level API orchestrating orders, warps, looms and fabric cuts."""

    def __init__(self, store: DocumentStore, settings: Optional[Settings] = None) -> None:
        self.store = store
        self.settings = settings or Settings()
        self.enrichment = EnrichmentPipeline(store, max_workers=self.settings.fanout_workers)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------
    def _atomic(self, label: str, work: Callable[[], R]) -> R:
        """Run ``work`` in one store transaction, retrying on conflicts."""

        attempts = self.settings.transaction_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                with self.store.transaction():
                    return work()
            except TransactionConflictError:
                if attempt >= attempts:
                    logger.error("Giving up on %s after %d attempts", label, attempt)
                    raise
                logger.warning(
                    "Transaction conflict during %s, retrying (%d/%d)",
                    label,
                    attempt,
                    attempts - 1,
                )
        raise AssertionError("unreachable")  # pragma: no cover

    def _next_sequence(self, counter_id: str) -> int:
        try:
            counter = self.store.counters.get(counter_id)
        except RecordNotFoundError:
            counter = Counter(id=counter_id)
        counter.count += 1
        self.store.counters.upsert(counter_id, counter)
        return counter.count

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------
    def create_order(
        self,
        design_name: str,
        design_number: str,
        order_type: Union[OrderType, str],
        order_quantity: float,
        warping_quantity: float,
        *,
        count: str = "",
        construction: str = "",
        merchandiser: str = "",
        status: Union[OrderStatus, str] = OrderStatus.NEW,
    ) -> Order:
        kind = _coerce(OrderType, order_type, "order type")
        order_status = _coerce(OrderStatus, status, "order status")
        order_quantity = _require_positive(order_quantity, "Order quantity")
        warping_quantity = _require_positive(warping_quantity, "Warping quantity")
        if warping_quantity <= order_quantity:
            raise ValidationError("Warping quantity must be greater than order quantity")
        if not design_name or not design_number:
            raise ValidationError("Design name and design number are required")

        def work() -> Order:
            now = utcnow()
            order = Order(
                id=_new_id(),
                order_number=self._next_order_number(kind, now.year),
                design_name=design_name,
                design_number=design_number,
                order_type=kind,
                order_quantity=order_quantity,
                warping_quantity=warping_quantity,
                status=order_status,
                count=count,
                construction=construction,
                merchandiser=merchandiser,
                created_at=now,
                updated_at=now,
            )
            self.store.orders.add(order.id, order)
            return order

        order = self._atomic("order creation", work)
        logger.info("Created order %s (%s)", order.order_number, order.id)
        return order

    def _next_order_number(self, order_type: OrderType, year: int) -> str:
        sequence = self._next_sequence(f"orders_{year}_{order_type.prefix}")
        return f"{self.settings.order_number_prefix}/{year}/{order_type.prefix}/{sequence:05d}"

    def get_order(self, order_id: str) -> Order:
        return self.store.orders.get(order_id)

    def update_order(self, order_id: str, **changes: Any) -> Order:
        unknown = set(changes) - _UPDATABLE_ORDER_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update order fields: {', '.join(sorted(unknown))}")
        for name in ("order_quantity", "warping_quantity"):
            if changes.get(name) is not None:
                changes[name] = _require_positive(changes[name], name.replace("_", " ").capitalize())

        def work() -> Order:
            order = self.store.orders.get(order_id)
            for name, value in changes.items():
                if value is not None:
                    setattr(order, name, value)
            if order.warping_quantity <= order.order_quantity:
                raise ValidationError("Warping quantity must be greater than order quantity")
            summary = self._allocation(order)
            if summary.allocated_quantity - summary.freed_quantity > order.warping_quantity + EPSILON:
                raise InsufficientQuantityError(
                    f"Warping quantity {order.warping_quantity} is below the "
                    f"{summary.allocated_quantity - summary.freed_quantity} already allocated"
                )
            order.updated_at = utcnow()
            self.store.orders.upsert(order.id, order)
            return order

        return self._atomic("order update", work)

    def update_order_status(self, order_id: str, status: Union[OrderStatus, str]) -> Order:
        new_status = _coerce(OrderStatus, status, "order status")

        def work() -> Order:
            order = self.store.orders.get(order_id)
            order.status = new_status
            order.updated_at = utcnow()
            self.store.orders.upsert(order.id, order)
            return order

        order = self._atomic("order status update", work)
        logger.info("Order %s is now %s", order.order_number, order.status.value)
        return order

    def list_orders(
        self, status: Optional[Union[OrderStatus, str]] = None
    ) -> List[Dict[str, Any]]:
        """Orders with their production progress, newest first."""

        if status is None:
            orders = self.store.orders.list()
        else:
            orders = self.store.orders.find(status=_coerce(OrderStatus, status, "order status"))
        return self._order_views(orders)

    def list_active_orders(self) -> List[Dict[str, Any]]:
        orders = self.store.orders.find_in("status", sorted(ACTIVE_ORDER_STATUSES))
        return self._order_views(orders)

    def _order_views(self, orders: Sequence[Order]) -> List[Dict[str, Any]]:
        warps_by_order = self.enrichment.group_by(
            "warps", "order_id", [order.id for order in orders]
        )
        warp_ids = [warp.id for warps in warps_by_order.values() for warp in warps]
        cuts_by_warp = self.enrichment.group_by("fabric_cuts", "warp_id", warp_ids)

        views = []
        for order in orders:
            warps = warps_by_order.get(order.id, [])
            cuts = [cut for warp in warps for cut in cuts_by_warp.get(warp.id, [])]
            produced = _production(cuts)
            view = to_view(order)
            view["production"] = {
                "total_warps": len(warps),
                "active_warps": sum(1 for warp in warps if warp.status is WarpStatus.ACTIVE),
                **produced,
                "progress_percentage": round(
                    min(100.0, produced["total_production"] / order.order_quantity * 100), 2
                ),
                "remaining_quantity": round(
                    max(0.0, order.order_quantity - produced["total_production"]), 2
                ),
            }
            views.append(view)
        return sorted(views, key=lambda view: view["created_at"], reverse=True)

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------
    def _freed_record(self, order_id: str) -> Optional[FreedQuantity]:
        try:
            return self.store.freed_quantities.get(order_id)
        except RecordNotFoundError:
            return None

    def _allocation(self, order: Order) -> AllocationSummary:
        warps = self.store.warps.find(order_id=order.id)
        allocated = sum(warp.allocated_quantity for warp in warps)
        freed_record = self._freed_record(order.id)
        freed = freed_record.total_freed_quantity if freed_record else 0.0
        return AllocationSummary(
            order_id=order.id,
            warping_quantity=order.warping_quantity,
            order_quantity=order.order_quantity,
            allocated_quantity=allocated,
            freed_quantity=freed,
            available_quantity=order.warping_quantity - allocated + freed,
        )

    def available_quantity(self, order_id: str) -> AllocationSummary:
        order = self.store.orders.get(order_id)
        summary = self._allocation(order)
        summary.available_quantity = max(0.0, summary.available_quantity)
        return summary

    def _add_freed(self, order_id: str, amount: float) -> None:
        if amount <= EPSILON:
            return
        record = self._freed_record(order_id)
        now = utcnow()
        if record is None:
            record = FreedQuantity(id=order_id, order_id=order_id, total_freed_quantity=0.0)
        record.total_freed_quantity += amount
        record.updated_at = now
        self.store.freed_quantities.upsert(order_id, record)

    def _draw_freed(self, order_id: str, amount: float) -> float:
        record = self._freed_record(order_id)
        if record is None:
            return 0.0
        drawn = min(amount, record.total_freed_quantity)
        remaining = record.total_freed_quantity - drawn
        if remaining <= EPSILON:
            self.store.freed_quantities.remove(order_id)
        else:
            record.total_freed_quantity = remaining
            record.updated_at = utcnow()
            self.store.freed_quantities.upsert(order_id, record)
        return drawn

    def _assign_warp_number(self, requested: Optional[str]) -> str:
        """Return a warp number no other warp carries; fabric codes derive from it."""

        number = (requested or "").strip()
        if number:
            if self.store.warps.find(warp_number=number):
                raise ValidationError(f"Warp number {number} is already in use")
            return number
        while True:
            number = f"W{self._next_sequence('warps')}"
            if not self.store.warps.find(warp_number=number):
                return number

    def create_warp(
        self,
        order_id: str,
        quantity: float,
        loom_id: Optional[str] = None,
        *,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        warp_number: Optional[str] = None,
    ) -> Warp:
        """Allocate ``quantity`` of an order's warping budget to a new warp.

        Reading the available quantity, drawing down the freed pool and
        writing the warp, order and loom happen in one transaction.
        """

        quantity = _require_positive(quantity, "Warp quantity")
        if start_date and end_date and end_date < start_date:
            raise ValidationError("End date cannot be before start date")

        def work() -> Warp:
            order = self.store.orders.get(order_id)
            loom = self.store.looms.get(loom_id) if loom_id else None
            if loom is not None:
                self._check_loom_available(loom)
            summary = self._allocation(order)
            if quantity > summary.available_quantity + EPSILON:
                raise InsufficientQuantityError(
                    f"Only {max(0.0, summary.available_quantity):g} of order "
                    f"{order.order_number} is available, requested {quantity:g}"
                )
            number = self._assign_warp_number(warp_number)
            reused = self._draw_freed(order.id, quantity)
            now = utcnow()
            warp = Warp(
                id=_new_id(),
                warp_number=number,
                order_id=order.id,
                quantity=quantity,
                loom_id=loom.id if loom else None,
                reused_quantity=reused,
                start_date=start_date,
                end_date=end_date,
                created_at=now,
                updated_at=now,
            )
            self.store.warps.add(warp.id, warp)
            if order.status is not OrderStatus.RUNNING:
                order.status = OrderStatus.RUNNING
                order.updated_at = now
                self.store.orders.upsert(order.id, order)
            if loom is not None:
                self._set_loom(loom, LoomStatus.BUSY)
            return warp

        warp = self._atomic("warp creation", work)
        logger.info(
            "Created warp %s for order %s with quantity %g on loom %s",
            warp.warp_number,
            warp.order_id,
            warp.quantity,
            warp.loom_id or "-",
        )
        return warp

    # ------------------------------------------------------------------
    # Looms
    # ------------------------------------------------------------------
    def _check_loom_available(self, loom: Loom) -> None:
        if loom.status is LoomStatus.IDLE:
            return
        if self.settings.allow_loom_double_booking:
            logger.warning(
                "Assigning loom %s while it is %s", loom.loom_name, loom.status.value
            )
            return
        raise LoomBusyError(f"Loom {loom.loom_name} is {loom.status.value}")

    def _set_loom(self, loom: Loom, status: LoomStatus) -> None:
        if loom.status is status:
            return
        logger.info("Loom %s: %s -> %s", loom.loom_name, loom.status.value, status.value)
        loom.status = status
        loom.updated_at = utcnow()
        self.store.looms.upsert(loom.id, loom)

    def _release_loom(self, loom_id: Optional[str]) -> None:
        if not loom_id:
            return
        try:
            loom = self.store.looms.get(loom_id)
        except RecordNotFoundError:
            logger.warning("Loom %s no longer exists; nothing to release", loom_id)
            return
        self._set_loom(loom, LoomStatus.IDLE)

    def register_loom(
        self,
        loom_name: str,
        company_name: Optional[str] = None,
        status: Union[LoomStatus, str] = LoomStatus.IDLE,
    ) -> Loom:
        loom_status = _coerce(LoomStatus, status, "loom status")
        if loom_status is LoomStatus.BUSY:
            raise ValidationError("A loom only becomes busy through a warp")
        if not loom_name or not loom_name.strip():
            raise ValidationError("Loom name is required")
        loom = Loom(
            id=_new_id(),
            company_name=(company_name or "").strip() or self.settings.default_company_name,
            loom_name=loom_name.strip(),
            status=loom_status,
        )
        self.store.looms.add(loom.id, loom)
        logger.info("Registered loom %s (%s)", loom.loom_name, loom.company_name)
        return loom

    def get_loom(self, loom_id: str) -> Loom:
        return self.store.looms.get(loom_id)

    def update_loom(
        self,
        loom_id: str,
        *,
        loom_name: Optional[str] = None,
        company_name: Optional[str] = None,
        status: Optional[Union[LoomStatus, str]] = None,
    ) -> Loom:
        """Rename a loom; a requested status only applies while it is not busy."""

        requested = _coerce(LoomStatus, status, "loom status") if status is not None else None
        if requested is LoomStatus.BUSY:
            raise ValidationError("A loom only becomes busy through a warp")

        def work() -> Loom:
            loom = self.store.looms.get(loom_id)
            if loom_name is not None and loom_name.strip():
                loom.loom_name = loom_name.strip()
            if company_name is not None and company_name.strip():
                loom.company_name = company_name.strip()
            if requested is not None:
                if loom.status is LoomStatus.BUSY:
                    logger.info(
                        "Ignoring status %s for busy loom %s", requested.value, loom.loom_name
                    )
                else:
                    loom.status = requested
            loom.updated_at = utcnow()
            self.store.looms.upsert(loom.id, loom)
            return loom

        return self._atomic("loom update", work)

    def set_loom_status(self, loom_id: str, status: Union[LoomStatus, str]) -> Loom:
        """Move a loom between idle and maintenance."""

        requested = _coerce(LoomStatus, status, "loom status")
        if requested is LoomStatus.BUSY:
            raise ValidationError("A loom only becomes busy through a warp")

        def work() -> Loom:
            loom = self.store.looms.get(loom_id)
            if loom.status is LoomStatus.BUSY:
                raise LoomBusyError(f"Loom {loom.loom_name} is running a warp")
            self._set_loom(loom, requested)
            return loom

        return self._atomic("loom status change", work)

    def delete_loom(self, loom_id: str) -> None:
        def work() -> Loom:
            loom = self.store.looms.get(loom_id)
            if loom.status is LoomStatus.BUSY:
                raise LoomBusyError(f"Loom {loom.loom_name} is busy")
            if self.store.warps.find(loom_id=loom_id, status=WarpStatus.ACTIVE):
                raise ActiveWarpsExistError(
                    f"Loom {loom.loom_name} still has active warps"
                )
            self.store.looms.remove(loom_id)
            return loom

        loom = self._atomic("loom deletion", work)
        logger.info("Deleted loom %s", loom.loom_name)

    def list_looms(self) -> List[Dict[str, Any]]:
        """Looms with their active warp, its order and the warp's production."""

        looms = self.store.looms.list()
        active = [
            warp
            for warp in self.store.warps.find(status=WarpStatus.ACTIVE)
            if warp.loom_id
        ]
        warp_views = self.enrichment.enrich(active, (ORDER_OF_WARP,))
        cuts_by_warp = self.enrichment.group_by(
            "fabric_cuts", "warp_id", [warp.id for warp in active]
        )
        by_loom: Dict[str, Tuple[Warp, Dict[str, Any]]] = {}
        warp_counts: Dict[str, int] = defaultdict(int)
        for warp, warp_view in sorted(
            zip(active, warp_views), key=lambda pair: pair[0].created_at
        ):
            warp_counts[warp.loom_id] += 1
            if warp.loom_id in by_loom:
                logger.warning(
                    "Loom %s runs %d active warps; listing %s",
                    warp.loom_id,
                    warp_counts[warp.loom_id],
                    by_loom[warp.loom_id][0].warp_number,
                )
                continue
            by_loom[warp.loom_id] = (warp, warp_view)

        views = []
        for loom in looms:
            view = to_view(loom)
            view["active_warp_count"] = warp_counts.get(loom.id, 0)
            current = by_loom.get(loom.id)
            if current is None:
                view["active_warp"] = None
                view["order"] = None
                view["fabric_cut_stats"] = _production(())
            else:
                warp, warp_view = current
                view["order"] = warp_view.pop("order")
                view["active_warp"] = warp_view
                view["fabric_cut_stats"] = _production(cuts_by_warp.get(warp.id, ()))
            views.append(view)
        return sorted(views, key=lambda view: (view["company_name"], view["loom_name"]))

    def list_idle_looms(self) -> List[Loom]:
        looms = self.store.looms.find(status=LoomStatus.IDLE)
        return sorted(looms, key=lambda loom: (loom.company_name, loom.loom_name))

    # ------------------------------------------------------------------
    # Warps
    # ------------------------------------------------------------------
    def update_warp(
        self,
        warp_id: str,
        *,
        status: Optional[Union[WarpStatus, str]] = None,
        remaining_quantity: Optional[float] = None,
        loom_id: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> Warp:
        """Stop, complete or reassign an active warp.

        Stopping returns ``remaining_quantity`` (zero when omitted) to the
        order's freed pool. Either exit releases the loom.
        """

        target = _coerce(WarpStatus, status, "warp status") if status is not None else None
        if loom_id is not None and target is not None and target.is_terminal:
            raise ValidationError("Cannot reassign the loom of a warp that is being closed")
        if remaining_quantity is not None and target is not WarpStatus.STOPPED:
            raise ValidationError("Remaining quantity only applies when stopping a warp")

        def work() -> Warp:
            warp = self.store.warps.get(warp_id)
            if warp.status.is_terminal:
                raise InvalidTransitionError(
                    f"Warp {warp.warp_number} is already {warp.status.value}"
                )
            now = utcnow()

            new_loom: Optional[Loom] = None
            if loom_id is not None and loom_id != warp.loom_id:
                new_loom = self.store.looms.get(loom_id)
                self._check_loom_available(new_loom)

            remaining = 0.0
            if target is WarpStatus.STOPPED:
                remaining = 0.0 if remaining_quantity is None else float(remaining_quantity)
                if remaining < 0 or remaining > warp.quantity + EPSILON:
                    raise ValidationError(
                        f"Remaining quantity must be between 0 and {warp.quantity:g}"
                    )

            if start_date is not None:
                warp.start_date = start_date
            if end_date is not None:
                warp.end_date = end_date

            if target is not None and target.is_terminal:
                if target is WarpStatus.STOPPED:
                    original = warp.quantity
                    warp.original_quantity = original
                    warp.used_quantity = original - remaining
                    warp.quantity = remaining
                    self._add_freed(warp.order_id, remaining)
                warp.status = target
                warp.completion_date = now
                self._release_loom(warp.loom_id)
            elif new_loom is not None:
                self._release_loom(warp.loom_id)
                self._set_loom(new_loom, LoomStatus.BUSY)
                warp.loom_id = new_loom.id

            warp.updated_at = now
            self.store.warps.upsert(warp.id, warp)
            return warp

        warp = self._atomic("warp update", work)
        if target is not None and target.is_terminal:
            logger.info(
                "Warp %s %s (used %s, returned %g)",
                warp.warp_number,
                warp.status.value,
                "-" if warp.used_quantity is None else f"{warp.used_quantity:g}",
                warp.quantity if warp.status is WarpStatus.STOPPED else 0.0,
            )
        elif loom_id is not None:
            logger.info("Warp %s moved to loom %s", warp.warp_number, warp.loom_id)
        return warp

    def _warp_views(self, warps: Sequence[Warp]) -> List[Dict[str, Any]]:
        views = self.enrichment.enrich(warps, WARP_RELATIONS)
        cuts_by_warp = self.enrichment.group_by(
            "fabric_cuts", "warp_id", [warp.id for warp in warps]
        )
        for warp, view in zip(warps, views):
            view["production"] = _production(cuts_by_warp.get(warp.id, ()))
            view["allocated_quantity"] = warp.allocated_quantity
        return _newest_first(views)

    def get_warp(self, warp_id: str) -> Dict[str, Any]:
        warp = self.store.warps.get(warp_id)
        return self._warp_views([warp])[0]

    def list_warps(
        self,
        *,
        status: Optional[Union[WarpStatus, str]] = None,
        order_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        filters: Dict[str, Any] = {}
        if status is not None:
            filters["status"] = _coerce(WarpStatus, status, "warp status")
        if order_id is not None:
            filters["order_id"] = order_id
        warps = self.store.warps.find(**filters) if filters else self.store.warps.list()
        return self._warp_views(warps)

    def list_active_warps(self) -> List[Dict[str, Any]]:
        return self.list_warps(status=WarpStatus.ACTIVE)

    def count_active_warps(self) -> int:
        return len(self.store.warps.find(status=WarpStatus.ACTIVE))

    # ------------------------------------------------------------------
    # Fabric cuts
    # ------------------------------------------------------------------
    def create_fabric_cuts(
        self, warp_id: str, cuts: Sequence[QuantityInput]
    ) -> List[Dict[str, Any]]:
        """Cut a batch of numbered fabric pieces from an active warp.

        Returns one view per cut including the label printed on it.
        """

        if not cuts:
            raise ValidationError("At least one fabric cut is required")
        quantities = [_cut_quantity(entry) for entry in cuts]

        def work() -> Tuple[Warp, Optional[Order], List[FabricCut]]:
            warp = self.store.warps.get(warp_id)
            if warp.status is not WarpStatus.ACTIVE:
                raise InvalidTransitionError(
                    f"Warp {warp.warp_number} is {warp.status.value}; fabric can only be cut from active warps"
                )
            try:
                order: Optional[Order] = self.store.orders.get(warp.order_id)
            except RecordNotFoundError:
                order = None
            loom: Optional[Loom] = None
            if warp.loom_id:
                try:
                    loom = self.store.looms.get(warp.loom_id)
                except RecordNotFoundError:
                    logger.warning("Warp %s references missing loom %s", warp.id, warp.loom_id)
            existing = self.store.fabric_cuts.find(warp_id=warp.id)
            last = max((cut.cut_number for cut in existing), default=0)
            code = warp_code(warp.warp_number)
            now = utcnow()
            created = []
            for offset, quantity in enumerate(quantities, start=1):
                number = last + offset
                cut = FabricCut(
                    id=_new_id(),
                    warp_id=warp.id,
                    warp_number=warp.warp_number,
                    fabric_number=fabric_number(code, number),
                    cut_number=number,
                    quantity=quantity,
                    scan_payload=scan_payload(code, number),
                    total_cuts=len(quantities),
                    loom_id=warp.loom_id,
                    loom_name=loom.loom_name if loom else None,
                    company_name=loom.company_name if loom else self.settings.default_company_name,
                    created_at=now,
                    updated_at=now,
                )
                self.store.fabric_cuts.add(cut.id, cut)
                created.append(cut)
            return warp, order, created

        warp, order, created = self._atomic("fabric cut batch", work)
        logger.info(
            "Cut %d fabric pieces from warp %s (%s..%s)",
            len(created),
            warp.warp_number,
            created[0].fabric_number,
            created[-1].fabric_number,
        )
        views = []
        for cut in created:
            view = to_view(cut)
            view["label"] = {
                "fabric_number": cut.fabric_number,
                "scan_payload": cut.scan_payload,
                "warp_number": cut.warp_number,
                "order_number": order.order_number if order else None,
                "design_name": order.design_name if order else None,
                "design_number": order.design_number if order else None,
                "quantity": cut.quantity,
                "loom_name": cut.loom_name,
                "company_name": cut.company_name,
                "cut_number": cut.cut_number,
                "total_cuts": cut.total_cuts,
            }
            views.append(view)
        return views

    def find_by_scan_code(self, code: str) -> Dict[str, Any]:
        """Resolve any accepted spelling of a scan code to an enriched cut."""

        decoded = decode_scan_code(code)
        matches = self.store.fabric_cuts.find_in("fabric_number", list(decoded.candidates))
        if not matches:
            raise NotFoundError(f"No fabric cut matches scan code {decoded.raw!r}")
        if len(matches) > 1:
            logger.warning(
                "Scan code %r matches %d fabric cuts; using the newest", decoded.raw, len(matches)
            )
            matches.sort(key=attrgetter("created_at"), reverse=True)
        return self.enrichment.enrich(matches[:1], FABRIC_CUT_RELATIONS)[0]

    def lookup_by_scan_code(self, code: str) -> Dict[str, Any]:
        """Resolve a scan at inspection intake; fails if the cut already arrived."""

        view = self.find_by_scan_code(code)
        if view["inspection_arrival"] is not None:
            raise AlreadyInspectedError(
                f"Fabric cut {view['fabric_number']} has already been inspected"
            )
        return view

    def split_fabric_cut(self, fabric_cut_id: str, quantities: Sequence[float]) -> List[FabricCut]:
        """Replace a cut by sub-cuts whose quantities add up to the original.

        Replaying a split fails with NotFoundError because the parent is gone.
        """

        def work() -> List[FabricCut]:
            parent = self.store.fabric_cuts.get(fabric_cut_id)
            if parent.sub_cut_number is not None:
                raise ValidationError(
                    f"Fabric cut {parent.fabric_number} is already a sub-cut"
                )
            parts = [_require_positive(quantity, "Split quantity") for quantity in quantities]
            if len(parts) < 2:
                raise QuantityMismatchError("A split needs at least two parts")
            if abs(sum(parts) - parent.quantity) >= SPLIT_TOLERANCE:
                raise QuantityMismatchError(
                    f"Split parts add up to {sum(parts):g}, expected {parent.quantity:g}"
                )

            code = warp_code(parent.warp_number)
            now = utcnow()
            children = [
                FabricCut(
                    id=_new_id(),
                    warp_id=parent.warp_id,
                    warp_number=parent.warp_number,
                    fabric_number=sub_cut_fabric_number(parent.fabric_number, index),
                    cut_number=parent.cut_number,
                    quantity=quantity,
                    scan_payload=sub_cut_scan_payload(code, parent.cut_number, index),
                    total_cuts=len(parts),
                    sub_cut_number=index,
                    parent_fabric_id=parent.id,
                    loom_id=parent.loom_id,
                    loom_name=parent.loom_name,
                    company_name=parent.company_name,
                    created_at=now,
                    updated_at=now,
                )
                for index, quantity in enumerate(parts, start=1)
            ]

            self.store.fabric_cuts.remove(parent.id)
            for inspection in self.store.inspections.find(fabric_number=parent.fabric_number):
                self.store.inspections.remove(inspection.id)
            for child in children:
                self.store.fabric_cuts.add(child.id, child)
            logger.info(
                "Split fabric cut %s into %s",
                parent.fabric_number,
                ", ".join(child.fabric_number for child in children),
            )
            return children

        return self._atomic("fabric cut split", work)

    def get_fabric_cut(self, fabric_cut_id: str) -> Dict[str, Any]:
        cut = self.store.fabric_cuts.get(fabric_cut_id)
        return self.enrichment.enrich([cut], FABRIC_CUT_RELATIONS)[0]

    def list_fabric_cuts(
        self,
        *,
        warp_id: Optional[str] = None,
        on_date: Optional[date] = None,
        pending_only: bool = False,
    ) -> List[Dict[str, Any]]:
        cuts = (
            self.store.fabric_cuts.find(warp_id=warp_id)
            if warp_id
            else self.store.fabric_cuts.list()
        )
        if on_date is not None:
            cuts = [cut for cut in cuts if cut.created_at.date() == on_date]
        if pending_only:
            cuts = [cut for cut in cuts if cut.inspection_arrival is None]
        return _newest_first(self.enrichment.enrich(cuts, FABRIC_CUT_RELATIONS))

    def list_fabric_cuts_for_warp(self, warp_id: str) -> List[FabricCut]:
        self.store.warps.get(warp_id)
        cuts = self.store.fabric_cuts.find(warp_id=warp_id)
        return sorted(cuts, key=lambda cut: (cut.cut_number, cut.sub_cut_number or 0))

    def pending_inspection_count(self) -> int:
        return sum(1 for cut in self.store.fabric_cuts.list() if cut.inspection_arrival is None)

    def mark_inspection_arrival(
        self, fabric_cut_id: str, arrived_at: Optional[datetime] = None
    ) -> FabricCut:
        def work() -> FabricCut:
            cut = self.store.fabric_cuts.get(fabric_cut_id)
            if cut.inspection_arrival is not None:
                raise AlreadyInspectedError(
                    f"Fabric cut {cut.fabric_number} already arrived at inspection"
                )
            cut.inspection_arrival = arrived_at or utcnow()
            cut.updated_at = utcnow()
            self.store.fabric_cuts.upsert(cut.id, cut)
            return cut

        cut = self._atomic("inspection arrival", work)
        logger.info("Fabric cut %s arrived at inspection", cut.fabric_number)
        return cut

    def loom_in_history(self) -> List[Dict[str, Any]]:
        """Cuts that reached inspection, latest arrival first."""

        cuts = [cut for cut in self.store.fabric_cuts.list() if cut.inspection_arrival]
        views = self.enrichment.enrich(cuts, FABRIC_CUT_RELATIONS)
        return _newest_first(views, "inspection_arrival")

    def recent_inspection_arrivals(self, day: Optional[date] = None) -> List[Dict[str, Any]]:
        day = day or utcnow().date()
        cuts = [
            cut
            for cut in self.store.fabric_cuts.list()
            if cut.inspection_arrival and cut.inspection_arrival.date() == day
        ]
        views = self.enrichment.enrich(cuts, FABRIC_CUT_RELATIONS)
        return _newest_first(views, "inspection_arrival")

    def update_fabric_cut_quantity(
        self, fabric_cut_id: str, quantity: float
    ) -> Tuple[FabricCut, bool]:
        """Correct a cut's quantity; also reports whether it already reached inspection."""

        quantity = _require_positive(quantity, "Fabric cut quantity")

        def work() -> FabricCut:
            cut = self.store.fabric_cuts.get(fabric_cut_id)
            cut.quantity = quantity
            cut.updated_at = utcnow()
            self.store.fabric_cuts.upsert(cut.id, cut)
            return cut

        cut = self._atomic("fabric cut update", work)
        return cut, cut.inspection_arrival is not None

    def delete_fabric_cut(self, fabric_cut_id: str) -> bool:
        """Delete a cut; returns whether it had already reached inspection."""

        def work() -> FabricCut:
            cut = self.store.fabric_cuts.get(fabric_cut_id)
            self.store.fabric_cuts.remove(cut.id)
            return cut

        cut = self._atomic("fabric cut deletion", work)
        logger.info("Deleted fabric cut %s", cut.fabric_number)
        return cut.inspection_arrival is not None

    def production_by_order(self, order_id: str) -> Dict[str, Any]:
        order = self.store.orders.get(order_id)
        warps = self.store.warps.find(order_id=order.id)
        cuts_by_warp = self.enrichment.group_by(
            "fabric_cuts", "warp_id", [warp.id for warp in warps]
        )
        by_date: Dict[date, float] = defaultdict(float)
        warp_views = []
        for warp in sorted(warps, key=attrgetter("created_at")):
            cuts = sorted(
                cuts_by_warp.get(warp.id, []),
                key=lambda cut: (cut.cut_number, cut.sub_cut_number or 0),
            )
            for cut in cuts:
                by_date[cut.created_at.date()] += cut.quantity
            view = to_view(warp)
            view["fabric_cuts"] = [to_view(cut) for cut in cuts]
            view["production"] = _production(cuts)
            warp_views.append(view)
        return {
            "order": to_view(order),
            "warps": warp_views,
            "total_production": round(sum(by_date.values()), 2),
            "production_by_date": [
                {"date": day, "quantity": round(amount, 2)}
                for day, amount in sorted(by_date.items(), reverse=True)
            ],
        }

    def render_scan_code(self, fabric_cut_id: str) -> bytes:
        cut = self.store.fabric_cuts.get(fabric_cut_id)
        return render_scan_code_svg(cut.scan_payload)

    # ------------------------------------------------------------------
    # Inspections
    # ------------------------------------------------------------------
    def record_inspection(
        self,
        fabric_cut_id: str,
        inspection_type: str,
        *,
        inspected_quantity: float = 0.0,
        mistake_quantity: float = 0.0,
        inspectors: Sequence[str] = (),
        inspection_date: Optional[date] = None,
        notes: str = "",
    ) -> Inspection:
        if not inspection_type or not inspection_type.strip():
            raise ValidationError("Inspection type is required")
        if inspected_quantity < 0 or mistake_quantity < 0:
            raise ValidationError("Inspection quantities cannot be negative")
        if mistake_quantity > inspected_quantity + EPSILON:
            raise ValidationError("Mistake quantity cannot exceed the inspected quantity")
        cut = self.store.fabric_cuts.get(fabric_cut_id)
        inspection = Inspection(
            id=_new_id(),
            fabric_cut_id=cut.id,
            fabric_number=cut.fabric_number,
            warp_id=cut.warp_id,
            inspection_type=inspection_type.strip(),
            inspected_quantity=float(inspected_quantity),
            mistake_quantity=float(mistake_quantity),
            inspectors=list(inspectors),
            inspection_date=inspection_date or utcnow().date(),
            notes=notes,
        )
        self.store.inspections.add(inspection.id, inspection)
        logger.info(
            "Recorded %s inspection for fabric cut %s", inspection.inspection_type, cut.fabric_number
        )
        return inspection

    def list_inspections(self, inspection_type: Optional[str] = None) -> List[Dict[str, Any]]:
        """Inspections joined with their cut, warp, order and loom."""

        if inspection_type:
            inspections = self.store.inspections.find(inspection_type=inspection_type)
        else:
            inspections = self.store.inspections.list()
        return _newest_first(self.enrichment.enrich(inspections, INSPECTION_RELATIONS))


__all__ = [
    "EPSILON",
    "SPLIT_TOLERANCE",
    "FABRIC_CUT_RELATIONS",
    "INSPECTION_RELATIONS",
    "WARP_RELATIONS",
    "ProductionService",
]
