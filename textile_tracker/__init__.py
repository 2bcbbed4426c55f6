"""Production tracking for a textile weaving unit.

Orders reserve a warping quantity that is allocated to warps, warps run on
looms and yield numbered, scannable fabric cuts that can be split into
sub-cuts before they reach inspection.
"""

from .config import Settings
from .domain import (
    AllocationSummary,
    FabricCut,
    Inspection,
    Loom,
    LoomStatus,
    Order,
    OrderStatus,
    OrderType,
    Warp,
    WarpStatus,
)
from .repository import InMemoryStore
from .services import ProductionService

__all__ = [
    "AllocationSummary",
    "FabricCut",
    "Inspection",
    "InMemoryStore",
    "Loom",
    "LoomStatus",
    "Order",
    "OrderStatus",
    "OrderType",
    "ProductionService",
    "Settings",
    "Warp",
    "WarpStatus",
]
