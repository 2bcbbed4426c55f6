"""FastAPI-based JSON API for the production tracker."""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import date
from typing import List, Optional
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from ..config import Settings
from ..domain import LoomStatus, OrderStatus, OrderType, WarpStatus
from ..enrichment import to_view
from ..errors import TrackerError
from ..logging_setup import configure_logging, request_id_var
from ..repository import DocumentStore
from ..services import ProductionService
from ..storage import TrackerDatabase

logger = logging.getLogger(__name__)


# ============================================================================
# REQUEST BODIES
# ============================================================================

class OrderCreate(BaseModel):
    design_name: str = Field(..., min_length=1)
    design_number: str = Field(..., min_length=1)
    order_type: OrderType
    order_quantity: float = Field(..., gt=0)
    warping_quantity: float = Field(..., gt=0)
    count: str = ""
    construction: str = ""
    merchandiser: str = ""
    status: OrderStatus = OrderStatus.NEW


class OrderUpdate(BaseModel):
    design_name: Optional[str] = None
    design_number: Optional[str] = None
    order_quantity: Optional[float] = Field(None, gt=0)
    warping_quantity: Optional[float] = Field(None, gt=0)
    count: Optional[str] = None
    construction: Optional[str] = None
    merchandiser: Optional[str] = None


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class LoomCreate(BaseModel):
    loom_name: str = Field(..., min_length=1)
    company_name: Optional[str] = None
    status: LoomStatus = LoomStatus.IDLE


class LoomUpdate(BaseModel):
    loom_name: Optional[str] = None
    company_name: Optional[str] = None
    status: Optional[LoomStatus] = None


class LoomStatusUpdate(BaseModel):
    status: LoomStatus


class WarpCreate(BaseModel):
    order_id: str
    quantity: float = Field(..., gt=0)
    loom_id: Optional[str] = None
    warp_number: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None


class WarpUpdate(BaseModel):
    status: Optional[WarpStatus] = None
    remaining_quantity: Optional[float] = Field(None, ge=0)
    loom_id: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None


class FabricCutEntry(BaseModel):
    quantity: float = Field(..., gt=0)


class FabricCutBatch(BaseModel):
    warp_id: str
    fabric_cuts: List[FabricCutEntry] = Field(..., min_length=1)


class FabricCutQuantityUpdate(BaseModel):
    quantity: float = Field(..., gt=0)


class FabricCutSplit(BaseModel):
    quantities: List[float]


class InspectionCreate(BaseModel):
    fabric_cut_id: str
    inspection_type: str = Field(..., min_length=1)
    inspected_quantity: float = Field(0.0, ge=0)
    mistake_quantity: float = Field(0.0, ge=0)
    inspectors: List[str] = Field(default_factory=list)
    inspection_date: Optional[date] = None
    notes: str = ""


# ============================================================================
# APPLICATION
# ============================================================================

def create_app(
    settings: Optional[Settings] = None, store: Optional[DocumentStore] = None
) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)
    database = store if store is not None else TrackerDatabase(settings.database_path)
    service = ProductionService(database, settings)

    app = FastAPI(title="Textile Production Tracker")
    app.state.service = service
    app.state.database = database

    @app.on_event("shutdown")
    async def shutdown_event() -> None:  # pragma: no cover - framework hook
        database.close()

    @app.middleware("http")
    async def assign_request_id(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid4().hex[:12]
        token = request_id_var.set(request_id)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(TrackerError)
    async def tracker_error_handler(request: Request, exc: TrackerError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        else:
            logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.code, "message": str(exc)},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={
                "error": "ValidationError",
                "message": "; ".join(
                    f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
                    for error in exc.errors()
                ),
            },
        )

    def svc(request: Request) -> ProductionService:
        return request.app.state.service

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------
    @app.post("/api/orders", status_code=201)
    def create_order(request: Request, body: OrderCreate):
        order = svc(request).create_order(**body.model_dump())
        return to_view(order)

    @app.get("/api/orders")
    def list_orders(request: Request, status: Optional[OrderStatus] = None):
        return svc(request).list_orders(status)

    @app.get("/api/orders/active")
    def list_active_orders(request: Request):
        return svc(request).list_active_orders()

    @app.get("/api/orders/{order_id}")
    def get_order(request: Request, order_id: str):
        return to_view(svc(request).get_order(order_id))

    @app.put("/api/orders/{order_id}")
    def update_order(request: Request, order_id: str, body: OrderUpdate):
        order = svc(request).update_order(order_id, **body.model_dump(exclude_none=True))
        return to_view(order)

    @app.patch("/api/orders/{order_id}/status")
    def update_order_status(request: Request, order_id: str, body: OrderStatusUpdate):
        return to_view(svc(request).update_order_status(order_id, body.status))

    @app.get("/api/orders/{order_id}/available-quantity")
    def available_quantity(request: Request, order_id: str):
        return asdict(svc(request).available_quantity(order_id))

    @app.get("/api/orders/{order_id}/production")
    def production_by_order(request: Request, order_id: str):
        return svc(request).production_by_order(order_id)

    # ------------------------------------------------------------------
    # Looms
    # ------------------------------------------------------------------
    @app.post("/api/looms", status_code=201)
    def register_loom(request: Request, body: LoomCreate):
        loom = svc(request).register_loom(body.loom_name, body.company_name, body.status)
        return to_view(loom)

    @app.get("/api/looms")
    def list_looms(request: Request):
        return svc(request).list_looms()

    @app.get("/api/looms/idle")
    def list_idle_looms(request: Request):
        return [to_view(loom) for loom in svc(request).list_idle_looms()]

    @app.get("/api/looms/{loom_id}")
    def get_loom(request: Request, loom_id: str):
        return to_view(svc(request).get_loom(loom_id))

    @app.put("/api/looms/{loom_id}")
    def update_loom(request: Request, loom_id: str, body: LoomUpdate):
        loom = svc(request).update_loom(
            loom_id,
            loom_name=body.loom_name,
            company_name=body.company_name,
            status=body.status,
        )
        return to_view(loom)

    @app.patch("/api/looms/{loom_id}")
    def set_loom_status(request: Request, loom_id: str, body: LoomStatusUpdate):
        return to_view(svc(request).set_loom_status(loom_id, body.status))

    @app.delete("/api/looms/{loom_id}")
    def delete_loom(request: Request, loom_id: str):
        svc(request).delete_loom(loom_id)
        return {"deleted": loom_id}

    # ------------------------------------------------------------------
    # Warps
    # ------------------------------------------------------------------
    @app.post("/api/warps", status_code=201)
    def create_warp(request: Request, body: WarpCreate):
        warp = svc(request).create_warp(
            body.order_id,
            body.quantity,
            body.loom_id,
            start_date=body.start_date,
            end_date=body.end_date,
            warp_number=body.warp_number,
        )
        return to_view(warp)

    @app.get("/api/warps")
    def list_warps(
        request: Request,
        status: Optional[WarpStatus] = None,
        order_id: Optional[str] = None,
    ):
        return svc(request).list_warps(status=status, order_id=order_id)

    @app.get("/api/warps/active")
    def list_active_warps(request: Request):
        return svc(request).list_active_warps()

    @app.get("/api/warps/count/active")
    def count_active_warps(request: Request):
        return {"count": svc(request).count_active_warps()}

    @app.get("/api/warps/{warp_id}")
    def get_warp(request: Request, warp_id: str):
        return svc(request).get_warp(warp_id)

    @app.patch("/api/warps/{warp_id}")
    def update_warp(request: Request, warp_id: str, body: WarpUpdate):
        warp = svc(request).update_warp(warp_id, **body.model_dump(exclude_none=True))
        return to_view(warp)

    # ------------------------------------------------------------------
    # Fabric cuts
    # ------------------------------------------------------------------
    @app.post("/api/fabric-cuts", status_code=201)
    def create_fabric_cuts(request: Request, body: FabricCutBatch):
        return svc(request).create_fabric_cuts(
            body.warp_id, [entry.model_dump() for entry in body.fabric_cuts]
        )

    @app.get("/api/fabric-cuts")
    def list_fabric_cuts(
        request: Request,
        warp_id: Optional[str] = None,
        on_date: Optional[date] = None,
        pending_only: bool = False,
    ):
        return svc(request).list_fabric_cuts(
            warp_id=warp_id, on_date=on_date, pending_only=pending_only
        )

    @app.get("/api/fabric-cuts/pending-inspection/count")
    def pending_inspection_count(request: Request):
        return {"count": svc(request).pending_inspection_count()}

    @app.get("/api/fabric-cuts/loom-in-history")
    def loom_in_history(request: Request):
        return svc(request).loom_in_history()

    @app.get("/api/fabric-cuts/recent-arrivals")
    def recent_inspection_arrivals(request: Request, day: Optional[date] = None):
        return svc(request).recent_inspection_arrivals(day)

    @app.get("/api/fabric-cuts/by-scan/{code:path}")
    def lookup_by_scan_code(request: Request, code: str, check_inspected: bool = True):
        service = svc(request)
        if check_inspected:
            return service.lookup_by_scan_code(code)
        return service.find_by_scan_code(code)

    @app.get("/api/fabric-cuts/{fabric_cut_id}")
    def get_fabric_cut(request: Request, fabric_cut_id: str):
        return svc(request).get_fabric_cut(fabric_cut_id)

    @app.get("/api/fabric-cuts/{fabric_cut_id}/scan-code.svg")
    def render_scan_code(request: Request, fabric_cut_id: str):
        return Response(
            content=svc(request).render_scan_code(fabric_cut_id),
            media_type="image/svg+xml",
        )

    @app.put("/api/fabric-cuts/{fabric_cut_id}")
    def update_fabric_cut_quantity(
        request: Request, fabric_cut_id: str, body: FabricCutQuantityUpdate
    ):
        cut, in_history = svc(request).update_fabric_cut_quantity(
            fabric_cut_id, body.quantity
        )
        return {"fabric_cut": to_view(cut), "affects_loom_in_history": in_history}

    @app.delete("/api/fabric-cuts/{fabric_cut_id}")
    def delete_fabric_cut(request: Request, fabric_cut_id: str):
        was_in_history = svc(request).delete_fabric_cut(fabric_cut_id)
        return {"deleted": fabric_cut_id, "was_in_loom_in_history": was_in_history}

    @app.patch("/api/fabric-cuts/{fabric_cut_id}/inspection-arrival")
    def mark_inspection_arrival(request: Request, fabric_cut_id: str):
        return to_view(svc(request).mark_inspection_arrival(fabric_cut_id))

    @app.post("/api/fabric-cuts/{fabric_cut_id}/split", status_code=201)
    def split_fabric_cut(request: Request, fabric_cut_id: str, body: FabricCutSplit):
        children = svc(request).split_fabric_cut(fabric_cut_id, body.quantities)
        return [to_view(child) for child in children]

    # ------------------------------------------------------------------
    # Inspections
    # ------------------------------------------------------------------
    @app.post("/api/inspections", status_code=201)
    def record_inspection(request: Request, body: InspectionCreate):
        data = body.model_dump()
        inspection = svc(request).record_inspection(
            data.pop("fabric_cut_id"), data.pop("inspection_type"), **data
        )
        return to_view(inspection)

    @app.get("/api/inspections")
    def list_inspections(request: Request, inspection_type: Optional[str] = None):
        return svc(request).list_inspections(inspection_type)

    return app


__all__ = ["create_app"]
