"""
Delivery request, order and report API routes.
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from app.api.deps import get_workflow_actor
from app.core.rbac import Actor
from app.db.session import get_db
from app.services import delivery_chain

requests_router = APIRouter(prefix="/api/delivery-requests", tags=["Delivery Requests"])
orders_router = APIRouter(prefix="/api/delivery-orders", tags=["Delivery Orders"])
reports_router = APIRouter(prefix="/api/delivery-reports", tags=["Delivery Reports"])


# ============= SCHEMAS =============

class DeliveryRequestCreate(BaseModel):
    booking_id: int
    delivery_address: str
    preferred_date: datetime
    urgency: str = "standard"
    transporter_contact_person: Optional[str] = None
    transporter_contact_details: Optional[str] = None
    billing_party: Optional[str] = None
    remarks: Optional[str] = None
    available_quantity: Optional[float] = None
    required_quantity: Optional[float] = None


class DeliveryApproval(BaseModel):
    assigned_driver: Optional[str] = None
    instructions: Optional[str] = None


class DeliveryRejection(BaseModel):
    reason: str = Field(..., min_length=1)


class DeliveryRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    booking_id: int
    customer_id: int
    delivery_address: str
    preferred_date: datetime
    urgency: str
    transporter_contact_person: Optional[str] = None
    transporter_contact_details: Optional[str] = None
    billing_party: Optional[str] = None
    remarks: Optional[str] = None
    available_quantity: Optional[float] = None
    required_quantity: Optional[float] = None
    status: str
    tracking_number: Optional[str] = None
    assigned_driver: Optional[str] = None
    rejection_reason: Optional[str] = None
    created_at: datetime


class DeliveryOrderCreate(BaseModel):
    booking_id: int


class DeliveryOrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    delivery_advice_id: int
    booking_id: int
    customer_id: int
    warehouse_id: int
    order_number: str
    status: str
    executed_at: Optional[datetime] = None
    created_at: datetime


class DeliveryReportCreate(BaseModel):
    delivery_order_id: Optional[int] = None
    booking_id: Optional[int] = None
    delivered_at: Optional[datetime] = None
    proof_of_delivery: Optional[str] = None
    goods_receipt_note: Optional[str] = None
    delivered_quantity: Optional[float] = None
    damaged_quantity: Optional[float] = None
    exceptions: Optional[str] = None


class DeliveryReportResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    delivery_order_id: int
    booking_id: int
    report_number: str
    delivered_at: datetime
    proof_of_delivery: Optional[str] = None
    goods_receipt_note: Optional[str] = None
    quantities: Optional[dict] = None
    exceptions: Optional[str] = None
    status: str
    created_at: datetime


# ============= DELIVERY REQUEST ROUTES =============

@requests_router.post("", response_model=DeliveryRequestResponse, status_code=status.HTTP_201_CREATED)
async def create_delivery_request(
    body: DeliveryRequestCreate,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    """Customer requests delivery out of storage."""
    fields = body.model_dump()
    booking_id = fields.pop("booking_id")
    return delivery_chain.create_delivery_request(db, actor, booking_id, **fields)


@requests_router.get("", response_model=List[DeliveryRequestResponse])
async def list_delivery_requests(
    status_filter: Optional[str] = Query(None, alias="status"),
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    return delivery_chain.list_delivery_requests(db, actor, status=status_filter)


@requests_router.get("/{request_id}", response_model=DeliveryRequestResponse)
async def get_delivery_request(
    request_id: int,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    return delivery_chain.get_delivery_request(db, actor, request_id)


@requests_router.post("/{request_id}/approve", response_model=DeliveryRequestResponse)
async def approve_delivery_request(
    request_id: int,
    body: DeliveryApproval,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    """Supervisor schedules the delivery; creates the advice and order."""
    return delivery_chain.approve_delivery_request(
        db, actor, request_id,
        assigned_driver=body.assigned_driver,
        instructions=body.instructions,
    )


@requests_router.post("/{request_id}/reject", response_model=DeliveryRequestResponse)
async def reject_delivery_request(
    request_id: int,
    body: DeliveryRejection,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    return delivery_chain.reject_delivery_request(db, actor, request_id, body.reason)


# ============= DELIVERY ORDER ROUTES =============

@orders_router.post("", response_model=DeliveryOrderResponse, status_code=status.HTTP_201_CREATED)
async def create_delivery_order(
    body: DeliveryOrderCreate,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    """Supervisor creates a delivery order that was not created on approval."""
    return delivery_chain.create_delivery_order(db, actor, body.booking_id)


@orders_router.get("", response_model=List[DeliveryOrderResponse])
async def list_delivery_orders(
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    return delivery_chain.list_delivery_orders(db, actor)


@orders_router.get("/{order_id}", response_model=DeliveryOrderResponse)
async def get_delivery_order(
    order_id: int,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    return delivery_chain.get_delivery_order(db, actor, order_id)


@orders_router.post("/{order_id}/execute", response_model=DeliveryOrderResponse)
async def execute_delivery_order(
    order_id: int,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    return delivery_chain.execute_delivery_order(db, actor, order_id)


# ============= DELIVERY REPORT ROUTES =============

@reports_router.post("", response_model=DeliveryReportResponse, status_code=status.HTTP_201_CREATED)
async def create_delivery_report(
    body: DeliveryReportCreate,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    """Warehouse files proof of delivery."""
    fields = body.model_dump()
    order_id = fields.pop("delivery_order_id")
    return delivery_chain.create_delivery_report(db, actor, order_id, **fields)


@reports_router.get("/booking/{booking_id}", response_model=List[DeliveryReportResponse])
async def list_delivery_reports(
    booking_id: int,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    return delivery_chain.list_delivery_reports(db, actor, booking_id)
