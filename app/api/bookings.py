"""
Booking, cargo dispatch and carting API routes.
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from app.api.deps import get_workflow_actor
from app.core.rbac import Actor
from app.db.session import get_db
from app.services import booking_cascade

router = APIRouter(prefix="/api/bookings", tags=["Bookings"])
cargo_router = APIRouter(prefix="/api/cargo", tags=["Cargo Dispatch"])
carting_router = APIRouter(prefix="/api/carting", tags=["Carting"])


# ============= SCHEMAS =============

class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    quote_id: int
    customer_id: int
    warehouse_id: int
    status: str
    start_date: datetime
    end_date: datetime
    total_amount: float
    approved_by: Optional[int] = None
    created_at: datetime


class Rejection(BaseModel):
    reason: str = Field(..., min_length=1)


class BookingRejection(BaseModel):
    reason: Optional[str] = None


class CargoCreate(BaseModel):
    booking_id: int
    item_description: str
    quantity: float = Field(..., gt=0)
    weight: Optional[float] = None
    dimensions: Optional[str] = None
    special_handling: Optional[str] = None
    form_data: Optional[dict] = None


class CargoResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    booking_id: int
    submitted_by: Optional[int] = None
    item_description: str
    quantity: float
    weight: Optional[float] = None
    dimensions: Optional[str] = None
    special_handling: Optional[str] = None
    form_data: Optional[dict] = None
    status: str
    rejection_reason: Optional[str] = None
    approved_by: Optional[int] = None
    approved_at: Optional[datetime] = None
    created_at: datetime


class CartingCreate(BaseModel):
    booking_id: int
    item_description: str
    quantity: float = Field(..., gt=0)
    weight: Optional[float] = None
    dimensions: Optional[str] = None
    special_handling: Optional[str] = None


class CartingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    booking_id: int
    warehouse_id: int
    submitted_by: Optional[int] = None
    item_description: str
    quantity: float
    weight: Optional[float] = None
    dimensions: Optional[str] = None
    special_handling: Optional[str] = None
    status: str
    rejection_reason: Optional[str] = None
    reviewed_by: Optional[int] = None
    reviewed_at: Optional[datetime] = None
    created_at: datetime


# ============= BOOKING ROUTES =============

@router.get("", response_model=List[BookingResponse])
async def list_bookings(
    status_filter: Optional[str] = Query(None, alias="status"),
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    return booking_cascade.list_bookings(db, actor, status=status_filter)


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: int,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    return booking_cascade.get_booking(db, actor, booking_id)


@router.post("/{booking_id}/reject", response_model=BookingResponse)
async def reject_booking(
    booking_id: int,
    body: BookingRejection,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    """Supervisor cancels a booking."""
    return booking_cascade.reject_booking(db, actor, booking_id, reason=body.reason)


# ============= CARGO ROUTES =============

@cargo_router.post("", response_model=CargoResponse, status_code=status.HTTP_201_CREATED)
async def submit_cargo_dispatch(
    body: CargoCreate,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    """Customer submits cargo dispatch details."""
    fields = body.model_dump()
    booking_id = fields.pop("booking_id")
    return booking_cascade.submit_cargo_dispatch(db, actor, booking_id, **fields)


@cargo_router.get("/booking/{booking_id}", response_model=List[CargoResponse])
async def list_cargo_dispatches(
    booking_id: int,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    return booking_cascade.list_cargo_dispatches(db, actor, booking_id)


@cargo_router.post("/{cargo_id}/approve", response_model=CargoResponse)
async def approve_cargo_dispatch(
    cargo_id: int,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    return booking_cascade.approve_cargo_dispatch(db, actor, cargo_id)


@cargo_router.post("/{cargo_id}/reject", response_model=CargoResponse)
async def reject_cargo_dispatch(
    cargo_id: int,
    body: Rejection,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    return booking_cascade.reject_cargo_dispatch(db, actor, cargo_id, body.reason)


@cargo_router.post("/{cargo_id}/process", response_model=CargoResponse)
async def start_cargo_processing(
    cargo_id: int,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    return booking_cascade.start_cargo_processing(db, actor, cargo_id)


@cargo_router.post("/{cargo_id}/complete", response_model=CargoResponse)
async def complete_cargo_dispatch(
    cargo_id: int,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    return booking_cascade.complete_cargo_dispatch(db, actor, cargo_id)


# ============= CARTING ROUTES =============

@carting_router.post("", response_model=CartingResponse, status_code=status.HTTP_201_CREATED)
async def submit_carting_detail(
    body: CartingCreate,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    """Warehouse submits carting details for a booking it serves."""
    fields = body.model_dump()
    booking_id = fields.pop("booking_id")
    return booking_cascade.submit_carting_detail(db, actor, booking_id, **fields)


@carting_router.get("/booking/{booking_id}", response_model=List[CartingResponse])
async def list_carting_details(
    booking_id: int,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    return booking_cascade.list_carting_details(db, actor, booking_id)


@carting_router.post("/{carting_id}/confirm", response_model=CartingResponse)
async def confirm_carting_detail(
    carting_id: int,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    return booking_cascade.confirm_carting_detail(db, actor, carting_id)


@carting_router.post("/{carting_id}/reject", response_model=CartingResponse)
async def reject_carting_detail(
    carting_id: int,
    body: Rejection,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    return booking_cascade.reject_carting_detail(db, actor, carting_id, body.reason)
