"""
RFQ and rate negotiation API routes.
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from app.api.deps import get_workflow_actor
from app.api.quotes import QuoteResponse
from app.core.rbac import Actor
from app.db.session import get_db
from app.services import rfq_negotiation

router = APIRouter(prefix="/api/rfqs", tags=["RFQs"])
rates_router = APIRouter(prefix="/api/rates", tags=["Rates"])


# ============= SCHEMAS =============

class RFQCreate(BaseModel):
    quote_id: int
    warehouse_ids: List[int] = Field(..., min_length=1)
    valid_until: Optional[datetime] = None
    notes: Optional[str] = None


class RFQStatusUpdate(BaseModel):
    status: str


class RFQResponseNote(BaseModel):
    notes: Optional[str] = None


class RFQRejection(BaseModel):
    reason: Optional[str] = None


class RFQResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    quote_id: int
    warehouse_id: int
    created_by: Optional[int] = None
    status: str
    valid_until: datetime
    notes: Optional[str] = None
    responded_at: Optional[datetime] = None
    created_at: datetime


class RateCreate(BaseModel):
    total_rate: float = Field(..., gt=0)
    base_rate: Optional[float] = None
    surcharges: Optional[float] = None
    validity_days: Optional[int] = None
    capacity_confirmed: bool = False
    turnaround_time: Optional[str] = None
    terms: Optional[str] = None
    notes: Optional[str] = None


class RateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    rfq_id: int
    warehouse_id: int
    submitted_by: Optional[int] = None
    base_rate: Optional[float] = None
    surcharges: Optional[float] = None
    total_rate: float
    validity_days: Optional[int] = None
    capacity_confirmed: Optional[bool] = None
    turnaround_time: Optional[str] = None
    terms: Optional[str] = None
    notes: Optional[str] = None
    status: str
    created_at: datetime


class RateSelection(BaseModel):
    sales_user_id: Optional[int] = None


class SalesAssignment(BaseModel):
    rfq_id: int
    rate_id: int
    sales_user_id: int


# ============= RFQ ROUTES =============

@router.post("", response_model=List[RFQResponse], status_code=status.HTTP_201_CREATED)
async def create_rfqs(
    body: RFQCreate,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    """Send RFQs for a quote to one or more warehouses."""
    return rfq_negotiation.create_rfqs(
        db, actor, body.quote_id, body.warehouse_ids,
        valid_until=body.valid_until,
        notes=body.notes,
    )


@router.get("", response_model=List[RFQResponse])
async def list_rfqs(
    quote_id: Optional[int] = Query(None),
    status_filter: Optional[str] = Query(None, alias="status"),
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    return rfq_negotiation.list_rfqs(db, actor, quote_id=quote_id, status=status_filter)


@router.get("/{rfq_id}", response_model=RFQResponse)
async def get_rfq(
    rfq_id: int,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    return rfq_negotiation.get_rfq(db, actor, rfq_id)


@router.patch("/{rfq_id}/status", response_model=RFQResponse)
async def update_rfq_status(
    rfq_id: int,
    body: RFQStatusUpdate,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    return rfq_negotiation.update_rfq_status(db, actor, rfq_id, body.status)


@router.post("/{rfq_id}/accept", response_model=RFQResponse)
async def accept_rfq(
    rfq_id: int,
    body: RFQResponseNote,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    """Warehouse accepts an RFQ."""
    return rfq_negotiation.accept_rfq(db, actor, rfq_id, notes=body.notes)


@router.post("/{rfq_id}/reject", response_model=RFQResponse)
async def reject_rfq(
    rfq_id: int,
    body: RFQRejection,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    """Warehouse declines an RFQ."""
    return rfq_negotiation.reject_rfq(db, actor, rfq_id, reason=body.reason)


@router.post("/{rfq_id}/rates", response_model=RateResponse, status_code=status.HTTP_201_CREATED)
async def submit_rate(
    rfq_id: int,
    body: RateCreate,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    """Warehouse answers an RFQ with its rate."""
    return rfq_negotiation.submit_rate(db, actor, rfq_id, **body.model_dump())


@router.get("/{rfq_id}/rates", response_model=List[RateResponse])
async def list_rfq_rates(
    rfq_id: int,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    return rfq_negotiation.rates_for_rfq(db, actor, rfq_id)


# ============= RATE ROUTES =============

@rates_router.get("/quote/{quote_id}", response_model=List[RateResponse])
async def compare_rates(
    quote_id: int,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    """Competing rates for a quote, cheapest first."""
    return rfq_negotiation.rates_for_quote(db, actor, quote_id)


@rates_router.post("/{rate_id}/select", response_model=QuoteResponse)
async def select_rate(
    rate_id: int,
    body: RateSelection,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    """Purchase support picks the winning rate."""
    return rfq_negotiation.select_rate(db, actor, rate_id, sales_user_id=body.sales_user_id)


@rates_router.post("/assign", response_model=QuoteResponse)
async def assign_warehouse_to_sales(
    body: SalesAssignment,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    """Purchase support hands the chosen warehouse to a sales user."""
    return rfq_negotiation.assign_warehouse_to_sales(
        db, actor, body.rfq_id, body.rate_id, body.sales_user_id,
    )
