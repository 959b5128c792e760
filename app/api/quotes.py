"""
Quote API routes.
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from app.api.deps import get_workflow_actor
from app.core.rbac import Actor
from app.db.session import get_db
from app.services import quote_lifecycle

router = APIRouter(prefix="/api/quotes", tags=["Quotes"])


# ============= SCHEMAS =============

class QuoteCreate(BaseModel):
    storage_type: str
    required_space: float = Field(..., gt=0)
    preferred_location: str
    duration: str
    special_requirements: Optional[str] = None


class QuoteCancel(BaseModel):
    reason: Optional[str] = None


class QuoteResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    customer_id: int
    storage_type: str
    required_space: float
    preferred_location: str
    duration: str
    special_requirements: Optional[str] = None
    status: str
    current_workflow_step: str
    flow_type: Optional[str] = None
    assigned_to: Optional[int] = None
    warehouse_id: Optional[int] = None
    final_price: Optional[float] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


# ============= ROUTES =============

@router.post("", response_model=QuoteResponse, status_code=status.HTTP_201_CREATED)
async def create_quote(
    body: QuoteCreate,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    """Customer opens a storage quote request."""
    return quote_lifecycle.create_quote(
        db, actor,
        storage_type=body.storage_type,
        required_space=body.required_space,
        preferred_location=body.preferred_location,
        duration=body.duration,
        special_requirements=body.special_requirements,
    )


@router.get("", response_model=List[QuoteResponse])
async def list_quotes(
    status_filter: Optional[str] = Query(None, alias="status", description="Filter by quote status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    """List quotes visible to the caller."""
    return quote_lifecycle.list_quotes(db, actor, status=status_filter, limit=limit, offset=offset)


@router.get("/{quote_id}", response_model=QuoteResponse)
async def get_quote(
    quote_id: int,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    return quote_lifecycle.get_quote(db, actor, quote_id)


@router.post("/{quote_id}/cancel", response_model=QuoteResponse)
async def cancel_quote(
    quote_id: int,
    body: QuoteCancel,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    """Customer withdraws a quote that is not yet booked."""
    return quote_lifecycle.cancel_quote(db, actor, quote_id, reason=body.reason)
