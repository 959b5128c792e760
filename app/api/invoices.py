"""
Invoice API routes.
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from app.api.deps import get_workflow_actor
from app.core.rbac import Actor, require_accounts
from app.db.session import get_db
from app.services import invoicing

router = APIRouter(prefix="/api/invoices", tags=["Invoices"])


# ============= SCHEMAS =============

class InvoiceRequest(BaseModel):
    booking_id: int
    amount: Optional[float] = Field(None, gt=0)
    due_date: Optional[datetime] = None


class InvoiceRejection(BaseModel):
    reason: str = Field(..., min_length=1)


class PaymentDetails(BaseModel):
    payment_method: str
    transaction_id: str
    amount_paid: Optional[float] = Field(None, gt=0)


class InvoiceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    booking_id: int
    customer_id: int
    invoice_number: str
    amount: float
    status: str
    due_date: datetime
    payment_method: Optional[str] = None
    amount_paid: Optional[float] = None
    paid_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    created_at: datetime


# ============= ROUTES =============

@router.post("", response_model=InvoiceResponse, status_code=status.HTTP_201_CREATED)
async def request_invoice(
    body: InvoiceRequest,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    """Customer requests an invoice for a confirmed booking."""
    return invoicing.request_invoice(db, actor, body.booking_id, amount=body.amount, due_date=body.due_date)


@router.get("", response_model=List[InvoiceResponse])
async def list_invoices(
    booking_id: Optional[int] = Query(None),
    status_filter: Optional[str] = Query(None, alias="status"),
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    return invoicing.list_invoices(db, actor, booking_id=booking_id, status=status_filter)


@router.get("/{invoice_id}", response_model=InvoiceResponse)
async def get_invoice(
    invoice_id: int,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    return invoicing.get_invoice(db, actor, invoice_id)


@router.post("/{invoice_id}/approve", response_model=InvoiceResponse)
async def approve_invoice(
    invoice_id: int,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    """Warehouse approves and sends the invoice."""
    return invoicing.approve_invoice(db, actor, invoice_id)


@router.post("/{invoice_id}/reject", response_model=InvoiceResponse)
async def reject_invoice(
    invoice_id: int,
    body: InvoiceRejection,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    return invoicing.reject_invoice(db, actor, invoice_id, body.reason)


@router.post("/{invoice_id}/payment", response_model=InvoiceResponse)
async def submit_payment_details(
    invoice_id: int,
    body: PaymentDetails,
    actor: Actor = Depends(get_workflow_actor),
    db: Session = Depends(get_db),
):
    """Customer records payment for a sent invoice."""
    return invoicing.submit_payment_details(
        db, actor, invoice_id,
        payment_method=body.payment_method,
        transaction_id=body.transaction_id,
        amount_paid=body.amount_paid,
    )


@router.post("/{invoice_id}/mark-overdue", response_model=InvoiceResponse)
async def mark_invoice_overdue(
    invoice_id: int,
    actor: Actor = Depends(require_accounts),
    db: Session = Depends(get_db),
):
    """Accounts flags a sent invoice past its due date."""
    return invoicing.mark_invoice_overdue(db, actor, invoice_id)
