"""
Invoices for confirmed bookings.

Customer requests, the warehouse approves (sends) or rejects (cancels), and
the customer records payment. Accounts flags sent invoices that pass their
due date as overdue; those can still be paid. A booking has at most one
invoice that is not cancelled.
"""
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import desc
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import Conflict, NotFound, PermissionDenied, PreconditionFailed, ValidationError
from app.core.logging import audit_logger, get_logger
from app.core.rbac import Actor, Role, WorkflowStep, require_step
from app.db.models import Booking, Invoice, InvoiceStatus, utcnow
from app.db.session import atomic
from app.services import directory
from app.services.booking_cascade import (
    advance_record_status, check_booking_scope, finish_stage, lock_booking,
    lock_stage_record, require_booking_confirmed,
)
from app.services.notifier import Notification, dispatch, team_address, user_address, warehouse_address
from app.services.quote_lifecycle import apply_transition

logger = get_logger(__name__)

INVOICE_TRANSITIONS = {
    InvoiceStatus.DRAFT: frozenset({InvoiceStatus.SENT, InvoiceStatus.CANCELLED}),
    InvoiceStatus.SENT: frozenset({InvoiceStatus.PAID, InvoiceStatus.OVERDUE}),
    InvoiceStatus.OVERDUE: frozenset({InvoiceStatus.PAID}),
}


def invoice_number_for(db: Session, booking_id: int, now: Optional[datetime] = None) -> str:
    """``INV-YYYYMMDD-<booking>-NN``; NN counts every invoice the booking ever had."""
    now = now or utcnow()
    issued = db.query(Invoice.id).filter(Invoice.booking_id == booking_id).count()
    return f"INV-{now:%Y%m%d}-{booking_id:06d}-{issued + 1:02d}"


def active_invoice(db: Session, booking_id: int) -> Optional[Invoice]:
    return db.query(Invoice).filter(
        Invoice.booking_id == booking_id,
        Invoice.status != InvoiceStatus.CANCELLED,
    ).first()


def request_invoice(
    db: Session,
    actor: Actor,
    booking_id: int,
    amount: Optional[float] = None,
    due_date: Optional[datetime] = None,
) -> Invoice:
    """Customer asks for an invoice on a confirmed booking (C28)."""
    step = require_step(actor.role, WorkflowStep.C28)
    if amount is not None and amount <= 0:
        raise ValidationError("amount must be positive")

    with atomic(db):
        booking, quote = lock_booking(db, booking_id)
        check_booking_scope(db, actor, booking)
        require_booking_confirmed(booking)

        existing = active_invoice(db, booking.id)
        if existing is not None:
            raise Conflict(
                "An active invoice already exists for this booking",
                booking_id=booking.id,
                invoice_number=existing.invoice_number,
            )

        now = utcnow()
        invoice = Invoice(
            booking_id=booking.id,
            customer_id=booking.customer_id,
            invoice_number=invoice_number_for(db, booking.id, now),
            amount=amount if amount is not None else booking.total_amount,
            status=InvoiceStatus.DRAFT,
            due_date=due_date or now + timedelta(days=settings.INVOICE_DUE_DAYS),
        )
        db.add(invoice)
        db.flush()
        apply_transition(
            db, quote, step, actor,
            action="invoice_requested",
            details={"booking_id": booking.id, "invoice_id": invoice.id, "invoice_number": invoice.invoice_number},
        )
        notifications = [Notification(
            to=warehouse_address(db, booking.warehouse_id),
            subject=f"Invoice requested for booking #{booking.id}",
            body=f"Invoice {invoice.invoice_number} for {invoice.amount:.2f} awaits approval.",
        )]

    finish_stage(actor, "invoice_requested", "invoice", invoice.id, step, notifications)
    return invoice


def approve_invoice(db: Session, actor: Actor, invoice_id: int) -> Invoice:
    """Warehouse approves and sends the invoice (C29)."""
    step = require_step(actor.role, WorkflowStep.C29)

    with atomic(db):
        invoice, booking, quote = lock_stage_record(db, Invoice, invoice_id, "Invoice")
        check_booking_scope(db, actor, booking)
        advance_record_status(invoice, InvoiceStatus.SENT, INVOICE_TRANSITIONS, "Invoice")
        invoice.reviewed_by = actor.user_id
        apply_transition(
            db, quote, step, actor,
            action="invoice_sent",
            details={"booking_id": booking.id, "invoice_id": invoice.id},
        )
        body = (
            f"Invoice {invoice.invoice_number} for {invoice.amount:.2f} "
            f"is due on {invoice.due_date:%Y-%m-%d}."
        )
        notifications = [
            Notification(to=user_address(db, booking.customer_id), subject=f"Invoice {invoice.invoice_number}", body=body),
            Notification(to=team_address(Role.ACCOUNTS), subject=f"Invoice {invoice.invoice_number} sent", body=body),
        ]

    finish_stage(actor, "invoice_sent", "invoice", invoice.id, step, notifications)
    return invoice


def reject_invoice(db: Session, actor: Actor, invoice_id: int, reason: str) -> Invoice:
    """Warehouse rejects an invoice request (C30)."""
    step = require_step(actor.role, WorkflowStep.C30)
    if not reason or not reason.strip():
        raise ValidationError("A rejection reason is required")

    with atomic(db):
        invoice, booking, quote = lock_stage_record(db, Invoice, invoice_id, "Invoice")
        check_booking_scope(db, actor, booking)
        advance_record_status(invoice, InvoiceStatus.CANCELLED, INVOICE_TRANSITIONS, "Invoice")
        invoice.rejection_reason = reason
        invoice.reviewed_by = actor.user_id
        apply_transition(
            db, quote, step, actor,
            action="invoice_rejected",
            details={"booking_id": booking.id, "invoice_id": invoice.id, "reason": reason},
        )
        notifications = [Notification(
            to=user_address(db, booking.customer_id),
            subject=f"Invoice {invoice.invoice_number} rejected",
            body=f"Reason: {reason}",
        )]

    finish_stage(actor, "invoice_rejected", "invoice", invoice.id, step, notifications)
    return invoice


def submit_payment_details(
    db: Session,
    actor: Actor,
    invoice_id: int,
    payment_method: str,
    transaction_id: str,
    amount_paid: Optional[float] = None,
) -> Invoice:
    """Customer records payment against a sent invoice (C31)."""
    step = require_step(actor.role, WorkflowStep.C31)
    if not payment_method or not payment_method.strip():
        raise ValidationError("payment_method is required")
    if not transaction_id or not transaction_id.strip():
        raise ValidationError("transaction_id is required")
    if amount_paid is not None and amount_paid <= 0:
        raise ValidationError("amount_paid must be positive")

    with atomic(db):
        invoice, booking, quote = lock_stage_record(db, Invoice, invoice_id, "Invoice")
        check_booking_scope(db, actor, booking)
        advance_record_status(invoice, InvoiceStatus.PAID, INVOICE_TRANSITIONS, "Invoice")
        invoice.payment_method = payment_method
        invoice.transaction_id = transaction_id
        invoice.amount_paid = amount_paid if amount_paid is not None else invoice.amount
        invoice.paid_at = utcnow()
        apply_transition(
            db, quote, step, actor,
            action="invoice_paid",
            details={
                "booking_id": booking.id,
                "invoice_id": invoice.id,
                "payment_method": payment_method,
                "amount_paid": invoice.amount_paid,
            },
        )
        body = (
            f"Payment of {invoice.amount_paid:.2f} recorded against {invoice.invoice_number} "
            f"via {payment_method}."
        )
        notifications = [
            Notification(to=team_address(Role.SUPERVISOR), subject=f"Invoice {invoice.invoice_number} paid", body=body),
            Notification(to=team_address(Role.ACCOUNTS), subject=f"Invoice {invoice.invoice_number} paid", body=body),
        ]

    finish_stage(actor, "invoice_paid", "invoice", invoice.id, step, notifications)
    return invoice


def mark_invoice_overdue(db: Session, actor: Actor, invoice_id: int, now: Optional[datetime] = None) -> Invoice:
    """Accounts flags a sent invoice whose due date has passed."""
    if actor.role not in (Role.ACCOUNTS, Role.ADMIN):
        raise PermissionDenied("Only accounts can mark invoices overdue", role=actor.role.value)
    now = now or utcnow()

    with atomic(db):
        invoice, booking, _ = lock_stage_record(db, Invoice, invoice_id, "Invoice")
        due_date = invoice.due_date
        if due_date is not None and due_date.tzinfo is None:
            due_date = due_date.replace(tzinfo=timezone.utc)
        if due_date is None or due_date > now:
            raise PreconditionFailed("Invoice is not past its due date", invoice_id=invoice.id)
        advance_record_status(invoice, InvoiceStatus.OVERDUE, INVOICE_TRANSITIONS, "Invoice")
        body = (
            f"Invoice {invoice.invoice_number} for {invoice.amount:.2f} was due on "
            f"{due_date:%Y-%m-%d} and is now overdue."
        )
        notifications = [
            Notification(to=user_address(db, booking.customer_id), subject=f"Overdue notice: {invoice.invoice_number}", body=body),
        ]

    audit_logger.log(
        action="invoice_overdue",
        user_id=actor.user_id,
        role=actor.role.value,
        entity_type="invoice",
        entity_id=invoice.id,
    )
    dispatch(notifications)
    return invoice


def get_invoice(db: Session, actor: Actor, invoice_id: int) -> Invoice:
    invoice = db.query(Invoice).filter(Invoice.id == invoice_id).first()
    if not invoice:
        raise NotFound("Invoice not found", id=invoice_id)
    check_booking_scope(db, actor, invoice.booking)
    return invoice


def list_invoices(
    db: Session,
    actor: Actor,
    booking_id: Optional[int] = None,
    status: Optional[str] = None,
) -> List[Invoice]:
    query = db.query(Invoice).join(Booking, Booking.id == Invoice.booking_id)
    if actor.role == Role.CUSTOMER:
        query = query.filter(Invoice.customer_id == actor.user_id)
    elif actor.role == Role.WAREHOUSE:
        query = query.filter(Booking.warehouse_id.in_(directory.owned_warehouse_ids(db, actor)))
    if booking_id is not None:
        query = query.filter(Invoice.booking_id == booking_id)
    if status:
        try:
            query = query.filter(Invoice.status == InvoiceStatus(status))
        except ValueError:
            raise ValidationError(f"Unknown invoice status '{status}'")
    return query.order_by(desc(Invoice.created_at), desc(Invoice.id)).all()
