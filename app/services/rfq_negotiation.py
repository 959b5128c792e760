"""
RFQ fan-out and rate negotiation.

Purchase support sends one RFQ per candidate warehouse, each warehouse
answers with at most one rate, and purchase support picks a single winner.
Lock order is always quote first, then RFQ, so a rate submission and a rate
selection on the same quote serialize instead of deadlocking.
"""
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import Conflict, NotFound, PermissionDenied, RFQExpired, ValidationError
from app.core.logging import audit_logger, get_logger
from app.core.rbac import Actor, Role, WorkflowStep, require_step
from app.db.models import (
    FlowType, Quote, QuoteStatus, Rate, RateStatus, RFQ, RFQStatus, User, Warehouse, utcnow,
)
from app.db.session import atomic
from app.services import directory
from app.services.notifier import Notification, dispatch, team_address, user_address, warehouse_address
from app.services.quote_lifecycle import (
    ASSIGNABLE_STATUSES, apply_transition, ensure_not_terminal, load_quote_for_update,
)

logger = get_logger(__name__)

ACTIVE_RFQ_STATUSES = (RFQStatus.SENT.value, RFQStatus.RESPONDED.value)

# Quote statuses in which warehouses may still answer
_RATE_OPEN_STATUSES = (QuoteStatus.WAREHOUSE_QUOTE_REQUESTED, QuoteStatus.WAREHOUSE_QUOTE_RECEIVED)


def _as_aware(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _append_note(existing: Optional[str], label: str, text: Optional[str]) -> Optional[str]:
    if not text:
        return existing
    entry = f"{label} {text}"
    return f"{existing}\n\n{entry}" if existing else entry


def _rfq_quote_id(db: Session, rfq_id: int) -> int:
    row = db.query(RFQ.quote_id).filter(RFQ.id == rfq_id).first()
    if not row:
        raise NotFound("RFQ not found", rfq_id=rfq_id)
    return row[0]


def _lock_rfq(db: Session, rfq_id: int) -> RFQ:
    rfq = db.query(RFQ).filter(RFQ.id == rfq_id).with_for_update().first()
    if not rfq:
        raise NotFound("RFQ not found", rfq_id=rfq_id)
    return rfq


def _ensure_rfq_open(rfq: RFQ) -> None:
    if RFQStatus(rfq.status) != RFQStatus.SENT:
        raise Conflict(
            f"RFQ {rfq.id} is already {RFQStatus(rfq.status).value}",
            rfq_id=rfq.id,
            current_status=RFQStatus(rfq.status).value,
        )
    if _as_aware(rfq.valid_until) < utcnow():
        raise RFQExpired(f"RFQ {rfq.id} expired at {_as_aware(rfq.valid_until).isoformat()}", rfq_id=rfq.id)


# ============= FAN-OUT =============

def create_rfqs(
    db: Session,
    actor: Actor,
    quote_id: int,
    warehouse_ids: Sequence[int],
    valid_until: Optional[datetime] = None,
    notes: Optional[str] = None,
) -> List[RFQ]:
    """Send one RFQ per warehouse for a quote."""
    if not warehouse_ids:
        raise ValidationError("At least one warehouse is required")
    unique_ids = list(dict.fromkeys(warehouse_ids))

    # Flow A asks a single warehouse, flow B fans out to several
    if len(unique_ids) == 1:
        step, flow = WorkflowStep.C3, FlowType.FLOW_A_SAME_WAREHOUSE
    else:
        step, flow = WorkflowStep.C4, FlowType.FLOW_B_MULTIPLE_WAREHOUSES
    require_step(actor.role, step)

    if valid_until is not None and _as_aware(valid_until) <= utcnow():
        raise ValidationError("valid_until must be in the future")
    deadline = _as_aware(valid_until) if valid_until else utcnow() + timedelta(days=settings.RFQ_VALIDITY_DAYS)

    with atomic(db):
        quote = load_quote_for_update(db, quote_id)
        ensure_not_terminal(quote)
        if QuoteStatus(quote.status) not in (QuoteStatus.PENDING, QuoteStatus.WAREHOUSE_QUOTE_REQUESTED):
            raise Conflict(
                "RFQs can only be sent before warehouse rates are in",
                quote_id=quote.id,
                current_status=QuoteStatus(quote.status).value,
            )

        warehouses = db.query(Warehouse).filter(Warehouse.id.in_(unique_ids)).all()
        found = {w.id for w in warehouses}
        missing = [wid for wid in unique_ids if wid not in found]
        if missing:
            raise NotFound("Warehouse not found", warehouse_ids=missing)

        active = db.query(RFQ.warehouse_id).filter(
            RFQ.quote_id == quote.id,
            RFQ.warehouse_id.in_(unique_ids),
            RFQ.status.in_(ACTIVE_RFQ_STATUSES),
        ).all()
        if active:
            raise Conflict(
                "An active RFQ already exists for this quote and warehouse",
                quote_id=quote.id,
                warehouse_ids=sorted(row[0] for row in active),
            )

        rfqs = [
            RFQ(
                quote_id=quote.id,
                warehouse_id=wid,
                created_by=actor.user_id,
                status=RFQStatus.SENT,
                valid_until=deadline,
                notes=notes,
            )
            for wid in unique_ids
        ]
        db.add_all(rfqs)
        db.flush()

        apply_transition(
            db, quote, step, actor,
            action="rfq_sent",
            target_status=QuoteStatus.WAREHOUSE_QUOTE_REQUESTED,
            flow_type=flow,
            details={"rfq_ids": [r.id for r in rfqs], "warehouse_ids": unique_ids},
        )

        notifications = [
            Notification(
                to=warehouse_address(db, rfq.warehouse_id),
                subject=f"New RFQ #{rfq.id} for quote #{quote.id}",
                body=(
                    f"Please quote {quote.required_space} sq ft of {quote.storage_type} storage "
                    f"near {quote.preferred_location} for {quote.duration}. "
                    f"Valid until {deadline:%Y-%m-%d}."
                ),
            )
            for rfq in rfqs
        ]

    audit_logger.log(
        action="rfq_sent",
        user_id=actor.user_id,
        role=actor.role.value,
        entity_type="quote",
        entity_id=quote.id,
        step=step.value,
        details={"warehouse_ids": unique_ids},
    )
    dispatch(notifications)
    return rfqs


def update_rfq_status(db: Session, actor: Actor, rfq_id: int, status: str) -> RFQ:
    """Purchase support closes an unanswered RFQ as expired or cancelled."""
    step = require_step(actor.role, WorkflowStep.C3)
    try:
        target = RFQStatus(status)
    except ValueError:
        raise ValidationError(f"Unknown RFQ status '{status}'")
    if target not in (RFQStatus.EXPIRED, RFQStatus.CANCELLED):
        raise ValidationError("RFQs can only be closed as expired or cancelled")

    with atomic(db):
        quote = load_quote_for_update(db, _rfq_quote_id(db, rfq_id))
        rfq = _lock_rfq(db, rfq_id)
        if RFQStatus(rfq.status) != RFQStatus.SENT:
            raise Conflict(f"RFQ {rfq.id} is already {RFQStatus(rfq.status).value}", rfq_id=rfq.id)
        rfq.status = target
        apply_transition(
            db, quote, step, actor,
            action=f"rfq_{target.value}",
            details={"rfq_id": rfq.id},
        )

    audit_logger.log(
        action=f"rfq_{target.value}",
        user_id=actor.user_id,
        role=actor.role.value,
        entity_type="rfq",
        entity_id=rfq.id,
        step=step.value,
    )
    return rfq


# ============= WAREHOUSE RESPONSES =============

def submit_rate(
    db: Session,
    actor: Actor,
    rfq_id: int,
    total_rate: float,
    base_rate: Optional[float] = None,
    surcharges: Optional[float] = None,
    validity_days: Optional[int] = None,
    capacity_confirmed: bool = False,
    turnaround_time: Optional[str] = None,
    terms: Optional[str] = None,
    notes: Optional[str] = None,
) -> Rate:
    """Warehouse answers an RFQ with its price (C7)."""
    step = require_step(actor.role, WorkflowStep.C7)
    if total_rate is None or total_rate <= 0:
        raise ValidationError("total_rate must be positive")
    for name, value in (("base_rate", base_rate), ("surcharges", surcharges), ("validity_days", validity_days)):
        if value is not None and value < 0:
            raise ValidationError(f"{name} cannot be negative")

    with atomic(db):
        quote = load_quote_for_update(db, _rfq_quote_id(db, rfq_id))
        rfq = _lock_rfq(db, rfq_id)
        directory.require_warehouse_owner(db, actor, rfq.warehouse_id)
        _ensure_rfq_open(rfq)

        ensure_not_terminal(quote)
        if QuoteStatus(quote.status) not in _RATE_OPEN_STATUSES:
            raise Conflict(
                "Quote no longer accepts warehouse rates",
                quote_id=quote.id,
                current_status=QuoteStatus(quote.status).value,
            )

        rate = Rate(
            rfq_id=rfq.id,
            warehouse_id=rfq.warehouse_id,
            submitted_by=actor.user_id,
            base_rate=base_rate,
            surcharges=surcharges or 0,
            total_rate=total_rate,
            validity_days=validity_days,
            capacity_confirmed=capacity_confirmed,
            turnaround_time=turnaround_time,
            terms=terms,
            notes=notes,
            status=RateStatus.PENDING,
        )
        db.add(rate)
        rfq.status = RFQStatus.RESPONDED
        rfq.responded_at = utcnow()
        db.flush()

        apply_transition(
            db, quote, step, actor,
            action="rate_submitted",
            target_status=QuoteStatus.WAREHOUSE_QUOTE_RECEIVED,
            details={"rfq_id": rfq.id, "rate_id": rate.id, "total_rate": total_rate},
        )

    audit_logger.log(
        action="rate_submitted",
        user_id=actor.user_id,
        role=actor.role.value,
        entity_type="rfq",
        entity_id=rfq.id,
        step=step.value,
        details={"rate_id": rate.id, "total_rate": total_rate},
    )
    dispatch([Notification(
        to=team_address(Role.PURCHASE_SUPPORT),
        subject=f"Rate received for quote #{quote.id}",
        body=f"Warehouse #{rfq.warehouse_id} quoted {total_rate} on RFQ #{rfq.id}.",
    )])
    return rate


def accept_rfq(db: Session, actor: Actor, rfq_id: int, notes: Optional[str] = None) -> RFQ:
    """Warehouse acknowledges an RFQ without pricing it (C5)."""
    return _respond_to_rfq(db, actor, rfq_id, WorkflowStep.C5, RFQStatus.RESPONDED, "Warehouse Notes:", notes)


def reject_rfq(db: Session, actor: Actor, rfq_id: int, reason: Optional[str] = None) -> RFQ:
    """Warehouse declines an RFQ (C6)."""
    return _respond_to_rfq(db, actor, rfq_id, WorkflowStep.C6, RFQStatus.CANCELLED, "Rejection Reason:", reason)


def _respond_to_rfq(
    db: Session,
    actor: Actor,
    rfq_id: int,
    step: WorkflowStep,
    target: RFQStatus,
    label: str,
    text: Optional[str],
) -> RFQ:
    require_step(actor.role, step)
    action = "rfq_accepted" if target == RFQStatus.RESPONDED else "rfq_rejected"

    with atomic(db):
        quote = load_quote_for_update(db, _rfq_quote_id(db, rfq_id))
        rfq = _lock_rfq(db, rfq_id)
        directory.require_warehouse_owner(db, actor, rfq.warehouse_id)
        _ensure_rfq_open(rfq)

        rfq.status = target
        rfq.responded_at = utcnow()
        rfq.notes = _append_note(rfq.notes, label, text)
        apply_transition(
            db, quote, step, actor,
            action=action,
            details={"rfq_id": rfq.id, "notes": text} if text else {"rfq_id": rfq.id},
        )

    audit_logger.log(
        action=action,
        user_id=actor.user_id,
        role=actor.role.value,
        entity_type="rfq",
        entity_id=rfq.id,
        step=step.value,
    )
    verb = "accepted" if target == RFQStatus.RESPONDED else "rejected"
    dispatch([Notification(
        to=team_address(Role.PURCHASE_SUPPORT),
        subject=f"RFQ #{rfq.id} {verb} by warehouse",
        body=f"Warehouse #{rfq.warehouse_id} {verb} RFQ #{rfq.id} for quote #{quote.id}." + (f" {label} {text}" if text else ""),
    )])
    return rfq


# ============= SELECTION =============

def select_rate(db: Session, actor: Actor, rate_id: int, sales_user_id: Optional[int] = None) -> Quote:
    """Purchase support picks the winning rate (C9)."""
    require_step(actor.role, WorkflowStep.C9)
    return _select(db, actor, WorkflowStep.C9, rate_id, rfq_id=None, sales_user_id=sales_user_id)


def assign_warehouse_to_sales(db: Session, actor: Actor, rfq_id: int, rate_id: int, sales_user_id: int) -> Quote:
    """Purchase support picks the winning rate and hands the quote to a sales user (C10)."""
    require_step(actor.role, WorkflowStep.C10)
    if sales_user_id is None:
        raise ValidationError("sales_user_id is required")
    return _select(db, actor, WorkflowStep.C10, rate_id, rfq_id=rfq_id, sales_user_id=sales_user_id)


def _select(
    db: Session,
    actor: Actor,
    step: WorkflowStep,
    rate_id: int,
    rfq_id: Optional[int],
    sales_user_id: Optional[int],
) -> Quote:
    rate_row = db.query(Rate.rfq_id).filter(Rate.id == rate_id).first()
    if not rate_row:
        raise NotFound("Rate not found", rate_id=rate_id)
    if rfq_id is not None and rate_row[0] != rfq_id:
        raise ValidationError("Rate does not belong to this RFQ", rate_id=rate_id, rfq_id=rfq_id)

    with atomic(db):
        quote = load_quote_for_update(db, _rfq_quote_id(db, rate_row[0]))
        rate = db.query(Rate).filter(Rate.id == rate_id).with_for_update().first()

        if sales_user_id is not None:
            sales_user = db.query(User).filter(User.id == sales_user_id).first()
            if not sales_user or sales_user.role != Role.SALES_SUPPORT or not sales_user.is_active:
                raise ValidationError("sales_user_id must reference an active sales support user")

        if RateStatus(rate.status) != RateStatus.PENDING:
            raise Conflict(
                f"Rate {rate.id} is already {RateStatus(rate.status).value}",
                rate_id=rate.id,
            )

        assigned_to = sales_user_id if sales_user_id is not None else actor.user_id

        # Conditional write closes the race between two operators assigning the same quote
        result = db.execute(
            update(Quote)
            .where(
                Quote.id == quote.id,
                Quote.assigned_to.is_(None),
                Quote.status.in_([s.value for s in ASSIGNABLE_STATUSES]),
            )
            .values(
                warehouse_id=rate.warehouse_id,
                final_price=rate.total_rate,
                assigned_to=assigned_to,
                status=QuoteStatus.PROCESSING,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise Conflict(
                "Quote is already assigned or no longer accepts a rate selection",
                quote_id=quote.id,
                current_status=QuoteStatus(quote.status).value,
            )
        db.refresh(quote)

        rate.status = RateStatus.ACCEPTED
        siblings = db.query(Rate).join(RFQ, Rate.rfq_id == RFQ.id).filter(
            RFQ.quote_id == quote.id,
            Rate.id != rate.id,
        ).all()
        for sibling in siblings:
            sibling.status = RateStatus.REJECTED

        # Unanswered RFQs are closed out once a winner is chosen
        open_rfqs = db.query(RFQ).filter(
            RFQ.quote_id == quote.id,
            RFQ.status == RFQStatus.SENT,
        ).all()
        for open_rfq in open_rfqs:
            open_rfq.status = RFQStatus.CANCELLED

        apply_transition(
            db, quote, step, actor,
            action="rate_selected",
            details={
                "rate_id": rate.id,
                "warehouse_id": rate.warehouse_id,
                "final_price": rate.total_rate,
                "assigned_to": assigned_to,
            },
        )

        notifications = [Notification(
            to=warehouse_address(db, rate.warehouse_id),
            subject=f"Your rate for quote #{quote.id} was selected",
            body=f"Rate #{rate.id} ({rate.total_rate}) was accepted.",
        )]
        if sales_user_id is not None:
            notifications.append(Notification(
                to=user_address(db, sales_user_id),
                subject=f"Quote #{quote.id} assigned to you",
                body=f"Warehouse #{rate.warehouse_id} at {rate.total_rate}. Add your margin and quote the customer.",
            ))
        else:
            notifications.append(Notification(
                to=team_address(Role.SALES_SUPPORT),
                subject=f"Quote #{quote.id} ready for pricing",
                body=f"Warehouse #{rate.warehouse_id} at {rate.total_rate}.",
            ))

    audit_logger.log(
        action="rate_selected",
        user_id=actor.user_id,
        role=actor.role.value,
        entity_type="quote",
        entity_id=quote.id,
        step=step.value,
        details={"rate_id": rate.id, "assigned_to": assigned_to},
    )
    dispatch(notifications)
    return quote


# ============= READS =============

def list_rfqs(
    db: Session,
    actor: Actor,
    quote_id: Optional[int] = None,
    status: Optional[str] = None,
) -> List[RFQ]:
    if actor.role == Role.CUSTOMER:
        raise PermissionDenied("Customers cannot view RFQs")
    query = db.query(RFQ)
    if actor.role == Role.WAREHOUSE:
        query = query.filter(RFQ.warehouse_id.in_(directory.owned_warehouse_ids(db, actor)))
    if quote_id is not None:
        query = query.filter(RFQ.quote_id == quote_id)
    if status:
        try:
            query = query.filter(RFQ.status == RFQStatus(status))
        except ValueError:
            raise ValidationError(f"Unknown RFQ status '{status}'")
    return query.order_by(RFQ.created_at.desc(), RFQ.id.desc()).all()


def get_rfq(db: Session, actor: Actor, rfq_id: int) -> RFQ:
    if actor.role == Role.CUSTOMER:
        raise PermissionDenied("Customers cannot view RFQs")
    rfq = db.query(RFQ).filter(RFQ.id == rfq_id).first()
    if not rfq:
        raise NotFound("RFQ not found", rfq_id=rfq_id)
    directory.require_warehouse_owner(db, actor, rfq.warehouse_id)
    return rfq


def rates_for_rfq(db: Session, actor: Actor, rfq_id: int) -> List[Rate]:
    """Rates of an RFQ, cheapest first."""
    rfq = get_rfq(db, actor, rfq_id)
    return db.query(Rate).filter(Rate.rfq_id == rfq.id).order_by(Rate.total_rate.asc()).all()


def rates_for_quote(db: Session, actor: Actor, quote_id: int) -> List[Rate]:
    """All competing rates for a quote, cheapest first."""
    if actor.role in (Role.CUSTOMER, Role.WAREHOUSE):
        raise PermissionDenied("Rate comparison is internal")
    return db.query(Rate).join(RFQ, Rate.rfq_id == RFQ.id).filter(
        RFQ.quote_id == quote_id
    ).order_by(Rate.total_rate.asc()).all()
