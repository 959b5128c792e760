"""
Quote lifecycle engine.

Owns the quote status machine and the workflow step hand-offs. Every
mutation here follows the same shape:

1. gate check for the step (before touching the database),
2. lock the quote row and re-check its state inside the transaction,
3. mutate status/step, append the history entry, spawn the booking on
   C17/C19,
4. commit, then log and notify.
"""
from datetime import timedelta
from types import MappingProxyType
from typing import FrozenSet, List, Mapping, Optional, Tuple, Union

from sqlalchemy import desc
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import Conflict, NotFound, PermissionDenied, PreconditionFailed, ValidationError
from app.core.logging import audit_logger, get_logger
from app.core.rbac import (
    Actor, Role, WorkflowStep, BOOKING_CONFIRMATION_STEPS, require_step, steps_for_role,
)
from app.db.models import (
    Booking, BookingStatus, FlowType, Quote, QuoteStatus, RFQ, utcnow,
)
from app.db.session import atomic
from app.services import audit_trail, directory
from app.services.notifier import Notification, dispatch, team_address, user_address, warehouse_address

logger = get_logger(__name__)

QS = QuoteStatus

# Forward edges of the status machine. Rejection is legal from every
# non-terminal status and is handled in can_transition().
QUOTE_TRANSITIONS: Mapping[QuoteStatus, FrozenSet[QuoteStatus]] = MappingProxyType({
    QS.PENDING: frozenset({QS.WAREHOUSE_QUOTE_REQUESTED}),
    QS.WAREHOUSE_QUOTE_REQUESTED: frozenset({QS.WAREHOUSE_QUOTE_RECEIVED}),
    QS.WAREHOUSE_QUOTE_RECEIVED: frozenset({QS.RATE_CONFIRMED, QS.PROCESSING}),
    QS.RATE_CONFIRMED: frozenset({QS.PROCESSING}),
    QS.PROCESSING: frozenset({QS.QUOTED}),
    QS.QUOTED: frozenset({QS.CUSTOMER_CONFIRMATION_PENDING}),
    QS.CUSTOMER_CONFIRMATION_PENDING: frozenset({QS.BOOKING_CONFIRMED}),
    QS.BOOKING_CONFIRMED: frozenset(),
})

TERMINAL_STATUSES: FrozenSet[QuoteStatus] = frozenset({QS.REJECTED, QS.CANCELLED})

# Statuses in which purchase support may still pick a rate
ASSIGNABLE_STATUSES: FrozenSet[QuoteStatus] = frozenset({QS.WAREHOUSE_QUOTE_RECEIVED, QS.RATE_CONFIRMED})

# (role, action) -> (step recorded, status reached)
SHORTHAND_TRANSITIONS: Mapping[Tuple[Role, str], Tuple[WorkflowStep, QuoteStatus]] = MappingProxyType({
    (Role.PURCHASE_SUPPORT, "accept"): (WorkflowStep.C2, QS.WAREHOUSE_QUOTE_REQUESTED),
    (Role.PURCHASE_SUPPORT, "reject"): (WorkflowStep.C2, QS.REJECTED),
    (Role.WAREHOUSE, "accept"): (WorkflowStep.C8, QS.WAREHOUSE_QUOTE_RECEIVED),
    (Role.WAREHOUSE, "reject"): (WorkflowStep.C8, QS.REJECTED),
    (Role.SALES_SUPPORT, "accept"): (WorkflowStep.C11, QS.QUOTED),
    (Role.SALES_SUPPORT, "reject"): (WorkflowStep.C12, QS.REJECTED),
    (Role.CUSTOMER, "accept"): (WorkflowStep.C13, QS.CUSTOMER_CONFIRMATION_PENDING),
    (Role.CUSTOMER, "reject"): (WorkflowStep.C14, QS.REJECTED),
    (Role.SUPERVISOR, "accept"): (WorkflowStep.C17, QS.BOOKING_CONFIRMED),
    (Role.SUPERVISOR, "reject"): (WorkflowStep.C18, QS.REJECTED),
})

_ACTION_ALIASES = {"agree": "accept", "approve": "accept", "decline": "reject"}

# Steps that always end the quote, whichever entry point records them
STEP_STATUSES: Mapping[WorkflowStep, QuoteStatus] = MappingProxyType({
    WorkflowStep.C12: QS.REJECTED,
    WorkflowStep.C14: QS.REJECTED,
    WorkflowStep.C16: QS.CANCELLED,
    WorkflowStep.C18: QS.REJECTED,
    WorkflowStep.C20: QS.REJECTED,
})

# Booked quotes are only rejected together with their booking
BOOKING_REJECTION_STEP = WorkflowStep.C20



# ============= STATUS MACHINE =============

def can_transition(current: Union[str, QuoteStatus], target: Union[str, QuoteStatus]) -> bool:
    current = QuoteStatus(current)
    target = QuoteStatus(target)
    if current in TERMINAL_STATUSES:
        return False
    if target == current:
        return True
    if target == QS.REJECTED:
        return True
    if target == QS.CANCELLED:
        # Confirmed bookings are cancelled through the booking, not the quote
        return current != QS.BOOKING_CONFIRMED
    return target in QUOTE_TRANSITIONS.get(current, frozenset())


def advance_status(quote: Quote, target: QuoteStatus) -> None:
    if not can_transition(quote.status, target):
        raise Conflict(
            f"Quote {quote.id} cannot move from '{QuoteStatus(quote.status).value}' to '{target.value}'",
            quote_id=quote.id,
            current_status=QuoteStatus(quote.status).value,
            target_status=target.value,
        )
    quote.status = target


def ensure_not_terminal(quote: Quote) -> None:
    if QuoteStatus(quote.status) in TERMINAL_STATUSES:
        raise Conflict(
            f"Quote {quote.id} is {QuoteStatus(quote.status).value}",
            quote_id=quote.id,
            current_status=QuoteStatus(quote.status).value,
        )


# ============= LOADING & SCOPING =============

def load_quote_for_update(db: Session, quote_id: int) -> Quote:
    """Fetch a quote with a row lock held until the transaction ends."""
    quote = db.query(Quote).filter(Quote.id == quote_id).with_for_update().first()
    if not quote:
        raise NotFound("Quote not found", quote_id=quote_id)
    return quote


def check_quote_scope(db: Session, actor: Actor, quote: Quote) -> None:
    """Customers see their own quotes; warehouses see quotes they were asked to price."""
    if actor.role == Role.CUSTOMER and quote.customer_id != actor.user_id:
        raise PermissionDenied("Quote belongs to another customer", quote_id=quote.id)
    if actor.role == Role.WAREHOUSE:
        owned = directory.owned_warehouse_ids(db, actor)
        has_rfq = bool(owned) and db.query(RFQ.id).filter(
            RFQ.quote_id == quote.id,
            RFQ.warehouse_id.in_(owned),
        ).first() is not None
        if not has_rfq and quote.warehouse_id not in owned:
            raise PermissionDenied("Quote is not addressed to this warehouse", quote_id=quote.id)


def scoped_quotes(db: Session, actor: Actor):
    """Base query of the quotes an actor may see."""
    query = db.query(Quote)
    if actor.role == Role.CUSTOMER:
        query = query.filter(Quote.customer_id == actor.user_id)
    elif actor.role == Role.WAREHOUSE:
        owned = directory.owned_warehouse_ids(db, actor)
        rfq_quotes = db.query(RFQ.quote_id).filter(RFQ.warehouse_id.in_(owned))
        query = query.filter((Quote.id.in_(rfq_quotes)) | (Quote.warehouse_id.in_(owned)))
    return query


def get_quote(db: Session, actor: Actor, quote_id: int) -> Quote:
    quote = db.query(Quote).filter(Quote.id == quote_id).first()
    if not quote:
        raise NotFound("Quote not found", quote_id=quote_id)
    check_quote_scope(db, actor, quote)
    return quote


def list_quotes(
    db: Session,
    actor: Actor,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[Quote]:
    query = scoped_quotes(db, actor)
    if status:
        try:
            query = query.filter(Quote.status == QuoteStatus(status))
        except ValueError:
            raise ValidationError(f"Unknown quote status '{status}'")
    return query.order_by(desc(Quote.created_at), desc(Quote.id)).offset(offset).limit(limit).all()


# ============= BOOKING HOOK =============

def _ensure_booking(db: Session, quote: Quote, actor: Actor) -> Tuple[Booking, bool]:
    """
    Return the quote's booking, creating it if this is the first confirmation.

    The existence check runs under the quote row lock; the unique constraint
    on bookings.quote_id catches writers that do not hold it.
    """
    if quote.warehouse_id is None:
        raise PreconditionFailed("Quote has no warehouse assigned", quote_id=quote.id, missing="warehouse_id")
    if quote.final_price is None:
        raise PreconditionFailed("Quote has no final price", quote_id=quote.id, missing="final_price")

    existing = db.query(Booking).filter(Booking.quote_id == quote.id).first()
    if existing:
        return existing, False

    now = utcnow()
    booking = Booking(
        quote_id=quote.id,
        customer_id=quote.customer_id,
        warehouse_id=quote.warehouse_id,
        status=BookingStatus.CONFIRMED,
        start_date=now,
        end_date=now + timedelta(days=settings.BOOKING_DEFAULT_DAYS),
        total_amount=quote.final_price,
        approved_by=actor.user_id,
    )
    try:
        with db.begin_nested():
            db.add(booking)
    except IntegrityError:
        existing = db.query(Booking).filter(Booking.quote_id == quote.id).first()
        if existing is None:
            raise
        return existing, False
    return booking, True


# ============= TRANSITIONS =============

def _parse_flow_type(flow_type: Optional[str]) -> Optional[FlowType]:
    if flow_type is None:
        return None
    try:
        return FlowType(flow_type)
    except ValueError:
        raise ValidationError(f"Unknown flow type '{flow_type}'")


def apply_transition(
    db: Session,
    quote: Quote,
    step: WorkflowStep,
    actor: Actor,
    action: str = "transition",
    target_status: Optional[QuoteStatus] = None,
    flow_type: Optional[FlowType] = None,
    details: Optional[dict] = None,
) -> Optional[Booking]:
    """
    Move a locked quote to ``step`` inside the caller's transaction.

    Returns the booking when this call created one. Gate and scope checks are
    the caller's job.
    """
    ensure_not_terminal(quote)

    booking = None
    if step in BOOKING_CONFIRMATION_STEPS:
        if QuoteStatus(quote.status) not in (QS.CUSTOMER_CONFIRMATION_PENDING, QS.BOOKING_CONFIRMED):
            raise PreconditionFailed(
                "Quote must be awaiting customer confirmation before booking",
                quote_id=quote.id,
                current_status=QuoteStatus(quote.status).value,
            )
        booking, created = _ensure_booking(db, quote, actor)
        if not created:
            booking = None
        target_status = QS.BOOKING_CONFIRMED

    implied = STEP_STATUSES.get(step)
    if implied is not None:
        if target_status is not None and target_status != implied:
            raise ValidationError(
                f"Step {step.value} cannot move a quote to '{target_status.value}'",
                step=step.value,
            )
        target_status = implied
    if (
        target_status == QS.REJECTED
        and QuoteStatus(quote.status) == QS.BOOKING_CONFIRMED
        and step != BOOKING_REJECTION_STEP
    ):
        raise Conflict(
            f"Quote {quote.id} has a confirmed booking; reject the booking instead",
            quote_id=quote.id,
            current_status=QS.BOOKING_CONFIRMED.value,
        )

    if target_status is not None:
        advance_status(quote, target_status)
    if flow_type is not None:
        quote.flow_type = flow_type.value

    audit_trail.append(db, quote, step, actor, action=action, details=details)
    return booking


def transition(
    db: Session,
    actor: Actor,
    quote_id: int,
    next_step: Union[str, WorkflowStep],
    action: str = "transition",
    flow_type: Optional[str] = None,
) -> Quote:
    """Move a quote to ``next_step`` on behalf of ``actor``."""
    step = require_step(actor.role, next_step)
    if step == BOOKING_REJECTION_STEP:
        raise ValidationError("Bookings are rejected through the booking, not a quote transition", step=step.value)
    parsed_flow = _parse_flow_type(flow_type)

    with atomic(db):
        quote = load_quote_for_update(db, quote_id)
        check_quote_scope(db, actor, quote)
        booking = apply_transition(db, quote, step, actor, action=action, flow_type=parsed_flow)
        notifications = _booking_notifications(db, quote, booking) if booking else []

    audit_logger.log(
        action=action,
        user_id=actor.user_id,
        role=actor.role.value,
        entity_type="quote",
        entity_id=quote.id,
        step=step.value,
    )
    dispatch(notifications)
    return quote


def accept_reject(
    db: Session,
    actor: Actor,
    quote_id: int,
    action: str,
    final_price: Optional[float] = None,
    reason: Optional[str] = None,
) -> Quote:
    """Role-specific accept/reject shorthand over transition()."""
    normalized = _ACTION_ALIASES.get(action, action)
    if normalized not in ("accept", "reject"):
        raise ValidationError(f"Invalid action '{action}'. Use accept or reject.")

    key = (actor.role, normalized)
    if key not in SHORTHAND_TRANSITIONS:
        raise PermissionDenied(f"Role '{actor.role.value}' has no accept/reject step")
    step, target = SHORTHAND_TRANSITIONS[key]
    require_step(actor.role, step)

    if actor.role == Role.SALES_SUPPORT and normalized == "accept":
        if final_price is None or final_price <= 0:
            raise ValidationError("A positive final_price is required to quote the customer")

    details = {}
    if final_price is not None and actor.role == Role.SALES_SUPPORT:
        details["final_price"] = final_price
    if reason:
        details["reason"] = reason

    with atomic(db):
        quote = load_quote_for_update(db, quote_id)
        check_quote_scope(db, actor, quote)
        if actor.role == Role.SALES_SUPPORT and normalized == "accept":
            quote.final_price = final_price
        booking = apply_transition(
            db, quote, step, actor,
            action=normalized,
            target_status=target,
            details=details or None,
        )
        notifications = _status_notifications(db, quote, target)
        if booking:
            notifications += _booking_notifications(db, quote, booking)

    audit_logger.log(
        action=f"quote_{normalized}",
        user_id=actor.user_id,
        role=actor.role.value,
        entity_type="quote",
        entity_id=quote.id,
        step=step.value,
        details={"status": target.value, **details},
    )
    dispatch(notifications)
    return quote


def create_quote(
    db: Session,
    actor: Actor,
    storage_type: str,
    required_space: float,
    preferred_location: str,
    duration: str,
    special_requirements: Optional[str] = None,
) -> Quote:
    """Customer opens a storage request (C1)."""
    require_step(actor.role, WorkflowStep.C1)
    if required_space is None or required_space <= 0:
        raise ValidationError("required_space must be positive")
    for name, value in (("storage_type", storage_type), ("preferred_location", preferred_location), ("duration", duration)):
        if not value or not str(value).strip():
            raise ValidationError(f"{name} is required")

    directory.ensure_user(db, actor)

    with atomic(db):
        quote = Quote(
            customer_id=actor.user_id,
            storage_type=storage_type,
            required_space=required_space,
            preferred_location=preferred_location,
            duration=duration,
            special_requirements=special_requirements,
            status=QS.PENDING,
            current_workflow_step=WorkflowStep.C1.value,
        )
        db.add(quote)
        db.flush()
        audit_trail.append(db, quote, WorkflowStep.C1, actor, action="create", initial=True)

    audit_logger.log(
        action="quote_created",
        user_id=actor.user_id,
        role=actor.role.value,
        entity_type="quote",
        entity_id=quote.id,
        step=WorkflowStep.C1.value,
    )
    dispatch([Notification(
        to=team_address(Role.PURCHASE_SUPPORT),
        subject=f"New quote request #{quote.id}",
        body=(
            f"A customer requested {required_space} sq ft of {storage_type} storage "
            f"near {preferred_location} for {duration}."
        ),
    )])
    return quote


def cancel_quote(db: Session, actor: Actor, quote_id: int, reason: Optional[str] = None) -> Quote:
    """Customer withdraws a quote before it is booked (C16)."""
    step = require_step(actor.role, WorkflowStep.C16)

    with atomic(db):
        quote = load_quote_for_update(db, quote_id)
        check_quote_scope(db, actor, quote)
        apply_transition(
            db, quote, step, actor,
            action="cancel",
            target_status=QS.CANCELLED,
            details={"reason": reason} if reason else None,
        )
        recipient = user_address(db, quote.assigned_to) or team_address(Role.PURCHASE_SUPPORT)

    audit_logger.log(
        action="quote_cancelled",
        user_id=actor.user_id,
        role=actor.role.value,
        entity_type="quote",
        entity_id=quote.id,
        step=step.value,
    )
    dispatch([Notification(
        to=recipient,
        subject=f"Quote #{quote.id} cancelled by customer",
        body=f"The customer cancelled quote #{quote.id}." + (f" Reason: {reason}" if reason else ""),
    )])
    return quote


# ============= READ MODELS =============

def workflow_state(quote: Quote) -> dict:
    return {
        "quoteId": quote.id,
        "status": QuoteStatus(quote.status).value,
        "currentWorkflowStep": quote.current_workflow_step,
        "flowType": quote.flow_type,
        "workflowHistory": [audit_trail.serialize_event(e) for e in quote.events],
    }


def get_workflow_state(db: Session, actor: Actor, quote_id: int) -> dict:
    return workflow_state(get_quote(db, actor, quote_id))


def latest_for_customer(db: Session, actor: Actor) -> Optional[dict]:
    """The customer's most recent quote and its workflow position."""
    if actor.role != Role.CUSTOMER:
        raise PermissionDenied("Only customers have a latest workflow")
    quote = db.query(Quote).filter(
        Quote.customer_id == actor.user_id
    ).order_by(desc(Quote.created_at), desc(Quote.id)).first()
    return workflow_state(quote) if quote else None


def pending_actions_for_role(db: Session, actor: Actor, limit: Optional[int] = None) -> List[Quote]:
    """Quotes whose current step belongs to the actor's role, newest first."""
    steps = [s.value for s in steps_for_role(actor.role)]
    if not steps:
        return []
    query = scoped_quotes(db, actor).filter(
        Quote.current_workflow_step.in_(steps),
        Quote.status.notin_([s.value for s in TERMINAL_STATUSES]),
    )
    return query.order_by(desc(Quote.created_at), desc(Quote.id)).limit(
        limit or settings.PENDING_ACTIONS_LIMIT
    ).all()


# ============= NOTIFICATIONS =============

def _status_notifications(db: Session, quote: Quote, status: QuoteStatus) -> List[Notification]:
    customer = user_address(db, quote.customer_id)
    if status == QS.REJECTED:
        return [Notification(
            to=customer,
            subject=f"Quote #{quote.id} rejected",
            body=f"Your storage request #{quote.id} could not be fulfilled.",
        )]
    if status == QS.WAREHOUSE_QUOTE_RECEIVED:
        return [Notification(
            to=team_address(Role.PURCHASE_SUPPORT),
            subject=f"Warehouse responded to quote #{quote.id}",
            body=f"A warehouse accepted quote #{quote.id}; review the rates.",
        )]
    if status == QS.QUOTED:
        return [Notification(
            to=customer,
            subject=f"Your quote #{quote.id} is ready",
            body=f"Final price: {quote.final_price}. Please confirm to proceed with booking.",
        )]
    if status == QS.CUSTOMER_CONFIRMATION_PENDING:
        return [Notification(
            to=team_address(Role.SUPERVISOR),
            subject=f"Quote #{quote.id} awaiting booking approval",
            body=f"The customer agreed to quote #{quote.id}.",
        )]
    return []


def _booking_notifications(db: Session, quote: Quote, booking: Booking) -> List[Notification]:
    body = (
        f"Booking #{booking.id} for quote #{quote.id} is confirmed from "
        f"{booking.start_date:%Y-%m-%d} to {booking.end_date:%Y-%m-%d}, "
        f"total {booking.total_amount}."
    )
    return [
        Notification(to=user_address(db, quote.customer_id), subject=f"Booking #{booking.id} confirmed", body=body),
        Notification(to=warehouse_address(db, quote.warehouse_id), subject=f"New booking #{booking.id}", body=body),
    ]
