"""
Post-booking cascade: bookings, cargo dispatch and carting.

Every stage record hangs off a booking, and every stage change is also a
workflow hand-off on the booking's quote, so stage operations lock the quote
first (same order as the negotiation services) and record their step in the
quote history.
"""
from typing import Iterable, List, Mapping, Optional, Tuple, Type

from sqlalchemy import desc
from sqlalchemy.orm import Session

from app.core.errors import Conflict, NotFound, PermissionDenied, ValidationError
from app.core.logging import audit_logger, get_logger
from app.core.rbac import Actor, Role, WorkflowStep, require_step
from app.db.models import (
    Booking, BookingStatus, CargoDispatchDetail, CargoStatus, CartingDetail, CartingStatus,
    Quote, QuoteStatus, utcnow,
)
from app.db.session import Base, atomic
from app.services import directory
from app.services.notifier import Notification, dispatch, team_address, user_address, warehouse_address
from app.services.quote_lifecycle import apply_transition, load_quote_for_update

logger = get_logger(__name__)

CARGO_TRANSITIONS = {
    CargoStatus.SUBMITTED: frozenset({CargoStatus.APPROVED}),
    CargoStatus.APPROVED: frozenset({CargoStatus.PROCESSING}),
    CargoStatus.PROCESSING: frozenset({CargoStatus.COMPLETED}),
}

CARTING_TRANSITIONS = {
    CartingStatus.SUBMITTED: frozenset({CartingStatus.CONFIRMED, CartingStatus.REJECTED}),
}


# ============= SHARED STAGE HELPERS =============

def advance_record_status(record, target, transitions: Mapping, label: str) -> None:
    """Move a stage record along its own status graph or raise Conflict."""
    enum_cls = type(target)
    current = enum_cls(record.status)
    if target not in transitions.get(current, frozenset()):
        raise Conflict(
            f"{label} {record.id} cannot move from '{current.value}' to '{target.value}'",
            current_status=current.value,
            target_status=target.value,
        )
    record.status = target


def lock_booking(db: Session, booking_id: int) -> Tuple[Booking, Quote]:
    """Lock a booking's quote, then the booking itself."""
    row = db.query(Booking.quote_id).filter(Booking.id == booking_id).first()
    if not row:
        raise NotFound("Booking not found", booking_id=booking_id)
    quote = load_quote_for_update(db, row[0])
    booking = db.query(Booking).filter(Booking.id == booking_id).with_for_update().first()
    return booking, quote


def lock_stage_record(db: Session, model: Type[Base], record_id: int, label: str):
    """Lock the quote and booking owning a stage record, then the record."""
    row = db.query(model.booking_id).filter(model.id == record_id).first()
    if not row:
        raise NotFound(f"{label} not found", id=record_id)
    booking, quote = lock_booking(db, row[0])
    record = db.query(model).filter(model.id == record_id).with_for_update().first()
    return record, booking, quote


def check_booking_scope(db: Session, actor: Actor, booking: Booking) -> None:
    if actor.role == Role.CUSTOMER and booking.customer_id != actor.user_id:
        raise PermissionDenied("Booking belongs to another customer", booking_id=booking.id)
    if actor.role == Role.WAREHOUSE:
        directory.require_warehouse_owner(db, actor, booking.warehouse_id)


def require_booking_confirmed(booking: Booking) -> None:
    if BookingStatus(booking.status) != BookingStatus.CONFIRMED:
        raise Conflict(
            f"Booking {booking.id} is {BookingStatus(booking.status).value}, not confirmed",
            booking_id=booking.id,
            current_status=BookingStatus(booking.status).value,
        )


def finish_stage(
    actor: Actor,
    action: str,
    entity_type: str,
    entity_id: int,
    step: WorkflowStep,
    notifications: Iterable[Notification],
    details: Optional[dict] = None,
) -> None:
    """Post-commit bookkeeping shared by every stage operation."""
    audit_logger.log(
        action=action,
        user_id=actor.user_id,
        role=actor.role.value,
        entity_type=entity_type,
        entity_id=entity_id,
        step=step.value,
        details=details,
    )
    dispatch(notifications)


# ============= BOOKINGS =============

def get_booking(db: Session, actor: Actor, booking_id: int) -> Booking:
    booking = db.query(Booking).filter(Booking.id == booking_id).first()
    if not booking:
        raise NotFound("Booking not found", booking_id=booking_id)
    check_booking_scope(db, actor, booking)
    return booking


def list_bookings(db: Session, actor: Actor, status: Optional[str] = None) -> List[Booking]:
    query = db.query(Booking)
    if actor.role == Role.CUSTOMER:
        query = query.filter(Booking.customer_id == actor.user_id)
    elif actor.role == Role.WAREHOUSE:
        query = query.filter(Booking.warehouse_id.in_(directory.owned_warehouse_ids(db, actor)))
    if status:
        try:
            query = query.filter(Booking.status == BookingStatus(status))
        except ValueError:
            raise ValidationError(f"Unknown booking status '{status}'")
    return query.order_by(desc(Booking.created_at), desc(Booking.id)).all()


def reject_booking(db: Session, actor: Actor, booking_id: int, reason: Optional[str] = None) -> Booking:
    """Supervisor cancels a booking before any goods move; the quote is rejected (C20)."""
    step = require_step(actor.role, WorkflowStep.C20)

    with atomic(db):
        booking, quote = lock_booking(db, booking_id)
        if BookingStatus(booking.status) not in (BookingStatus.PENDING, BookingStatus.CONFIRMED):
            raise Conflict(
                f"Booking {booking.id} is {BookingStatus(booking.status).value}",
                booking_id=booking.id,
            )
        if booking.cargo_dispatches or booking.delivery_request is not None:
            raise Conflict("Booking already has cargo or delivery activity", booking_id=booking.id)

        booking.status = BookingStatus.CANCELLED
        apply_transition(
            db, quote, step, actor,
            action="booking_rejected",
            target_status=QuoteStatus.REJECTED,
            details={"booking_id": booking.id, "reason": reason} if reason else {"booking_id": booking.id},
        )
        body = f"Booking #{booking.id} was rejected by the supervisor." + (f" Reason: {reason}" if reason else "")
        notifications = [
            Notification(to=user_address(db, booking.customer_id), subject=f"Booking #{booking.id} rejected", body=body),
            Notification(to=warehouse_address(db, booking.warehouse_id), subject=f"Booking #{booking.id} cancelled", body=body),
        ]

    finish_stage(actor, "booking_rejected", "booking", booking.id, step, notifications)
    return booking


# ============= CARGO DISPATCH =============

def submit_cargo_dispatch(
    db: Session,
    actor: Actor,
    booking_id: int,
    item_description: str,
    quantity: float,
    weight: Optional[float] = None,
    dimensions: Optional[str] = None,
    special_handling: Optional[str] = None,
    form_data: Optional[dict] = None,
) -> CargoDispatchDetail:
    """Customer describes the goods going into storage (C21)."""
    step = require_step(actor.role, WorkflowStep.C21)
    if not item_description or not item_description.strip():
        raise ValidationError("item_description is required")
    if quantity is None or quantity <= 0:
        raise ValidationError("quantity must be positive")
    if weight is not None and weight < 0:
        raise ValidationError("weight cannot be negative")

    with atomic(db):
        booking, quote = lock_booking(db, booking_id)
        check_booking_scope(db, actor, booking)
        require_booking_confirmed(booking)

        cargo = CargoDispatchDetail(
            booking_id=booking.id,
            submitted_by=actor.user_id,
            item_description=item_description,
            quantity=quantity,
            weight=weight,
            dimensions=dimensions,
            special_handling=special_handling,
            form_data=form_data,
            status=CargoStatus.SUBMITTED,
        )
        db.add(cargo)
        db.flush()
        apply_transition(
            db, quote, step, actor,
            action="cargo_submitted",
            details={"booking_id": booking.id, "cargo_dispatch_id": cargo.id},
        )
        notifications = [Notification(
            to=team_address(Role.SUPERVISOR),
            subject=f"Cargo dispatch details submitted for booking #{booking.id}",
            body=f"{quantity} x {item_description}. Please review.",
        )]

    finish_stage(actor, "cargo_submitted", "cargo_dispatch", cargo.id, step, notifications)
    return cargo


def approve_cargo_dispatch(db: Session, actor: Actor, cargo_id: int) -> CargoDispatchDetail:
    """Supervisor approves cargo details (C22)."""
    step = require_step(actor.role, WorkflowStep.C22)

    with atomic(db):
        cargo, booking, quote = lock_stage_record(db, CargoDispatchDetail, cargo_id, "Cargo dispatch detail")
        advance_record_status(cargo, CargoStatus.APPROVED, CARGO_TRANSITIONS, "Cargo dispatch detail")
        cargo.approved_by = actor.user_id
        cargo.approved_at = utcnow()
        cargo.rejection_reason = None
        apply_transition(
            db, quote, step, actor,
            action="cargo_approved",
            details={"booking_id": booking.id, "cargo_dispatch_id": cargo.id},
        )
        body = f"Cargo dispatch #{cargo.id} for booking #{booking.id} was approved."
        notifications = [
            Notification(to=warehouse_address(db, booking.warehouse_id), subject=f"Cargo incoming for booking #{booking.id}", body=body),
            Notification(to=user_address(db, booking.customer_id), subject=f"Cargo dispatch #{cargo.id} approved", body=body),
        ]

    finish_stage(actor, "cargo_approved", "cargo_dispatch", cargo.id, step, notifications)
    return cargo


def reject_cargo_dispatch(db: Session, actor: Actor, cargo_id: int, reason: str) -> CargoDispatchDetail:
    """Supervisor sends cargo details back to the customer (C23); status stays submitted."""
    step = require_step(actor.role, WorkflowStep.C23)
    if not reason or not reason.strip():
        raise ValidationError("A rejection reason is required")

    with atomic(db):
        cargo, booking, quote = lock_stage_record(db, CargoDispatchDetail, cargo_id, "Cargo dispatch detail")
        if CargoStatus(cargo.status) != CargoStatus.SUBMITTED:
            raise Conflict(
                f"Cargo dispatch detail {cargo.id} is already {CargoStatus(cargo.status).value}",
                cargo_dispatch_id=cargo.id,
            )
        cargo.rejection_reason = reason
        apply_transition(
            db, quote, step, actor,
            action="cargo_rejected",
            details={"booking_id": booking.id, "cargo_dispatch_id": cargo.id, "reason": reason},
        )
        notifications = [Notification(
            to=user_address(db, booking.customer_id),
            subject=f"Cargo dispatch #{cargo.id} needs changes",
            body=f"Reason: {reason}",
        )]

    finish_stage(actor, "cargo_rejected", "cargo_dispatch", cargo.id, step, notifications)
    return cargo


def start_cargo_processing(db: Session, actor: Actor, cargo_id: int) -> CargoDispatchDetail:
    """Warehouse starts receiving approved cargo (C24)."""
    return _warehouse_cargo_update(db, actor, cargo_id, CargoStatus.PROCESSING, "cargo_processing")


def complete_cargo_dispatch(db: Session, actor: Actor, cargo_id: int) -> CargoDispatchDetail:
    """Warehouse finishes receiving cargo (C24)."""
    return _warehouse_cargo_update(db, actor, cargo_id, CargoStatus.COMPLETED, "cargo_completed")


def _warehouse_cargo_update(
    db: Session, actor: Actor, cargo_id: int, target: CargoStatus, action: str
) -> CargoDispatchDetail:
    step = require_step(actor.role, WorkflowStep.C24)

    with atomic(db):
        cargo, booking, quote = lock_stage_record(db, CargoDispatchDetail, cargo_id, "Cargo dispatch detail")
        check_booking_scope(db, actor, booking)
        advance_record_status(cargo, target, CARGO_TRANSITIONS, "Cargo dispatch detail")
        apply_transition(
            db, quote, step, actor,
            action=action,
            details={"booking_id": booking.id, "cargo_dispatch_id": cargo.id},
        )
        notifications = []
        if target == CargoStatus.COMPLETED:
            notifications.append(Notification(
                to=user_address(db, booking.customer_id),
                subject=f"Cargo received for booking #{booking.id}",
                body=f"Cargo dispatch #{cargo.id} has been received into storage.",
            ))

    finish_stage(actor, action, "cargo_dispatch", cargo.id, step, notifications)
    return cargo


def list_cargo_dispatches(db: Session, actor: Actor, booking_id: int) -> List[CargoDispatchDetail]:
    booking = get_booking(db, actor, booking_id)
    return db.query(CargoDispatchDetail).filter(
        CargoDispatchDetail.booking_id == booking.id
    ).order_by(CargoDispatchDetail.id).all()


# ============= CARTING =============

def submit_carting_detail(
    db: Session,
    actor: Actor,
    booking_id: int,
    item_description: str,
    quantity: float,
    weight: Optional[float] = None,
    dimensions: Optional[str] = None,
    special_handling: Optional[str] = None,
) -> CartingDetail:
    """Warehouse records how received goods are staged (C24)."""
    step = require_step(actor.role, WorkflowStep.C24)
    if not item_description or not item_description.strip():
        raise ValidationError("item_description is required")
    if quantity is None or quantity <= 0:
        raise ValidationError("quantity must be positive")

    with atomic(db):
        booking, quote = lock_booking(db, booking_id)
        check_booking_scope(db, actor, booking)
        require_booking_confirmed(booking)

        cleared = [
            c for c in booking.cargo_dispatches
            if CargoStatus(c.status) in (CargoStatus.APPROVED, CargoStatus.PROCESSING, CargoStatus.COMPLETED)
        ]
        if not cleared:
            raise Conflict("Cargo dispatch must be approved before carting", booking_id=booking.id)

        carting = CartingDetail(
            booking_id=booking.id,
            warehouse_id=booking.warehouse_id,
            submitted_by=actor.user_id,
            item_description=item_description,
            quantity=quantity,
            weight=weight,
            dimensions=dimensions,
            special_handling=special_handling,
            status=CartingStatus.SUBMITTED,
        )
        db.add(carting)
        db.flush()
        apply_transition(
            db, quote, step, actor,
            action="carting_submitted",
            details={"booking_id": booking.id, "carting_detail_id": carting.id},
        )
        notifications = [Notification(
            to=team_address(Role.SUPERVISOR),
            subject=f"Carting details submitted for booking #{booking.id}",
            body=f"{quantity} x {item_description} staged. Please confirm.",
        )]

    finish_stage(actor, "carting_submitted", "carting_detail", carting.id, step, notifications)
    return carting


def confirm_carting_detail(db: Session, actor: Actor, carting_id: int) -> CartingDetail:
    """Supervisor confirms carting (C22)."""
    step = require_step(actor.role, WorkflowStep.C22)

    with atomic(db):
        carting, booking, quote = lock_stage_record(db, CartingDetail, carting_id, "Carting detail")
        advance_record_status(carting, CartingStatus.CONFIRMED, CARTING_TRANSITIONS, "Carting detail")
        carting.reviewed_by = actor.user_id
        carting.reviewed_at = utcnow()
        apply_transition(
            db, quote, step, actor,
            action="carting_confirmed",
            details={"booking_id": booking.id, "carting_detail_id": carting.id},
        )
        body = f"Carting detail #{carting.id} for booking #{booking.id} was confirmed."
        notifications = [
            Notification(to=user_address(db, booking.customer_id), subject=f"Goods staged for booking #{booking.id}", body=body),
            Notification(to=warehouse_address(db, booking.warehouse_id), subject=f"Carting #{carting.id} confirmed", body=body),
        ]

    finish_stage(actor, "carting_confirmed", "carting_detail", carting.id, step, notifications)
    return carting


def reject_carting_detail(db: Session, actor: Actor, carting_id: int, reason: str) -> CartingDetail:
    """Supervisor rejects carting (C23)."""
    step = require_step(actor.role, WorkflowStep.C23)
    if not reason or not reason.strip():
        raise ValidationError("A rejection reason is required")

    with atomic(db):
        carting, booking, quote = lock_stage_record(db, CartingDetail, carting_id, "Carting detail")
        advance_record_status(carting, CartingStatus.REJECTED, CARTING_TRANSITIONS, "Carting detail")
        carting.rejection_reason = reason
        carting.reviewed_by = actor.user_id
        carting.reviewed_at = utcnow()
        apply_transition(
            db, quote, step, actor,
            action="carting_rejected",
            details={"booking_id": booking.id, "carting_detail_id": carting.id, "reason": reason},
        )
        notifications = [Notification(
            to=warehouse_address(db, booking.warehouse_id),
            subject=f"Carting #{carting.id} rejected",
            body=f"Reason: {reason}",
        )]

    finish_stage(actor, "carting_rejected", "carting_detail", carting.id, step, notifications)
    return carting


def list_carting_details(db: Session, actor: Actor, booking_id: int) -> List[CartingDetail]:
    booking = get_booking(db, actor, booking_id)
    return db.query(CartingDetail).filter(
        CartingDetail.booking_id == booking.id
    ).order_by(CartingDetail.id).all()
