"""
Delivery chain: DeliveryRequest -> DeliveryAdvice -> DeliveryOrder -> DeliveryReport.

Each link requires the previous one. Approving a request creates the advice
and tries to create the order in a SAVEPOINT; if that fails the advice is kept
as ``order_pending`` and the worker retries, or a supervisor creates the order
by hand.
"""
from datetime import datetime
from typing import List, Optional

from sqlalchemy import desc
from sqlalchemy.orm import Session

from app.core.errors import Conflict, NotFound, ValidationError
from app.core.logging import get_logger
from app.core.rbac import Actor, Role, WorkflowStep, require_step
from app.db.models import (
    Booking, DeliveryAdvice, DeliveryAdviceStatus, DeliveryOrder, DeliveryOrderStatus,
    DeliveryReport, DeliveryReportStatus, DeliveryRequest, DeliveryRequestStatus,
    DeliveryUrgency, utcnow,
)
from app.db.session import atomic
from app.services import directory
from app.services.booking_cascade import (
    advance_record_status, check_booking_scope, finish_stage, get_booking,
    lock_booking, lock_stage_record, require_booking_confirmed,
)
from app.services.notifier import Notification, team_address, user_address, warehouse_address
from app.services.quote_lifecycle import apply_transition
from app.workers import jobs

logger = get_logger(__name__)

REQUEST_TRANSITIONS = {
    DeliveryRequestStatus.REQUESTED: frozenset({DeliveryRequestStatus.SCHEDULED, DeliveryRequestStatus.REJECTED}),
    DeliveryRequestStatus.SCHEDULED: frozenset({DeliveryRequestStatus.IN_TRANSIT, DeliveryRequestStatus.DELIVERED}),
    DeliveryRequestStatus.IN_TRANSIT: frozenset({DeliveryRequestStatus.DELIVERED}),
}

ORDER_TRANSITIONS = {
    DeliveryOrderStatus.CREATED: frozenset({DeliveryOrderStatus.EXECUTED}),
}


# ============= NUMBERING =============

def _monthly_number(db: Session, column, prefix: str, now: Optional[datetime] = None) -> str:
    """Next ``<prefix>-YYYYMM-####`` value for ``column``."""
    now = now or utcnow()
    stem = f"{prefix}-{now:%Y%m}-"
    count = db.query(column).filter(column.like(f"{stem}%")).count()
    return f"{stem}{count + 1:04d}"


def next_order_number(db: Session, now: Optional[datetime] = None) -> str:
    return _monthly_number(db, DeliveryOrder.order_number, "DO", now)


def next_report_number(db: Session, now: Optional[datetime] = None) -> str:
    return _monthly_number(db, DeliveryReport.report_number, "DR", now)


def tracking_number_for(request: DeliveryRequest, now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    return f"TRK-{now:%Y%m%d}-{request.id:06d}"


# ============= DELIVERY REQUESTS =============

def create_delivery_request(
    db: Session,
    actor: Actor,
    booking_id: int,
    delivery_address: str,
    preferred_date: datetime,
    urgency: str = DeliveryUrgency.STANDARD.value,
    transporter_contact_person: Optional[str] = None,
    transporter_contact_details: Optional[str] = None,
    billing_party: Optional[str] = None,
    remarks: Optional[str] = None,
    available_quantity: Optional[float] = None,
    required_quantity: Optional[float] = None,
) -> DeliveryRequest:
    """Customer asks for goods to be delivered out of storage (C25)."""
    step = require_step(actor.role, WorkflowStep.C25)
    if not delivery_address or not delivery_address.strip():
        raise ValidationError("delivery_address is required")
    if preferred_date is None:
        raise ValidationError("preferred_date is required")
    try:
        urgency_value = DeliveryUrgency(urgency)
    except ValueError:
        raise ValidationError(f"Unknown urgency '{urgency}'")
    if required_quantity is not None and required_quantity <= 0:
        raise ValidationError("required_quantity must be positive")
    if (
        required_quantity is not None
        and available_quantity is not None
        and required_quantity > available_quantity
    ):
        raise ValidationError("required_quantity exceeds available_quantity")

    with atomic(db):
        booking, quote = lock_booking(db, booking_id)
        check_booking_scope(db, actor, booking)
        require_booking_confirmed(booking)
        if booking.delivery_request is not None:
            raise Conflict(
                "A delivery request already exists for this booking",
                booking_id=booking.id,
                delivery_request_id=booking.delivery_request.id,
            )

        request = DeliveryRequest(
            booking_id=booking.id,
            customer_id=booking.customer_id,
            delivery_address=delivery_address,
            preferred_date=preferred_date,
            urgency=urgency_value,
            transporter_contact_person=transporter_contact_person,
            transporter_contact_details=transporter_contact_details,
            billing_party=billing_party,
            remarks=remarks,
            available_quantity=available_quantity,
            required_quantity=required_quantity,
            status=DeliveryRequestStatus.REQUESTED,
        )
        db.add(request)
        db.flush()
        apply_transition(
            db, quote, step, actor,
            action="delivery_requested",
            details={"booking_id": booking.id, "delivery_request_id": request.id},
        )
        notifications = [Notification(
            to=team_address(Role.SUPERVISOR),
            subject=f"Delivery requested for booking #{booking.id}",
            body=f"Deliver to {delivery_address} ({urgency_value.value}) on {preferred_date:%Y-%m-%d}.",
        )]

    finish_stage(actor, "delivery_requested", "delivery_request", request.id, step, notifications)
    return request


def approve_delivery_request(
    db: Session,
    actor: Actor,
    request_id: int,
    assigned_driver: Optional[str] = None,
    instructions: Optional[str] = None,
) -> DeliveryRequest:
    """
    Supervisor schedules a delivery (C26).

    The request, its advice and the history event commit together. The order
    is attempted in a SAVEPOINT so a failure there leaves the advice in place
    as ``order_pending``.
    """
    step = require_step(actor.role, WorkflowStep.C26)

    with atomic(db):
        request, booking, quote = lock_stage_record(db, DeliveryRequest, request_id, "Delivery request")
        advance_record_status(request, DeliveryRequestStatus.SCHEDULED, REQUEST_TRANSITIONS, "Delivery request")
        request.tracking_number = tracking_number_for(request)
        request.assigned_driver = assigned_driver
        request.reviewed_by = actor.user_id

        advice = DeliveryAdvice(
            delivery_request_id=request.id,
            booking_id=booking.id,
            customer_id=booking.customer_id,
            booking_number=f"BK-{booking.id:06d}",
            delivery_address=request.delivery_address,
            preferred_date=request.preferred_date,
            urgency=request.urgency,
            instructions=instructions,
            status=DeliveryAdviceStatus.CREATED,
            created_by=actor.user_id,
        )
        db.add(advice)
        db.flush()

        order = None
        try:
            with db.begin_nested():
                order = _build_delivery_order(db, advice, booking, actor)
        except Exception:
            logger.error(f"Delivery order creation failed for booking {booking.id}", exc_info=True)
            order = None
            advice.status = DeliveryAdviceStatus.ORDER_PENDING

        details = {
            "booking_id": booking.id,
            "delivery_request_id": request.id,
            "delivery_advice_id": advice.id,
            "tracking_number": request.tracking_number,
        }
        if order is not None:
            details["delivery_order_id"] = order.id
            details["order_number"] = order.order_number
        apply_transition(db, quote, step, actor, action="delivery_scheduled", details=details)

        body = f"Delivery for booking #{booking.id} is scheduled. Tracking number: {request.tracking_number}."
        notifications = [
            Notification(to=user_address(db, booking.customer_id), subject=f"Delivery scheduled for booking #{booking.id}", body=body),
        ]
        if order is not None:
            notifications.append(Notification(
                to=warehouse_address(db, booking.warehouse_id),
                subject=f"Delivery order {order.order_number} ready",
                body=body,
            ))
        supervisor_id = actor.user_id
        order_pending = order is None

    finish_stage(actor, "delivery_scheduled", "delivery_request", request.id, step, notifications)

    if order_pending:
        try:
            jobs.enqueue_delivery_order_retry(booking.id, supervisor_id)
        except Exception as e:
            logger.error(f"Could not queue delivery order retry for booking {booking.id}: {e}")
    return request


def reject_delivery_request(db: Session, actor: Actor, request_id: int, reason: str) -> DeliveryRequest:
    """Supervisor rejects a delivery request (C27)."""
    step = require_step(actor.role, WorkflowStep.C27)
    if not reason or not reason.strip():
        raise ValidationError("A rejection reason is required")

    with atomic(db):
        request, booking, quote = lock_stage_record(db, DeliveryRequest, request_id, "Delivery request")
        advance_record_status(request, DeliveryRequestStatus.REJECTED, REQUEST_TRANSITIONS, "Delivery request")
        request.rejection_reason = reason
        request.reviewed_by = actor.user_id
        apply_transition(
            db, quote, step, actor,
            action="delivery_rejected",
            details={"booking_id": booking.id, "delivery_request_id": request.id, "reason": reason},
        )
        notifications = [Notification(
            to=user_address(db, booking.customer_id),
            subject=f"Delivery request for booking #{booking.id} rejected",
            body=f"Reason: {reason}",
        )]

    finish_stage(actor, "delivery_rejected", "delivery_request", request.id, step, notifications)
    return request


def get_delivery_request(db: Session, actor: Actor, request_id: int) -> DeliveryRequest:
    request = db.query(DeliveryRequest).filter(DeliveryRequest.id == request_id).first()
    if not request:
        raise NotFound("Delivery request not found", id=request_id)
    check_booking_scope(db, actor, request.booking)
    return request


def list_delivery_requests(db: Session, actor: Actor, status: Optional[str] = None) -> List[DeliveryRequest]:
    query = db.query(DeliveryRequest).join(Booking, Booking.id == DeliveryRequest.booking_id)
    if actor.role == Role.CUSTOMER:
        query = query.filter(DeliveryRequest.customer_id == actor.user_id)
    elif actor.role == Role.WAREHOUSE:
        query = query.filter(Booking.warehouse_id.in_(directory.owned_warehouse_ids(db, actor)))
    if status:
        try:
            query = query.filter(DeliveryRequest.status == DeliveryRequestStatus(status))
        except ValueError:
            raise ValidationError(f"Unknown delivery request status '{status}'")
    return query.order_by(desc(DeliveryRequest.created_at), desc(DeliveryRequest.id)).all()


# ============= DELIVERY ORDERS =============

def _build_delivery_order(db: Session, advice: DeliveryAdvice, booking: Booking, actor: Actor) -> DeliveryOrder:
    order = DeliveryOrder(
        delivery_advice_id=advice.id,
        booking_id=booking.id,
        customer_id=booking.customer_id,
        warehouse_id=booking.warehouse_id,
        order_number=next_order_number(db),
        status=DeliveryOrderStatus.CREATED,
        created_by=actor.user_id,
    )
    db.add(order)
    db.flush()
    advice.status = DeliveryAdviceStatus.ORDER_CREATED
    return order


def create_delivery_order(db: Session, actor: Actor, booking_id: int, action: str = "create") -> DeliveryOrder:
    """Supervisor creates the delivery order for an advice that has none (C32)."""
    step = require_step(actor.role, WorkflowStep.C32)

    with atomic(db):
        booking, quote = lock_booking(db, booking_id)
        advice = db.query(DeliveryAdvice).filter(
            DeliveryAdvice.booking_id == booking.id
        ).with_for_update().first()
        if advice is None:
            raise Conflict("Delivery advice must exist before a delivery order", booking_id=booking.id)
        if advice.order is not None:
            raise Conflict(
                "Delivery order already exists for this advice",
                booking_id=booking.id,
                order_number=advice.order.order_number,
            )

        order = _build_delivery_order(db, advice, booking, actor)
        apply_transition(
            db, quote, step, actor,
            action=f"delivery_order_{action}",
            details={"booking_id": booking.id, "delivery_order_id": order.id, "order_number": order.order_number},
        )
        notifications = [Notification(
            to=warehouse_address(db, booking.warehouse_id),
            subject=f"Delivery order {order.order_number} ready",
            body=f"Delivery order {order.order_number} for booking #{booking.id} is ready for execution.",
        )]

    finish_stage(actor, f"delivery_order_{action}", "delivery_order", order.id, step, notifications)
    return order


def execute_delivery_order(db: Session, actor: Actor, order_id: int) -> DeliveryOrder:
    """Warehouse dispatches the goods (C33)."""
    step = require_step(actor.role, WorkflowStep.C33)

    with atomic(db):
        order, booking, quote = lock_stage_record(db, DeliveryOrder, order_id, "Delivery order")
        check_booking_scope(db, actor, booking)
        advance_record_status(order, DeliveryOrderStatus.EXECUTED, ORDER_TRANSITIONS, "Delivery order")
        order.executed_at = utcnow()

        request = booking.delivery_request
        if request is not None and DeliveryRequestStatus(request.status) == DeliveryRequestStatus.SCHEDULED:
            request.status = DeliveryRequestStatus.IN_TRANSIT

        apply_transition(
            db, quote, step, actor,
            action="delivery_order_executed",
            details={"booking_id": booking.id, "delivery_order_id": order.id},
        )
        notifications = [Notification(
            to=user_address(db, booking.customer_id),
            subject=f"Delivery {order.order_number} dispatched",
            body=f"Goods for booking #{booking.id} are on their way.",
        )]

    finish_stage(actor, "delivery_order_executed", "delivery_order", order.id, step, notifications)
    return order


def get_delivery_order(db: Session, actor: Actor, order_id: int) -> DeliveryOrder:
    order = db.query(DeliveryOrder).filter(DeliveryOrder.id == order_id).first()
    if not order:
        raise NotFound("Delivery order not found", id=order_id)
    booking = db.query(Booking).filter(Booking.id == order.booking_id).first()
    check_booking_scope(db, actor, booking)
    return order


def list_delivery_orders(db: Session, actor: Actor) -> List[DeliveryOrder]:
    query = db.query(DeliveryOrder)
    if actor.role == Role.CUSTOMER:
        query = query.filter(DeliveryOrder.customer_id == actor.user_id)
    elif actor.role == Role.WAREHOUSE:
        query = query.filter(DeliveryOrder.warehouse_id.in_(directory.owned_warehouse_ids(db, actor)))
    return query.order_by(desc(DeliveryOrder.created_at), desc(DeliveryOrder.id)).all()


# ============= DELIVERY REPORTS =============

def _report_order_id(db: Session, actor: Actor, order_id: Optional[int], booking_id: Optional[int]) -> int:
    """Resolve the order a report closes; a booking without an order cannot be reported."""
    if order_id is not None:
        return order_id
    if booking_id is None:
        raise ValidationError("delivery_order_id or booking_id is required")
    booking, _ = lock_booking(db, booking_id)
    check_booking_scope(db, actor, booking)
    found = db.query(DeliveryOrder.id).filter(DeliveryOrder.booking_id == booking.id).scalar()
    if found is None:
        raise Conflict("Delivery order must exist before the delivery report", booking_id=booking.id)
    return found


def create_delivery_report(
    db: Session,
    actor: Actor,
    order_id: Optional[int] = None,
    booking_id: Optional[int] = None,
    delivered_at: Optional[datetime] = None,
    proof_of_delivery: Optional[str] = None,
    goods_receipt_note: Optional[str] = None,
    delivered_quantity: Optional[float] = None,
    damaged_quantity: Optional[float] = None,
    exceptions: Optional[str] = None,
) -> DeliveryReport:
    """Warehouse closes the delivery with a proof-of-delivery report (C33)."""
    step = require_step(actor.role, WorkflowStep.C33)
    if delivered_quantity is not None and delivered_quantity < 0:
        raise ValidationError("delivered_quantity cannot be negative")
    if damaged_quantity is not None and damaged_quantity < 0:
        raise ValidationError("damaged_quantity cannot be negative")

    with atomic(db):
        order_id = _report_order_id(db, actor, order_id, booking_id)
        order, booking, quote = lock_stage_record(db, DeliveryOrder, order_id, "Delivery order")
        if booking_id is not None and booking.id != booking_id:
            raise ValidationError("Delivery order belongs to another booking", delivery_order_id=order.id)
        check_booking_scope(db, actor, booking)
        if order.report is not None:
            raise Conflict(
                "Delivery report already exists for this order",
                delivery_order_id=order.id,
                report_number=order.report.report_number,
            )

        if DeliveryOrderStatus(order.status) != DeliveryOrderStatus.EXECUTED:
            order.status = DeliveryOrderStatus.EXECUTED
            order.executed_at = utcnow()

        report = DeliveryReport(
            delivery_order_id=order.id,
            booking_id=booking.id,
            customer_id=booking.customer_id,
            warehouse_id=booking.warehouse_id,
            report_number=next_report_number(db),
            delivered_at=delivered_at or utcnow(),
            proof_of_delivery=proof_of_delivery,
            goods_receipt_note=goods_receipt_note,
            quantities={"delivered": delivered_quantity, "damaged": damaged_quantity},
            exceptions=exceptions,
            status=DeliveryReportStatus.CREATED,
            created_by=actor.user_id,
        )
        db.add(report)
        db.flush()

        request = booking.delivery_request
        if request is not None:
            request.status = DeliveryRequestStatus.DELIVERED

        apply_transition(
            db, quote, step, actor,
            action="delivery_reported",
            details={"booking_id": booking.id, "delivery_order_id": order.id, "report_number": report.report_number},
        )
        body = f"Delivery report {report.report_number} filed for booking #{booking.id}."
        notifications = [
            Notification(to=user_address(db, booking.customer_id), subject=f"Goods delivered for booking #{booking.id}", body=body),
            Notification(to=team_address(Role.SUPERVISOR), subject=f"Delivery report {report.report_number}", body=body),
        ]

    finish_stage(actor, "delivery_reported", "delivery_report", report.id, step, notifications)
    return report


def list_delivery_reports(db: Session, actor: Actor, booking_id: int) -> List[DeliveryReport]:
    booking = get_booking(db, actor, booking_id)
    return db.query(DeliveryReport).filter(
        DeliveryReport.booking_id == booking.id
    ).order_by(DeliveryReport.id).all()
