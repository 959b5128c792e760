"""
SQLAlchemy ORM models for the warehouse workflow service.

A quote is the root of every workflow: RFQs and rates negotiate its price,
the booking it spawns owns the cargo, delivery and invoice records, and its
workflow_events table is the audit trail of every hand-off.
"""
from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DateTime, Float,
    ForeignKey, Enum, JSON, UniqueConstraint, Index, event, text
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum

from app.core.rbac import Role
from app.db.session import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============= ENUMS =============

class QuoteStatus(str, enum.Enum):
    PENDING = "pending"
    WAREHOUSE_QUOTE_REQUESTED = "warehouse_quote_requested"
    WAREHOUSE_QUOTE_RECEIVED = "warehouse_quote_received"
    RATE_CONFIRMED = "rate_confirmed"  # legacy, still assignable
    PROCESSING = "processing"
    QUOTED = "quoted"
    CUSTOMER_CONFIRMATION_PENDING = "customer_confirmation_pending"
    BOOKING_CONFIRMED = "booking_confirmed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class FlowType(str, enum.Enum):
    FLOW_A_SAME_WAREHOUSE = "FLOW_A_SAME_WAREHOUSE"
    FLOW_B_MULTIPLE_WAREHOUSES = "FLOW_B_MULTIPLE_WAREHOUSES"


class RFQStatus(str, enum.Enum):
    SENT = "sent"
    RESPONDED = "responded"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class RateStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CargoStatus(str, enum.Enum):
    SUBMITTED = "submitted"
    APPROVED = "approved"
    PROCESSING = "processing"
    COMPLETED = "completed"


class CartingStatus(str, enum.Enum):
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class DeliveryUrgency(str, enum.Enum):
    STANDARD = "standard"
    EXPRESS = "express"
    URGENT = "urgent"


class DeliveryRequestStatus(str, enum.Enum):
    REQUESTED = "requested"
    SCHEDULED = "scheduled"
    REJECTED = "rejected"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"


class DeliveryAdviceStatus(str, enum.Enum):
    CREATED = "created"
    ORDER_PENDING = "order_pending"
    ORDER_CREATED = "order_created"


class DeliveryOrderStatus(str, enum.Enum):
    CREATED = "created"
    EXECUTED = "executed"


class DeliveryReportStatus(str, enum.Enum):
    CREATED = "created"


class InvoiceStatus(str, enum.Enum):
    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


# Enum columns are stored as VARCHAR so the same schema runs on PostgreSQL
# and SQLite. Values (lowercase) are stored, not member names.
def enum_values(enum_cls):
    return [e.value for e in enum_cls]


def _enum_type(enum_cls, name: str) -> Enum:
    return Enum(*enum_values(enum_cls), name=name, native_enum=False, length=40)


RoleType = _enum_type(Role, 'userrole')
QuoteStatusType = _enum_type(QuoteStatus, 'quotestatus')
RFQStatusType = _enum_type(RFQStatus, 'rfqstatus')
RateStatusType = _enum_type(RateStatus, 'ratestatus')
BookingStatusType = _enum_type(BookingStatus, 'bookingstatus')
CargoStatusType = _enum_type(CargoStatus, 'cargostatus')
CartingStatusType = _enum_type(CartingStatus, 'cartingstatus')
DeliveryUrgencyType = _enum_type(DeliveryUrgency, 'deliveryurgency')
DeliveryRequestStatusType = _enum_type(DeliveryRequestStatus, 'deliveryrequeststatus')
DeliveryAdviceStatusType = _enum_type(DeliveryAdviceStatus, 'deliveryadvicestatus')
DeliveryOrderStatusType = _enum_type(DeliveryOrderStatus, 'deliveryorderstatus')
DeliveryReportStatusType = _enum_type(DeliveryReportStatus, 'deliveryreportstatus')
InvoiceStatusType = _enum_type(InvoiceStatus, 'invoicestatus')


# ============= USERS & WAREHOUSES =============

class User(Base):
    """Users known to the workflow (identity lives in the auth provider)."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    full_name = Column(String(255))
    company_name = Column(String(255))
    role = Column(RoleType, nullable=False, default=Role.CUSTOMER)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    warehouses = relationship("Warehouse", back_populates="owner")
    quotes = relationship("Quote", back_populates="customer", foreign_keys="Quote.customer_id")


class Warehouse(Base):
    """Storage facility; owner_id maps a warehouse-role user to the sites they run."""
    __tablename__ = "warehouses"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    name = Column(String(255), nullable=False)
    location = Column(String(255), nullable=False)
    city = Column(String(100))
    state = Column(String(100))
    storage_type = Column(String(100))
    total_space = Column(Float)
    available_space = Column(Float)
    price_per_sq_ft = Column(Float)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    owner = relationship("User", back_populates="warehouses")
    rfqs = relationship("RFQ", back_populates="warehouse")


# ============= QUOTES & AUDIT TRAIL =============

class Quote(Base):
    """A customer's storage request and the root of its workflow."""
    __tablename__ = "quotes"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    storage_type = Column(String(100), nullable=False)
    required_space = Column(Float, nullable=False)
    preferred_location = Column(String(255), nullable=False)
    duration = Column(String(100), nullable=False)
    special_requirements = Column(Text)
    status = Column(QuoteStatusType, nullable=False, default=QuoteStatus.PENDING, index=True)
    assigned_to = Column(Integer, ForeignKey("users.id"), nullable=True)
    warehouse_id = Column(Integer, ForeignKey("warehouses.id"), nullable=True)
    final_price = Column(Float)
    current_workflow_step = Column(String(8), nullable=False, index=True)
    flow_type = Column(String(50))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    customer = relationship("User", back_populates="quotes", foreign_keys=[customer_id])
    warehouse = relationship("Warehouse")
    rfqs = relationship("RFQ", back_populates="quote", order_by="RFQ.id")
    booking = relationship("Booking", back_populates="quote", uselist=False)
    events = relationship(
        "WorkflowEvent",
        back_populates="quote",
        order_by="WorkflowEvent.sequence",
    )


class WorkflowEvent(Base):
    """
    One immutable hand-off in a quote's workflow history.

    Rows are append-only: sequence increases by one per quote and the ORM
    refuses updates and deletes.
    """
    __tablename__ = "workflow_events"

    id = Column(Integer, primary_key=True, index=True)
    quote_id = Column(Integer, ForeignKey("quotes.id"), nullable=False)
    sequence = Column(Integer, nullable=False)
    from_step = Column(String(8))
    to_step = Column(String(8), nullable=False)
    action = Column(String(50), nullable=False, default="transition")
    actor_role = Column(RoleType, nullable=False)
    actor_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    details = Column(JSON)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    # Relationships
    quote = relationship("Quote", back_populates="events")

    __table_args__ = (
        UniqueConstraint('quote_id', 'sequence', name='uq_workflow_event_quote_sequence'),
    )


class ImmutableHistoryError(Exception):
    """Raised when code tries to rewrite workflow history."""


@event.listens_for(WorkflowEvent, "before_update")
def _reject_event_update(mapper, connection, target):
    raise ImmutableHistoryError(f"workflow event {target.id} is immutable")


@event.listens_for(WorkflowEvent, "before_delete")
def _reject_event_delete(mapper, connection, target):
    raise ImmutableHistoryError(f"workflow event {target.id} cannot be deleted")


# ============= RFQ NEGOTIATION =============

class RFQ(Base):
    """A price inquiry from one quote to one candidate warehouse."""
    __tablename__ = "rfqs"

    id = Column(Integer, primary_key=True, index=True)
    quote_id = Column(Integer, ForeignKey("quotes.id"), nullable=False, index=True)
    warehouse_id = Column(Integer, ForeignKey("warehouses.id"), nullable=False, index=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    status = Column(RFQStatusType, nullable=False, default=RFQStatus.SENT)
    valid_until = Column(DateTime(timezone=True), nullable=False)
    notes = Column(Text)
    responded_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    # Relationships
    quote = relationship("Quote", back_populates="rfqs")
    warehouse = relationship("Warehouse", back_populates="rfqs")
    rates = relationship("Rate", back_populates="rfq", order_by="Rate.total_rate")

    __table_args__ = (
        # One active RFQ per (quote, warehouse) pair
        Index(
            'uq_rfq_active_quote_warehouse', 'quote_id', 'warehouse_id',
            unique=True,
            postgresql_where=text("status IN ('sent', 'responded')"),
            sqlite_where=text("status IN ('sent', 'responded')"),
        ),
    )


class Rate(Base):
    """A warehouse's priced answer to an RFQ."""
    __tablename__ = "rates"

    id = Column(Integer, primary_key=True, index=True)
    rfq_id = Column(Integer, ForeignKey("rfqs.id"), nullable=False, index=True)
    warehouse_id = Column(Integer, ForeignKey("warehouses.id"), nullable=False)
    submitted_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    base_rate = Column(Float)
    surcharges = Column(Float, default=0)
    total_rate = Column(Float, nullable=False)
    validity_days = Column(Integer)
    capacity_confirmed = Column(Boolean, default=False)
    turnaround_time = Column(String(100))
    terms = Column(Text)
    notes = Column(Text)
    status = Column(RateStatusType, nullable=False, default=RateStatus.PENDING)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    # Relationships
    rfq = relationship("RFQ", back_populates="rates")

    __table_args__ = (
        # An RFQ is answered once
        UniqueConstraint('rfq_id', name='uq_rate_rfq'),
    )


# ============= BOOKING & CARGO =============

class Booking(Base):
    """Confirmed storage engagement; created exactly once per quote."""
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    quote_id = Column(Integer, ForeignKey("quotes.id"), nullable=False, unique=True)
    customer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    warehouse_id = Column(Integer, ForeignKey("warehouses.id"), nullable=False, index=True)
    status = Column(BookingStatusType, nullable=False, default=BookingStatus.PENDING)
    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False)
    total_amount = Column(Float, nullable=False)
    approved_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    quote = relationship("Quote", back_populates="booking")
    warehouse = relationship("Warehouse")
    customer = relationship("User", foreign_keys=[customer_id])
    cargo_dispatches = relationship("CargoDispatchDetail", back_populates="booking")
    carting_details = relationship("CartingDetail", back_populates="booking")
    delivery_request = relationship("DeliveryRequest", back_populates="booking", uselist=False)
    invoices = relationship("Invoice", back_populates="booking")


class CargoDispatchDetail(Base):
    """Goods the customer is dispatching into a booking."""
    __tablename__ = "cargo_dispatch_details"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    submitted_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    item_description = Column(Text, nullable=False)
    quantity = Column(Float, nullable=False)
    weight = Column(Float)
    dimensions = Column(String(255))
    special_handling = Column(Text)
    form_data = Column(JSON)
    status = Column(CargoStatusType, nullable=False, default=CargoStatus.SUBMITTED)
    rejection_reason = Column(Text)
    approved_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    approved_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    booking = relationship("Booking", back_populates="cargo_dispatches")


class CartingDetail(Base):
    """Staging of received goods at the warehouse."""
    __tablename__ = "carting_details"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    warehouse_id = Column(Integer, ForeignKey("warehouses.id"), nullable=False)
    submitted_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    item_description = Column(Text, nullable=False)
    quantity = Column(Float, nullable=False)
    weight = Column(Float)
    dimensions = Column(String(255))
    special_handling = Column(Text)
    status = Column(CartingStatusType, nullable=False, default=CartingStatus.SUBMITTED)
    rejection_reason = Column(Text)
    reviewed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    reviewed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    # Relationships
    booking = relationship("Booking", back_populates="carting_details")


# ============= DELIVERY CHAIN =============

class DeliveryRequest(Base):
    """Customer's request to take goods out of storage (one per booking)."""
    __tablename__ = "delivery_requests"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, unique=True)
    customer_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    delivery_address = Column(Text, nullable=False)
    preferred_date = Column(DateTime(timezone=True), nullable=False)
    urgency = Column(DeliveryUrgencyType, nullable=False, default=DeliveryUrgency.STANDARD)
    transporter_contact_person = Column(String(255))
    transporter_contact_details = Column(String(255))
    billing_party = Column(String(255))
    remarks = Column(Text)
    available_quantity = Column(Float)
    required_quantity = Column(Float)
    status = Column(DeliveryRequestStatusType, nullable=False, default=DeliveryRequestStatus.REQUESTED)
    tracking_number = Column(String(50), unique=True)
    assigned_driver = Column(String(255))
    rejection_reason = Column(Text)
    reviewed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    booking = relationship("Booking", back_populates="delivery_request")
    advice = relationship("DeliveryAdvice", back_populates="delivery_request", uselist=False)


class DeliveryAdvice(Base):
    """Supervisor-approved dispatch instruction derived from a delivery request."""
    __tablename__ = "delivery_advices"

    id = Column(Integer, primary_key=True, index=True)
    delivery_request_id = Column(Integer, ForeignKey("delivery_requests.id"), nullable=False, unique=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, unique=True)
    customer_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    booking_number = Column(String(50))
    delivery_address = Column(Text, nullable=False)
    preferred_date = Column(DateTime(timezone=True), nullable=False)
    urgency = Column(DeliveryUrgencyType, nullable=False, default=DeliveryUrgency.STANDARD)
    instructions = Column(Text)
    status = Column(DeliveryAdviceStatusType, nullable=False, default=DeliveryAdviceStatus.CREATED)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    # Relationships
    delivery_request = relationship("DeliveryRequest", back_populates="advice")
    order = relationship("DeliveryOrder", back_populates="advice", uselist=False)


class DeliveryOrder(Base):
    """Work order for the warehouse to release goods."""
    __tablename__ = "delivery_orders"

    id = Column(Integer, primary_key=True, index=True)
    delivery_advice_id = Column(Integer, ForeignKey("delivery_advices.id"), nullable=False, unique=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    warehouse_id = Column(Integer, ForeignKey("warehouses.id"), nullable=False)
    order_number = Column(String(50), unique=True, nullable=False)
    status = Column(DeliveryOrderStatusType, nullable=False, default=DeliveryOrderStatus.CREATED)
    executed_at = Column(DateTime(timezone=True))
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    # Relationships
    advice = relationship("DeliveryAdvice", back_populates="order")
    report = relationship("DeliveryReport", back_populates="order", uselist=False)


class DeliveryReport(Base):
    """Proof that a delivery order was carried out."""
    __tablename__ = "delivery_reports"

    id = Column(Integer, primary_key=True, index=True)
    delivery_order_id = Column(Integer, ForeignKey("delivery_orders.id"), nullable=False, unique=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    warehouse_id = Column(Integer, ForeignKey("warehouses.id"), nullable=False)
    report_number = Column(String(50), unique=True, nullable=False)
    delivered_at = Column(DateTime(timezone=True), nullable=False)
    proof_of_delivery = Column(Text)
    goods_receipt_note = Column(Text)
    quantities = Column(JSON)
    exceptions = Column(Text)
    status = Column(DeliveryReportStatusType, nullable=False, default=DeliveryReportStatus.CREATED)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    # Relationships
    order = relationship("DeliveryOrder", back_populates="report")


# ============= INVOICING =============

class Invoice(Base):
    """Billing for a booking; at most one non-cancelled invoice per booking."""
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    invoice_number = Column(String(50), unique=True, nullable=False)
    amount = Column(Float, nullable=False)
    status = Column(InvoiceStatusType, nullable=False, default=InvoiceStatus.DRAFT)
    due_date = Column(DateTime(timezone=True), nullable=False)
    payment_method = Column(String(50))
    transaction_id = Column(String(255))
    amount_paid = Column(Float)
    paid_at = Column(DateTime(timezone=True))
    rejection_reason = Column(Text)
    reviewed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    booking = relationship("Booking", back_populates="invoices")

    __table_args__ = (
        Index(
            'uq_invoice_active_booking', 'booking_id',
            unique=True,
            postgresql_where=text("status <> 'cancelled'"),
            sqlite_where=text("status <> 'cancelled'"),
        ),
    )
