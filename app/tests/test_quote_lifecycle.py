"""
Tests for the quote status machine, transitions and workflow views.
"""
import pytest
from sqlalchemy.orm import Session

from app.core.errors import Conflict, NotFound, PermissionDenied, PreconditionFailed, ValidationError
from app.db.models import Booking, BookingStatus, QuoteStatus, WorkflowEvent
from app.services import quote_lifecycle
from app.services.quote_lifecycle import can_transition


class TestStatusMachine:
    """Pure status graph checks."""

    def test_forward_edges(self):
        assert can_transition("pending", "warehouse_quote_requested")
        assert can_transition("warehouse_quote_received", "processing")
        assert can_transition("warehouse_quote_received", "rate_confirmed")
        assert can_transition("customer_confirmation_pending", "booking_confirmed")

    def test_skipping_ahead_is_rejected(self):
        assert not can_transition("pending", "quoted")
        assert not can_transition("processing", "booking_confirmed")

    def test_backwards_is_rejected(self):
        assert not can_transition("quoted", "processing")

    def test_rejection_from_any_live_status(self):
        for status in QuoteStatus:
            if status in (QuoteStatus.REJECTED, QuoteStatus.CANCELLED):
                continue
            assert can_transition(status, QuoteStatus.REJECTED)

    def test_terminal_statuses_are_final(self):
        for target in QuoteStatus:
            assert not can_transition(QuoteStatus.REJECTED, target)
            assert not can_transition(QuoteStatus.CANCELLED, target)

    def test_booked_quote_cannot_be_cancelled(self):
        assert not can_transition("booking_confirmed", "cancelled")

    def test_same_status_is_allowed(self):
        assert can_transition("processing", "processing")


class TestCreateQuote:
    """C1: customer opens a quote."""

    def test_create_sets_initial_state(self, db_session: Session, actors, driver):
        quote = driver.new_quote()

        assert quote.status == QuoteStatus.PENDING.value
        assert quote.current_workflow_step == "C1"
        assert quote.customer_id == actors["customer"].user_id

        events = db_session.query(WorkflowEvent).filter(WorkflowEvent.quote_id == quote.id).all()
        assert len(events) == 1
        assert events[0].from_step is None
        assert events[0].to_step == "C1"
        assert events[0].sequence == 1

    def test_only_customers_create_quotes(self, db_session: Session, actors, users):
        with pytest.raises(PermissionDenied):
            quote_lifecycle.create_quote(
                db_session, actors["sales"],
                storage_type="dry", required_space=10, preferred_location="Pune", duration="1 month",
            )

    def test_required_space_must_be_positive(self, db_session: Session, actors):
        with pytest.raises(ValidationError):
            quote_lifecycle.create_quote(
                db_session, actors["customer"],
                storage_type="dry", required_space=0, preferred_location="Pune", duration="1 month",
            )


class TestAcceptReject:
    """Role shorthand over the step transitions."""

    def test_purchase_accept_requests_warehouse_quotes(self, db_session: Session, actors, driver):
        quote = driver.new_quote()
        quote = quote_lifecycle.accept_reject(db_session, actors["purchase"], quote.id, "accept")

        assert quote.status == QuoteStatus.WAREHOUSE_QUOTE_REQUESTED.value
        assert quote.current_workflow_step == "C2"

    def test_purchase_reject_is_terminal(self, db_session: Session, actors, driver):
        quote = driver.new_quote()
        quote_lifecycle.accept_reject(db_session, actors["purchase"], quote.id, "reject", reason="No capacity")

        with pytest.raises(Conflict):
            quote_lifecycle.accept_reject(db_session, actors["purchase"], quote.id, "accept")

    def test_sales_accept_requires_final_price(self, db_session: Session, actors, driver):
        quote = driver.new_quote()
        driver.rates_in(quote.id)

        with pytest.raises(ValidationError):
            quote_lifecycle.accept_reject(db_session, actors["sales"], quote.id, "accept")

    def test_sales_accept_sets_final_price(self, db_session: Session, driver):
        quote = driver.new_quote()
        quote = driver.quoted(quote.id, final_price=1500)

        assert quote.status == QuoteStatus.QUOTED.value
        assert quote.final_price == 1500
        assert quote.current_workflow_step == "C11"

    def test_customer_agree_alias(self, db_session: Session, actors, driver):
        quote = driver.new_quote()
        driver.quoted(quote.id)
        quote = quote_lifecycle.accept_reject(db_session, actors["customer"], quote.id, "agree")

        assert quote.status == QuoteStatus.CUSTOMER_CONFIRMATION_PENDING.value
        assert quote.current_workflow_step == "C13"

    def test_invalid_action(self, db_session: Session, actors, driver):
        quote = driver.new_quote()
        with pytest.raises(ValidationError):
            quote_lifecycle.accept_reject(db_session, actors["purchase"], quote.id, "maybe")

    def test_role_without_shorthand(self, db_session: Session, actors, driver):
        quote = driver.new_quote()
        with pytest.raises(PermissionDenied):
            quote_lifecycle.accept_reject(db_session, actors["accounts"], quote.id, "accept")

    def test_customer_cannot_touch_other_customers_quote(self, db_session: Session, actors, driver):
        quote = driver.new_quote()
        with pytest.raises(PermissionDenied):
            quote_lifecycle.accept_reject(db_session, actors["other_customer"], quote.id, "reject")

    def test_missing_quote(self, db_session: Session, actors, users):
        with pytest.raises(NotFound):
            quote_lifecycle.accept_reject(db_session, actors["purchase"], 9999, "accept")


class TestBookingConfirmation:
    """C17/C19 create the booking exactly once."""

    def test_supervisor_accept_creates_booking(self, db_session: Session, driver):
        quote, booking = driver.booked()

        assert quote.status == QuoteStatus.BOOKING_CONFIRMED.value
        assert booking is not None
        assert booking.status == BookingStatus.CONFIRMED.value
        assert booking.total_amount == 1200
        assert booking.warehouse_id == driver.warehouses["north"].id
        assert booking.customer_id == quote.customer_id

    def test_repeat_confirmation_keeps_single_booking(self, db_session: Session, actors, driver):
        quote, booking = driver.booked()

        quote_lifecycle.transition(db_session, actors["supervisor"], quote.id, "C19")

        bookings = db_session.query(Booking).filter(Booking.quote_id == quote.id).all()
        assert len(bookings) == 1
        assert bookings[0].id == booking.id

    def test_confirmation_before_customer_agrees(self, db_session: Session, actors, driver):
        quote = driver.new_quote()
        driver.quoted(quote.id)

        with pytest.raises(PreconditionFailed):
            quote_lifecycle.transition(db_session, actors["supervisor"], quote.id, "C17")

        assert db_session.query(Booking).count() == 0

    def test_customer_cannot_reject_booked_quote(self, db_session: Session, actors, driver):
        quote, booking = driver.booked()

        with pytest.raises(Conflict):
            quote_lifecycle.accept_reject(db_session, actors["customer"], quote.id, "reject")

        db_session.refresh(quote)
        db_session.refresh(booking)
        assert quote.status == QuoteStatus.BOOKING_CONFIRMED.value
        assert booking.status == BookingStatus.CONFIRMED.value

    def test_supervisor_reject_shorthand_keeps_booking_live(self, db_session: Session, actors, driver):
        quote, booking = driver.booked()

        with pytest.raises(Conflict):
            quote_lifecycle.accept_reject(db_session, actors["supervisor"], quote.id, "reject")

        db_session.refresh(booking)
        assert booking.status == BookingStatus.CONFIRMED.value

    def test_failed_confirmation_leaves_no_history(self, db_session: Session, actors, driver):
        quote = driver.new_quote()
        driver.quoted(quote.id)
        before = db_session.query(WorkflowEvent).filter(WorkflowEvent.quote_id == quote.id).count()

        with pytest.raises(PreconditionFailed):
            quote_lifecycle.transition(db_session, actors["supervisor"], quote.id, "C17")

        after = db_session.query(WorkflowEvent).filter(WorkflowEvent.quote_id == quote.id).count()
        assert after == before


class TestTransition:
    """Direct step transitions."""

    def test_gate_runs_before_state_checks(self, db_session: Session, actors, users):
        with pytest.raises(PermissionDenied):
            quote_lifecycle.transition(db_session, actors["customer"], 9999, "C17")

    def test_transition_records_flow_type(self, db_session: Session, actors, driver):
        quote = driver.new_quote()
        quote = quote_lifecycle.transition(
            db_session, actors["purchase"], quote.id, "C3",
            flow_type="FLOW_A_SAME_WAREHOUSE",
        )

        assert quote.current_workflow_step == "C3"
        assert quote.flow_type == "FLOW_A_SAME_WAREHOUSE"

    def test_unknown_flow_type(self, db_session: Session, actors, driver):
        quote = driver.new_quote()
        with pytest.raises(ValidationError):
            quote_lifecycle.transition(db_session, actors["purchase"], quote.id, "C3", flow_type="flow_z")


    def test_rejection_step_rejects_quote(self, db_session: Session, actors, driver):
        quote = driver.new_quote()
        driver.quoted(quote.id)

        quote = quote_lifecycle.transition(db_session, actors["customer"], quote.id, "C14", action="reject")

        assert quote.current_workflow_step == "C14"
        assert quote.status == QuoteStatus.REJECTED.value

    def test_cancel_step_cancels_quote(self, db_session: Session, actors, driver):
        quote = driver.new_quote()

        quote = quote_lifecycle.transition(db_session, actors["customer"], quote.id, "C16")

        assert quote.status == QuoteStatus.CANCELLED.value

    def test_rejected_quote_leaves_queues(self, db_session: Session, actors, driver):
        quote = driver.new_quote()
        driver.quoted(quote.id)
        quote_lifecycle.transition(db_session, actors["customer"], quote.id, "C14", action="reject")

        pending = quote_lifecycle.pending_actions_for_role(db_session, actors["customer"])
        assert quote.id not in [q.id for q in pending]

    def test_booking_rejection_step_needs_the_booking(self, db_session: Session, actors, driver):
        quote, booking = driver.booked()

        with pytest.raises(ValidationError):
            quote_lifecycle.transition(db_session, actors["supervisor"], quote.id, "C20")

        db_session.refresh(booking)
        assert booking.status == BookingStatus.CONFIRMED.value


class TestCancelQuote:
    """C16: customer withdraws a quote."""

    def test_cancel_pending_quote(self, db_session: Session, actors, driver):
        quote = driver.new_quote()
        quote = quote_lifecycle.cancel_quote(db_session, actors["customer"], quote.id, reason="Plans changed")

        assert quote.status == QuoteStatus.CANCELLED.value
        assert quote.current_workflow_step == "C16"

    def test_cannot_cancel_booked_quote(self, db_session: Session, actors, driver):
        quote, _ = driver.booked()
        with pytest.raises(Conflict):
            quote_lifecycle.cancel_quote(db_session, actors["customer"], quote.id)


class TestWorkflowViews:
    """State, latest and pending-action read models."""

    def test_workflow_state_shape(self, db_session: Session, actors, driver):
        quote = driver.new_quote()
        quote_lifecycle.accept_reject(db_session, actors["purchase"], quote.id, "accept")

        state = quote_lifecycle.get_workflow_state(db_session, actors["customer"], quote.id)

        assert state["quoteId"] == quote.id
        assert state["status"] == "warehouse_quote_requested"
        assert state["currentWorkflowStep"] == "C2"
        history = state["workflowHistory"]
        assert [h["toStep"] for h in history] == ["C1", "C2"]
        assert history[1]["fromStep"] == "C1"
        assert history[1]["actorRole"] == "purchase_support"

    def test_latest_for_customer(self, db_session: Session, actors, driver):
        driver.new_quote()
        second = driver.new_quote()

        latest = quote_lifecycle.latest_for_customer(db_session, actors["customer"])
        assert latest["quoteId"] == second.id

    def test_latest_for_customer_without_quotes(self, db_session: Session, actors):
        assert quote_lifecycle.latest_for_customer(db_session, actors["other_customer"]) is None

    def test_latest_is_customer_only(self, db_session: Session, actors):
        with pytest.raises(PermissionDenied):
            quote_lifecycle.latest_for_customer(db_session, actors["purchase"])

    def test_pending_actions_follow_current_step(self, db_session: Session, actors, driver):
        quote = driver.new_quote()
        quote_lifecycle.accept_reject(db_session, actors["purchase"], quote.id, "accept")

        purchase_queue = quote_lifecycle.pending_actions_for_role(db_session, actors["purchase"])
        sales_queue = quote_lifecycle.pending_actions_for_role(db_session, actors["sales"])

        assert [q.id for q in purchase_queue] == [quote.id]
        assert sales_queue == []

    def test_pending_actions_skip_terminal_quotes(self, db_session: Session, actors, driver):
        quote = driver.new_quote()
        quote_lifecycle.accept_reject(db_session, actors["purchase"], quote.id, "reject")

        assert quote_lifecycle.pending_actions_for_role(db_session, actors["purchase"]) == []

    def test_roles_without_steps_have_empty_queue(self, db_session: Session, actors, driver):
        driver.new_quote()
        assert quote_lifecycle.pending_actions_for_role(db_session, actors["accounts"]) == []

    def test_customer_list_is_scoped(self, db_session: Session, actors, driver):
        mine = driver.new_quote()
        driver.new_quote(customer="other_customer")

        quotes = quote_lifecycle.list_quotes(db_session, actors["customer"])
        assert [q.id for q in quotes] == [mine.id]
