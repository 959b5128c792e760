"""
Tests for RFQ fan-out, warehouse responses and rate selection.
"""
from datetime import timedelta

import pytest
from sqlalchemy.orm import Session

from app.core.errors import Conflict, NotFound, PermissionDenied, RFQExpired, ValidationError
from app.db.models import RFQ, FlowType, QuoteStatus, Rate, RateStatus, RFQStatus, utcnow
from app.services import quote_lifecycle, rfq_negotiation


@pytest.fixture
def requested_quote(db_session: Session, actors, driver):
    quote = driver.new_quote()
    return quote_lifecycle.accept_reject(db_session, actors["purchase"], quote.id, "accept")


class TestCreateRFQs:
    """C3/C4: purchase support fans out RFQs."""

    def test_single_warehouse_is_flow_a(self, db_session: Session, actors, warehouses, requested_quote):
        rfqs = rfq_negotiation.create_rfqs(
            db_session, actors["purchase"], requested_quote.id, [warehouses["north"].id],
        )
        db_session.refresh(requested_quote)

        assert len(rfqs) == 1
        assert rfqs[0].status == RFQStatus.SENT.value
        assert requested_quote.flow_type == FlowType.FLOW_A_SAME_WAREHOUSE.value
        assert requested_quote.current_workflow_step == "C3"

    def test_multiple_warehouses_is_flow_b(self, db_session: Session, actors, warehouses, requested_quote):
        rfqs = rfq_negotiation.create_rfqs(
            db_session, actors["purchase"], requested_quote.id,
            [warehouses["north"].id, warehouses["south"].id],
        )
        db_session.refresh(requested_quote)

        assert {r.warehouse_id for r in rfqs} == {warehouses["north"].id, warehouses["south"].id}
        assert requested_quote.flow_type == FlowType.FLOW_B_MULTIPLE_WAREHOUSES.value
        assert requested_quote.current_workflow_step == "C4"
        assert requested_quote.status == QuoteStatus.WAREHOUSE_QUOTE_REQUESTED.value

    def test_default_validity(self, db_session: Session, actors, warehouses, requested_quote):
        before = utcnow()
        rfq = rfq_negotiation.create_rfqs(
            db_session, actors["purchase"], requested_quote.id, [warehouses["north"].id],
        )[0]

        valid_until = rfq_negotiation._as_aware(rfq.valid_until)
        assert before + timedelta(days=6) < valid_until <= utcnow() + timedelta(days=7)

    def test_duplicate_active_rfq_conflicts(self, db_session: Session, actors, warehouses, requested_quote):
        rfq_negotiation.create_rfqs(db_session, actors["purchase"], requested_quote.id, [warehouses["north"].id])

        with pytest.raises(Conflict):
            rfq_negotiation.create_rfqs(db_session, actors["purchase"], requested_quote.id, [warehouses["north"].id])

        assert db_session.query(RFQ).count() == 1

    def test_closed_rfq_can_be_resent(self, db_session: Session, actors, warehouses, requested_quote):
        rfq = rfq_negotiation.create_rfqs(
            db_session, actors["purchase"], requested_quote.id, [warehouses["north"].id],
        )[0]
        rfq_negotiation.update_rfq_status(db_session, actors["purchase"], rfq.id, "expired")

        again = rfq_negotiation.create_rfqs(
            db_session, actors["purchase"], requested_quote.id, [warehouses["north"].id],
        )
        assert again[0].id != rfq.id

    def test_unknown_warehouse(self, db_session: Session, actors, warehouses, requested_quote):
        with pytest.raises(NotFound):
            rfq_negotiation.create_rfqs(db_session, actors["purchase"], requested_quote.id, [424242])

    def test_empty_warehouse_list(self, db_session: Session, actors, requested_quote):
        with pytest.raises(ValidationError):
            rfq_negotiation.create_rfqs(db_session, actors["purchase"], requested_quote.id, [])

    def test_past_deadline_rejected(self, db_session: Session, actors, warehouses, requested_quote):
        with pytest.raises(ValidationError):
            rfq_negotiation.create_rfqs(
                db_session, actors["purchase"], requested_quote.id, [warehouses["north"].id],
                valid_until=utcnow() - timedelta(hours=1),
            )

    def test_warehouse_cannot_send_rfqs(self, db_session: Session, actors, warehouses, requested_quote):
        with pytest.raises(PermissionDenied):
            rfq_negotiation.create_rfqs(db_session, actors["warehouse"], requested_quote.id, [warehouses["north"].id])


class TestSubmitRate:
    """C7: warehouse prices an RFQ."""

    def test_rate_moves_quote_to_received(self, db_session: Session, actors, warehouses, requested_quote):
        rfq = rfq_negotiation.create_rfqs(
            db_session, actors["purchase"], requested_quote.id, [warehouses["north"].id],
        )[0]
        rate = rfq_negotiation.submit_rate(
            db_session, actors["warehouse"], rfq.id,
            total_rate=1000, base_rate=900, surcharges=100, validity_days=14, capacity_confirmed=True,
        )
        db_session.refresh(requested_quote)
        db_session.refresh(rfq)

        assert rate.status == RateStatus.PENDING.value
        assert rate.warehouse_id == warehouses["north"].id
        assert rfq.status == RFQStatus.RESPONDED.value
        assert requested_quote.status == QuoteStatus.WAREHOUSE_QUOTE_RECEIVED.value
        assert requested_quote.current_workflow_step == "C7"

    def test_second_rate_for_same_rfq_conflicts(self, db_session: Session, actors, warehouses, requested_quote):
        rfq = rfq_negotiation.create_rfqs(
            db_session, actors["purchase"], requested_quote.id, [warehouses["north"].id],
        )[0]
        rfq_negotiation.submit_rate(db_session, actors["warehouse"], rfq.id, total_rate=1000)

        with pytest.raises(Conflict):
            rfq_negotiation.submit_rate(db_session, actors["warehouse"], rfq.id, total_rate=800)

        assert db_session.query(Rate).count() == 1

    def test_expired_rfq(self, db_session: Session, actors, warehouses, requested_quote):
        rfq = rfq_negotiation.create_rfqs(
            db_session, actors["purchase"], requested_quote.id, [warehouses["north"].id],
        )[0]
        rfq.valid_until = utcnow() - timedelta(minutes=5)
        db_session.commit()

        with pytest.raises(RFQExpired) as exc_info:
            rfq_negotiation.submit_rate(db_session, actors["warehouse"], rfq.id, total_rate=1000)

        assert exc_info.value.http_status == 409
        assert exc_info.value.code == "rfq_expired"
        assert db_session.query(Rate).count() == 0

    def test_other_warehouse_cannot_answer(self, db_session: Session, actors, warehouses, requested_quote):
        rfq = rfq_negotiation.create_rfqs(
            db_session, actors["purchase"], requested_quote.id, [warehouses["north"].id],
        )[0]

        with pytest.raises(PermissionDenied):
            rfq_negotiation.submit_rate(db_session, actors["other_warehouse"], rfq.id, total_rate=700)

    def test_rate_must_be_positive(self, db_session: Session, actors):
        with pytest.raises(ValidationError):
            rfq_negotiation.submit_rate(db_session, actors["warehouse"], 1, total_rate=0)


class TestRespondToRFQ:
    """C5/C6: warehouse acknowledges or declines without pricing."""

    def test_accept_appends_notes(self, db_session: Session, actors, warehouses, requested_quote):
        rfq = rfq_negotiation.create_rfqs(
            db_session, actors["purchase"], requested_quote.id, [warehouses["north"].id], notes="Cold chain",
        )[0]
        rfq = rfq_negotiation.accept_rfq(db_session, actors["warehouse"], rfq.id, notes="Space available")

        assert rfq.status == RFQStatus.RESPONDED.value
        assert rfq.notes == "Cold chain\n\nWarehouse Notes: Space available"

    def test_reject_cancels_rfq(self, db_session: Session, actors, warehouses, requested_quote):
        rfq = rfq_negotiation.create_rfqs(
            db_session, actors["purchase"], requested_quote.id, [warehouses["north"].id],
        )[0]
        rfq = rfq_negotiation.reject_rfq(db_session, actors["warehouse"], rfq.id, reason="Full")

        assert rfq.status == RFQStatus.CANCELLED.value
        assert rfq.notes == "Rejection Reason: Full"

    def test_responding_twice_conflicts(self, db_session: Session, actors, warehouses, requested_quote):
        rfq = rfq_negotiation.create_rfqs(
            db_session, actors["purchase"], requested_quote.id, [warehouses["north"].id],
        )[0]
        rfq_negotiation.reject_rfq(db_session, actors["warehouse"], rfq.id)

        with pytest.raises(Conflict):
            rfq_negotiation.accept_rfq(db_session, actors["warehouse"], rfq.id)


class TestSelectRate:
    """C9/C10: purchase support picks the winning rate."""

    def test_competing_rates_resolve_to_one_winner(self, db_session: Session, actors, driver):
        quote = driver.new_quote()
        _, (north_rate, south_rate) = driver.rates_in(quote.id)

        comparison = rfq_negotiation.rates_for_quote(db_session, actors["purchase"], quote.id)
        assert [r.total_rate for r in comparison] == [900, 1000]

        quote = rfq_negotiation.select_rate(db_session, actors["purchase"], south_rate.id)
        db_session.refresh(north_rate)
        db_session.refresh(south_rate)

        assert quote.status == QuoteStatus.PROCESSING.value
        assert quote.warehouse_id == driver.warehouses["south"].id
        assert quote.final_price == 900
        assert quote.assigned_to == actors["purchase"].user_id
        assert south_rate.status == RateStatus.ACCEPTED.value
        assert north_rate.status == RateStatus.REJECTED.value

    def test_second_selection_conflicts(self, db_session: Session, actors, driver):
        quote = driver.new_quote()
        _, (north_rate, south_rate) = driver.rates_in(quote.id)
        rfq_negotiation.select_rate(db_session, actors["purchase"], south_rate.id)

        with pytest.raises(Conflict):
            rfq_negotiation.select_rate(db_session, actors["purchase"], north_rate.id)

        db_session.refresh(north_rate)
        assert north_rate.status == RateStatus.REJECTED.value

    def test_selection_closes_unanswered_rfqs(self, db_session: Session, actors, warehouses, requested_quote):
        rfqs = rfq_negotiation.create_rfqs(
            db_session, actors["purchase"], requested_quote.id,
            [warehouses["north"].id, warehouses["south"].id],
        )
        rate = rfq_negotiation.submit_rate(db_session, actors["warehouse"], rfqs[0].id, total_rate=1000)
        rfq_negotiation.select_rate(db_session, actors["purchase"], rate.id)

        db_session.refresh(rfqs[1])
        assert rfqs[1].status == RFQStatus.CANCELLED.value

    def test_assign_to_sales(self, db_session: Session, actors, driver):
        quote = driver.new_quote()
        rfqs, (north_rate, _) = driver.rates_in(quote.id)

        quote = rfq_negotiation.assign_warehouse_to_sales(
            db_session, actors["purchase"], rfqs[0].id, north_rate.id, actors["sales"].user_id,
        )

        assert quote.assigned_to == actors["sales"].user_id
        assert quote.current_workflow_step == "C10"

    def test_assign_requires_sales_user(self, db_session: Session, actors, driver):
        quote = driver.new_quote()
        rfqs, (north_rate, _) = driver.rates_in(quote.id)

        with pytest.raises(ValidationError):
            rfq_negotiation.assign_warehouse_to_sales(
                db_session, actors["purchase"], rfqs[0].id, north_rate.id, actors["customer"].user_id,
            )

    def test_rate_must_belong_to_rfq(self, db_session: Session, actors, driver):
        quote = driver.new_quote()
        rfqs, (north_rate, _) = driver.rates_in(quote.id)

        with pytest.raises(ValidationError):
            rfq_negotiation.assign_warehouse_to_sales(
                db_session, actors["purchase"], rfqs[1].id, north_rate.id, actors["sales"].user_id,
            )

    def test_selection_before_any_rate_received(self, db_session: Session, actors, requested_quote):
        with pytest.raises(NotFound):
            rfq_negotiation.select_rate(db_session, actors["purchase"], 31337)


class TestRFQReads:
    """Role-scoped RFQ and rate listings."""

    def test_warehouse_sees_only_its_rfqs(self, db_session: Session, actors, warehouses, requested_quote):
        rfq_negotiation.create_rfqs(
            db_session, actors["purchase"], requested_quote.id,
            [warehouses["north"].id, warehouses["south"].id],
        )

        visible = rfq_negotiation.list_rfqs(db_session, actors["warehouse"])
        assert [r.warehouse_id for r in visible] == [warehouses["north"].id]

    def test_customers_cannot_list_rfqs(self, db_session: Session, actors):
        with pytest.raises(PermissionDenied):
            rfq_negotiation.list_rfqs(db_session, actors["customer"])

    def test_rate_comparison_is_internal(self, db_session: Session, actors, requested_quote):
        with pytest.raises(PermissionDenied):
            rfq_negotiation.rates_for_quote(db_session, actors["warehouse"], requested_quote.id)
