"""
Tests for the append-only workflow history and the audit log.
"""
import json
import logging

import pytest
from sqlalchemy.orm import Session

from app.core.logging import AuditLogger, StructuredFormatter
from app.db.models import ImmutableHistoryError, WorkflowEvent
from app.services import audit_trail, quote_lifecycle


class TestWorkflowHistory:

    def test_sequence_is_gapless_per_quote(self, db_session: Session, actors, driver):
        first = driver.new_quote()
        second = driver.new_quote()
        quote_lifecycle.accept_reject(db_session, actors["purchase"], first.id, "accept")

        assert [e.sequence for e in audit_trail.history(db_session, first.id)] == [1, 2]
        assert [e.sequence for e in audit_trail.history(db_session, second.id)] == [1]

    def test_from_step_chains_to_previous_entry(self, db_session: Session, actors, driver):
        quote = driver.new_quote()
        driver.rates_in(quote.id)

        events = audit_trail.history(db_session, quote.id)
        for previous, current in zip(events, events[1:]):
            assert current.from_step == previous.to_step

    def test_events_cannot_be_updated(self, db_session: Session, driver):
        quote = driver.new_quote()
        event = audit_trail.history(db_session, quote.id)[0]

        event.action = "rewritten"
        with pytest.raises(ImmutableHistoryError):
            db_session.flush()
        db_session.rollback()

        assert audit_trail.history(db_session, quote.id)[0].action == "create"

    def test_events_cannot_be_deleted(self, db_session: Session, driver):
        quote = driver.new_quote()
        event = audit_trail.history(db_session, quote.id)[0]

        db_session.delete(event)
        with pytest.raises(ImmutableHistoryError):
            db_session.flush()
        db_session.rollback()

        assert db_session.query(WorkflowEvent).filter(WorkflowEvent.quote_id == quote.id).count() == 1

    def test_serialized_event(self, db_session: Session, driver):
        quote = driver.new_quote()
        payload = audit_trail.serialize_event(audit_trail.history(db_session, quote.id)[0])

        assert payload["sequence"] == 1
        assert payload["fromStep"] is None
        assert payload["toStep"] == "C1"
        assert payload["actorRole"] == "customer"
        assert payload["at"] is not None


class TestAuditLog:

    def test_audit_line_carries_context(self, caplog):
        with caplog.at_level(logging.INFO, logger="audit"):
            AuditLogger().log(
                action="invoice_paid",
                user_id=7,
                role="customer",
                entity_type="invoice",
                entity_id=3,
                step="C31",
                details={"transaction_id": "UTR123", "amount_paid": 50},
            )

        record = caplog.records[-1]
        assert record.getMessage().startswith("AUDIT: invoice_paid on invoice:3 at C31")
        assert "UTR123" not in record.getMessage()
        assert record.step == "C31"
        assert record.user_id == 7

    def test_formatter_scrubs_secrets(self):
        record = logging.LogRecord(
            name="app", level=logging.INFO, pathname=__file__, lineno=1,
            msg="login token=abc123 for user", args=(), exc_info=None,
        )
        record.quote_id = 12

        entry = json.loads(StructuredFormatter().format(record))

        assert "abc123" not in entry["message"]
        assert entry["quote_id"] == 12
        assert entry["level"] == "INFO"
