"""
Tests for fire-and-forget notification dispatch.
"""
import pytest
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.rbac import Role
from app.db.models import QuoteStatus
from app.services import notifier
from app.services.notifier import Notification, dispatch, send_email, team_address, warehouse_address
from app.workers import jobs


@pytest.fixture
def queue_backend(monkeypatch):
    monkeypatch.setattr(settings, "NOTIFICATION_BACKEND", "queue")


class TestSendEmail:

    def test_log_backend(self):
        assert send_email("ops@warehouse.test", "Hello", "Body") is True

    def test_missing_recipient_is_dropped(self):
        assert send_email(None, "Hello", "Body") is False
        assert send_email("", "Hello", "Body") is False

    def test_queue_backend_enqueues(self, queue_backend, monkeypatch):
        sent = []
        monkeypatch.setattr(jobs, "enqueue_notification", lambda to, subject, body: sent.append((to, subject)))

        assert send_email("ops@warehouse.test", "Hello", "Body") is True
        assert sent == [("ops@warehouse.test", "Hello")]

    def test_queue_failure_is_swallowed(self, queue_backend, monkeypatch):
        def broken(to, subject, body):
            raise ConnectionError("redis unavailable")

        monkeypatch.setattr(jobs, "enqueue_notification", broken)

        assert send_email("ops@warehouse.test", "Hello", "Body") is False

    def test_worker_job_hands_off_to_relay_log(self, caplog):
        with caplog.at_level("INFO", logger=jobs.logger.name):
            jobs.record_notification_job("ops@warehouse.test", "Quote #4 quoted", "Body")

        assert any(
            "ops@warehouse.test" in r.getMessage() and settings.NOTIFICATION_FROM in r.getMessage()
            for r in caplog.records
        )

    def test_dispatch_reports_each_result(self):
        results = dispatch([
            Notification(to="a@warehouse.test", subject="One", body=""),
            Notification(to=None, subject="Two", body=""),
        ])
        assert results == [True, False]


class TestAddresses:

    def test_team_addresses_come_from_settings(self):
        assert team_address(Role.SUPERVISOR) == settings.SUPERVISOR_EMAIL
        assert team_address(Role.CUSTOMER) is None

    def test_warehouse_address_is_owner_email(self, db_session: Session, users, warehouses):
        assert warehouse_address(db_session, warehouses["north"].id) == users["warehouse"].email
        assert warehouse_address(db_session, 999) is None


class TestWorkflowSurvivesNotificationFailure:

    def test_quote_commits_when_queue_is_down(self, db_session: Session, actors, driver, queue_backend, monkeypatch):
        def broken(to, subject, body):
            raise ConnectionError("redis unavailable")

        monkeypatch.setattr(jobs, "enqueue_notification", broken)

        quote = driver.new_quote()

        assert quote.status == QuoteStatus.PENDING.value
        assert notifier.send_email(settings.PURCHASE_SUPPORT_EMAIL, "ping", "") is False
