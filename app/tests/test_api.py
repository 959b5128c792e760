"""
HTTP-level tests: routing, auth, and error payloads.
"""
import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.security import issue_token
from app.db.models import User
from app.db.session import get_db
from app.main import app


@pytest.fixture
def client(db_session: Session):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def auth(user_id: int, role: str, email: str = None) -> dict:
    token = issue_token(user_id, role, email)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def headers(users):
    return {
        key: auth(user.id, user.role, user.email)
        for key, user in users.items()
    }


QUOTE_BODY = {
    "storage_type": "cold",
    "required_space": 250,
    "preferred_location": "Pune",
    "duration": "2 months",
}


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["checks"]["database"] == "connected"


class TestAuth:

    def test_missing_token(self, client):
        response = client.get("/api/quotes")
        assert response.status_code in (401, 403)

    def test_garbage_token(self, client):
        response = client.get("/api/quotes", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    def test_token_without_subject(self, client):
        token = jwt.encode({"role": "customer"}, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
        response = client.get("/api/quotes", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    def test_unknown_role(self, client):
        response = client.get("/api/quotes", headers=auth(77, "intern"))
        assert response.status_code == 403

    def test_first_request_mirrors_user(self, client, db_session: Session):
        response = client.post("/api/quotes", json=QUOTE_BODY, headers=auth(501, "customer", "new@warehouse.test"))

        assert response.status_code == 201
        user = db_session.query(User).filter(User.id == 501).one()
        assert user.email == "new@warehouse.test"


class TestQuoteRoutes:

    def test_create_quote(self, client, headers):
        response = client.post("/api/quotes", json=QUOTE_BODY, headers=headers["customer"])

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "pending"
        assert body["current_workflow_step"] == "C1"

    def test_schema_validation(self, client, headers):
        response = client.post(
            "/api/quotes", json={**QUOTE_BODY, "required_space": 0}, headers=headers["customer"],
        )
        assert response.status_code == 422

    def test_missing_quote(self, client, headers):
        response = client.get("/api/quotes/9999", headers=headers["purchase"])

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_customer_cannot_read_foreign_quote(self, client, headers):
        created = client.post("/api/quotes", json=QUOTE_BODY, headers=headers["customer"]).json()

        response = client.get(f"/api/quotes/{created['id']}", headers=headers["other_customer"])
        assert response.status_code == 403


class TestWorkflowRoutes:

    def test_gate_denial_payload(self, client, headers):
        created = client.post("/api/quotes", json=QUOTE_BODY, headers=headers["customer"]).json()

        response = client.post(
            "/api/workflow/transition",
            json={"quote_id": created["id"], "next_step": "C17"},
            headers=headers["customer"],
        )

        assert response.status_code == 403
        body = response.json()
        assert body["error"] == "permission_denied"
        assert body["role"] == "customer"
        assert body["step"] == "C17"

    def test_terminal_quote_conflict(self, client, headers):
        created = client.post("/api/quotes", json=QUOTE_BODY, headers=headers["customer"]).json()
        client.post(
            "/api/workflow/accept-reject",
            json={"quote_id": created["id"], "action": "reject", "reason": "No space"},
            headers=headers["purchase"],
        )

        response = client.post(
            "/api/workflow/accept-reject",
            json={"quote_id": created["id"], "action": "accept"},
            headers=headers["purchase"],
        )

        assert response.status_code == 409
        assert response.json()["error"] == "conflict"

    def test_state_and_latest(self, client, headers):
        created = client.post("/api/quotes", json=QUOTE_BODY, headers=headers["customer"]).json()
        client.post(
            "/api/workflow/accept-reject",
            json={"quote_id": created["id"], "action": "accept"},
            headers=headers["purchase"],
        )

        state = client.get(f"/api/workflow/state/{created['id']}", headers=headers["customer"]).json()
        assert state["currentWorkflowStep"] == "C2"
        assert [h["toStep"] for h in state["workflowHistory"]] == ["C1", "C2"]

        latest = client.get("/api/workflow/latest", headers=headers["customer"]).json()
        assert latest["workflow"]["quoteId"] == created["id"]

    def test_pending_actions(self, client, headers):
        created = client.post("/api/quotes", json=QUOTE_BODY, headers=headers["customer"]).json()
        client.post(
            "/api/workflow/accept-reject",
            json={"quote_id": created["id"], "action": "accept"},
            headers=headers["purchase"],
        )

        body = client.get("/api/workflow/pending-actions", headers=headers["purchase"]).json()

        assert body["role"] == "purchase_support"
        assert body["steps"] == ["C2", "C3", "C4", "C9", "C10"]
        assert [q["id"] for q in body["quotes"]] == [created["id"]]


class TestStageRoutes:

    def test_rfq_fan_out(self, client, headers, warehouses):
        created = client.post("/api/quotes", json=QUOTE_BODY, headers=headers["customer"]).json()
        client.post(
            "/api/workflow/accept-reject",
            json={"quote_id": created["id"], "action": "accept"},
            headers=headers["purchase"],
        )

        response = client.post(
            "/api/rfqs",
            json={"quote_id": created["id"], "warehouse_ids": [warehouses["north"].id, warehouses["south"].id]},
            headers=headers["purchase"],
        )

        assert response.status_code == 201
        assert len(response.json()) == 2

    def test_booking_listing(self, client, headers, driver):
        _, booking = driver.booked()
        booking_id = booking.id

        response = client.get("/api/bookings", headers=headers["customer"])

        assert response.status_code == 200
        assert [b["id"] for b in response.json()] == [booking_id]
