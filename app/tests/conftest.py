"""
Shared fixtures for the workflow test suite.

Tests run against an in-memory SQLite database; the environment is set before
any app module reads settings.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SECRET_KEY", "test-secret-key-with-at-least-32-characters")
os.environ.setdefault("NOTIFICATION_BACKEND", "log")
os.environ.setdefault("SUPERVISOR_EMAIL", "supervisors@warehouse.test")
os.environ.setdefault("PURCHASE_SUPPORT_EMAIL", "purchase@warehouse.test")
os.environ.setdefault("SALES_SUPPORT_EMAIL", "sales@warehouse.test")
os.environ.setdefault("ACCOUNTS_EMAIL", "accounts@warehouse.test")

import pytest
from sqlalchemy.orm import Session

from app.core.rbac import Actor, Role
from app.db import models  # noqa - register tables
from app.db.models import User, Warehouse
from app.db.session import Base, SessionLocal, engine
from app.services import booking_cascade, quote_lifecycle, rfq_negotiation


# ============= DATABASE =============

@pytest.fixture
def db_session():
    """Fresh schema per test."""
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


def _user(db: Session, email: str, role: Role) -> User:
    user = User(email=email, full_name=email.split("@")[0], role=role, is_active=True)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


# ============= USERS & ACTORS =============

@pytest.fixture
def users(db_session: Session):
    return {
        "customer": _user(db_session, "customer@warehouse.test", Role.CUSTOMER),
        "other_customer": _user(db_session, "other@warehouse.test", Role.CUSTOMER),
        "purchase": _user(db_session, "buyer@warehouse.test", Role.PURCHASE_SUPPORT),
        "sales": _user(db_session, "seller@warehouse.test", Role.SALES_SUPPORT),
        "supervisor": _user(db_session, "boss@warehouse.test", Role.SUPERVISOR),
        "warehouse": _user(db_session, "north@warehouse.test", Role.WAREHOUSE),
        "other_warehouse": _user(db_session, "south@warehouse.test", Role.WAREHOUSE),
        "accounts": _user(db_session, "ledger@warehouse.test", Role.ACCOUNTS),
    }


@pytest.fixture
def actors(users):
    return {
        key: Actor(user_id=user.id, role=Role(user.role), email=user.email)
        for key, user in users.items()
    }


@pytest.fixture
def warehouses(db_session: Session, users):
    north = Warehouse(
        owner_id=users["warehouse"].id,
        name="North Depot",
        location="12 Dock Road",
        city="Pune",
        storage_type="cold",
        total_space=10000,
        available_space=8000,
        price_per_sq_ft=2.5,
        is_active=True,
    )
    south = Warehouse(
        owner_id=users["other_warehouse"].id,
        name="South Depot",
        location="4 Harbour Lane",
        city="Chennai",
        storage_type="cold",
        total_space=6000,
        available_space=6000,
        price_per_sq_ft=2.2,
        is_active=True,
    )
    db_session.add_all([north, south])
    db_session.commit()
    db_session.refresh(north)
    db_session.refresh(south)
    return {"north": north, "south": south}


# ============= WORKFLOW DRIVER =============

class WorkflowDriver:
    """Walks a quote through the negotiation up to a confirmed booking."""

    def __init__(self, db: Session, actors: dict, warehouses: dict):
        self.db = db
        self.actors = actors
        self.warehouses = warehouses

    def new_quote(self, customer: str = "customer"):
        return quote_lifecycle.create_quote(
            self.db, self.actors[customer],
            storage_type="cold",
            required_space=500,
            preferred_location="Pune",
            duration="3 months",
        )

    def rates_in(self, quote_id: int):
        """Two warehouses priced; returns (rfqs, rates) in warehouse order north, south."""
        quote_lifecycle.accept_reject(self.db, self.actors["purchase"], quote_id, "accept")
        rfqs = rfq_negotiation.create_rfqs(
            self.db, self.actors["purchase"], quote_id,
            [self.warehouses["north"].id, self.warehouses["south"].id],
        )
        north_rate = rfq_negotiation.submit_rate(self.db, self.actors["warehouse"], rfqs[0].id, total_rate=1000)
        south_rate = rfq_negotiation.submit_rate(self.db, self.actors["other_warehouse"], rfqs[1].id, total_rate=900)
        return rfqs, [north_rate, south_rate]

    def quoted(self, quote_id: int, final_price: float = 1200):
        _, rates = self.rates_in(quote_id)
        rfq_negotiation.select_rate(self.db, self.actors["purchase"], rates[0].id)
        return quote_lifecycle.accept_reject(
            self.db, self.actors["sales"], quote_id, "accept", final_price=final_price,
        )

    def booked(self, customer: str = "customer"):
        """A quote with a confirmed booking at the north warehouse."""
        quote = self.new_quote(customer)
        self.quoted(quote.id)
        quote_lifecycle.accept_reject(self.db, self.actors[customer], quote.id, "accept")
        quote_lifecycle.accept_reject(self.db, self.actors["supervisor"], quote.id, "accept")
        self.db.refresh(quote)
        return quote, quote.booking

    def cargo_approved(self):
        quote, booking = self.booked()
        cargo = booking_cascade.submit_cargo_dispatch(
            self.db, self.actors["customer"], booking.id,
            item_description="Vaccine cartons",
            quantity=40,
            weight=320.5,
        )
        booking_cascade.approve_cargo_dispatch(self.db, self.actors["supervisor"], cargo.id)
        return quote, booking, cargo


@pytest.fixture
def driver(db_session: Session, actors, warehouses):
    return WorkflowDriver(db_session, actors, warehouses)
