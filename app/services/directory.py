"""
Users and warehouses referenced by the workflow.

Identity is owned by the auth provider; the first request a user makes
mirrors them into the users table so quotes, bookings and notifications can
reference them.
"""
from typing import List, Optional

from sqlalchemy.orm import Session

from app.core.errors import NotFound, PermissionDenied, ValidationError
from app.core.rbac import Actor, Role
from app.db.models import User, Warehouse
from app.db.session import atomic


def ensure_user(db: Session, actor: Actor) -> User:
    """Return the users row for ``actor``, creating it on first sight."""
    user = db.query(User).filter(User.id == actor.user_id).first()
    if user:
        return user

    with atomic(db):
        user = User(
            id=actor.user_id,
            email=actor.email or f"user-{actor.user_id}@unknown.invalid",
            role=actor.role,
            is_active=True,
        )
        db.add(user)
    return user


def owned_warehouse_ids(db: Session, actor: Actor) -> List[int]:
    """Warehouses operated by a warehouse-role user."""
    rows = db.query(Warehouse.id).filter(Warehouse.owner_id == actor.user_id).all()
    return [row[0] for row in rows]


def require_warehouse_owner(db: Session, actor: Actor, warehouse_id: int) -> None:
    """Warehouse users may only act for sites they operate."""
    if actor.role != Role.WAREHOUSE:
        return
    if warehouse_id not in owned_warehouse_ids(db, actor):
        raise PermissionDenied(
            "Warehouse user does not operate this warehouse",
            warehouse_id=warehouse_id,
        )


def get_warehouse(db: Session, warehouse_id: int) -> Warehouse:
    warehouse = db.query(Warehouse).filter(Warehouse.id == warehouse_id).first()
    if not warehouse:
        raise NotFound("Warehouse not found", warehouse_id=warehouse_id)
    return warehouse


def list_warehouses(db: Session, city: Optional[str] = None, storage_type: Optional[str] = None) -> List[Warehouse]:
    query = db.query(Warehouse).filter(Warehouse.is_active.is_(True))
    if city:
        query = query.filter(Warehouse.city == city)
    if storage_type:
        query = query.filter(Warehouse.storage_type == storage_type)
    return query.order_by(Warehouse.name).all()


def create_warehouse(db: Session, actor: Actor, **fields) -> Warehouse:
    """Register a warehouse (admin or supervisor)."""
    if actor.role not in (Role.ADMIN, Role.SUPERVISOR):
        raise PermissionDenied("Only admins and supervisors can register warehouses")
    if not fields.get("name") or not fields.get("location"):
        raise ValidationError("name and location are required")

    owner_id = fields.get("owner_id")
    with atomic(db):
        if owner_id is not None:
            owner = db.query(User).filter(User.id == owner_id).first()
            if not owner:
                raise NotFound("Owner user not found", owner_id=owner_id)
            if owner.role != Role.WAREHOUSE:
                raise ValidationError("Warehouse owner must have the warehouse role")
        warehouse = Warehouse(**fields)
        db.add(warehouse)
    db.refresh(warehouse)
    return warehouse
