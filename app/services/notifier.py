"""
Outbound notifications for workflow hand-offs.

Services build Notification objects while their transaction is open (so
recipients are resolved from the same snapshot) and dispatch them only after
commit. Dispatch is fire-and-forget: a failure is logged and never reaches
the caller.
"""
from dataclasses import dataclass
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.logging import get_logger
from app.core.rbac import Role
from app.db.models import User, Warehouse

logger = get_logger(__name__)


@dataclass(frozen=True)
class Notification:
    to: Optional[str]
    subject: str
    body: str


def team_address(role: Role) -> Optional[str]:
    """Shared inbox for an internal role."""
    return {
        Role.PURCHASE_SUPPORT: settings.PURCHASE_SUPPORT_EMAIL,
        Role.SALES_SUPPORT: settings.SALES_SUPPORT_EMAIL,
        Role.SUPERVISOR: settings.SUPERVISOR_EMAIL,
        Role.ACCOUNTS: settings.ACCOUNTS_EMAIL,
    }.get(role)


def user_address(db: Session, user_id: Optional[int]) -> Optional[str]:
    if user_id is None:
        return None
    user = db.query(User).filter(User.id == user_id).first()
    return user.email if user and user.is_active else None


def warehouse_address(db: Session, warehouse_id: Optional[int]) -> Optional[str]:
    """Email of the user operating a warehouse."""
    if warehouse_id is None:
        return None
    warehouse = db.query(Warehouse).filter(Warehouse.id == warehouse_id).first()
    if not warehouse:
        return None
    return user_address(db, warehouse.owner_id)


def send_email(to: Optional[str], subject: str, body: str) -> bool:
    """Hand one email to the delivery backend. Never raises."""
    if not to:
        logger.warning(f"Notification '{subject}' dropped: no recipient address")
        return False

    try:
        if settings.NOTIFICATION_BACKEND == "log":
            logger.info(f"Notification to {to}: {subject}")
        else:
            from app.workers.jobs import enqueue_notification
            enqueue_notification(to, subject, body)
        return True
    except Exception as e:
        logger.error(f"Failed to dispatch notification '{subject}' to {to}: {e}", exc_info=True)
        return False


def dispatch(notifications: Iterable[Notification]) -> List[bool]:
    """Send every notification; results are for logging and tests only."""
    return [send_email(n.to, n.subject, n.body) for n in notifications]
