"""
Background job definitions.
"""
from datetime import timedelta

from redis import Redis
from rq import Queue, Retry

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

# Worker priority order
QUEUE_NAMES = ("high", "default")


def get_queue(name: str = "default") -> Queue:
    """Get RQ queue."""
    redis_conn = Redis.from_url(settings.REDIS_URL)
    return Queue(name, connection=redis_conn)


# ============= JOB FUNCTIONS =============

def record_notification_job(to: str, subject: str, body: str):
    """
    Background job that hands a workflow notification to the mail relay.

    No SMTP transport lives in this service: the job writes the outgoing
    message as a structured log line, which the deployment's relay ships.
    """
    logger.info(f"Delivering notification from {settings.NOTIFICATION_FROM} to {to}: {subject} ({len(body)} chars)")


def retry_delivery_order_job(booking_id: int, supervisor_id: int):
    """Background job to create a delivery order that failed during approval."""
    from app.db.session import SessionLocal
    from app.core.errors import Conflict
    from app.core.rbac import Actor, Role
    from app.services.delivery_chain import create_delivery_order

    logger.info(f"Retrying delivery order creation for booking {booking_id}")

    db = SessionLocal()
    try:
        actor = Actor(user_id=supervisor_id, role=Role.SUPERVISOR)
        order = create_delivery_order(db, actor, booking_id, action="retry")
        logger.info(f"Delivery order {order.order_number} created for booking {booking_id} on retry")
    except Conflict as e:
        # Someone already created it, or the chain moved on
        logger.info(f"Delivery order retry for booking {booking_id} skipped: {e.detail}")
    finally:
        db.close()


# ============= QUEUE HELPERS =============

def enqueue_notification(to: str, subject: str, body: str):
    """Queue a notification email."""
    queue = get_queue("high")
    return queue.enqueue(record_notification_job, to, subject, body, retry=Retry(max=3, interval=[10, 30, 60]))


def enqueue_delivery_order_retry(booking_id: int, supervisor_id: int):
    """Queue a delayed retry of delivery order creation."""
    queue = get_queue("default")
    return queue.enqueue_in(
        timedelta(seconds=settings.DELIVERY_ORDER_RETRY_DELAY_SECONDS),
        retry_delivery_order_job,
        booking_id,
        supervisor_id,
        retry=Retry(max=3, interval=[60, 300, 900]),
    )
