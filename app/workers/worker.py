"""
RQ worker for notifications and delivery order retries.

Run with ``python -m app.workers.worker``. The embedded scheduler is what
fires the delayed retries queued by enqueue_delivery_order_retry().
"""
from redis import Redis
from rq import Queue, Worker

from app.core.config import settings
from app.core.logging import get_logger, setup_logging
from app.workers.jobs import QUEUE_NAMES

setup_logging()
logger = get_logger(__name__)


def run_worker():
    redis_conn = Redis.from_url(settings.REDIS_URL)
    queues = [Queue(name, connection=redis_conn) for name in QUEUE_NAMES]

    worker = Worker(queues, connection=redis_conn, name="warehouse-workflow-worker")
    logger.info(f"Starting workflow worker on queues: {', '.join(QUEUE_NAMES)}")
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    run_worker()
