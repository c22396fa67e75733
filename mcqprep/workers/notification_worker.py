# Run this with: rq worker -u redis://localhost:6379 notifications
# or: python -m mcqprep.workers.notification_worker
import logging

from redis import Redis
from rq import Queue, Worker

from mcqprep.core.config import settings
from mcqprep.core.logging import configure_logging

configure_logging(settings.ENV)
logger = logging.getLogger("mcqprep")


def build_worker() -> Worker:
    conn = Redis.from_url(settings.REDIS_URL)
    return Worker([Queue(settings.NOTIFICATION_QUEUE, connection=conn)], connection=conn)


if __name__ == '__main__':
    worker = build_worker()
    logger.info(f"Starting RQ worker on queue '{settings.NOTIFICATION_QUEUE}'.")
    worker.work()
