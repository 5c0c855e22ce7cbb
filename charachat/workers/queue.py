"""
RQ queue client for credit jobs.

Enqueue from the API or a scheduler; run workers with:
    python -m charachat.workers.queue
"""
import logging
from typing import Optional

from redis import Redis
from rq import Queue, Worker

from charachat.core.config import settings
from charachat.core.logging import configure_logging
from charachat.workers import jobs

QUEUE_NAME = "credits"

logger = logging.getLogger("charachat.workers")


def get_redis() -> Redis:
    return Redis.from_url(settings.REDIS_URL)


def get_queue(connection: Optional[Redis] = None) -> Queue:
    return Queue(QUEUE_NAME, connection=connection or get_redis())


def enqueue_process_usage(limit: Optional[int] = None, queue: Optional[Queue] = None) -> str:
    """Returns job ID."""
    job = (queue or get_queue()).enqueue(jobs.process_pending_usage, limit, job_timeout="10m", result_ttl=3600)
    return job.id


def enqueue_monthly_snapshots(queue: Optional[Queue] = None) -> str:
    job = (queue or get_queue()).enqueue(jobs.run_monthly_snapshots, job_timeout="30m", result_ttl=86400)
    return job.id


def enqueue_monthly_grants(queue: Optional[Queue] = None) -> str:
    job = (queue or get_queue()).enqueue(jobs.grant_due_monthly_credits, job_timeout="30m", result_ttl=86400)
    return job.id


def enqueue_free_cycle_renewal(queue: Optional[Queue] = None) -> str:
    job = (queue or get_queue()).enqueue(jobs.renew_free_cycles, job_timeout="10m", result_ttl=86400)
    return job.id


def enqueue_reconciliation(queue: Optional[Queue] = None) -> str:
    job = (queue or get_queue()).enqueue(jobs.reconcile_ledgers, job_timeout="30m", result_ttl=86400)
    return job.id


if __name__ == "__main__":
    configure_logging(settings.ENV)
    connection = get_redis()
    worker = Worker([get_queue(connection)], connection=connection)
    logger.info("Starting RQ worker (interactive).")
    worker.work()
