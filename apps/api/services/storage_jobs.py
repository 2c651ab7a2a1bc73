"""Durable storage maintenance jobs (Redis/RQ)."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings
from database import async_session_maker
from services.uploads import sweep_stale_uploads

logger = logging.getLogger(__name__)

STORAGE_QUEUE_NAME = "storage_jobs"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_storage_queue() -> Queue:
    """Return the configured storage maintenance queue."""
    return Queue(
        name=STORAGE_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=600,
    )


def enqueue_reservation_sweep(max_age_minutes: Optional[int] = None) -> Job:
    """Enqueue a stale-reservation sweep with retries for durability."""
    queue = get_storage_queue()
    return queue.enqueue(
        "services.storage_jobs.process_reservation_sweep_job",
        max_age_minutes,
        retry=Retry(max=3, interval=[15, 60, 180]),
        job_timeout=600,
        result_ttl=86400,
        failure_ttl=86400,
    )


async def run_reservation_sweep(max_age_minutes: Optional[int] = None) -> Dict[str, Any]:
    """Release reservations of uploads abandoned in ``pending``."""
    async with async_session_maker() as db:
        return await sweep_stale_uploads(db, max_age_minutes=max_age_minutes)


def process_reservation_sweep_job(max_age_minutes: Optional[int] = None) -> Dict[str, Any]:
    """RQ worker entrypoint for reservation sweeps."""
    result = asyncio.run(run_reservation_sweep(max_age_minutes))
    logger.info("Reservation sweep job finished: %s", result)
    return result
