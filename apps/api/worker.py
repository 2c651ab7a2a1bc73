"""Storage maintenance worker.

Consumes the ``storage_jobs`` queue, or with ``--sweep-now`` releases stale
reservations inline and exits (for cron hosts without a long-running worker).
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from rq import Worker

from config import settings
from services.storage_jobs import (
    STORAGE_QUEUE_NAME,
    enqueue_reservation_sweep,
    get_redis_connection,
    run_reservation_sweep,
)

logger = logging.getLogger(__name__)


def _parse_args(argv: List[str]) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Storage ledger maintenance worker (RQ-backed)")
    ap.add_argument("--burst", dest="burst", action="store_true", help="exit once the queue is empty")
    ap.add_argument("--enqueue-sweep", dest="enqueue_sweep", action="store_true")
    ap.add_argument("--sweep-now", dest="sweep_now", action="store_true")
    ap.add_argument(
        "--max-age-minutes",
        dest="max_age_minutes",
        type=int,
        default=None,
        help=f"reservation age cutoff (default {settings.RESERVATION_TTL_MINUTES})",
    )
    ap.add_argument("--log-level", dest="log_level", default="INFO")
    return ap.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(
        level=str(args.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    if args.sweep_now:
        result = asyncio.run(run_reservation_sweep(args.max_age_minutes))
        print(json.dumps(result, indent=2))
        return 0

    if args.enqueue_sweep:
        job = enqueue_reservation_sweep(args.max_age_minutes)
        logger.info("Queued reservation sweep job %s", job.id)

    worker = Worker([STORAGE_QUEUE_NAME], connection=get_redis_connection())
    logger.info("Listening on %s (burst=%s)", STORAGE_QUEUE_NAME, args.burst)
    worker.work(burst=args.burst, with_scheduler=not args.burst)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
