"""
Health checks for the storage ledger.

Liveness says the process is serving. Readiness says it can admit uploads:
credit pricing is configured and the ledger database answers. ``/health``
adds the maintenance job queue, which is not needed to admit uploads.
"""

import logging
from typing import Any, Dict, List

import redis.asyncio as redis
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from services.storage_jobs import STORAGE_QUEUE_NAME

logger = logging.getLogger(__name__)

router = APIRouter()


def _missing_credit_config() -> List[str]:
    missing = []
    if int(settings.CREDITS_PER_MB) <= 0:
        missing.append("CREDITS_PER_MB")
    if int(settings.FREE_TIER_CREDITS) < 0:
        missing.append("FREE_TIER_CREDITS")
    return missing


async def _ledger_database(db: AsyncSession) -> Dict[str, Any]:
    try:
        await db.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("Ledger database unreachable: %s", exc)
        return {"up": False, "error": str(exc)}
    return {"up": True}


async def _job_queue() -> Dict[str, Any]:
    client = redis.from_url(settings.REDIS_URL)
    try:
        queued = await client.llen(f"rq:queue:{STORAGE_QUEUE_NAME}")
    except Exception as exc:
        logger.warning("Storage job queue unreachable: %s", exc)
        return {"up": False, "error": str(exc)}
    finally:
        await client.aclose()
    return {"up": True, "queued_jobs": int(queued)}


@router.get("/health")
async def health_check(db: AsyncSession = Depends(get_db)):
    """Full dependency report. Always 200; ``status`` says whether anything is down."""
    database = await _ledger_database(db)
    job_queue = await _job_queue()
    missing = _missing_credit_config()

    healthy = database["up"] and job_queue["up"] and not missing
    return {
        "status": "healthy" if healthy else "degraded",
        "database": database,
        "job_queue": job_queue,
        "credit_config": {"ok": not missing, "missing": missing},
    }


@router.get("/health/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)):
    missing = _missing_credit_config()
    database = await _ledger_database(db)
    if missing or not database["up"]:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing, "database": database["up"]},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
