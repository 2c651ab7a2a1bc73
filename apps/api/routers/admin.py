"""Administrative storage operations: freeze, adjust, refund, audit, sweep."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import require_admin
from services.admission import freeze_account, unfreeze_account
from services.credits import adjust_credits, list_ledger_entries, reconcile_account
from services.storage_jobs import enqueue_reservation_sweep
from services.uploads import refund_upload, sweep_stale_uploads

router = APIRouter(dependencies=[Depends(require_admin)])
logger = logging.getLogger(__name__)


class FreezeRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)
    frozen_by: Optional[str] = None


class AdjustRequest(BaseModel):
    delta: int
    reason: str = Field(min_length=1, max_length=500)
    actor: Optional[str] = None


class RefundRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)
    actor: Optional[str] = None


class SweepRequest(BaseModel):
    max_age_minutes: Optional[int] = Field(default=None, ge=1)
    background: bool = False


@router.post("/accounts/{user_id}/freeze")
async def freeze(user_id: str, request: FreezeRequest, db: AsyncSession = Depends(get_db)):
    return await freeze_account(db, user_id, reason=request.reason, frozen_by=request.frozen_by)


@router.post("/accounts/{user_id}/unfreeze")
async def unfreeze(user_id: str, db: AsyncSession = Depends(get_db)):
    return await unfreeze_account(db, user_id)


@router.post("/accounts/{user_id}/adjust")
async def adjust(user_id: str, request: AdjustRequest, db: AsyncSession = Depends(get_db)):
    return await adjust_credits(db, user_id, delta=request.delta, reason=request.reason, actor=request.actor)


@router.get("/accounts/{user_id}/reconcile")
async def reconcile(user_id: str, db: AsyncSession = Depends(get_db)):
    return await reconcile_account(user_id, db)


@router.get("/accounts/{user_id}/ledger")
async def ledger(
    user_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    entries = await list_ledger_entries(user_id, db, limit=limit)
    return {"items": entries, "count": len(entries)}


@router.post("/uploads/{upload_id}/refund")
async def refund(upload_id: str, request: RefundRequest, db: AsyncSession = Depends(get_db)):
    return await refund_upload(db, upload_id, reason=request.reason, actor=request.actor)


@router.post("/sweep")
async def sweep(request: SweepRequest, db: AsyncSession = Depends(get_db)):
    """Release reservations of abandoned uploads, inline or on the worker."""
    if not request.background:
        return await sweep_stale_uploads(db, max_age_minutes=request.max_age_minutes)

    try:
        job = enqueue_reservation_sweep(request.max_age_minutes)
    except Exception as exc:
        logger.warning("Could not enqueue reservation sweep: %s", exc)
        raise HTTPException(status_code=503, detail="Storage job queue is unavailable.") from exc
    return {"queued": True, "job_id": job.id}
