"""Storage quota and upload lifecycle router."""

from __future__ import annotations

from typing import Literal, Optional

from fastapi import APIRouter, Body, Depends, Header
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from services.admission import check_rate_limit, get_daily_usage
from services.credits import credits_to_gb, get_account_summary, provision_account
from services.uploads import (
    begin_upload,
    check_upload_quota,
    fail_upload,
    finalize_upload,
    get_user_upload,
)

router = APIRouter()


class BeginUploadRequest(BaseModel):
    file_size_bytes: int = Field(gt=0)
    media_type: Literal["image", "video"]
    idempotency_key: Optional[str] = Field(default=None, max_length=200)


class BeginUploadResponse(BaseModel):
    upload_id: str
    credits_required: int


class FinalizeUploadRequest(BaseModel):
    content_id: str = Field(min_length=1, max_length=512)


class FinalizeUploadResponse(BaseModel):
    new_balance: int
    credits_charged: int


class FailUploadRequest(BaseModel):
    error_message: Optional[str] = Field(default=None, max_length=2000)


class FailUploadResponse(BaseModel):
    credits_released: int


class QuotaCheckRequest(BaseModel):
    file_size_bytes: int = Field(gt=0)
    media_type: Optional[Literal["image", "video"]] = None


async def _ensure_account(db: AsyncSession, auth: AuthContext) -> None:
    await provision_account(db, auth.user_id, auth.email)


@router.post("/uploads", response_model=BeginUploadResponse)
async def begin_upload_endpoint(
    request: BeginUploadRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Reserve storage for an upload before the client transfers any bytes."""
    await _ensure_account(db, auth)
    return await begin_upload(
        db,
        auth.user_id,
        file_size_bytes=request.file_size_bytes,
        media_type=request.media_type,
        idempotency_key=request.idempotency_key or idempotency_key,
    )


@router.post("/uploads/{upload_id}/finalize", response_model=FinalizeUploadResponse)
async def finalize_upload_endpoint(
    upload_id: str,
    request: FinalizeUploadRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await _ensure_account(db, auth)
    return await finalize_upload(db, auth.user_id, upload_id, content_id=request.content_id)


@router.post("/uploads/{upload_id}/fail", response_model=FailUploadResponse)
async def fail_upload_endpoint(
    upload_id: str,
    request: Optional[FailUploadRequest] = Body(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await _ensure_account(db, auth)
    error_message = request.error_message if request else None
    return await fail_upload(db, auth.user_id, upload_id, error_message=error_message)


@router.get("/uploads/{upload_id}")
async def get_upload_endpoint(
    upload_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    upload = await get_user_upload(db, auth.user_id, upload_id)
    return {
        "upload_id": upload.id,
        "status": upload.status,
        "media_type": upload.media_type,
        "size_gb": credits_to_gb(int(upload.credits_required)),
        "content_id": upload.content_id,
        "created_at": upload.created_at.isoformat() if upload.created_at else None,
        "completed_at": upload.completed_at.isoformat() if upload.completed_at else None,
    }


@router.get("/summary")
async def storage_summary(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Storage usage in GB for the signed-in user."""
    await _ensure_account(db, auth)
    await check_rate_limit(db, auth.user_id, "get-storage-summary")
    return await get_account_summary(auth.user_id, db)


@router.post("/quota_check")
async def quota_check(
    request: QuotaCheckRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await _ensure_account(db, auth)
    return await check_upload_quota(
        db,
        auth.user_id,
        file_size_bytes=request.file_size_bytes,
        media_type=request.media_type,
    )


@router.get("/daily_usage")
async def daily_usage(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await _ensure_account(db, auth)
    return await get_daily_usage(db, auth.user_id)
