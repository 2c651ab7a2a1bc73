"""Upload reservation and settlement lifecycle.

An upload reserves its credits at begin, before any bytes reach the blob store,
then either settles them at finalize (spend + ``charge_upload`` ledger entry +
daily usage count, in one transaction) or releases them at fail. Terminal
uploads never change again; repeating a transition returns the stored outcome.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.storage_account import StorageAccount
from models.storage_ledger import StorageLedgerEntry
from models.upload import Upload
from services.admission import (
    admit,
    check_daily_media_limit,
    get_account_status,
    increment_daily_media_usage,
    utcnow,
    validate_media_type,
)
from services.credits import (
    account_transaction,
    append_ledger_entry,
    bytes_to_credits,
    credits_to_gb,
    get_account,
    release,
    reserve,
    settle,
)
from services.storage_errors import (
    DailyLimitExceeded,
    InvalidRequest,
    StorageError,
    UploadConflict,
    UploadNotFound,
)

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_COMPLETE = "complete"
STATUS_FAILED = "failed"


def _begin_result(upload: Upload) -> Dict[str, Any]:
    return {"upload_id": upload.id, "credits_required": int(upload.credits_required)}


def _finalize_result(upload: Upload) -> Dict[str, Any]:
    return {"new_balance": int(upload.balance_after or 0), "credits_charged": int(upload.credits_required)}


def _fail_result(upload: Upload) -> Dict[str, Any]:
    released = int(upload.credits_required) if upload.status == STATUS_FAILED else 0
    return {"credits_released": released}


async def _find_by_idempotency_key(db: AsyncSession, user_id: str, key: str) -> Optional[Upload]:
    result = await db.execute(
        select(Upload)
        .where(Upload.user_id == user_id, Upload.idempotency_key == key)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_user_upload(db: AsyncSession, user_id: str, upload_id: str, *, for_update: bool = False) -> Upload:
    query = select(Upload).where(Upload.id == upload_id, Upload.user_id == user_id)
    if for_update:
        query = query.with_for_update()
    result = await db.execute(query.execution_options(populate_existing=True))
    upload = result.scalar_one_or_none()
    if upload is None:
        raise UploadNotFound(upload_id)
    return upload


async def begin_upload(
    db: AsyncSession,
    user_id: str,
    *,
    file_size_bytes: int,
    media_type: str,
    idempotency_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Reserve credits for an upload the client is about to transfer."""
    try:
        size = int(file_size_bytes)
    except (TypeError, ValueError) as exc:
        raise InvalidRequest("Invalid file size", {"file_size_bytes": file_size_bytes}) from exc
    if size <= 0:
        raise InvalidRequest("Invalid file size", {"file_size_bytes": size})
    media_type = validate_media_type(media_type)
    key = (idempotency_key or "").strip() or None

    if key:
        existing = await _find_by_idempotency_key(db, user_id, key)
        if existing is not None:
            return _begin_result(existing)

    await admit(db, user_id, "begin-upload", media_type=media_type, now=now)

    credits_required = bytes_to_credits(size)
    try:
        async with account_transaction(db, user_id) as account:
            reserve(account, credits_required)
            upload = Upload(
                id=str(uuid.uuid4()),
                user_id=user_id,
                file_size_bytes=size,
                credits_required=credits_required,
                status=STATUS_PENDING,
                idempotency_key=key,
                media_type=media_type,
                created_at=now or utcnow(),
            )
            db.add(upload)
            await db.flush()
            result = _begin_result(upload)
    except IntegrityError:
        if key is None:
            raise
        existing = await _find_by_idempotency_key(db, user_id, key)
        if existing is None:
            raise
        logger.info("Concurrent begin for idempotency key resolved to upload %s", existing.id)
        return _begin_result(existing)

    logger.info(
        "storage_upload_begun user=%s upload=%s media=%s credits=%s",
        user_id,
        result["upload_id"],
        media_type,
        credits_required,
    )
    return result


async def finalize_upload(
    db: AsyncSession,
    user_id: str,
    upload_id: str,
    *,
    content_id: str,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Settle a pending upload's reservation. Replays return the stored result."""
    upload = await get_user_upload(db, user_id, upload_id)
    if upload.status == STATUS_COMPLETE:
        return _finalize_result(upload)
    if upload.status == STATUS_FAILED:
        raise UploadConflict(upload_id, upload.status)

    content_id = str(content_id or "").strip()
    if not content_id:
        raise InvalidRequest("content_id is required", {"upload_id": upload_id})
    media_type = upload.media_type

    await admit(db, user_id, "finalize-upload", media_type=media_type, now=now)

    async with account_transaction(db, user_id) as account:
        upload = await get_user_upload(db, user_id, upload_id, for_update=True)
        if upload.status == STATUS_COMPLETE:
            return _finalize_result(upload)
        if upload.status == STATUS_FAILED:
            raise UploadConflict(upload_id, upload.status)

        # Charge what was reserved at begin, never a recomputed amount.
        credits = int(upload.credits_required)
        settle(account, credits)
        await append_ledger_entry(
            db,
            user_id=user_id,
            entry_type="charge_upload",
            amount=-credits,
            balance_after=int(account.balance),
            reference_type="upload",
            reference=upload.id,
            metadata={
                "file_size_bytes": int(upload.file_size_bytes),
                "content_id": content_id,
                "media_type": upload.media_type,
            },
        )
        upload.status = STATUS_COMPLETE
        upload.content_id = content_id
        upload.balance_after = int(account.balance)
        upload.completed_at = now or utcnow()
        await increment_daily_media_usage(db, user_id, upload.media_type, now=now)
        await db.flush()
        result = _finalize_result(upload)

    logger.info(
        "storage_upload_finalized user=%s upload=%s charged=%s balance=%s",
        user_id,
        upload_id,
        result["credits_charged"],
        result["new_balance"],
    )
    return result


def _mark_failed(account: StorageAccount, upload: Upload, reason: str, now: Optional[datetime]) -> None:
    release(account, int(upload.credits_required))
    upload.status = STATUS_FAILED
    upload.failure_reason = reason
    upload.completed_at = now or utcnow()


async def fail_upload(
    db: AsyncSession,
    user_id: str,
    upload_id: str,
    *,
    error_message: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Release a pending upload's reservation without charging anything."""
    upload = await get_user_upload(db, user_id, upload_id)
    if upload.status != STATUS_PENDING:
        return _fail_result(upload)

    await admit(db, user_id, "fail-upload", now=now)

    reason = (error_message or "").strip()[:500] or "client_failed"
    async with account_transaction(db, user_id) as account:
        upload = await get_user_upload(db, user_id, upload_id, for_update=True)
        if upload.status == STATUS_PENDING:
            _mark_failed(account, upload, reason, now)
            await db.flush()
        result = _fail_result(upload)

    logger.info("storage_upload_failed user=%s upload=%s released=%s", user_id, upload_id, result["credits_released"])
    return result


async def sweep_stale_uploads(
    db: AsyncSession,
    *,
    max_age_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Fail pending uploads older than the reservation TTL and release their credits."""
    current = now or utcnow()
    ttl = int(max_age_minutes if max_age_minutes is not None else settings.RESERVATION_TTL_MINUTES)
    cutoff = current - timedelta(minutes=max(ttl, 1))

    result = await db.execute(
        select(Upload.id, Upload.user_id).where(
            Upload.status == STATUS_PENDING,
            Upload.created_at < cutoff,
        )
    )
    stale = result.all()

    swept = 0
    released = 0
    for upload_id, user_id in stale:
        try:
            async with account_transaction(db, user_id) as account:
                upload = await get_user_upload(db, user_id, upload_id, for_update=True)
                if upload.status != STATUS_PENDING:
                    continue
                _mark_failed(account, upload, "reservation_expired", current)
                await db.flush()
                swept += 1
                released += int(upload.credits_required)
        except StorageError as exc:
            logger.error("Reservation sweep skipped upload %s: %s", upload_id, exc)

    if swept:
        logger.info("storage_reservation_sweep failed=%s released_credits=%s", swept, released)
    return {"uploads_failed": swept, "credits_released": released, "cutoff": cutoff.isoformat()}


async def check_upload_quota(
    db: AsyncSession,
    user_id: str,
    *,
    file_size_bytes: int,
    media_type: Optional[str] = None,
) -> Dict[str, Any]:
    """Dry run of begin: would an upload of this size be admitted right now?"""
    size = int(file_size_bytes)
    if size <= 0:
        raise InvalidRequest("Invalid file size", {"file_size_bytes": size})

    required = bytes_to_credits(size)
    account = await get_account(db, user_id)
    available = max(account.available, 0) if account is not None else 0
    report: Dict[str, Any] = {
        "can_upload": True,
        "reason": None,
        "required_gb": credits_to_gb(required),
        "available_gb": credits_to_gb(available),
        "message": "Upload allowed",
    }

    status = await get_account_status(db, user_id)
    if status is not None and status.is_frozen:
        report.update(can_upload=False, reason="ACCOUNT_FROZEN", message="Account is frozen. Contact support.")
        return report
    if available < required:
        report.update(
            can_upload=False,
            reason="STORAGE_LIMIT_REACHED",
            message="Storage limit reached. Upgrade to get more space.",
        )
        return report
    if media_type is not None:
        try:
            await check_daily_media_limit(db, user_id, media_type)
        except DailyLimitExceeded as exc:
            report.update(can_upload=False, reason=exc.code, message=exc.message)
    return report


async def refund_upload(
    db: AsyncSession,
    upload_id: str,
    *,
    reason: str,
    actor: Optional[str] = None,
) -> Dict[str, Any]:
    """Return a completed upload's charge. At most one refund per upload."""
    result = await db.execute(select(Upload).where(Upload.id == upload_id))
    upload = result.scalar_one_or_none()
    if upload is None:
        raise UploadNotFound(upload_id)
    user_id = upload.user_id
    if upload.status != STATUS_COMPLETE:
        raise UploadConflict(upload_id, upload.status)

    async with account_transaction(db, user_id) as account:
        previous = await db.execute(
            select(StorageLedgerEntry).where(
                StorageLedgerEntry.entry_type == "refund",
                StorageLedgerEntry.reference_type == "upload",
                StorageLedgerEntry.reference == upload_id,
            )
        )
        entry = previous.scalars().first()
        if entry is None:
            credits = int(upload.credits_required)
            account.balance = int(account.balance) + credits
            account.spent = int(account.spent) - credits
            entry = await append_ledger_entry(
                db,
                user_id=user_id,
                entry_type="refund",
                amount=credits,
                balance_after=int(account.balance),
                reference_type="upload",
                reference=upload_id,
                metadata={"reason": reason, "actor": actor},
            )
            logger.info("storage_upload_refunded user=%s upload=%s credits=%s", user_id, upload_id, credits)
        refund = {
            "upload_id": upload_id,
            "credits_refunded": int(entry.amount),
            "new_balance": int(entry.balance_after or 0),
        }
    return refund
