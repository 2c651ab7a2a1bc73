"""Admission control: freeze gate, per-endpoint rate limits and daily media caps.

Gates run in a fixed order (freeze, rate limit, daily cap) before any mutating
storage operation. Counters are keyed rows updated with conditional
``UPDATE ... SET n = n + 1`` statements, so a lost insert race costs at most a
slightly generous count, never a balance error.
"""

from __future__ import annotations

import logging
import math
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.account_status import AccountStatus
from models.daily_media_usage import DailyMediaUsage
from models.rate_limit_window import RateLimitWindow
from services.credits import provision_account
from services.storage_errors import AccountFrozen, DailyLimitExceeded, InvalidRequest, RateLimitExceeded

logger = logging.getLogger(__name__)

MEDIA_TYPES = ("image", "video")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _usage_date(now: Optional[datetime] = None) -> date:
    return (now or utcnow()).astimezone(timezone.utc).date()


def validate_media_type(media_type: str) -> str:
    normalized = str(media_type or "").strip().lower()
    if normalized not in MEDIA_TYPES:
        raise InvalidRequest(
            "Invalid media type. Must be image or video.",
            {"media_type": media_type},
        )
    return normalized


# Freeze gate

async def get_account_status(db: AsyncSession, user_id: str) -> Optional[AccountStatus]:
    result = await db.execute(
        select(AccountStatus)
        .where(AccountStatus.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def check_account_frozen(db: AsyncSession, user_id: str) -> None:
    status = await get_account_status(db, user_id)
    if status is not None and status.is_frozen:
        logger.warning("Rejected storage call for frozen account user=%s", user_id)
        raise AccountFrozen(status.freeze_reason)


async def freeze_account(
    db: AsyncSession,
    user_id: str,
    *,
    reason: str,
    frozen_by: Optional[str] = None,
) -> Dict[str, Any]:
    # Risk may freeze a user before their first storage call.
    await provision_account(db, user_id)

    status = await get_account_status(db, user_id)
    if status is None:
        status = AccountStatus(user_id=user_id)
        db.add(status)
    status.is_frozen = True
    status.freeze_reason = reason
    status.frozen_at = utcnow()
    status.frozen_by = frozen_by
    await db.commit()
    logger.warning("account_frozen user=%s by=%s reason=%s", user_id, frozen_by, reason)
    return {"user_id": user_id, "is_frozen": True, "freeze_reason": reason}


async def unfreeze_account(db: AsyncSession, user_id: str) -> Dict[str, Any]:
    status = await get_account_status(db, user_id)
    if status is not None:
        status.is_frozen = False
        status.freeze_reason = None
        await db.commit()
    logger.info("account_unfrozen user=%s", user_id)
    return {"user_id": user_id, "is_frozen": False, "freeze_reason": None}


# Rate limiting

def _rate_limit_config(endpoint: str) -> Optional[Dict[str, int]]:
    config = (settings.RATE_LIMITS or {}).get(endpoint)
    if not config:
        return None
    return {
        "max_requests": max(int(config.get("max_requests", 0)), 0),
        "window_minutes": max(int(config.get("window_minutes", 60)), 1),
    }


async def _load_window(db: AsyncSession, user_id: str, endpoint: str) -> Optional[RateLimitWindow]:
    result = await db.execute(
        select(RateLimitWindow)
        .where(RateLimitWindow.user_id == user_id, RateLimitWindow.endpoint == endpoint)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def check_rate_limit(
    db: AsyncSession,
    user_id: str,
    endpoint: str,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Count one request against the user's fixed window for ``endpoint``.

    Unconfigured endpoints are allowed. The counter change is committed
    immediately so rejected downstream work still consumes the request.
    """
    config = _rate_limit_config(endpoint)
    if config is None:
        return {"allowed": True, "remaining": None}

    current = now or utcnow()
    max_requests = config["max_requests"]
    window_end = current + timedelta(minutes=config["window_minutes"])

    window = await _load_window(db, user_id, endpoint)
    if window is None:
        try:
            db.add(
                RateLimitWindow(
                    user_id=user_id,
                    endpoint=endpoint,
                    request_count=1,
                    window_start=current,
                    window_end=window_end,
                )
            )
            await db.commit()
            return {"allowed": True, "remaining": max_requests - 1}
        except IntegrityError:
            # Window created concurrently; count against it below.
            await db.rollback()
            window = await _load_window(db, user_id, endpoint)
            if window is None:
                raise

    recycled = await db.execute(
        update(RateLimitWindow)
        .where(RateLimitWindow.id == window.id, RateLimitWindow.window_end <= current)
        .values(request_count=1, window_start=current, window_end=window_end)
        .execution_options(synchronize_session=False)
    )
    if recycled.rowcount:
        await db.commit()
        return {"allowed": True, "remaining": max_requests - 1}

    incremented = await db.execute(
        update(RateLimitWindow)
        .where(
            RateLimitWindow.id == window.id,
            RateLimitWindow.window_end > current,
            RateLimitWindow.request_count < max_requests,
        )
        .values(request_count=RateLimitWindow.request_count + 1)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    window = await _load_window(db, user_id, endpoint)
    if incremented.rowcount:
        return {"allowed": True, "remaining": max(max_requests - int(window.request_count), 0)}

    retry_after = max(int(math.ceil((as_utc(window.window_end) - current).total_seconds())), 1)
    logger.warning(
        "Rate limit exceeded user=%s endpoint=%s count=%s max=%s",
        user_id,
        endpoint,
        window.request_count,
        max_requests,
    )
    raise RateLimitExceeded(endpoint=endpoint, retry_after_seconds=retry_after)


# Daily media caps

def _daily_limit(media_type: str) -> Optional[int]:
    limit = (settings.DAILY_MEDIA_LIMITS or {}).get(media_type)
    return None if limit is None else max(int(limit), 0)


def _usage_column(media_type: str):
    return DailyMediaUsage.image_count if media_type == "image" else DailyMediaUsage.video_count


async def _load_usage(db: AsyncSession, user_id: str, usage_date: date) -> Optional[DailyMediaUsage]:
    result = await db.execute(
        select(DailyMediaUsage)
        .where(DailyMediaUsage.user_id == user_id, DailyMediaUsage.usage_date == usage_date)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def _count_for(usage: Optional[DailyMediaUsage], media_type: str) -> int:
    if usage is None:
        return 0
    value = usage.image_count if media_type == "image" else usage.video_count
    return int(value or 0)


async def check_daily_media_limit(
    db: AsyncSession,
    user_id: str,
    media_type: str,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    media_type = validate_media_type(media_type)
    max_limit = _daily_limit(media_type)
    if max_limit is None:
        return {"allowed": True, "remaining": None}

    usage = await _load_usage(db, user_id, _usage_date(now))
    current_count = _count_for(usage, media_type)
    if current_count >= max_limit:
        logger.warning(
            "Daily %s limit reached user=%s count=%s max=%s",
            media_type,
            user_id,
            current_count,
            max_limit,
        )
        raise DailyLimitExceeded(media_type=media_type, current_count=current_count, max_limit=max_limit)
    return {
        "allowed": True,
        "current_count": current_count,
        "max_limit": max_limit,
        "remaining": max_limit - current_count,
    }


async def increment_daily_media_usage(
    db: AsyncSession,
    user_id: str,
    media_type: str,
    *,
    now: Optional[datetime] = None,
) -> None:
    """Count one successful upload. Flushes only; the caller owns the commit."""
    media_type = validate_media_type(media_type)
    usage_date = _usage_date(now)
    column = _usage_column(media_type)
    result = await db.execute(
        update(DailyMediaUsage)
        .where(DailyMediaUsage.user_id == user_id, DailyMediaUsage.usage_date == usage_date)
        .values({column.key: column + 1})
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        return
    db.add(
        DailyMediaUsage(
            user_id=user_id,
            usage_date=usage_date,
            image_count=1 if media_type == "image" else 0,
            video_count=1 if media_type == "video" else 0,
        )
    )
    await db.flush()


async def get_daily_usage(db: AsyncSession, user_id: str, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    usage_date = _usage_date(now)
    usage = await _load_usage(db, user_id, usage_date)
    summary: Dict[str, Any] = {"date": usage_date.isoformat()}
    for media_type in MEDIA_TYPES:
        count = _count_for(usage, media_type)
        max_limit = _daily_limit(media_type)
        summary[media_type] = {
            "count": count,
            "max": max_limit,
            "remaining": None if max_limit is None else max(max_limit - count, 0),
        }
    return summary


async def admit(
    db: AsyncSession,
    user_id: str,
    endpoint: str,
    *,
    media_type: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Run every admission gate for a mutating call, freeze first."""
    await check_account_frozen(db, user_id)
    rate = await check_rate_limit(db, user_id, endpoint, now=now)
    daily = None
    if media_type is not None:
        daily = await check_daily_media_limit(db, user_id, media_type, now=now)
    return {"rate_limit": rate, "daily_limit": daily}
