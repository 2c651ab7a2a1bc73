"""Idempotent crediting of confirmed external payments."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.purchase import Purchase
from services.credits import account_transaction, append_ledger_entry, credits_to_gb, grant
from services.storage_errors import InvalidPurchase, PurchaseConflict

logger = logging.getLogger(__name__)

PAYMENT_PROVIDERS = ("stripe", "solana", "manual")


async def _find_purchase(db: AsyncSession, provider: str, payment_reference: str) -> Optional[Purchase]:
    result = await db.execute(
        select(Purchase)
        .where(Purchase.provider == provider, Purchase.payment_reference == payment_reference)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def _purchase_result(purchase: Purchase, user_id: str) -> Dict[str, Any]:
    if purchase.user_id != user_id:
        raise PurchaseConflict(
            "Payment reference already credited to another account.",
            {"provider": purchase.provider, "payment_reference": purchase.payment_reference},
        )
    return {"new_balance": int(purchase.balance_after or 0), "purchase_id": purchase.id}


async def settle_purchase(
    db: AsyncSession,
    user_id: str,
    *,
    provider: str,
    payment_reference: str,
    credits: int,
    amount_cents: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Grant purchased credits exactly once per ``(provider, payment_reference)``.

    The lookup below only short-circuits redelivered webhooks; the unique
    constraint on the purchases table is what holds under concurrent delivery.
    """
    provider = str(provider or "").strip().lower()
    payment_reference = str(payment_reference or "").strip()
    if provider not in PAYMENT_PROVIDERS:
        raise InvalidPurchase("Unsupported payment provider.", {"provider": provider})
    if not payment_reference:
        raise InvalidPurchase("payment_reference is required.", {"provider": provider})
    grant_credits = int(credits)
    if grant_credits <= 0:
        raise InvalidPurchase("credits must be greater than 0", {"credits": grant_credits})

    existing = await _find_purchase(db, provider, payment_reference)
    if existing is not None:
        logger.info("Purchase %s:%s already processed", provider, payment_reference)
        return _purchase_result(existing, user_id)

    try:
        async with account_transaction(db, user_id) as account:
            grant(account, grant_credits)
            purchase = Purchase(
                user_id=user_id,
                provider=provider,
                payment_reference=payment_reference,
                credits_added=grant_credits,
                amount_cents=amount_cents,
                status="complete",
                balance_after=int(account.balance),
                purchase_metadata=metadata or {},
            )
            db.add(purchase)
            await db.flush()
            await append_ledger_entry(
                db,
                user_id=user_id,
                entry_type="purchase",
                amount=grant_credits,
                balance_after=int(account.balance),
                reference_type="purchase",
                reference=purchase.id,
                metadata={"provider": provider, "payment_reference": payment_reference},
            )
            result = _purchase_result(purchase, user_id)
    except IntegrityError:
        existing = await _find_purchase(db, provider, payment_reference)
        if existing is None:
            raise
        logger.info("Concurrent delivery of purchase %s:%s resolved to %s", provider, payment_reference, existing.id)
        return _purchase_result(existing, user_id)

    logger.info(
        "storage_purchase_settled user=%s provider=%s reference=%s credits=%s",
        user_id,
        provider,
        payment_reference,
        grant_credits,
    )
    return result


async def list_purchases(user_id: str, db: AsyncSession, *, limit: int = 50) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(Purchase)
        .where(Purchase.user_id == user_id)
        .order_by(Purchase.created_at.desc())
        .limit(max(int(limit), 1))
    )
    return [
        {
            "id": purchase.id,
            "provider": purchase.provider,
            "payment_reference": purchase.payment_reference,
            "gb_added": credits_to_gb(int(purchase.credits_added)),
            "amount_cents": purchase.amount_cents,
            "status": purchase.status,
            "created_at": purchase.created_at.isoformat() if purchase.created_at else None,
        }
        for purchase in result.scalars().all()
    ]
