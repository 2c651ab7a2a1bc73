"""Billing router: payment confirmations and purchase history."""

from __future__ import annotations

import logging
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context, require_admin
from services.credits import provision_account
from services.purchases import list_purchases, settle_purchase

router = APIRouter()
logger = logging.getLogger(__name__)


class PurchaseConfirmation(BaseModel):
    user_id: str = Field(min_length=1)
    provider: Literal["stripe", "solana", "manual"]
    payment_reference: str = Field(min_length=1, max_length=256)
    credits: int = Field(ge=1)
    amount_cents: Optional[int] = Field(default=None, ge=0)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PurchaseSettlementResponse(BaseModel):
    new_balance: int
    purchase_id: str


@router.post("/purchases", response_model=PurchaseSettlementResponse)
async def confirm_purchase(
    request: PurchaseConfirmation,
    _admin: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Payment webhook target. Redelivery of the same reference credits once."""
    await provision_account(db, request.user_id)
    return await settle_purchase(
        db,
        request.user_id,
        provider=request.provider,
        payment_reference=request.payment_reference,
        credits=request.credits,
        amount_cents=request.amount_cents,
        metadata=request.metadata,
    )


@router.get("/purchases")
async def purchase_history(
    limit: int = Query(default=50, ge=1, le=200),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    items = await list_purchases(auth.user_id, db, limit=limit)
    return {"items": items, "count": len(items)}
