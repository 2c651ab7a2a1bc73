"""Storage credit accounts and the append-only ledger.

Credits are the internal unit of record (``CREDITS_PER_MB`` per MiB). Every
balance mutation happens on a row loaded through :func:`account_transaction`,
which serializes writers per user with a process-local lock plus
``SELECT ... FOR UPDATE`` on the account row, and commits the balance change and
its ledger entry together.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.storage_account import StorageAccount
from models.storage_ledger import LEDGER_ENTRY_TYPES, StorageLedgerEntry
from models.upload import Upload
from models.user import User
from services.storage_errors import (
    AccountNotFound,
    InsufficientCredits,
    InvalidRequest,
    LedgerWriteError,
    UnknownAccount,
)

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024

_account_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def bytes_to_credits(file_size_bytes: int) -> int:
    """Credits charged for a blob of the given size, rounded up."""
    size = int(file_size_bytes)
    return -(-size * int(settings.CREDITS_PER_MB) // BYTES_PER_MB)


def credits_to_gb(credits: int) -> float:
    megabytes = int(credits) / max(int(settings.CREDITS_PER_MB), 1)
    return round(megabytes / 1024, 2)


def account_lock(user_id: str) -> asyncio.Lock:
    """Return the in-process lock serializing account writes for ``user_id``."""
    lock = _account_locks.get(user_id)
    if lock is None:
        lock = asyncio.Lock()
        _account_locks[user_id] = lock
    return lock


async def load_account_for_update(db: AsyncSession, user_id: str) -> StorageAccount:
    result = await db.execute(
        select(StorageAccount)
        .where(StorageAccount.user_id == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    account = result.scalar_one_or_none()
    if account is None:
        logger.critical("Storage account missing for user %s; provisioning invariant violated", user_id)
        raise AccountNotFound(user_id)
    return account


@asynccontextmanager
async def account_transaction(db: AsyncSession, user_id: str) -> AsyncIterator[StorageAccount]:
    """Lock the user's account row for one read-check-write-commit sequence.

    Everything flushed inside the block (balance fields, ledger entries, upload
    rows) is committed once on exit or rolled back together on any error.
    Integrity errors are re-raised untouched so callers can resolve
    idempotency races; other database failures become ``LedgerWriteError``.
    """
    async with account_lock(user_id):
        try:
            account = await load_account_for_update(db, user_id)
            yield account
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise
        except SQLAlchemyError as exc:
            await db.rollback()
            logger.critical("Storage transaction for user %s failed and was rolled back: %s", user_id, exc)
            raise LedgerWriteError("Storage transaction could not be committed.") from exc
        except BaseException:
            await db.rollback()
            raise


def _check_invariants(account: StorageAccount) -> None:
    if account.reserved < 0 or account.spent < 0 or account.balance < account.reserved:
        logger.critical(
            "Account invariant violated user=%s balance=%s reserved=%s spent=%s",
            account.user_id,
            account.balance,
            account.reserved,
            account.spent,
        )
        raise LedgerWriteError("Account balance invariant violated.")


def _insufficient(account: StorageAccount, required: int) -> InsufficientCredits:
    available = max(account.available, 0)
    return InsufficientCredits(
        available=available,
        required=required,
        available_gb=credits_to_gb(available),
        required_gb=credits_to_gb(required),
    )


# The four mutators below expect a row obtained from account_transaction.

def reserve(account: StorageAccount, credits: int) -> None:
    credits = int(credits)
    if account.available < credits:
        raise _insufficient(account, credits)
    account.reserved = int(account.reserved) + credits
    _check_invariants(account)


def release(account: StorageAccount, credits: int) -> None:
    account.reserved = max(0, int(account.reserved) - int(credits))
    _check_invariants(account)


def settle(account: StorageAccount, credits: int) -> None:
    """Convert ``credits`` of reservation into a permanent spend."""
    credits = int(credits)
    account.balance = int(account.balance) - credits
    account.spent = int(account.spent) + credits
    account.reserved = max(0, int(account.reserved) - credits)
    _check_invariants(account)


def grant(account: StorageAccount, credits: int) -> None:
    credits = int(credits)
    account.balance = int(account.balance) + credits
    account.total = int(account.total) + credits
    _check_invariants(account)


async def append_ledger_entry(
    db: AsyncSession,
    *,
    user_id: str,
    entry_type: str,
    amount: int,
    balance_after: Optional[int] = None,
    reference_type: Optional[str] = None,
    reference: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> StorageLedgerEntry:
    if entry_type not in LEDGER_ENTRY_TYPES:
        raise ValueError(f"Unknown ledger entry type: {entry_type}")
    entry = StorageLedgerEntry(
        user_id=user_id,
        entry_type=entry_type,
        amount=int(amount),
        balance_after=balance_after,
        reference_type=reference_type,
        reference=reference,
        entry_metadata=metadata or {},
    )
    db.add(entry)
    await db.flush()
    return entry


async def get_ledger_balance(user_id: str, db: AsyncSession) -> int:
    """Balance reconstructed from the ledger. For audits only, never for admission."""
    result = await db.execute(
        select(func.coalesce(func.sum(StorageLedgerEntry.amount), 0)).where(StorageLedgerEntry.user_id == user_id)
    )
    return int(result.scalar() or 0)


async def get_account(db: AsyncSession, user_id: str) -> Optional[StorageAccount]:
    result = await db.execute(
        select(StorageAccount)
        .where(StorageAccount.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def provision_account(db: AsyncSession, user_id: str, email: Optional[str] = None) -> StorageAccount:
    """Create the user's account with the free grant. Safe to call repeatedly."""
    existing = await get_account(db, user_id)
    if existing is not None:
        return existing

    async with account_lock(user_id):
        existing = await get_account(db, user_id)
        if existing is not None:
            return existing

        free_credits = max(int(settings.FREE_TIER_CREDITS), 0)
        try:
            account = await _create_account(db, user_id, email, free_credits)
        except IntegrityError:
            await db.rollback()
            account = await get_account(db, user_id)
            if account is not None:
                # Provisioned concurrently by another process.
                return account
            if not email:
                raise
            # The email already belongs to another user id.
            logger.warning("Email for user %s is registered to another user; using a placeholder", user_id)
            try:
                account = await _create_account(db, user_id, None, free_credits)
            except IntegrityError:
                await db.rollback()
                account = await get_account(db, user_id)
                if account is None:
                    raise
                return account

    logger.info("storage_account_provisioned user=%s credits=%s", user_id, free_credits)
    return account


async def _create_account(
    db: AsyncSession,
    user_id: str,
    email: Optional[str],
    free_credits: int,
) -> StorageAccount:
    user = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    if user is None:
        db.add(User(id=user_id, email=email or f"{user_id}@local.invalid"))
    account = StorageAccount(
        user_id=user_id,
        balance=free_credits,
        total=free_credits,
        spent=0,
        reserved=0,
    )
    db.add(account)
    await db.flush()
    await append_ledger_entry(
        db,
        user_id=user_id,
        entry_type="grant_free",
        amount=free_credits,
        balance_after=free_credits,
        metadata={"reason": "Free plan storage grant"},
    )
    await db.commit()
    return account


async def adjust_credits(
    db: AsyncSession,
    user_id: str,
    *,
    delta: int,
    reason: str,
    actor: Optional[str] = None,
) -> Dict[str, Any]:
    """Administrative balance correction, recorded as an ``admin_adjust`` entry."""
    delta = int(delta)
    if delta == 0:
        raise InvalidRequest("delta must be non-zero")
    # Support may credit a user before their first storage call.
    await provision_account(db, user_id)

    async with account_transaction(db, user_id) as account:
        if delta > 0:
            grant(account, delta)
        else:
            removal = -delta
            if account.available < removal:
                raise _insufficient(account, removal)
            account.balance = int(account.balance) - removal
            account.total = int(account.total) - removal
            _check_invariants(account)
        entry = await append_ledger_entry(
            db,
            user_id=user_id,
            entry_type="admin_adjust",
            amount=delta,
            balance_after=int(account.balance),
            metadata={"reason": reason, "actor": actor},
        )
        new_balance = int(account.balance)
        entry_id = entry.id

    logger.info("storage_admin_adjust user=%s delta=%s actor=%s", user_id, delta, actor)
    return {"user_id": user_id, "delta": delta, "new_balance": new_balance, "ledger_entry_id": entry_id}


def _percent_half_up(part: int, whole: int) -> int:
    # Halves round up, never to even.
    if whole <= 0:
        return 0
    return (part * 200 + whole) // (2 * whole)


async def get_account_summary(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    """User-facing storage summary in GB. Credits never leave this function."""
    account = await get_account(db, user_id)
    if account is None:
        logger.critical("Storage account missing for user %s during summary", user_id)
        raise AccountNotFound(user_id)

    total = int(account.total or 0)
    spent = int(account.spent or 0)
    balance = int(account.balance or 0)
    reserved = int(account.reserved or 0)
    return {
        "total_gb": credits_to_gb(total),
        "used_gb": credits_to_gb(spent),
        "remaining_gb": credits_to_gb(balance),
        "reserved_gb": credits_to_gb(reserved),
        "available_gb": credits_to_gb(balance - reserved),
        "percentage_used": _percent_half_up(spent, total),
    }


async def list_ledger_entries(user_id: str, db: AsyncSession, *, limit: int = 50) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(StorageLedgerEntry)
        .where(StorageLedgerEntry.user_id == user_id)
        .order_by(StorageLedgerEntry.created_at.desc())
        .limit(max(int(limit), 1))
    )
    return [
        {
            "id": entry.id,
            "entry_type": entry.entry_type,
            "amount": entry.amount,
            "balance_after": entry.balance_after,
            "reference_type": entry.reference_type,
            "reference": entry.reference,
            "metadata": entry.entry_metadata or {},
            "created_at": entry.created_at.isoformat() if entry.created_at else None,
        }
        for entry in result.scalars().all()
    ]


async def reconcile_account(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Compare the live account against the ledger and open reservations."""
    account = await get_account(db, user_id)
    if account is None:
        raise UnknownAccount(user_id)

    ledger_sum = await get_ledger_balance(user_id, db)
    pending_result = await db.execute(
        select(func.coalesce(func.sum(Upload.credits_required), 0)).where(
            Upload.user_id == user_id,
            Upload.status == "pending",
        )
    )
    pending_reserved = int(pending_result.scalar() or 0)

    expected = int(account.total) - int(account.spent)
    report = {
        "user_id": user_id,
        "balance": int(account.balance),
        "total": int(account.total),
        "spent": int(account.spent),
        "reserved": int(account.reserved),
        "ledger_sum": ledger_sum,
        "ledger_drift": ledger_sum - expected,
        "balance_drift": int(account.balance) - expected,
        "pending_reserved": pending_reserved,
        "reservation_drift": int(account.reserved) - pending_reserved,
    }
    report["consistent"] = (
        report["ledger_drift"] == 0 and report["balance_drift"] == 0 and report["reservation_drift"] == 0
    )
    if not report["consistent"]:
        logger.critical("Ledger reconciliation mismatch: %s", report)
    return report
