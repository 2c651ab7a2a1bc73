import asyncio
from unittest.mock import patch

import pytest
from sqlalchemy.future import select

from models.purchase import Purchase
from models.storage_ledger import StorageLedgerEntry
from services.credits import get_account, provision_account, reconcile_account
from services import purchases
from services.purchases import list_purchases, settle_purchase
from services.storage_errors import InvalidPurchase, PurchaseConflict


USER_ID = "purchase-user"


@pytest.fixture(autouse=True)
def small_free_tier():
    with patch("services.credits.settings.FREE_TIER_CREDITS", 1000):
        yield


@pytest.mark.asyncio
async def test_redelivered_payment_is_credited_once(session_maker):
    async with session_maker() as session:
        await provision_account(session, USER_ID)

        first = await settle_purchase(
            session,
            USER_ID,
            provider="stripe",
            payment_reference="pi_123",
            credits=5000,
            amount_cents=499,
        )
        second = await settle_purchase(
            session,
            USER_ID,
            provider="stripe",
            payment_reference="pi_123",
            credits=5000,
            amount_cents=499,
        )
        assert first == second
        assert first["new_balance"] == 6000

        account = await get_account(session, USER_ID)
        assert (int(account.balance), int(account.total)) == (6000, 6000)

        purchases = (await session.execute(select(Purchase))).scalars().all()
        assert len(purchases) == 1
        entries = (
            await session.execute(select(StorageLedgerEntry).where(StorageLedgerEntry.entry_type == "purchase"))
        ).scalars().all()
        assert len(entries) == 1
        assert entries[0].amount == 5000
        assert entries[0].reference == first["purchase_id"]

        report = await reconcile_account(USER_ID, session)
        assert report["consistent"] is True


@pytest.mark.asyncio
async def test_same_reference_on_another_provider_is_a_new_purchase(session_maker):
    async with session_maker() as session:
        await provision_account(session, USER_ID)

        await settle_purchase(session, USER_ID, provider="stripe", payment_reference="ref-1", credits=100)
        result = await settle_purchase(session, USER_ID, provider="solana", payment_reference="ref-1", credits=100)

        assert result["new_balance"] == 1200
        history = await list_purchases(USER_ID, session)
        assert {item["provider"] for item in history} == {"stripe", "solana"}
        assert all("credits" not in key for item in history for key in item)


@pytest.mark.asyncio
async def test_reference_credited_to_another_user_conflicts(session_maker):
    async with session_maker() as session:
        await provision_account(session, USER_ID)
        await provision_account(session, "someone-else")

        await settle_purchase(session, USER_ID, provider="stripe", payment_reference="pi_shared", credits=100)
        with pytest.raises(PurchaseConflict):
            await settle_purchase(session, "someone-else", provider="stripe", payment_reference="pi_shared", credits=100)

        other = await get_account(session, "someone-else")
        assert int(other.balance) == 1000


@pytest.mark.asyncio
async def test_invalid_purchases_are_rejected(session_maker):
    async with session_maker() as session:
        await provision_account(session, USER_ID)

        with pytest.raises(InvalidPurchase):
            await settle_purchase(session, USER_ID, provider="paypal", payment_reference="x", credits=10)
        with pytest.raises(InvalidPurchase):
            await settle_purchase(session, USER_ID, provider="stripe", payment_reference="  ", credits=10)
        with pytest.raises(InvalidPurchase):
            await settle_purchase(session, USER_ID, provider="stripe", payment_reference="pi_zero", credits=0)

        account = await get_account(session, USER_ID)
        assert int(account.balance) == 1000


@pytest.mark.asyncio
async def test_concurrent_webhook_deliveries_credit_once(session_maker):
    async with session_maker() as session:
        await provision_account(session, USER_ID)

    real_find = purchases._find_purchase
    lookups = []
    both_missed = asyncio.Event()

    async def racing_find(db, provider, payment_reference):
        found = await real_find(db, provider, payment_reference)
        lookups.append(found)
        # Hold the first two lookups until both have missed.
        if len(lookups) <= 2:
            if len(lookups) == 2:
                both_missed.set()
            await both_missed.wait()
        return found

    async def deliver():
        async with session_maker() as session:
            return await settle_purchase(
                session,
                USER_ID,
                provider="stripe",
                payment_reference="pi_race",
                credits=5000,
                amount_cents=499,
            )

    with patch("services.purchases._find_purchase", new=racing_find):
        first, second = await asyncio.gather(deliver(), deliver())

    assert lookups[:2] == [None, None]
    assert first == second
    assert first["new_balance"] == 6000

    async with session_maker() as session:
        account = await get_account(session, USER_ID)
        assert (int(account.balance), int(account.total)) == (6000, 6000)
        assert len((await session.execute(select(Purchase))).scalars().all()) == 1
        entries = (
            await session.execute(select(StorageLedgerEntry).where(StorageLedgerEntry.entry_type == "purchase"))
        ).scalars().all()
        assert len(entries) == 1
        assert (await reconcile_account(USER_ID, session))["consistent"] is True
