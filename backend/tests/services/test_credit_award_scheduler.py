"""
Unit tests for store owner credit awards.

Tests focus on exactly-once crediting:
- Qualification by store age
- One award per (affiliate, store), even with overlapping sweeps
- Unissued awards retried without granting twice
"""
import asyncio
import pytest
from datetime import timedelta
from decimal import Decimal

from app.services.affiliate_errors import PersistenceError


@pytest.fixture
def owner(store):
    """Approved credits affiliate backed by a platform user"""
    user = store.add_user("owner@example.com")
    return store.add_affiliate(
        email="owner@example.com",
        referral_code="OWNER001",
        user_id=user["id"],
        reward_type="credits",
        is_store_owner_affiliate=True,
    )


@pytest.fixture
def referred_store(store, owner, clock):
    """A store published 25 days ago by a user the owner referred"""
    shop = store.add_store(
        slug="corner-shop",
        published=True,
        published_at=clock.now - timedelta(days=25),
        created_at=clock.now - timedelta(days=40),
    )
    referral = store.add_referral(
        affiliate_id=owner["id"],
        referred_user_id="u-shop",
        referred_email="shop@example.com",
        referred_store_id=shop["id"],
        status="converted",
    )
    return {"store": shop, "referral": referral}


class TestGetQualifyingStores:
    """Tests for get_qualifying_stores_for_credit"""

    @pytest.mark.asyncio
    async def test_store_qualifies_after_thirty_days(self, service, owner, referred_store, credit_ledger, clock):
        """Should list the store only once it has been live 30 days, and drop it once credited"""
        assert await service.get_qualifying_stores_for_credit(owner["id"]) == []

        clock.advance(days=6)
        qualifying = await service.get_qualifying_stores_for_credit(owner["id"])
        assert [q["store_id"] for q in qualifying] == [referred_store["store"]["id"]]
        assert qualifying[0]["store_slug"] == "corner-shop"
        assert qualifying[0]["referral_id"] == referred_store["referral"]["id"]
        assert qualifying[0]["referred_email"] == "shop@example.com"

        award = await service.award_credits_for_store(
            owner["id"], referred_store["store"]["id"], referred_store["referral"]["id"]
        )
        assert award is not None
        assert await service.get_qualifying_stores_for_credit(owner["id"]) == []

    @pytest.mark.asyncio
    async def test_unpublished_store(self, service, store, owner, referred_store, clock):
        """Should ignore unpublished stores regardless of age"""
        store.stores[referred_store["store"]["id"]]["published"] = False
        clock.advance(days=60)

        assert await service.get_qualifying_stores_for_credit(owner["id"]) == []

    @pytest.mark.asyncio
    async def test_falls_back_to_created_at(self, service, store, owner, referred_store):
        """Should use created_at when the store has no published_at"""
        store.stores[referred_store["store"]["id"]]["published_at"] = None

        qualifying = await service.get_qualifying_stores_for_credit(owner["id"])

        assert len(qualifying) == 1


class TestAwardCreditsForStore:
    """Tests for award_credits_for_store"""

    @pytest.mark.asyncio
    async def test_awards_credits_once(self, service, store, owner, referred_store, credit_ledger, clock):
        """Should credit the owner's user and qualify the referral"""
        clock.advance(days=6)
        shop_id = referred_store["store"]["id"]

        award = await service.award_credits_for_store(owner["id"], shop_id, referred_store["referral"]["id"])
        again = await service.award_credits_for_store(owner["id"], shop_id, referred_store["referral"]["id"])

        assert award.credits_awarded == Decimal("30")
        assert again is None
        assert credit_ledger.awards == [{
            "user_id": owner["user_id"],
            "context_id": shop_id,
            "amount": Decimal("30"),
            "reason": "Affiliate reward: referred store corner-shop qualified",
        }]
        assert store.referrals[referred_store["referral"]["id"]]["status"] == "qualified"

    @pytest.mark.asyncio
    async def test_not_yet_qualified(self, service, store, owner, referred_store, credit_ledger):
        """Should skip stores live less than 30 days"""
        award = await service.award_credits_for_store(owner["id"], referred_store["store"]["id"])

        assert award is None
        assert store.credit_awards == {}
        assert credit_ledger.awards == []

    @pytest.mark.asyncio
    async def test_commission_affiliate_skipped(self, service, store, owner, referred_store, credit_ledger, clock):
        """Should skip affiliates that are paid in commission"""
        store.affiliates[owner["id"]]["reward_type"] = "commission"
        clock.advance(days=6)

        assert await service.award_credits_for_store(owner["id"], referred_store["store"]["id"]) is None
        assert credit_ledger.awards == []

    @pytest.mark.asyncio
    async def test_ledger_failure_keeps_unissued_award(self, service, store, owner, referred_store, credit_ledger, clock):
        """Should keep the award unissued and grant it on the next attempt"""
        clock.advance(days=6)
        shop_id = referred_store["store"]["id"]
        credit_ledger.error = PersistenceError("credits unavailable")

        with pytest.raises(PersistenceError):
            await service.award_credits_for_store(owner["id"], shop_id)

        [row] = store.credit_awards.values()
        assert row["credits_issued"] is False
        assert store.referrals[referred_store["referral"]["id"]]["status"] == "converted"
        assert [q["store_id"] for q in await service.get_qualifying_stores_for_credit(owner["id"])] == [shop_id]

        credit_ledger.error = None
        award = await service.award_credits_for_store(owner["id"], shop_id, referred_store["referral"]["id"])

        assert award.id == row["id"]
        assert award.credits_issued is True
        assert len(store.credit_awards) == 1
        assert len(credit_ledger.awards) == 1
        assert store.referrals[referred_store["referral"]["id"]]["status"] == "qualified"

    @pytest.mark.asyncio
    async def test_grant_committed_before_failure_not_repeated(self, service, store, owner, referred_store, credit_ledger, clock):
        """Should not grant twice when the ledger committed but the call failed"""
        clock.advance(days=6)
        credit_ledger.error_after_commit = PersistenceError("connection reset")

        first = await service.process_store_owner_credit_awards()
        credit_ledger.error_after_commit = None
        second = await service.process_store_owner_credit_awards()
        third = await service.process_store_owner_credit_awards()

        assert first == {"processed": 1, "awards": 0, "failed": 1}
        assert second == {"processed": 1, "awards": 1, "failed": 0}
        assert third == {"processed": 1, "awards": 0, "failed": 0}
        assert credit_ledger.calls == 2
        assert len(credit_ledger.awards) == 1
        assert len(store.credit_awards) == 1

    @pytest.mark.asyncio
    async def test_concurrent_awards_credit_once(self, service, store, owner, referred_store, credit_ledger, clock):
        """Should credit exactly once when two awards race for the same store"""
        clock.advance(days=6)
        shop_id = referred_store["store"]["id"]

        results = await asyncio.gather(
            service.award_credits_for_store(owner["id"], shop_id),
            service.award_credits_for_store(owner["id"], shop_id),
        )

        assert len([r for r in results if r is not None]) == 1
        assert len(store.credit_awards) == 1
        assert len(credit_ledger.awards) == 1


class TestProcessStoreOwnerCreditAwards:
    """Tests for the daily credit sweep"""

    @pytest.mark.asyncio
    async def test_sweep_summary(self, service, store, owner, referred_store, credit_ledger, clock):
        """Should award qualifying stores and report the counts"""
        store.add_affiliate(reward_type="credits", status="pending")
        clock.advance(days=6)

        summary = await service.process_store_owner_credit_awards()

        assert summary == {"processed": 1, "awards": 1, "failed": 0}
        assert len(credit_ledger.awards) == 1

    @pytest.mark.asyncio
    async def test_overlapping_sweeps_award_once(self, service, owner, referred_store, credit_ledger, clock):
        """Should not double-credit when two sweeps run at the same time"""
        clock.advance(days=6)

        first, second = await asyncio.gather(
            service.process_store_owner_credit_awards(),
            service.process_store_owner_credit_awards(),
        )

        assert first["awards"] + second["awards"] == 1
        assert len(credit_ledger.awards) == 1

    @pytest.mark.asyncio
    async def test_sweep_never_raises(self, service, owner, referred_store, credit_ledger, clock):
        """Should count per-affiliate failures instead of raising"""
        clock.advance(days=6)
        credit_ledger.error = PersistenceError("credits unavailable")

        summary = await service.process_store_owner_credit_awards()

        assert summary == {"processed": 1, "awards": 0, "failed": 1}

    @pytest.mark.asyncio
    async def test_sweep_store_unavailable(self, service, store):
        """Should report a failure when affiliates cannot be loaded"""
        store.failures["list_affiliates"] = PersistenceError("down")

        summary = await service.process_store_owner_credit_awards()

        assert summary["failed"] == 1


class TestStoreOwnerStats:
    """Tests for get_store_owner_affiliate_stats"""

    @pytest.mark.asyncio
    async def test_stats(self, service, owner, referred_store, clock):
        """Should combine awarded and pending store counts"""
        clock.advance(days=6)
        await service.award_credits_for_store(owner["id"], referred_store["store"]["id"])

        stats = await service.get_store_owner_affiliate_stats(owner["id"])

        assert stats["reward_type"] == "credits"
        assert stats["total_credits_awarded"] == Decimal("30")
        assert stats["stores_credited"] == 1
        assert stats["stores_pending_credit"] == 0
        assert len(await service.get_affiliate_credit_awards(owner["id"])) == 1
