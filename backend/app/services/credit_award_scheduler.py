"""
Credit Award Scheduler

Store owner affiliates (reward_type = credits) earn a fixed credit bonus for
every referred store that has been live for STORE_QUALIFICATION_DAYS.

Each (affiliate, store) pair is credited at most once. The award row is
inserted first and the unique constraint picks a single winner; only the
winner calls the credit ledger. The ledger call is keyed on the award id,
and the row is flagged issued once the ledger confirms.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Dict, Any, List

from app.models.affiliate import (
    Affiliate,
    AffiliateStatus,
    ReferralStatus,
    ReferredStore,
    RewardType,
    StoreCreditAward,
)
from app.services.affiliate_config import (
    STORE_OWNER_CREDITS_REWARD,
    STORE_QUALIFICATION_DAYS,
)
from app.services.affiliate_directory import AffiliateDirectory
from app.services.credit_service import CreditLedger

logger = logging.getLogger(__name__)


class CreditAwardScheduler:
    """Finds qualifying referred stores and awards credits for them."""

    def __init__(self, directory: AffiliateDirectory, credits: CreditLedger):
        self.directory = directory
        self.store = directory.store
        self.credits = credits

    @property
    def clock(self):
        return self.directory.clock

    @staticmethod
    def _is_qualified(store: ReferredStore, as_of: datetime) -> bool:
        live_since = store.live_since
        if not store.published or live_since is None:
            return False
        return live_since <= as_of - timedelta(days=STORE_QUALIFICATION_DAYS)

    async def get_qualifying_stores_for_credit(
        self,
        affiliate_id: str,
        as_of: Optional[datetime] = None
    ) -> List[Dict[str, Any]]:
        """
        Referred stores live long enough to earn credits and not yet credited.

        Returns:
            List of {store_id, store_slug, published_at, referral_id, referred_email}
        """
        as_of = as_of or self.clock()

        referrals = await self.store.list_referrals(affiliate_id, with_store_only=True)
        if not referrals:
            return []

        by_store = {r["referred_store_id"]: r for r in referrals if r.get("referred_store_id")}
        stores = [ReferredStore.model_validate(s) for s in await self.store.get_stores(list(by_store))]

        awarded = {
            a["referred_store_id"]
            for a in await self.store.list_credit_awards(affiliate_id)
            if a.get("credits_issued")
        }

        qualifying = []
        for store in stores:
            if store.id in awarded or not self._is_qualified(store, as_of):
                continue
            referral = by_store[store.id]
            qualifying.append({
                "store_id": store.id,
                "store_slug": store.slug,
                "published_at": store.live_since,
                "referral_id": referral["id"],
                "referred_email": referral.get("referred_email"),
            })

        return qualifying

    async def award_credits_for_store(
        self,
        affiliate_id: str,
        store_id: str,
        referral_id: Optional[str] = None,
        as_of: Optional[datetime] = None
    ) -> Optional[StoreCreditAward]:
        """
        Award credits for one qualifying store.

        Returns the award, or None if the affiliate does not earn credits,
        the store does not qualify, or the store was already credited.

        The award row stays in place when the credit ledger fails, flagged
        as not yet issued. The next call retries the grant with the award id
        as idempotency key, so a grant that committed before the failure
        is not repeated.
        """
        as_of = as_of or self.clock()

        affiliate = await self.directory.get_affiliate(affiliate_id)
        if affiliate.reward_type != RewardType.CREDITS:
            return None
        if not affiliate.user_id:
            logger.warning(f"Affiliate {affiliate_id} has no user to receive credits")
            return None

        existing = await self.store.get_credit_award(affiliate_id, store_id)
        if existing and existing.get("credits_issued"):
            return None

        rows = await self.store.get_stores([store_id])
        if not rows:
            return None
        store = ReferredStore.model_validate(rows[0])
        if not self._is_qualified(store, as_of):
            return None

        if existing:
            award = StoreCreditAward.model_validate(existing)
            referral_id = referral_id or award.referral_id
            logger.info(f"Retrying credit grant for award {award.id}")
        else:
            inserted = await self.store.insert_credit_award({
                "affiliate_id": affiliate_id,
                "referral_id": referral_id,
                "referred_store_id": store_id,
                "credits_awarded": STORE_OWNER_CREDITS_REWARD,
                "store_qualified_at": as_of,
                "credits_issued": False,
                "notes": f"Store {store.slug or store_id} live for {STORE_QUALIFICATION_DAYS}+ days",
                "created_at": as_of,
            })
            if not inserted:
                # Another sweep got here first
                return None
            award = StoreCreditAward.model_validate(inserted)

        try:
            await self.credits.award_bonus_credits(
                affiliate.user_id,
                store_id,
                award.credits_awarded,
                f"Affiliate reward: referred store {store.slug or store_id} qualified",
                idempotency_key=award.id,
            )
        except Exception as e:
            logger.error(f"Credit grant for award {award.id} failed, left unissued for retry: {e}")
            raise

        issued = await self.store.mark_credit_award_issued(award.id, as_of)
        if not issued:
            # A concurrent retry issued it
            return None
        award = StoreCreditAward.model_validate(issued)

        if referral_id:
            await self.store.update_referral(
                referral_id,
                {"status": ReferralStatus.QUALIFIED, "updated_at": as_of},
                expected_statuses=[s for s in ReferralStatus if s.rank < ReferralStatus.QUALIFIED.rank],
            )

        await self.directory.log_event(
            affiliate_id, "store_credits_awarded",
            {"store_id": store_id, "credits": str(award.credits_awarded)}
        )
        logger.info(f"Awarded {award.credits_awarded} credits to affiliate {affiliate_id} for store {store_id}")
        return award

    async def process_store_owner_credit_awards(self, as_of: Optional[datetime] = None) -> Dict[str, int]:
        """
        Daily sweep over every approved credits affiliate.

        Never raises; per-affiliate failures are counted in the summary.
        """
        as_of = as_of or self.clock()
        summary = {"processed": 0, "awards": 0, "failed": 0}

        try:
            rows = await self.store.list_affiliates(
                status=AffiliateStatus.APPROVED,
                reward_type=RewardType.CREDITS
            )
        except Exception as e:
            logger.error(f"Error loading credit affiliates: {e}", exc_info=True)
            summary["failed"] += 1
            return summary

        for row in rows:
            affiliate = Affiliate.model_validate(row)
            summary["processed"] += 1
            try:
                stores = await self.get_qualifying_stores_for_credit(affiliate.id, as_of)
                for entry in stores:
                    award = await self.award_credits_for_store(
                        affiliate.id, entry["store_id"], entry["referral_id"], as_of
                    )
                    if award:
                        summary["awards"] += 1
            except Exception as e:
                summary["failed"] += 1
                logger.error(f"Error awarding store credits for affiliate {affiliate.id}: {e}", exc_info=True)

        logger.info(
            f"Store credit sweep: {summary['processed']} affiliates, "
            f"{summary['awards']} awards, {summary['failed']} failed"
        )
        return summary

    async def get_affiliate_credit_awards(self, affiliate_id: str) -> List[StoreCreditAward]:
        rows = await self.store.list_credit_awards(affiliate_id)
        return [StoreCreditAward.model_validate(r) for r in rows]

    async def get_store_owner_affiliate_stats(self, affiliate_id: str) -> Dict[str, Any]:
        """Commission and credit totals for an affiliate dashboard."""
        affiliate = await self.directory.get_affiliate(affiliate_id)
        awards = [a for a in await self.get_affiliate_credit_awards(affiliate_id) if a.credits_issued]
        pending = await self.get_qualifying_stores_for_credit(affiliate_id)

        return {
            "affiliate_id": affiliate_id,
            "reward_type": affiliate.reward_type.value,
            "is_store_owner_affiliate": affiliate.is_store_owner_affiliate,
            "total_earnings": affiliate.total_earnings,
            "total_paid_out": affiliate.total_paid_out,
            "pending_balance": affiliate.pending_balance,
            "total_credits_awarded": sum((a.credits_awarded for a in awards), Decimal("0")),
            "stores_credited": len(awards),
            "stores_pending_credit": len(pending),
            "pending_stores": pending,
        }
