"""
Affiliate Service

Central entry point for the affiliate program. Composes the directory,
referral tracker, commission engine, payout processor and credit award
scheduler over one store, and wires the production adapters.

Key features:
- Affiliate applications with unique referral codes
- Click tracking with a 30-day attribution window
- Commissions held 14 days before approval
- Stripe Connect Express for payouts
- Platform credits for store owner affiliates instead of cash
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List

from app.models.affiliate import (
    Affiliate,
    Commission,
    Payout,
    Referral,
    StoreCreditAward,
)
from app.services.affiliate_directory import AffiliateDirectory, utcnow
from app.services.affiliate_notifications import AffiliateNotifier
from app.services.affiliate_store import AffiliateStore
from app.services.commission_engine import CommissionEngine
from app.services.credit_award_scheduler import CreditAwardScheduler
from app.services.credit_service import CreditLedger
from app.services.payment_gateway import PaymentGatewayAdapter
from app.services.payout_processor import PayoutProcessor
from app.services.referral_tracker import ReferralTracker

logger = logging.getLogger(__name__)


class AffiliateService:
    """
    Central affiliate management service.

    Usage:
        affiliate_service = get_affiliate_service()

        # Track a click from a referral link
        result = await affiliate_service.track_click(
            "JANEDO7K2M",
            {"email": "lead@example.com", "utm_source": "newsletter"}
        )

        # Attribute a signup
        referral = await affiliate_service.process_signup_referral(user_id, "JANEDO7K2M")

        # Record a commission (from the payment webhook)
        commission = await affiliate_service.process_commission(
            user_id, Decimal("100.00"), transaction_id="pi_123"
        )

        # Pay out
        payout = await affiliate_service.request_payout(affiliate_id, Decimal("60.00"))
        payout = await affiliate_service.process_payout(payout.id, processed_by=admin_id)
    """

    def __init__(
        self,
        store: AffiliateStore,
        gateway: PaymentGatewayAdapter,
        credits: CreditLedger,
        notifier: Optional[AffiliateNotifier] = None,
        clock=utcnow
    ):
        self.store = store
        self.directory = AffiliateDirectory(store, notifier=notifier, clock=clock)
        self.referrals = ReferralTracker(self.directory)
        self.commissions = CommissionEngine(self.directory)
        self.payouts = PayoutProcessor(self.directory, gateway, notifier=notifier)
        self.credit_awards = CreditAwardScheduler(self.directory, credits)

    # =========================================================================
    # AFFILIATES
    # =========================================================================

    async def apply_as_affiliate(self, application: Dict[str, Any]) -> Affiliate:
        return await self.directory.apply_as_affiliate(application)

    async def get_affiliate(self, affiliate_id: str) -> Affiliate:
        return await self.directory.get_affiliate(affiliate_id)

    async def list_affiliates(self, status: Optional[str] = None) -> List[Affiliate]:
        return await self.directory.list_affiliates(status=status)

    async def approve_affiliate(self, affiliate_id: str, approved_by: Optional[str] = None) -> Affiliate:
        return await self.directory.approve_affiliate(affiliate_id, approved_by)

    async def reject_affiliate(self, affiliate_id: str, reason: Optional[str] = None) -> Affiliate:
        return await self.directory.reject_affiliate(affiliate_id, reason)

    async def suspend_affiliate(self, affiliate_id: str, reason: Optional[str] = None) -> Affiliate:
        return await self.directory.suspend_affiliate(affiliate_id, reason)

    async def update_affiliate(self, affiliate_id: str, updates: Dict[str, Any]) -> Affiliate:
        return await self.directory.update_affiliate(affiliate_id, updates)

    async def update_reward_preference(self, affiliate_id: str, reward_type: str) -> Affiliate:
        return await self.directory.update_reward_preference(affiliate_id, reward_type)

    async def set_as_store_owner_affiliate(self, affiliate_id: str) -> Affiliate:
        return await self.directory.set_as_store_owner_affiliate(affiliate_id)

    async def get_stats(self) -> Dict[str, Any]:
        return await self.directory.get_stats()

    # =========================================================================
    # REFERRALS
    # =========================================================================

    async def track_click(self, referral_code: str, tracking_data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self.referrals.track_click(referral_code, tracking_data)

    async def process_signup_referral(
        self,
        user_id: str,
        referral_code: Optional[str],
        metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[Referral]:
        return await self.referrals.process_signup_referral(user_id, referral_code, metadata)

    async def attach_referred_store(self, user_id: str, store_id: str) -> Optional[Referral]:
        return await self.referrals.attach_referred_store(user_id, store_id)

    async def validate_referral_code(self, referral_code: Optional[str]) -> Dict[str, Any]:
        return await self.referrals.validate_referral_code(referral_code)

    async def list_referrals(self, affiliate_id: str, limit: int = 50) -> List[Referral]:
        rows = await self.store.list_referrals(affiliate_id, limit=limit)
        return [Referral.model_validate(r) for r in rows]

    # =========================================================================
    # COMMISSIONS
    # =========================================================================

    async def process_commission(
        self,
        user_id: str,
        purchase_amount: Decimal,
        transaction_id: str,
        source_type: str = "subscription"
    ) -> Optional[Commission]:
        return await self.commissions.process_commission(user_id, purchase_amount, transaction_id, source_type)

    async def approve_commission(self, commission_id: str, approved_by: Optional[str] = None) -> Commission:
        return await self.commissions.approve_commission(commission_id, approved_by)

    async def cancel_commission(self, commission_id: str, reason: Optional[str] = None) -> Commission:
        return await self.commissions.cancel_commission(commission_id, reason)

    async def approve_pending_commissions(self, now: Optional[datetime] = None) -> int:
        return await self.commissions.approve_pending_commissions(now)

    async def list_commissions(self, affiliate_id: str, status: Optional[str] = None) -> List[Commission]:
        return await self.commissions.list_commissions(affiliate_id, status=status)

    # =========================================================================
    # PAYOUTS & STRIPE CONNECT
    # =========================================================================

    async def request_payout(self, affiliate_id: str, amount: Decimal) -> Payout:
        return await self.payouts.request_payout(affiliate_id, amount)

    async def process_payout(self, payout_id: str, processed_by: Optional[str] = None) -> Payout:
        return await self.payouts.process_payout(payout_id, processed_by)

    async def cancel_payout(self, payout_id: str, reason: Optional[str] = None) -> Payout:
        return await self.payouts.cancel_payout(payout_id, reason)

    async def list_payouts(self, affiliate_id: str) -> List[Payout]:
        return await self.payouts.list_payouts(affiliate_id)

    async def create_connect_account(self, affiliate_id: str) -> str:
        return await self.payouts.create_connect_account(affiliate_id)

    async def get_onboarding_link(self, affiliate_id: str, return_url: str, refresh_url: str) -> str:
        return await self.payouts.get_onboarding_link(affiliate_id, return_url, refresh_url)

    async def check_account_status(self, affiliate_id: str) -> Dict[str, Any]:
        return await self.payouts.check_account_status(affiliate_id)

    async def sync_connect_status(self) -> Dict[str, int]:
        return await self.payouts.sync_connect_status()

    # =========================================================================
    # STORE OWNER CREDITS
    # =========================================================================

    async def get_qualifying_stores_for_credit(
        self,
        affiliate_id: str,
        as_of: Optional[datetime] = None
    ) -> List[Dict[str, Any]]:
        return await self.credit_awards.get_qualifying_stores_for_credit(affiliate_id, as_of)

    async def award_credits_for_store(
        self,
        affiliate_id: str,
        store_id: str,
        referral_id: Optional[str] = None,
        as_of: Optional[datetime] = None
    ) -> Optional[StoreCreditAward]:
        return await self.credit_awards.award_credits_for_store(affiliate_id, store_id, referral_id, as_of)

    async def process_store_owner_credit_awards(self, as_of: Optional[datetime] = None) -> Dict[str, int]:
        return await self.credit_awards.process_store_owner_credit_awards(as_of)

    async def get_affiliate_credit_awards(self, affiliate_id: str) -> List[StoreCreditAward]:
        return await self.credit_awards.get_affiliate_credit_awards(affiliate_id)

    async def get_store_owner_affiliate_stats(self, affiliate_id: str) -> Dict[str, Any]:
        return await self.credit_awards.get_store_owner_affiliate_stats(affiliate_id)

    # =========================================================================
    # DASHBOARD
    # =========================================================================

    async def get_dashboard_data(self, affiliate_id: str) -> Dict[str, Any]:
        """Get all data needed for the affiliate dashboard."""
        affiliate = await self.directory.get_affiliate(affiliate_id)
        referrals = await self.store.list_referrals(affiliate_id, limit=10)
        commissions = await self.store.list_commissions(affiliate_id=affiliate_id, limit=10)
        payouts = await self.store.list_payouts(affiliate_id=affiliate_id)

        conversion_rate = 0.0
        if affiliate.total_referrals:
            conversion_rate = round(affiliate.total_conversions / affiliate.total_referrals * 100, 1)

        return {
            "affiliate": {
                "id": affiliate.id,
                "referral_code": affiliate.referral_code,
                "status": affiliate.status.value,
                "reward_type": affiliate.reward_type.value,
                "stripe_onboarding_complete": affiliate.stripe_onboarding_complete,
                "stripe_payouts_enabled": affiliate.stripe_payouts_enabled,
            },
            "stats": {
                "total_referrals": affiliate.total_referrals,
                "total_conversions": affiliate.total_conversions,
                "conversion_rate": conversion_rate,
                "total_earnings": affiliate.total_earnings,
                "total_paid_out": affiliate.total_paid_out,
                "pending_balance": affiliate.pending_balance,
            },
            "recent_referrals": [Referral.model_validate(r) for r in referrals],
            "recent_commissions": [Commission.model_validate(c) for c in commissions],
            "recent_payouts": [Payout.model_validate(p) for p in payouts[:5]],
        }


# =============================================================================
# SINGLETON FACTORY
# =============================================================================

_affiliate_service: Optional[AffiliateService] = None


def get_affiliate_service() -> AffiliateService:
    """Get singleton AffiliateService instance wired to Supabase and Stripe."""
    global _affiliate_service
    if _affiliate_service is None:
        from app.database import get_supabase_service
        from app.services.credit_service import get_credit_service
        from app.services.payment_gateway import StripeConnectGateway
        from app.services.supabase_affiliate_store import SupabaseAffiliateStore

        _affiliate_service = AffiliateService(
            store=SupabaseAffiliateStore(get_supabase_service()),
            gateway=StripeConnectGateway(),
            credits=get_credit_service(),
            notifier=AffiliateNotifier(),
        )
    return _affiliate_service
