"""
Affiliate Program - Pydantic Models

Records for affiliates, tiers, referrals, commissions, payouts and store
credit awards. Money is always Decimal; timestamps are timezone-aware UTC.
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List
from datetime import datetime
from decimal import Decimal
from enum import Enum


class AffiliateRecord(BaseModel):
    """Base for rows read from the store; unknown columns are ignored."""
    model_config = ConfigDict(extra="ignore")


# =============================================================================
# ENUMS
# =============================================================================

class AffiliateStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SUSPENDED = "suspended"


class RewardType(str, Enum):
    COMMISSION = "commission"
    CREDITS = "credits"


class CommissionType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class ReferralStatus(str, Enum):
    """Referral lifecycle; only ever moves forward."""
    CLICKED = "clicked"
    SIGNED_UP = "signed_up"
    CONVERTED = "converted"
    QUALIFIED = "qualified"

    @property
    def rank(self) -> int:
        return _REFERRAL_ORDER.index(self)


_REFERRAL_ORDER = [
    ReferralStatus.CLICKED,
    ReferralStatus.SIGNED_UP,
    ReferralStatus.CONVERTED,
    ReferralStatus.QUALIFIED,
]


class CommissionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PAID = "paid"
    CANCELLED = "cancelled"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"   # terminal
    FAILED = "failed"         # terminal
    CANCELLED = "cancelled"   # terminal


# =============================================================================
# RECORDS
# =============================================================================

class AffiliateTier(AffiliateRecord):
    id: str
    name: Optional[str] = None
    code: Optional[str] = None
    commission_type: CommissionType = CommissionType.PERCENTAGE
    commission_rate: Decimal = Decimal("0")
    min_payout_amount: Optional[Decimal] = None


class Affiliate(AffiliateRecord):
    id: str
    user_id: Optional[str] = None
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    company_name: Optional[str] = None
    affiliate_type: str = "individual"
    status: AffiliateStatus = AffiliateStatus.PENDING
    referral_code: str
    tier_id: Optional[str] = None
    custom_commission_type: Optional[CommissionType] = None
    custom_commission_value: Optional[Decimal] = None
    reward_type: RewardType = RewardType.COMMISSION
    is_store_owner_affiliate: bool = False

    total_referrals: int = 0
    total_conversions: int = 0
    total_earnings: Decimal = Decimal("0")
    pending_balance: Decimal = Decimal("0")
    total_paid_out: Decimal = Decimal("0")

    stripe_connect_account_id: Optional[str] = None
    stripe_onboarding_complete: bool = False
    stripe_payouts_enabled: bool = False

    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    admin_notes: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_approved(self) -> bool:
        return self.status == AffiliateStatus.APPROVED


class Referral(AffiliateRecord):
    id: str
    affiliate_id: str
    referred_user_id: Optional[str] = None
    referred_email: Optional[str] = None
    referred_store_id: Optional[str] = None
    referral_code_used: Optional[str] = None
    status: ReferralStatus = ReferralStatus.CLICKED
    tracking_source: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    landing_page: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    cookie_set_at: Optional[datetime] = None
    cookie_expires_at: Optional[datetime] = None
    first_purchase_at: Optional[datetime] = None
    first_purchase_amount: Optional[Decimal] = None
    total_purchases: Decimal = Decimal("0")
    created_at: Optional[datetime] = None


class Commission(AffiliateRecord):
    id: str
    affiliate_id: str
    referral_id: str
    source_type: Optional[str] = None
    source_transaction_id: Optional[str] = None
    purchase_amount: Decimal
    commission_type: CommissionType
    commission_rate: Decimal
    commission_amount: Decimal
    status: CommissionStatus = CommissionStatus.PENDING
    hold_until: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    payout_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None


class Payout(AffiliateRecord):
    id: str
    affiliate_id: str
    amount: Decimal
    status: PayoutStatus = PayoutStatus.PENDING
    commission_ids: List[str] = Field(default_factory=list)
    stripe_transfer_id: Optional[str] = None
    failure_reason: Optional[str] = None
    requested_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = None
    completed_at: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None


class StoreCreditAward(AffiliateRecord):
    id: str
    affiliate_id: str
    referral_id: Optional[str] = None
    referred_store_id: str
    credits_awarded: Decimal
    store_qualified_at: datetime
    credits_issued: bool = False
    credits_issued_at: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None


class ReferredStore(AffiliateRecord):
    """A platform store, read-only from the engine's point of view."""
    id: str
    slug: Optional[str] = None
    published: bool = False
    published_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def live_since(self) -> Optional[datetime]:
        return self.published_at or self.created_at
