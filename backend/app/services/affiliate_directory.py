"""
Affiliate Directory

Affiliate identity, status, tier policy and the ledger entry point for
standalone counter/balance changes. Every other affiliate component reads
affiliates through here.
"""

import logging
import re
import secrets
import string
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Dict, Any, List, Tuple

from app.models.affiliate import (
    Affiliate,
    AffiliateStatus,
    AffiliateTier,
    CommissionType,
    RewardType,
)
from app.services.affiliate_config import (
    DEFAULT_COMMISSION_RATE,
    DEFAULT_COMMISSION_TYPE,
    DEFAULT_MIN_PAYOUT_AMOUNT,
    STORE_OWNER_TIER_CODE,
)
from app.services.affiliate_errors import (
    ConflictError,
    NotFoundError,
    ValidationError,
)
from app.services.affiliate_notifications import AffiliateNotifier
from app.services.affiliate_store import AffiliateStore, DELTA_FIELDS

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

# Fields an admin may change through update_affiliate
UPDATABLE_FIELDS = (
    "tier_id",
    "custom_commission_type",
    "custom_commission_value",
    "admin_notes",
    "status",
    "affiliate_type",
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_money(value: Any) -> Decimal:
    """Quantize to cents with half-up rounding."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def parse_amount(value: Any, field: str) -> Decimal:
    """to_money for caller input; malformed or non-finite values raise ValidationError."""
    try:
        amount = to_money(value)
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"Invalid {field}", details={field: str(value)}) from e
    if not amount.is_finite():
        raise ValidationError(f"Invalid {field}", details={field: str(value)})
    return amount


def compute_commission_amount(
    purchase_amount: Decimal,
    commission_type: CommissionType,
    commission_rate: Decimal
) -> Decimal:
    """Percentage rates are fractions (0.15 = 15%); fixed rates are amounts."""
    if commission_type == CommissionType.PERCENTAGE:
        return to_money(purchase_amount * commission_rate)
    return to_money(commission_rate)


class AffiliateDirectory:
    """Reads and administers affiliates; owns tier resolution."""

    def __init__(
        self,
        store: AffiliateStore,
        notifier: Optional[AffiliateNotifier] = None,
        clock=utcnow
    ):
        self.store = store
        self.notifier = notifier
        self.clock = clock

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    async def find_affiliate(self, affiliate_id: str) -> Optional[Affiliate]:
        row = await self.store.get_affiliate(affiliate_id)
        return Affiliate.model_validate(row) if row else None

    async def get_affiliate(self, affiliate_id: str) -> Affiliate:
        """Get affiliate by ID or raise NotFoundError."""
        affiliate = await self.find_affiliate(affiliate_id)
        if not affiliate:
            raise NotFoundError(f"Affiliate {affiliate_id} not found")
        return affiliate

    async def get_approved_affiliate_by_code(self, referral_code: Optional[str]) -> Optional[Affiliate]:
        """Resolve a referral code; only approved affiliates count."""
        if not referral_code:
            return None
        row = await self.store.get_affiliate_by_code(referral_code.strip().upper())
        if not row:
            return None
        affiliate = Affiliate.model_validate(row)
        return affiliate if affiliate.is_approved else None

    async def get_tier(self, affiliate: Affiliate) -> Optional[AffiliateTier]:
        if not affiliate.tier_id:
            return None
        row = await self.store.get_tier(affiliate.tier_id)
        return AffiliateTier.model_validate(row) if row else None

    async def list_affiliates(
        self,
        status: Optional[AffiliateStatus] = None,
        reward_type: Optional[RewardType] = None
    ) -> List[Affiliate]:
        rows = await self.store.list_affiliates(status=status, reward_type=reward_type)
        return [Affiliate.model_validate(r) for r in rows]

    # =========================================================================
    # TIER POLICY
    # =========================================================================

    async def resolve_commission_policy(self, affiliate: Affiliate) -> Tuple[CommissionType, Decimal]:
        """
        Commission type and rate for an affiliate.

        Resolution order: the affiliate's custom override, then its tier,
        then the program default (10% percentage).
        """
        if affiliate.custom_commission_value is not None:
            return (
                affiliate.custom_commission_type or CommissionType.PERCENTAGE,
                affiliate.custom_commission_value,
            )

        tier = await self.get_tier(affiliate)
        if tier:
            return tier.commission_type, tier.commission_rate

        return CommissionType(DEFAULT_COMMISSION_TYPE), DEFAULT_COMMISSION_RATE

    async def get_min_payout_amount(self, affiliate: Affiliate) -> Decimal:
        tier = await self.get_tier(affiliate)
        if tier and tier.min_payout_amount is not None:
            return tier.min_payout_amount
        return DEFAULT_MIN_PAYOUT_AMOUNT

    # =========================================================================
    # LEDGER
    # =========================================================================

    async def apply_delta(self, affiliate_id: str, field: str, delta: Decimal) -> Affiliate:
        """Single entry point for standalone counter/balance changes."""
        if field not in DELTA_FIELDS:
            raise ValueError(f"Unknown ledger field: {field}")
        row = await self.store.apply_delta(affiliate_id, field, delta)
        return Affiliate.model_validate(row)

    # =========================================================================
    # APPLICATION & STATUS
    # =========================================================================

    async def apply_as_affiliate(self, application: Dict[str, Any]) -> Affiliate:
        """
        Submit an affiliate application.

        Args:
            application: email, first_name, last_name and optionally
                company_name, phone, website_url, affiliate_type,
                application_notes, user_id

        Returns:
            The created (pending) affiliate

        Raises:
            ValidationError: If email or name is missing
            ConflictError: If an affiliate with this email already exists
        """
        email = (application.get("email") or "").strip().lower()
        first_name = (application.get("first_name") or "").strip()
        last_name = (application.get("last_name") or "").strip()
        if not email or not first_name:
            raise ValidationError("Email and first name are required")

        if await self.store.get_affiliate_by_email(email):
            raise ConflictError("An affiliate application already exists for this email")

        now = self.clock()
        row = await self.store.insert_affiliate({
            "user_id": application.get("user_id"),
            "email": email,
            "first_name": first_name,
            "last_name": last_name,
            "company_name": application.get("company_name"),
            "phone": application.get("phone"),
            "website_url": application.get("website_url"),
            "affiliate_type": application.get("affiliate_type") or "individual",
            "application_notes": application.get("application_notes"),
            "referral_code": await self._generate_referral_code(first_name, last_name),
            "status": AffiliateStatus.PENDING,
            "reward_type": RewardType.COMMISSION,
            "created_at": now,
            "updated_at": now,
        })
        affiliate = Affiliate.model_validate(row)

        await self.log_event(
            affiliate.id, "application_submitted",
            {"email": email, "affiliate_type": affiliate.affiliate_type},
            actor_type="user"
        )
        logger.info(f"New affiliate application: {email}, code={affiliate.referral_code}")
        return affiliate

    async def approve_affiliate(self, affiliate_id: str, approved_by: Optional[str] = None) -> Affiliate:
        now = self.clock()
        affiliate = await self._set_status(affiliate_id, AffiliateStatus.APPROVED, {
            "approved_by": approved_by,
            "approved_at": now,
        }, actor_id=approved_by)

        if self.notifier:
            await self.notifier.affiliate_approved(affiliate)
        return affiliate

    async def reject_affiliate(self, affiliate_id: str, reason: Optional[str] = None) -> Affiliate:
        return await self._set_status(affiliate_id, AffiliateStatus.REJECTED, {"admin_notes": reason})

    async def suspend_affiliate(self, affiliate_id: str, reason: Optional[str] = None) -> Affiliate:
        return await self._set_status(affiliate_id, AffiliateStatus.SUSPENDED, {"admin_notes": reason})

    async def update_affiliate(self, affiliate_id: str, updates: Dict[str, Any]) -> Affiliate:
        """Update whitelisted affiliate fields (admin)."""
        fields = {k: v for k, v in updates.items() if k in UPDATABLE_FIELDS}
        try:
            if "status" in fields:
                fields["status"] = AffiliateStatus(fields["status"])
            if fields.get("custom_commission_type") is not None:
                fields["custom_commission_type"] = CommissionType(fields["custom_commission_type"])
        except ValueError as e:
            raise ValidationError(str(e))
        if fields.get("custom_commission_value") is not None:
            value = Decimal(str(fields["custom_commission_value"]))
            if value < 0:
                raise ValidationError("Commission value cannot be negative")
            fields["custom_commission_value"] = value
        fields["updated_at"] = self.clock()
        return await self._update(affiliate_id, fields)

    async def update_reward_preference(self, affiliate_id: str, reward_type: str) -> Affiliate:
        try:
            reward = RewardType(reward_type)
        except ValueError:
            raise ValidationError('Invalid reward type. Must be "commission" or "credits"')

        affiliate = await self._update(affiliate_id, {
            "reward_type": reward,
            "updated_at": self.clock(),
        })
        logger.info(f"Updated reward preference for {affiliate_id} to {reward.value}")
        return affiliate

    async def set_as_store_owner_affiliate(self, affiliate_id: str) -> Affiliate:
        """Flag a store owner affiliate and move it onto the store owner tier if one exists."""
        fields: Dict[str, Any] = {
            "is_store_owner_affiliate": True,
            "updated_at": self.clock(),
        }
        tier = await self.store.get_tier_by_code(STORE_OWNER_TIER_CODE)
        if tier:
            fields["tier_id"] = tier["id"]

        affiliate = await self._update(affiliate_id, fields)
        logger.info(f"Marked affiliate {affiliate_id} as store owner affiliate")
        return affiliate

    async def get_stats(self) -> Dict[str, Any]:
        """Program-wide counts for the admin dashboard."""
        affiliates = await self.store.list_affiliates()
        pending_payouts = await self.store.list_payouts(statuses=["pending"])

        return {
            "total": len(affiliates),
            "pending": sum(1 for a in affiliates if a.get("status") == AffiliateStatus.PENDING.value),
            "approved": sum(1 for a in affiliates if a.get("status") == AffiliateStatus.APPROVED.value),
            "suspended": sum(1 for a in affiliates if a.get("status") == AffiliateStatus.SUSPENDED.value),
            "pending_payout_amount": sum((to_money(p["amount"]) for p in pending_payouts), Decimal("0.00")),
            "pending_payout_count": len(pending_payouts),
        }

    # =========================================================================
    # AUDIT TRAIL
    # =========================================================================

    async def log_event(
        self,
        affiliate_id: Optional[str],
        event_type: str,
        event_data: Dict[str, Any],
        actor_type: str = "system",
        actor_id: Optional[str] = None
    ) -> None:
        """Log an affiliate event for audit trail. Never raises."""
        try:
            await self.store.insert_event({
                "affiliate_id": affiliate_id,
                "event_type": event_type,
                "event_data": event_data,
                "actor_type": actor_type,
                "actor_id": actor_id,
                "created_at": self.clock(),
            })
        except Exception as e:
            logger.error(f"Error logging affiliate event {event_type}: {e}")

    # =========================================================================
    # PRIVATE HELPERS
    # =========================================================================

    async def _update(self, affiliate_id: str, fields: Dict[str, Any]) -> Affiliate:
        row = await self.store.update_affiliate(affiliate_id, fields)
        if not row:
            raise NotFoundError(f"Affiliate {affiliate_id} not found")
        return Affiliate.model_validate(row)

    async def _set_status(
        self,
        affiliate_id: str,
        status: AffiliateStatus,
        extra: Dict[str, Any],
        actor_id: Optional[str] = None
    ) -> Affiliate:
        fields = dict(extra)
        fields["status"] = status
        fields["updated_at"] = self.clock()
        affiliate = await self._update(affiliate_id, fields)

        await self.log_event(
            affiliate_id, f"status_changed_to_{status.value}",
            {"reason": extra.get("admin_notes")},
            actor_type="admin" if actor_id else "system",
            actor_id=actor_id
        )
        logger.info(f"Affiliate {affiliate_id} status changed to {status.value}")
        return affiliate

    async def _generate_referral_code(self, first_name: str, last_name: str) -> str:
        """Name-based prefix plus a random suffix, checked for uniqueness."""
        base = re.sub(r"[^A-Z]", "", f"{first_name}{last_name}".upper())[:6] or "AFF"
        chars = string.ascii_uppercase + string.digits

        for _ in range(10):  # Max 10 attempts
            code = base + "".join(secrets.choice(chars) for _ in range(4))
            if not await self.store.get_affiliate_by_code(code):
                return code

        # Fallback: longer random suffix
        return base + "".join(secrets.choice(chars) for _ in range(8))
