"""
Referral Tracker

Attribution of visitors and signups to affiliates:
click -> cookie window -> signup -> (store creation).
"""

import logging
from datetime import timedelta
from typing import Optional, Dict, Any

from app.models.affiliate import Referral, ReferralStatus
from app.services.affiliate_config import REFERRAL_COOKIE_DAYS
from app.services.affiliate_directory import AffiliateDirectory
from app.services.affiliate_errors import ConflictError, InvalidReferralCodeError

logger = logging.getLogger(__name__)

TRACKING_FIELDS = (
    "tracking_source",
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "landing_page",
    "ip_address",
    "user_agent",
)


class ReferralTracker:
    """Records clicks and signups against an affiliate's referral code."""

    def __init__(self, directory: AffiliateDirectory):
        self.directory = directory
        self.store = directory.store

    @property
    def clock(self):
        return self.directory.clock

    async def track_click(self, referral_code: str, tracking_data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Record a referral link click.

        Args:
            referral_code: Code from the referral link
            tracking_data: Optional email, utm_*, landing_page, ip_address, user_agent

        Returns:
            {"referral_id": str, "cookie_expires": datetime}

        Raises:
            InvalidReferralCodeError: If the code does not belong to an approved affiliate
        """
        tracking_data = tracking_data or {}
        affiliate = await self.directory.get_approved_affiliate_by_code(referral_code)
        if not affiliate:
            logger.warning(f"Click with invalid referral code: {referral_code}")
            raise InvalidReferralCodeError(
                "Invalid referral code",
                details={"referral_code": referral_code}
            )

        now = self.clock()
        cookie_expires = now + timedelta(days=REFERRAL_COOKIE_DAYS)

        row = {
            "affiliate_id": affiliate.id,
            "referred_email": (tracking_data.get("email") or "unknown").strip().lower(),
            "referral_code_used": affiliate.referral_code,
            "status": ReferralStatus.CLICKED,
            "cookie_set_at": now,
            "cookie_expires_at": cookie_expires,
            "created_at": now,
            "updated_at": now,
        }
        for field in TRACKING_FIELDS:
            row[field] = tracking_data.get(field)
        if not row["tracking_source"]:
            row["tracking_source"] = "link"

        referral = Referral.model_validate(await self.store.insert_referral(row))

        await self._bump_referral_count(affiliate.id)

        logger.info(f"Tracked click for affiliate {affiliate.id}, referral {referral.id}")
        return {
            "referral_id": referral.id,
            "cookie_expires": cookie_expires,
        }

    async def process_signup_referral(
        self,
        user_id: str,
        referral_code: Optional[str],
        metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[Referral]:
        """
        Attribute a new user signup to an affiliate.

        Upgrades the matching click (same email, cookie still valid) or
        creates a fresh signed_up referral. Returns None when the signup
        cannot be attributed: empty or unknown code, unknown user, or an
        affiliate referring themselves.
        """
        metadata = metadata or {}
        if not referral_code:
            return None

        affiliate = await self.directory.get_approved_affiliate_by_code(referral_code)
        if not affiliate:
            logger.warning(f"Signup {user_id} with invalid referral code: {referral_code}")
            return None

        if affiliate.user_id and affiliate.user_id == user_id:
            logger.warning(f"Self-referral blocked for affiliate {affiliate.id}")
            return None

        existing = await self.store.get_referral_by_user(user_id)
        if existing:
            return Referral.model_validate(existing)

        user = await self.store.get_user(user_id)
        if not user:
            logger.warning(f"Signup referral for unknown user {user_id}")
            return None
        email = (user.get("email") or "").strip().lower()

        now = self.clock()
        click = await self.store.find_click_referral(affiliate.id, email, now) if email else None
        if click:
            upgraded = await self.store.update_referral(
                click["id"],
                {
                    "referred_user_id": user_id,
                    "status": ReferralStatus.SIGNED_UP,
                    "updated_at": now,
                },
                expected_statuses=[ReferralStatus.CLICKED],
                require_unclaimed=True,
            )
            if upgraded:
                logger.info(f"Upgraded click {click['id']} to signup for user {user_id}")
                return Referral.model_validate(upgraded)

        row = {
            "affiliate_id": affiliate.id,
            "referred_user_id": user_id,
            "referred_email": email or None,
            "referral_code_used": affiliate.referral_code,
            "status": ReferralStatus.SIGNED_UP,
            "created_at": now,
            "updated_at": now,
        }
        for field in TRACKING_FIELDS:
            row[field] = metadata.get(field)
        if not row["tracking_source"]:
            row["tracking_source"] = "signup"
        try:
            inserted = await self.store.insert_referral(row)
        except ConflictError:
            # A concurrent signup for the same user won the race
            winner = await self.store.get_referral_by_user(user_id)
            if not winner:
                raise
            return Referral.model_validate(winner)

        logger.info(f"Created signup referral for user {user_id} -> affiliate {affiliate.id}")
        return Referral.model_validate(inserted)

    async def attach_referred_store(self, user_id: str, store_id: str) -> Optional[Referral]:
        """Link the store a referred user created to their referral."""
        existing = await self.store.get_referral_by_user(user_id)
        if not existing:
            return None

        updated = await self.store.update_referral(existing["id"], {
            "referred_store_id": store_id,
            "updated_at": self.clock(),
        })
        if not updated:
            return None

        logger.info(f"Attached store {store_id} to referral {existing['id']}")
        return Referral.model_validate(updated)

    async def validate_referral_code(self, referral_code: Optional[str]) -> Dict[str, Any]:
        affiliate = await self.directory.get_approved_affiliate_by_code(referral_code)
        return {
            "valid": affiliate is not None,
            "affiliate_id": affiliate.id if affiliate else None,
        }

    async def _bump_referral_count(self, affiliate_id: str) -> None:
        # Analytics counter; the click itself is already recorded
        try:
            await self.directory.apply_delta(affiliate_id, "total_referrals", 1)
        except Exception as e:
            logger.error(f"Error incrementing referral count for {affiliate_id}: {e}")
