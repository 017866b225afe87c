"""
Commission Engine

Turns referred purchases into commissions and moves them through
pending -> approved -> paid, or to cancelled.

The commission row and its balance effects are written by one store call
(record_commission / cancel_commission) so they commit or fail together.
"""

import uuid
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, List

from app.models.affiliate import (
    Commission,
    CommissionStatus,
    ReferralStatus,
    RewardType,
)
from app.services.affiliate_config import COMMISSION_HOLD_DAYS
from app.services.affiliate_directory import (
    AffiliateDirectory,
    compute_commission_amount,
    parse_amount,
)
from app.services.affiliate_errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from app.services.affiliate_store import AffiliateStore

logger = logging.getLogger(__name__)

COMMISSIONABLE_REFERRAL_STATUSES = (
    ReferralStatus.SIGNED_UP,
    ReferralStatus.CONVERTED,
    ReferralStatus.QUALIFIED,
)


class CommissionEngine:
    """Commission creation, approval and cancellation."""

    def __init__(self, directory: AffiliateDirectory, store: Optional[AffiliateStore] = None):
        self.directory = directory
        self.store = store or directory.store

    @property
    def clock(self):
        return self.directory.clock

    async def process_commission(
        self,
        user_id: str,
        purchase_amount: Decimal,
        transaction_id: str,
        source_type: str = "subscription"
    ) -> Optional[Commission]:
        """
        Record a commission for a referred user's purchase.

        Args:
            user_id: The purchasing user
            purchase_amount: Purchase total in the payout currency
            transaction_id: Payment provider id, used for idempotency
            source_type: What was bought (subscription, credits, ...)

        Returns:
            The pending commission, the existing one for a repeated
            transaction_id, or None if the purchase is not commissionable.

        Raises:
            ValidationError: If purchase_amount is malformed or not positive
        """
        amount = parse_amount(purchase_amount, "purchase_amount")
        if amount <= 0:
            raise ValidationError(
                "Purchase amount must be positive",
                details={"purchase_amount": str(purchase_amount)}
            )

        existing = await self.store.get_commission_by_transaction(transaction_id)
        if existing:
            logger.info(f"Commission already recorded for transaction {transaction_id}")
            return Commission.model_validate(existing)

        referral = await self.store.get_referral_by_user(user_id)
        if not referral or referral.get("status") not in [s.value for s in COMMISSIONABLE_REFERRAL_STATUSES]:
            return None

        affiliate = await self.directory.find_affiliate(referral["affiliate_id"])
        if not affiliate or not affiliate.is_approved:
            return None
        if affiliate.reward_type == RewardType.CREDITS:
            logger.info(f"Affiliate {affiliate.id} earns credits, skipping commission for {transaction_id}")
            return None

        commission_type, commission_rate = await self.directory.resolve_commission_policy(affiliate)
        commission_amount = compute_commission_amount(amount, commission_type, commission_rate)

        now = self.clock()
        row = {
            "id": str(uuid.uuid4()),
            "affiliate_id": affiliate.id,
            "referral_id": referral["id"],
            "source_type": source_type,
            "source_transaction_id": transaction_id,
            "purchase_amount": amount,
            "commission_type": commission_type,
            "commission_rate": commission_rate,
            "commission_amount": commission_amount,
            "status": CommissionStatus.PENDING,
            "hold_until": now + timedelta(days=COMMISSION_HOLD_DAYS),
            "created_at": now,
            "updated_at": now,
        }

        try:
            recorded = await self.store.record_commission(row)
        except ConflictError:
            # Concurrent delivery of the same transaction
            winner = await self.store.get_commission_by_transaction(transaction_id)
            if not winner:
                raise
            return Commission.model_validate(winner)

        commission = Commission.model_validate(recorded)
        logger.info(
            f"Created commission {commission.id} for affiliate {affiliate.id}: "
            f"{commission_amount} on {amount} ({commission_type.value} {commission_rate})"
        )
        return commission

    async def approve_commission(self, commission_id: str, approved_by: Optional[str] = None) -> Commission:
        """Move a pending commission to approved."""
        current = await self.store.get_commission(commission_id)
        if not current:
            raise NotFoundError(f"Commission {commission_id} not found")

        now = self.clock()
        updated = await self.store.update_commission(
            commission_id,
            {
                "status": CommissionStatus.APPROVED,
                "approved_at": now,
                "approved_by": approved_by,
                "updated_at": now,
            },
            expected_statuses=[CommissionStatus.PENDING],
        )
        if not updated:
            latest = await self.store.get_commission(commission_id) or current
            raise InvalidStateError(
                f"Commission {commission_id} cannot be approved from status {latest.get('status')}"
            )

        logger.info(f"Approved commission {commission_id}")
        return Commission.model_validate(updated)

    async def cancel_commission(self, commission_id: str, reason: Optional[str] = None) -> Commission:
        """Cancel a pending or approved commission and reverse its earnings."""
        current = await self.store.get_commission(commission_id)
        if not current:
            raise NotFoundError(f"Commission {commission_id} not found")

        cancelled = await self.store.cancel_commission(commission_id, reason, self.clock())
        if not cancelled:
            latest = await self.store.get_commission(commission_id) or current
            raise InvalidStateError(
                f"Commission {commission_id} cannot be cancelled from status {latest.get('status')}"
            )

        commission = Commission.model_validate(cancelled)
        await self.directory.log_event(
            commission.affiliate_id, "commission_cancelled",
            {"commission_id": commission_id, "amount": str(commission.commission_amount), "reason": reason}
        )
        logger.info(f"Cancelled commission {commission_id}: {reason}")
        return commission

    async def approve_pending_commissions(self, now: Optional[datetime] = None) -> int:
        """
        Approve every pending commission whose hold period has ended.

        Called by the daily Inngest job. Returns the number approved.
        """
        now = now or self.clock()
        due = await self.store.list_commissions(
            status=CommissionStatus.PENDING,
            hold_until_before=now
        )

        approved = 0
        for row in due:
            updated = await self.store.update_commission(
                row["id"],
                {
                    "status": CommissionStatus.APPROVED,
                    "approved_at": now,
                    "updated_at": now,
                },
                expected_statuses=[CommissionStatus.PENDING],
            )
            if updated:
                approved += 1

        logger.info(f"Approved {approved} commissions past hold period")
        return approved

    async def list_commissions(
        self,
        affiliate_id: str,
        status: Optional[str] = None,
        limit: int = 50
    ) -> List[Commission]:
        rows = await self.store.list_commissions(affiliate_id=affiliate_id, status=status, limit=limit)
        return [Commission.model_validate(r) for r in rows]
