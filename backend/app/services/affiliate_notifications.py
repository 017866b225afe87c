"""
Affiliate Notifications

Publishes affiliate lifecycle events to Inngest; email and other delivery
happens in whatever functions subscribe to them. Sending is a secondary
effect: a failure here is logged and never undoes the state change that
triggered it.
"""

import logging
from typing import Dict, Any, Optional

import inngest

from app.models.affiliate import Affiliate, Payout

logger = logging.getLogger(__name__)

EVENT_AFFILIATE_APPROVED = "affiliate/approved"
EVENT_PAYOUT_COMPLETED = "affiliate/payout.completed"
EVENT_PAYOUT_FAILED = "affiliate/payout.failed"


class AffiliateNotifier:
    """Sends affiliate events through an Inngest client."""

    def __init__(self, client: Optional[inngest.Inngest] = None):
        if client is None:
            from app.inngest.client import inngest_client
            client = inngest_client
        self.client = client

    async def affiliate_approved(self, affiliate: Affiliate) -> None:
        await self._send(EVENT_AFFILIATE_APPROVED, {
            "affiliate_id": affiliate.id,
            "email": affiliate.email,
            "first_name": affiliate.first_name,
            "referral_code": affiliate.referral_code,
        })

    async def payout_completed(self, payout: Payout) -> None:
        await self._send(EVENT_PAYOUT_COMPLETED, {
            "affiliate_id": payout.affiliate_id,
            "payout_id": payout.id,
            "amount": str(payout.amount),
            "stripe_transfer_id": payout.stripe_transfer_id,
        })

    async def payout_failed(self, payout: Payout, reason: str) -> None:
        await self._send(EVENT_PAYOUT_FAILED, {
            "affiliate_id": payout.affiliate_id,
            "payout_id": payout.id,
            "amount": str(payout.amount),
            "reason": reason,
        })

    async def _send(self, name: str, data: Dict[str, Any]) -> None:
        try:
            await self.client.send(inngest.Event(name=name, data=data))
            logger.info(f"Sent {name} for affiliate {data.get('affiliate_id')}")
        except Exception as e:
            logger.error(f"Error sending {name} notification: {e}")
            # Don't raise - the underlying transition already happened
