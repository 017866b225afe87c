"""
Payout Processor

Payout lifecycle and Stripe Connect onboarding.

    pending --process--> processing --success--> completed
                                    --failure--> failed
    pending --cancel---> cancelled

completed, failed and cancelled are terminal.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Optional, Dict, Any, List

from app.models.affiliate import (
    Affiliate,
    CommissionStatus,
    Payout,
    PayoutStatus,
)
from app.services.affiliate_config import PAYOUT_TRANSFER_TIMEOUT_SECONDS
from app.services.affiliate_directory import AffiliateDirectory, parse_amount, to_money
from app.services.affiliate_errors import (
    GatewayError,
    InvalidStateError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from app.services.affiliate_notifications import AffiliateNotifier
from app.services.payment_gateway import PaymentGatewayAdapter
from app.utils.errors import AppError

logger = logging.getLogger(__name__)

OPEN_PAYOUT_STATUSES = (PayoutStatus.PENDING, PayoutStatus.PROCESSING)


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1")))


class PayoutProcessor:
    """Requests, settles and cancels affiliate payouts."""

    def __init__(
        self,
        directory: AffiliateDirectory,
        gateway: PaymentGatewayAdapter,
        notifier: Optional[AffiliateNotifier] = None,
        transfer_timeout: float = PAYOUT_TRANSFER_TIMEOUT_SECONDS
    ):
        self.directory = directory
        self.store = directory.store
        self.gateway = gateway
        self.notifier = notifier
        self.transfer_timeout = transfer_timeout

    @property
    def clock(self):
        return self.directory.clock

    # =========================================================================
    # PAYOUTS
    # =========================================================================

    async def request_payout(self, affiliate_id: str, amount: Decimal) -> Payout:
        """
        Request a payout of part or all of the affiliate's pending balance.

        Nothing is written unless every check passes. Balances are not
        touched until the payout settles.

        Raises:
            NotFoundError: Unknown affiliate
            ValidationError: Malformed amount, not approved, no payout account,
                below the minimum, or more than the uncommitted balance
        """
        amount = parse_amount(amount, "amount")
        affiliate = await self.directory.get_affiliate(affiliate_id)

        if not affiliate.is_approved:
            raise ValidationError("Affiliate is not approved")
        if not affiliate.stripe_connect_account_id:
            raise ValidationError("Payout account not connected")
        if not affiliate.stripe_payouts_enabled:
            raise ValidationError("Payouts are not enabled for this account")

        min_amount = await self.directory.get_min_payout_amount(affiliate)
        if amount < min_amount:
            raise ValidationError(
                f"Minimum payout amount is {min_amount}",
                details={"amount": str(amount), "min_payout_amount": str(min_amount)}
            )

        open_payouts = await self.store.list_payouts(
            affiliate_id=affiliate_id,
            statuses=OPEN_PAYOUT_STATUSES
        )
        committed = sum((to_money(p["amount"]) for p in open_payouts), Decimal("0.00"))
        available = affiliate.pending_balance - committed
        if amount > available:
            raise ValidationError(
                "Insufficient balance",
                details={"amount": str(amount), "available": str(max(available, Decimal("0.00")))}
            )

        approved = await self.store.list_commissions(
            affiliate_id=affiliate_id,
            status=CommissionStatus.APPROVED
        )

        now = self.clock()
        row = await self.store.insert_payout({
            "affiliate_id": affiliate_id,
            "amount": amount,
            "status": PayoutStatus.PENDING,
            "commission_ids": [c["id"] for c in approved],
            "requested_at": now,
            "created_at": now,
            "updated_at": now,
        })
        payout = Payout.model_validate(row)

        await self.directory.log_event(
            affiliate_id, "payout_requested",
            {"payout_id": payout.id, "amount": str(amount)},
            actor_type="user"
        )
        logger.info(f"Payout {payout.id} requested by affiliate {affiliate_id}: {amount}")
        return payout

    async def process_payout(self, payout_id: str, processed_by: Optional[str] = None) -> Payout:
        """
        Transfer a pending payout to the affiliate's connected account.

        Raises:
            NotFoundError: Unknown payout
            InvalidStateError: Payout not pending, or claimed by another worker
            ValidationError: Balance no longer covers the payout (payout marked failed)
            GatewayError: Transfer failed or timed out (payout marked failed)
            PersistenceError: Affiliate could not be loaded after the claim (payout marked failed)
            PersistenceError: Transfer succeeded but settlement could not be written
        """
        current = await self.store.get_payout(payout_id)
        if not current:
            raise NotFoundError(f"Payout {payout_id} not found")
        if current.get("status") != PayoutStatus.PENDING.value:
            raise InvalidStateError(
                f"Payout {payout_id} cannot be processed from status {current.get('status')}"
            )

        now = self.clock()
        claimed = await self.store.transition_payout(
            payout_id, PayoutStatus.PENDING, PayoutStatus.PROCESSING,
            {"processed_at": now, "processed_by": processed_by, "updated_at": now}
        )
        if not claimed:
            raise InvalidStateError(f"Payout {payout_id} is already being processed")
        payout = Payout.model_validate(claimed)

        # From here until the transfer succeeds, any failure marks the payout failed
        try:
            affiliate = await self.directory.get_affiliate(payout.affiliate_id)
            if affiliate.pending_balance < payout.amount:
                raise ValidationError(
                    "Insufficient balance at processing time",
                    details={"amount": str(payout.amount), "pending_balance": str(affiliate.pending_balance)}
                )

            transfer_id = await asyncio.wait_for(
                self.gateway.transfer(
                    affiliate.stripe_connect_account_id,
                    to_minor_units(payout.amount),
                    {"affiliate_id": affiliate.id, "payout_id": payout.id},
                    idempotency_key=payout.id,
                ),
                timeout=self.transfer_timeout
            )
        except asyncio.TimeoutError as e:
            reason = f"Transfer timed out after {self.transfer_timeout}s"
            await self._fail(payout, reason)
            raise GatewayError(reason, details={"payout_id": payout.id}) from e
        except AppError as e:
            await self._fail(payout, e.message)
            raise
        except Exception as e:
            reason = f"Transfer failed: {e}"
            await self._fail(payout, reason)
            raise GatewayError(reason, details={"payout_id": payout.id}) from e

        try:
            settled = await self.store.settle_payout(
                payout.id, transfer_id, payout.commission_ids, self.clock()
            )
        except Exception as e:
            logger.critical(
                f"Transfer {transfer_id} succeeded but payout {payout.id} could not be settled: {e}",
                exc_info=True
            )
            raise PersistenceError(
                "Payout transferred but settlement failed",
                details={"payout_id": payout.id, "transfer_id": transfer_id}
            ) from e

        completed = Payout.model_validate(settled)
        await self.directory.log_event(
            completed.affiliate_id, "payout_completed",
            {"payout_id": completed.id, "amount": str(completed.amount), "transfer_id": transfer_id},
            actor_type="admin" if processed_by else "system",
            actor_id=processed_by
        )
        if self.notifier:
            await self.notifier.payout_completed(completed)

        logger.info(f"Payout {completed.id} completed with transfer {transfer_id}")
        return completed

    async def cancel_payout(self, payout_id: str, reason: Optional[str] = None) -> Payout:
        """Cancel a payout that has not started processing."""
        current = await self.store.get_payout(payout_id)
        if not current:
            raise NotFoundError(f"Payout {payout_id} not found")

        cancelled = await self.store.transition_payout(
            payout_id, PayoutStatus.PENDING, PayoutStatus.CANCELLED,
            {"notes": reason, "updated_at": self.clock()}
        )
        if not cancelled:
            latest = await self.store.get_payout(payout_id) or current
            raise InvalidStateError(
                f"Payout {payout_id} cannot be cancelled from status {latest.get('status')}"
            )

        logger.info(f"Payout {payout_id} cancelled: {reason}")
        return Payout.model_validate(cancelled)

    async def list_payouts(self, affiliate_id: str) -> List[Payout]:
        rows = await self.store.list_payouts(affiliate_id=affiliate_id)
        return [Payout.model_validate(r) for r in rows]

    async def _fail(self, payout: Payout, reason: str) -> None:
        failed = await self.store.transition_payout(
            payout.id, PayoutStatus.PROCESSING, PayoutStatus.FAILED,
            {"failure_reason": reason, "updated_at": self.clock()}
        )
        logger.error(f"Payout {payout.id} failed: {reason}")
        if failed and self.notifier:
            await self.notifier.payout_failed(Payout.model_validate(failed), reason)

    # =========================================================================
    # STRIPE CONNECT
    # =========================================================================

    async def create_connect_account(self, affiliate_id: str) -> str:
        """Create a connected account for the affiliate (or return the existing one)."""
        affiliate = await self.directory.get_affiliate(affiliate_id)
        if affiliate.stripe_connect_account_id:
            return affiliate.stripe_connect_account_id

        account_id = await self.gateway.create_connected_account(affiliate)
        await self.store.update_affiliate(affiliate_id, {
            "stripe_connect_account_id": account_id,
            "stripe_onboarding_complete": False,
            "stripe_payouts_enabled": False,
            "updated_at": self.clock(),
        })
        await self.directory.log_event(
            affiliate_id, "connect_account_created",
            {"stripe_account_id": account_id}
        )
        return account_id

    async def get_onboarding_link(self, affiliate_id: str, return_url: str, refresh_url: str) -> str:
        account_id = await self.create_connect_account(affiliate_id)
        return await self.gateway.get_onboarding_link(account_id, return_url, refresh_url)

    async def check_account_status(self, affiliate_id: str) -> Dict[str, Any]:
        """Refresh onboarding/payout flags from the gateway."""
        affiliate = await self.directory.get_affiliate(affiliate_id)
        if not affiliate.stripe_connect_account_id:
            return {"connected": False, "onboarding_complete": False, "payouts_enabled": False}

        status = await self.gateway.get_account_status(affiliate.stripe_connect_account_id)
        if (
            status["onboarding_complete"] != affiliate.stripe_onboarding_complete
            or status["payouts_enabled"] != affiliate.stripe_payouts_enabled
        ):
            await self.store.update_affiliate(affiliate_id, {
                "stripe_onboarding_complete": status["onboarding_complete"],
                "stripe_payouts_enabled": status["payouts_enabled"],
                "updated_at": self.clock(),
            })
            logger.info(f"Connect status for affiliate {affiliate_id} changed: {status}")

        return {"connected": True, **status}

    async def sync_connect_status(self) -> Dict[str, int]:
        """Refresh every connected affiliate. Per-affiliate failures are counted, not raised."""
        rows = await self.store.list_affiliates(with_connect_account=True)
        synced = 0
        failed = 0
        for row in rows:
            affiliate = Affiliate.model_validate(row)
            try:
                await self.check_account_status(affiliate.id)
                synced += 1
            except Exception as e:
                failed += 1
                logger.error(f"Error syncing Connect status for {affiliate.id}: {e}")

        logger.info(f"Connect status sync: {synced} synced, {failed} failed")
        return {"synced": synced, "failed": failed}
