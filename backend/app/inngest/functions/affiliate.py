"""
Affiliate Program Background Jobs

Handles automated affiliate program operations:
- Daily: Approve pending commissions (after the 14-day hold)
- Daily: Award credits for referred stores live 30+ days
- Hourly: Sync Stripe Connect account statuses

Schedule:
- approve-commissions: Daily at 01:00 UTC
- store-credit-awards: Daily at 02:00 UTC
- sync-connect-status: Every hour at :15
"""

import logging
from datetime import datetime, timezone
from inngest import TriggerCron
from app.inngest.client import inngest_client
from app.services.affiliate_service import get_affiliate_service

logger = logging.getLogger(__name__)


# =============================================================================
# DAILY: APPROVE PENDING COMMISSIONS
# =============================================================================

@inngest_client.create_function(
    fn_id="affiliate-approve-commissions",
    trigger=TriggerCron(cron="0 1 * * *"),  # Daily at 01:00 UTC
)
async def approve_commissions_fn(ctx, step):
    """
    Move pending commissions to approved once hold_until has passed.

    Balances are untouched: pending_balance already includes the amount
    from the moment the commission was recorded.
    """
    logger.info("Starting daily commission approval check")

    affiliate_service = get_affiliate_service()

    approved_count = await step.run(
        "approve-commissions",
        lambda: affiliate_service.approve_pending_commissions()
    )

    logger.info(f"Commission approval complete: {approved_count} commissions approved")

    return {
        "status": "ok",
        "approved_count": approved_count,
        "checked_at": datetime.now(timezone.utc).isoformat()
    }


# =============================================================================
# DAILY: STORE OWNER CREDIT AWARDS
# =============================================================================

@inngest_client.create_function(
    fn_id="affiliate-store-credit-awards",
    trigger=TriggerCron(cron="0 2 * * *"),  # Daily at 02:00 UTC
)
async def store_credit_awards_fn(ctx, step):
    """
    Award credits to store owner affiliates for referred stores that have
    been published for the qualification period.

    Safe to re-run: each (affiliate, store) pair is credited once.
    """
    logger.info("Starting daily store credit awards")

    affiliate_service = get_affiliate_service()

    summary = await step.run(
        "award-store-credits",
        lambda: affiliate_service.process_store_owner_credit_awards()
    )

    logger.info(
        f"Store credit awards complete: {summary['awards']} awards, "
        f"{summary['failed']} failed"
    )

    return {
        "status": "ok",
        **summary,
        "processed_at": datetime.now(timezone.utc).isoformat()
    }


# =============================================================================
# HOURLY: SYNC CONNECT STATUS
# =============================================================================

@inngest_client.create_function(
    fn_id="affiliate-sync-connect-status",
    trigger=TriggerCron(cron="15 * * * *"),  # Every hour at :15
)
async def sync_connect_status_fn(ctx, step):
    """
    Sync Stripe Connect onboarding and payout flags for every affiliate
    with a connected account.
    """
    logger.info("Starting hourly Connect status sync")

    affiliate_service = get_affiliate_service()

    result = await step.run(
        "sync-connect-accounts",
        lambda: affiliate_service.sync_connect_status()
    )

    logger.info(f"Connect status sync complete: {result['synced']} synced, {result['failed']} failed")

    return {
        "status": "ok",
        **result,
        "synced_at": datetime.now(timezone.utc).isoformat()
    }


# =============================================================================
# EXPORT ALL FUNCTIONS
# =============================================================================

affiliate_functions = [
    approve_commissions_fn,
    store_credit_awards_fn,
    sync_connect_status_fn,
]
