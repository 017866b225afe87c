"""
Affiliate Program Configuration

All tunables for the affiliate engine, read once from the environment.
"""

import os
from decimal import Decimal

# =============================================================================
# COMMISSIONS
# =============================================================================

# Fallback when neither the affiliate nor its tier defines a rate
DEFAULT_COMMISSION_TYPE = "percentage"
DEFAULT_COMMISSION_RATE = Decimal(os.getenv("AFFILIATE_DEFAULT_COMMISSION_RATE", "0.10"))  # 10%

# Days a commission stays pending to absorb refunds
COMMISSION_HOLD_DAYS = int(os.getenv("AFFILIATE_COMMISSION_HOLD_DAYS", "14"))

# Click attribution window
REFERRAL_COOKIE_DAYS = int(os.getenv("AFFILIATE_REFERRAL_COOKIE_DAYS", "30"))

# =============================================================================
# PAYOUTS
# =============================================================================

DEFAULT_MIN_PAYOUT_AMOUNT = Decimal(os.getenv("AFFILIATE_DEFAULT_MIN_PAYOUT", "50.00"))
PAYOUT_CURRENCY = os.getenv("AFFILIATE_PAYOUT_CURRENCY", "usd")
PAYOUT_TRANSFER_TIMEOUT_SECONDS = float(os.getenv("AFFILIATE_PAYOUT_TRANSFER_TIMEOUT_SECONDS", "30"))

# =============================================================================
# STORE OWNER CREDIT REWARDS
# =============================================================================

STORE_OWNER_CREDITS_REWARD = Decimal(os.getenv("AFFILIATE_STORE_CREDITS_REWARD", "30"))
STORE_QUALIFICATION_DAYS = int(os.getenv("AFFILIATE_STORE_QUALIFICATION_DAYS", "30"))
STORE_OWNER_TIER_CODE = "store_owner"
