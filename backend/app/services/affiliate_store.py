"""
Affiliate Store - persistence port for the affiliate engine.

The services never talk to a database client directly; they receive an
AffiliateStore. Rows are plain dicts keyed by column name.

Monetary columns are only ever changed through the atomic operations at the
bottom of this interface (apply_delta, record_commission, cancel_commission,
settle_payout). Implementations must run each of those as one transaction.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List, Iterable

Row = Dict[str, Any]

# Columns apply_delta may touch. Balance columns never go below zero.
COUNTER_FIELDS = frozenset({"total_referrals", "total_conversions"})
BALANCE_FIELDS = frozenset({"total_earnings", "pending_balance", "total_paid_out"})
DELTA_FIELDS = COUNTER_FIELDS | BALANCE_FIELDS


class AffiliateStore(ABC):
    """Persistence operations required by the affiliate engine."""

    # =========================================================================
    # AFFILIATES & TIERS
    # =========================================================================

    @abstractmethod
    async def get_affiliate(self, affiliate_id: str) -> Optional[Row]:
        ...

    @abstractmethod
    async def get_affiliate_by_code(self, referral_code: str) -> Optional[Row]:
        ...

    @abstractmethod
    async def get_affiliate_by_email(self, email: str) -> Optional[Row]:
        ...

    @abstractmethod
    async def list_affiliates(
        self,
        status: Optional[str] = None,
        reward_type: Optional[str] = None,
        with_connect_account: bool = False
    ) -> List[Row]:
        ...

    @abstractmethod
    async def insert_affiliate(self, row: Row) -> Row:
        """Insert an affiliate. Raises ConflictError on duplicate email/code."""

    @abstractmethod
    async def update_affiliate(self, affiliate_id: str, fields: Row) -> Optional[Row]:
        """Update non-monetary affiliate columns."""

    @abstractmethod
    async def get_tier(self, tier_id: str) -> Optional[Row]:
        ...

    @abstractmethod
    async def get_tier_by_code(self, code: str) -> Optional[Row]:
        ...

    # =========================================================================
    # PLATFORM USERS & STORES (read-only)
    # =========================================================================

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[Row]:
        ...

    @abstractmethod
    async def get_stores(self, store_ids: Iterable[str]) -> List[Row]:
        ...

    # =========================================================================
    # REFERRALS
    # =========================================================================

    @abstractmethod
    async def get_referral_by_user(self, user_id: str) -> Optional[Row]:
        ...

    @abstractmethod
    async def find_click_referral(
        self,
        affiliate_id: str,
        email: str,
        now: datetime
    ) -> Optional[Row]:
        """Most recent unexpired 'clicked' referral for this affiliate and email."""

    @abstractmethod
    async def insert_referral(self, row: Row) -> Row:
        """Insert a referral. Raises ConflictError if referred_user_id is taken."""

    @abstractmethod
    async def update_referral(
        self,
        referral_id: str,
        fields: Row,
        expected_statuses: Optional[Iterable[str]] = None,
        require_unclaimed: bool = False
    ) -> Optional[Row]:
        """
        Conditional update. Returns None when the row is missing, its status
        is not in expected_statuses, or (with require_unclaimed) it already
        has a referred_user_id.
        """

    @abstractmethod
    async def list_referrals(
        self,
        affiliate_id: str,
        with_store_only: bool = False,
        limit: Optional[int] = None
    ) -> List[Row]:
        ...

    # =========================================================================
    # COMMISSIONS
    # =========================================================================

    @abstractmethod
    async def get_commission(self, commission_id: str) -> Optional[Row]:
        ...

    @abstractmethod
    async def get_commission_by_transaction(self, transaction_id: str) -> Optional[Row]:
        ...

    @abstractmethod
    async def list_commissions(
        self,
        affiliate_id: Optional[str] = None,
        status: Optional[str] = None,
        hold_until_before: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[Row]:
        ...

    @abstractmethod
    async def update_commission(
        self,
        commission_id: str,
        fields: Row,
        expected_statuses: Iterable[str]
    ) -> Optional[Row]:
        """Status compare-and-swap. None if the status did not match."""

    # =========================================================================
    # PAYOUTS
    # =========================================================================

    @abstractmethod
    async def insert_payout(self, row: Row) -> Row:
        ...

    @abstractmethod
    async def get_payout(self, payout_id: str) -> Optional[Row]:
        ...

    @abstractmethod
    async def list_payouts(
        self,
        affiliate_id: Optional[str] = None,
        statuses: Optional[Iterable[str]] = None
    ) -> List[Row]:
        ...

    @abstractmethod
    async def transition_payout(
        self,
        payout_id: str,
        from_status: str,
        to_status: str,
        fields: Optional[Row] = None
    ) -> Optional[Row]:
        """Single conditional write: UPDATE ... WHERE status = from_status."""

    # =========================================================================
    # STORE CREDIT AWARDS
    # =========================================================================

    @abstractmethod
    async def list_credit_awards(self, affiliate_id: str) -> List[Row]:
        ...

    @abstractmethod
    async def get_credit_award(self, affiliate_id: str, store_id: str) -> Optional[Row]:
        ...

    @abstractmethod
    async def insert_credit_award(self, row: Row) -> Optional[Row]:
        """Insert unless (affiliate_id, referred_store_id) exists; None on conflict."""

    @abstractmethod
    async def mark_credit_award_issued(self, award_id: str, issued_at: datetime) -> Optional[Row]:
        """Flag the award's credits as granted; None if already flagged."""

    # =========================================================================
    # AUDIT TRAIL
    # =========================================================================

    @abstractmethod
    async def insert_event(self, row: Row) -> None:
        ...

    # =========================================================================
    # ATOMIC LEDGER OPERATIONS
    # =========================================================================

    @abstractmethod
    async def apply_delta(self, affiliate_id: str, field: str, delta: Decimal) -> Row:
        """
        Atomically add delta to one counter/balance column of an affiliate.

        Balance columns are clamped at zero. Returns the updated affiliate.
        """

    @abstractmethod
    async def record_commission(self, commission: Row) -> Row:
        """
        Insert a pending commission and, in the same transaction:
        advance its referral from signed_up to converted (first purchase) or
        add to total_purchases; bump total_conversions on first purchase;
        add commission_amount to total_earnings and pending_balance.
        Raises ConflictError on a duplicate source_transaction_id.
        """

    @abstractmethod
    async def cancel_commission(
        self,
        commission_id: str,
        reason: Optional[str],
        now: datetime
    ) -> Optional[Row]:
        """
        Move a pending/approved commission to cancelled and subtract its amount
        from pending_balance and total_earnings (clamped at zero) in one
        transaction. None if the commission was in any other status.
        """

    @abstractmethod
    async def settle_payout(
        self,
        payout_id: str,
        transfer_id: str,
        commission_ids: List[str],
        now: datetime
    ) -> Row:
        """
        Complete a processing payout in one transaction: status completed,
        transfer id recorded, pending_balance reduced (floored at zero),
        total_paid_out increased, listed commissions still approved marked paid.
        Raises InvalidStateError if the payout is not processing.
        """
