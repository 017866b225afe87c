"""
Supabase-backed AffiliateStore.

Plain reads and conditional status updates go through PostgREST filters;
everything that moves money is a Postgres function (see
supabase/migrations/*_affiliate_engine.sql) called over RPC so it runs as a
single transaction.
"""

import logging
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Dict, Any, List, Iterable

import httpx
from postgrest.exceptions import APIError
from supabase import Client

from app.services.affiliate_errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    PersistenceError,
)
from app.services.affiliate_store import AffiliateStore, Row, DELTA_FIELDS

logger = logging.getLogger(__name__)

# Custom SQLSTATEs raised by the affiliate_* Postgres functions
SQLSTATE_UNIQUE_VIOLATION = "23505"
SQLSTATE_INVALID_STATE = "AF409"
SQLSTATE_NOT_FOUND = "AF404"


def _to_db(value: Any) -> Any:
    """Convert Python values to JSON-safe values PostgREST accepts."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _to_db(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_to_db(v) for v in value]
    return value


def _first(data: Any) -> Optional[Row]:
    if isinstance(data, list):
        return data[0] if data else None
    return data or None


class SupabaseAffiliateStore(AffiliateStore):
    """AffiliateStore on top of the Supabase service-role client."""

    def __init__(self, supabase: Optional[Client]):
        self.supabase = supabase
        if self.supabase is None:
            logger.error("Supabase client not initialized for SupabaseAffiliateStore")

    # =========================================================================
    # PLUMBING
    # =========================================================================

    def _table(self, name: str):
        if self.supabase is None:
            raise PersistenceError("Database connection not available")
        return self.supabase.table(name)

    def _execute(self, operation: str, query) -> Any:
        """Run a query, translating PostgREST/transport failures to domain errors."""
        try:
            response = query.execute()
        except APIError as e:
            # Older postgrest clients report an empty maybe_single() as 204
            if e.code == "204":
                return None
            if e.code == SQLSTATE_UNIQUE_VIOLATION:
                raise ConflictError(f"{operation}: duplicate record", {"db_message": e.message}) from e
            if e.code == SQLSTATE_INVALID_STATE:
                raise InvalidStateError(e.message or f"{operation}: invalid state") from e
            if e.code == SQLSTATE_NOT_FOUND:
                raise NotFoundError(e.message or f"{operation}: not found") from e
            logger.error(f"Supabase API error in {operation}: {e.message}")
            raise PersistenceError(f"{operation} failed", {"db_code": e.code}) from e
        except httpx.HTTPError as e:
            logger.error(f"Supabase transport error in {operation}: {e}")
            raise PersistenceError(f"{operation} failed: storage unavailable") from e

        # maybe_single() yields None instead of an empty response on no match
        if response is None:
            return None
        return response.data

    def _rpc(self, function: str, params: Dict[str, Any]) -> Any:
        if self.supabase is None:
            raise PersistenceError("Database connection not available")
        return self._execute(function, self.supabase.rpc(function, _to_db(params)))

    def _maybe_one(self, operation: str, query) -> Optional[Row]:
        return _first(self._execute(operation, query.maybe_single()))

    # =========================================================================
    # AFFILIATES & TIERS
    # =========================================================================

    async def get_affiliate(self, affiliate_id: str) -> Optional[Row]:
        return self._maybe_one(
            "get_affiliate",
            self._table("affiliates").select("*").eq("id", affiliate_id)
        )

    async def get_affiliate_by_code(self, referral_code: str) -> Optional[Row]:
        return self._maybe_one(
            "get_affiliate_by_code",
            self._table("affiliates").select("*").eq("referral_code", referral_code)
        )

    async def get_affiliate_by_email(self, email: str) -> Optional[Row]:
        return self._maybe_one(
            "get_affiliate_by_email",
            self._table("affiliates").select("*").eq("email", email)
        )

    async def list_affiliates(
        self,
        status: Optional[str] = None,
        reward_type: Optional[str] = None,
        with_connect_account: bool = False
    ) -> List[Row]:
        query = self._table("affiliates").select("*")
        if status:
            query = query.eq("status", _to_db(status))
        if reward_type:
            query = query.eq("reward_type", _to_db(reward_type))
        if with_connect_account:
            query = query.not_.is_("stripe_connect_account_id", "null")
        return self._execute("list_affiliates", query.order("created_at", desc=True)) or []

    async def insert_affiliate(self, row: Row) -> Row:
        data = self._execute(
            "insert_affiliate",
            self._table("affiliates").insert(_to_db(row))
        )
        return _first(data)

    async def update_affiliate(self, affiliate_id: str, fields: Row) -> Optional[Row]:
        data = self._execute(
            "update_affiliate",
            self._table("affiliates").update(_to_db(fields)).eq("id", affiliate_id)
        )
        return _first(data)

    async def get_tier(self, tier_id: str) -> Optional[Row]:
        return self._maybe_one(
            "get_tier",
            self._table("affiliate_tiers").select("*").eq("id", tier_id)
        )

    async def get_tier_by_code(self, code: str) -> Optional[Row]:
        return self._maybe_one(
            "get_tier_by_code",
            self._table("affiliate_tiers").select("*").eq("code", code)
        )

    # =========================================================================
    # PLATFORM USERS & STORES
    # =========================================================================

    async def get_user(self, user_id: str) -> Optional[Row]:
        return self._maybe_one(
            "get_user",
            self._table("users").select("id, email").eq("id", user_id)
        )

    async def get_stores(self, store_ids: Iterable[str]) -> List[Row]:
        ids = [s for s in store_ids if s]
        if not ids:
            return []
        return self._execute(
            "get_stores",
            self._table("stores").select(
                "id, slug, published, published_at, created_at"
            ).in_("id", ids)
        ) or []

    # =========================================================================
    # REFERRALS
    # =========================================================================

    async def get_referral_by_user(self, user_id: str) -> Optional[Row]:
        return self._maybe_one(
            "get_referral_by_user",
            self._table("affiliate_referrals").select("*").eq("referred_user_id", user_id)
        )

    async def find_click_referral(
        self,
        affiliate_id: str,
        email: str,
        now: datetime
    ) -> Optional[Row]:
        data = self._execute(
            "find_click_referral",
            self._table("affiliate_referrals").select("*").eq(
                "affiliate_id", affiliate_id
            ).eq(
                "referred_email", email
            ).eq(
                "status", "clicked"
            ).is_(
                "referred_user_id", "null"
            ).gt(
                "cookie_expires_at", now.isoformat()
            ).order("created_at", desc=True).limit(1)
        )
        return _first(data)

    async def insert_referral(self, row: Row) -> Row:
        data = self._execute(
            "insert_referral",
            self._table("affiliate_referrals").insert(_to_db(row))
        )
        return _first(data)

    async def update_referral(
        self,
        referral_id: str,
        fields: Row,
        expected_statuses: Optional[Iterable[str]] = None,
        require_unclaimed: bool = False
    ) -> Optional[Row]:
        query = self._table("affiliate_referrals").update(_to_db(fields)).eq("id", referral_id)
        if expected_statuses is not None:
            query = query.in_("status", _to_db(list(expected_statuses)))
        if require_unclaimed:
            query = query.is_("referred_user_id", "null")
        return _first(self._execute("update_referral", query))

    async def list_referrals(
        self,
        affiliate_id: str,
        with_store_only: bool = False,
        limit: Optional[int] = None
    ) -> List[Row]:
        query = self._table("affiliate_referrals").select("*").eq("affiliate_id", affiliate_id)
        if with_store_only:
            query = query.not_.is_("referred_store_id", "null")
        query = query.order("created_at", desc=True)
        if limit:
            query = query.limit(limit)
        return self._execute("list_referrals", query) or []

    # =========================================================================
    # COMMISSIONS
    # =========================================================================

    async def get_commission(self, commission_id: str) -> Optional[Row]:
        return self._maybe_one(
            "get_commission",
            self._table("affiliate_commissions").select("*").eq("id", commission_id)
        )

    async def get_commission_by_transaction(self, transaction_id: str) -> Optional[Row]:
        return self._maybe_one(
            "get_commission_by_transaction",
            self._table("affiliate_commissions").select("*").eq(
                "source_transaction_id", transaction_id
            )
        )

    async def list_commissions(
        self,
        affiliate_id: Optional[str] = None,
        status: Optional[str] = None,
        hold_until_before: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[Row]:
        query = self._table("affiliate_commissions").select("*")
        if affiliate_id:
            query = query.eq("affiliate_id", affiliate_id)
        if status:
            query = query.eq("status", _to_db(status))
        if hold_until_before:
            query = query.lte("hold_until", hold_until_before.isoformat())
        query = query.order("created_at", desc=True)
        if limit:
            query = query.limit(limit)
        return self._execute("list_commissions", query) or []

    async def update_commission(
        self,
        commission_id: str,
        fields: Row,
        expected_statuses: Iterable[str]
    ) -> Optional[Row]:
        data = self._execute(
            "update_commission",
            self._table("affiliate_commissions").update(_to_db(fields)).eq(
                "id", commission_id
            ).in_("status", _to_db(list(expected_statuses)))
        )
        return _first(data)

    # =========================================================================
    # PAYOUTS
    # =========================================================================

    async def insert_payout(self, row: Row) -> Row:
        data = self._execute(
            "insert_payout",
            self._table("affiliate_payouts").insert(_to_db(row))
        )
        return _first(data)

    async def get_payout(self, payout_id: str) -> Optional[Row]:
        return self._maybe_one(
            "get_payout",
            self._table("affiliate_payouts").select("*").eq("id", payout_id)
        )

    async def list_payouts(
        self,
        affiliate_id: Optional[str] = None,
        statuses: Optional[Iterable[str]] = None
    ) -> List[Row]:
        query = self._table("affiliate_payouts").select("*")
        if affiliate_id:
            query = query.eq("affiliate_id", affiliate_id)
        if statuses is not None:
            query = query.in_("status", _to_db(list(statuses)))
        return self._execute("list_payouts", query.order("created_at", desc=True)) or []

    async def transition_payout(
        self,
        payout_id: str,
        from_status: str,
        to_status: str,
        fields: Optional[Row] = None
    ) -> Optional[Row]:
        update = dict(fields or {})
        update["status"] = to_status
        data = self._execute(
            "transition_payout",
            self._table("affiliate_payouts").update(_to_db(update)).eq(
                "id", payout_id
            ).eq("status", _to_db(from_status))
        )
        return _first(data)

    # =========================================================================
    # STORE CREDIT AWARDS
    # =========================================================================

    async def list_credit_awards(self, affiliate_id: str) -> List[Row]:
        return self._execute(
            "list_credit_awards",
            self._table("affiliate_store_credit_awards").select("*").eq(
                "affiliate_id", affiliate_id
            ).order("created_at", desc=True)
        ) or []

    async def get_credit_award(self, affiliate_id: str, store_id: str) -> Optional[Row]:
        return self._maybe_one(
            "get_credit_award",
            self._table("affiliate_store_credit_awards").select("*").eq(
                "affiliate_id", affiliate_id
            ).eq("referred_store_id", store_id)
        )

    async def insert_credit_award(self, row: Row) -> Optional[Row]:
        # ON CONFLICT DO NOTHING returns no rows for the losing writer
        data = self._execute(
            "insert_credit_award",
            self._table("affiliate_store_credit_awards").upsert(
                _to_db(row),
                on_conflict="affiliate_id,referred_store_id",
                ignore_duplicates=True,
            )
        )
        return _first(data)

    async def mark_credit_award_issued(self, award_id: str, issued_at: datetime) -> Optional[Row]:
        data = self._execute(
            "mark_credit_award_issued",
            self._table("affiliate_store_credit_awards").update(_to_db({
                "credits_issued": True,
                "credits_issued_at": issued_at,
                "updated_at": issued_at,
            })).eq("id", award_id).eq("credits_issued", False)
        )
        return _first(data)

    # =========================================================================
    # AUDIT TRAIL
    # =========================================================================

    async def insert_event(self, row: Row) -> None:
        self._execute("insert_event", self._table("affiliate_events").insert(_to_db(row)))

    # =========================================================================
    # ATOMIC LEDGER OPERATIONS
    # =========================================================================

    async def apply_delta(self, affiliate_id: str, field: str, delta: Decimal) -> Row:
        if field not in DELTA_FIELDS:
            raise ValueError(f"Column {field} cannot be changed through apply_delta")
        data = self._rpc("affiliate_apply_delta", {
            "p_affiliate_id": affiliate_id,
            "p_field": field,
            "p_delta": delta,
        })
        return _first(data)

    async def record_commission(self, commission: Row) -> Row:
        data = self._rpc("affiliate_record_commission", {"p_commission": commission})
        return _first(data)

    async def cancel_commission(
        self,
        commission_id: str,
        reason: Optional[str],
        now: datetime
    ) -> Optional[Row]:
        data = self._rpc("affiliate_cancel_commission", {
            "p_commission_id": commission_id,
            "p_reason": reason,
            "p_now": now,
        })
        row = _first(data)
        # A function returning a NULL composite comes back with every column null
        if not row or row.get("id") is None:
            return None
        return row

    async def settle_payout(
        self,
        payout_id: str,
        transfer_id: str,
        commission_ids: List[str],
        now: datetime
    ) -> Row:
        data = self._rpc("affiliate_settle_payout", {
            "p_payout_id": payout_id,
            "p_transfer_id": transfer_id,
            "p_commission_ids": commission_ids,
            "p_now": now,
        })
        return _first(data)
