"""
Pytest configuration and shared fixtures for the affiliate engine tests.

The services run against an in-memory AffiliateStore. Every store call
yields to the event loop once before doing its work, so asyncio.gather
over two service calls interleaves them the way two requests would.
Each call then runs without further awaits, like a single SQL statement
or Postgres function.
"""
import asyncio
import uuid
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, Any, Optional, List, Iterable
from unittest.mock import AsyncMock, MagicMock

from app.services.affiliate_errors import ConflictError, InvalidStateError, NotFoundError
from app.services.affiliate_notifications import AffiliateNotifier
from app.services.affiliate_service import AffiliateService
from app.services.affiliate_store import AffiliateStore, BALANCE_FIELDS, DELTA_FIELDS
from app.services.credit_service import CreditLedger
from app.services.payment_gateway import PaymentGatewayAdapter


def _norm(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _norm(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_norm(v) for v in value]
    return value


def _new_id() -> str:
    return str(uuid.uuid4())


def _newest_first(rows: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Order like the Supabase adapter: created_at DESC, undated rows last."""
    return sorted(
        rows,
        key=lambda r: (r.get("created_at") is not None, r.get("created_at") or 0),
        reverse=True,
    )


class FixedClock:
    """Callable clock the tests move forward explicitly."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class InMemoryAffiliateStore(AffiliateStore):
    """AffiliateStore over dicts, with per-operation failure injection."""

    def __init__(self):
        self.affiliates: Dict[str, Dict[str, Any]] = {}
        self.tiers: Dict[str, Dict[str, Any]] = {}
        self.users: Dict[str, Dict[str, Any]] = {}
        self.stores: Dict[str, Dict[str, Any]] = {}
        self.referrals: Dict[str, Dict[str, Any]] = {}
        self.commissions: Dict[str, Dict[str, Any]] = {}
        self.payouts: Dict[str, Dict[str, Any]] = {}
        self.credit_awards: Dict[str, Dict[str, Any]] = {}
        self.events: List[Dict[str, Any]] = []
        self.failures: Dict[str, Exception] = {}

    async def _enter(self, operation: str) -> None:
        await asyncio.sleep(0)
        error = self.failures.get(operation)
        if error:
            raise error

    # ---- seeding -----------------------------------------------------------

    def add_tier(self, **fields) -> Dict[str, Any]:
        row = {"id": _new_id(), "commission_type": "percentage", "commission_rate": Decimal("0.10")}
        row.update(_norm(fields))
        self.tiers[row["id"]] = row
        return dict(row)

    def add_user(self, email: str, **fields) -> Dict[str, Any]:
        row = {"id": _new_id(), "email": email}
        row.update(fields)
        self.users[row["id"]] = row
        return dict(row)

    def add_store(self, **fields) -> Dict[str, Any]:
        row = {"id": _new_id(), "slug": None, "published": False, "published_at": None, "created_at": None}
        row.update(fields)
        self.stores[row["id"]] = row
        return dict(row)

    def add_affiliate(self, **fields) -> Dict[str, Any]:
        row = {
            "id": _new_id(),
            "email": f"affiliate-{len(self.affiliates)}@example.com",
            "referral_code": f"CODE{len(self.affiliates):04d}",
            "status": "approved",
            "reward_type": "commission",
            "total_referrals": 0,
            "total_conversions": 0,
            "total_earnings": Decimal("0.00"),
            "pending_balance": Decimal("0.00"),
            "total_paid_out": Decimal("0.00"),
            "stripe_connect_account_id": None,
            "stripe_onboarding_complete": False,
            "stripe_payouts_enabled": False,
        }
        row.update(_norm(fields))
        self.affiliates[row["id"]] = row
        return dict(row)

    def add_referral(self, **fields) -> Dict[str, Any]:
        row = {
            "id": _new_id(),
            "referred_user_id": None,
            "referred_store_id": None,
            "status": "signed_up",
            "total_purchases": Decimal("0"),
        }
        row.update(_norm(fields))
        self.referrals[row["id"]] = row
        return dict(row)

    def add_commission(self, **fields) -> Dict[str, Any]:
        row = {
            "id": _new_id(),
            "commission_type": "percentage",
            "commission_rate": Decimal("0.10"),
            "status": "pending",
            "source_transaction_id": None,
        }
        row.update(_norm(fields))
        self.commissions[row["id"]] = row
        return dict(row)

    # ---- affiliates & tiers -------------------------------------------------

    async def get_affiliate(self, affiliate_id: str) -> Optional[Dict[str, Any]]:
        await self._enter("get_affiliate")
        row = self.affiliates.get(affiliate_id)
        return dict(row) if row else None

    async def get_affiliate_by_code(self, referral_code: str) -> Optional[Dict[str, Any]]:
        await self._enter("get_affiliate_by_code")
        for row in self.affiliates.values():
            if row["referral_code"] == referral_code:
                return dict(row)
        return None

    async def get_affiliate_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        await self._enter("get_affiliate_by_email")
        for row in self.affiliates.values():
            if row["email"] == email:
                return dict(row)
        return None

    async def list_affiliates(self, status=None, reward_type=None, with_connect_account=False):
        await self._enter("list_affiliates")
        rows = list(self.affiliates.values())
        if status:
            rows = [r for r in rows if r["status"] == _norm(status)]
        if reward_type:
            rows = [r for r in rows if r["reward_type"] == _norm(reward_type)]
        if with_connect_account:
            rows = [r for r in rows if r.get("stripe_connect_account_id")]
        return [dict(r) for r in rows]

    async def insert_affiliate(self, row):
        await self._enter("insert_affiliate")
        row = _norm(row)
        for existing in self.affiliates.values():
            if existing["email"] == row["email"] or existing["referral_code"] == row["referral_code"]:
                raise ConflictError("insert_affiliate: duplicate record")
        seeded = self.add_affiliate(**row)
        return seeded

    async def update_affiliate(self, affiliate_id, fields):
        await self._enter("update_affiliate")
        row = self.affiliates.get(affiliate_id)
        if not row:
            return None
        row.update(_norm(fields))
        return dict(row)

    async def get_tier(self, tier_id):
        await self._enter("get_tier")
        row = self.tiers.get(tier_id)
        return dict(row) if row else None

    async def get_tier_by_code(self, code):
        await self._enter("get_tier_by_code")
        for row in self.tiers.values():
            if row.get("code") == code:
                return dict(row)
        return None

    # ---- users & stores ------------------------------------------------------

    async def get_user(self, user_id):
        await self._enter("get_user")
        row = self.users.get(user_id)
        return {"id": row["id"], "email": row["email"]} if row else None

    async def get_stores(self, store_ids: Iterable[str]):
        await self._enter("get_stores")
        return [dict(self.stores[s]) for s in store_ids if s in self.stores]

    # ---- referrals -----------------------------------------------------------

    async def get_referral_by_user(self, user_id):
        await self._enter("get_referral_by_user")
        for row in self.referrals.values():
            if row.get("referred_user_id") == user_id:
                return dict(row)
        return None

    async def find_click_referral(self, affiliate_id, email, now):
        await self._enter("find_click_referral")
        matches = [
            r for r in self.referrals.values()
            if r["affiliate_id"] == affiliate_id
            and r.get("referred_email") == email
            and r["status"] == "clicked"
            and r.get("referred_user_id") is None
            and r.get("cookie_expires_at") and r["cookie_expires_at"] > now
        ]
        matches.sort(key=lambda r: r["created_at"], reverse=True)
        return dict(matches[0]) if matches else None

    async def insert_referral(self, row):
        await self._enter("insert_referral")
        row = _norm(row)
        user_id = row.get("referred_user_id")
        if user_id and any(r.get("referred_user_id") == user_id for r in self.referrals.values()):
            raise ConflictError("insert_referral: duplicate record")
        return self.add_referral(**row)

    async def update_referral(self, referral_id, fields, expected_statuses=None, require_unclaimed=False):
        await self._enter("update_referral")
        row = self.referrals.get(referral_id)
        if not row:
            return None
        if expected_statuses is not None and row["status"] not in _norm(list(expected_statuses)):
            return None
        if require_unclaimed and row.get("referred_user_id") is not None:
            return None
        fields = _norm(fields)
        user_id = fields.get("referred_user_id")
        if user_id and any(
            r.get("referred_user_id") == user_id and r["id"] != referral_id
            for r in self.referrals.values()
        ):
            raise ConflictError("update_referral: duplicate record")
        row.update(fields)
        return dict(row)

    async def list_referrals(self, affiliate_id, with_store_only=False, limit=None):
        await self._enter("list_referrals")
        rows = [r for r in self.referrals.values() if r["affiliate_id"] == affiliate_id]
        if with_store_only:
            rows = [r for r in rows if r.get("referred_store_id")]
        rows = _newest_first(rows)
        if limit:
            rows = rows[:limit]
        return [dict(r) for r in rows]

    # ---- commissions ---------------------------------------------------------

    async def get_commission(self, commission_id):
        await self._enter("get_commission")
        row = self.commissions.get(commission_id)
        return dict(row) if row else None

    async def get_commission_by_transaction(self, transaction_id):
        await self._enter("get_commission_by_transaction")
        for row in self.commissions.values():
            if row.get("source_transaction_id") == transaction_id:
                return dict(row)
        return None

    async def list_commissions(self, affiliate_id=None, status=None, hold_until_before=None, limit=None):
        await self._enter("list_commissions")
        rows = list(self.commissions.values())
        if affiliate_id:
            rows = [r for r in rows if r["affiliate_id"] == affiliate_id]
        if status:
            rows = [r for r in rows if r["status"] == _norm(status)]
        if hold_until_before:
            rows = [r for r in rows if r.get("hold_until") and r["hold_until"] <= hold_until_before]
        rows = _newest_first(rows)
        if limit:
            rows = rows[:limit]
        return [dict(r) for r in rows]

    async def update_commission(self, commission_id, fields, expected_statuses):
        await self._enter("update_commission")
        row = self.commissions.get(commission_id)
        if not row or row["status"] not in _norm(list(expected_statuses)):
            return None
        row.update(_norm(fields))
        return dict(row)

    # ---- payouts -------------------------------------------------------------

    async def insert_payout(self, row):
        await self._enter("insert_payout")
        row = _norm(row)
        row.setdefault("id", _new_id())
        row["commission_ids"] = list(row.get("commission_ids") or [])
        self.payouts[row["id"]] = row
        return dict(row)

    async def get_payout(self, payout_id):
        await self._enter("get_payout")
        row = self.payouts.get(payout_id)
        return dict(row) if row else None

    async def list_payouts(self, affiliate_id=None, statuses=None):
        await self._enter("list_payouts")
        rows = list(self.payouts.values())
        if affiliate_id:
            rows = [r for r in rows if r["affiliate_id"] == affiliate_id]
        if statuses is not None:
            wanted = _norm(list(statuses))
            rows = [r for r in rows if r["status"] in wanted]
        return [dict(r) for r in _newest_first(rows)]

    async def transition_payout(self, payout_id, from_status, to_status, fields=None):
        await self._enter("transition_payout")
        row = self.payouts.get(payout_id)
        if not row or row["status"] != _norm(from_status):
            return None
        row.update(_norm(fields or {}))
        row["status"] = _norm(to_status)
        return dict(row)

    # ---- credit awards -------------------------------------------------------

    async def list_credit_awards(self, affiliate_id):
        await self._enter("list_credit_awards")
        rows = [r for r in self.credit_awards.values() if r["affiliate_id"] == affiliate_id]
        return [dict(r) for r in _newest_first(rows)]

    async def get_credit_award(self, affiliate_id, store_id):
        await self._enter("get_credit_award")
        for row in self.credit_awards.values():
            if row["affiliate_id"] == affiliate_id and row["referred_store_id"] == store_id:
                return dict(row)
        return None

    async def insert_credit_award(self, row):
        await self._enter("insert_credit_award")
        row = _norm(row)
        for existing in self.credit_awards.values():
            if (existing["affiliate_id"], existing["referred_store_id"]) == (row["affiliate_id"], row["referred_store_id"]):
                return None
        row.setdefault("id", _new_id())
        row.setdefault("credits_issued", False)
        self.credit_awards[row["id"]] = row
        return dict(row)

    async def mark_credit_award_issued(self, award_id, issued_at):
        await self._enter("mark_credit_award_issued")
        row = self.credit_awards.get(award_id)
        if not row or row.get("credits_issued"):
            return None
        row.update({"credits_issued": True, "credits_issued_at": issued_at, "updated_at": issued_at})
        return dict(row)

    # ---- audit ---------------------------------------------------------------

    async def insert_event(self, row):
        await self._enter("insert_event")
        self.events.append(_norm(row))

    # ---- atomic ledger operations ----------------------------------------------

    def _delta(self, affiliate_id: str, field: str, delta) -> Dict[str, Any]:
        if field not in DELTA_FIELDS:
            raise ValueError(f"Column {field} cannot be changed through apply_delta")
        row = self.affiliates.get(affiliate_id)
        if not row:
            raise NotFoundError(f"affiliate {affiliate_id} not found")
        value = (row.get(field) or 0) + delta
        if field in BALANCE_FIELDS:
            value = max(Decimal("0.00"), Decimal(value))
        row[field] = value
        return row

    async def apply_delta(self, affiliate_id, field, delta):
        await self._enter("apply_delta")
        return dict(self._delta(affiliate_id, field, delta))

    async def record_commission(self, commission):
        await self._enter("record_commission")
        row = _norm(commission)
        if any(c.get("source_transaction_id") == row["source_transaction_id"] for c in self.commissions.values()):
            raise ConflictError("record_commission: duplicate record")
        self.commissions[row["id"]] = row

        referral = self.referrals[row["referral_id"]]
        if referral["status"] == "signed_up":
            referral.update({
                "status": "converted",
                "first_purchase_at": row["created_at"],
                "first_purchase_amount": row["purchase_amount"],
                "total_purchases": row["purchase_amount"],
            })
            self._delta(row["affiliate_id"], "total_conversions", 1)
        else:
            referral["total_purchases"] = (referral.get("total_purchases") or Decimal("0")) + row["purchase_amount"]

        self._delta(row["affiliate_id"], "total_earnings", row["commission_amount"])
        self._delta(row["affiliate_id"], "pending_balance", row["commission_amount"])
        return dict(row)

    async def cancel_commission(self, commission_id, reason, now):
        await self._enter("cancel_commission")
        row = self.commissions.get(commission_id)
        if not row or row["status"] not in ("pending", "approved"):
            return None
        row.update({"status": "cancelled", "notes": reason, "updated_at": now})
        self._delta(row["affiliate_id"], "pending_balance", -row["commission_amount"])
        self._delta(row["affiliate_id"], "total_earnings", -row["commission_amount"])
        return dict(row)

    async def settle_payout(self, payout_id, transfer_id, commission_ids, now):
        await self._enter("settle_payout")
        row = self.payouts.get(payout_id)
        if not row or row["status"] != "processing":
            raise InvalidStateError(f"payout {payout_id} is not processing")
        row.update({"status": "completed", "stripe_transfer_id": transfer_id, "completed_at": now})
        self._delta(row["affiliate_id"], "pending_balance", -row["amount"])
        self._delta(row["affiliate_id"], "total_paid_out", row["amount"])
        for commission_id in commission_ids:
            commission = self.commissions.get(commission_id)
            if commission and commission["affiliate_id"] == row["affiliate_id"] and commission["status"] == "approved":
                commission.update({"status": "paid", "payout_id": payout_id, "paid_at": now})
        return dict(row)


class FakeGateway(PaymentGatewayAdapter):
    """Records transfers; error/delay simulate a failing or hanging gateway."""

    def __init__(self):
        self.transfers: List[Dict[str, Any]] = []
        self.accounts: List[str] = []
        self.error: Optional[Exception] = None
        self.delay: float = 0
        self.status = {"onboarding_complete": True, "payouts_enabled": True}

    async def create_connected_account(self, affiliate):
        await asyncio.sleep(0)
        account_id = f"acct_{len(self.accounts) + 1}"
        self.accounts.append(account_id)
        return account_id

    async def get_onboarding_link(self, account_id, return_url, refresh_url):
        await asyncio.sleep(0)
        return f"https://connect.example.com/{account_id}"

    async def transfer(self, account_id, amount_minor_units, metadata, idempotency_key=None):
        await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        self.transfers.append({
            "account_id": account_id,
            "amount": amount_minor_units,
            "metadata": metadata,
            "idempotency_key": idempotency_key,
        })
        return f"tr_{len(self.transfers)}"

    async def get_account_status(self, account_id):
        await asyncio.sleep(0)
        return dict(self.status)


class FakeCreditLedger(CreditLedger):
    """Credit ledger that applies each idempotency key once.

    error fails the call before anything is granted; error_after_commit
    grants first and then fails, like a lost response.
    """

    def __init__(self):
        self.awards: List[Dict[str, Any]] = []
        self.calls = 0
        self.error: Optional[Exception] = None
        self.error_after_commit: Optional[Exception] = None
        self._keys: set = set()

    async def award_bonus_credits(self, user_id, context_id, amount, reason, idempotency_key=None):
        await asyncio.sleep(0)
        self.calls += 1
        if self.error:
            raise self.error
        if idempotency_key is None or idempotency_key not in self._keys:
            if idempotency_key is not None:
                self._keys.add(idempotency_key)
            self.awards.append({"user_id": user_id, "context_id": context_id, "amount": amount, "reason": reason})
        if self.error_after_commit:
            raise self.error_after_commit
        return amount


@pytest.fixture
def clock():
    """Fixed, timezone-aware 'now' for deterministic tests"""
    return FixedClock(datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return InMemoryAffiliateStore()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def credit_ledger():
    return FakeCreditLedger()


@pytest.fixture
def inngest_client():
    """Mock Inngest client capturing sent events"""
    client = MagicMock()
    client.send = AsyncMock(return_value=["event-id"])
    return client


@pytest.fixture
def notifier(inngest_client):
    return AffiliateNotifier(client=inngest_client)


@pytest.fixture
def service(store, gateway, credit_ledger, notifier, clock):
    return AffiliateService(
        store=store,
        gateway=gateway,
        credits=credit_ledger,
        notifier=notifier,
        clock=clock,
    )


@pytest.fixture
def affiliate(store):
    """Approved commission affiliate with payouts enabled"""
    return store.add_affiliate(
        email="jane@example.com",
        first_name="Jane",
        referral_code="JANE1234",
        stripe_connect_account_id="acct_jane",
        stripe_onboarding_complete=True,
        stripe_payouts_enabled=True,
    )


@pytest.fixture
def sent_events(inngest_client):
    """Names of the Inngest events sent so far"""
    def _names() -> List[str]:
        return [call.args[0].name for call in inngest_client.send.await_args_list]
    return _names
