"""
Credit Service

Platform credits held by users. The affiliate engine only ever adds credits
(store owner rewards); spending them is the platform's business.

Key principles:
- The balance change and its transaction log row are one Postgres function
  call (award_bonus_credits)
- An idempotency key makes a repeated award a no-op, so a call whose
  response was lost can be retried
"""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional

import httpx
from postgrest.exceptions import APIError
from supabase import Client

from app.database import get_supabase_service
from app.services.affiliate_errors import NotFoundError, PersistenceError

logger = logging.getLogger(__name__)

SQLSTATE_NOT_FOUND = "AF404"


class CreditLedger(ABC):
    """Grants platform credits to a user."""

    @abstractmethod
    async def award_bonus_credits(
        self,
        user_id: str,
        context_id: Optional[str],
        amount: Decimal,
        reason: str,
        idempotency_key: Optional[str] = None
    ) -> Decimal:
        """
        Add bonus credits to a user's balance.

        A second call with the same idempotency_key credits nothing and
        returns the current balance.

        Returns:
            The user's balance after the award

        Raises:
            NotFoundError: Unknown user
            PersistenceError: The outcome is unknown; retry with the same key
        """


class CreditService(CreditLedger):
    """
    Supabase-backed credit ledger.

    Usage:
        credit_service = get_credit_service()
        balance = await credit_service.award_bonus_credits(
            user_id, store_id, Decimal("30"), "Store owner referral reward",
            idempotency_key=award_id
        )
    """

    def __init__(self, supabase: Optional[Client] = None):
        self.supabase = supabase or get_supabase_service()

    async def award_bonus_credits(
        self,
        user_id: str,
        context_id: Optional[str],
        amount: Decimal,
        reason: str,
        idempotency_key: Optional[str] = None
    ) -> Decimal:
        if self.supabase is None:
            raise PersistenceError("Database connection not available")

        try:
            response = self.supabase.rpc("award_bonus_credits", {
                "p_user_id": user_id,
                "p_amount": str(amount),
                "p_reference_type": "store",
                "p_reference_id": context_id,
                "p_description": reason,
                "p_idempotency_key": idempotency_key,
            }).execute()
        except APIError as e:
            if e.code == SQLSTATE_NOT_FOUND:
                raise NotFoundError(f"User {user_id} not found") from e
            logger.error(f"Error awarding {amount} credits to user {user_id}: {e.message}")
            raise PersistenceError("Failed to award bonus credits", {"db_code": e.code}) from e
        except httpx.HTTPError as e:
            logger.error(f"Error awarding {amount} credits to user {user_id}: {e}")
            raise PersistenceError("Failed to award bonus credits: storage unavailable") from e

        balance_after = Decimal(str(response.data)) if response.data is not None else amount

        logger.info(f"Awarded {amount} bonus credits to user {user_id} (balance={balance_after})")
        return balance_after


# Singleton instance
_credit_service: Optional[CreditService] = None


def get_credit_service() -> CreditService:
    """Get or create credit service instance."""
    global _credit_service
    if _credit_service is None:
        _credit_service = CreditService()
    return _credit_service
