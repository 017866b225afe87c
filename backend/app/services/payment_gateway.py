"""
Payment Gateway

Adapter contract the payout processor settles through, plus the Stripe
Connect implementation used in production.

The Stripe SDK is synchronous, so every call runs in the default executor
to keep the event loop free.
"""

import os
import asyncio
import logging
from abc import ABC, abstractmethod
from functools import partial
from typing import Optional, Dict, Any

import stripe

from app.models.affiliate import Affiliate
from app.services.affiliate_config import PAYOUT_CURRENCY
from app.services.affiliate_errors import GatewayError

logger = logging.getLogger(__name__)

stripe.api_key = os.getenv("STRIPE_SECRET_KEY")

CONNECT_ACCOUNT_COUNTRY = os.getenv("STRIPE_CONNECT_COUNTRY", "US")


class PaymentGatewayAdapter(ABC):
    """Connected accounts and transfers to affiliates."""

    @abstractmethod
    async def create_connected_account(self, affiliate: Affiliate) -> str:
        """Create a connected account and return its id."""

    @abstractmethod
    async def get_onboarding_link(self, account_id: str, return_url: str, refresh_url: str) -> str:
        ...

    @abstractmethod
    async def transfer(
        self,
        account_id: str,
        amount_minor_units: int,
        metadata: Dict[str, Any],
        idempotency_key: Optional[str] = None
    ) -> str:
        """
        Move funds to a connected account.

        Returns:
            The gateway's transfer id

        Raises:
            GatewayError: If the transfer is declined or the gateway fails
        """

    @abstractmethod
    async def get_account_status(self, account_id: str) -> Dict[str, bool]:
        """Returns {"onboarding_complete": bool, "payouts_enabled": bool}."""


class StripeConnectGateway(PaymentGatewayAdapter):
    """Stripe Connect Express accounts and platform transfers."""

    def __init__(self, currency: str = PAYOUT_CURRENCY):
        self.stripe = stripe
        self.currency = currency

    async def _call(self, operation: str, fn, **kwargs):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, partial(fn, **kwargs))
        except stripe.StripeError as e:
            logger.error(f"Stripe {operation} failed: {e}")
            raise GatewayError(
                f"Payment gateway error during {operation}: {e.user_message or str(e)}",
                details={"stripe_code": getattr(e, "code", None)}
            ) from e

    async def create_connected_account(self, affiliate: Affiliate) -> str:
        account = await self._call(
            "account creation",
            self.stripe.Account.create,
            type="express",
            country=CONNECT_ACCOUNT_COUNTRY,
            email=affiliate.email,
            capabilities={
                "transfers": {"requested": True},
            },
            business_type="individual",
            metadata={
                "affiliate_id": affiliate.id,
                "referral_code": affiliate.referral_code,
            },
            settings={
                "payouts": {
                    "schedule": {
                        "interval": "manual"
                    }
                }
            }
        )
        logger.info(f"Created Stripe Connect account {account.id} for affiliate {affiliate.id}")
        return account.id

    async def get_onboarding_link(self, account_id: str, return_url: str, refresh_url: str) -> str:
        account_link = await self._call(
            "onboarding link",
            self.stripe.AccountLink.create,
            account=account_id,
            refresh_url=refresh_url,
            return_url=return_url,
            type="account_onboarding",
        )
        return account_link.url

    async def transfer(
        self,
        account_id: str,
        amount_minor_units: int,
        metadata: Dict[str, Any],
        idempotency_key: Optional[str] = None
    ) -> str:
        params: Dict[str, Any] = {
            "amount": amount_minor_units,
            "currency": self.currency,
            "destination": account_id,
            "metadata": metadata,
            "description": "Affiliate commission payout",
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        transfer = await self._call("transfer", self.stripe.Transfer.create, **params)

        logger.info(
            f"Created transfer {transfer.id} to {account_id}, "
            f"amount={amount_minor_units} {self.currency}"
        )
        return transfer.id

    async def get_account_status(self, account_id: str) -> Dict[str, bool]:
        account = await self._call("account status", self.stripe.Account.retrieve, id=account_id)
        return {
            "onboarding_complete": bool(account.get("details_submitted")),
            "payouts_enabled": bool(account.get("payouts_enabled")),
        }
