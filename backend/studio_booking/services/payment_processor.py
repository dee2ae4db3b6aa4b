"""
Payment processor adapter.

The reconciliation engine talks to the processor only through
PaymentProcessor; StripeProcessor is the production implementation.
The stripe SDK is synchronous, so every call runs in a worker thread.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import stripe

from studio_booking.core.config import get_settings
from studio_booking.core.logging import get_logger
from studio_booking.domain.errors import InvalidSignatureError, PaymentProcessorError

logger = get_logger(__name__)


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: Optional[str]
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class CheckoutStatus:
    id: str
    payment_status: str  # "paid" | "unpaid" | "no_payment_required"
    status: Optional[str] = None  # "open" | "complete" | "expired"
    amount_total: Optional[int] = None
    payment_intent_id: Optional[str] = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ProcessorEvent:
    id: str
    type: str
    data: dict[str, Any]


def _timestamp(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class PaymentProcessor(ABC):
    @abstractmethod
    async def create_checkout_session(
        self,
        *,
        user_id: int,
        credits: int,
        amount: int,
        currency: str,
        customer_email: Optional[str] = None,
        package_id: Optional[str] = None,
    ) -> CheckoutSession:
        ...

    @abstractmethod
    async def retrieve_checkout_session(self, session_id: str) -> CheckoutStatus:
        ...

    @abstractmethod
    async def refund(self, payment_intent_id: str, amount: Optional[int] = None) -> str:
        """Issue a refund and return the processor's refund id."""
        ...

    @abstractmethod
    def construct_event(self, payload: bytes, signature: Optional[str]) -> ProcessorEvent:
        """Verify a webhook signature and parse the payload."""
        ...


class StripeProcessor(PaymentProcessor):
    def __init__(
        self,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        client_url: Optional[str] = None,
    ):
        settings = get_settings()
        self.api_key = api_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET
        self.client_url = (client_url or settings.CLIENT_URL).rstrip("/")
        self.unit_amount = settings.CREDIT_UNIT_AMOUNT

    async def create_checkout_session(
        self,
        *,
        user_id: int,
        credits: int,
        amount: int,
        currency: str,
        customer_email: Optional[str] = None,
        package_id: Optional[str] = None,
    ) -> CheckoutSession:
        metadata = {"userId": str(user_id), "credits": str(credits), "type": "credit_purchase"}
        if package_id:
            metadata["packageId"] = package_id
        params: dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [
                {
                    "price_data": {
                        "currency": currency,
                        "unit_amount": amount,
                        "product_data": {
                            "name": "Studio Credits",
                            "description": f"{credits} credits for booking classes",
                        },
                    },
                    "quantity": 1,
                }
            ],
            "success_url": f"{self.client_url}/payment/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{self.client_url}/payment/cancel",
            "metadata": metadata,
            "payment_intent_data": {"metadata": metadata},
        }
        if customer_email:
            params["customer_email"] = customer_email

        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.create, api_key=self.api_key, **params
            )
        except stripe.StripeError as e:
            logger.error("stripe_checkout_failed", user_id=user_id, credits=credits, error=str(e))
            raise PaymentProcessorError(f"Failed to create checkout session: {e}") from e

        return CheckoutSession(
            id=session["id"],
            url=session.get("url"),
            expires_at=_timestamp(session.get("expires_at")),
        )

    async def retrieve_checkout_session(self, session_id: str) -> CheckoutStatus:
        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.retrieve, session_id, api_key=self.api_key
            )
        except stripe.StripeError as e:
            logger.error("stripe_checkout_retrieve_failed", checkout_session_id=session_id, error=str(e))
            raise PaymentProcessorError(f"Failed to retrieve checkout session: {e}") from e

        payment_intent = session.get("payment_intent")
        if isinstance(payment_intent, dict):
            payment_intent = payment_intent.get("id")
        return CheckoutStatus(
            id=session["id"],
            payment_status=session.get("payment_status") or "unpaid",
            status=session.get("status"),
            amount_total=session.get("amount_total"),
            payment_intent_id=payment_intent,
            metadata=dict(session.get("metadata") or {}),
        )

    async def refund(self, payment_intent_id: str, amount: Optional[int] = None) -> str:
        params: dict[str, Any] = {"payment_intent": payment_intent_id}
        if amount is not None:
            params["amount"] = amount
        try:
            refund = await asyncio.to_thread(stripe.Refund.create, api_key=self.api_key, **params)
        except stripe.StripeError as e:
            logger.error("stripe_refund_failed", payment_intent_id=payment_intent_id, error=str(e))
            raise PaymentProcessorError(f"Refund failed: {e}") from e
        return refund["id"]

    def construct_event(self, payload: bytes, signature: Optional[str]) -> ProcessorEvent:
        if not self.webhook_secret:
            raise InvalidSignatureError("Webhook secret not configured")
        if not signature:
            raise InvalidSignatureError("Missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.warning("stripe_webhook_signature_invalid", error=str(e))
            raise InvalidSignatureError("Invalid webhook signature") from e
        except ValueError as e:
            raise InvalidSignatureError(f"Invalid webhook payload: {e}") from e

        body = json.loads(payload)
        return ProcessorEvent(
            id=body["id"],
            type=body["type"],
            data=body.get("data", {}).get("object", {}) or {},
        )
