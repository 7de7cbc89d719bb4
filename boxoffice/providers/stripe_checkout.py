"""Stripe Checkout: hosted checkout sessions, signed webhooks."""

from __future__ import annotations
import asyncio
import hashlib
import json
import logging
import os
from typing import Any, Dict, List, Mapping, Optional

import stripe

from ..errors import InvalidRequest, ProviderError, SignatureInvalid
from ..model.orm import PAY_CANCELLED, PAY_FAILED, PAY_PAID, PAY_PENDING
from .base import CheckoutSession, PaymentProvider, ProviderEvent

logger = logging.getLogger(__name__)

STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
STRIPE_WEBHOOK_TOLERANCE = int(os.environ.get("STRIPE_WEBHOOK_TOLERANCE",
                                              "300"))
APP_BASE_URL = os.environ.get("APP_BASE_URL",
                              "http://localhost:8000").rstrip("/")

# payment intent status -> canonical status; anything else is in flight
INTENT_STATUSES = {
    "succeeded": PAY_PAID,
    "canceled": PAY_CANCELLED,
    "requires_payment_method": PAY_FAILED,
}

SESSION_EVENTS = (
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
    "checkout.session.async_payment_failed",
    "checkout.session.expired",
)


def idempotency_key(payment_id: str, params: Dict[str, Any]) -> str:
    """
    Stable for a retry of the same checkout, different as soon as anything
    the session is built from changes (amount, items, buyer, urls). Stripe
    answers a reused key with other parameters with an error.
    """
    blob = json.dumps(params, sort_keys=True, separators=(",", ":"))
    digest = hashlib.sha256(blob.encode()).hexdigest()[:24]
    return f"checkout:{payment_id}:{digest}"


def classify_session(session: Dict[str, Any],
                     event_type: Optional[str] = None) -> str:
    """
    Effective status of a checkout session. An expanded payment intent is
    more precise than the session's payment_status, so it wins when present.
    """
    if event_type == "checkout.session.async_payment_failed":
        return PAY_FAILED

    pi = session.get("payment_intent")
    if isinstance(pi, dict) and pi.get("status"):
        status = INTENT_STATUSES.get(pi["status"])
        if status is not None:
            return status

    pay_status = session.get("payment_status")
    if pay_status in ("paid", "no_payment_required"):
        return PAY_PAID
    if (event_type == "checkout.session.expired"
            or session.get("status") == "expired"):
        return PAY_CANCELLED
    return PAY_PENDING


class StripeCheckout(PaymentProvider):
    name = "stripe"

    def _require_key(self) -> str:
        if not STRIPE_SECRET_KEY:
            raise ProviderError(self.name, "STRIPE_SECRET_KEY is not set")
        return STRIPE_SECRET_KEY

    async def create_checkout(
            self, payment: Dict[str, Any], items: List[Dict[str, Any]]
    ) -> CheckoutSession:
        api_key = self._require_key()
        currency = payment["currency"].lower()
        params: Dict[str, Any] = dict(
            mode="payment",
            customer_email=payment["buyer_email"],
            success_url=(f"{APP_BASE_URL}/checkout/confirm"
                         "?session_id={CHECKOUT_SESSION_ID}"),
            cancel_url=(f"{APP_BASE_URL}/checkout/{payment['event_id']}"
                        "?canceled=1"),
            metadata={
                "hold_id": payment["hold_id"],
                "payment_id": payment["id"],
                "event_id": payment["event_id"],
                "amount": str(int(payment["amount"])),
            },
            line_items=[
                {
                    "quantity": int(it["qty"]),
                    "price_data": {
                        "currency": currency,
                        "unit_amount": int(it["unit_price"]),
                        "product_data": {
                            "name": (f"{payment['event_title']} - "
                                     f"{it['ticket_type_name']}"),
                        },
                    },
                }
                for it in items
            ],
        )
        key = idempotency_key(payment["id"], params)
        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.create,
                api_key=api_key, idempotency_key=key, **params,
            )
        except stripe.StripeError as e:
            logger.error("stripe checkout for payment %s failed: %s",
                         payment["id"], e)
            raise ProviderError(self.name, str(e))
        return CheckoutSession(redirect_url=session.url,
                               provider_ref=session.id)

    async def parse_webhook(
            self, payload: bytes, headers: Mapping[str, str]
    ) -> Optional[ProviderEvent]:
        if not STRIPE_WEBHOOK_SECRET:
            raise ProviderError(self.name, "STRIPE_WEBHOOK_SECRET is not set")
        sig = headers.get("stripe-signature") or ""
        body = payload.decode("utf-8", errors="replace")
        try:
            stripe.WebhookSignature.verify_header(
                body, sig, STRIPE_WEBHOOK_SECRET, STRIPE_WEBHOOK_TOLERANCE
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("stripe webhook signature rejected: %s", e)
            raise SignatureInvalid()
        try:
            event = json.loads(body)
        except json.JSONDecodeError:
            raise InvalidRequest("invalid JSON")

        etype = event.get("type")
        if etype not in SESSION_EVENTS:
            logger.debug("stripe event %s ignored", etype)
            return None

        obj = (event.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}
        return ProviderEvent(
            provider=self.name,
            external_event_id=event["id"],
            status=classify_session(obj, etype),
            payment_id=metadata.get("payment_id"),
            provider_ref=obj.get("id"),
        )

    async def fetch_status(self, provider_ref: str) -> Optional[str]:
        api_key = self._require_key()
        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.retrieve, provider_ref,
                api_key=api_key, expand=["payment_intent"],
            )
        except stripe.StripeError as e:
            logger.warning("stripe session %s lookup failed: %s",
                           provider_ref, e)
            raise ProviderError(self.name, str(e))
        return classify_session(session.to_dict())
