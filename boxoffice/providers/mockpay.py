from typing import Any, Dict, List, Mapping, Optional
import base64
import hashlib
import hmac
import json
import os
import time
import uuid

from ..errors import InvalidRequest, SignatureInvalid
from ..model.orm import PAY_CANCELLED, PAY_FAILED, PAY_PAID, PAY_PENDING
from .base import CheckoutSession, PaymentProvider, ProviderEvent

MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")

# mock event kind -> canonical payment status
KINDS = {
    "succeeded": PAY_PAID,
    "failed": PAY_FAILED,
    "canceled": PAY_CANCELLED,
    "pending": PAY_PENDING,
}


def sign(payload: bytes) -> str:
    mac = hmac.new(MOCK_SECRET.encode(), payload, hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


def build_event(payment: Dict[str, Any], kind: str) -> bytes:
    """Serialized event the mock provider would POST to our webhook."""
    if kind not in KINDS:
        raise InvalidRequest(f"invalid kind {kind!r}",
                             allowed=sorted(KINDS))
    return json.dumps({
        "type": f"payment.{kind}",
        "payment_id": payment["id"],
        "provider_ref": payment.get("provider_ref"),
        "amount": int(payment["amount"]),
        "currency": payment["currency"],
        "created_at": int(time.time()),
        "idempotency_key": f"evt_{uuid.uuid4().hex}",
    }).encode()


def page_view(payment: Dict[str, Any]) -> Dict[str, Any]:
    """What the hosted mock checkout page shows the buyer."""
    return {
        "payment_id": payment["id"],
        "event_title": payment["event_title"],
        "amount": int(payment["amount"]),
        "currency": payment["currency"],
        "status": payment["status"],
        "emit_url": f"/mockpay/{payment['id']}/emit",
        "outcomes": sorted(KINDS),
    }


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentProvider):
    name = "mockpay"

    async def create_checkout(
            self, payment: Dict[str, Any], items: List[Dict[str, Any]]
    ) -> CheckoutSession:
        ref = payment.get("provider_ref") or f"mock_{uuid.uuid4().hex}"
        return CheckoutSession(
            redirect_url=f"/mockpay/{payment['id']}",
            provider_ref=ref,
        )

    async def parse_webhook(
            self, payload: bytes, headers: Mapping[str, str]
    ) -> Optional[ProviderEvent]:
        sig = headers.get("x-mockpay-signature")
        if not sig or not hmac.compare_digest(sign(payload), sig):
            raise SignatureInvalid()
        try:
            event = json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise InvalidRequest("invalid JSON")

        kind = str(event.get("type", "")).split(".")[-1]
        evt_id = event.get("idempotency_key")
        if not evt_id:
            raise InvalidRequest("missing idempotency_key")
        return ProviderEvent(
            provider=self.name,
            external_event_id=evt_id,
            status=KINDS.get(kind, PAY_PENDING),
            payment_id=event.get("payment_id"),
            provider_ref=event.get("provider_ref"),
        )

    async def fetch_status(self, provider_ref: str) -> Optional[str]:
        # no API to ask; only webhooks move mock payments
        return None
