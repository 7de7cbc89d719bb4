"""
Webpay Plus (Transbank) over its REST API.

The buyer comes back to the return URL with either `token_ws` (the
transaction must be committed to learn the outcome) or `TBK_TOKEN` (the
buyer aborted). Both arrive on the webhook route.
"""

from __future__ import annotations
import logging
import os
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import parse_qsl

import httpx

from ..errors import InvalidRequest, ProviderError
from ..model.orm import PAY_CANCELLED, PAY_FAILED, PAY_PAID, PAY_PENDING
from .base import CheckoutSession, PaymentProvider, ProviderEvent

logger = logging.getLogger(__name__)

# defaults are Transbank's public integration credentials
WEBPAY_COMMERCE_CODE = os.environ.get("WEBPAY_COMMERCE_CODE", "597055555532")
WEBPAY_API_KEY = os.environ.get(
    "WEBPAY_API_KEY",
    "579B532A7440BB0C9079DED94D31EA1615BACEB56610332264630D42D0A36B1C",
)
WEBPAY_BASE_URL = os.environ.get(
    "WEBPAY_BASE_URL", "https://webpay3gint.transbank.cl"
).rstrip("/")
APP_BASE_URL = os.environ.get("APP_BASE_URL",
                              "http://localhost:8000").rstrip("/")

TX_PATH = "/rswebpaytransaction/api/webpay/v1.2/transactions"

# buy_order is limited to 26 characters
MAX_BUY_ORDER = 26


def classify_transaction(tx: Dict[str, Any]) -> str:
    status = str(tx.get("status") or "").upper()
    if status == "AUTHORIZED":
        try:
            approved = int(tx.get("response_code")) == 0
        except (TypeError, ValueError):
            approved = False
        return PAY_PAID if approved else PAY_FAILED
    if status in ("FAILED", "REVERSED", "NULLIFIED"):
        return PAY_FAILED
    # INITIALIZED: not committed yet
    return PAY_PENDING


class Webpay(PaymentProvider):
    name = "webpay"

    def __init__(self, http: httpx.AsyncClient,
                 commerce_code: str = WEBPAY_COMMERCE_CODE,
                 api_key: str = WEBPAY_API_KEY,
                 base_url: str = WEBPAY_BASE_URL):
        self.http = http
        self.commerce_code = commerce_code
        self.api_key = api_key
        self.base_url = base_url

    def _headers(self) -> Dict[str, str]:
        return {
            "Tbk-Api-Key-Id": self.commerce_code,
            "Tbk-Api-Key-Secret": self.api_key,
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str,
                       body: Optional[Dict[str, Any]] = None
                       ) -> httpx.Response:
        try:
            return await self.http.request(
                method, f"{self.base_url}{TX_PATH}{path}",
                json=body, headers=self._headers(),
            )
        except httpx.HTTPError as e:
            raise ProviderError(self.name, f"{method} {path or '/'}: {e}")

    @staticmethod
    def _json(resp: httpx.Response, what: str) -> Dict[str, Any]:
        if resp.status_code >= 400:
            raise ProviderError(
                "webpay", f"{what} failed: HTTP {resp.status_code} "
                          f"{resp.text[:200]}"
            )
        try:
            return resp.json()
        except ValueError:
            raise ProviderError("webpay", f"{what}: invalid JSON response")

    async def create_checkout(
            self, payment: Dict[str, Any], items: List[Dict[str, Any]]
    ) -> CheckoutSession:
        resp = await self._request("POST", "", {
            "buy_order": payment["id"][:MAX_BUY_ORDER],
            "session_id": payment["hold_id"],
            "amount": int(payment["amount"]),
            "return_url": f"{APP_BASE_URL}/payments/webpay/webhook",
        })
        data = self._json(resp, "create")
        token = str(data.get("token") or "")
        url = str(data.get("url") or "")
        if not token or not url:
            raise ProviderError(self.name, "create: missing token/url")
        return CheckoutSession(redirect_url=f"{url}?token_ws={token}",
                               provider_ref=token)

    async def get_transaction(self, token: str) -> Dict[str, Any]:
        return self._json(await self._request("GET", f"/{token}"), "status")

    async def commit(self, token: str) -> Dict[str, Any]:
        resp = await self._request("PUT", f"/{token}")
        if 400 <= resp.status_code < 500:
            # already committed (buyer reloaded the return page): read it
            logger.info("webpay commit of %s refused (HTTP %d), reading "
                        "status instead", token, resp.status_code)
            return await self.get_transaction(token)
        return self._json(resp, "commit")

    async def parse_webhook(
            self, payload: bytes, headers: Mapping[str, str]
    ) -> Optional[ProviderEvent]:
        params = dict(parse_qsl(payload.decode("utf-8", errors="replace")))
        token_ws = (params.get("token_ws") or "").strip()
        tbk_token = (params.get("TBK_TOKEN") or "").strip()

        if tbk_token and not token_ws:
            # buyer aborted on the Webpay form
            order = (params.get("TBK_ORDEN_COMPRA") or "").strip()
            return ProviderEvent(
                provider=self.name,
                external_event_id=f"abort:{tbk_token}",
                status=PAY_CANCELLED,
                payment_id=order or None,
                provider_ref=tbk_token,
            )
        if not token_ws:
            raise InvalidRequest("missing token_ws")

        tx = await self.commit(token_ws)
        return ProviderEvent(
            provider=self.name,
            external_event_id=f"commit:{token_ws}",
            status=classify_transaction(tx),
            payment_id=str(tx.get("buy_order") or "") or None,
            provider_ref=token_ws,
        )

    async def fetch_status(self, provider_ref: str) -> Optional[str]:
        return classify_transaction(await self.get_transaction(provider_ref))
