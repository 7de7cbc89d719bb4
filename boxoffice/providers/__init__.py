from typing import Optional
import httpx

from ..errors import InvalidRequest
from .base import CheckoutSession, PaymentProvider, ProviderEvent
from .flow import Flow
from .mockpay import MockPay
from .stripe_checkout import StripeCheckout
from .transfer import BankTransfer
from .webpay import Webpay

PROVIDERS = ("mockpay", "stripe", "flow", "webpay", "transfer")


# Factory keeps server.py free of provider constructors:
def get_provider(name: str,
                 http: Optional[httpx.AsyncClient] = None) -> PaymentProvider:
    if name == "mockpay":
        return MockPay()
    if name == "stripe":
        return StripeCheckout()
    if name == "transfer":
        return BankTransfer()
    if name in ("flow", "webpay"):
        if http is None:
            raise RuntimeError(f"{name} provider requires http=AsyncClient")
        return Flow(http) if name == "flow" else Webpay(http)
    raise InvalidRequest(f"unknown payment provider {name!r}",
                         allowed=list(PROVIDERS))


__all__ = ["CheckoutSession", "PaymentProvider", "ProviderEvent",
           "PROVIDERS", "get_provider"]
