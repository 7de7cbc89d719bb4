from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from ..model.orm import PAYMENT_STATUSES


# ----------------------------
# Payment Provider Interface
# ----------------------------
@dataclass
class CheckoutSession:
    # where to send the buyer; None for offline methods (bank transfer)
    redirect_url: Optional[str]
    provider_ref: Optional[str]
    instructions: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderEvent:
    """A provider notification, already verified and classified."""
    provider: str
    external_event_id: str
    # PENDING | PAID | FAILED | CANCELLED
    status: str
    payment_id: Optional[str] = None
    provider_ref: Optional[str] = None

    def __post_init__(self):
        if self.status not in PAYMENT_STATUSES:
            raise ValueError(f"not a payment status: {self.status!r}")


class PaymentProvider(ABC):
    name: str = ""

    @abstractmethod
    async def create_checkout(
            self, payment: Dict[str, Any], items: List[Dict[str, Any]]
    ) -> CheckoutSession: ...

    # raises SignatureInvalid; None = verified but nothing to act on
    @abstractmethod
    async def parse_webhook(
            self, payload: bytes, headers: Mapping[str, str]
    ) -> Optional[ProviderEvent]: ...

    # canonical status, or None when the provider cannot tell
    @abstractmethod
    async def fetch_status(self, provider_ref: str) -> Optional[str]: ...
