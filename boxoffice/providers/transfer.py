from typing import Any, Dict, List, Mapping, Optional
import os

from ..errors import InvalidRequest
from ..model.orm import PAY_CANCELLED, PAY_PAID
from .base import CheckoutSession, PaymentProvider, ProviderEvent

TRANSFER_BANK_NAME = os.environ.get("TRANSFER_BANK_NAME", "Banco de Chile")
TRANSFER_ACCOUNT_NAME = os.environ.get("TRANSFER_ACCOUNT_NAME",
                                       "BoxOffice SpA")
TRANSFER_ACCOUNT_RUT = os.environ.get("TRANSFER_ACCOUNT_RUT", "12.345.678-9")
TRANSFER_ACCOUNT_TYPE = os.environ.get("TRANSFER_ACCOUNT_TYPE",
                                       "Cuenta Corriente")
TRANSFER_ACCOUNT_NUMBER = os.environ.get("TRANSFER_ACCOUNT_NUMBER",
                                         "123456789")
TRANSFER_ACCOUNT_EMAIL = os.environ.get("TRANSFER_ACCOUNT_EMAIL",
                                        "pagos@example.com")


# ----------------------------
# Manual bank transfer
# ----------------------------
class BankTransfer(PaymentProvider):
    """
    No redirect and no callbacks: the buyer gets bank details and the
    payment id as transfer reference; an admin confirms or rejects it.
    """
    name = "transfer"

    async def create_checkout(
            self, payment: Dict[str, Any], items: List[Dict[str, Any]]
    ) -> CheckoutSession:
        return CheckoutSession(
            redirect_url=None,
            provider_ref=f"trf_{payment['id']}",
            instructions={
                "bank_name": TRANSFER_BANK_NAME,
                "account_name": TRANSFER_ACCOUNT_NAME,
                "account_rut": TRANSFER_ACCOUNT_RUT,
                "account_type": TRANSFER_ACCOUNT_TYPE,
                "account_number": TRANSFER_ACCOUNT_NUMBER,
                "account_email": TRANSFER_ACCOUNT_EMAIL,
                "amount": int(payment["amount"]),
                "currency": payment["currency"],
                "reference": payment["id"],
            },
        )

    async def parse_webhook(
            self, payload: bytes, headers: Mapping[str, str]
    ) -> Optional[ProviderEvent]:
        raise InvalidRequest("bank transfers are confirmed by an admin")

    async def fetch_status(self, provider_ref: str) -> Optional[str]:
        return None

    def manual_event(self, payment_id: str, confirmed: bool) -> ProviderEvent:
        # confirm and reject dedupe separately: a rejected transfer may
        # still be confirmed once the money shows up
        return ProviderEvent(
            provider=self.name,
            external_event_id=(f"manual:{payment_id}" if confirmed
                               else f"manual-reject:{payment_id}"),
            status=PAY_PAID if confirmed else PAY_CANCELLED,
            payment_id=payment_id,
        )
