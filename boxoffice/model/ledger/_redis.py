# SET NX EX as the dedupe ledger
from __future__ import annotations
from typing import Optional
import redis.asyncio as redis


# ---- keys
def k_webhook(provider: str, external_event_id: str) -> str:
    return f"webhook:{provider}:{external_event_id}"


class WebhookLedger:
    """
    Claims are taken outside the database transaction, so a failed
    processing run must release() its claim or the retry would be dropped.
    """

    claim_outlives_tx = True

    def __init__(self, *, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def try_claim(self, provider: str, external_event_id: str,
                        now: Optional[float] = None) -> bool:
        ok = await self.r.set(k_webhook(provider, external_event_id), "1",
                              nx=True, ex=self.ttl)
        return bool(ok)

    async def release(self, provider: str, external_event_id: str) -> None:
        await self.r.delete(k_webhook(provider, external_event_id))
