import os
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from ._redis import WebhookLedger as RedisWebhookLedger
from ._sql import WebhookLedger as SqlWebhookLedger

BACKEND = os.getenv("WEBHOOK_LEDGER_BACKEND", "sql").lower()  # 'sql' | 'redis'

# a week outlives every provider's retry schedule
LEDGER_TTL_SECONDS = int(os.getenv("WEBHOOK_LEDGER_TTL_SECONDS",
                                   str(7 * 24 * 3600)))


# Factory keeps the webhook path constructor-agnostic:
def new_ledger(*, session: Optional[AsyncSession] = None,
               r: Optional[redis.Redis] = None,
               ttl_seconds: int = LEDGER_TTL_SECONDS,
               backend: Optional[str] = None):
    backend = (backend or BACKEND).lower()
    if backend == "redis":
        if r is None:
            raise RuntimeError(
                "WebhookLedger(redis) requires r=redis.Redis"
            )
        return RedisWebhookLedger(r=r, ttl_seconds=ttl_seconds)
    else:
        if session is None:
            raise RuntimeError(
                "WebhookLedger(sql) requires session=AsyncSession"
            )
        return SqlWebhookLedger(session=session)


__all__ = ["RedisWebhookLedger", "SqlWebhookLedger", "new_ledger",
           "BACKEND", "LEDGER_TTL_SECONDS"]
