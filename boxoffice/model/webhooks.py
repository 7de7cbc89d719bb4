# model/webhooks.py
"""
Provider notification -> payment transition, at most once per
(provider, external_event_id).

The dedupe claim comes first. With the sql ledger it is a row written in
the same transaction as the transition, so both commit or neither does.
With the redis ledger it is taken before the transaction and released
again if the transaction fails, so the provider's retry is not swallowed.
"""

from __future__ import annotations
import logging
from typing import Any, Dict, Optional

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from ..providers.base import ProviderEvent
from .ledger import new_ledger
from .payments import load_payment, load_payment_by_ref
from .settlement import apply_payment_status

logger = logging.getLogger(__name__)


async def _apply_tx(
    session: AsyncSession, event: ProviderEvent, now: float
) -> Dict[str, Any]:
    # lookup only; apply_payment_status takes the hold and payment locks
    p = None
    if event.payment_id:
        p = await load_payment(session, event.payment_id)
    if p is None and event.provider_ref:
        p = await load_payment_by_ref(session, event.provider,
                                      event.provider_ref)
    if p is None:
        logger.warning("%s event %s: no matching payment (id=%s ref=%s)",
                       event.provider, event.external_event_id,
                       event.payment_id, event.provider_ref)
        return {"duplicate": False, "ignored": "unknown payment"}
    if p["provider"] != event.provider:
        logger.warning("%s event %s: payment %s belongs to %s",
                       event.provider, event.external_event_id, p["id"],
                       p["provider"])
        return {"duplicate": False, "ignored": "provider mismatch"}

    res = await apply_payment_status(session, p["id"], event.status,
                                     event.provider_ref, now)
    payment = res["payment"]
    logger.info("%s event %s: payment %s -> %s", event.provider,
                event.external_event_id, p["id"], payment["status"])
    return {
        "duplicate": False,
        "ignored": None,
        "payment_id": payment["id"],
        "status": payment["status"],
        "order_id": payment["order_id"],
        "refund_required": bool(payment["failure_reason"]),
    }


async def process_webhook(
    db: GatedAsyncSession,
    event: ProviderEvent,
    r: Optional[redis.Redis] = None,
    now: Optional[float] = None,
    backend: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Returns {"duplicate": True} for an event that was already processed,
    otherwise the transition outcome. Exceptions propagate so the HTTP
    layer answers 500 and the provider retries.
    """
    now = now_ts() if now is None else now

    async with timeit("webhooks.process"):
        ledger = new_ledger(session=db.session, r=r, backend=backend)

        if ledger.claim_outlives_tx:
            if not await ledger.try_claim(event.provider,
                                          event.external_event_id, now):
                logger.info("%s event %s already processed", event.provider,
                            event.external_event_id)
                return {"duplicate": True}
            try:
                async with db.gated():
                    async with db.session.begin():
                        return await _apply_tx(db.session, event, now)
            except BaseException:
                await ledger.release(event.provider, event.external_event_id)
                raise

        async with db.gated():
            async with db.session.begin():
                if not await ledger.try_claim(event.provider,
                                              event.external_event_id, now):
                    logger.info("%s event %s already processed",
                                event.provider, event.external_event_id)
                    return {"duplicate": True}
                return await _apply_tx(db.session, event, now)
