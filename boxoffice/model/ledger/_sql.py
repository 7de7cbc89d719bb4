# webhook_events as the dedupe ledger
from __future__ import annotations
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ...helpers import now_ts
from ..orm import WebhookEvent
from ..payments import insert_for


class WebhookLedger:
    """
    Claims live in the caller's transaction: if the webhook processing rolls
    back, so does the claim, and the provider's retry is processed afresh.
    """

    claim_outlives_tx = False

    def __init__(self, *, session: AsyncSession) -> None:
        self.session = session

    async def try_claim(self, provider: str, external_event_id: str,
                        now: Optional[float] = None) -> bool:
        insert = insert_for(self.session)
        stmt = (
            insert(WebhookEvent)
            .values(
                provider=provider,
                external_event_id=external_event_id,
                received_at=now_ts() if now is None else now,
            )
            .on_conflict_do_nothing(
                index_elements=[WebhookEvent.provider,
                                WebhookEvent.external_event_id]
            )
            .returning(WebhookEvent.external_event_id)
        )
        return (await self.session.execute(stmt)).first() is not None

    async def release(self, provider: str, external_event_id: str) -> None:
        # nothing to undo, the rollback already dropped the row
        return None
