# model/inventory.py
"""
Ticket type counters and the lazy expiry sweep.

Every ticket type row carries three counters:
- capacity : total units for sale (NULL = unlimited)
- sold     : units converted into tickets by settlement
- held     : units claimed by ACTIVE holds

remaining = max(capacity - sold - held, 0)

There is no background scheduler. Any operation that reads or mutates holds
first calls expire_holds() inside its own transaction, so abandoned holds give
their capacity back on the next request that looks at inventory.
"""

from __future__ import annotations
import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import NotFound
from ..helpers import now_ts
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from .orm import (
    Event, Hold, HoldItem, Ticket, TicketType,
    HOLD_ACTIVE, HOLD_EXPIRED, TICKET_USED,
)

logger = logging.getLogger(__name__)


def remaining(capacity: Optional[int], sold: int, held: int) -> Optional[int]:
    """Purchasable units; None means unbounded."""
    if capacity is None:
        return None
    return max(int(capacity) - int(sold) - int(held), 0)


def floor_sub(col, qty: int):
    # held never goes below zero
    return case((col > qty, col - qty), else_=0)


# UN-GATED internal functions: run inside the caller's transaction

async def release_held(
    session: AsyncSession, per_type: Iterable[tuple[str, int]]
) -> None:
    """Give back `held` for (ticket_type_id, qty) pairs, in id order."""
    for tt_id, qty in sorted(per_type):
        if qty <= 0:
            continue
        await session.execute(
            update(TicketType)
            .where(TicketType.id == tt_id)
            .values(held=floor_sub(TicketType.held, qty))
        )


async def held_by_holds(
    session: AsyncSession, hold_ids: List[str]
) -> List[tuple[str, int]]:
    if not hold_ids:
        return []
    rows = (await session.execute(
        select(HoldItem.ticket_type_id, func.sum(HoldItem.qty))
        .where(HoldItem.hold_id.in_(hold_ids))
        .group_by(HoldItem.ticket_type_id)
        .order_by(HoldItem.ticket_type_id)
    )).all()
    return [(r[0], int(r[1])) for r in rows]


async def expire_holds(
    session: AsyncSession, now: Optional[float] = None
) -> List[str]:
    """
    Mark every ACTIVE hold whose expires_at <= now as EXPIRED and release its
    held units. Holds locked by a concurrent transaction (being settled or
    reused right now) are skipped; the next sweep picks them up if they are
    still ACTIVE by then.
    Returns the ids that were expired.
    """
    now = now_ts() if now is None else now

    ids = list((await session.execute(
        select(Hold.id)
        .where(Hold.status == HOLD_ACTIVE, Hold.expires_at <= now)
        .order_by(Hold.id)
        .with_for_update(skip_locked=True)
    )).scalars().all())
    if not ids:
        return []

    await session.execute(
        update(Hold)
        .where(Hold.id.in_(ids), Hold.status == HOLD_ACTIVE)
        .values(status=HOLD_EXPIRED)
    )
    await release_held(session, await held_by_holds(session, ids))

    logger.info("expired %d hold(s)", len(ids))
    return ids


async def lock_ticket_types(
    session: AsyncSession, event_id: str, ids: Iterable[str]
) -> Dict[str, Dict[str, Any]]:
    """
    SELECT ... FOR UPDATE on the given ticket types, always in id order so
    that overlapping reservations cannot deadlock each other.
    """
    wanted = sorted(set(ids))
    if not wanted:
        return {}
    rows = (await session.execute(
        select(
            TicketType.id, TicketType.name, TicketType.unit_price,
            TicketType.capacity, TicketType.sold, TicketType.held,
        )
        .where(TicketType.event_id == event_id, TicketType.id.in_(wanted))
        .order_by(TicketType.id)
        .with_for_update()
    )).mappings().all()
    return {r["id"]: dict(r) for r in rows}


# ------------------------------------------------------------------------------
# Read API
# ------------------------------------------------------------------------------

async def get_availability(
    db: GatedAsyncSession, event_id: str, now: Optional[float] = None
) -> Dict[str, Any]:
    """
    Sweep, then report per-type and total counters for an event:
      {
        "event_id": ...,
        "by_type": [{ticket_type_id, name, capacity, sold, held,
                     remaining}, ...],
        "totals": {capacity, sold, held, remaining, used},
        "sold_out": bool,
      }
    Unlimited types report capacity/remaining as None and are never sold out.
    """
    now = now_ts() if now is None else now

    async with timeit("inventory.availability"):
        async with db.gated():
            async with db.session.begin():
                await expire_holds(db.session, now)

                ev = (await db.session.execute(
                    select(Event.id).where(Event.id == event_id)
                )).first()
                if ev is None:
                    raise NotFound("event", event_id)

                rows = (await db.session.execute(
                    select(
                        TicketType.id, TicketType.name, TicketType.capacity,
                        TicketType.sold, TicketType.held,
                    )
                    .where(TicketType.event_id == event_id)
                    .order_by(TicketType.name, TicketType.id)
                )).mappings().all()

                used = (await db.session.execute(
                    select(func.count())
                    .select_from(Ticket)
                    .where(Ticket.event_id == event_id,
                           Ticket.status == TICKET_USED)
                )).scalar_one()

    by_type = []
    unlimited = False
    totals = {"capacity": 0, "sold": 0, "held": 0, "remaining": 0,
              "used": int(used)}
    for r in rows:
        rem = remaining(r["capacity"], r["sold"], r["held"])
        by_type.append({
            "ticket_type_id": r["id"],
            "name": r["name"],
            "capacity": r["capacity"],
            "sold": int(r["sold"]),
            "held": int(r["held"]),
            "remaining": rem,
        })
        totals["sold"] += int(r["sold"])
        totals["held"] += int(r["held"])
        if rem is None:
            unlimited = True
        else:
            totals["capacity"] += int(r["capacity"])
            totals["remaining"] += rem

    if unlimited:
        totals["capacity"] = None
        totals["remaining"] = None

    return {
        "event_id": event_id,
        "by_type": by_type,
        "totals": totals,
        "sold_out": (not unlimited) and totals["remaining"] <= 0,
    }
