# model/holds.py
"""
Hold Manager: time-boxed reservations against ticket type counters.

State machine:
    ACTIVE --(sweep / release)--> EXPIRED
    ACTIVE --(settlement)-------> CONSUMED
EXPIRED and CONSUMED are terminal here; see settlement.py for the one
sanctioned exit out of EXPIRED (late payment).

Races between buyers are resolved by row locks, not in Python: every request
locks the ticket type rows it touches (in id order) before reading counters.
"""

from __future__ import annotations
import logging
import os
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import InsufficientStock, InvalidHoldState, InvalidRequest, \
    NotFound
from ..helpers import items_amount, new_id, now_ts, to_iso
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from .inventory import (
    expire_holds, floor_sub, held_by_holds, lock_ticket_types, release_held,
    remaining,
)
from .orm import (
    Event, Hold, HoldItem, Payment, TicketType,
    HOLD_ACTIVE, HOLD_EXPIRED, PAY_PAID, PAY_PENDING,
)

logger = logging.getLogger(__name__)

HOLD_TTL_DEFAULT_SECONDS = int(os.getenv("HOLD_TTL_DEFAULT_SECONDS", "480"))
HOLD_TTL_MIN_SECONDS = int(os.getenv("HOLD_TTL_MIN_SECONDS", "60"))
HOLD_TTL_MAX_SECONDS = int(os.getenv("HOLD_TTL_MAX_SECONDS", "3600"))


def clamp_ttl(ttl_seconds: Optional[int]) -> int:
    ttl = int(ttl_seconds or HOLD_TTL_DEFAULT_SECONDS)
    return max(HOLD_TTL_MIN_SECONDS, min(HOLD_TTL_MAX_SECONDS, ttl))


def collapse_items(items: Iterable[Tuple[str, int]]) -> Dict[str, int]:
    """Sum quantities of repeated ticket type ids, keeping first-seen order."""
    out: Dict[str, int] = {}
    for tt_id, qty in items:
        qty = int(qty)
        if not tt_id or qty <= 0:
            raise InvalidRequest(
                "every item needs a ticket_type_id and a positive qty"
            )
        out[tt_id] = out.get(tt_id, 0) + qty
    if not out:
        raise InvalidRequest("no items requested")
    return out


# UN-GATED internal functions

async def load_hold(
    session: AsyncSession, hold_id: str, lock: bool = False
) -> Optional[Dict[str, Any]]:
    stmt = select(
        Hold.id, Hold.event_id, Hold.status, Hold.created_at, Hold.expires_at
    ).where(Hold.id == hold_id)
    if lock:
        stmt = stmt.with_for_update()
    row = (await session.execute(stmt)).mappings().first()
    return dict(row) if row else None


async def load_items(
    session: AsyncSession, hold_id: str
) -> List[Dict[str, Any]]:
    rows = (await session.execute(
        select(
            HoldItem.ticket_type_id, HoldItem.ticket_type_name,
            HoldItem.unit_price, HoldItem.qty,
        )
        .where(HoldItem.hold_id == hold_id)
        .order_by(HoldItem.ticket_type_id)
    )).mappings().all()
    return [dict(r) for r in rows]


def hold_view(hold: Dict[str, Any], items: List[Dict[str, Any]],
              reused: bool = False) -> Dict[str, Any]:
    return {
        "id": hold["id"],
        "event_id": hold["event_id"],
        "status": hold["status"],
        "created_at": hold["created_at"],
        "expires_at": hold["expires_at"],
        "created_at_iso": to_iso(hold["created_at"]),
        "expires_at_iso": to_iso(hold["expires_at"]),
        "items": [
            {
                "ticket_type_id": it["ticket_type_id"],
                "ticket_type_name": it["ticket_type_name"],
                "unit_price": int(it["unit_price"]),
                "qty": int(it["qty"]),
            }
            for it in items
        ],
        "amount": items_amount(items),
        "reused": reused,
    }


async def lock_and_sweep(
    session: AsyncSession, hold_id: str, now: float
) -> Optional[Dict[str, Any]]:
    """
    Lock hold_id, run the expiry sweep, and return the hold as the sweep
    left it (None if there is no such hold). Lock order everywhere is
    hold -> payment -> ticket types, and the sweep touches ticket types.
    """
    found = await load_hold(session, hold_id, lock=True)
    await expire_holds(session, now)
    if found is None:
        return None
    return await load_hold(session, hold_id)


async def open_checkout_status(
    session: AsyncSession, hold_id: str
) -> Optional[str]:
    """Status of the hold's payment if it is PENDING or PAID, else None."""
    status = (await session.execute(
        select(Payment.status).where(Payment.hold_id == hold_id)
    )).scalar_one_or_none()
    return status if status in (PAY_PENDING, PAY_PAID) else None


async def expire_one(session: AsyncSession, hold_id: str) -> None:
    """ACTIVE -> EXPIRED for a hold the caller has already locked."""
    await session.execute(
        update(Hold)
        .where(Hold.id == hold_id, Hold.status == HOLD_ACTIVE)
        .values(status=HOLD_EXPIRED)
    )
    await release_held(session, await held_by_holds(session, [hold_id]))


# ------------------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------------------

async def create_or_reuse_hold(
    db: GatedAsyncSession,
    event_id: str,
    items: Iterable[Tuple[str, int]],
    ttl_seconds: Optional[int] = None,
    existing_hold_id: Optional[str] = None,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Reserve `items` ((ticket_type_id, qty) pairs) for event_id, all or
    nothing. If existing_hold_id is still ACTIVE for this event its item set
    is replaced and its own units count towards what may be requested again.
    A hold whose checkout is already open (PENDING or PAID payment) is
    frozen: changing it raises InvalidHoldState.
    Raises NotFound, InvalidRequest, InvalidHoldState or InsufficientStock;
    on any error nothing is reserved.
    """
    now = now_ts() if now is None else now
    requested = collapse_items(items)
    ttl = clamp_ttl(ttl_seconds)

    async with timeit("holds.create_or_reuse"):
        async with db.gated():
            async with db.session.begin():
                return await _create_or_reuse_tx(
                    db.session, event_id, requested, ttl, existing_hold_id,
                    now,
                )


async def _create_or_reuse_tx(
    session: AsyncSession,
    event_id: str,
    requested: Dict[str, int],
    ttl: int,
    existing_hold_id: Optional[str],
    now: float,
) -> Dict[str, Any]:
    h = None
    if existing_hold_id:
        h = await lock_and_sweep(session, existing_hold_id, now)
    else:
        await expire_holds(session, now)

    ev = (await session.execute(
        select(Event.id).where(Event.id == event_id)
    )).first()
    if ev is None:
        raise NotFound("event", event_id)

    reuse = None
    own: Dict[str, int] = {}
    if h is not None:
        if h["event_id"] != event_id:
            raise InvalidHoldState(
                existing_hold_id, h["status"],
                message="hold does not belong to this event",
            )
        if h["status"] == HOLD_ACTIVE:
            # the payment amount and the provider session are priced from
            # the current items
            if await open_checkout_status(session, h["id"]):
                raise InvalidHoldState(
                    h["id"], h["status"],
                    message="hold has an open checkout and cannot change",
                )
            reuse = h
            for it in await load_items(session, h["id"]):
                own[it["ticket_type_id"]] = int(it["qty"])

    locked = await lock_ticket_types(
        session, event_id, set(requested) | set(own)
    )
    missing = [tt_id for tt_id in requested if tt_id not in locked]
    if missing:
        raise NotFound("ticket_type", missing[0])

    # validate everything before touching any counter
    for tt_id, qty in requested.items():
        row = locked[tt_id]
        rem = remaining(row["capacity"], row["sold"], row["held"])
        if rem is None:
            continue
        allowed = rem + own.get(tt_id, 0)
        if qty > allowed:
            raise InsufficientStock(tt_id, row["name"], qty, allowed)

    new_items = [
        {
            "ticket_type_id": tt_id,
            "ticket_type_name": locked[tt_id]["name"],
            "unit_price": int(locked[tt_id]["unit_price"]),
            "qty": qty,
        }
        for tt_id, qty in sorted(requested.items())
    ]

    if reuse is not None:
        hold_id = reuse["id"]
        for tt_id in sorted(set(requested) | set(own)):
            delta = requested.get(tt_id, 0) - own.get(tt_id, 0)
            if delta > 0:
                await session.execute(
                    update(TicketType)
                    .where(TicketType.id == tt_id)
                    .values(held=TicketType.held + delta)
                )
            elif delta < 0:
                await session.execute(
                    update(TicketType)
                    .where(TicketType.id == tt_id)
                    .values(held=floor_sub(TicketType.held, -delta))
                )
        await session.execute(
            delete(HoldItem).where(HoldItem.hold_id == hold_id)
        )
        await session.execute(
            update(Hold)
            .where(Hold.id == hold_id)
            .values(expires_at=now + ttl)
        )
        hold = dict(reuse, expires_at=now + ttl)
    else:
        hold_id = new_id("hold")
        hold = {
            "id": hold_id,
            "event_id": event_id,
            "status": HOLD_ACTIVE,
            "created_at": now,
            "expires_at": now + ttl,
        }
        session.add(Hold(**hold))
        await session.flush()
        for it in new_items:
            await session.execute(
                update(TicketType)
                .where(TicketType.id == it["ticket_type_id"])
                .values(held=TicketType.held + it["qty"])
            )

    session.add_all([
        HoldItem(hold_id=hold_id, event_id=event_id, **it) for it in new_items
    ])
    await session.flush()

    logger.info(
        "hold %s %s for event %s: %s", hold_id,
        "updated" if reuse is not None else "created", event_id,
        ", ".join(f"{i['ticket_type_id']}x{i['qty']}" for i in new_items),
    )
    return hold_view(hold, new_items, reused=reuse is not None)


async def release_hold(
    db: GatedAsyncSession, hold_id: str, now: Optional[float] = None
) -> Dict[str, Any]:
    """
    Explicitly give a hold's units back. Only ACTIVE holds are released;
    anything else reports released=False and changes nothing.
    """
    now = now_ts() if now is None else now

    async with timeit("holds.release"):
        async with db.gated():
            async with db.session.begin():
                h = await lock_and_sweep(db.session, hold_id, now)
                if h is None:
                    raise NotFound("hold", hold_id)
                if h["status"] != HOLD_ACTIVE:
                    return {"hold_id": hold_id, "released": False,
                            "status": h["status"]}
                await expire_one(db.session, hold_id)

    logger.info("hold %s released", hold_id)
    return {"hold_id": hold_id, "released": True, "status": HOLD_EXPIRED}


async def get_hold(db: GatedAsyncSession, hold_id: str) -> Dict[str, Any]:
    async with db.gated():
        async with db.session.begin():
            h = await load_hold(db.session, hold_id)
            if h is None:
                raise NotFound("hold", hold_id)
            items = await load_items(db.session, hold_id)
    return hold_view(h, items)
