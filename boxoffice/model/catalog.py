# model/catalog.py
from __future__ import annotations
import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, select

from ..errors import InvalidRequest, NotFound
from ..helpers import new_id, now_ts, to_iso
from ..infra.sql import GatedAsyncSession
from .orm import Event, Order, Ticket, TicketType

logger = logging.getLogger(__name__)


async def create_event(
    db: GatedAsyncSession,
    title: str,
    ticket_types: Iterable[Dict[str, Any]],
    currency: str = "clp",
    event_id: Optional[str] = None,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Create an event with its ticket types. Each ticket type is a dict with
    name, unit_price (minor units), optional capacity (None = unlimited)
    and optional id.
    """
    now = now_ts() if now is None else now
    types = list(ticket_types)
    title = (title or "").strip()
    if not title:
        raise InvalidRequest("event title is required")
    if not types:
        raise InvalidRequest("an event needs at least one ticket type")

    event_id = event_id or new_id("evt")
    async with db.gated():
        async with db.session.begin():
            db.session.add(Event(id=event_id, title=title,
                                 currency=currency.lower(), created_at=now))
            await db.session.flush()
            db.session.add_all([
                TicketType(
                    id=tt.get("id") or new_id("tt"),
                    event_id=event_id,
                    name=tt["name"],
                    unit_price=int(tt["unit_price"]),
                    capacity=(None if tt.get("capacity") is None
                              else int(tt["capacity"])),
                    sold=0,
                    held=0,
                )
                for tt in types
            ])
            await db.session.flush()

    logger.info("event %s created with %d ticket type(s)", event_id,
                len(types))
    return await get_event(db, event_id)


async def get_event(db: GatedAsyncSession, event_id: str) -> Dict[str, Any]:
    async with db.gated():
        async with db.session.begin():
            ev = (await db.session.execute(
                select(Event.id, Event.title, Event.currency,
                       Event.created_at)
                .where(Event.id == event_id)
            )).mappings().first()
            if ev is None:
                raise NotFound("event", event_id)
            types = (await db.session.execute(
                select(TicketType.id, TicketType.name, TicketType.unit_price,
                       TicketType.capacity)
                .where(TicketType.event_id == event_id)
                .order_by(TicketType.name, TicketType.id)
            )).mappings().all()
    return {
        "id": ev["id"],
        "title": ev["title"],
        "currency": ev["currency"],
        "created_at_iso": to_iso(ev["created_at"]),
        "ticket_types": [dict(t) for t in types],
    }


async def list_recent_orders(
    db: GatedAsyncSession, limit: int = 200
) -> List[Dict[str, Any]]:
    n_tickets = (
        select(func.count())
        .where(Ticket.order_id == Order.id)
        .correlate(Order)
        .scalar_subquery()
    )
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(
                select(
                    Order.id, Order.hold_id, Order.event_id,
                    Order.event_title, Order.buyer_name, Order.buyer_email,
                    Order.amount, Order.currency, Order.created_at,
                    n_tickets.label("tickets"),
                )
                .order_by(Order.created_at.desc())
                .limit(max(1, min(limit, 500)))
            )).mappings().all()
    items = []
    for r in rows:
        item = dict(r)
        item["created_at_iso"] = to_iso(r["created_at"])
        items.append(item)
    return items
