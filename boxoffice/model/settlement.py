# model/settlement.py
"""
Settlement Engine: paid hold -> one order + one ticket per unit, exactly once.

finalize_paid_hold() may be called any number of times, sequentially or
concurrently (webhook redeliveries, status polling, two providers racing).
Two barriers make that safe:

1. the hold row lock + status check: a CONSUMED hold short-circuits to the
   existing order and tickets;
2. the unique orders.hold_id: if two callers ever both saw ACTIVE, one order
   insert wins and the loser re-reads and returns the winner's result.

Late payments (hold already EXPIRED when the confirmation arrives) are
honored if every ticket type still has room; otherwise the call raises
InvalidHoldState(refund_required=True). So does a payment whose amount no
longer matches the hold items.
"""

from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import InvalidHoldState, InvalidRequest, NotFound
from ..helpers import items_amount, new_id, normalize_email, now_ts, \
    to_iso
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from .holds import expire_one, load_hold, load_items
from .inventory import floor_sub, lock_ticket_types, remaining
from .orm import (
    Event, Hold, Order, Payment, Ticket, TicketType,
    HOLD_ACTIVE, HOLD_CONSUMED, HOLD_EXPIRED,
    PAY_CANCELLED, PAY_FAILED, PAY_PAID, PAY_PENDING, TICKET_VALID,
)
from .payments import load_payment

logger = logging.getLogger(__name__)

LATE_PAYMENT_REASON = "late payment: capacity gone, refund required"
AMOUNT_MISMATCH_REASON = (
    "paid amount does not match the hold, refund required"
)


def ticket_view(t: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": t["id"],
        "order_id": t["order_id"],
        "event_id": t["event_id"],
        "ticket_type_id": t["ticket_type_id"],
        "ticket_type_name": t["ticket_type_name"],
        "buyer_email": t["buyer_email"],
        "status": t["status"],
        "created_at_iso": to_iso(t["created_at"]),
        "used_at_iso": to_iso(t["used_at"]),
    }


# UN-GATED internal functions

async def load_settlement(
    session: AsyncSession, hold_id: str
) -> Optional[Dict[str, Any]]:
    order = (await session.execute(
        select(
            Order.id, Order.hold_id, Order.event_id, Order.event_title,
            Order.buyer_name, Order.buyer_email, Order.amount,
            Order.currency, Order.created_at,
        ).where(Order.hold_id == hold_id)
    )).mappings().first()
    if order is None:
        return None
    tickets = (await session.execute(
        select(
            Ticket.id, Ticket.order_id, Ticket.event_id,
            Ticket.ticket_type_id, Ticket.ticket_type_name,
            Ticket.buyer_email, Ticket.status, Ticket.created_at,
            Ticket.used_at,
        )
        .where(Ticket.order_id == order["id"])
        .order_by(Ticket.seq)
    )).mappings().all()
    return {"order": dict(order), "tickets": [dict(t) for t in tickets]}


async def _stamp_payment(
    session: AsyncSession, payment_id: str, hold_id: str, order_id: str,
    now: float,
) -> None:
    res = await session.execute(
        update(Payment)
        .where(Payment.id == payment_id, Payment.hold_id == hold_id)
        .values(
            status=PAY_PAID,
            order_id=func.coalesce(Payment.order_id, order_id),
            paid_at=func.coalesce(Payment.paid_at, now),
            failure_reason=None,
            updated_at=now,
        )
        .returning(Payment.id)
    )
    if res.first() is None:
        raise NotFound("payment", payment_id)


async def _reacquire_expired(
    session: AsyncSession, hold: Dict[str, Any], items: List[Dict[str, Any]]
) -> None:
    """Late settlement: take the units straight from remaining capacity."""
    locked = await lock_ticket_types(
        session, hold["event_id"], [i["ticket_type_id"] for i in items]
    )
    for it in items:
        row = locked.get(it["ticket_type_id"])
        rem = None if row is None else remaining(
            row["capacity"], row["sold"], row["held"]
        )
        if row is None or (rem is not None and rem < int(it["qty"])):
            raise InvalidHoldState(
                hold["id"], hold["status"],
                message=LATE_PAYMENT_REASON,
                refund_required=True,
            )


async def finalize_in_tx(
    session: AsyncSession,
    hold_id: str,
    buyer_name: str,
    buyer_email: str,
    event_title: Optional[str] = None,
    payment_id: Optional[str] = None,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """finalize_paid_hold() for callers that already own the transaction."""
    now = now_ts() if now is None else now
    buyer_email = normalize_email(buyer_email)

    hold = await load_hold(session, hold_id, lock=True)
    if hold is None:
        raise NotFound("hold", hold_id)

    # fast-path idempotence gate
    if hold["status"] == HOLD_CONSUMED:
        done = await load_settlement(session, hold_id)
        if done is None:
            raise InvalidHoldState(
                hold_id, hold["status"],
                message="hold consumed but no order exists",
            )
        if payment_id:
            await _stamp_payment(session, payment_id, hold_id,
                                 done["order"]["id"], now)
        return dict(done, created=False)

    if hold["status"] not in (HOLD_ACTIVE, HOLD_EXPIRED):
        raise InvalidHoldState(hold_id, hold["status"])

    items = await load_items(session, hold_id)
    if not items:
        raise InvalidRequest("hold has no items", hold_id=hold_id)

    if payment_id:
        paid = (await session.execute(
            select(Payment.amount).where(Payment.id == payment_id)
        )).scalar_one_or_none()
        if paid is not None and int(paid) != items_amount(items):
            raise InvalidHoldState(
                hold_id, hold["status"],
                message=AMOUNT_MISMATCH_REASON,
                refund_required=True,
            )

    late = hold["status"] == HOLD_EXPIRED
    if late:
        await _reacquire_expired(session, hold, items)

    for it in items:
        qty = int(it["qty"])
        values = {"sold": TicketType.sold + qty}
        if not late:
            values["held"] = floor_sub(TicketType.held, qty)
        await session.execute(
            update(TicketType)
            .where(TicketType.id == it["ticket_type_id"])
            .values(**values)
        )

    await session.execute(
        update(Hold).where(Hold.id == hold_id).values(status=HOLD_CONSUMED)
    )

    if not event_title:
        event_title = (await session.execute(
            select(Event.title).where(Event.id == hold["event_id"])
        )).scalar_one_or_none() or f"Event {hold['event_id']}"
    currency = (await session.execute(
        select(Event.currency).where(Event.id == hold["event_id"])
    )).scalar_one_or_none() or "clp"

    order_id = new_id("ord")
    session.add(Order(
        id=order_id,
        hold_id=hold_id,
        event_id=hold["event_id"],
        event_title=event_title,
        buyer_name=(buyer_name or "").strip(),
        buyer_email=buyer_email,
        amount=items_amount(items),
        currency=currency,
        created_at=now,
    ))
    # second barrier: unique(hold_id) fails here if another caller won
    await session.flush()

    seq = 0
    tickets = []
    for it in items:
        for _ in range(int(it["qty"])):
            tickets.append(Ticket(
                id=new_id("tix"),
                order_id=order_id,
                event_id=hold["event_id"],
                ticket_type_id=it["ticket_type_id"],
                ticket_type_name=it["ticket_type_name"],
                buyer_email=buyer_email,
                status=TICKET_VALID,
                seq=seq,
                created_at=now,
            ))
            seq += 1
    session.add_all(tickets)
    await session.flush()

    if payment_id:
        await _stamp_payment(session, payment_id, hold_id, order_id, now)

    logger.info("hold %s settled%s: order %s with %d ticket(s)", hold_id,
                " (late)" if late else "", order_id, len(tickets))
    done = await load_settlement(session, hold_id)
    return dict(done, created=True)


# ------------------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------------------

async def finalize_paid_hold(
    db: GatedAsyncSession,
    hold_id: str,
    buyer_name: str,
    buyer_email: str,
    event_title: Optional[str] = None,
    payment_id: Optional[str] = None,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Returns {"order": {...}, "tickets": [...], "created": bool}. `created`
    is True only for the call that actually performed the settlement.
    """
    async with timeit("settlement.finalize"):
        try:
            async with db.gated():
                async with db.session.begin():
                    return await finalize_in_tx(
                        db.session, hold_id, buyer_name, buyer_email,
                        event_title, payment_id, now,
                    )
        except IntegrityError:
            # lost the race on orders.hold_id: the winner's result stands
            logger.info("hold %s: concurrent settlement won, re-reading",
                        hold_id)
            async with db.gated():
                async with db.session.begin():
                    done = await load_settlement(db.session, hold_id)
            if done is None:
                raise
            return dict(done, created=False)


async def get_settlement(db: GatedAsyncSession, hold_id: str) -> Dict[str, Any]:
    async with db.gated():
        async with db.session.begin():
            done = await load_settlement(db.session, hold_id)
    if done is None:
        raise NotFound("order", hold_id)
    return done


async def apply_payment_status(
    session: AsyncSession,
    payment_id: str,
    status: str,
    provider_ref: Optional[str] = None,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Move a payment to `status` inside the caller's transaction; the one place
    where provider outcomes turn into inventory effects:
      PAID              -> finalize the hold (idempotent)
      FAILED/CANCELLED  -> record it and release the hold; never downgrades
                           a PAID payment
      PENDING           -> nothing but the provider reference
    Returns {"payment": {...}, "settlement": {...} | None}.
    """
    now = now_ts() if now is None else now

    # hold before payment, the order prepare_for_hold locks them in
    p = await load_payment(session, payment_id)
    if p is None:
        raise NotFound("payment", payment_id)
    hold = await load_hold(session, p["hold_id"], lock=True)
    p = await load_payment(session, payment_id, lock=True)

    if provider_ref and not p["provider_ref"]:
        await session.execute(
            update(Payment).where(Payment.id == payment_id)
            .values(provider_ref=provider_ref, updated_at=now)
        )

    settlement = None
    if status == PAY_PAID:
        if p["status"] != PAY_PAID:
            await session.execute(
                update(Payment).where(Payment.id == payment_id)
                .values(status=PAY_PAID, paid_at=now, updated_at=now)
            )
        try:
            # savepoint: a rejected late payment must not undo the PAID mark
            async with session.begin_nested():
                settlement = await finalize_in_tx(
                    session, p["hold_id"], p["buyer_name"], p["buyer_email"],
                    p["event_title"], payment_id, now,
                )
        except InvalidHoldState as e:
            if not e.refund_required:
                raise
            logger.error("payment %s paid for hold %s but cannot settle: %s",
                         payment_id, p["hold_id"], e.message)
            await session.execute(
                update(Payment).where(Payment.id == payment_id)
                .values(failure_reason=e.message, updated_at=now)
            )
    elif status in (PAY_FAILED, PAY_CANCELLED):
        if p["status"] == PAY_PAID:
            logger.warning("payment %s is PAID, ignoring %s", payment_id,
                           status)
        else:
            await session.execute(
                update(Payment).where(Payment.id == payment_id)
                .values(status=status, updated_at=now)
            )
            if hold is not None and hold["status"] == HOLD_ACTIVE:
                await expire_one(session, p["hold_id"])
                logger.info("hold %s released after payment %s %s",
                            p["hold_id"], payment_id, status)
    elif status != PAY_PENDING:
        raise InvalidRequest(f"unknown payment status {status!r}")

    return {
        "payment": await load_payment(session, payment_id),
        "settlement": settlement,
    }
