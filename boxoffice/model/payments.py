# model/payments.py
"""
Payment Intent Binder.

A hold has at most one payments row (unique hold_id). Opening checkout twice,
in two tabs or with two providers, upserts that single row instead of
creating competing payment attempts. The amount is always recomputed from
the hold's own item snapshots.
"""

from __future__ import annotations
import logging
from typing import Any, Dict, Optional

from sqlalchemy import case, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import InvalidHoldState, InvalidRequest, NotFound
from ..helpers import items_amount, new_id, normalize_email, now_ts, \
    to_iso
from ..infra.sql import GatedAsyncSession, dialect_name
from ..infra.timings import timeit
from .holds import load_items, lock_and_sweep
from .orm import Event, Payment, HOLD_ACTIVE, PAY_PAID, PAY_PENDING

logger = logging.getLogger(__name__)

PAYMENT_COLUMNS = (
    Payment.id, Payment.hold_id, Payment.provider, Payment.provider_ref,
    Payment.amount, Payment.currency, Payment.status, Payment.buyer_name,
    Payment.buyer_email, Payment.event_id, Payment.event_title,
    Payment.order_id, Payment.failure_reason, Payment.created_at,
    Payment.updated_at, Payment.paid_at,
)


def insert_for(session: AsyncSession):
    """INSERT construct with ON CONFLICT support for the bound dialect."""
    if dialect_name(session) == "postgresql":
        return postgresql.insert
    return sqlite.insert


def payment_view(p: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(p)
    out["created_at_iso"] = to_iso(p.get("created_at"))
    out["paid_at_iso"] = to_iso(p.get("paid_at"))
    return out


# UN-GATED internal functions

async def load_payment(
    session: AsyncSession, payment_id: str, lock: bool = False
) -> Optional[Dict[str, Any]]:
    stmt = select(*PAYMENT_COLUMNS).where(Payment.id == payment_id)
    if lock:
        stmt = stmt.with_for_update()
    row = (await session.execute(stmt)).mappings().first()
    return dict(row) if row else None


async def load_payment_by_ref(
    session: AsyncSession, provider: str, provider_ref: str
) -> Optional[Dict[str, Any]]:
    stmt = select(*PAYMENT_COLUMNS).where(
        Payment.provider == provider, Payment.provider_ref == provider_ref
    ).limit(1)
    row = (await session.execute(stmt)).mappings().first()
    return dict(row) if row else None


async def load_payment_by_hold(
    session: AsyncSession, hold_id: str
) -> Optional[Dict[str, Any]]:
    row = (await session.execute(
        select(*PAYMENT_COLUMNS).where(Payment.hold_id == hold_id)
    )).mappings().first()
    return dict(row) if row else None


# ------------------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------------------

async def prepare_for_hold(
    db: GatedAsyncSession,
    hold_id: str,
    provider: str,
    buyer_name: str,
    buyer_email: str,
    currency: str = "clp",
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Bind the (single) payment attempt for an ACTIVE hold. Returns the payment
    row plus the hold items it was priced from. A payment that is already
    PAID is returned untouched.
    """
    now = now_ts() if now is None else now
    buyer_email = normalize_email(buyer_email)
    buyer_name = (buyer_name or "").strip()

    async with timeit("payments.prepare"):
        async with db.gated():
            async with db.session.begin():
                session = db.session
                hold = await lock_and_sweep(session, hold_id, now)
                if hold is None:
                    raise NotFound("hold", hold_id)

                existing = await load_payment_by_hold(session, hold_id)
                if existing and existing["status"] == PAY_PAID:
                    items = await load_items(session, hold_id)
                    return {"payment": existing, "items": items}

                if hold["status"] != HOLD_ACTIVE:
                    raise InvalidHoldState(hold_id, hold["status"])

                items = await load_items(session, hold_id)
                if not items:
                    raise InvalidRequest("hold has no items", hold_id=hold_id)
                amount = items_amount(items)

                ev = (await session.execute(
                    select(Event.title, Event.currency)
                    .where(Event.id == hold["event_id"])
                )).mappings().first()
                event_title = ev["title"] if ev else f"Event {hold['event_id']}"
                currency = (ev["currency"] if ev else None) or currency

                insert = insert_for(session)
                stmt = insert(Payment).values(
                    id=new_id("pay"),
                    hold_id=hold_id,
                    provider=provider,
                    provider_ref=None,
                    amount=amount,
                    currency=currency,
                    status=PAY_PENDING,
                    buyer_name=buyer_name,
                    buyer_email=buyer_email,
                    event_id=hold["event_id"],
                    event_title=event_title,
                    created_at=now,
                    updated_at=now,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=[Payment.hold_id],
                    set_={
                        "provider": stmt.excluded.provider,
                        # a ref from another provider is meaningless now
                        "provider_ref": case(
                            (Payment.provider == stmt.excluded.provider,
                             Payment.provider_ref),
                            else_=None,
                        ),
                        "amount": stmt.excluded.amount,
                        "currency": stmt.excluded.currency,
                        "status": PAY_PENDING,
                        "buyer_name": stmt.excluded.buyer_name,
                        "buyer_email": stmt.excluded.buyer_email,
                        "event_title": stmt.excluded.event_title,
                        "failure_reason": None,
                        "updated_at": stmt.excluded.updated_at,
                    },
                ).returning(Payment.id)
                payment_id = (await session.execute(stmt)).scalar_one()
                payment = await load_payment(session, payment_id)

    logger.info("payment %s bound to hold %s via %s (amount=%d)",
                payment["id"], hold_id, provider, payment["amount"])
    return {"payment": payment, "items": items}


async def attach_provider_ref(
    db: GatedAsyncSession, payment_id: str, provider_ref: str,
    now: Optional[float] = None,
) -> None:
    now = now_ts() if now is None else now
    async with db.gated():
        async with db.session.begin():
            res = await db.session.execute(
                update(Payment)
                .where(Payment.id == payment_id)
                .values(provider_ref=provider_ref, updated_at=now)
                .returning(Payment.id)
            )
            if res.first() is None:
                raise NotFound("payment", payment_id)


async def get_payment(db: GatedAsyncSession, payment_id: str) -> Dict[str, Any]:
    async with db.gated():
        async with db.session.begin():
            p = await load_payment(db.session, payment_id)
    if p is None:
        raise NotFound("payment", payment_id)
    return p


async def find_payment_by_ref(
    db: GatedAsyncSession, provider: str, provider_ref: str
) -> Optional[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            return await load_payment_by_ref(db.session, provider,
                                             provider_ref)
