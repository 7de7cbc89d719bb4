# model/checkin.py
"""
Check-in Validator: VALID -> USED, exactly once per ticket.

The transition is a single conditional UPDATE, so two scanners racing on
the same ticket cannot both succeed; the loser gets AlreadyUsed with the
winner's timestamp.
"""

from __future__ import annotations
import json
import logging
import re
from typing import Any, Dict, Optional, Tuple
from urllib.parse import parse_qs, unquote

from sqlalchemy import select, update

from ..errors import AlreadyUsed, Conflict, InvalidRequest, NotFound, \
    SignatureInvalid
from ..helpers import now_ts, to_iso
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from ..qrtoken import QR_SECRET, TOKEN_VERSION, verify_ticket_token
from .orm import Ticket, TICKET_USED, TICKET_VALID

logger = logging.getLogger(__name__)

_PCT_ESCAPE = re.compile(r"%[0-9A-Fa-f]{2}")
_TICKET_ID = re.compile(r"tix_[a-z0-9]+", re.I)
_EVENT_ID = re.compile(r"evt_[a-z0-9]+", re.I)

TICKET_KEYS = ("ticketId", "ticketid", "ticket_id", "id", "ticket")
EVENT_KEYS = ("eventId", "eventid", "event_id")


def _normalize(text: str) -> str:
    s = (text or "").strip()
    if _PCT_ESCAPE.search(s):
        s = unquote(s)
    return s


def _first(d: Dict[str, Any], keys) -> str:
    for k in keys:
        v = d.get(k)
        if isinstance(v, list):
            v = v[0] if v else None
        if isinstance(v, str) and v.strip():
            return v.strip()
    return ""


def parse_qr_payload(
    text: str, secret: str = QR_SECRET
) -> Tuple[str, Optional[str]]:
    """
    Extract (ticket_id, event_id | None) from whatever a scanner read, in
    order: signed token, JSON object, URL or query string, tix_/evt_ scan,
    the raw text as ticket id.
    """
    s = _normalize(text)
    if not s:
        raise InvalidRequest("empty QR payload")

    if s.startswith(TOKEN_VERSION + "."):
        tok = verify_ticket_token(s, secret)
        if tok is None:
            raise SignatureInvalid("QR token signature is not valid")
        return tok["ticket_id"], tok["event_id"]

    if s.startswith("{"):
        try:
            obj = json.loads(s)
        except json.JSONDecodeError:
            obj = None
        if isinstance(obj, dict):
            tid = _first(obj, TICKET_KEYS)
            if tid:
                return tid, _first(obj, EVENT_KEYS) or None

    qs = _normalize(s.split("?", 1)[1] if "?" in s else s)
    lowered = qs.lower()
    if any(f"{k.lower()}=" in lowered for k in TICKET_KEYS[:3] + EVENT_KEYS):
        params = parse_qs(qs)
        tid = _first(params, TICKET_KEYS)
        if tid:
            return tid, _first(params, EVENT_KEYS) or None

    m = _TICKET_ID.search(s)
    if m:
        e = _EVENT_ID.search(s)
        return m.group(0), e.group(0) if e else None

    return s, None


def resolve_qr_payload(
    text: str,
    expected_event_id: Optional[str] = None,
    secret: str = QR_SECRET,
) -> Tuple[str, Optional[str]]:
    """parse_qr_payload(), failing closed when the payload names another
    event than the one being scanned for."""
    ticket_id, event_id = parse_qr_payload(text, secret)
    if expected_event_id and event_id and event_id != expected_event_id:
        raise Conflict("QR code belongs to another event",
                       ticket_id=ticket_id, event_id=event_id)
    return ticket_id, event_id


def ticket_checkin_view(t: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": t["id"],
        "event_id": t["event_id"],
        "ticket_type_name": t["ticket_type_name"],
        "buyer_email": t["buyer_email"],
        "status": t["status"],
        "used_at_iso": to_iso(t["used_at"]),
    }


# ------------------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------------------

async def check_in(
    db: GatedAsyncSession, ticket_id: str, event_id: str,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    now = now_ts() if now is None else now

    async with timeit("checkin.check_in"):
        async with db.gated():
            async with db.session.begin():
                row = (await db.session.execute(
                    update(Ticket)
                    .where(Ticket.id == ticket_id,
                           Ticket.event_id == event_id,
                           Ticket.status == TICKET_VALID)
                    .values(status=TICKET_USED, used_at=now)
                    .returning(Ticket.id, Ticket.event_id,
                               Ticket.ticket_type_name, Ticket.buyer_email,
                               Ticket.status, Ticket.used_at)
                )).mappings().first()
                if row is None:
                    # find out why
                    prior = (await db.session.execute(
                        select(Ticket.status, Ticket.used_at)
                        .where(Ticket.id == ticket_id,
                               Ticket.event_id == event_id)
                    )).mappings().first()
                else:
                    row = dict(row)

    if row is not None:
        logger.info("ticket %s checked in for event %s", ticket_id, event_id)
        return ticket_checkin_view(row)

    if prior is None:
        raise NotFound("ticket", ticket_id)
    if prior["status"] == TICKET_USED:
        logger.info("ticket %s scanned again", ticket_id)
        raise AlreadyUsed(ticket_id, to_iso(prior["used_at"]))
    raise Conflict(f"ticket is {prior['status']}", ticket_id=ticket_id,
                   status=prior["status"])


async def get_ticket(db: GatedAsyncSession, ticket_id: str) -> Dict[str, Any]:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(
                select(Ticket.id, Ticket.event_id, Ticket.ticket_type_name,
                       Ticket.buyer_email, Ticket.status, Ticket.used_at)
                .where(Ticket.id == ticket_id)
            )).mappings().first()
    if row is None:
        raise NotFound("ticket", ticket_id)
    return ticket_checkin_view(row)


async def reset_checkins(db: GatedAsyncSession, event_id: str) -> int:
    """USED -> VALID for every ticket of an event (demo resets)."""
    async with db.gated():
        async with db.session.begin():
            res = await db.session.execute(
                update(Ticket)
                .where(Ticket.event_id == event_id,
                       Ticket.status == TICKET_USED)
                .values(status=TICKET_VALID, used_at=None)
                .returning(Ticket.id)
            )
            n = len(res.all())
    logger.warning("reset %d check-in(s) for event %s", n, event_id)
    return n
