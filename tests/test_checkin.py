"""Tests for QR parsing, ticket tokens and the check-in validator.

Run with: pytest tests/test_checkin.py -v
"""

import asyncio

import pytest
from sqlalchemy import update

from boxoffice.errors import (
    AlreadyUsed, Conflict, InvalidRequest, NotFound, SignatureInvalid,
)
from boxoffice.helpers import to_iso
from boxoffice.model import checkin, holds, inventory, settlement
from boxoffice.model.orm import Ticket, TICKET_CANCELLED, TICKET_USED
from boxoffice.qrtoken import sign_ticket_token, verify_ticket_token

SECRET = "unit-secret"


@pytest.fixture
async def tickets(db, event, t0):
    h = await holds.create_or_reuse_hold(db, "evt_1", [("tt_ga", 2)], now=t0)
    done = await settlement.finalize_paid_hold(
        db, h["id"], "Ada", "ada@example.com", now=t0
    )
    return done["tickets"]


class TestTicketToken:

    def test_sign_and_verify(self):
        tok = sign_ticket_token("tix_1", "evt_1", iat_ms=1700000000000,
                                secret=SECRET)
        assert tok.startswith("tc1.tix_1.evt_1.1700000000000.")
        assert "=" not in tok
        assert verify_ticket_token(tok, SECRET) == {
            "ticket_id": "tix_1", "event_id": "evt_1",
            "iat_ms": 1700000000000,
        }

    def test_other_secret_is_rejected(self):
        tok = sign_ticket_token("tix_1", "evt_1", secret=SECRET)
        assert verify_ticket_token(tok, "other") is None

    def test_tampered_ticket_is_rejected(self):
        tok = sign_ticket_token("tix_1", "evt_1", secret=SECRET)
        assert verify_ticket_token(tok.replace("tix_1", "tix_2"),
                                   SECRET) is None

    @pytest.mark.parametrize("tok", [
        "", "tc1.a.b.c", "tc2.tix_1.evt_1.1.sig", "tc1.tix_1.evt_1.x.sig",
        "tc1.tix_1.evt_1.0.sig",
    ])
    def test_malformed(self, tok):
        assert verify_ticket_token(tok, SECRET) is None


class TestParseQrPayload:
    """Whatever the scanner read, in decreasing order of trust."""

    def test_signed_token(self):
        tok = sign_ticket_token("tix_ab", "evt_1", secret=SECRET)
        assert checkin.parse_qr_payload(tok, SECRET) == ("tix_ab", "evt_1")

    def test_forged_token(self):
        tok = sign_ticket_token("tix_ab", "evt_1", secret="attacker")
        with pytest.raises(SignatureInvalid):
            checkin.parse_qr_payload(tok, SECRET)

    @pytest.mark.parametrize("text", [
        '{"ticketId": "tix_1", "eventId": "evt_1"}',
        '{"ticket_id": "tix_1", "event_id": "evt_1"}',
        '{"id": "tix_1", "eventid": "evt_1"}',
    ])
    def test_json(self, text):
        assert checkin.parse_qr_payload(text, SECRET) == ("tix_1", "evt_1")

    def test_json_without_event(self):
        assert checkin.parse_qr_payload('{"ticket": "tix_1"}', SECRET) == \
            ("tix_1", None)

    def test_url(self):
        text = "https://tickets.example.com/c?ticket_id=tix_1&event_id=evt_1"
        assert checkin.parse_qr_payload(text, SECRET) == ("tix_1", "evt_1")

    def test_bare_query_string(self):
        assert checkin.parse_qr_payload("ticketId=tix_7", SECRET) == \
            ("tix_7", None)

    def test_percent_encoded_json(self):
        text = "%7B%22ticket_id%22%3A%22tix_9%22%7D"
        assert checkin.parse_qr_payload(text, SECRET) == ("tix_9", None)

    def test_embedded_ids(self):
        text = "TICKET tix_ab12 FOR evt_cd34"
        assert checkin.parse_qr_payload(text, SECRET) == \
            ("tix_ab12", "evt_cd34")

    def test_raw_text(self):
        assert checkin.parse_qr_payload("  ABC123 ", SECRET) == \
            ("ABC123", None)

    @pytest.mark.parametrize("text", ["", "   ", None])
    def test_empty(self, text):
        with pytest.raises(InvalidRequest):
            checkin.parse_qr_payload(text, SECRET)

    def test_event_mismatch(self):
        tok = sign_ticket_token("tix_1", "evt_2", secret=SECRET)
        with pytest.raises(Conflict):
            checkin.resolve_qr_payload(tok, "evt_1", SECRET)
        assert checkin.resolve_qr_payload("tix_1", "evt_1", SECRET) == \
            ("tix_1", None)


class TestCheckIn:
    """VALID -> USED exactly once."""

    async def test_first_scan_succeeds(self, db, tickets, t0):
        tid = tickets[0]["id"]
        res = await checkin.check_in(db, tid, "evt_1", now=t0 + 10)
        assert res["id"] == tid
        assert res["status"] == TICKET_USED
        assert res["used_at_iso"] == to_iso(t0 + 10)
        assert res["buyer_email"] == "ada@example.com"

        avail = await inventory.get_availability(db, "evt_1", now=t0 + 10)
        assert avail["totals"]["used"] == 1

    async def test_second_scan_reports_first_use(self, db, tickets, t0):
        tid = tickets[0]["id"]
        await checkin.check_in(db, tid, "evt_1", now=t0 + 10)
        with pytest.raises(AlreadyUsed) as exc:
            await checkin.check_in(db, tid, "evt_1", now=t0 + 20)
        assert exc.value.used_at == to_iso(t0 + 10)

    async def test_racing_scanners(self, new_db, tickets, t0):
        tid = tickets[0]["id"]

        async def scan(n):
            try:
                await checkin.check_in(new_db(), tid, "evt_1", now=t0 + n)
                return "ok"
            except AlreadyUsed:
                return "used"

        outcomes = await asyncio.gather(*(scan(n) for n in range(6)))
        assert outcomes.count("ok") == 1
        assert outcomes.count("used") == 5

    async def test_unknown_ticket(self, db, tickets, t0):
        with pytest.raises(NotFound):
            await checkin.check_in(db, "tix_nope", "evt_1", now=t0)

    async def test_ticket_of_another_event(self, db, tickets, t0):
        with pytest.raises(NotFound):
            await checkin.check_in(db, tickets[0]["id"], "evt_2", now=t0)

    async def test_cancelled_ticket(self, db, tickets, t0):
        tid = tickets[1]["id"]
        async with db.session.begin():
            await db.session.execute(
                update(Ticket).where(Ticket.id == tid)
                .values(status=TICKET_CANCELLED)
            )
        with pytest.raises(Conflict):
            await checkin.check_in(db, tid, "evt_1", now=t0)

    async def test_reset(self, db, tickets, t0):
        for t in tickets:
            await checkin.check_in(db, t["id"], "evt_1", now=t0)
        assert await checkin.reset_checkins(db, "evt_1") == 2
        got = await checkin.get_ticket(db, tickets[0]["id"])
        assert got["used_at_iso"] is None
        res = await checkin.check_in(db, tickets[0]["id"], "evt_1", now=t0)
        assert res["status"] == TICKET_USED

    async def test_get_unknown_ticket(self, db, event):
        with pytest.raises(NotFound):
            await checkin.get_ticket(db, "tix_nope")
