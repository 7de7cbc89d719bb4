"""Tests for the Payment Intent Binder.

Run with: pytest tests/test_payments.py -v
"""

import pytest

from boxoffice.errors import InvalidHoldState, NotFound
from boxoffice.model import holds, payments, settlement
from boxoffice.model.orm import PAY_PAID, PAY_PENDING


class TestPrepareForHold:
    """One payments row per hold, whatever the buyer clicks."""

    async def test_binds_pending_payment(self, db, event, t0):
        h = await holds.create_or_reuse_hold(
            db, "evt_1", [("tt_ga", 2), ("tt_vip", 1)], now=t0
        )
        prep = await payments.prepare_for_hold(
            db, h["id"], "mockpay", " Ada ", "ADA@example.com", now=t0
        )
        p = prep["payment"]
        assert p["status"] == PAY_PENDING
        assert p["amount"] == 22000
        assert p["currency"] == "clp"
        assert p["buyer_name"] == "Ada"
        assert p["buyer_email"] == "ada@example.com"
        assert p["event_title"] == "Night Show"
        assert p["provider_ref"] is None
        assert len(prep["items"]) == 2

    async def test_second_checkout_reuses_row(self, db, event, t0):
        h = await holds.create_or_reuse_hold(
            db, "evt_1", [("tt_ga", 1)], now=t0
        )
        first = await payments.prepare_for_hold(
            db, h["id"], "mockpay", "Ada", "ada@example.com", now=t0
        )
        await payments.attach_provider_ref(db, first["payment"]["id"],
                                           "mock_1", now=t0)
        again = await payments.prepare_for_hold(
            db, h["id"], "mockpay", "Ada B", "ada@example.com", now=t0 + 1
        )
        assert again["payment"]["id"] == first["payment"]["id"]
        assert again["payment"]["buyer_name"] == "Ada B"
        assert again["payment"]["provider_ref"] == "mock_1"

    async def test_provider_switch_clears_ref(self, db, event, t0):
        h = await holds.create_or_reuse_hold(
            db, "evt_1", [("tt_ga", 1)], now=t0
        )
        first = await payments.prepare_for_hold(
            db, h["id"], "mockpay", "Ada", "ada@example.com", now=t0
        )
        await payments.attach_provider_ref(db, first["payment"]["id"],
                                           "mock_1", now=t0)
        switched = await payments.prepare_for_hold(
            db, h["id"], "transfer", "Ada", "ada@example.com", now=t0
        )
        assert switched["payment"]["id"] == first["payment"]["id"]
        assert switched["payment"]["provider"] == "transfer"
        assert switched["payment"]["provider_ref"] is None

    async def test_amount_is_priced_from_current_items(self, db, event, t0):
        h = await holds.create_or_reuse_hold(
            db, "evt_1", [("tt_ga", 1)], now=t0
        )
        await holds.create_or_reuse_hold(
            db, "evt_1", [("tt_vip", 2)], existing_hold_id=h["id"], now=t0
        )
        prep = await payments.prepare_for_hold(
            db, h["id"], "mockpay", "Ada", "ada@example.com", now=t0
        )
        assert prep["payment"]["amount"] == 24000

    async def test_paid_payment_is_untouched(self, db, event, t0):
        h = await holds.create_or_reuse_hold(
            db, "evt_1", [("tt_ga", 1)], now=t0
        )
        prep = await payments.prepare_for_hold(
            db, h["id"], "mockpay", "Ada", "ada@example.com", now=t0
        )
        async with db.session.begin():
            await settlement.apply_payment_status(
                db.session, prep["payment"]["id"], PAY_PAID, now=t0
            )
        again = await payments.prepare_for_hold(
            db, h["id"], "stripe", "Eve", "eve@example.com", now=t0 + 1
        )
        assert again["payment"]["status"] == PAY_PAID
        assert again["payment"]["provider"] == "mockpay"
        assert again["payment"]["buyer_name"] == "Ada"

    async def test_expired_hold_is_rejected(self, db, event, t0):
        h = await holds.create_or_reuse_hold(
            db, "evt_1", [("tt_ga", 1)], ttl_seconds=1, now=t0
        )
        with pytest.raises(InvalidHoldState):
            await payments.prepare_for_hold(
                db, h["id"], "mockpay", "Ada", "ada@example.com", now=t0 + 2
            )

    async def test_unknown_hold(self, db, event, t0):
        with pytest.raises(NotFound):
            await payments.prepare_for_hold(
                db, "hold_nope", "mockpay", "Ada", "ada@example.com", now=t0
            )


class TestLookups:

    async def test_find_by_ref(self, db, event, t0):
        h = await holds.create_or_reuse_hold(
            db, "evt_1", [("tt_ga", 1)], now=t0
        )
        prep = await payments.prepare_for_hold(
            db, h["id"], "flow", "Ada", "ada@example.com", now=t0
        )
        await payments.attach_provider_ref(db, prep["payment"]["id"],
                                           "tok_123", now=t0)
        found = await payments.find_payment_by_ref(db, "flow", "tok_123")
        assert found["id"] == prep["payment"]["id"]
        assert await payments.find_payment_by_ref(db, "webpay",
                                                  "tok_123") is None

    async def test_get_payment(self, db, event, t0):
        with pytest.raises(NotFound):
            await payments.get_payment(db, "pay_nope")

    async def test_attach_to_unknown_payment(self, db, event, t0):
        with pytest.raises(NotFound):
            await payments.attach_provider_ref(db, "pay_nope", "x", now=t0)

    def test_payment_view_adds_iso_times(self):
        v = payments.payment_view({"id": "pay_1", "created_at": 0.0,
                                   "paid_at": None})
        assert v["created_at_iso"] == "1970-01-01T00:00:00+00:00"
        assert v["paid_at_iso"] is None
