"""End-to-end tests of the HTTP API, served in-process over ASGI.

The mockpay emit endpoint posts its webhook through app.state.http, which
here is an ASGI client for the same app, so the whole
hold -> checkout -> webhook -> settlement path runs without a network.

Run with: pytest tests/test_server.py -v
"""

import hashlib
import hmac
import json
import time

import httpx
import pytest

from boxoffice import load_client, server
from boxoffice.model.orm import Base
from boxoffice.providers import mockpay
from boxoffice.providers.stripe_checkout import STRIPE_WEBHOOK_SECRET

ADMIN = (server.ADMIN_USERNAME, server.ADMIN_PASSWORD)

EVENT = {
    "id": "evt_show",
    "title": "Night Show",
    "currency": "clp",
    "ticket_types": [
        {"id": "tt_ga", "name": "General", "unit_price": 5000,
         "capacity": 2},
        {"id": "tt_vip", "name": "VIP", "unit_price": 12000},
    ],
}


@pytest.fixture
async def client():
    async with server.engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    transport = httpx.ASGITransport(app=server.app)
    server.app.state.http = httpx.AsyncClient(transport=transport)
    async with httpx.AsyncClient(transport=transport,
                                 base_url="http://test") as c:
        yield c
    await server.app.state.http.aclose()
    server.app.state.http = None
    await server.engine.dispose()


@pytest.fixture
async def show(client):
    resp = await client.post("/api/admin/events", json=EVENT, auth=ADMIN)
    assert resp.status_code == 200, resp.text
    return resp.json()["event"]


async def hold(client, items, **extra):
    return await client.post("/api/holds", json={
        "event_id": "evt_show",
        "items": [{"ticket_type_id": t, "qty": q} for t, q in items],
        **extra,
    })


async def checkout(client, hold_id, provider="mockpay"):
    resp = await client.post("/api/checkout", json={
        "hold_id": hold_id, "provider": provider,
        "buyer_name": "Ada Lovelace", "buyer_email": "ada@example.com",
    })
    assert resp.status_code == 200, resp.text
    return resp.json()


class TestCatalog:

    async def test_event_and_availability(self, client, show):
        resp = await client.get("/api/events/evt_show")
        assert resp.json()["event"]["title"] == "Night Show"

        resp = await client.get("/api/events/evt_show/availability")
        body = resp.json()
        assert body["ok"] is True
        assert body["sold_out"] is False
        assert body["totals"]["capacity"] is None

    async def test_unknown_event_is_404(self, client, show):
        resp = await client.get("/api/events/evt_nope")
        assert resp.status_code == 404
        assert resp.json()["error"] == "NOT_FOUND"

    async def test_admin_requires_credentials(self, client):
        resp = await client.post("/api/admin/events", json=EVENT)
        assert resp.status_code == 401
        resp = await client.post("/api/admin/events", json=EVENT,
                                 auth=("admin", "wrong"))
        assert resp.status_code == 401


class TestHolds:

    async def test_hold_and_release(self, client, show):
        resp = await hold(client, [("tt_ga", 2)])
        assert resp.status_code == 200
        h = resp.json()["hold"]
        assert h["amount"] == 10000

        avail = (await client.get("/api/events/evt_show/availability")).json()
        ga = next(r for r in avail["by_type"] if r["ticket_type_id"] == "tt_ga")
        assert ga["remaining"] == 0

        resp = await client.post(f"/api/holds/{h['id']}/release")
        assert resp.json()["released"] is True

    async def test_sold_out_is_409_with_max(self, client, show):
        resp = await hold(client, [("tt_ga", 3)])
        assert resp.status_code == 409
        body = resp.json()
        assert body["error"] == "INSUFFICIENT_STOCK"
        assert body["max"] == 2

    async def test_reuse_keeps_hold_id(self, client, show):
        h = (await hold(client, [("tt_ga", 1)])).json()["hold"]
        resp = await hold(client, [("tt_ga", 2)], hold_id=h["id"])
        assert resp.json()["hold"]["id"] == h["id"]
        assert resp.json()["hold"]["reused"] is True

    async def test_checkout_freezes_the_hold(self, client, show):
        h = (await hold(client, [("tt_ga", 1)])).json()["hold"]
        await checkout(client, h["id"])
        resp = await hold(client, [("tt_ga", 2)], hold_id=h["id"])
        assert resp.status_code == 409
        assert resp.json()["error"] == "INVALID_HOLD_STATE"

    async def test_validation_errors(self, client, show):
        resp = await client.post("/api/holds", json={
            "event_id": "evt_show", "items": [],
        })
        assert resp.status_code == 422
        resp = await hold(client, [("tt_ga", 0)])
        assert resp.status_code == 422


class TestMockPayFlow:
    """hold -> checkout -> emit -> webhook -> order."""

    async def test_paid(self, client, show):
        h = (await hold(client, [("tt_ga", 1), ("tt_vip", 1)])).json()["hold"]
        co = await checkout(client, h["id"])
        assert co["redirect_url"] == f"/mockpay/{co['payment_id']}"
        assert co["amount"] == 17000

        resp = await client.post(f"/mockpay/{co['payment_id']}/emit",
                                 json={"kind": "succeeded"})
        assert resp.json() == {"ok": True, "delivered": True,
                               "status_code": 200}

        body = (await client.get(f"/api/payments/{co['payment_id']}")).json()
        assert body["payment"]["status"] == "PAID"
        assert body["order"]["amount"] == 17000
        assert len(body["tickets"]) == 2

        by_hold = (await client.get(f"/api/orders/by-hold/{h['id']}")).json()
        assert by_hold["order"]["id"] == body["order"]["id"]

        again = await checkout(client, h["id"])
        assert again["already_paid"] is True
        assert again["order_id"] == body["order"]["id"]

    async def test_failed_releases_hold(self, client, show):
        h = (await hold(client, [("tt_ga", 2)])).json()["hold"]
        co = await checkout(client, h["id"])
        await client.post(f"/mockpay/{co['payment_id']}/emit",
                          json={"kind": "failed"})

        body = (await client.get(f"/api/payments/{co['payment_id']}")).json()
        assert body["payment"]["status"] == "FAILED"
        assert body["order"] is None
        resp = await hold(client, [("tt_ga", 2)])
        assert resp.status_code == 200

    async def test_webhook_redelivery_is_idempotent(self, client, show):
        h = (await hold(client, [("tt_ga", 1)])).json()["hold"]
        co = await checkout(client, h["id"])
        p = (await client.get(f"/api/payments/{co['payment_id']}")).json()
        body = mockpay.build_event(p["payment"], "succeeded")
        headers = {"x-mockpay-signature": mockpay.sign(body)}

        first = await client.post("/payments/mockpay/webhook", content=body,
                                  headers=headers)
        assert first.json()["idempotent"] is False
        assert first.json()["status"] == "PAID"
        second = await client.post("/payments/mockpay/webhook", content=body,
                                   headers=headers)
        assert second.json() == {"ok": True, "idempotent": True}

        avail = (await client.get("/api/events/evt_show/availability")).json()
        assert avail["totals"]["sold"] == 1

    async def test_bad_signature_is_400(self, client, show):
        resp = await client.post(
            "/payments/mockpay/webhook", content=b"{}",
            headers={"x-mockpay-signature": "nope"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "SIGNATURE_INVALID"

    async def test_processing_failure_is_500(self, client, show, monkeypatch):
        async def boom(*args, **kwargs):
            raise RuntimeError("db went away")

        monkeypatch.setattr(server, "process_webhook", boom)
        h = (await hold(client, [("tt_ga", 1)])).json()["hold"]
        co = await checkout(client, h["id"])
        p = (await client.get(f"/api/payments/{co['payment_id']}")).json()
        body = mockpay.build_event(p["payment"], "succeeded")
        resp = await client.post(
            "/payments/mockpay/webhook", content=body,
            headers={"x-mockpay-signature": mockpay.sign(body)},
        )
        assert resp.status_code == 500

    async def test_status_poll_reconciles(self, client, show, monkeypatch):
        """A lost webhook is recovered by asking the provider."""
        async def paid(self, ref):
            return "PAID"

        h = (await hold(client, [("tt_ga", 1)])).json()["hold"]
        co = await checkout(client, h["id"])
        monkeypatch.setattr(mockpay.MockPay, "fetch_status", paid)
        body = (await client.get(f"/api/payments/{co['payment_id']}")).json()
        assert body["payment"]["status"] == "PAID"
        assert len(body["tickets"]) == 1

    async def test_hosted_page(self, client, show):
        h = (await hold(client, [("tt_vip", 1)])).json()["hold"]
        co = await checkout(client, h["id"])
        resp = await client.get(co["redirect_url"])
        assert resp.status_code == 200
        page = resp.json()
        assert page["amount"] == 12000
        assert page["status"] == "PENDING"
        assert "succeeded" in page["outcomes"]

        resp = await client.post(page["emit_url"], json={"kind": "failed"})
        assert resp.json()["delivered"] is True
        body = (await client.get(f"/api/payments/{co['payment_id']}")).json()
        assert body["payment"]["status"] == "FAILED"

    async def test_page_for_other_provider_is_rejected(self, client, show):
        h = (await hold(client, [("tt_ga", 1)])).json()["hold"]
        co = await checkout(client, h["id"], provider="transfer")
        resp = await client.get(f"/mockpay/{co['payment_id']}")
        assert resp.status_code == 400

    async def test_emit_for_other_provider_is_rejected(self, client, show):
        h = (await hold(client, [("tt_ga", 1)])).json()["hold"]
        co = await checkout(client, h["id"], provider="transfer")
        resp = await client.post(f"/mockpay/{co['payment_id']}/emit",
                                 json={"kind": "succeeded"})
        assert resp.status_code == 400

    async def test_checkout_validation(self, client, show):
        h = (await hold(client, [("tt_ga", 1)])).json()["hold"]
        resp = await client.post("/api/checkout", json={
            "hold_id": h["id"], "buyer_name": "A",
            "buyer_email": "ada@example.com",
        })
        assert resp.status_code == 422
        resp = await client.post("/api/checkout", json={
            "hold_id": h["id"], "buyer_name": "Ada",
            "buyer_email": "not-an-email",
        })
        assert resp.status_code == 400
        resp = await client.post("/api/checkout", json={
            "hold_id": h["id"], "buyer_name": "Ada",
            "buyer_email": "ada@example.com", "provider": "paypal",
        })
        assert resp.status_code == 422

    async def test_load_client_purchase(self, client, show):
        res = await load_client.one_purchase(
            client, "http://test", "evt_show", "tt_ga", "succeeded",
            poll_interval_s=0.01, poll_timeout_s=5.0,
        )
        assert res.ok is True
        assert res.outcome == "PAID"


class TestStripeWebhook:

    async def test_signed_event_for_unknown_payment(self, client, show):
        body = json.dumps({
            "id": "evt_s_1", "type": "checkout.session.completed",
            "data": {"object": {"id": "cs_1", "payment_status": "paid",
                                "metadata": {"payment_id": "pay_nope"}}},
        })
        ts = int(time.time())
        sig = hmac.new(STRIPE_WEBHOOK_SECRET.encode(),
                       f"{ts}.{body}".encode(), hashlib.sha256).hexdigest()
        resp = await client.post(
            "/payments/stripe/webhook", content=body,
            headers={"stripe-signature": f"t={ts},v1={sig}"},
        )
        assert resp.status_code == 200
        assert resp.json()["ignored"] == "unknown payment"

    async def test_unknown_provider(self, client, show):
        resp = await client.post("/payments/paypal/webhook", content=b"{}")
        assert resp.status_code == 400


class TestBankTransfer:
    """Offline payments confirmed by an admin."""

    async def test_confirm(self, client, show):
        h = (await hold(client, [("tt_ga", 2)])).json()["hold"]
        co = await checkout(client, h["id"], provider="transfer")
        assert co["redirect_url"] is None
        assert co["instructions"]["reference"] == co["payment_id"]

        url = f"/api/admin/payments/{co['payment_id']}/confirm"
        assert (await client.post(url)).status_code == 401
        resp = await client.post(url, auth=ADMIN)
        assert resp.json()["status"] == "PAID"
        again = await client.post(url, auth=ADMIN)
        assert again.json()["idempotent"] is True

        orders = (await client.get("/api/admin/orders", auth=ADMIN)).json()
        assert [o["tickets"] for o in orders["items"]] == [2]

    async def test_reject(self, client, show):
        h = (await hold(client, [("tt_ga", 2)])).json()["hold"]
        co = await checkout(client, h["id"], provider="transfer")
        resp = await client.post(
            f"/api/admin/payments/{co['payment_id']}/reject", auth=ADMIN
        )
        assert resp.json()["status"] == "CANCELLED"
        assert (await hold(client, [("tt_ga", 2)])).status_code == 200

    async def test_only_transfers(self, client, show):
        h = (await hold(client, [("tt_ga", 1)])).json()["hold"]
        co = await checkout(client, h["id"])
        resp = await client.post(
            f"/api/admin/payments/{co['payment_id']}/confirm", auth=ADMIN
        )
        assert resp.status_code == 400


class TestCheckin:

    async def paid_ticket(self, client):
        h = (await hold(client, [("tt_vip", 1)])).json()["hold"]
        co = await checkout(client, h["id"], provider="transfer")
        await client.post(f"/api/admin/payments/{co['payment_id']}/confirm",
                          auth=ADMIN)
        body = (await client.get(f"/api/payments/{co['payment_id']}")).json()
        return body["tickets"][0]

    async def test_scan_qr_token(self, client, show):
        t = await self.paid_ticket(client)
        qr = (await client.get(f"/api/tickets/{t['id']}/qr")).json()
        assert qr["token"].startswith("tc1.")

        resp = await client.post("/api/checkin", json={
            "event_id": "evt_show", "qr_text": qr["token"],
        })
        assert resp.status_code == 200
        assert resp.json()["ticket"]["status"] == "USED"

        resp = await client.post("/api/checkin", json={
            "event_id": "evt_show", "ticket_id": t["id"],
        })
        assert resp.status_code == 409
        assert resp.json()["error"] == "ALREADY_USED"
        assert resp.json()["used_at"]

        reset = await client.post(
            "/api/admin/events/evt_show/reset-checkins", auth=ADMIN
        )
        assert reset.json() == {"ok": True, "reset": 1}

    async def test_wrong_event(self, client, show):
        t = await self.paid_ticket(client)
        qr = (await client.get(f"/api/tickets/{t['id']}/qr")).json()
        resp = await client.post("/api/checkin", json={
            "event_id": "evt_other", "qr_text": qr["token"],
        })
        assert resp.status_code == 409
        assert resp.json()["error"] == "CONFLICT"

    async def test_nothing_to_scan(self, client, show):
        resp = await client.post("/api/checkin", json={"event_id": "evt_show"})
        assert resp.status_code == 400


class TestTimings:

    async def test_timings_are_admin_only(self, client, show):
        assert (await client.get("/api/admin/timings")).status_code == 401
        await client.get("/api/events/evt_show/availability")
        resp = await client.get("/api/admin/timings", auth=ADMIN)
        rows = {i["kind"]: i for i in resp.json()["items"]}
        assert rows["inventory.availability"]["n"] >= 1

    async def test_reset(self, client, show):
        await client.get("/api/events/evt_show/availability")
        resp = await client.delete("/api/admin/timings", auth=ADMIN)
        assert resp.json() == {"ok": True}
        resp = await client.get("/api/admin/timings", auth=ADMIN)
        assert resp.json()["items"] == []
