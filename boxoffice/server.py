from __future__ import annotations
import logging
import os
import sys
from typing import Optional

import httpx
import redis.asyncio as redis

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import ORJSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from .errors import DomainError, ErrorCode, InvalidRequest
from .helpers import ct_equal, is_valid_email
from .infra.sql import GatedAsyncSession, create_schema, make_async_engine
from .infra.timings import reset as reset_timings, snapshot, timeit
from .model import catalog, checkin, holds, inventory, payments, settlement
from .model.ledger import BACKEND as LEDGER_BACKEND
from .model.orm import Base, PAY_PAID, PAY_PENDING
from .model.webhooks import process_webhook
from .providers import get_provider
from .providers import mockpay
from .providers.transfer import BankTransfer
from .qrtoken import sign_ticket_token
from .schemas import (
    CheckinRequest, CheckoutRequest, EventCreate, HoldRequest,
    MockEmitRequest,
)

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ----------------------------
# Config & Constants
# ----------------------------
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    "http://localhost:8000/payments/mockpay/webhook"
)
DATABASE_URL = os.environ.get("DATABASE_URL", None)

if DATABASE_URL is None:
    logger.critical("NEED DATABASE_URL! e.g. sqlite:///./boxoffice.db")
    sys.exit(1)

CURRENCY = os.environ.get("CURRENCY", "clp")

ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")

HTTP_STATUS = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.INSUFFICIENT_STOCK: 409,
    ErrorCode.INVALID_HOLD_STATE: 409,
    ErrorCode.ALREADY_USED: 409,
    ErrorCode.CONFLICT: 409,
    ErrorCode.SIGNATURE_INVALID: 400,
    ErrorCode.INVALID_REQUEST: 400,
    ErrorCode.PROVIDER_ERROR: 502,
}


engine, SessionAsync, _, gated = make_async_engine(DATABASE_URL)


async def get_db() -> GatedAsyncSession:
    async with SessionAsync() as session:
        yield GatedAsyncSession(session=session, gated=gated)


app = FastAPI(
    title="BoxOffice",
    default_response_class=ORJSONResponse,
)

security = HTTPBasic()


def get_http() -> httpx.AsyncClient:
    http = getattr(app.state, "http", None)
    if http is None:
        raise RuntimeError("HTTP client not initialized")
    return http


def get_redis() -> Optional[redis.Redis]:
    return getattr(app.state, "redis", None)


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    logger.info("=" * 50)
    logger.info("BoxOffice is starting up...")
    logger.info("   - Database: %s", engine.dialect.name)
    logger.info("   - Webhook Ledger Backend: %s", LEDGER_BACKEND)
    logger.info("=" * 50)


@app.on_event("startup")
async def _db_init():
    await create_schema(engine, Base)


@app.on_event("startup")
async def _http_client_start():
    max_conn = int(os.getenv("HTTP_MAX_CONN", "512"))
    app.state.http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(max_connections=max_conn,
                            max_keepalive_connections=max_conn),
    )


@app.on_event("startup")
async def _redis_start():
    if LEDGER_BACKEND != "redis":
        return
    redis_timeout = float(os.getenv("REDIS_TIMEOUT", "2.0"))
    app.state.redis = redis.from_url(
        os.getenv("REDIS_URL", "redis://127.0.0.1:6379"),
        decode_responses=True,
        max_connections=int(os.getenv("REDIS_MAX_CONN", "512")),
        socket_timeout=redis_timeout,
        socket_connect_timeout=redis_timeout,
        retry_on_timeout=True,
    )
    logger.info("webhook ledger uses redis")


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


@app.on_event("shutdown")
async def _db_stop():
    await engine.dispose()


# ----------------------------
# Errors & auth
# ----------------------------
@app.exception_handler(DomainError)
async def _domain_error(request: Request, exc: DomainError):
    status = HTTP_STATUS.get(exc.code, 409)
    if status >= 500:
        logger.error("%s %s: %s", request.method, request.url.path, exc)
    return ORJSONResponse(exc.to_dict(), status_code=status)


def require_admin(
    creds: HTTPBasicCredentials = Depends(security),
) -> str:
    if not (ct_equal(creds.username, ADMIN_USERNAME)
            and ct_equal(creds.password, ADMIN_PASSWORD)):
        raise HTTPException(
            status_code=401,
            detail="invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )
    return creds.username


# ----------------------------
# API: catalog & availability
# ----------------------------
@app.get("/api/events/{event_id}")
async def api_get_event(event_id: str,
                        db: GatedAsyncSession = Depends(get_db)):
    return {"ok": True, "event": await catalog.get_event(db, event_id)}


@app.get("/api/events/{event_id}/availability")
async def api_availability(event_id: str,
                           db: GatedAsyncSession = Depends(get_db)):
    return {"ok": True, **await inventory.get_availability(db, event_id)}


# ----------------------------
# API: holds
# ----------------------------
@app.post("/api/holds")
async def api_create_hold(payload: HoldRequest,
                          db: GatedAsyncSession = Depends(get_db)):
    hold = await holds.create_or_reuse_hold(
        db,
        payload.event_id,
        [(it.ticket_type_id, it.qty) for it in payload.items],
        ttl_seconds=payload.ttl_seconds,
        existing_hold_id=payload.hold_id,
    )
    return {"ok": True, "hold": hold}


@app.get("/api/holds/{hold_id}")
async def api_get_hold(hold_id: str, db: GatedAsyncSession = Depends(get_db)):
    return {"ok": True, "hold": await holds.get_hold(db, hold_id)}


@app.post("/api/holds/{hold_id}/release")
async def api_release_hold(hold_id: str,
                           db: GatedAsyncSession = Depends(get_db)):
    return {"ok": True, **await holds.release_hold(db, hold_id)}


# ----------------------------
# API: checkout
# ----------------------------
@app.post("/api/checkout")
async def api_checkout(payload: CheckoutRequest,
                       db: GatedAsyncSession = Depends(get_db)):
    if not is_valid_email(payload.buyer_email):
        raise InvalidRequest(
            "buyer_email is required and must be a valid email address"
        )
    provider = get_provider(payload.provider, get_http())

    bound = await payments.prepare_for_hold(
        db, payload.hold_id, provider.name, payload.buyer_name,
        payload.buyer_email, currency=CURRENCY,
    )
    payment = bound["payment"]
    if payment["status"] == PAY_PAID:
        return {
            "ok": True,
            "already_paid": True,
            "payment_id": payment["id"],
            "order_id": payment["order_id"],
        }

    # no transaction is open while we talk to the provider
    async with timeit(f"provider.{provider.name}.create_checkout"):
        session = await provider.create_checkout(payment, bound["items"])
    if session.provider_ref and session.provider_ref != payment["provider_ref"]:
        await payments.attach_provider_ref(db, payment["id"],
                                           session.provider_ref)

    return {
        "ok": True,
        "already_paid": False,
        "payment_id": payment["id"],
        "hold_id": payment["hold_id"],
        "provider": provider.name,
        "amount": payment["amount"],
        "currency": payment["currency"],
        "redirect_url": session.redirect_url,
        "provider_ref": session.provider_ref,
        "instructions": session.instructions,
    }


# ----------------------------
# Webhook endpoint (one per provider)
# ----------------------------
@app.post("/payments/{provider_name}/webhook")
async def payments_webhook(
    provider_name: str,
    request: Request,
    db: GatedAsyncSession = Depends(get_db),
):
    provider = get_provider(provider_name, get_http())
    payload = await request.body()
    if not payload:
        # return-URL style providers may only send a query string
        payload = request.url.query.encode()

    async with timeit(f"provider.{provider.name}.parse_webhook"):
        event = await provider.parse_webhook(payload, request.headers)
    if event is None:
        return {"ok": True, "ignored": True}

    try:
        result = await process_webhook(db, event, r=get_redis(),
                                       backend=LEDGER_BACKEND)
    except DomainError:
        raise
    except Exception:
        # 500 makes the provider retry; the claim was rolled back/released
        logger.exception("%s webhook %s failed", provider.name,
                         event.external_event_id)
        return ORJSONResponse(
            {"ok": False, "error": "webhook processing failed"},
            status_code=500,
        )

    if result["duplicate"]:
        return {"ok": True, "idempotent": True}
    return {"ok": True, "idempotent": False, **result}


# ----------------------------
# API: payment status (polled by the success page, reconciles)
# ----------------------------
@app.get("/api/payments/{payment_id}")
async def api_payment_status(payment_id: str,
                             db: GatedAsyncSession = Depends(get_db)):
    p = await payments.get_payment(db, payment_id)

    if p["status"] == PAY_PENDING and p["provider_ref"]:
        # the webhook may be late or lost: ask the provider
        provider = get_provider(p["provider"], get_http())
        status = None
        try:
            async with timeit(f"provider.{provider.name}.fetch_status"):
                status = await provider.fetch_status(p["provider_ref"])
        except DomainError as e:
            logger.warning("payment %s: status lookup failed: %s",
                           payment_id, e)
        if status and status != PAY_PENDING:
            async with timeit("payments.reconcile"):
                async with db.gated():
                    async with db.session.begin():
                        await settlement.apply_payment_status(
                            db.session, payment_id, status
                        )
            p = await payments.get_payment(db, payment_id)

    order, tickets = None, []
    if p["status"] == PAY_PAID:
        async with db.gated():
            async with db.session.begin():
                done = await settlement.load_settlement(db.session,
                                                        p["hold_id"])
        if done is not None:
            order = done["order"]
            tickets = [settlement.ticket_view(t) for t in done["tickets"]]

    return {
        "ok": True,
        "payment": payments.payment_view(p),
        "order": order,
        "tickets": tickets,
    }


@app.get("/api/orders/by-hold/{hold_id}")
async def api_order_by_hold(hold_id: str,
                            db: GatedAsyncSession = Depends(get_db)):
    done = await settlement.get_settlement(db, hold_id)
    return {
        "ok": True,
        "order": done["order"],
        "tickets": [settlement.ticket_view(t) for t in done["tickets"]],
    }


# ----------------------------
# API: tickets & check-in
# ----------------------------
@app.get("/api/tickets/{ticket_id}/qr")
async def api_ticket_qr(ticket_id: str,
                        db: GatedAsyncSession = Depends(get_db)):
    t = await checkin.get_ticket(db, ticket_id)
    return {
        "ok": True,
        "ticket_id": t["id"],
        "event_id": t["event_id"],
        "token": sign_ticket_token(t["id"], t["event_id"]),
    }


@app.post("/api/checkin")
async def api_checkin(payload: CheckinRequest,
                      db: GatedAsyncSession = Depends(get_db)):
    ticket_id = (payload.ticket_id or "").strip()
    if not ticket_id:
        if not payload.qr_text:
            raise InvalidRequest("ticket_id or qr_text is required")
        ticket_id, _ = checkin.resolve_qr_payload(payload.qr_text,
                                                  payload.event_id)
    ticket = await checkin.check_in(db, ticket_id, payload.event_id)
    return {"ok": True, "ticket": ticket}


# ----------------------------
# MockPay: hosted page, sign and deliver a webhook
# ----------------------------
async def _mockpay_payment(db: GatedAsyncSession, payment_id: str):
    p = await payments.get_payment(db, payment_id)
    if p["provider"] != mockpay.MockPay.name:
        raise InvalidRequest("payment is not a mockpay payment",
                             provider=p["provider"])
    return p


@app.get("/mockpay/{payment_id}")
async def mockpay_page(payment_id: str,
                       db: GatedAsyncSession = Depends(get_db)):
    p = await _mockpay_payment(db, payment_id)
    return {"ok": True, **mockpay.page_view(p)}


@app.post("/mockpay/{payment_id}/emit")
async def mockpay_emit(payment_id: str, payload: MockEmitRequest,
                       db: GatedAsyncSession = Depends(get_db)):
    p = await _mockpay_payment(db, payment_id)

    body = mockpay.build_event(p, payload.kind)
    sig = mockpay.sign(body)

    client_http = get_http()
    try:
        resp = await client_http.post(
            MOCK_WEBHOOK_URL,
            content=body,
            headers={
                "x-mockpay-signature": sig,
                "content-type": "application/json",
            },
        )
    except httpx.HTTPError as e:
        # the buyer can emit again
        logger.warning("mockpay webhook delivery failed: %s", e)
        return {"ok": True, "delivered": False, "status_code": None}
    return {"ok": True, "delivered": resp.status_code < 300,
            "status_code": resp.status_code}


# ----------------------------
# Admin
# ----------------------------
@app.post("/api/admin/events")
async def api_admin_create_event(payload: EventCreate,
                                 db: GatedAsyncSession = Depends(get_db),
                                 _: str = Depends(require_admin)):
    event = await catalog.create_event(
        db, payload.title,
        [tt.model_dump() for tt in payload.ticket_types],
        currency=payload.currency,
        event_id=payload.id,
    )
    return {"ok": True, "event": event}


@app.get("/api/admin/orders")
async def api_admin_orders(limit: int = 200,
                           db: GatedAsyncSession = Depends(get_db),
                           _: str = Depends(require_admin)):
    items = await catalog.list_recent_orders(db, limit=limit)
    return {"items": items, "limit": limit}


async def _manual_transfer(db: GatedAsyncSession, payment_id: str,
                           confirmed: bool):
    p = await payments.get_payment(db, payment_id)
    provider = BankTransfer()
    if p["provider"] != provider.name:
        raise InvalidRequest("only bank transfers are settled manually",
                             provider=p["provider"])
    result = await process_webhook(
        db, provider.manual_event(payment_id, confirmed),
        r=get_redis(), backend=LEDGER_BACKEND,
    )
    if result["duplicate"]:
        return {"ok": True, "idempotent": True}
    return {"ok": True, "idempotent": False, **result}


@app.post("/api/admin/payments/{payment_id}/confirm")
async def api_admin_confirm_payment(payment_id: str,
                                    db: GatedAsyncSession = Depends(get_db),
                                    _: str = Depends(require_admin)):
    return await _manual_transfer(db, payment_id, confirmed=True)


@app.post("/api/admin/payments/{payment_id}/reject")
async def api_admin_reject_payment(payment_id: str,
                                   db: GatedAsyncSession = Depends(get_db),
                                   _: str = Depends(require_admin)):
    return await _manual_transfer(db, payment_id, confirmed=False)


@app.post("/api/admin/events/{event_id}/reset-checkins")
async def api_admin_reset_checkins(event_id: str,
                                   db: GatedAsyncSession = Depends(get_db),
                                   _: str = Depends(require_admin)):
    return {"ok": True, "reset": await checkin.reset_checkins(db, event_id)}


@app.get("/api/admin/timings")
async def api_admin_timings(_: str = Depends(require_admin)):
    return {"items": snapshot()}


@app.delete("/api/admin/timings")
async def api_admin_reset_timings(_: str = Depends(require_admin)):
    reset_timings()
    return {"ok": True}
