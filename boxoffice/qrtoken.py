"""
Signed ticket tokens for QR codes:

    tc1.<ticket_id>.<event_id>.<iat_ms>.<sig>

sig is the unpadded base64url HMAC-SHA256 of everything before it.
"""

from typing import Optional, TypedDict
import base64
import hashlib
import hmac
import os
import time

QR_SECRET = os.environ.get("QR_SECRET", "dev-qr-secret-change-me")

TOKEN_VERSION = "tc1"


class TicketToken(TypedDict):
    ticket_id: str
    event_id: str
    iat_ms: int


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _sig(payload: str, secret: str) -> str:
    return _b64url(hmac.new(secret.encode(), payload.encode(),
                            hashlib.sha256).digest())


def sign_ticket_token(ticket_id: str, event_id: str,
                      iat_ms: Optional[int] = None,
                      secret: str = QR_SECRET) -> str:
    if iat_ms is None:
        iat_ms = int(time.time() * 1000)
    payload = f"{TOKEN_VERSION}.{ticket_id}.{event_id}.{int(iat_ms)}"
    return f"{payload}.{_sig(payload, secret)}"


def verify_ticket_token(token: str,
                        secret: str = QR_SECRET) -> Optional[TicketToken]:
    """None for anything malformed or not signed with `secret`."""
    parts = (token or "").strip().split(".")
    if len(parts) != 5 or parts[0] != TOKEN_VERSION:
        return None
    _, ticket_id, event_id, iat, sig = parts
    try:
        iat_ms = int(iat)
    except ValueError:
        return None
    if iat_ms <= 0 or not ticket_id or not event_id:
        return None
    expected = _sig(f"{TOKEN_VERSION}.{ticket_id}.{event_id}.{iat_ms}",
                    secret)
    if not hmac.compare_digest(expected.encode(), sig.encode()):
        return None
    return {"ticket_id": ticket_id, "event_id": event_id, "iat_ms": iat_ms}
