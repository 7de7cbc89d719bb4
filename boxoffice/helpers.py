import time
import re
import uuid
from datetime import datetime, timezone
import hmac
from typing import Any, Iterable, Mapping, Optional

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def new_id(prefix: str) -> str:
    """Readable ids: hold_..., pay_..., ord_..., tix_..."""
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def items_amount(items: Iterable[Mapping[str, Any]]) -> int:
    """Total in minor units of item snapshots (unit_price * qty)."""
    return sum(int(it["unit_price"]) * int(it["qty"]) for it in items)


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def is_valid_email(email: Optional[str]) -> bool:
    return bool(email) and EMAIL_RE.match(email.strip()) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())
