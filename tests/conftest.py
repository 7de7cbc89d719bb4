"""Pytest configuration and shared fixtures.

Every test gets its own SQLite file, created through the same engine
factory the server uses (WAL, BEGIN IMMEDIATE, DB gate).
"""

import os
import tempfile

# module-level configuration is read at import time
_TMP = tempfile.mkdtemp(prefix="boxoffice-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TMP}/server.db")
os.environ.setdefault("DB_GATE_LIMIT", "64")
os.environ.setdefault("HOLD_TTL_MIN_SECONDS", "1")
os.environ.setdefault("QR_SECRET", "test-qr-secret")
os.environ.setdefault("MOCK_SECRET", "test-mock-secret")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("ADMIN_USERNAME", "admin")
os.environ.setdefault("ADMIN_PASSWORD", "test-admin-pw")
os.environ["WEBHOOK_LEDGER_BACKEND"] = "sql"

import pytest  # noqa: E402

from boxoffice.helpers import now_ts  # noqa: E402
from boxoffice.infra.sql import (  # noqa: E402
    GatedAsyncSession, create_schema, make_async_engine,
)
from boxoffice.model import catalog  # noqa: E402
from boxoffice.model.orm import Base  # noqa: E402


@pytest.fixture
async def engine_bundle(tmp_path):
    engine, SessionAsync, _, gated = make_async_engine(
        f"sqlite:///{tmp_path}/test.db"
    )
    await create_schema(engine, Base)
    yield engine, SessionAsync, gated
    await engine.dispose()


@pytest.fixture
async def new_db(engine_bundle):
    """Factory for independent sessions, one per concurrent caller."""
    _, SessionAsync, gated = engine_bundle
    sessions = []

    def make() -> GatedAsyncSession:
        s = SessionAsync()
        sessions.append(s)
        return GatedAsyncSession(session=s, gated=gated)

    yield make
    for s in sessions:
        await s.close()


@pytest.fixture
def db(new_db) -> GatedAsyncSession:
    return new_db()


@pytest.fixture
def t0() -> float:
    return now_ts()


@pytest.fixture
async def event(db):
    """evt_1 with a GA type of capacity 2 and an unlimited VIP type."""
    return await catalog.create_event(
        db, "Night Show",
        [
            {"id": "tt_ga", "name": "General", "unit_price": 5000,
             "capacity": 2},
            {"id": "tt_vip", "name": "VIP", "unit_price": 12000,
             "capacity": None},
        ],
        event_id="evt_1",
    )
