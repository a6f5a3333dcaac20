"""
Shared fixtures: a throwaway SQLite ledger (aiosqlite, BEGIN IMMEDIATE
transactions), fakeredis for OTP and rate limits, MockPay for payments, and
an httpx client bound to the FastAPI app.
"""
from dataclasses import dataclass
from typing import AsyncIterator

import fakeredis
import httpx
import pytest
import pytest_asyncio

from boxoffice.helpers import now_ts
from boxoffice.infra import timings
from boxoffice.infra.sql import make_async_engine
from boxoffice.model.fulfillment import Reconciler
from boxoffice.model.ledger import (
    EVENT_ACTIVE,
    Event,
    ExternalEvent,
    User,
    create_schema,
)
from boxoffice.model.reservation import Reservations
from boxoffice.model.tickets import TicketLifecycle
from boxoffice.payments import MockPay

MOCK_SECRET = "test-secret"


@dataclass
class Ledger:
    sessions: object
    gated: object


@pytest_asyncio.fixture
async def ledger(tmp_path) -> AsyncIterator[Ledger]:
    engine, SessionAsync, _, gated = make_async_engine(
        f"sqlite:///{tmp_path}/boxoffice.db"
    )
    async with engine.begin() as conn:
        await create_schema(conn)
    yield Ledger(sessions=SessionAsync, gated=gated)
    await engine.dispose()


@pytest_asyncio.fixture
async def r():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def mockpay() -> MockPay:
    return MockPay(secret=MOCK_SECRET)


@pytest.fixture
def reservations(ledger, mockpay) -> Reservations:
    return Reservations(ledger.sessions, ledger.gated, mockpay)


@pytest.fixture
def reconciler(ledger) -> Reconciler:
    return Reconciler(ledger.sessions, ledger.gated)


@pytest.fixture
def lifecycle(ledger) -> TicketLifecycle:
    return TicketLifecycle(ledger.sessions, ledger.gated)


@pytest.fixture(autouse=True)
def _reset_timings():
    yield
    timings.reset()


# ----------------------------
# Seed helpers
# ----------------------------
async def add_user(ledger: Ledger, email: str, **kw) -> User:
    async with ledger.sessions() as db:
        async with db.begin():
            user = User(email=email, created_at=now_ts(), **kw)
            db.add(user)
            await db.flush()
    return user


async def add_event(ledger: Ledger, host: User, **kw) -> Event:
    fields = dict(
        title="Launch Night",
        venue="Main Hall",
        starts_at=now_ts() + 86400,
        capacity=100,
        tickets_sold=0,
        price_cents=2500,
        currency="usd",
        status=EVENT_ACTIVE,
        created_at=now_ts(),
    )
    fields.update(kw)
    async with ledger.sessions() as db:
        async with db.begin():
            event = Event(host_id=host.id, **fields)
            db.add(event)
            await db.flush()
    return event


async def add_external_event(
    ledger: Ledger, host: User, uuid: str, **kw
) -> ExternalEvent:
    fields = dict(
        title="Imported Gig",
        starts_at=now_ts() + 86400,
        price_cents=1000,
        currency="usd",
        status=EVENT_ACTIVE,
    )
    fields.update(kw)
    async with ledger.sessions() as db:
        async with db.begin():
            event = ExternalEvent(id=uuid, host_id=host.id, **fields)
            db.add(event)
            await db.flush()
    return event


async def get_row(ledger: Ledger, model, key):
    async with ledger.sessions() as db:
        async with db.begin():
            return await db.get(model, key)


@pytest_asyncio.fixture
async def host(ledger) -> User:
    return await add_user(
        ledger, "host@example.com", name="Hana Host", role="host",
        payout_account_id="acct_123", payouts_enabled=True,
    )


# ----------------------------
# HTTP
# ----------------------------
@pytest_asyncio.fixture
async def api(ledger, r, mockpay) -> AsyncIterator[httpx.AsyncClient]:
    from boxoffice.server import app, wire_services

    wire_services(
        app.state,
        sessions=ledger.sessions,
        gated=ledger.gated,
        r=r,
        payments=mockpay,
    )
    transport = httpx.ASGITransport(app=app)
    # the mock payment page delivers its webhook back into the app
    app.state.http = httpx.AsyncClient(
        transport=transport, base_url="http://localhost:8000"
    )
    async with httpx.AsyncClient(
        transport=transport, base_url="http://test"
    ) as client:
        yield client
    await app.state.http.aclose()
    app.state.http = None
