"""Shared fixtures: a file-backed SQLite database, a seeded catalog and a
fulfiller wired to in-memory side effects."""

from typing import List, Optional

import pytest
from sqlalchemy import select

from boxoffice.fulfillment.request import Buyer, FulfillmentRequest, ItemKind
from boxoffice.fulfillment.transaction import Fulfiller
from boxoffice.infra.sql import make_async_engine
from boxoffice.model.db import (
    Base, CatalogEntity, Fulfillment, FulfillmentUnit, InventoryTier,
    KIND_EVENT, KIND_PRODUCT, TIER_APPAREL, TIER_TICKET,
)
from boxoffice.notify import NotificationDispatcher
from boxoffice.notify.transport import Message, NotificationTransport
from boxoffice.propagate import Broadcaster, Propagator, new_cache

CODE_SECRET = "test-code-secret"

EVENT_ID = "evt-spring-fest"
GA_TIER = "evt-spring-fest-ga"
VIP_TIER = "evt-spring-fest-vip"
PRODUCT_ID = "hoodie-black"
SIZE_M = "hoodie-black:M"


class RecordingTransport(NotificationTransport):
    """Keeps sent messages; raises for recipients listed in `fail_for`."""

    def __init__(self) -> None:
        self.sent: List[Message] = []
        self.fail_for = set()

    async def send(self, message: Message) -> None:
        if message.recipient in self.fail_for:
            raise ConnectionError("smtp relay unreachable")
        self.sent.append(message)


class FakeSocket:
    """Stands in for a starlette WebSocket on the broadcaster."""

    def __init__(self, broken: bool = False) -> None:
        self.broken = broken
        self.accepted = False
        self.closed = False
        self.received: List[dict] = []

    async def accept(self) -> None:
        self.accepted = True

    async def send_json(self, data) -> None:
        if self.broken:
            raise RuntimeError("socket closed")
        self.received.append(data)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'boxoffice.db'}"


@pytest.fixture
async def db(database_url):
    engine, Session, gated = make_async_engine(database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine, Session, gated
    await engine.dispose()


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def cache():
    return new_cache("memory", ttl_seconds=300)


@pytest.fixture
def socket() -> FakeSocket:
    return FakeSocket()


@pytest.fixture
async def broadcaster(socket) -> Broadcaster:
    b = Broadcaster()
    await b.connect(socket)
    return b


@pytest.fixture
def fulfiller(db, transport, cache, broadcaster) -> Fulfiller:
    _, Session, gated = db
    return Fulfiller(
        Session, gated,
        code_secret=CODE_SECRET,
        dispatcher=NotificationDispatcher(transport),
        propagator=Propagator(cache, broadcaster),
    )


async def seed_catalog(Session, *, ga: int = 10, vip: int = 2,
                       size_m: int = 5) -> None:
    async with Session() as session:
        async with session.begin():
            session.add_all([
                CatalogEntity(id=EVENT_ID, kind=KIND_EVENT,
                              title="Spring Fest",
                              starts_at="2026-05-01T19:00:00+02:00",
                              location="Halle 4"),
                CatalogEntity(id=PRODUCT_ID, kind=KIND_PRODUCT,
                              title="Black Hoodie"),
            ])
            await session.flush()
            session.add_all([
                InventoryTier(id=GA_TIER, catalog_id=EVENT_ID,
                              kind=TIER_TICKET, name="General Admission",
                              unit_price=3500, available=ga),
                InventoryTier(id=VIP_TIER, catalog_id=EVENT_ID,
                              kind=TIER_TICKET, name="VIP",
                              unit_price=9000, available=vip),
                InventoryTier(id=SIZE_M, catalog_id=PRODUCT_ID,
                              kind=TIER_APPAREL, name="M",
                              unit_price=4500, available=size_m),
            ])


@pytest.fixture
async def catalog(db):
    _, Session, _ = db
    await seed_catalog(Session)
    return Session


def ticket_request(ref: str, *, tier_id: str = GA_TIER, quantity: int = 1,
                   email: Optional[str] = "ada@example.com",
                   unit_id: Optional[str] = None,
                   provider: str = "stripe") -> FulfillmentRequest:
    return FulfillmentRequest(
        payment_reference=ref,
        provider=provider,
        kind=ItemKind.TICKET,
        catalog_id=EVENT_ID,
        tier_id=tier_id,
        quantity=quantity,
        buyer=Buyer(email=email, first_name="Ada", last_name="Lovelace"),
        raw_amount=3500 * quantity,
        unit_id=unit_id,
    )


def merch_request(ref: str, *, quantity: int = 1) -> FulfillmentRequest:
    return FulfillmentRequest(
        payment_reference=ref,
        provider="paypal",
        kind=ItemKind.MERCH,
        catalog_id=PRODUCT_ID,
        tier_id=SIZE_M,
        quantity=quantity,
        buyer=Buyer(email="grace@example.com", first_name="Grace",
                    last_name="Hopper"),
        raw_amount=4500 * quantity,
    )


async def available(Session, tier_id: str) -> int:
    async with Session() as session:
        tier = await session.get(InventoryTier, tier_id)
        return int(tier.available)


async def count_units(Session, payment_reference: Optional[str] = None) -> int:
    async with Session() as session:
        q = select(FulfillmentUnit)
        if payment_reference is not None:
            q = q.where(FulfillmentUnit.payment_reference == payment_reference)
        return len((await session.execute(q)).scalars().all())


async def ledger_row(Session, payment_reference: str):
    async with Session() as session:
        return await session.get(Fulfillment, payment_reference)
