"""Concurrent deliveries against one database."""

import asyncio

from boxoffice.errors import OversellError

from conftest import (
    VIP_TIER, available, count_units, ticket_request,
)


class TestConcurrentFulfillment:

    async def test_two_buyers_last_ticket(self, fulfiller, catalog):
        # leave exactly one VIP ticket
        await fulfiller.fulfill(ticket_request("pi_0", tier_id=VIP_TIER))

        outcomes = await asyncio.gather(
            fulfiller.fulfill(ticket_request("pi_a", tier_id=VIP_TIER)),
            fulfiller.fulfill(ticket_request("pi_b", tier_id=VIP_TIER)),
            return_exceptions=True,
        )

        won = [o for o in outcomes if not isinstance(o, Exception)]
        lost = [o for o in outcomes if isinstance(o, OversellError)]
        assert len(won) == 1
        assert len(lost) == 1
        assert await available(catalog, VIP_TIER) == 0
        assert await count_units(catalog) == 2

    async def test_webhook_and_fallback_race(self, fulfiller, catalog,
                                             transport):
        # same payment arriving through both channels at once
        webhook = ticket_request("pi_1", quantity=3, provider="stripe")
        fallback = ticket_request("pi_1", quantity=3, provider="stripe")

        a, b = await asyncio.gather(
            fulfiller.fulfill(webhook), fulfiller.fulfill(fallback)
        )

        assert sorted([a.duplicate, b.duplicate]) == [False, True]
        assert a.units == b.units
        assert await count_units(catalog, "pi_1") == 3
        assert await available(catalog, "evt-spring-fest-ga") == 7
        assert len(transport.sent) == 1

    async def test_many_duplicates(self, fulfiller, catalog):
        results = await asyncio.gather(*[
            fulfiller.fulfill(ticket_request("pi_1", quantity=2))
            for _ in range(5)
        ])

        assert sum(not r.duplicate for r in results) == 1
        assert len({r.units for r in results}) == 1
        assert await available(catalog, "evt-spring-fest-ga") == 8

    async def test_no_oversell_under_load(self, fulfiller, catalog):
        outcomes = await asyncio.gather(*[
            fulfiller.fulfill(ticket_request(f"pi_{i}", quantity=1))
            for i in range(14)
        ], return_exceptions=True)

        won = [o for o in outcomes if not isinstance(o, Exception)]
        assert len(won) == 10
        assert all(isinstance(o, OversellError)
                   for o in outcomes if isinstance(o, Exception))
        assert await available(catalog, "evt-spring-fest-ga") == 0
