"""Tests for the inventory store."""

import pytest

from boxoffice.errors import InsufficientStockError, NotFoundError
from boxoffice.model import inventory

from conftest import EVENT_ID, GA_TIER, PRODUCT_ID, SIZE_M, VIP_TIER, available


class TestInventoryStore:

    async def test_reserve_decrements_counter(self, catalog):
        async with catalog() as session:
            async with session.begin():
                await inventory.lock_entity(session, EVENT_ID)
                tier = await inventory.get_tier(session, EVENT_ID, GA_TIER)
                after = await inventory.reserve_and_decrement(
                    session, tier, 3
                )
        assert after.available == 7
        assert await available(catalog, GA_TIER) == 7

    async def test_insufficient_stock_leaves_counter(self, catalog):
        async with catalog() as session:
            async with session.begin():
                await inventory.lock_entity(session, EVENT_ID)
                tier = await inventory.get_tier(session, EVENT_ID, VIP_TIER)
                with pytest.raises(InsufficientStockError) as exc:
                    await inventory.reserve_and_decrement(session, tier, 3)
        assert exc.value.requested == 3
        assert exc.value.available == 2
        assert await available(catalog, VIP_TIER) == 2

    async def test_reserve_exact_remaining(self, catalog):
        async with catalog() as session:
            async with session.begin():
                await inventory.lock_entity(session, EVENT_ID)
                tier = await inventory.get_tier(session, EVENT_ID, VIP_TIER)
                after = await inventory.reserve_and_decrement(
                    session, tier, 2
                )
        assert after.available == 0

    async def test_lock_unknown_entity(self, catalog):
        async with catalog() as session:
            async with session.begin():
                with pytest.raises(NotFoundError):
                    await inventory.lock_entity(session, "nope")

    async def test_tier_of_other_entity_is_not_found(self, catalog):
        async with catalog() as session:
            with pytest.raises(NotFoundError):
                await inventory.get_tier(session, EVENT_ID, SIZE_M)

    async def test_restock(self, catalog):
        async with catalog() as session:
            async with session.begin():
                assert await inventory.restock(session, VIP_TIER, 5) == 7
        assert await available(catalog, VIP_TIER) == 7

    async def test_restock_unknown_tier(self, catalog):
        async with catalog() as session:
            async with session.begin():
                with pytest.raises(NotFoundError):
                    await inventory.restock(session, "missing", 1)

    async def test_compute_inventory(self, catalog):
        async with catalog() as session:
            view = await inventory.compute_inventory(session, PRODUCT_ID)
        assert view["kind"] == "product"
        assert view["tiers"] == [{
            "id": SIZE_M,
            "kind": "apparel_size",
            "name": "M",
            "unit_price": 4500,
            "available": 5,
            "sold_out": False,
        }]
