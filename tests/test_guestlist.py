"""Tests for guestlist entries and guest tickets."""

import pytest

from boxoffice import guestlist
from boxoffice.errors import GuestlistError, NotFoundError
from boxoffice.model.db import GuestlistEntry
from boxoffice.propagate.keys import k_guestlist

from conftest import (
    EVENT_ID, GA_TIER, PRODUCT_ID, FakeSocket, available, ledger_row,
)


class TestGuestlist:

    async def test_add_guest(self, fulfiller, catalog, cache):
        await cache.set(k_guestlist(EVENT_ID), [])

        entry = await guestlist.add_guest(
            fulfiller, EVENT_ID, "Nina Simone", category="artist",
            plus_one=True, email="nina@example.com",
        )

        assert entry["status"] == "pending"
        assert entry["ticket_id"] is None
        assert k_guestlist(EVENT_ID) not in cache
        assert [e["id"] for e in
                await guestlist.list_guests(fulfiller, EVENT_ID)] == \
            [entry["id"]]

    async def test_add_guest_validation(self, fulfiller, catalog):
        with pytest.raises(GuestlistError):
            await guestlist.add_guest(fulfiller, EVENT_ID, "  ")
        with pytest.raises(GuestlistError):
            await guestlist.add_guest(fulfiller, EVENT_ID, "X",
                                      category="groupie")
        with pytest.raises(NotFoundError):
            await guestlist.add_guest(fulfiller, PRODUCT_ID, "X")

    async def test_plus_one_gets_two_units(self, fulfiller, catalog,
                                           transport, socket):
        entry = await guestlist.add_guest(
            fulfiller, EVENT_ID, "Nina Simone", category="artist",
            plus_one=True, email="nina@example.com",
        )

        result = await guestlist.issue_guest_ticket(fulfiller, entry["id"])

        assert result.kind == "guestlist"
        assert result.payment_reference == f"guest_{entry['id']}"
        assert len(result.units) == 2
        assert all(u.unit_id.startswith("GST-") for u in result.units)
        assert result.units[0].tier_name == "Guestlist (artist)"
        # tier stock is untouched
        assert await available(catalog, GA_TIER) == 10
        assert transport.sent[0].recipient == "nina@example.com"
        assert socket.received[-1]["event"] == "guestlist_update"
        assert socket.received[-1]["data"]["guest_id"] == entry["id"]

        async with catalog() as session:
            stored = await session.get(GuestlistEntry, entry["id"])
            assert stored.ticket_id == result.units[0].unit_id

    async def test_issue_twice_is_duplicate(self, fulfiller, catalog):
        entry = await guestlist.add_guest(fulfiller, EVENT_ID, "Sun Ra")
        first = await guestlist.issue_guest_ticket(fulfiller, entry["id"])
        again = await guestlist.issue_guest_ticket(fulfiller, entry["id"])
        assert again.duplicate is True
        assert again.units == first.units

    async def test_email_given_at_issue(self, fulfiller, catalog, transport):
        entry = await guestlist.add_guest(fulfiller, EVENT_ID, "Sun Ra")
        await guestlist.issue_guest_ticket(fulfiller, entry["id"],
                                           email="sunra@example.com")

        assert transport.sent[0].recipient == "sunra@example.com"
        row = await ledger_row(catalog, f"guest_{entry['id']}")
        assert row.buyer_email == "sunra@example.com"
        guests = await guestlist.list_guests(fulfiller, EVENT_ID)
        assert guests[0]["email"] == "sunra@example.com"

    async def test_unknown_entry(self, fulfiller, catalog):
        with pytest.raises(NotFoundError):
            await guestlist.issue_guest_ticket(fulfiller, 999)

    async def test_check_in(self, fulfiller, catalog):
        entry = await guestlist.add_guest(fulfiller, EVENT_ID, "Sun Ra")
        checked = await guestlist.check_in(fulfiller, entry["id"])
        assert checked["status"] == "checked_in"
        with pytest.raises(GuestlistError):
            await guestlist.check_in(fulfiller, entry["id"])

    async def test_check_in_with_dead_observer(self, fulfiller, catalog,
                                               broadcaster, socket):
        await broadcaster.connect(FakeSocket(broken=True))
        entry = await guestlist.add_guest(fulfiller, EVENT_ID, "Sun Ra")

        checked = await guestlist.check_in(fulfiller, entry["id"])

        assert checked["status"] == "checked_in"
        assert broadcaster.count == 1
        assert socket.received[-1]["data"]["type"] == "checked_in"
