# guestlist.py
"""
Guestlist: free tickets for people the organizer puts on the list.

Issuing a guest ticket is a fulfillment like any other (ledger row, units,
mail, propagation); the payment reference is derived from the entry id, so
issuing twice returns the first ticket.
"""
from __future__ import annotations
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select

from .errors import GuestlistError, NotFoundError
from .fulfillment.policies import GuestlistPolicy
from .fulfillment.request import (
    Buyer, FulfillmentRequest, FulfillmentResult, ItemKind
)
from .fulfillment.transaction import Fulfiller
from .helpers import is_valid_email, now_ts
from .model.db import (
    CatalogEntity, GuestlistEntry, KIND_EVENT, GUEST_CHECKED_IN
)
from .propagate.keys import k_guestlist

log = structlog.get_logger(__name__)

GUESTLIST_TIER = "guestlist"
CATEGORIES = ("guest", "artist", "press", "crew", "vip")


def guest_reference(entry_id: int) -> str:
    return f"guest_{entry_id}"


def _entry_dict(e: GuestlistEntry) -> Dict[str, Any]:
    return {
        "id": e.id,
        "event_id": e.event_id,
        "name": e.name,
        "category": e.category,
        "plus_one": bool(e.plus_one),
        "email": e.email,
        "status": e.status,
        "ticket_id": e.ticket_id,
    }


async def add_guest(
    fulfiller: Fulfiller,
    event_id: str,
    name: str,
    *,
    category: str = "guest",
    plus_one: bool = False,
    email: Optional[str] = None,
) -> Dict[str, Any]:
    name = (name or "").strip()
    if not name:
        raise GuestlistError("guest name is required")
    if category not in CATEGORIES:
        raise GuestlistError(f"unknown category: {category}")
    if email is not None and not is_valid_email(email):
        raise GuestlistError("invalid email")

    async with fulfiller.gated():
        async with fulfiller.Session() as session:
            async with session.begin():
                entity = await session.get(CatalogEntity, event_id)
                if entity is None or entity.kind != KIND_EVENT:
                    raise NotFoundError("event", event_id)
                entry = GuestlistEntry(
                    event_id=event_id,
                    name=name,
                    category=category,
                    plus_one=bool(plus_one),
                    email=email,
                    created_at=now_ts(),
                )
                session.add(entry)
                await session.flush()
                out = _entry_dict(entry)

    log.info("guest_added", event_id=event_id, entry_id=out["id"],
             category=category)
    await fulfiller.announce(
        [k_guestlist(event_id)], "guestlist_update",
        {"type": "added", "guest_id": out["id"], "catalog_id": event_id},
    )
    return out


async def list_guests(fulfiller: Fulfiller,
                      event_id: str) -> List[Dict[str, Any]]:
    async with fulfiller.gated():
        async with fulfiller.Session() as session:
            rows = (await session.execute(
                select(GuestlistEntry)
                .where(GuestlistEntry.event_id == event_id)
                .order_by(GuestlistEntry.id)
            )).scalars().all()
    return [_entry_dict(e) for e in rows]


async def issue_guest_ticket(
    fulfiller: Fulfiller, entry_id: int, email: Optional[str] = None
) -> FulfillmentResult:
    if email is not None and not is_valid_email(email):
        raise GuestlistError("invalid email")

    async with fulfiller.gated():
        async with fulfiller.Session() as session:
            entry = await session.get(GuestlistEntry, entry_id)
            if entry is None:
                raise NotFoundError("guestlist entry", str(entry_id))
            data = _entry_dict(entry)

    first, _, last = data["name"].partition(" ")
    request = FulfillmentRequest(
        payment_reference=guest_reference(entry_id),
        provider="guestlist",
        kind=ItemKind.GUESTLIST,
        catalog_id=data["event_id"],
        tier_id=GUESTLIST_TIER,
        quantity=2 if data["plus_one"] else 1,
        buyer=Buyer(email=email or data["email"], first_name=first,
                    last_name=last),
    )
    policy = GuestlistPolicy(entry_id=entry_id, category=data["category"])
    return await fulfiller.fulfill(request, policy)


async def check_in(fulfiller: Fulfiller, entry_id: int) -> Dict[str, Any]:
    async with fulfiller.gated():
        async with fulfiller.Session() as session:
            async with session.begin():
                entry = (await session.execute(
                    select(GuestlistEntry)
                    .where(GuestlistEntry.id == entry_id)
                    .with_for_update()
                )).scalar_one_or_none()
                if entry is None:
                    raise NotFoundError("guestlist entry", str(entry_id))
                if entry.status == GUEST_CHECKED_IN:
                    raise GuestlistError("guest already checked in")
                entry.status = GUEST_CHECKED_IN
                out = _entry_dict(entry)

    log.info("guest_checked_in", entry_id=entry_id,
             event_id=out["event_id"])
    await fulfiller.announce(
        [k_guestlist(out["event_id"])], "guestlist_update",
        {"type": "checked_in", "guest_id": entry_id,
         "catalog_id": out["event_id"]},
    )
    return out
