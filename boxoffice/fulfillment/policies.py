from __future__ import annotations
from abc import ABC
from typing import Dict, List, Optional, Sequence

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..model.db import CatalogEntity, FulfillmentUnit
from ..model.inventory import TierView
from ..propagate.keys import (
    k_events_all, k_event, k_merch_all, k_product, k_guestlist, k_inventory
)
from .request import FulfillmentRequest, FulfillmentResult, ItemKind


class FulfillmentPolicy(ABC):
    """What differs between tickets, merch orders and guestlist tickets.

    The fulfiller owns the transaction; a policy only decides how units are
    named, whether stock is reserved, what gets invalidated and broadcast,
    and which mail template is used.
    """
    kind: ItemKind
    unit_prefix: str
    reserves_inventory: bool = True
    realtime_event: str
    template: str

    def virtual_tier(self, request: FulfillmentRequest) -> TierView:
        raise NotImplementedError(
            f"{type(self).__name__} reserves inventory"
        )

    def cache_keys(self, request: FulfillmentRequest) -> List[str]:
        raise NotImplementedError

    def subject(self, entity: CatalogEntity, quantity: int) -> str:
        raise NotImplementedError

    def broadcast_payload(
        self, result: FulfillmentResult, tier: TierView
    ) -> Dict:
        return {
            "type": "fulfilled",
            "kind": self.kind.value,
            "catalog_id": result.catalog_id,
            "tier_id": result.tier_id,
            "available": tier.available if self.reserves_inventory else None,
            "sold_out": self.reserves_inventory and tier.available <= 0,
        }

    # runs inside the fulfillment transaction, after units are flushed
    async def after_units(
        self,
        session: AsyncSession,
        request: FulfillmentRequest,
        units: Sequence[FulfillmentUnit],
    ) -> None:
        return None


class TicketPolicy(FulfillmentPolicy):
    kind = ItemKind.TICKET
    unit_prefix = "TCK"
    realtime_event = "inventory_update"
    template = "ticket"

    def cache_keys(self, request: FulfillmentRequest) -> List[str]:
        return [
            k_events_all(),
            k_event(request.catalog_id),
            k_inventory(request.catalog_id),
        ]

    def subject(self, entity: CatalogEntity, quantity: int) -> str:
        noun = "ticket" if quantity == 1 else f"{quantity} tickets"
        return f"Your {noun} for {entity.title}"


class MerchPolicy(FulfillmentPolicy):
    kind = ItemKind.MERCH
    unit_prefix = "ORD"
    realtime_event = "merch_update"
    template = "merch_order"

    def cache_keys(self, request: FulfillmentRequest) -> List[str]:
        return [
            k_merch_all(),
            k_product(request.catalog_id),
            k_inventory(request.catalog_id),
        ]

    def subject(self, entity: CatalogEntity, quantity: int) -> str:
        return f"Order confirmation: {entity.title}"


class GuestlistPolicy(FulfillmentPolicy):
    """Free tickets for guestlist entries; no tier stock is consumed."""
    kind = ItemKind.GUESTLIST
    unit_prefix = "GST"
    reserves_inventory = False
    realtime_event = "guestlist_update"
    template = "ticket"

    def __init__(self, entry_id: Optional[int] = None,
                 category: str = "guest") -> None:
        self.entry_id = entry_id
        self.category = category

    def virtual_tier(self, request: FulfillmentRequest) -> TierView:
        return TierView(
            id=request.tier_id,
            catalog_id=request.catalog_id,
            kind="guestlist",
            name=f"Guestlist ({self.category})",
            unit_price=0,
            available=0,
        )

    def cache_keys(self, request: FulfillmentRequest) -> List[str]:
        return [
            k_guestlist(request.catalog_id),
            k_events_all(),
            k_event(request.catalog_id),
        ]

    def subject(self, entity: CatalogEntity, quantity: int) -> str:
        return f"You're on the list for {entity.title}"

    def broadcast_payload(
        self, result: FulfillmentResult, tier: TierView
    ) -> Dict:
        payload = super().broadcast_payload(result, tier)
        payload["guest_id"] = self.entry_id
        payload["ticket_id"] = (
            result.units[0].unit_id if result.units else None
        )
        return payload

    async def after_units(
        self,
        session: AsyncSession,
        request: FulfillmentRequest,
        units: Sequence[FulfillmentUnit],
    ) -> None:
        if self.entry_id is None or not units:
            return
        await session.execute(text("""
            UPDATE guestlist
            SET ticket_id = :t, email = COALESCE(:e, email)
            WHERE id = :id
        """), {
            "t": units[0].unit_id,
            "e": request.buyer.email,
            "id": self.entry_id,
        })


def default_policies() -> Dict[ItemKind, FulfillmentPolicy]:
    return {
        ItemKind.TICKET: TicketPolicy(),
        ItemKind.MERCH: MerchPolicy(),
        ItemKind.GUESTLIST: GuestlistPolicy(),
    }
