# model/inventory.py
"""
Inventory store: one integer counter per tier (ticket tier or apparel size).

Every write happens inside the caller's transaction:
- lock_entity() takes the catalog row lock (SELECT ... FOR UPDATE on
  PostgreSQL; on SQLite the engine already opened the transaction with
  BEGIN IMMEDIATE)
- reserve_and_decrement() is a single compare-and-decrement UPDATE, so the
  check and the write are never observable separately
- restock() is the administrative path, the only other writer
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import InsufficientStockError, NotFoundError
from .db import CatalogEntity, InventoryTier


@dataclass(frozen=True)
class TierView:
    id: str
    catalog_id: str
    kind: str
    name: str
    unit_price: int
    available: int


def _view(tier: InventoryTier, available: Optional[int] = None) -> TierView:
    return TierView(
        id=tier.id,
        catalog_id=tier.catalog_id,
        kind=tier.kind,
        name=tier.name,
        unit_price=int(tier.unit_price),
        available=int(tier.available if available is None else available),
    )


async def lock_entity(session: AsyncSession, catalog_id: str) -> CatalogEntity:
    entity = (await session.execute(
        select(CatalogEntity)
        .where(CatalogEntity.id == catalog_id)
        .with_for_update()
    )).scalar_one_or_none()
    if entity is None:
        raise NotFoundError("catalog entity", catalog_id)
    return entity


async def get_tier(
    session: AsyncSession, catalog_id: str, tier_id: str
) -> TierView:
    tier = (await session.execute(
        select(InventoryTier).where(InventoryTier.id == tier_id)
    )).scalar_one_or_none()
    if tier is None or tier.catalog_id != catalog_id:
        raise NotFoundError("tier", tier_id)
    return _view(tier)


async def reserve_and_decrement(
    session: AsyncSession, tier: TierView, quantity: int
) -> TierView:
    """
    Decrement `tier` by `quantity` or raise InsufficientStockError.
    Must run after lock_entity() in the same transaction.
    """
    if quantity <= 0:
        raise ValueError("quantity must be positive")

    row = (await session.execute(text("""
        UPDATE inventory_tiers
        SET available = available - :q
        WHERE id = :id AND available >= :q
        RETURNING available
    """), {"id": tier.id, "q": quantity})).first()

    if row is None:
        current = (await session.execute(
            text("SELECT available FROM inventory_tiers WHERE id = :id"),
            {"id": tier.id},
        )).scalar_one()
        raise InsufficientStockError(tier.id, quantity, int(current))

    return TierView(
        id=tier.id,
        catalog_id=tier.catalog_id,
        kind=tier.kind,
        name=tier.name,
        unit_price=tier.unit_price,
        available=int(row[0]),
    )


async def restock(
    session: AsyncSession, tier_id: str, quantity: int
) -> int:
    """Administrative restock. Returns the new available count."""
    if quantity <= 0:
        raise ValueError("quantity must be positive")
    row = (await session.execute(text("""
        UPDATE inventory_tiers
        SET available = available + :q
        WHERE id = :id
        RETURNING available
    """), {"id": tier_id, "q": quantity})).first()
    if row is None:
        raise NotFoundError("tier", tier_id)
    return int(row[0])


# ------------------------------------------------------------------------------
# Read APIs
# ------------------------------------------------------------------------------

async def compute_inventory(
    session: AsyncSession, catalog_id: str
) -> Dict[str, Any]:
    """
    Returns:
      {
        "id": ..., "kind": "event"|"product", "title": ...,
        "tiers": [
          {"id", "kind", "name", "unit_price", "available", "sold_out"}, ...
        ]
      }
    """
    entity = await session.get(CatalogEntity, catalog_id)
    if entity is None:
        raise NotFoundError("catalog entity", catalog_id)

    rows = (await session.execute(text("""
        SELECT id, kind, name, unit_price, available
        FROM inventory_tiers
        WHERE catalog_id = :cid
        ORDER BY unit_price DESC, id
    """), {"cid": catalog_id})).mappings().all()

    return {
        "id": entity.id,
        "kind": entity.kind,
        "title": entity.title,
        "tiers": [
            {
                "id": r["id"],
                "kind": r["kind"],
                "name": r["name"],
                "unit_price": int(r["unit_price"]),
                "available": int(r["available"]),
                "sold_out": int(r["available"]) <= 0,
            }
            for r in rows
        ],
    }
