# model/ledger.py
"""
Idempotency guard for fulfillments.

The `fulfillments` table holds one row per payment reference (its primary
key). It is consulted at the start of every fulfillment transaction and then
enforced again by the database when the row is inserted, so two concurrent
deliveries of the same payment can never both commit.
"""
from __future__ import annotations
from typing import Optional

import orjson
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..fulfillment.request import (
    FulfillmentRequest, FulfillmentResult, IssuedUnit
)
from ..helpers import now_ts
from .db import (
    Fulfillment, FulfillmentUnit, STATUS_CONFIRMED, STATUS_REFUNDED
)


async def already_fulfilled(
    session: AsyncSession, payment_reference: str
) -> bool:
    row = (await session.execute(
        text("SELECT 1 FROM fulfillments WHERE payment_reference = :r"),
        {"r": payment_reference},
    )).first()
    return row is not None


async def load_result(
    session: AsyncSession, payment_reference: str, *, duplicate: bool = False
) -> Optional[FulfillmentResult]:
    ledger = await session.get(Fulfillment, payment_reference)
    if ledger is None:
        return None
    units = (await session.execute(
        select(FulfillmentUnit)
        .where(FulfillmentUnit.payment_reference == payment_reference)
        .order_by(FulfillmentUnit.sequence)
    )).scalars().all()
    return FulfillmentResult(
        payment_reference=ledger.payment_reference,
        kind=ledger.kind,
        catalog_id=ledger.catalog_id,
        tier_id=ledger.tier_id,
        quantity=int(ledger.quantity),
        status=ledger.status,
        units=tuple(issued(u) for u in units),
        duplicate=duplicate,
        shipping_address=(
            orjson.loads(ledger.shipping_address)
            if ledger.shipping_address else None
        ),
    )


def issued(u: FulfillmentUnit) -> IssuedUnit:
    return IssuedUnit(
        unit_id=u.unit_id,
        sequence=int(u.sequence),
        catalog_id=u.catalog_id,
        tier_id=u.tier_id,
        tier_name=u.tier_name,
        buyer_email=u.buyer_email,
        scannable_code=u.scannable_code,
        status=u.status,
    )


async def claim(session: AsyncSession, request: FulfillmentRequest) -> None:
    """
    Insert the ledger row. A concurrent duplicate surfaces as IntegrityError
    from the flush (or at commit on databases that defer the check).
    """
    session.add(Fulfillment(
        payment_reference=request.payment_reference,
        provider=request.provider,
        kind=request.kind.value,
        catalog_id=request.catalog_id,
        tier_id=request.tier_id,
        quantity=int(request.quantity),
        buyer_email=request.buyer.email,
        buyer_name=request.buyer.name,
        buyer_phone=request.buyer.phone,
        shipping_address=(
            orjson.dumps(request.buyer.address).decode()
            if request.buyer.address else None
        ),
        amount=int(request.raw_amount),
        status=STATUS_CONFIRMED,
        created_at=now_ts(),
    ))
    await session.flush()


async def mark_refunded(
    session: AsyncSession, payment_reference: str
) -> int:
    """Flag every unit of the payment refunded. Returns units changed."""
    result = await session.execute(text("""
        UPDATE fulfillment_units SET status = :s
        WHERE payment_reference = :r AND status != :s
    """), {"s": STATUS_REFUNDED, "r": payment_reference})
    await session.execute(text("""
        UPDATE fulfillments SET status = :s
        WHERE payment_reference = :r
    """), {"s": STATUS_REFUNDED, "r": payment_reference})
    return int(result.rowcount or 0)
