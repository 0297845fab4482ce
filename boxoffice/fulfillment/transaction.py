# fulfillment/transaction.py
"""
The fulfillment transaction: guard -> lock -> decrement -> units -> commit,
then notification and cache/realtime propagation outside the transaction.

Tickets, merch orders and guestlist tickets all run through
Fulfiller.fulfill(); a FulfillmentPolicy carries what differs between them.
"""
from __future__ import annotations
from typing import (
    AsyncContextManager, Callable, Dict, List, Mapping, Optional, Sequence,
    Tuple,
)

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .. import codes
from ..errors import (
    InsufficientStockError, NotFoundError, OversellError, RedemptionError
)
from ..helpers import new_unit_id, now_ts, to_iso
from ..infra.timings import timeit
from ..model import inventory, ledger
from ..model.db import (
    CatalogEntity, FulfillmentUnit,
    STATUS_CONFIRMED, STATUS_REDEEMED, STATUS_REFUNDED,
)
from ..model.inventory import TierView
from ..notify import NotificationContext, NotificationDispatcher
from ..propagate import Propagator
from .policies import FulfillmentPolicy, default_policies
from .request import (
    FulfillmentRequest, FulfillmentResult, IssuedUnit, ItemKind
)

log = structlog.get_logger(__name__)

Gated = Callable[[], AsyncContextManager[None]]


class Fulfiller:
    def __init__(
        self,
        Session: async_sessionmaker[AsyncSession],
        gated: Gated,
        *,
        code_secret: str,
        dispatcher: NotificationDispatcher,
        propagator: Propagator,
        policies: Optional[Mapping[ItemKind, FulfillmentPolicy]] = None,
    ) -> None:
        self.Session = Session
        self.gated = gated
        self.code_secret = code_secret
        self.dispatcher = dispatcher
        self.propagator = propagator
        self.policies: Dict[ItemKind, FulfillmentPolicy] = dict(
            policies or default_policies()
        )

    def policy_for(self, kind: ItemKind | str) -> FulfillmentPolicy:
        return self.policies[ItemKind(kind)]

    # ------------------------------------------------------------------
    # fulfill
    # ------------------------------------------------------------------
    async def fulfill(
        self,
        request: FulfillmentRequest,
        policy: Optional[FulfillmentPolicy] = None,
    ) -> FulfillmentResult:
        """
        Safe to call any number of times for the same payment reference:
        the first call to commit issues the units, every other call returns
        that result with duplicate=True.
        """
        policy = policy or self.policy_for(request.kind)
        blog = log.bind(
            payment_reference=request.payment_reference,
            provider=request.provider,
            kind=request.kind.value,
        )

        try:
            async with timeit("fulfillment.transaction"):
                result, tier, entity = await self._transaction(
                    request, policy
                )
        except IntegrityError:
            # a concurrent delivery of the same payment committed first
            result = await self.lookup(request.payment_reference,
                                       duplicate=True)
            if result is None:
                blog.exception("fulfillment_integrity_error")
                raise
            blog.info("fulfillment_duplicate", race=True)
            return result
        except OversellError as e:
            blog.error("oversell", tier_id=e.tier_id,
                       requested=e.requested, available=e.available)
            raise
        except NotFoundError as e:
            blog.warning("fulfillment_target_missing", what=e.what,
                         ident=e.ident)
            raise

        if result.duplicate:
            blog.info("fulfillment_duplicate", race=False)
            return result

        blog.info("fulfillment_committed", units=len(result.units),
                  tier_id=result.tier_id)

        # ---- after commit: nothing below may undo or fail the fulfillment
        await self._after_commit(request, policy, result, tier, entity)
        return result

    async def _transaction(
        self, request: FulfillmentRequest, policy: FulfillmentPolicy
    ) -> Tuple[FulfillmentResult, Optional[TierView],
               Optional[CatalogEntity]]:
        ref = request.payment_reference
        async with self.gated():
            async with self.Session() as session:
                async with session.begin():
                    if await ledger.already_fulfilled(session, ref):
                        existing = await ledger.load_result(
                            session, ref, duplicate=True
                        )
                        return existing, None, None

                    entity = await inventory.lock_entity(
                        session, request.catalog_id
                    )
                    # a delivery that waited on the lock sees the winner
                    if await ledger.already_fulfilled(session, ref):
                        existing = await ledger.load_result(
                            session, ref, duplicate=True
                        )
                        return existing, None, None

                    if policy.reserves_inventory:
                        tier = await inventory.get_tier(
                            session, request.catalog_id, request.tier_id
                        )
                        try:
                            async with timeit("inventory.reserve"):
                                tier = await inventory.reserve_and_decrement(
                                    session, tier, request.quantity
                                )
                        except InsufficientStockError as e:
                            raise OversellError(
                                ref, e.tier_id, e.requested, e.available
                            ) from e
                    else:
                        tier = policy.virtual_tier(request)

                    await ledger.claim(session, request)
                    units = self._mint_units(request, policy, tier)
                    session.add_all(units)
                    await session.flush()
                    await policy.after_units(session, request, units)

                    result = FulfillmentResult(
                        payment_reference=ref,
                        kind=request.kind.value,
                        catalog_id=request.catalog_id,
                        tier_id=request.tier_id,
                        quantity=int(request.quantity),
                        status=STATUS_CONFIRMED,
                        units=tuple(ledger.issued(u) for u in units),
                        shipping_address=request.buyer.address,
                    )
        return result, tier, entity

    def _mint_units(
        self,
        request: FulfillmentRequest,
        policy: FulfillmentPolicy,
        tier: TierView,
    ) -> List[FulfillmentUnit]:
        created_at = now_ts()
        units = []
        for seq in range(1, int(request.quantity) + 1):
            if seq == 1 and request.unit_id:
                unit_id = request.unit_id
            else:
                unit_id = new_unit_id(policy.unit_prefix)
            units.append(FulfillmentUnit(
                unit_id=unit_id,
                payment_reference=request.payment_reference,
                sequence=seq,
                catalog_id=request.catalog_id,
                tier_id=request.tier_id,
                tier_name=tier.name,
                buyer_email=request.buyer.email,
                scannable_code=codes.encode(
                    self.code_secret,
                    unit_id=unit_id,
                    catalog_id=request.catalog_id,
                    buyer_email=request.buyer.email,
                    sequence=seq,
                    quantity=int(request.quantity),
                ),
                status=STATUS_CONFIRMED,
                created_at=created_at,
            ))
        return units

    async def _after_commit(
        self,
        request: FulfillmentRequest,
        policy: FulfillmentPolicy,
        result: FulfillmentResult,
        tier: TierView,
        entity: CatalogEntity,
    ) -> None:
        blog = log.bind(payment_reference=result.payment_reference)
        context = NotificationContext(
            template=policy.template,
            subject=policy.subject(entity, result.quantity),
            title=entity.title,
            tier_name=tier.name,
            quantity=result.quantity,
            buyer_name=request.buyer.name,
            payment_reference=result.payment_reference,
            starts_at=entity.starts_at,
            location=entity.location,
            amount=int(request.raw_amount),
            shipping_address=request.buyer.address,
        )
        try:
            await self.dispatcher.notify(result.units, context)
        except Exception:
            blog.exception("notification_failed")
        await self.announce(
            policy.cache_keys(request),
            policy.realtime_event,
            policy.broadcast_payload(result, tier),
        )

    async def announce(
        self, keys: Sequence[str], event: str, payload: Dict
    ) -> None:
        """Invalidate and broadcast after a commit. Never raises."""
        try:
            await self.propagator.propagate(keys, event, payload)
        except Exception:
            log.exception("propagation_failed", event_name=event,
                          keys=list(keys))

    # ------------------------------------------------------------------
    # lookups, refund, redemption
    # ------------------------------------------------------------------
    async def lookup(
        self, payment_reference: str, *, duplicate: bool = False
    ) -> Optional[FulfillmentResult]:
        async with self.gated():
            async with self.Session() as session:
                async with session.begin():
                    return await ledger.load_result(
                        session, payment_reference, duplicate=duplicate
                    )

    async def refund(self, payment_reference: str) -> int:
        """
        Mark every unit of the payment refunded. Stock is NOT restored:
        restocking is an administrative decision.
        Returns the number of units that changed status.
        """
        blog = log.bind(payment_reference=payment_reference)
        async with self.gated():
            async with self.Session() as session:
                async with session.begin():
                    existing = await ledger.load_result(
                        session, payment_reference
                    )
                    if existing is None:
                        blog.warning("refund_unknown_payment")
                        return 0
                    changed = await ledger.mark_refunded(
                        session, payment_reference
                    )

        blog.info("fulfillment_refunded", units=changed)
        if changed:
            policy = self.policy_for(existing.kind)
            await self.announce([], policy.realtime_event, {
                "type": "refunded",
                "kind": existing.kind,
                "catalog_id": existing.catalog_id,
                "tier_id": existing.tier_id,
                "units": changed,
            })
        return changed

    async def redeem(
        self, code: str, catalog_id: Optional[str] = None
    ) -> IssuedUnit:
        """Check a unit in by its scannable code: confirmed -> redeemed."""
        try:
            payload = codes.decode(self.code_secret, code)
        except codes.InvalidCode as e:
            raise RedemptionError(f"invalid code: {e}")
        if catalog_id and payload.get("catalog_id") != catalog_id:
            raise RedemptionError("code belongs to a different event")

        unit_id = payload["unit_id"]
        async with self.gated():
            async with self.Session() as session:
                async with session.begin():
                    unit = (await session.execute(
                        select(FulfillmentUnit)
                        .where(FulfillmentUnit.unit_id == unit_id)
                        .with_for_update()
                    )).scalar_one_or_none()
                    if unit is None:
                        raise NotFoundError("unit", unit_id)
                    if unit.scannable_code != code.strip():
                        raise RedemptionError("code does not match unit")
                    if unit.status == STATUS_REFUNDED:
                        raise RedemptionError("unit was refunded")
                    if unit.status == STATUS_REDEEMED:
                        raise RedemptionError(
                            "already redeemed at "
                            f"{to_iso(unit.redeemed_at)}"
                        )
                    unit.status = STATUS_REDEEMED
                    unit.redeemed_at = now_ts()
                    redeemed = ledger.issued(unit)

        log.info("unit_redeemed", unit_id=unit_id,
                 catalog_id=redeemed.catalog_id)
        await self.announce([], "unit_redeemed", {
            "unit_id": unit_id,
            "catalog_id": redeemed.catalog_id,
        })
        return redeemed
