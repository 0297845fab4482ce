from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

import structlog

from .errors import InvalidSignatureError, UnknownProviderError
from .fulfillment.request import FulfillmentResult
from .fulfillment.transaction import Fulfiller
from .infra.timings import timeit
from .payments import (
    PURCHASE_COMPLETED, PURCHASE_FAILED, PURCHASE_REFUNDED,
    PaymentAdapter, ProviderEvent,
)

log = structlog.get_logger(__name__)

# RouteOutcome.status
ROUTED_FULFILLED = "fulfilled"
ROUTED_DUPLICATE = "duplicate"
ROUTED_FAILED = "payment_failed"
ROUTED_REFUNDED = "refunded"
ROUTED_IGNORED = "ignored"


@dataclass(frozen=True)
class RouteOutcome:
    provider: str
    event_type: Optional[str]
    status: str
    result: Optional[FulfillmentResult] = None
    refunded_units: int = 0

    def as_dict(self) -> Dict:
        out = {
            "ok": True,
            "provider": self.provider,
            "event_type": self.event_type,
            "status": self.status,
        }
        if self.result is not None:
            out["fulfillment"] = self.result.as_dict()
        if self.status == ROUTED_REFUNDED:
            out["refunded_units"] = self.refunded_units
        return out


class ProviderEventRouter:
    """
    received -> verified -> routed -> delegated

    Both channels (provider webhook, client "verify my session") end up in
    Fulfiller.fulfill(); the fulfiller's ledger makes them race safely.
    """

    def __init__(self, adapters: Mapping[str, PaymentAdapter],
                 fulfiller: Fulfiller) -> None:
        self.adapters = dict(adapters)
        self.fulfiller = fulfiller

    def adapter(self, provider: str) -> PaymentAdapter:
        adapter = self.adapters.get(provider)
        if adapter is None:
            raise UnknownProviderError(provider)
        return adapter

    async def handle_webhook(
        self, provider: str, payload: bytes, headers: Mapping[str, str]
    ) -> RouteOutcome:
        adapter = self.adapter(provider)
        try:
            async with timeit(f"webhook.verify.{provider}"):
                event = await adapter.verify_webhook(payload, headers)
        except InvalidSignatureError as e:
            log.warning("webhook_signature_rejected", provider=provider,
                        reason=e.message)
            raise

        normalized = await adapter.normalize(event)
        if normalized is None:
            log.info("webhook_ignored", provider=provider,
                     event_type=event.get("type") or event.get("event_type"))
            return RouteOutcome(
                provider, event.get("type") or event.get("event_type"),
                ROUTED_IGNORED,
            )
        return await self.route(normalized)

    async def route(self, event: ProviderEvent) -> RouteOutcome:
        blog = log.bind(provider=event.provider,
                        payment_reference=event.payment_reference,
                        event_id=event.event_id)

        if event.type == PURCHASE_COMPLETED:
            result = await self.fulfiller.fulfill(event.request)
            status = ROUTED_DUPLICATE if result.duplicate else ROUTED_FULFILLED
            return RouteOutcome(event.provider, event.type, status,
                                result=result)

        if event.type == PURCHASE_FAILED:
            # nothing was reserved before payment; just record it
            blog.info("payment_failed")
            return RouteOutcome(event.provider, event.type, ROUTED_FAILED)

        if event.type == PURCHASE_REFUNDED:
            changed = await self.fulfiller.refund(event.payment_reference)
            return RouteOutcome(event.provider, event.type, ROUTED_REFUNDED,
                                refunded_units=changed)

        blog.info("event_ignored", event_type=event.type)
        return RouteOutcome(event.provider, event.type, ROUTED_IGNORED)

    async def verify_session(
        self, provider: str, reference: str
    ) -> FulfillmentResult:
        """Client-triggered fallback when the webhook is late or lost."""
        adapter = self.adapter(provider)
        event = await adapter.fetch_paid_session(reference)
        log.info("session_verified", provider=provider,
                 session_reference=reference,
                 payment_reference=event.payment_reference)
        return await self.fulfiller.fulfill(event.request)
