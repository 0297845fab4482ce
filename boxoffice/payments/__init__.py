# payments/__init__.py
from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import structlog

from ..errors import InvalidPayloadError
from ..fulfillment.request import Buyer, FulfillmentRequest, ItemKind
from ..helpers import is_valid_email

log = structlog.get_logger(__name__)

# normalized event types
PURCHASE_COMPLETED = "purchase_completed"
PURCHASE_FAILED = "purchase_failed"
PURCHASE_REFUNDED = "purchase_refunded"


@dataclass(frozen=True)
class ProviderEvent:
    type: str
    provider: str
    payment_reference: str
    # only for purchase_completed
    request: Optional[FulfillmentRequest] = None
    event_id: Optional[str] = None


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class PaymentAdapter(ABC):
    name: str

    # raises InvalidSignatureError; must check the raw bytes as received
    @abstractmethod
    async def verify_webhook(
        self, payload: bytes, headers: Mapping[str, str]
    ) -> Dict[str, Any]: ...

    # None for event types we don't handle
    @abstractmethod
    async def normalize(
        self, event: Dict[str, Any]
    ) -> Optional[ProviderEvent]: ...

    # client-triggered fallback: ask the provider whether `reference` is
    # paid. Raises PaymentNotCompletedError / NotFoundError.
    @abstractmethod
    async def fetch_paid_session(self, reference: str) -> ProviderEvent: ...


def apparel_tier_id(product_id: str, size: str) -> str:
    return f"{product_id}:{size}"


def shipping_address(parts: Mapping[str, Any]) -> Optional[Dict[str, str]]:
    """Drop empty fields; None when nothing is left."""
    out = {}
    for k, v in parts.items():
        if v is None:
            continue
        v = str(v).strip()
        if v:
            out[k] = v
    return out or None


def build_request(
    *,
    provider: str,
    payment_reference: Optional[str],
    kind: Optional[str],
    catalog_id: Optional[str],
    tier_id: Optional[str],
    quantity: Any,
    email: Optional[str],
    first_name: str = "",
    last_name: str = "",
    amount: int = 0,
    unit_id: Optional[str] = None,
    phone: Optional[str] = None,
    address: Optional[Dict[str, str]] = None,
) -> FulfillmentRequest:
    """Checkout metadata -> FulfillmentRequest, or InvalidPayloadError."""
    if not payment_reference:
        raise InvalidPayloadError("missing payment reference")
    try:
        item_kind = ItemKind(kind)
    except ValueError:
        raise InvalidPayloadError(f"unsupported item type: {kind!r}")
    if item_kind == ItemKind.GUESTLIST:
        raise InvalidPayloadError("guestlist tickets are not sold")
    if not catalog_id or not tier_id:
        raise InvalidPayloadError("missing catalog or tier reference")
    try:
        qty = int(quantity)
    except (TypeError, ValueError):
        raise InvalidPayloadError(f"invalid quantity: {quantity!r}")
    if qty <= 0:
        raise InvalidPayloadError(f"invalid quantity: {quantity!r}")

    email = (email or "").strip() or None
    if email is not None and not is_valid_email(email):
        # the buyer paid; fulfill anyway, just without mail
        log.warning("buyer_email_invalid",
                    payment_reference=payment_reference, provider=provider)
        email = None

    return FulfillmentRequest(
        payment_reference=payment_reference,
        provider=provider,
        kind=item_kind,
        catalog_id=str(catalog_id),
        tier_id=str(tier_id),
        quantity=qty,
        buyer=Buyer(email=email, first_name=first_name or "",
                    last_name=last_name or "",
                    phone=(phone or "").strip() or None,
                    address=address or None),
        raw_amount=int(amount or 0),
        unit_id=unit_id or None,
    )


__all__ = [
    "PaymentAdapter", "ProviderEvent", "build_request", "apparel_tier_id",
    "shipping_address",
    "PURCHASE_COMPLETED", "PURCHASE_FAILED", "PURCHASE_REFUNDED",
]
