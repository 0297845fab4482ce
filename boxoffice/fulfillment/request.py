from __future__ import annotations
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class ItemKind(str, Enum):
    TICKET = "ticket"
    MERCH = "merch"
    GUESTLIST = "guestlist"


@dataclass(frozen=True)
class Buyer:
    email: Optional[str]
    first_name: str = ""
    last_name: str = ""
    phone: Optional[str] = None
    # shipping address, e.g. {"line1", "postal_code", "city", "country"}
    address: Optional[Dict[str, str]] = None

    @property
    def name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass(frozen=True)
class FulfillmentRequest:
    """Provider-independent shape of a paid purchase.

    Built by the provider event router from a verified webhook or fallback
    lookup, handed to the fulfiller and never shared afterwards.
    """
    payment_reference: str
    provider: str
    kind: ItemKind
    catalog_id: str
    tier_id: str
    quantity: int
    buyer: Buyer
    raw_amount: int = 0  # cents, as reported by the provider
    # id shown to the buyer before payment; reused for the first unit
    unit_id: Optional[str] = None

    def __post_init__(self):
        if not self.payment_reference:
            raise ValueError("payment_reference is required")
        if int(self.quantity) <= 0:
            raise ValueError("quantity must be positive")


@dataclass(frozen=True)
class IssuedUnit:
    unit_id: str
    sequence: int
    catalog_id: str
    tier_id: str
    tier_name: str
    buyer_email: Optional[str]
    scannable_code: str
    status: str


@dataclass(frozen=True)
class FulfillmentResult:
    payment_reference: str
    kind: str
    catalog_id: str
    tier_id: str
    quantity: int
    status: str
    units: Tuple[IssuedUnit, ...] = field(default_factory=tuple)
    # True when an earlier delivery already fulfilled this payment
    duplicate: bool = False
    shipping_address: Optional[Dict[str, str]] = None

    def as_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["units"] = [asdict(u) for u in self.units]
        return out
