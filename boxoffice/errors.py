"""Error taxonomy for the fulfillment pipeline.

Errors raised before commit roll the transaction back and are reported to
the caller (non-2xx to a provider, which prompts a retry). Nothing raised
after commit reaches the caller.
"""
from __future__ import annotations
from typing import Optional


class BoxOfficeError(Exception):
    code = "internal_error"
    http_status = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class InvalidSignatureError(BoxOfficeError):
    code = "invalid_signature"
    http_status = 400

    def __init__(self, provider: str, reason: str = "Invalid signature"):
        super().__init__(reason)
        self.provider = provider


class InvalidPayloadError(BoxOfficeError):
    code = "invalid_payload"
    http_status = 400


class UnknownProviderError(BoxOfficeError):
    code = "unknown_provider"
    http_status = 404

    def __init__(self, provider: str):
        super().__init__(f"unknown payment provider: {provider}")
        self.provider = provider


class FulfillmentError(BoxOfficeError):
    """Base for outcomes that abort a fulfillment transaction."""


class NotFoundError(FulfillmentError):
    code = "not_found"
    http_status = 404

    def __init__(self, what: str, ident: Optional[str]):
        super().__init__(f"{what} not found: {ident}")
        self.what = what
        self.ident = ident


class InsufficientStockError(FulfillmentError):
    code = "insufficient_stock"
    http_status = 409

    def __init__(self, tier_id: str, requested: int, available: int):
        super().__init__(
            f"tier {tier_id}: requested {requested}, available {available}"
        )
        self.tier_id = tier_id
        self.requested = requested
        self.available = available


class OversellError(FulfillmentError):
    """Paid for inventory that sold out after checkout started.

    The buyer has been charged; resolution (refund or manual allocation)
    happens outside this service.
    """
    code = "oversold"
    http_status = 409

    def __init__(self, payment_reference: str, tier_id: str,
                 requested: int, available: int):
        super().__init__(
            f"oversold {tier_id} for {payment_reference}: "
            f"requested {requested}, available {available}"
        )
        self.payment_reference = payment_reference
        self.tier_id = tier_id
        self.requested = requested
        self.available = available


class PaymentNotCompletedError(BoxOfficeError):
    code = "payment_not_completed"
    http_status = 402

    def __init__(self, reference: str, status: str):
        super().__init__(f"payment {reference} not completed: {status}")
        self.reference = reference
        self.status = status


class ProviderError(BoxOfficeError):
    code = "provider_error"
    http_status = 502


class RedemptionError(BoxOfficeError):
    code = "redemption_rejected"
    http_status = 409


class GuestlistError(BoxOfficeError):
    code = "guestlist_rejected"
    http_status = 409
