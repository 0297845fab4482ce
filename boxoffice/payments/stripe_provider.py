from __future__ import annotations
import asyncio
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import orjson
import stripe
import structlog

from ..errors import (
    InvalidPayloadError, InvalidSignatureError, NotFoundError,
    PaymentNotCompletedError, ProviderError,
)
from ..infra.timings import timeit
from . import (
    PURCHASE_COMPLETED, PURCHASE_FAILED, PURCHASE_REFUNDED,
    PaymentAdapter, ProviderEvent, apparel_tier_id, build_request,
    shipping_address,
)

log = structlog.get_logger(__name__)

SessionRetriever = Callable[[str], Awaitable[Dict[str, Any]]]

# metadata.type values written by our checkout
SHOP_TYPES = ("ticket", "merch")


class StripeAdapter(PaymentAdapter):
    """Stripe Checkout.

    Checkout sessions carry the purchase in `metadata`:
      type=ticket: eventId, tierId, quantity, email, firstName, lastName,
                   ticketId (optional, pre-allocated unit id)
      type=merch:  productId, size (or tierId), quantity, firstName,
                   lastName, address (JSON object)
    Tickets may also carry address, zipCode, city and mobileNumber.
    The payment intent id is the payment reference.
    """
    name = "stripe"

    def __init__(self, *, api_key: Optional[str],
                 webhook_secret: Optional[str],
                 retrieve_session: Optional[SessionRetriever] = None,
                 tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE) -> None:
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance
        self._retrieve = retrieve_session or self._retrieve_session

    # ---- webhook
    async def verify_webhook(
        self, payload: bytes, headers: Mapping[str, str]
    ) -> Dict[str, Any]:
        if not self.webhook_secret:
            raise InvalidSignatureError(self.name,
                                        "webhook secret not configured")
        sig = headers.get("stripe-signature")
        if not sig:
            raise InvalidSignatureError(self.name, "missing signature")
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"), sig, self.webhook_secret,
                self.tolerance,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError):
            raise InvalidSignatureError(self.name)
        try:
            event = orjson.loads(payload)
        except orjson.JSONDecodeError:
            raise InvalidPayloadError("Invalid JSON")
        if not isinstance(event, dict):
            raise InvalidPayloadError("Invalid event")
        return event

    async def normalize(
        self, event: Dict[str, Any]
    ) -> Optional[ProviderEvent]:
        etype = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}
        evt_id = event.get("id")

        if etype in ("checkout.session.completed",
                     "checkout.session.async_payment_succeeded"):
            if obj.get("payment_status") != "paid":
                # delayed payment methods: wait for async_payment_succeeded
                return None
            kind = (obj.get("metadata") or {}).get("type")
            if kind not in SHOP_TYPES:
                # some other Checkout on the same Stripe account
                log.warning("checkout_not_ours", event_id=evt_id,
                            session_id=obj.get("id"), metadata_type=kind)
                return None
            request = self._request_from_session(obj)
            return ProviderEvent(PURCHASE_COMPLETED, self.name,
                                 request.payment_reference, request, evt_id)

        if etype == "payment_intent.payment_failed":
            return ProviderEvent(PURCHASE_FAILED, self.name,
                                 obj.get("id", ""), event_id=evt_id)

        if etype == "checkout.session.async_payment_failed":
            ref = obj.get("payment_intent") or obj.get("id", "")
            return ProviderEvent(PURCHASE_FAILED, self.name, ref,
                                 event_id=evt_id)

        if etype == "charge.refunded":
            ref = obj.get("payment_intent")
            if not ref:
                raise InvalidPayloadError("refund without payment_intent")
            return ProviderEvent(PURCHASE_REFUNDED, self.name, ref,
                                 event_id=evt_id)

        return None

    def _request_from_session(self, session: Dict[str, Any]):
        md = session.get("metadata") or {}
        kind = md.get("type")
        if kind == "merch":
            catalog_id = md.get("productId")
            tier_id = md.get("tierId") or (
                apparel_tier_id(catalog_id, md["size"])
                if catalog_id and md.get("size") else None
            )
        else:
            catalog_id = md.get("eventId")
            tier_id = md.get("tierId")
        details = session.get("customer_details") or {}
        # ticket holder first, then whoever paid
        email = (
            md.get("email")
            or session.get("customer_email")
            or details.get("email")
        )
        return build_request(
            provider=self.name,
            payment_reference=(
                session.get("payment_intent") or session.get("id")
            ),
            kind=kind,
            catalog_id=catalog_id,
            tier_id=tier_id,
            quantity=md.get("quantity", "1"),
            email=email,
            first_name=md.get("firstName", ""),
            last_name=md.get("lastName", ""),
            amount=session.get("amount_total") or 0,
            unit_id=md.get("ticketId"),
            phone=md.get("mobileNumber") or details.get("phone"),
            address=self._address_from_session(session),
        )

    def _address_from_session(
        self, session: Dict[str, Any]
    ) -> Optional[Dict[str, str]]:
        md = session.get("metadata") or {}
        if md.get("type") == "merch" and md.get("address"):
            # merch checkout stores the address form as a JSON string
            raw = md["address"]
            try:
                parts = orjson.loads(raw)
            except orjson.JSONDecodeError:
                parts = None
            if not isinstance(parts, dict):
                parts = {"line1": raw}
            return shipping_address(parts)
        if md.get("address") or md.get("zipCode") or md.get("city"):
            return shipping_address({
                "line1": md.get("address"),
                "postal_code": md.get("zipCode"),
                "city": md.get("city"),
            })
        # collected by Checkout itself
        found = (
            (session.get("shipping_details") or {}).get("address")
            or (session.get("customer_details") or {}).get("address")
        )
        return shipping_address(found) if found else None

    # ---- fallback: "verify my session"
    async def _retrieve_session(self, session_id: str) -> Dict[str, Any]:
        if not self.api_key:
            raise ProviderError("stripe is not configured")
        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.retrieve, session_id,
                api_key=self.api_key,
            )
        except stripe.InvalidRequestError:
            raise NotFoundError("checkout session", session_id)
        except stripe.StripeError as e:
            raise ProviderError(f"stripe: {e}")
        # StripeObject -> plain dict
        return orjson.loads(str(session))

    async def fetch_paid_session(self, reference: str) -> ProviderEvent:
        async with timeit("stripe.retrieve_session"):
            session = await self._retrieve(reference)
        status = session.get("payment_status", "unknown")
        if status != "paid":
            raise PaymentNotCompletedError(reference, status)
        request = self._request_from_session(session)
        return ProviderEvent(PURCHASE_COMPLETED, self.name,
                             request.payment_reference, request)
