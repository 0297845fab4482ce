from __future__ import annotations
import time
from typing import Any, Dict, Mapping, Optional

import httpx
import orjson
import structlog

from ..errors import (
    InvalidPayloadError, InvalidSignatureError, NotFoundError,
    PaymentNotCompletedError, ProviderError,
)
from ..helpers import to_cents
from ..infra.timings import timeit
from . import (
    PURCHASE_COMPLETED, PURCHASE_FAILED, PURCHASE_REFUNDED,
    PaymentAdapter, ProviderEvent, build_request, shipping_address,
)

log = structlog.get_logger(__name__)

# headers PayPal signs every webhook delivery with
_SIG_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


def encode_custom_id(kind: str, catalog_id: str, tier_id: str,
                     quantity: int, unit_id: Optional[str] = None) -> str:
    """purchase_units[0].custom_id as written by checkout (max 127 chars)"""
    value = "|".join([kind, catalog_id, tier_id, str(int(quantity)),
                      unit_id or ""])
    if len(value) > 127:
        raise ValueError("custom_id exceeds 127 characters")
    return value


def decode_custom_id(value: Optional[str]) -> Dict[str, str]:
    parts = (value or "").split("|")
    if len(parts) != 5:
        raise InvalidPayloadError(f"unreadable custom_id: {value!r}")
    kind, catalog_id, tier_id, quantity, unit_id = parts
    return {
        "kind": kind,
        "catalog_id": catalog_id,
        "tier_id": tier_id,
        "quantity": quantity,
        "unit_id": unit_id,
    }


class PayPalAdapter(PaymentAdapter):
    """PayPal Orders v2.

    The PayPal order id is the payment reference for both channels: the
    PAYMENT.CAPTURE.* webhooks and the client-triggered capture fallback.
    """
    name = "paypal"

    def __init__(self, http: httpx.AsyncClient, *,
                 base_url: str,
                 client_id: Optional[str],
                 client_secret: Optional[str],
                 webhook_id: Optional[str]) -> None:
        self.http = http
        self.base = base_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.webhook_id = webhook_id
        self._token: Optional[str] = None
        self._token_expires = 0.0

    # ---- API plumbing
    async def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires:
            return self._token
        if not self.client_id or not self.client_secret:
            raise ProviderError("MISSING_PAYPAL_CREDENTIALS")
        r = await self.http.post(
            f"{self.base}/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.client_id, self.client_secret),
        )
        if r.status_code != 200:
            raise ProviderError(f"paypal token: HTTP {r.status_code}")
        data = r.json()
        self._token = data["access_token"]
        # refresh a minute early
        self._token_expires = (
            time.monotonic() + int(data.get("expires_in", 300)) - 60
        )
        return self._token

    async def _api(self, method: str, path: str, *,
                   content: Optional[bytes] = None,
                   json: Optional[dict] = None) -> httpx.Response:
        token = await self._access_token()
        async with timeit("paypal.api"):
            try:
                return await self.http.request(
                    method, f"{self.base}{path}",
                    content=content,
                    json=json,
                    headers={
                        "Authorization": f"Bearer {token}",
                        "Content-Type": "application/json",
                    },
                )
            except httpx.HTTPError as e:
                raise ProviderError(f"paypal {path}: {e}")

    async def _get_order(self, order_id: str) -> Dict[str, Any]:
        r = await self._api("GET", f"/v2/checkout/orders/{order_id}")
        if r.status_code == 404:
            raise NotFoundError("paypal order", order_id)
        if r.status_code >= 400:
            raise ProviderError(f"paypal order {order_id}: "
                                f"HTTP {r.status_code}")
        return r.json()

    # ---- webhook
    async def verify_webhook(
        self, payload: bytes, headers: Mapping[str, str]
    ) -> Dict[str, Any]:
        if not self.webhook_id:
            raise InvalidSignatureError(self.name,
                                        "webhook id not configured")
        envelope: Dict[str, str] = {}
        for field, header in _SIG_HEADERS.items():
            value = headers.get(header)
            if not value:
                raise InvalidSignatureError(self.name, f"missing {header}")
            envelope[field] = value
        envelope["webhook_id"] = self.webhook_id

        # splice the body in verbatim: PayPal signs the bytes it sent, a
        # re-serialized copy would not verify
        head = orjson.dumps(envelope)[:-1]
        body = head + b',"webhook_event":' + payload + b"}"

        r = await self._api(
            "POST", "/v1/notifications/verify-webhook-signature",
            content=body,
        )
        if r.status_code >= 500:
            raise ProviderError(f"paypal verify: HTTP {r.status_code}")
        if r.status_code != 200 or \
                r.json().get("verification_status") != "SUCCESS":
            raise InvalidSignatureError(self.name)

        try:
            event = orjson.loads(payload)
        except orjson.JSONDecodeError:
            raise InvalidPayloadError("Invalid JSON")
        if not isinstance(event, dict):
            raise InvalidPayloadError("Invalid event")
        return event

    async def _order_id_for(self, resource: Dict[str, Any]) -> Optional[str]:
        related = (resource.get("supplementary_data") or {}).get(
            "related_ids") or {}
        if related.get("order_id"):
            return related["order_id"]
        # refunds link "up" to their capture, which knows the order
        for link in resource.get("links") or []:
            if link.get("rel") == "up" and link.get("href"):
                # HATEOAS links may name another host than base_url
                path = httpx.URL(link["href"]).raw_path.decode("ascii")
                r = await self._api("GET", path)
                if r.status_code == 200:
                    return await self._order_id_for(r.json())
        return None

    async def normalize(
        self, event: Dict[str, Any]
    ) -> Optional[ProviderEvent]:
        etype = event.get("event_type", "")
        resource = event.get("resource") or {}
        evt_id = event.get("id")

        if etype not in ("PAYMENT.CAPTURE.COMPLETED",
                         "PAYMENT.CAPTURE.DENIED",
                         "PAYMENT.CAPTURE.REFUNDED"):
            return None

        order_id = await self._order_id_for(resource)
        if not order_id:
            raise InvalidPayloadError(f"{etype} without order reference")

        if etype == "PAYMENT.CAPTURE.COMPLETED":
            order = await self._get_order(order_id)
            request = self._request_from_order(order)
            return ProviderEvent(PURCHASE_COMPLETED, self.name, order_id,
                                 request, evt_id)
        if etype == "PAYMENT.CAPTURE.DENIED":
            return ProviderEvent(PURCHASE_FAILED, self.name, order_id,
                                 event_id=evt_id)
        return ProviderEvent(PURCHASE_REFUNDED, self.name, order_id,
                             event_id=evt_id)

    def _request_from_order(self, order: Dict[str, Any]):
        units = order.get("purchase_units") or [{}]
        pu = units[0]
        custom = decode_custom_id(pu.get("custom_id"))
        captures = (pu.get("payments") or {}).get("captures") or []
        amount = (
            (captures[0].get("amount") if captures else None)
            or pu.get("amount") or {}
        )
        payer = order.get("payer") or {}
        name = payer.get("name") or {}
        shipping = pu.get("shipping") or {}
        addr = shipping.get("address") or {}
        phone = (payer.get("phone") or {}).get("phone_number") or {}
        return build_request(
            provider=self.name,
            payment_reference=order.get("id"),
            kind=custom["kind"],
            catalog_id=custom["catalog_id"],
            tier_id=custom["tier_id"],
            quantity=custom["quantity"],
            email=payer.get("email_address"),
            first_name=name.get("given_name", ""),
            last_name=name.get("surname", ""),
            amount=to_cents(amount.get("value", 0)),
            unit_id=custom["unit_id"],
            phone=phone.get("national_number"),
            address=shipping_address({
                "line1": addr.get("address_line_1"),
                "line2": addr.get("address_line_2"),
                "postal_code": addr.get("postal_code"),
                "city": addr.get("admin_area_2"),
                "state": addr.get("admin_area_1"),
                "country": addr.get("country_code"),
            }),
        )

    # ---- fallback: client returns from PayPal and asks us to capture
    async def fetch_paid_session(self, reference: str) -> ProviderEvent:
        order = await self._get_order(reference)
        status = order.get("status", "UNKNOWN")
        if status == "APPROVED":
            r = await self._api(
                "POST", f"/v2/checkout/orders/{reference}/capture", json={}
            )
            # 422 ORDER_ALREADY_CAPTURED: the webhook path got there first
            if r.status_code >= 400 and r.status_code != 422:
                raise ProviderError(f"paypal capture {reference}: "
                                    f"HTTP {r.status_code}")
            order = await self._get_order(reference)
            status = order.get("status", "UNKNOWN")
        if status != "COMPLETED":
            raise PaymentNotCompletedError(reference, status)
        request = self._request_from_order(order)
        return ProviderEvent(PURCHASE_COMPLETED, self.name, reference,
                             request)
