"""Scannable codes.

A code is `BX1.<payload>.<mac>`: the base64url JSON payload names the unit,
its catalog entity, the buyer and its position in the purchase; the mac is
an HMAC-SHA256 over the payload so a scanner can reject forged codes before
touching the database.
"""
from __future__ import annotations
import base64
import hashlib
import hmac
from typing import Any, Dict, Optional

import orjson

from .helpers import ct_equal

PREFIX = "BX1"


class InvalidCode(ValueError):
    pass


def _b64(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


def _unb64(s: str) -> bytes:
    return base64.urlsafe_b64decode(s + "=" * (-len(s) % 4))


def _mac(secret: str, body: str) -> str:
    digest = hmac.new(secret.encode(), body.encode(), hashlib.sha256).digest()
    return _b64(digest)


def encode(
    secret: str,
    *,
    unit_id: str,
    catalog_id: str,
    buyer_email: Optional[str],
    sequence: int,
    quantity: int,
) -> str:
    body = _b64(orjson.dumps({
        "unit_id": unit_id,
        "catalog_id": catalog_id,
        "email": buyer_email or "",
        "seq": int(sequence),
        "qty": int(quantity),
    }))
    return f"{PREFIX}.{body}.{_mac(secret, body)}"


def decode(secret: str, code: str) -> Dict[str, Any]:
    parts = (code or "").strip().split(".")
    if len(parts) != 3 or parts[0] != PREFIX:
        raise InvalidCode("malformed code")
    _, body, mac = parts
    if not ct_equal(_mac(secret, body), mac):
        raise InvalidCode("bad signature")
    try:
        payload = orjson.loads(_unb64(body))
    except (ValueError, orjson.JSONDecodeError):
        raise InvalidCode("unreadable payload")
    if not isinstance(payload, dict) or "unit_id" not in payload:
        raise InvalidCode("unreadable payload")
    return payload
