"""
Beacon payload normalization.

The storefront snippet delivers the same logical event in several wire shapes:

- flat JSON object (`fetch`/XHR)
- GraphQL envelope `{query, variables: {input: {...}}}` (server-side relays)
- sendBeacon envelope `{event: <name>, data: {...}}`
- GET image beacon `?e=<name>&d=<base64 JSON>`

Each shape is resolved to a flat dict at the boundary and then cleaned into a
single `TrackingEvent`. Nothing downstream looks at wire formats.
"""

from __future__ import annotations

import base64
import binascii
import json
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class PayloadError(ValueError):
    """Raised when a beacon cannot be turned into a tracking event."""


class WireShape(Enum):
    FLAT = "flat"
    GRAPHQL = "graphql"
    BEACON_ENVELOPE = "beacon_envelope"
    IMAGE_BEACON = "image_beacon"
    WEBHOOK = "webhook"


MAX_CUSTOM_DATA_KEYS = 50

# Integer columns are 32-bit; monetary values are DECIMAL(12,2).
INT_MIN = -(2**31)
INT_MAX = 2**31 - 1
MAX_ABS_AMOUNT = 1e10


@dataclass
class TrackingEvent:
    app_id: str
    event_name: str

    url: str | None = None
    referrer: str | None = None
    page_title: str | None = None

    session_id: str | None = None
    visitor_id: str | None = None
    fingerprint: str | None = None

    screen_width: int | None = None
    screen_height: int | None = None
    scroll_depth: int | None = None
    click_x: int | None = None
    click_y: int | None = None
    language: str | None = None

    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None
    utm_term: str | None = None
    utm_content: str | None = None

    value: float | None = None
    currency: str | None = None
    product_id: str | None = None
    product_name: str | None = None
    quantity: int | None = None

    # Matching keys for Meta. Forwarded hashed, never persisted.
    email: str | None = None
    phone: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    fbc: str | None = None
    fbp: str | None = None

    custom_data: dict[str, Any] | None = None
    shape: WireShape = field(default=WireShape.FLAT, compare=False)

    @property
    def identity(self) -> str | None:
        """Best available per-browser identifier."""
        return self.fingerprint or self.visitor_id


def _clean_text(value: Any, *, max_len: int) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    text_value = str(value).strip()
    if not text_value:
        return None
    return text_value[:max_len]


def _parse_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(str(value).strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def _parse_int(value: Any) -> int | None:
    number = _parse_float(value)
    if number is None:
        return None
    whole = int(number)
    if not INT_MIN <= whole <= INT_MAX:
        return None
    return whole


def _parse_amount(value: Any) -> float | None:
    number = _parse_float(value)
    if number is None or abs(number) >= MAX_ABS_AMOUNT:
        return None
    return number


def _clean_custom_data(value: Any) -> dict[str, Any] | None:
    if not isinstance(value, dict) or not value:
        return None
    cleaned: dict[str, Any] = {}
    for key, raw in value.items():
        key_text = _clean_text(key, max_len=80)
        if not key_text:
            continue
        if isinstance(raw, (str, int, float, bool, list, dict)) or raw is None:
            cleaned[key_text] = raw
        else:
            cleaned[key_text] = str(raw)
        if len(cleaned) >= MAX_CUSTOM_DATA_KEYS:
            break
    return cleaned or None


def detect_wire_shape(body: Any) -> WireShape:
    if not isinstance(body, dict):
        raise PayloadError("Request body must be a JSON object")
    if "query" in body and isinstance(body.get("variables"), dict):
        return WireShape.GRAPHQL
    if isinstance(body.get("data"), dict) and "appId" not in body:
        return WireShape.BEACON_ENVELOPE
    return WireShape.FLAT


def unwrap_payload(body: Any) -> tuple[WireShape, dict[str, Any]]:
    """Resolve a POSTed body to its flat payload."""
    shape = detect_wire_shape(body)
    if shape is WireShape.GRAPHQL:
        variables = body["variables"]
        payload = variables.get("input")
        if not isinstance(payload, dict):
            payload = variables
        return shape, dict(payload)
    if shape is WireShape.BEACON_ENVELOPE:
        payload = dict(body["data"])
        if not payload.get("eventName") and body.get("event"):
            payload["eventName"] = body["event"]
        return shape, payload
    return shape, dict(body)


def _b64decode(encoded: str) -> bytes:
    # Query strings turn "+" into spaces before we ever see them.
    compact = "".join(encoded.replace(" ", "+").split())
    padded = compact + "=" * (-len(compact) % 4)
    if "-" in padded or "_" in padded:
        return base64.urlsafe_b64decode(padded)
    return base64.b64decode(padded)


def decode_image_beacon(event_name: str | None, encoded: str | None) -> dict[str, Any]:
    """Decode the `e`/`d` query parameters of the GET image-beacon fallback."""
    payload: dict[str, Any] = {}
    if encoded:
        try:
            raw = _b64decode(encoded)
            decoded = json.loads(raw.decode("utf-8"))
        except (binascii.Error, ValueError, UnicodeDecodeError) as exc:
            raise PayloadError("Malformed beacon data") from exc
        if not isinstance(decoded, dict):
            raise PayloadError("Beacon data must encode a JSON object")
        payload = decoded
    if event_name and not payload.get("eventName"):
        payload["eventName"] = event_name
    return payload


def normalize_payload(payload: dict[str, Any], *, shape: WireShape = WireShape.FLAT) -> TrackingEvent:
    app_id = _clean_text(payload.get("appId"), max_len=64)
    event_name = _clean_text(payload.get("eventName"), max_len=100)
    if not app_id or not event_name:
        raise PayloadError("Missing required fields")

    custom_data = payload.get("customData")
    if not isinstance(custom_data, dict) or not custom_data:
        custom_data = payload.get("properties")

    currency = _clean_text(payload.get("currency"), max_len=8)

    return TrackingEvent(
        app_id=app_id,
        event_name=event_name,
        url=_clean_text(payload.get("url"), max_len=2048),
        referrer=_clean_text(payload.get("referrer"), max_len=2048),
        page_title=_clean_text(payload.get("pageTitle"), max_len=500),
        session_id=_clean_text(payload.get("sessionId"), max_len=128),
        visitor_id=_clean_text(payload.get("visitorId"), max_len=128),
        fingerprint=_clean_text(payload.get("fingerprint"), max_len=128),
        screen_width=_parse_int(payload.get("screenWidth")),
        screen_height=_parse_int(payload.get("screenHeight")),
        scroll_depth=_parse_int(payload.get("scrollDepth")),
        click_x=_parse_int(payload.get("clickX")),
        click_y=_parse_int(payload.get("clickY")),
        language=_clean_text(payload.get("language"), max_len=32),
        utm_source=_clean_text(payload.get("utmSource"), max_len=255),
        utm_medium=_clean_text(payload.get("utmMedium"), max_len=255),
        utm_campaign=_clean_text(payload.get("utmCampaign"), max_len=255),
        utm_term=_clean_text(payload.get("utmTerm"), max_len=255),
        utm_content=_clean_text(payload.get("utmContent"), max_len=255),
        value=_parse_amount(payload.get("value")),
        currency=currency.upper() if currency else None,
        product_id=_clean_text(payload.get("productId"), max_len=255),
        product_name=_clean_text(payload.get("productName"), max_len=500),
        quantity=_parse_int(payload.get("quantity")),
        email=_clean_text(payload.get("email"), max_len=320),
        phone=_clean_text(payload.get("phone"), max_len=64),
        first_name=_clean_text(payload.get("firstName"), max_len=100),
        last_name=_clean_text(payload.get("lastName"), max_len=100),
        fbc=_clean_text(payload.get("fbc"), max_len=255),
        fbp=_clean_text(payload.get("fbp"), max_len=255),
        custom_data=_clean_custom_data(custom_data),
        shape=shape,
    )


def parse_body(body: Any) -> TrackingEvent:
    """POSTed JSON (any shape) -> canonical event."""
    shape, payload = unwrap_payload(body)
    return normalize_payload(payload, shape=shape)


def parse_image_beacon(event_name: str | None, encoded: str | None) -> TrackingEvent:
    return normalize_payload(decode_image_beacon(event_name, encoded), shape=WireShape.IMAGE_BEACON)
