"""
Server-side conversions from the storefront's order and checkout webhooks.

These events never pass through the browser, so ad blockers cannot drop them.
Each payload is reshaped into the snippet's flat wire format and then takes the
same normalize -> enrich -> store path as a beacon. Orders are also forwarded to
Meta as `Purchase`; checkouts are recorded only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from pixeltrack.core.time import now_utc, unix_seconds
from pixeltrack.services.enrichment import RequestContext, enrich_event, resolve_settings
from pixeltrack.services.event_store import check_database, find_app_by_owner, record_event
from pixeltrack.services.geo import GeoResolver
from pixeltrack.services.meta_capi import ForwardJob, credentials_for, map_to_meta_event
from pixeltrack.services.normalizer import PayloadError, TrackingEvent, WireShape, normalize_payload

logger = logging.getLogger(__name__)

ORDERS_CREATE = "orders/create"
CHECKOUTS_CREATE = "checkouts/create"

DEFAULT_CURRENCY = "USD"


@dataclass
class WebhookResult:
    event_id: int | None = None
    forward_job: ForwardJob | None = None


def _money(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def line_item_products(payload: dict[str, Any]) -> list[dict[str, Any]]:
    products = []
    for item in payload.get("line_items") or []:
        if not isinstance(item, dict):
            continue
        product_id = item.get("product_id")
        products.append(
            {
                "id": str(product_id) if product_id is not None else None,
                "name": item.get("title"),
                "price": _money(item.get("price")),
                "quantity": item.get("quantity"),
                "sku": item.get("sku"),
            }
        )
    return products


def _buyer_fields(payload: dict[str, Any]) -> dict[str, Any]:
    customer = _as_dict(payload.get("customer"))
    billing = _as_dict(payload.get("billing_address"))
    return {
        "email": payload.get("email") or payload.get("contact_email") or customer.get("email"),
        "phone": payload.get("phone") or customer.get("phone") or billing.get("phone"),
        "firstName": customer.get("first_name") or billing.get("first_name"),
        "lastName": customer.get("last_name") or billing.get("last_name"),
    }


def buyer_context(payload: dict[str, Any]) -> RequestContext:
    """The shopper's browser as Shopify saw it at checkout, not the webhook sender."""
    client_details = _as_dict(payload.get("client_details"))
    return RequestContext(
        ip=payload.get("browser_ip") or client_details.get("browser_ip"),
        user_agent=client_details.get("user_agent") or None,
    )


def order_to_event(order: dict[str, Any], *, app_public_id: str) -> TrackingEvent:
    products = line_item_products(order)
    order_id = str(order["id"]) if order.get("id") is not None else order.get("name")
    payload = {
        "appId": app_public_id,
        "eventName": "purchase",
        "url": order.get("order_status_url"),
        "value": _money(order.get("total_price")),
        "currency": order.get("currency") or DEFAULT_CURRENCY,
        "productId": order_id,
        "productName": f"Order {order.get('name')}" if order.get("name") else None,
        "quantity": len(products),
        "customData": {
            "order_id": order_id,
            "order_name": order.get("name"),
            "products": products,
            "shipping": order.get("shipping_lines"),
            "discount_codes": order.get("discount_codes"),
            "source": "webhook",
        },
        **_buyer_fields(order),
    }
    return normalize_payload(payload, shape=WireShape.WEBHOOK)


def checkout_to_event(checkout: dict[str, Any], *, app_public_id: str) -> TrackingEvent:
    products = line_item_products(checkout)
    payload = {
        "appId": app_public_id,
        "eventName": "initiate_checkout",
        "url": checkout.get("abandoned_checkout_url"),
        "value": _money(checkout.get("total_price")),
        "currency": checkout.get("currency") or DEFAULT_CURRENCY,
        "quantity": len(products),
        "customData": {
            "checkout_token": checkout.get("token"),
            "products": products,
            "source": "webhook",
        },
        **_buyer_fields(checkout),
    }
    return normalize_payload(payload, shape=WireShape.WEBHOOK)


def purchase_custom_data(event: TrackingEvent) -> dict[str, Any]:
    """Meta's Purchase parameters; the stored order metadata stays out of the CAPI body."""
    products = (event.custom_data or {}).get("products") or []
    custom_data: dict[str, Any] = {
        "currency": event.currency or DEFAULT_CURRENCY,
        "value": event.value or 0.0,
        "content_type": "product",
        "content_ids": [product["id"] for product in products if product.get("id")],
        "contents": [
            {"id": product["id"], "quantity": product.get("quantity")}
            for product in products
            if product.get("id")
        ],
        "num_items": len(products),
    }
    if event.product_id:
        custom_data["order_id"] = event.product_id
    return custom_data


def handle_webhook(
    db: Session,
    *,
    topic: str,
    shop_domain: str | None,
    payload: Any,
    geo_resolver: GeoResolver,
) -> WebhookResult:
    """
    Record one order/checkout webhook for the shop's pixel.

    Shops without a registered pixel are acknowledged without writing, so the
    platform stops redelivering. The returned `forward_job` is meant to run
    after the response has been sent.
    """
    if topic not in (ORDERS_CREATE, CHECKOUTS_CREATE):
        raise PayloadError(f"Unsupported webhook topic: {topic}")
    if not isinstance(payload, dict):
        raise PayloadError("Webhook body must be a JSON object")

    check_database(db)

    app = find_app_by_owner(db, shop_domain) if shop_domain else None
    if app is None:
        logger.info("Webhook %s for unregistered shop %s", topic, shop_domain)
        return WebhookResult()

    app_id = int(app.id)
    app_public_id = app.public_id
    if topic == ORDERS_CREATE:
        event = order_to_event(payload, app_public_id=app_public_id)
    else:
        event = checkout_to_event(payload, app_public_id=app_public_id)

    app_settings = resolve_settings(app)
    context = buyer_context(payload)
    enriched = enrich_event(event, app_settings, context, geo_resolver)
    occurred_at = now_utc()
    stored = record_event(
        db,
        app_id=app_id,
        record=enriched.record,
        track_session=False,
        occurred_at=occurred_at,
    )
    logger.info(
        "Webhook %s tracked event=%s app=%s value=%s %s",
        topic,
        stored.event_id,
        app_public_id,
        event.value,
        event.currency,
    )

    if topic != ORDERS_CREATE:
        return WebhookResult(event_id=stored.event_id)

    forward_job = None
    credentials = credentials_for(app_settings)
    if credentials is not None:
        meta_event = map_to_meta_event(
            event,
            event_id=stored.event_id,
            ip_address=context.ip,
            user_agent=context.user_agent,
            geo=enriched.geo,
            event_time=unix_seconds(occurred_at),
        )
        meta_event["custom_data"] = purchase_custom_data(event)
        forward_job = ForwardJob(
            credentials=credentials,
            events=[meta_event],
            app_public_id=app_public_id,
            event_id=stored.event_id,
        )
    return WebhookResult(event_id=stored.event_id, forward_job=forward_job)
