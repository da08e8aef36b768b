"""
Order and checkout webhook receivers.

The hosting integration owns signature verification; it plugs in by overriding
the `verify_webhook_signature` dependency and raising `HTTPException(401)` on a
bad signature.
"""
from __future__ import annotations

import json
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from pixeltrack.core.database import get_db
from pixeltrack.services.event_store import StoreUnavailableError
from pixeltrack.services.geo import GeoResolver, get_geo_resolver
from pixeltrack.services.meta_capi import forward_to_meta
from pixeltrack.services.normalizer import PayloadError
from pixeltrack.services.order_webhooks import CHECKOUTS_CREATE, ORDERS_CREATE, handle_webhook

router = APIRouter()
logger = logging.getLogger(__name__)

SHOP_DOMAIN_HEADER = "x-shopify-shop-domain"


async def _raw_body(request: Request) -> bytes:
    return await request.body()


async def verify_webhook_signature(request: Request) -> None:
    """Accept every delivery unless the integration overrides this dependency."""
    return None


def _receive(
    topic: str,
    request: Request,
    background_tasks: BackgroundTasks,
    raw_body: bytes,
    db: Session,
    geo_resolver: GeoResolver,
) -> PlainTextResponse:
    shop_domain = request.headers.get(SHOP_DOMAIN_HEADER, "").strip() or None
    logger.info("Webhook %s from %s", topic, shop_domain)
    try:
        payload = json.loads(raw_body) if raw_body.strip() else None
    except ValueError:
        return PlainTextResponse("Invalid JSON body", status_code=400)

    try:
        result = handle_webhook(
            db,
            topic=topic,
            shop_domain=shop_domain,
            payload=payload,
            geo_resolver=geo_resolver,
        )
    except PayloadError as exc:
        return PlainTextResponse(str(exc), status_code=400)
    except StoreUnavailableError:
        return PlainTextResponse("Database temporarily unavailable", status_code=503)
    except Exception:
        logger.exception("Webhook %s failed for %s", topic, shop_domain)
        return PlainTextResponse("Error", status_code=500)

    if result.forward_job is not None:
        background_tasks.add_task(forward_to_meta, result.forward_job)
    return PlainTextResponse("OK")


@router.post("/webhooks/orders/create")
def order_created(
    request: Request,
    background_tasks: BackgroundTasks,
    raw_body: bytes = Depends(_raw_body),
    db: Session = Depends(get_db),
    geo_resolver: GeoResolver = Depends(get_geo_resolver),
    _verified: None = Depends(verify_webhook_signature),
):
    return _receive(ORDERS_CREATE, request, background_tasks, raw_body, db, geo_resolver)


@router.post("/webhooks/checkouts/create")
def checkout_created(
    request: Request,
    background_tasks: BackgroundTasks,
    raw_body: bytes = Depends(_raw_body),
    db: Session = Depends(get_db),
    geo_resolver: GeoResolver = Depends(get_geo_resolver),
    _verified: None = Depends(verify_webhook_signature),
):
    return _receive(CHECKOUTS_CREATE, request, background_tasks, raw_body, db, geo_resolver)
