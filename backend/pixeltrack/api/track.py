"""
Tracking beacon endpoint.

Mounted at both `/track` and `/api/track`. The storefront snippet runs on
arbitrary merchant origins, so every response carries permissive CORS headers.
"""
from __future__ import annotations

import base64
import json
import logging
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from pixeltrack.core.config import settings
from pixeltrack.core.database import get_db
from pixeltrack.services.bot_filter import is_bot
from pixeltrack.services.enrichment import RequestContext
from pixeltrack.services.geo import GeoResolver, get_geo_resolver
from pixeltrack.services.ingestion import (
    AppNotFoundError,
    IngestResult,
    PayloadError,
    StoreUnavailableError,
    ingest_event,
)
from pixeltrack.services.meta_capi import forward_to_meta
from pixeltrack.services.normalizer import parse_image_beacon

router = APIRouter()
logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
    "Access-Control-Max-Age": "86400",
}

TRANSPARENT_GIF = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")

UNKNOWN_CLIENT_IP = "0.0.0.0"


def client_ip(request: Request) -> str:
    """First X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for", "")
    first_hop = forwarded.split(",")[0].strip()
    if first_hop:
        return first_hop
    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip
    if request.client and request.client.host:
        return request.client.host
    return UNKNOWN_CLIENT_IP


def request_context(request: Request) -> RequestContext:
    return RequestContext(
        ip=client_ip(request),
        user_agent=request.headers.get("user-agent", ""),
    )


async def _raw_body(request: Request) -> bytes:
    # sendBeacon posts text/plain, so the body is decoded by hand instead of by FastAPI.
    return await request.body()


def _json(status_code: int, content: dict[str, Any]) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=content, headers=CORS_HEADERS)


def _error(status_code: int, message: str) -> JSONResponse:
    return _json(status_code, {"success": False, "error": message})


def _gif() -> Response:
    return Response(
        content=TRANSPARENT_GIF,
        media_type="image/gif",
        headers={**CORS_HEADERS, "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0"},
    )


def _schedule_forward(background_tasks: BackgroundTasks, result: IngestResult) -> None:
    if result.forward_job is not None:
        background_tasks.add_task(forward_to_meta, result.forward_job)


@router.options("/track")
def track_preflight():
    return Response(status_code=204, headers=CORS_HEADERS)


@router.post("/track")
def track_event(
    request: Request,
    background_tasks: BackgroundTasks,
    raw_body: bytes = Depends(_raw_body),
    db: Session = Depends(get_db),
    geo_resolver: GeoResolver = Depends(get_geo_resolver),
):
    """Ingest one tracking beacon (flat, GraphQL or sendBeacon envelope)."""
    try:
        body = json.loads(raw_body) if raw_body.strip() else None
    except ValueError:
        return _error(400, "Invalid JSON body")

    try:
        result = ingest_event(db, body, request_context(request), geo_resolver)
    except PayloadError as exc:
        return _error(400, str(exc))
    except AppNotFoundError:
        return _error(404, "App not found")
    except StoreUnavailableError:
        return _error(503, "Database temporarily unavailable")
    except Exception as exc:
        logger.exception("Tracking ingest failed")
        return _error(500, str(exc) if settings.DEBUG else "Internal error")

    if result.skipped_bot:
        return _json(200, {"success": True})

    _schedule_forward(background_tasks, result)
    return _json(200, {"success": True, "eventId": result.event_id})


@router.get("/track")
def track_image_beacon(
    request: Request,
    background_tasks: BackgroundTasks,
    e: str | None = Query(None),
    d: str | None = Query(None),
    db: Session = Depends(get_db),
    geo_resolver: GeoResolver = Depends(get_geo_resolver),
):
    """Image-beacon fallback. Always answers with the 1x1 GIF."""
    context = request_context(request)
    if is_bot(context.user_agent):
        return _gif()
    try:
        result = ingest_event(db, parse_image_beacon(e, d), context, geo_resolver)
    except AppNotFoundError:
        logger.info("Image beacon for unknown app (event=%s)", e)
        return _gif()
    except (PayloadError, StoreUnavailableError) as exc:
        logger.warning("Image beacon rejected (event=%s): %s", e, exc)
        return _gif()
    except Exception:
        logger.exception("Image beacon ingest failed (event=%s)", e)
        return _gif()

    _schedule_forward(background_tasks, result)
    return _gif()
