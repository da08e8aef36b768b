"""
Tracking pipeline: bot filter -> normalize -> enrich -> store -> (deferred) Meta forward.

The HTTP layer maps the three domain errors raised here to status codes:
`PayloadError` -> 400, `AppNotFoundError` -> 404, `StoreUnavailableError` -> 503.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from pixeltrack.core.time import now_utc, unix_seconds
from pixeltrack.services.bot_filter import is_bot
from pixeltrack.services.enrichment import RequestContext, enrich_event, resolve_settings
from pixeltrack.services.event_store import (
    SessionSnapshot,
    StoreUnavailableError,
    check_database,
    find_app_by_public_id,
    record_event,
)
from pixeltrack.services.geo import GeoResolver
from pixeltrack.services.meta_capi import ForwardJob, credentials_for, map_to_meta_event
from pixeltrack.services.normalizer import PayloadError, TrackingEvent, parse_body

logger = logging.getLogger(__name__)

__all__ = [
    "AppNotFoundError",
    "IngestResult",
    "PayloadError",
    "StoreUnavailableError",
    "ingest_event",
]


class AppNotFoundError(LookupError):
    """No tracked app has the given public id."""


@dataclass
class IngestResult:
    event_id: int | None = None
    skipped_bot: bool = False
    forward_job: ForwardJob | None = None


def ingest_event(
    db: Session,
    body: Any,
    context: RequestContext,
    geo_resolver: GeoResolver,
) -> IngestResult:
    """
    Run one beacon through the pipeline.

    `body` is the decoded JSON body in any supported wire shape, or an already
    normalized `TrackingEvent` (the image-beacon route decodes its query string
    itself). Bot traffic short-circuits before anything is parsed or written and
    reports success. The returned `forward_job`, when set, is meant to be run
    after the response has been sent.
    """
    if is_bot(context.user_agent):
        logger.debug("Dropping bot hit: %s", (context.user_agent or "")[:120])
        return IngestResult(skipped_bot=True)

    event = body if isinstance(body, TrackingEvent) else parse_body(body)

    check_database(db)

    app = find_app_by_public_id(db, event.app_id)
    if app is None:
        raise AppNotFoundError("App not found")

    app_id = int(app.id)
    app_public_id = app.public_id
    app_settings = resolve_settings(app)
    enriched = enrich_event(event, app_settings, context, geo_resolver)

    snapshot = SessionSnapshot(
        fingerprint=event.identity or "unknown",
        ip_address=context.ip if app_settings.record_ip else None,
        user_agent=context.user_agent or None,
        browser=enriched.device.browser,
        os=enriched.device.os,
        device_type=enriched.device.device_type,
        country=enriched.geo.country,
    )
    occurred_at = now_utc()
    stored = record_event(
        db,
        app_id=app_id,
        record=enriched.record,
        track_session=app_settings.record_session,
        snapshot=snapshot,
        occurred_at=occurred_at,
    )
    logger.debug(
        "Stored event=%s app=%s name=%s shape=%s new_session=%s",
        stored.event_id,
        app_public_id,
        event.event_name,
        event.shape.value,
        stored.new_session,
    )

    forward_job = None
    credentials = credentials_for(app_settings)
    if credentials is not None:
        forward_job = ForwardJob(
            credentials=credentials,
            events=[
                map_to_meta_event(
                    event,
                    event_id=stored.event_id,
                    ip_address=context.ip,
                    user_agent=context.user_agent,
                    geo=enriched.geo,
                    event_time=unix_seconds(occurred_at),
                )
            ],
            app_public_id=app_public_id,
            event_id=stored.event_id,
        )

    return IngestResult(
        event_id=stored.event_id,
        forward_job=forward_job,
    )
