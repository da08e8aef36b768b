"""
Server-side enrichment of tracking events.

Combines device classification, geo resolution and the owning app's privacy
toggles into the row that gets persisted. Settings are read once per event;
what was not permitted at write time is never stored.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any

from pixeltrack.services.device import DeviceInfo, classify_device
from pixeltrack.services.geo import NULL_GEO, GeoData, GeoResolver
from pixeltrack.services.normalizer import TrackingEvent


@dataclass(frozen=True)
class RequestContext:
    ip: str | None
    user_agent: str | None


@dataclass(frozen=True)
class EffectiveSettings:
    """Snapshot of AppSettings taken at ingestion time."""

    record_ip: bool = False
    record_location: bool = False
    record_session: bool = True
    meta_pixel_enabled: bool = False
    meta_verified: bool = False
    meta_pixel_id: str | None = None
    meta_access_token: str | None = None
    meta_test_event_code: str | None = None


@dataclass
class EnrichedEvent:
    record: dict[str, Any]
    device: DeviceInfo
    geo: GeoData


def resolve_settings(app: Any) -> EffectiveSettings:
    """Read an app's settings row; apps without one get the conservative defaults."""
    row = getattr(app, "settings", None)
    if row is None:
        return EffectiveSettings()
    return EffectiveSettings(
        record_ip=bool(row.record_ip),
        record_location=bool(row.record_location),
        # Only an explicit False disables session tracking.
        record_session=row.record_session is not False,
        meta_pixel_enabled=bool(row.meta_pixel_enabled),
        meta_verified=bool(row.meta_verified),
        meta_pixel_id=(row.meta_pixel_id or "").strip() or None,
        meta_access_token=(row.meta_access_token or "").strip() or None,
        meta_test_event_code=(row.meta_test_event_code or "").strip() or None,
    )


def redact_geo(geo: GeoData, *, record_location: bool) -> GeoData:
    """Drop precise location unless the app records it. Country, timezone and ISP are coarse enough to keep."""
    if record_location:
        return geo
    return replace(geo, region=None, city=None, zip=None, lat=None, lon=None)


def enrich_event(
    event: TrackingEvent,
    settings: EffectiveSettings,
    context: RequestContext,
    geo_resolver: GeoResolver,
) -> EnrichedEvent:
    device = classify_device(context.user_agent, event.screen_width)

    geo = NULL_GEO
    if settings.record_location:
        geo = geo_resolver.lookup(context.ip)
    geo = redact_geo(geo, record_location=settings.record_location)

    record = {
        "event_name": event.event_name,
        "url": event.url,
        "referrer": event.referrer,
        "page_title": event.page_title,
        "session_id": event.session_id,
        "visitor_id": event.visitor_id,
        "fingerprint": event.fingerprint,
        "ip_address": context.ip if settings.record_ip else None,
        "user_agent": context.user_agent or None,
        "browser": device.browser,
        "browser_version": device.browser_version,
        "os": device.os,
        "os_version": device.os_version,
        "device": device.device,
        "device_vendor": device.device_vendor,
        "device_type": device.device_type,
        "screen_width": event.screen_width,
        "screen_height": event.screen_height,
        "language": event.language,
        "scroll_depth": event.scroll_depth,
        "click_x": event.click_x,
        "click_y": event.click_y,
        "country": geo.country,
        "country_code": geo.country_code,
        "region": geo.region,
        "city": geo.city,
        "zip": geo.zip,
        "lat": geo.lat,
        "lon": geo.lon,
        "timezone": geo.timezone,
        "isp": geo.isp,
        "utm_source": event.utm_source,
        "utm_medium": event.utm_medium,
        "utm_campaign": event.utm_campaign,
        "utm_term": event.utm_term,
        "utm_content": event.utm_content,
        "value": event.value,
        "currency": event.currency,
        "product_id": event.product_id,
        "product_name": event.product_name,
        "quantity": event.quantity,
        "custom_data": event.custom_data,
    }
    return EnrichedEvent(record=record, device=device, geo=geo)
