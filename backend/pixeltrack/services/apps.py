"""
Tracked app lifecycle and the storefront script configuration.
"""

from __future__ import annotations

import logging
import secrets
from typing import Any

from sqlalchemy.orm import Session

from pixeltrack.models.models import (
    AnalyticsSession,
    AppSettings,
    CustomEventDefinition,
    DailyStat,
    Event,
    TrackedApp,
)
from pixeltrack.services.event_store import find_app_by_public_id

logger = logging.getLogger(__name__)

PUBLIC_ID_BYTES = 8

# Used when an app has no settings row yet.
DEFAULT_SCRIPT_CONFIG = {
    "autoPageviews": True,
    "autoClicks": True,
    "autoScroll": False,
}


def generate_public_id() -> str:
    """16 lowercase hex characters."""
    return secrets.token_hex(PUBLIC_ID_BYTES)


def create_app_with_settings(
    db: Session,
    *,
    owner_ref: str,
    name: str,
    meta_pixel_id: str | None = None,
    meta_access_token: str | None = None,
) -> TrackedApp:
    """
    Create an app plus its settings row in one transaction.

    Meta forwarding starts enabled only when both a pixel id and a token are
    supplied, and never starts verified: credentials must pass
    `MetaCapiClient.validate_credentials` before events are forwarded.
    """
    name = (name or "").strip()
    if not name:
        raise ValueError("App name is required")

    pixel_id = (meta_pixel_id or "").strip() or None
    token = (meta_access_token or "").strip() or None

    app = TrackedApp(public_id=generate_public_id(), owner_ref=owner_ref, name=name)
    app.settings = AppSettings(
        meta_pixel_id=pixel_id,
        meta_access_token=token,
        meta_pixel_enabled=bool(pixel_id and token),
        meta_verified=False,
    )
    db.add(app)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(app)
    logger.info("Created app %s (%s) for owner=%s", app.public_id, app.name, owner_ref)
    return app


def delete_app(db: Session, public_id: str) -> bool:
    """Delete an app and everything recorded for it. Returns False when no such app exists."""
    app = db.query(TrackedApp).filter(TrackedApp.public_id == public_id).first()
    if app is None:
        return False

    app_id = app.id
    try:
        # Children first so the delete does not depend on database-level cascades.
        for model in (CustomEventDefinition, AppSettings, Event, AnalyticsSession, DailyStat):
            db.query(model).filter(model.app_id == app_id).delete(synchronize_session=False)
        db.query(TrackedApp).filter(TrackedApp.id == app_id).delete(synchronize_session=False)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Failed to delete app %s", public_id)
        raise
    db.expunge_all()
    logger.info("Deleted app %s", public_id)
    return True


def get_pixel_config(db: Session, public_id: str) -> dict[str, Any]:
    """Script configuration for the storefront snippet. Unknown ids get an inert config."""
    app = find_app_by_public_id(db, public_id)
    if app is None:
        return {
            "pixelId": public_id,
            "enabled": False,
            "config": dict(DEFAULT_SCRIPT_CONFIG),
            "customEvents": [],
        }

    row = app.settings
    config = dict(DEFAULT_SCRIPT_CONFIG)
    if row is not None:
        config = {
            "autoPageviews": bool(row.auto_track_pageviews),
            "autoClicks": bool(row.auto_track_clicks),
            "autoScroll": bool(row.auto_track_scroll),
        }

    custom_events = (
        db.query(CustomEventDefinition)
        .filter(CustomEventDefinition.app_id == app.id, CustomEventDefinition.is_active.is_(True))
        .order_by(CustomEventDefinition.id.asc())
        .all()
    )
    return {
        "pixelId": app.public_id,
        "appName": app.name,
        "metaPixelId": row.meta_pixel_id if row is not None else None,
        "enabled": True,
        "config": config,
        "customEvents": [
            {
                "name": item.name,
                "displayName": item.display_name,
                "selector": item.selector,
                "eventType": item.event_type,
                "metaEventName": item.meta_event_name,
            }
            for item in custom_events
        ],
    }
