"""
Script configuration for the storefront snippet.

Unknown ids answer 200 with tracking disabled so a stale id embedded in a live
theme never breaks the page.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, Response
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from pixeltrack.core.database import get_db
from pixeltrack.services.apps import DEFAULT_SCRIPT_CONFIG, get_pixel_config

router = APIRouter()
logger = logging.getLogger(__name__)

CONFIG_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
    "X-Content-Type-Options": "nosniff",
}


@router.options("/pixel-config/{app_id}")
def pixel_config_preflight(app_id: str):
    return Response(status_code=204, headers=CONFIG_CORS_HEADERS)


@router.get("/pixel-config/{app_id}")
def pixel_config(app_id: str, db: Session = Depends(get_db)):
    try:
        payload = get_pixel_config(db, app_id)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Pixel config lookup failed for %s", app_id)
        payload = {
            "pixelId": app_id,
            "enabled": False,
            "config": dict(DEFAULT_SCRIPT_CONFIG),
            "customEvents": [],
        }
    return JSONResponse(content=payload, headers=CONFIG_CORS_HEADERS)
