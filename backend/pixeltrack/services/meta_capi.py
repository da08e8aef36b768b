"""
Meta Conversions API (CAPI) forwarding.

Events are mapped to Meta's server event schema with every PII field SHA-256
hashed before it leaves the process. Sending happens after the HTTP response
(FastAPI background task) and never raises: errors are logged with Meta's error
metadata and the stored event is left untouched.
"""

from __future__ import annotations

import hashlib
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any

import requests

from pixeltrack.core.config import settings
from pixeltrack.core.time import unix_seconds
from pixeltrack.services.enrichment import EffectiveSettings
from pixeltrack.services.geo import GeoData, NULL_GEO
from pixeltrack.services.normalizer import TrackingEvent

logger = logging.getLogger(__name__)

META_EVENT_NAME_MAP = {
    "pageview": "PageView",
    "page_view": "PageView",
    "view_content": "ViewContent",
    "add_to_cart": "AddToCart",
    "add_to_wishlist": "AddToWishlist",
    "initiate_checkout": "InitiateCheckout",
    "add_payment_info": "AddPaymentInfo",
    "purchase": "Purchase",
    "lead": "Lead",
    "complete_registration": "CompleteRegistration",
    "search": "Search",
    "contact": "Contact",
    "subscribe": "Subscribe",
    "start_trial": "StartTrial",
}

# Graph API error codes worth translating for merchants.
CREDENTIAL_ERROR_MESSAGES = {
    100: "Invalid Dataset ID (Pixel ID). Please check your Dataset ID from Meta Events Manager.",
    190: "Invalid or expired access token. Please generate a new token from Meta Events Manager.",
    803: "Dataset ID not found. Please verify your Dataset ID (Pixel ID) from Meta Events Manager.",
    104: "Dataset ID not found. Please verify your Dataset ID (Pixel ID) from Meta Events Manager.",
    200: "Permission denied. Your access token doesn't have permission for this pixel.",
    10: "Application permission error. Please check your access token permissions.",
    2500: "Invalid access token format. Please copy the full access token from Meta Events Manager.",
}

_NON_DIGITS = re.compile(r"\D")


def map_event_name(event_name: str) -> str:
    """Translate to a Meta standard event; unknown names pass through as custom events."""
    return META_EVENT_NAME_MAP.get(str(event_name or "").strip().lower(), event_name)


def hash_pii(value: Any) -> str | None:
    """SHA-256 of the trimmed, lower-cased value."""
    if value is None:
        return None
    normalized = str(value).strip().lower()
    if not normalized:
        return None
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def _hash_phone(phone: str | None) -> str | None:
    return hash_pii(_NON_DIGITS.sub("", phone or ""))


@dataclass(frozen=True)
class MetaCredentials:
    pixel_id: str
    access_token: str
    test_event_code: str | None = None


def credentials_for(app_settings: EffectiveSettings) -> MetaCredentials | None:
    """Credentials when forwarding is switched on, verified and fully configured; else None."""
    if not settings.META_FORWARDING_ENABLED:
        return None
    if not (app_settings.meta_pixel_enabled and app_settings.meta_verified):
        return None
    if not (app_settings.meta_pixel_id and app_settings.meta_access_token):
        return None
    return MetaCredentials(
        pixel_id=app_settings.meta_pixel_id,
        access_token=app_settings.meta_access_token,
        test_event_code=app_settings.meta_test_event_code,
    )


def map_to_meta_event(
    event: TrackingEvent,
    *,
    event_id: int | str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    geo: GeoData = NULL_GEO,
    event_time: int | None = None,
) -> dict[str, Any]:
    user_data: dict[str, Any] = {}
    hashed = {
        "em": hash_pii(event.email),
        "ph": _hash_phone(event.phone),
        "fn": hash_pii(event.first_name),
        "ln": hash_pii(event.last_name),
        "ct": hash_pii(geo.city),
        "st": hash_pii(geo.region),
        "zp": hash_pii(geo.zip),
        "country": hash_pii(geo.country_code),
        "external_id": hash_pii(event.identity),
    }
    user_data.update({key: value for key, value in hashed.items() if value})
    if ip_address:
        user_data["client_ip_address"] = ip_address
    if user_agent:
        user_data["client_user_agent"] = user_agent
    if event.fbc:
        user_data["fbc"] = event.fbc
    if event.fbp:
        user_data["fbp"] = event.fbp

    custom_data: dict[str, Any] = {}
    if event.value is not None:
        custom_data["value"] = event.value
    if event.currency:
        custom_data["currency"] = event.currency.upper()
    if event.product_name:
        custom_data["content_name"] = event.product_name
    if event.product_id:
        custom_data["content_ids"] = [event.product_id]
        custom_data["content_type"] = "product"
    if event.quantity:
        custom_data["num_items"] = event.quantity
    if event.custom_data:
        custom_data.update(event.custom_data)

    payload: dict[str, Any] = {
        "event_name": map_event_name(event.event_name),
        "event_time": event_time if event_time is not None else unix_seconds(),
        "event_id": f"evt_{event_id}" if event_id is not None else f"evt_{int(time.time() * 1000)}",
        "action_source": "website",
        "user_data": user_data,
    }
    if event.url:
        payload["event_source_url"] = event.url
    if custom_data:
        payload["custom_data"] = custom_data
    return payload


@dataclass
class MetaSendResult:
    success: bool
    events_received: int | None = None
    fbtrace_id: str | None = None
    error: str | None = None
    error_code: int | None = None
    error_subcode: int | None = None
    error_type: str | None = None


@dataclass
class CredentialCheck:
    valid: bool
    dataset_name: str | None = None
    error: str | None = None
    error_code: int | None = None


@dataclass
class ForwardJob:
    """Everything the background sender needs; already hashed, no ORM objects."""

    credentials: MetaCredentials
    events: list[dict[str, Any]] = field(default_factory=list)
    app_public_id: str | None = None
    event_id: int | None = None


def _error_result(error: dict[str, Any]) -> MetaSendResult:
    def _int_or_none(value: Any) -> int | None:
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    return MetaSendResult(
        success=False,
        fbtrace_id=error.get("fbtrace_id"),
        error=str(error.get("message") or "Unknown Meta API error"),
        error_code=_int_or_none(error.get("code")),
        error_subcode=_int_or_none(error.get("error_subcode")),
        error_type=error.get("type"),
    )


class MetaCapiClient:
    """Thin Graph API client for the `/{pixel_id}/events` endpoint."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_version: str | None = None,
        timeout_seconds: float | None = None,
        http: Any = None,
    ) -> None:
        self.base_url = (base_url or settings.META_GRAPH_API_URL).rstrip("/")
        self.api_version = api_version or settings.META_GRAPH_API_VERSION
        self.timeout_seconds = float(
            timeout_seconds if timeout_seconds is not None else settings.META_FORWARD_TIMEOUT_SECONDS
        )
        self._http = http or requests

    def _url(self, *parts: str) -> str:
        return "/".join([self.base_url, self.api_version, *parts])

    def send_events(self, credentials: MetaCredentials, events: list[dict[str, Any]]) -> MetaSendResult:
        body: dict[str, Any] = {"data": events}
        if credentials.test_event_code:
            body["test_event_code"] = credentials.test_event_code

        try:
            response = self._http.post(
                self._url(credentials.pixel_id, "events"),
                params={"access_token": credentials.access_token},
                json=body,
                timeout=self.timeout_seconds,
            )
            data = response.json()
        except requests.Timeout:
            logger.warning(
                "Meta CAPI send timed out after %.1fs (pixel=%s)", self.timeout_seconds, credentials.pixel_id
            )
            return MetaSendResult(success=False, error="timeout")
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Meta CAPI send failed (pixel=%s): %s", credentials.pixel_id, exc)
            return MetaSendResult(success=False, error=str(exc))

        if not isinstance(data, dict):
            logger.warning("Meta CAPI returned an unexpected body (pixel=%s)", credentials.pixel_id)
            return MetaSendResult(success=False, error="unexpected response body")

        if isinstance(data.get("error"), dict):
            result = _error_result(data["error"])
            logger.error(
                "Meta CAPI error: pixel=%s code=%s subcode=%s type=%s fbtrace_id=%s message=%s",
                credentials.pixel_id,
                result.error_code,
                result.error_subcode,
                result.error_type,
                result.fbtrace_id,
                result.error,
            )
            return result

        return MetaSendResult(
            success=True,
            events_received=data.get("events_received"),
            fbtrace_id=data.get("fbtrace_id"),
        )

    def validate_credentials(self, dataset_id: str, access_token: str) -> CredentialCheck:
        """
        Check a dataset id + token pair.

        Reads the dataset first; if that is refused, posts a throwaway test event,
        which also proves the token can write events for this pixel.
        """
        try:
            response = self._http.get(
                self._url(dataset_id),
                params={"fields": "id,name", "access_token": access_token},
                timeout=self.timeout_seconds,
            )
            data = response.json()
            if isinstance(data, dict) and not data.get("error"):
                return CredentialCheck(valid=True, dataset_name=data.get("name") or f"Pixel {dataset_id}")

            logger.info("Direct dataset read failed for %s, trying events endpoint", dataset_id)
            probe = MetaCredentials(
                pixel_id=dataset_id,
                access_token=access_token,
                test_event_code=f"TEST_VALIDATION_{int(time.time() * 1000)}",
            )
            result = self.send_events(
                probe,
                [
                    {
                        "event_name": "TestEvent",
                        "event_time": unix_seconds(),
                        "action_source": "website",
                        "user_data": {"client_ip_address": "0.0.0.0", "client_user_agent": "Test"},
                    }
                ],
            )
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Meta credential validation error for %s: %s", dataset_id, exc)
            return CredentialCheck(
                valid=False, error="Failed to connect to Meta API. Check your internet connection."
            )

        if result.success:
            return CredentialCheck(valid=True, dataset_name=f"Pixel {dataset_id}")
        if result.error_code is None:
            return CredentialCheck(
                valid=False, error="Failed to connect to Meta API. Check your internet connection."
            )
        return CredentialCheck(
            valid=False,
            error=CREDENTIAL_ERROR_MESSAGES.get(result.error_code, result.error or "Invalid credentials"),
            error_code=result.error_code,
        )


meta_capi_client = MetaCapiClient()


def forward_to_meta(job: ForwardJob) -> MetaSendResult | None:
    """Background-task entry point. Swallows everything."""
    try:
        result = meta_capi_client.send_events(job.credentials, job.events)
    except Exception:
        logger.exception("Meta forwarding crashed for app=%s event=%s", job.app_public_id, job.event_id)
        return None
    if result.success:
        logger.debug(
            "Forwarded event=%s for app=%s to Meta (received=%s)",
            job.event_id,
            job.app_public_id,
            result.events_received,
        )
    return result
