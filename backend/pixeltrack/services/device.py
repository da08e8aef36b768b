"""
User-agent parsing and device classification.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace

from user_agents import parse as parse_user_agent

logger = logging.getLogger(__name__)

DEVICE_TYPES = ("desktop", "mobile", "tablet")

# Self-reported viewport width thresholds (px).
TABLET_MIN_WIDTH = 768
DESKTOP_MIN_WIDTH = 1024

_UNKNOWN_FAMILIES = {"", "other", "generic smartphone", "generic feature phone"}


@dataclass(frozen=True)
class DeviceInfo:
    browser: str | None = None
    browser_version: str | None = None
    os: str | None = None
    os_version: str | None = None
    device: str | None = None
    device_vendor: str | None = None
    device_type: str | None = None


NULL_DEVICE = DeviceInfo()


def _known(value: str | None) -> str | None:
    text_value = str(value or "").strip()
    if text_value.lower() in _UNKNOWN_FAMILIES:
        return None
    return text_value


def parse_device(user_agent: str | None) -> DeviceInfo:
    """Parse a raw user agent. Never raises; unparseable input yields an all-null record."""
    if not user_agent:
        return NULL_DEVICE

    try:
        ua = parse_user_agent(user_agent)

        browser = _known(ua.browser.family)
        if ua.is_mobile:
            device_type = "mobile"
        elif ua.is_tablet:
            device_type = "tablet"
        elif browser:
            # A recognised browser with no handheld form factor is treated as desktop.
            device_type = "desktop"
        else:
            device_type = None

        return DeviceInfo(
            browser=browser,
            browser_version=_known(ua.browser.version_string),
            os=_known(ua.os.family),
            os_version=_known(ua.os.version_string),
            device=_known(ua.device.model),
            device_vendor=_known(ua.device.brand),
            device_type=device_type,
        )
    except Exception:
        logger.warning("Device parsing failed for user agent %r", user_agent[:200], exc_info=True)
        return NULL_DEVICE


def device_type_for_width(screen_width: int | float | None) -> str | None:
    if not screen_width or screen_width <= 0:
        return None
    if screen_width < TABLET_MIN_WIDTH:
        return "mobile"
    if screen_width < DESKTOP_MIN_WIDTH:
        return "tablet"
    return "desktop"


def classify_device(user_agent: str | None, screen_width: int | float | None = None) -> DeviceInfo:
    """
    Parse the user agent and settle the device type.

    A reported screen width always wins over the user-agent guess; the UA-derived
    type is only used when no width was sent.
    """
    info = parse_device(user_agent)
    width_type = device_type_for_width(screen_width)
    if width_type is not None:
        return replace(info, device_type=width_type)
    return info
