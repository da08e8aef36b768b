"""
Automated-traffic detection.

Crawlers, link-preview fetchers and headless browsers are dropped before any
persistence work so they never show up in merchant analytics. The caller still
answers them with a normal success response.
"""

from __future__ import annotations

import re

BOT_SIGNATURES = (
    r"bot",
    r"spider",
    r"crawl",
    r"slurp",
    r"mediapartners",
    r"googlebot",
    r"bingbot",
    r"yandex",
    r"baiduspider",
    r"facebookexternalhit",
    r"twitterbot",
    r"rogerbot",
    r"linkedinbot",
    r"embedly",
    r"quora link preview",
    r"showyoubot",
    r"outbrain",
    r"pinterest",
    r"slackbot",
    r"vkshare",
    r"w3c_validator",
    r"whatsapp",
    r"lighthouse",
    r"headless",
    r"phantom",
    r"selenium",
    r"webdriver",
)

_BOT_PATTERN = re.compile("|".join(BOT_SIGNATURES), re.IGNORECASE)


def is_bot(user_agent: str | None) -> bool:
    """True when the user agent matches a known automation signature."""
    if not user_agent:
        return False
    return _BOT_PATTERN.search(user_agent) is not None
