"""Database models."""
from pixeltrack.models.models import (
    TrackedApp,
    AppSettings,
    CustomEventDefinition,
    Event,
    AnalyticsSession,
    DailyStat,
)

__all__ = [
    "TrackedApp",
    "AppSettings",
    "CustomEventDefinition",
    "Event",
    "AnalyticsSession",
    "DailyStat",
]
