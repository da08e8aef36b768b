"""
SQLAlchemy models for the pixel tracking backend.
"""
from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DECIMAL, Date,
    ForeignKey, DateTime, JSON, CheckConstraint, UniqueConstraint, Index
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from pixeltrack.core.database import Base


class TrackedApp(Base):
    """One tracking surface ("pixel") owned by a merchant account."""
    __tablename__ = "tracked_apps"

    id = Column(Integer, primary_key=True)
    # Opaque identifier embedded in the storefront snippet.
    public_id = Column(String(32), unique=True, nullable=False)
    owner_ref = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    settings = relationship(
        "AppSettings", back_populates="app", uselist=False, cascade="all, delete-orphan"
    )
    custom_events = relationship(
        "CustomEventDefinition", back_populates="app", cascade="all, delete-orphan"
    )
    events = relationship("Event", back_populates="app", cascade="all, delete-orphan", passive_deletes=True)
    sessions = relationship(
        "AnalyticsSession", back_populates="app", cascade="all, delete-orphan", passive_deletes=True
    )
    daily_stats = relationship(
        "DailyStat", back_populates="app", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        CheckConstraint("public_id <> ''", name="ck_tracked_apps_public_id_nonempty"),
    )


class AppSettings(Base):
    """Per-app collection toggles and Meta Conversions API wiring."""
    __tablename__ = "app_settings"

    id = Column(Integer, primary_key=True)
    app_id = Column(Integer, ForeignKey("tracked_apps.id", ondelete="CASCADE"), unique=True, nullable=False)

    auto_track_pageviews = Column(Boolean, nullable=False, default=True)
    auto_track_clicks = Column(Boolean, nullable=False, default=True)
    auto_track_scroll = Column(Boolean, nullable=False, default=True)

    record_ip = Column(Boolean, nullable=False, default=False)
    record_location = Column(Boolean, nullable=False, default=True)
    record_session = Column(Boolean, nullable=False, default=True)

    # Meta dataset (pixel) id + system user token
    meta_pixel_id = Column(String(64), nullable=True)
    meta_access_token = Column(Text, nullable=True)
    meta_pixel_enabled = Column(Boolean, nullable=False, default=False)
    meta_verified = Column(Boolean, nullable=False, default=False)
    meta_test_event_code = Column(String(64), nullable=True)

    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    app = relationship("TrackedApp", back_populates="settings")


class CustomEventDefinition(Base):
    """Merchant rule binding a CSS selector + DOM event to a named tracked event."""
    __tablename__ = "custom_event_definitions"

    id = Column(Integer, primary_key=True)
    app_id = Column(Integer, ForeignKey("tracked_apps.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(100), nullable=False)
    display_name = Column(String(255), nullable=True)
    selector = Column(String(500), nullable=False)
    event_type = Column(String(32), nullable=False, default="click")
    meta_event_name = Column(String(64), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    app = relationship("TrackedApp", back_populates="custom_events")

    __table_args__ = (
        UniqueConstraint("app_id", "name", name="uq_custom_event_definitions_app_name"),
    )


class Event(Base):
    """One immutable tracked fact. Enrichment columns reflect privacy settings at write time."""
    __tablename__ = "events"

    id = Column(Integer, primary_key=True)
    app_id = Column(Integer, ForeignKey("tracked_apps.id", ondelete="CASCADE"), nullable=False)
    event_name = Column(String(100), nullable=False)

    url = Column(Text, nullable=True)
    referrer = Column(Text, nullable=True)
    page_title = Column(String(500), nullable=True)

    session_id = Column(String(128), nullable=True)
    visitor_id = Column(String(128), nullable=True)
    fingerprint = Column(String(128), nullable=True)

    # Network + device
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    browser = Column(String(64), nullable=True)
    browser_version = Column(String(64), nullable=True)
    os = Column(String(64), nullable=True)
    os_version = Column(String(64), nullable=True)
    device = Column(String(100), nullable=True)
    device_vendor = Column(String(100), nullable=True)
    device_type = Column(String(16), nullable=True)
    screen_width = Column(Integer, nullable=True)
    screen_height = Column(Integer, nullable=True)
    language = Column(String(32), nullable=True)

    # Interaction
    scroll_depth = Column(Integer, nullable=True)
    click_x = Column(Integer, nullable=True)
    click_y = Column(Integer, nullable=True)

    # Geo
    country = Column(String(100), nullable=True)
    country_code = Column(String(8), nullable=True)
    region = Column(String(100), nullable=True)
    city = Column(String(100), nullable=True)
    zip = Column(String(32), nullable=True)
    lat = Column(DECIMAL(9, 6), nullable=True)
    lon = Column(DECIMAL(9, 6), nullable=True)
    timezone = Column(String(64), nullable=True)
    isp = Column(String(255), nullable=True)

    # Attribution
    utm_source = Column(String(255), nullable=True)
    utm_medium = Column(String(255), nullable=True)
    utm_campaign = Column(String(255), nullable=True)
    utm_term = Column(String(255), nullable=True)
    utm_content = Column(String(255), nullable=True)

    # E-commerce
    value = Column(DECIMAL(12, 2), nullable=True)
    currency = Column(String(8), nullable=True)
    product_id = Column(String(255), nullable=True)
    product_name = Column(String(500), nullable=True)
    quantity = Column(Integer, nullable=True)

    custom_data = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    app = relationship("TrackedApp", back_populates="events")

    __table_args__ = (
        CheckConstraint(
            "device_type IS NULL OR device_type IN ('desktop', 'mobile', 'tablet')",
            name="valid_device_type",
        ),
        Index("idx_events_app_created_at", "app_id", "created_at"),
        Index("idx_events_app_event_name", "app_id", "event_name"),
        Index("idx_events_session_id", "session_id"),
    )


class AnalyticsSession(Base):
    """Rolling per-session aggregate, keyed by the client-supplied session id."""
    __tablename__ = "analytics_sessions"

    id = Column(Integer, primary_key=True)
    app_id = Column(Integer, ForeignKey("tracked_apps.id", ondelete="CASCADE"), nullable=False)
    session_id = Column(String(128), nullable=False)
    fingerprint = Column(String(128), nullable=False, default="unknown")

    # First-seen snapshot
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    browser = Column(String(64), nullable=True)
    os = Column(String(64), nullable=True)
    device_type = Column(String(16), nullable=True)
    country = Column(String(100), nullable=True)

    pageviews = Column(Integer, nullable=False, default=0)
    started_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    last_seen = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    app = relationship("TrackedApp", back_populates="sessions")

    __table_args__ = (
        # Scoped per app so two storefronts can never claim the same session row.
        UniqueConstraint("app_id", "session_id", name="uq_analytics_sessions_app_session"),
        CheckConstraint("pageviews >= 0", name="non_negative_session_pageviews"),
    )


class DailyStat(Base):
    """One aggregate row per (app, UTC day), maintained by upsert."""
    __tablename__ = "daily_stats"

    id = Column(Integer, primary_key=True)
    app_id = Column(Integer, ForeignKey("tracked_apps.id", ondelete="CASCADE"), nullable=False)
    date = Column(Date, nullable=False)
    pageviews = Column(Integer, nullable=False, default=0)
    unique_users = Column(Integer, nullable=False, default=0)
    sessions = Column(Integer, nullable=False, default=0)
    purchases = Column(Integer, nullable=False, default=0)
    revenue = Column(DECIMAL(14, 2), nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    app = relationship("TrackedApp", back_populates="daily_stats")

    __table_args__ = (
        UniqueConstraint("app_id", "date", name="uq_daily_stats_app_date"),
    )
