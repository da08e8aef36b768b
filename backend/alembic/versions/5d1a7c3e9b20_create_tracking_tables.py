"""create_tracking_tables

Revision ID: 5d1a7c3e9b20
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "5d1a7c3e9b20"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "tracked_apps",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("public_id", sa.String(length=32), nullable=False),
        sa.Column("owner_ref", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
        sa.CheckConstraint("public_id <> ''", name="ck_tracked_apps_public_id_nonempty"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("public_id"),
    )

    op.create_table(
        "app_settings",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("app_id", sa.Integer(), nullable=False),
        sa.Column("auto_track_pageviews", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("auto_track_clicks", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("auto_track_scroll", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("record_ip", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("record_location", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("record_session", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("meta_pixel_id", sa.String(length=64), nullable=True),
        sa.Column("meta_access_token", sa.Text(), nullable=True),
        sa.Column("meta_pixel_enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("meta_verified", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("meta_test_event_code", sa.String(length=64), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
        sa.ForeignKeyConstraint(["app_id"], ["tracked_apps.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("app_id"),
    )

    op.create_table(
        "custom_event_definitions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("app_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("display_name", sa.String(length=255), nullable=True),
        sa.Column("selector", sa.String(length=500), nullable=False),
        sa.Column("event_type", sa.String(length=32), nullable=False, server_default="click"),
        sa.Column("meta_event_name", sa.String(length=64), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
        sa.ForeignKeyConstraint(["app_id"], ["tracked_apps.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("app_id", "name", name="uq_custom_event_definitions_app_name"),
    )

    op.create_table(
        "events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("app_id", sa.Integer(), nullable=False),
        sa.Column("event_name", sa.String(length=100), nullable=False),
        sa.Column("url", sa.Text(), nullable=True),
        sa.Column("referrer", sa.Text(), nullable=True),
        sa.Column("page_title", sa.String(length=500), nullable=True),
        sa.Column("session_id", sa.String(length=128), nullable=True),
        sa.Column("visitor_id", sa.String(length=128), nullable=True),
        sa.Column("fingerprint", sa.String(length=128), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("browser", sa.String(length=64), nullable=True),
        sa.Column("browser_version", sa.String(length=64), nullable=True),
        sa.Column("os", sa.String(length=64), nullable=True),
        sa.Column("os_version", sa.String(length=64), nullable=True),
        sa.Column("device", sa.String(length=100), nullable=True),
        sa.Column("device_vendor", sa.String(length=100), nullable=True),
        sa.Column("device_type", sa.String(length=16), nullable=True),
        sa.Column("screen_width", sa.Integer(), nullable=True),
        sa.Column("screen_height", sa.Integer(), nullable=True),
        sa.Column("language", sa.String(length=32), nullable=True),
        sa.Column("scroll_depth", sa.Integer(), nullable=True),
        sa.Column("click_x", sa.Integer(), nullable=True),
        sa.Column("click_y", sa.Integer(), nullable=True),
        sa.Column("country", sa.String(length=100), nullable=True),
        sa.Column("country_code", sa.String(length=8), nullable=True),
        sa.Column("region", sa.String(length=100), nullable=True),
        sa.Column("city", sa.String(length=100), nullable=True),
        sa.Column("zip", sa.String(length=32), nullable=True),
        sa.Column("lat", sa.DECIMAL(precision=9, scale=6), nullable=True),
        sa.Column("lon", sa.DECIMAL(precision=9, scale=6), nullable=True),
        sa.Column("timezone", sa.String(length=64), nullable=True),
        sa.Column("isp", sa.String(length=255), nullable=True),
        sa.Column("utm_source", sa.String(length=255), nullable=True),
        sa.Column("utm_medium", sa.String(length=255), nullable=True),
        sa.Column("utm_campaign", sa.String(length=255), nullable=True),
        sa.Column("utm_term", sa.String(length=255), nullable=True),
        sa.Column("utm_content", sa.String(length=255), nullable=True),
        sa.Column("value", sa.DECIMAL(precision=12, scale=2), nullable=True),
        sa.Column("currency", sa.String(length=8), nullable=True),
        sa.Column("product_id", sa.String(length=255), nullable=True),
        sa.Column("product_name", sa.String(length=500), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=True),
        sa.Column("custom_data", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
        sa.CheckConstraint(
            "device_type IS NULL OR device_type IN ('desktop', 'mobile', 'tablet')",
            name="valid_device_type",
        ),
        sa.ForeignKeyConstraint(["app_id"], ["tracked_apps.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_events_app_created_at", "events", ["app_id", "created_at"], unique=False)
    op.create_index("idx_events_app_event_name", "events", ["app_id", "event_name"], unique=False)
    op.create_index("idx_events_session_id", "events", ["session_id"], unique=False)

    op.create_table(
        "analytics_sessions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("app_id", sa.Integer(), nullable=False),
        sa.Column("session_id", sa.String(length=128), nullable=False),
        sa.Column("fingerprint", sa.String(length=128), nullable=False, server_default="unknown"),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("browser", sa.String(length=64), nullable=True),
        sa.Column("os", sa.String(length=64), nullable=True),
        sa.Column("device_type", sa.String(length=16), nullable=True),
        sa.Column("country", sa.String(length=100), nullable=True),
        sa.Column("pageviews", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("last_seen", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("pageviews >= 0", name="non_negative_session_pageviews"),
        sa.ForeignKeyConstraint(["app_id"], ["tracked_apps.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("app_id", "session_id", name="uq_analytics_sessions_app_session"),
    )

    op.create_table(
        "daily_stats",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("app_id", sa.Integer(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("pageviews", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("unique_users", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sessions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("purchases", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("revenue", sa.DECIMAL(precision=14, scale=2), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
        sa.ForeignKeyConstraint(["app_id"], ["tracked_apps.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("app_id", "date", name="uq_daily_stats_app_date"),
    )


def downgrade() -> None:
    op.drop_table("daily_stats")
    op.drop_table("analytics_sessions")
    op.drop_index("idx_events_session_id", table_name="events")
    op.drop_index("idx_events_app_event_name", table_name="events")
    op.drop_index("idx_events_app_created_at", table_name="events")
    op.drop_table("events")
    op.drop_table("custom_event_definitions")
    op.drop_table("app_settings")
    op.drop_table("tracked_apps")
