"""
Event persistence: the primary event insert plus the session and daily-stat
aggregates that hang off it.

The three writes commit separately. The event row is the durable fact; the
aggregate upserts are best effort and a failure there is logged, not raised.
Both aggregates use native INSERT ... ON CONFLICT so concurrent first events for
the same session/day can never race into duplicate rows.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import case, text, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from pixeltrack.core.time import day_key_for, now_utc
from pixeltrack.models.models import AnalyticsSession, DailyStat, Event, TrackedApp

logger = logging.getLogger(__name__)

PAGEVIEW_EVENT_NAMES = {"pageview", "page_view"}
PURCHASE_EVENT_NAMES = {"purchase"}


class StoreUnavailableError(RuntimeError):
    """The database could not be reached."""


@dataclass(frozen=True)
class SessionSnapshot:
    """First-seen device/geo context for a new session row."""

    fingerprint: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    browser: str | None = None
    os: str | None = None
    device_type: str | None = None
    country: str | None = None


@dataclass(frozen=True)
class SessionUpsertResult:
    is_new: bool


@dataclass(frozen=True)
class DailyStatDelta:
    pageviews: int = 0
    unique_users: int = 0
    sessions: int = 0
    purchases: int = 0
    revenue: Decimal = Decimal("0")

    @classmethod
    def for_event(cls, event_name: str, *, new_session: bool, value: Any = None) -> "DailyStatDelta":
        name = str(event_name or "").strip().lower()
        purchase = name in PURCHASE_EVENT_NAMES
        return cls(
            pageviews=1 if name in PAGEVIEW_EVENT_NAMES else 0,
            unique_users=1 if new_session else 0,
            sessions=1 if new_session else 0,
            purchases=1 if purchase else 0,
            revenue=_to_decimal(value) if purchase else Decimal("0"),
        )


@dataclass(frozen=True)
class StoredEvent:
    event_id: int
    new_session: bool


def _to_decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        return Decimal("0")


def is_pageview(event_name: str | None) -> bool:
    return str(event_name or "").strip().lower() in PAGEVIEW_EVENT_NAMES


def _insert_for(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise RuntimeError(f"no ON CONFLICT insert construct for dialect {dialect!r}")


def check_database(db: Session) -> None:
    """Cheap connectivity probe run before the write path."""
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("Database connectivity probe failed: %s", exc)
        try:
            db.rollback()
        except SQLAlchemyError:
            pass
        raise StoreUnavailableError("Database temporarily unavailable") from exc


def find_app_by_public_id(db: Session, public_id: str) -> TrackedApp | None:
    return (
        db.query(TrackedApp)
        .options(joinedload(TrackedApp.settings))
        .filter(TrackedApp.public_id == public_id)
        .first()
    )


def find_app_by_owner(db: Session, owner_ref: str) -> TrackedApp | None:
    """Oldest app registered to a shop; order and checkout webhooks only carry the shop domain."""
    return (
        db.query(TrackedApp)
        .options(joinedload(TrackedApp.settings))
        .filter(TrackedApp.owner_ref == owner_ref)
        .order_by(TrackedApp.id.asc())
        .first()
    )


def insert_event(db: Session, *, app_id: int, record: dict[str, Any]) -> int:
    """Insert and commit one event row. Errors propagate: this write is the request."""
    event = Event(app_id=app_id, **record)
    db.add(event)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    return int(event.id)


def upsert_session(
    db: Session,
    *,
    app_id: int,
    session_id: str,
    snapshot: SessionSnapshot,
    is_pageview: bool,
    seen_at: datetime | None = None,
) -> SessionUpsertResult:
    """
    Create the session on first sight, otherwise bump `last_seen` and the pageview counter.

    The insert is `ON CONFLICT DO NOTHING`; whichever request wins it reports
    `is_new=True`, every other one falls through to the commutative update.
    """
    seen_at = seen_at or now_utc()
    insert = _insert_for(db)
    created = db.execute(
        insert(AnalyticsSession)
        .values(
            app_id=app_id,
            session_id=session_id,
            fingerprint=snapshot.fingerprint or "unknown",
            ip_address=snapshot.ip_address,
            user_agent=snapshot.user_agent,
            browser=snapshot.browser,
            os=snapshot.os,
            device_type=snapshot.device_type,
            country=snapshot.country,
            pageviews=1 if is_pageview else 0,
            started_at=seen_at,
            last_seen=seen_at,
        )
        .on_conflict_do_nothing(index_elements=["app_id", "session_id"])
    )
    if created.rowcount == 1:
        db.commit()
        return SessionUpsertResult(is_new=True)

    db.execute(
        update(AnalyticsSession)
        .where(
            AnalyticsSession.app_id == app_id,
            AnalyticsSession.session_id == session_id,
        )
        .values(
            last_seen=case(
                (AnalyticsSession.last_seen < seen_at, seen_at),
                else_=AnalyticsSession.last_seen,
            ),
            pageviews=AnalyticsSession.pageviews + (1 if is_pageview else 0),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return SessionUpsertResult(is_new=False)


def upsert_daily_stat(db: Session, *, app_id: int, day: date, delta: DailyStatDelta) -> None:
    now_ts = now_utc()
    insert_stmt = _insert_for(db)(DailyStat).values(
        app_id=app_id,
        date=day,
        pageviews=delta.pageviews,
        unique_users=delta.unique_users,
        sessions=delta.sessions,
        purchases=delta.purchases,
        revenue=delta.revenue,
        created_at=now_ts,
        updated_at=now_ts,
    )
    table = DailyStat.__table__
    db.execute(
        insert_stmt.on_conflict_do_update(
            index_elements=["app_id", "date"],
            set_={
                "pageviews": table.c.pageviews + insert_stmt.excluded.pageviews,
                "unique_users": table.c.unique_users + insert_stmt.excluded.unique_users,
                "sessions": table.c.sessions + insert_stmt.excluded.sessions,
                "purchases": table.c.purchases + insert_stmt.excluded.purchases,
                "revenue": table.c.revenue + insert_stmt.excluded.revenue,
                "updated_at": insert_stmt.excluded.updated_at,
            },
        )
    )
    db.commit()


def record_event(
    db: Session,
    *,
    app_id: int,
    record: dict[str, Any],
    track_session: bool,
    snapshot: SessionSnapshot | None = None,
    occurred_at: datetime | None = None,
) -> StoredEvent:
    """Primary insert, then best-effort session and daily-stat upserts."""
    occurred_at = occurred_at or now_utc()
    event_name = record["event_name"]
    session_id = record.get("session_id")

    event_id = insert_event(db, app_id=app_id, record=record)

    new_session = False
    if session_id and track_session:
        try:
            result = upsert_session(
                db,
                app_id=app_id,
                session_id=session_id,
                snapshot=snapshot or SessionSnapshot(),
                is_pageview=is_pageview(event_name),
                seen_at=occurred_at,
            )
            new_session = result.is_new
        except Exception:
            db.rollback()
            logger.exception("Session upsert failed for app=%s session=%s", app_id, session_id)

    try:
        upsert_daily_stat(
            db,
            app_id=app_id,
            day=day_key_for(occurred_at),
            delta=DailyStatDelta.for_event(event_name, new_session=new_session, value=record.get("value")),
        )
    except Exception:
        db.rollback()
        logger.exception("Daily stat upsert failed for app=%s event=%s", app_id, event_id)

    return StoredEvent(event_id=event_id, new_session=new_session)
