from __future__ import annotations

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from pixeltrack.core.database import Base
from pixeltrack.models.models import AppSettings, TrackedApp
from pixeltrack.services.geo import NULL_GEO

TEST_PUBLIC_ID = "a1b2c3d4e5f60718"


class FakeGeoResolver:
    def __init__(self, result=NULL_GEO):
        self.result = result
        self.calls: list[str | None] = []

    def lookup(self, ip):
        self.calls.append(ip)
        return self.result


@pytest.fixture
def db_session():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def make_app(db_session):
    def _make(public_id: str = TEST_PUBLIC_ID, *, with_settings: bool = True, **settings_overrides) -> TrackedApp:
        app = TrackedApp(public_id=public_id, owner_ref="demo-store.myshopify.com", name="Demo Store")
        if with_settings:
            app.settings = AppSettings(**settings_overrides)
        db_session.add(app)
        db_session.commit()
        db_session.refresh(app)
        return app

    return _make


@pytest.fixture
def fake_geo():
    return FakeGeoResolver()
