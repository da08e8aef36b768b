from __future__ import annotations

import base64
import importlib
import json
import logging

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from pixeltrack.core.database import get_db
from pixeltrack.models.models import AnalyticsSession, DailyStat, Event
from pixeltrack.services.event_store import StoreUnavailableError
from pixeltrack.services.geo import get_geo_resolver

from conftest import TEST_PUBLIC_ID

track_api = importlib.import_module("pixeltrack.api.track")
ingestion = importlib.import_module("pixeltrack.services.ingestion")

CHROME_DESKTOP = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
HEADERS = {"User-Agent": CHROME_DESKTOP, "X-Forwarded-For": "203.0.113.7, 10.0.0.1"}


@pytest.fixture
def forwarded(monkeypatch):
    jobs = []
    monkeypatch.setattr(track_api, "forward_to_meta", lambda job: jobs.append(job))
    return jobs


@pytest.fixture
def client(db_session, fake_geo):
    app = FastAPI()
    app.include_router(track_api.router)
    app.include_router(track_api.router, prefix="/api")
    app.dependency_overrides[get_db] = lambda: db_session
    app.dependency_overrides[get_geo_resolver] = lambda: fake_geo
    with TestClient(app) as test_client:
        yield test_client


def _pageview(**overrides):
    payload = {
        "appId": TEST_PUBLIC_ID,
        "eventName": "pageview",
        "url": "https://demo-store.myshopify.com/",
        "sessionId": "sess-1",
        "fingerprint": "fp-1",
    }
    payload.update(overrides)
    return payload


def test_pageview_is_stored(client, db_session, make_app, forwarded):
    make_app()

    response = client.post("/track", json=_pageview(), headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    event = db_session.query(Event).one()
    assert body["eventId"] == event.id
    assert event.event_name == "pageview"
    assert event.browser == "Chrome"
    # record_ip defaults to off
    assert event.ip_address is None
    assert response.headers["access-control-allow-origin"] == "*"
    assert db_session.query(AnalyticsSession).count() == 1
    assert db_session.query(DailyStat).one().pageviews == 1
    assert forwarded == []


def test_api_prefix_is_also_mounted(client, db_session, make_app, forwarded):
    make_app()
    assert client.post("/api/track", json=_pageview(), headers=HEADERS).status_code == 200
    assert db_session.query(Event).count() == 1


def test_ip_recorded_when_enabled(client, db_session, make_app, forwarded, fake_geo):
    make_app(record_ip=True)
    client.post("/track", json=_pageview(), headers=HEADERS)
    assert db_session.query(Event).one().ip_address == "203.0.113.7"
    assert db_session.query(AnalyticsSession).one().ip_address == "203.0.113.7"
    assert fake_geo.calls == ["203.0.113.7"]


def test_duplicate_payloads_are_not_deduplicated(client, db_session, make_app, forwarded):
    make_app()
    first = client.post("/track", json=_pageview(), headers=HEADERS)
    second = client.post("/track", json=_pageview(), headers=HEADERS)

    assert first.status_code == second.status_code == 200
    assert first.json()["eventId"] != second.json()["eventId"]
    assert db_session.query(Event).count() == 2
    assert db_session.query(AnalyticsSession).one().pageviews == 2


def test_unknown_app_is_404_and_writes_nothing(client, db_session, make_app, forwarded):
    make_app()
    response = client.post("/track", json=_pageview(appId="ffffffffffffffff"), headers=HEADERS)

    assert response.status_code == 404
    assert response.json() == {"success": False, "error": "App not found"}
    assert response.headers["access-control-allow-origin"] == "*"
    assert db_session.query(Event).count() == 0
    assert db_session.query(AnalyticsSession).count() == 0
    assert db_session.query(DailyStat).count() == 0


def test_out_of_range_numbers_are_stored_as_null(client, db_session, make_app, forwarded):
    make_app()
    response = client.post(
        "/track",
        json={"appId": TEST_PUBLIC_ID, "eventName": "add_to_cart", "quantity": 1e20, "value": 1e13},
        headers=HEADERS,
    )

    assert response.status_code == 200
    event = db_session.query(Event).one()
    assert event.quantity is None
    assert event.value is None


def test_missing_fields_are_400(client, db_session, make_app):
    make_app()
    response = client.post("/track", json={"appId": TEST_PUBLIC_ID}, headers=HEADERS)
    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "Missing required fields"}
    assert db_session.query(Event).count() == 0


def test_malformed_json_is_400(client, make_app):
    make_app()
    response = client.post(
        "/track", content=b"{not json", headers={**HEADERS, "Content-Type": "application/json"}
    )
    assert response.status_code == 400
    assert response.json()["success"] is False


def test_bots_get_success_without_writes(client, db_session, make_app, forwarded):
    make_app()
    response = client.post(
        "/track",
        json=_pageview(),
        headers={"User-Agent": "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)"},
    )
    assert response.status_code == 200
    assert response.json() == {"success": True}
    assert db_session.query(Event).count() == 0


def test_database_outage_is_503(client, db_session, make_app, monkeypatch):
    make_app()

    def _down(_db):
        raise StoreUnavailableError("Database temporarily unavailable")

    monkeypatch.setattr(ingestion, "check_database", _down)
    response = client.post("/track", json=_pageview(), headers=HEADERS)
    assert response.status_code == 503
    assert response.json() == {"success": False, "error": "Database temporarily unavailable"}


def test_send_beacon_text_plain_envelope(client, db_session, make_app, forwarded):
    make_app()
    data = _pageview()
    data.pop("eventName")
    response = client.post(
        "/track",
        content=json.dumps({"event": "add_to_cart", "data": data}),
        headers={**HEADERS, "Content-Type": "text/plain;charset=UTF-8"},
    )
    assert response.status_code == 200
    assert db_session.query(Event).one().event_name == "add_to_cart"


def test_graphql_envelope(client, db_session, make_app, forwarded):
    make_app()
    response = client.post(
        "/track",
        json={"query": "mutation Track($input: TrackInput!) { track(input: $input) }", "variables": {"input": _pageview()}},
        headers=HEADERS,
    )
    assert response.status_code == 200
    assert db_session.query(Event).count() == 1


def test_stored_event_logs_wire_shape_and_session_outcome(client, db_session, make_app, forwarded, caplog):
    caplog.set_level(logging.DEBUG, logger=ingestion.__name__)
    make_app()
    body = {"query": "mutation Track($input: TrackInput!) { track(input: $input) }", "variables": {"input": _pageview()}}

    client.post("/track", json=body, headers=HEADERS)
    client.post("/track", json=_pageview(), headers=HEADERS)

    messages = [record.getMessage() for record in caplog.records if record.name == ingestion.__name__]
    assert any("shape=graphql new_session=True" in message for message in messages)
    assert any("shape=flat new_session=False" in message for message in messages)


def test_preflight_returns_cors_headers(client):
    response = client.options("/track")
    assert response.status_code == 204
    assert response.headers["access-control-allow-origin"] == "*"
    assert "POST" in response.headers["access-control-allow-methods"]


def _beacon_data(payload) -> str:
    return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


def test_image_beacon_stores_event_and_returns_gif(client, db_session, make_app, forwarded):
    make_app()
    data = _pageview()
    data.pop("eventName")
    response = client.get("/track", params={"e": "pageview", "d": _beacon_data(data), "t": "1700000000"}, headers=HEADERS)

    assert response.status_code == 200
    assert response.headers["content-type"] == "image/gif"
    assert response.content == track_api.TRANSPARENT_GIF
    assert db_session.query(Event).one().event_name == "pageview"


@pytest.mark.parametrize(
    "params",
    [
        {"e": "pageview", "d": "%%%garbage%%%"},
        {"e": "pageview", "d": _beacon_data(_pageview(appId="ffffffffffffffff"))},
        {},
    ],
)
def test_image_beacon_always_returns_gif(client, db_session, make_app, params):
    make_app()
    response = client.get("/track", params=params, headers=HEADERS)
    assert response.status_code == 200
    assert response.content == track_api.TRANSPARENT_GIF
    assert db_session.query(Event).count() == 0


def _purchase():
    return _pageview(eventName="purchase", value=59.99, currency="USD", email="shopper@example.com")


def test_purchase_is_forwarded_when_meta_is_verified(client, db_session, make_app, forwarded):
    make_app(meta_pixel_enabled=True, meta_verified=True, meta_pixel_id="1234567890", meta_access_token="EAAB-token")

    response = client.post("/track", json=_purchase(), headers=HEADERS)

    assert response.status_code == 200
    event_id = response.json()["eventId"]
    assert len(forwarded) == 1
    job = forwarded[0]
    assert job.credentials.pixel_id == "1234567890"
    assert job.event_id == event_id
    meta_event = job.events[0]
    assert meta_event["event_name"] == "Purchase"
    assert meta_event["event_id"] == f"evt_{event_id}"
    assert meta_event["custom_data"]["value"] == 59.99
    assert meta_event["custom_data"]["currency"] == "USD"
    assert meta_event["user_data"]["client_ip_address"] == "203.0.113.7"
    assert "shopper@example.com" not in json.dumps(meta_event)

    stat = db_session.query(DailyStat).one()
    assert stat.purchases == 1


@pytest.mark.parametrize(
    "meta_settings",
    [
        {"meta_pixel_enabled": False, "meta_verified": True, "meta_pixel_id": "1", "meta_access_token": "t"},
        {"meta_pixel_enabled": True, "meta_verified": False, "meta_pixel_id": "1", "meta_access_token": "t"},
        {"meta_pixel_enabled": True, "meta_verified": True, "meta_pixel_id": "1", "meta_access_token": None},
    ],
)
def test_purchase_not_forwarded_unless_fully_enabled(client, db_session, make_app, forwarded, meta_settings):
    make_app(**meta_settings)

    response = client.post("/track", json=_purchase(), headers=HEADERS)

    assert response.status_code == 200
    assert forwarded == []
    event = db_session.query(Event).one()
    assert event.event_name == "purchase"
    assert float(event.value) == pytest.approx(59.99)
    assert event.currency == "USD"


def test_forwarding_failure_is_invisible_to_the_client(client, db_session, make_app, monkeypatch):
    make_app(meta_pixel_enabled=True, meta_verified=True, meta_pixel_id="1", meta_access_token="t")

    class _FailingClient:
        def send_events(self, *_args):
            raise RuntimeError("graph api down")

    meta_capi = importlib.import_module("pixeltrack.services.meta_capi")
    monkeypatch.setattr(meta_capi, "meta_capi_client", _FailingClient())

    response = client.post("/track", json=_purchase(), headers=HEADERS)
    assert response.status_code == 200
    assert db_session.query(Event).count() == 1


def test_app_without_settings_row_uses_defaults(client, db_session, make_app, forwarded, fake_geo):
    make_app(with_settings=False)
    response = client.post("/track", json=_pageview(), headers=HEADERS)
    assert response.status_code == 200
    event = db_session.query(Event).one()
    assert event.ip_address is None
    assert fake_geo.calls == []
    assert db_session.query(AnalyticsSession).count() == 1
