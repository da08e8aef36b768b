from __future__ import annotations

import hashlib
import importlib
import json

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from pixeltrack.core.database import get_db
from pixeltrack.models.models import AnalyticsSession, DailyStat, Event
from pixeltrack.services.geo import get_geo_resolver
from pixeltrack.services.normalizer import WireShape
from pixeltrack.services.order_webhooks import checkout_to_event, order_to_event, purchase_custom_data

webhooks_api = importlib.import_module("pixeltrack.api.webhooks")

SHOP = "demo-store.myshopify.com"
BUYER_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)


def _order(**overrides):
    order = {
        "id": 820982911946154508,
        "name": "#1001",
        "email": "Buyer@Example.com",
        "total_price": "59.98",
        "currency": "EUR",
        "browser_ip": "198.51.100.23",
        "order_status_url": "https://demo-store.myshopify.com/orders/abc/authenticate",
        "client_details": {"browser_ip": "198.51.100.99", "user_agent": BUYER_UA},
        "customer": {"first_name": "Ada", "last_name": "Lovelace", "phone": "+1 (555) 010-2000"},
        "line_items": [
            {"product_id": 632910392, "title": "Mug", "price": "19.99", "quantity": 2, "sku": "MUG-1"},
            {"product_id": 921728736, "title": "Tee", "price": "20.00", "quantity": 1, "sku": "TEE-1"},
        ],
        "shipping_lines": [{"title": "Standard", "price": "0.00"}],
        "discount_codes": [],
    }
    order.update(overrides)
    return order


def _checkout():
    return {
        "token": "chk-token-1",
        "total_price": "19.99",
        "currency": "USD",
        "email": "buyer@example.com",
        "abandoned_checkout_url": "https://demo-store.myshopify.com/checkouts/chk-token-1/recover",
        "line_items": [{"product_id": 632910392, "title": "Mug", "price": "19.99", "quantity": 1}],
    }


@pytest.fixture
def forwarded(monkeypatch):
    jobs = []
    monkeypatch.setattr(webhooks_api, "forward_to_meta", lambda job: jobs.append(job))
    return jobs


@pytest.fixture
def client(db_session, fake_geo):
    app = FastAPI()
    app.include_router(webhooks_api.router)
    app.dependency_overrides[get_db] = lambda: db_session
    app.dependency_overrides[get_geo_resolver] = lambda: fake_geo
    with TestClient(app) as test_client:
        yield test_client


def _post(client, path, body, shop=SHOP):
    return client.post(path, content=json.dumps(body), headers={"X-Shopify-Shop-Domain": shop})


def test_order_to_event_carries_products_and_buyer():
    event = order_to_event(_order(), app_public_id="a1b2c3d4e5f60718")

    assert event.event_name == "purchase"
    assert event.shape is WireShape.WEBHOOK
    assert event.value == pytest.approx(59.98)
    assert event.currency == "EUR"
    assert event.product_id == "820982911946154508"
    assert event.product_name == "Order #1001"
    assert event.quantity == 2
    assert event.first_name == "Ada"
    assert event.custom_data["source"] == "webhook"
    assert event.custom_data["products"][0] == {
        "id": "632910392", "name": "Mug", "price": 19.99, "quantity": 2, "sku": "MUG-1",
    }
    # Buyer contact details are matching keys only.
    assert "customer_email" not in event.custom_data


def test_checkout_defaults_currency_and_tolerates_bad_prices():
    checkout = _checkout()
    checkout.pop("currency")
    checkout["total_price"] = "free"
    event = checkout_to_event(checkout, app_public_id="a1b2c3d4e5f60718")

    assert event.event_name == "initiate_checkout"
    assert event.currency == "USD"
    assert event.value == 0.0
    assert event.custom_data["checkout_token"] == "chk-token-1"


def test_purchase_custom_data_lists_contents():
    custom_data = purchase_custom_data(order_to_event(_order(), app_public_id="a1b2c3d4e5f60718"))

    assert custom_data["content_ids"] == ["632910392", "921728736"]
    assert custom_data["contents"] == [
        {"id": "632910392", "quantity": 2},
        {"id": "921728736", "quantity": 1},
    ]
    assert custom_data["num_items"] == 2
    assert custom_data["order_id"] == "820982911946154508"


def test_orders_roll_up_into_purchases_and_revenue(client, db_session, make_app, forwarded):
    make_app()

    first = _post(client, "/webhooks/orders/create", _order())
    second = _post(client, "/webhooks/orders/create", _order(id=820982911946154509, total_price="40.02"))

    assert first.status_code == second.status_code == 200
    assert first.text == "OK"
    assert db_session.query(Event).count() == 2
    stat = db_session.query(DailyStat).one()
    assert stat.purchases == 2
    assert float(stat.revenue) == pytest.approx(100.0)
    assert stat.pageviews == 0
    assert stat.sessions == 0
    assert db_session.query(AnalyticsSession).count() == 0

    event = db_session.query(Event).first()
    assert event.event_name == "purchase"
    assert event.device_type == "mobile"
    assert event.custom_data["products"][1]["name"] == "Tee"
    # record_ip defaults to off
    assert event.ip_address is None
    assert forwarded == []


def test_order_ip_is_stored_only_when_recording_ips(client, db_session, make_app, forwarded):
    make_app(record_ip=True)
    _post(client, "/webhooks/orders/create", _order())
    assert db_session.query(Event).one().ip_address == "198.51.100.23"


def test_order_is_forwarded_to_meta_as_purchase(client, db_session, make_app, forwarded):
    make_app(meta_pixel_enabled=True, meta_verified=True, meta_pixel_id="1234567890", meta_access_token="EAAB-token")

    response = _post(client, "/webhooks/orders/create", _order())

    assert response.status_code == 200
    event = db_session.query(Event).one()
    assert len(forwarded) == 1
    job = forwarded[0]
    assert job.credentials.pixel_id == "1234567890"
    assert job.event_id == event.id
    meta_event = job.events[0]
    assert meta_event["event_name"] == "Purchase"
    assert meta_event["event_id"] == f"evt_{event.id}"
    assert meta_event["action_source"] == "website"
    assert meta_event["custom_data"]["value"] == pytest.approx(59.98)
    assert meta_event["custom_data"]["currency"] == "EUR"
    assert meta_event["custom_data"]["content_ids"] == ["632910392", "921728736"]
    assert "products" not in meta_event["custom_data"]
    user_data = meta_event["user_data"]
    assert user_data["em"] == hashlib.sha256(b"buyer@example.com").hexdigest()
    assert user_data["ph"] == hashlib.sha256(b"15550102000").hexdigest()
    assert user_data["client_ip_address"] == "198.51.100.23"
    assert user_data["client_user_agent"] == BUYER_UA
    assert "Buyer@Example.com" not in json.dumps(meta_event)


def test_checkout_is_recorded_but_not_forwarded(client, db_session, make_app, forwarded):
    make_app(meta_pixel_enabled=True, meta_verified=True, meta_pixel_id="1", meta_access_token="t")

    response = _post(client, "/webhooks/checkouts/create", _checkout())

    assert response.status_code == 200
    event = db_session.query(Event).one()
    assert event.event_name == "initiate_checkout"
    assert float(event.value) == pytest.approx(19.99)
    assert event.url.endswith("/recover")
    stat = db_session.query(DailyStat).one()
    assert stat.purchases == 0
    assert float(stat.revenue) == 0
    assert forwarded == []


def test_unregistered_shop_is_acknowledged_without_writes(client, db_session, make_app, forwarded):
    make_app()
    response = _post(client, "/webhooks/orders/create", _order(), shop="other-store.myshopify.com")

    assert response.status_code == 200
    assert db_session.query(Event).count() == 0
    assert db_session.query(DailyStat).count() == 0


def test_malformed_body_is_400(client, db_session, make_app):
    make_app()
    response = client.post(
        "/webhooks/orders/create", content=b"{not json", headers={"X-Shopify-Shop-Domain": SHOP}
    )
    assert response.status_code == 400
    assert _post(client, "/webhooks/orders/create", ["not", "an", "object"]).status_code == 400
    assert db_session.query(Event).count() == 0


def test_signature_hook_can_reject_deliveries(client, db_session, make_app, forwarded):
    make_app()

    def _reject():
        raise HTTPException(status_code=401, detail="Unauthorized")

    client.app.dependency_overrides[webhooks_api.verify_webhook_signature] = _reject

    response = _post(client, "/webhooks/orders/create", _order())

    assert response.status_code == 401
    assert db_session.query(Event).count() == 0
