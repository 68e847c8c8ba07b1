from datetime import datetime, timezone

import pytest
import stripe

from app.services.billing import (
    BillingNotConfiguredError,
    InvalidWebhookError,
    StripeBilling,
    first_of_next_month_utc,
    subscription_details,
)
from tests.fakes import USER1


def _ts(*args) -> int:
    return int(datetime(*args, tzinfo=timezone.utc).timestamp())


def test_billing_anchor_is_next_first_of_month():
    assert first_of_next_month_utc(datetime(2026, 10, 18, 12, tzinfo=timezone.utc)) == _ts(2026, 11, 1)
    assert first_of_next_month_utc(datetime(2026, 12, 31, tzinfo=timezone.utc)) == _ts(2027, 1, 1)
    assert first_of_next_month_utc(datetime(2026, 10, 1, 9, tzinfo=timezone.utc)) == _ts(2026, 10, 1)


def test_subscription_details_reads_item_period():
    sub = {
        "id": "sub_1",
        "status": "active",
        "customer": {"id": "cus_1"},
        "metadata": {"user_id": "2"},
        "items": {
            "data": [
                {
                    "price": {"id": "price_plus"},
                    "current_period_start": _ts(2026, 10, 1),
                    "current_period_end": _ts(2026, 11, 1),
                }
            ]
        },
    }
    details = subscription_details(sub)
    assert details["stripe_customer_id"] == "cus_1"
    assert details["stripe_price_id"] == "price_plus"
    assert details["current_period_end"] == datetime(2026, 11, 1, tzinfo=timezone.utc)
    assert details["metadata_user_id"] == 2


def test_subscription_details_tolerates_missing_fields():
    details = subscription_details({"id": "sub_1", "status": "canceled"})
    assert details["stripe_price_id"] is None
    assert details["current_period_start"] is None
    assert details["metadata_user_id"] is None


def test_verify_event_rejects_bad_signature(settings):
    billing = StripeBilling(settings)
    with pytest.raises(InvalidWebhookError):
        billing.verify_event(b'{"id": "evt_1"}', "t=1,v1=deadbeef")


def test_verify_event_requires_secret(settings):
    billing = StripeBilling(settings.model_copy(update={"stripe_webhook_secret": None}))
    with pytest.raises(BillingNotConfiguredError):
        billing.verify_event(b"{}", "t=1,v1=x")


def test_price_for_unknown_plan(settings):
    billing = StripeBilling(settings.model_copy(update={"price_id_pro_1000": None}))
    assert billing.price_for_plan("basic") == "price_basic"
    with pytest.raises(BillingNotConfiguredError):
        billing.price_for_plan("pro")


def test_checkout_session_params(client, services, monkeypatch):
    captured = {}

    def fake_create(**kwargs):
        captured.update(kwargs)
        return {"url": "https://checkout.stripe.test/c/1"}

    monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)
    resp = client.post("/billing/checkout", headers=USER1, json={"plan": "plus"})
    assert resp.status_code == 200
    assert resp.json() == {"url": "https://checkout.stripe.test/c/1"}
    assert captured["mode"] == "subscription"
    assert captured["line_items"] == [{"price": "price_plus", "quantity": 1}]
    assert captured["client_reference_id"] == "1"
    assert captured["customer_email"] == "one@example.com"
    assert captured["subscription_data"]["metadata"] == {"user_id": "1"}
    assert captured["subscription_data"]["billing_cycle_anchor"] == first_of_next_month_utc()
    assert captured["success_url"].startswith(services.settings.public_base_url)


def test_checkout_reuses_known_customer(client, services, monkeypatch):
    services.ledger.apply_subscription(
        user_id=1, status="canceled", stripe_customer_id="cus_9", stripe_subscription_id="sub_9"
    )
    captured = {}

    def fake_create(**kwargs):
        captured.update(kwargs)
        return {"url": "https://checkout.stripe.test/c/2"}

    monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)
    assert client.post("/billing/checkout", headers=USER1, json={"plan": "basic"}).status_code == 200
    assert captured["customer"] == "cus_9"
    assert "customer_email" not in captured


def test_checkout_rejects_unknown_plan(client):
    resp = client.post("/billing/checkout", headers=USER1, json={"plan": "gold"})
    assert resp.status_code == 400
    assert resp.json()["detail"]["code"] == "BAD_REQUEST"


def test_checkout_stripe_error(client, monkeypatch):
    def fake_create(**kwargs):
        raise stripe.APIConnectionError("network down")

    monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)
    resp = client.post("/billing/checkout", headers=USER1, json={"plan": "basic"})
    assert resp.status_code == 502
    assert resp.json()["detail"]["code"] == "BILLING_ERROR"


def test_checkout_not_configured(client, services):
    services.settings = services.settings.model_copy(update={"stripe_secret_key": None})
    services.billing = StripeBilling(services.settings)
    resp = client.post("/billing/checkout", headers=USER1, json={"plan": "basic"})
    assert resp.status_code == 500
    assert resp.json()["detail"]["code"] == "BILLING_NOT_CONFIGURED"


def test_portal_requires_customer(client):
    resp = client.post("/billing/portal", headers=USER1)
    assert resp.status_code == 404


def test_portal_returns_url(client, services, monkeypatch):
    services.ledger.apply_subscription(
        user_id=1, status="active", stripe_customer_id="cus_1",
        stripe_subscription_id="sub_1", stripe_price_id="price_basic",
    )
    captured = {}

    def fake_create(**kwargs):
        captured.update(kwargs)
        return {"url": "https://billing.stripe.test/p/1"}

    monkeypatch.setattr(stripe.billing_portal.Session, "create", fake_create)
    resp = client.post("/billing/portal", headers=USER1)
    assert resp.status_code == 200
    assert resp.json()["url"] == "https://billing.stripe.test/p/1"
    assert captured["customer"] == "cus_1"


def test_usage_endpoint(client, services):
    services.ledger.decrement(1)
    resp = client.get("/usage", headers=USER1)
    assert resp.status_code == 200
    body = resp.json()
    assert body["tier"] == "FREE"
    assert body["freeRemaining"] == 4
    assert body["paidRemaining"] == 0
    assert body["watermarkExempt"] is False
    assert len(body["month"]) == 7


def test_usage_requires_session(client):
    assert client.get("/usage").status_code == 401
