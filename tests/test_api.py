import dataclasses
import json

import pytest
from fastapi.testclient import TestClient

from errors import ProviderUnavailable
from main import create_app

from conftest import ADMIN_SECRET, WEBHOOK_SIGNATURE

REVIEW = {"reviewText": "The food was great but the wait was long.", "tone": "professional"}


def test_health(client, clock):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "timestamp": clock().isoformat()}


def test_register_and_verify(client, register):
    headers, user = register()

    assert user["subscriptionPlan"] == "free"
    assert user["monthlyLimit"] == 10
    assert "password_hash" not in user

    response = client.post("/api/auth/verify", headers=headers)
    assert response.status_code == 200
    body = response.json()
    assert body["valid"] is True
    assert body["usage"]["current"] == 0
    assert body["usage"]["limit"] == 10


def test_register_duplicate_email(client, register):
    register()
    response = client.post(
        "/api/auth/register",
        json={"email": "A@x.com", "password": "another-pass", "name": "Alice Again"},
    )
    assert response.status_code == 409
    assert response.json()["success"] is False


def test_register_validation_details(client):
    response = client.post("/api/auth/register", json={"email": "nope", "password": "short", "name": "Al"})
    assert response.status_code == 400
    fields = {detail["field"] for detail in response.json()["details"]}
    assert fields == {"email", "password"}


def test_login(client, register, store):
    register()

    bad = client.post("/api/auth/login", json={"email": "a@x.com", "password": "wrong-password"})
    assert bad.status_code == 401

    good = client.post("/api/auth/login", json={"email": "a@x.com", "password": "correct-horse"})
    assert good.status_code == 200
    assert good.json()["token"]
    user = store.get_user_by_email("a@x.com")
    assert user["last_login_at"] is not None


def test_login_deactivated_account(client, register, store):
    _, user = register()
    store.update_user(user["id"], is_active=False)

    response = client.post("/api/auth/login", json={"email": "a@x.com", "password": "correct-horse"})
    assert response.status_code == 403


def test_generate_requires_token(client, completion):
    response = client.post("/api/reviews/generate", json=REVIEW)
    assert response.status_code == 401
    assert completion.calls == []


def test_generate_validates_input(client, register, completion):
    headers, _ = register()

    response = client.post(
        "/api/reviews/generate",
        headers=headers,
        json={"reviewText": "   short   ", "tone": "sarcastic"},
    )

    assert response.status_code == 400
    fields = {detail["field"] for detail in response.json()["details"]}
    assert fields == {"reviewText", "tone"}
    assert completion.calls == []


def test_generate_success(client, register, store):
    headers, user = register()

    response = client.post("/api/reviews/generate", headers=headers, json=REVIEW)

    assert response.status_code == 200
    body = response.json()
    assert body["response"] == "Thank you for the lovely review!"
    assert body["metadata"]["tokensUsed"] == 150
    assert body["metadata"]["cost"] == "0.006000"
    assert body["metadata"]["language"] == "en"
    assert body["metadata"]["fallback"] is False
    assert body["usage"] == {"current": 1, "limit": 10, "remaining": 9, "percentage": 10}
    assert store.records[0]["user_id"] == user["id"]


def test_free_quota_blocks_eleventh_request(client, register, completion):
    headers, _ = register()

    for _ in range(10):
        assert client.post("/api/reviews/generate", headers=headers, json=REVIEW).status_code == 200

    response = client.post("/api/reviews/generate", headers=headers, json=REVIEW)

    assert response.status_code == 429
    body = response.json()
    assert body["code"] == "USAGE_LIMIT_REACHED"
    assert body["usage"]["limit"] == 10
    assert body["usage"]["current"] == 10
    assert len(completion.calls) == 10


def test_quota_resets_next_month(client, register, store, clock):
    headers, user = register()
    store.usage[(user["id"], 2, 2025)] = 10
    assert client.post("/api/reviews/generate", headers=headers, json=REVIEW).status_code == 429

    clock.advance(days=20)
    response = client.post("/api/reviews/generate", headers=headers, json=REVIEW)

    assert response.status_code == 200
    assert response.json()["usage"]["current"] == 1
    assert store.usage[(user["id"], 3, 2025)] == 1


def test_provider_failure_returns_fallback_and_counts(client, register, completion, store):
    headers, _ = register()
    completion.error = ProviderUnavailable(ProviderUnavailable.RATE_LIMITED, "slow down")

    response = client.post(
        "/api/reviews/generate",
        headers=headers,
        json={**REVIEW, "language": "fr"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["metadata"]["fallback"] is True
    assert body["response"].startswith("Merci")
    assert body["usage"]["current"] == 1
    assert store.records[0]["success"] is False


def test_expired_subscription_is_refused(client, register, clock):
    headers, user = register()
    response = client.post(
        "/api/admin/account/plan",
        headers={"x-admin-secret": ADMIN_SECRET},
        json={"user_id": user["id"], "plan": "premium", "days": 1},
    )
    assert response.status_code == 200
    assert response.json()["user"]["monthlyLimit"] == 500

    clock.advance(days=2)
    response = client.post("/api/reviews/generate", headers=headers, json=REVIEW)

    assert response.status_code == 403
    assert response.json()["code"] == "SUBSCRIPTION_EXPIRED"
    assert response.json()["renewal_required"] is True


def test_admin_requires_secret(client, register):
    _, user = register()
    response = client.post(
        "/api/admin/account/plan",
        headers={"x-admin-secret": "guess"},
        json={"user_id": user["id"], "plan": "enterprise"},
    )
    assert response.status_code == 403


def test_admin_rejects_unknown_plan(client, register, store):
    _, user = register()
    client.post(
        "/api/admin/account/plan",
        headers={"x-admin-secret": ADMIN_SECRET},
        json={"user_id": user["id"], "plan": "premium"},
    )

    response = client.post(
        "/api/admin/account/plan",
        headers={"x-admin-secret": ADMIN_SECRET},
        json={"user_id": user["id"], "plan": "premum"},
    )

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_FAILED"
    assert response.json()["details"][0]["field"] == "plan"
    stored = store.get_user_by_id(user["id"])
    assert stored["subscription_plan"] == "premium"
    assert stored["monthly_limit"] == 500


def test_auth_stats(client, register, clock):
    headers, user = register()
    client.post("/api/reviews/generate", headers=headers, json=REVIEW)

    response = client.get("/api/auth/stats", headers=headers)

    assert response.status_code == 200
    stats = response.json()["stats"]
    assert stats["plan"] == "free"
    assert stats["status"] == "active"
    assert stats["usage"] == {"current": 1, "limit": 10, "remaining": 9, "percentage": 10}
    assert stats["subscription"] == {"active": True, "expiresAt": None, "canUpgrade": True}


def test_auth_stats_requires_token(client):
    assert client.get("/api/auth/stats").status_code == 401


def _limited_client(settings, store, completion, stripe_fake, clock, alerter, **limits):
    app = create_app(
        dataclasses.replace(settings, **limits),
        store=store,
        completion=completion,
        payments=stripe_fake,
        clock=clock,
        alerter=alerter,
    )
    return TestClient(app)


def test_auth_attempts_are_rate_limited(settings, store, completion, stripe_fake, clock, alerter):
    credentials = {"email": "a@x.com", "password": "correct-horse"}
    with _limited_client(settings, store, completion, stripe_fake, clock, alerter, rate_limit_auth=3) as client:
        assert client.post("/api/auth/register", json={**credentials, "name": "Alice"}).status_code == 201
        assert client.post("/api/auth/login", json=credentials).status_code == 200
        assert client.post("/api/auth/login", json=credentials).status_code == 200

        blocked = client.post("/api/auth/login", json=credentials)
        assert blocked.status_code == 429
        assert blocked.json()["code"] == "RATE_LIMITED"

        clock.advance(minutes=15)
        assert client.post("/api/auth/login", json=credentials).status_code == 200


def test_requests_are_rate_limited_per_ip(settings, store, completion, stripe_fake, clock, alerter):
    first = {"x-forwarded-for": "203.0.113.7, 10.0.0.1"}
    second = {"x-forwarded-for": "198.51.100.2"}
    with _limited_client(settings, store, completion, stripe_fake, clock, alerter, rate_limit_ip=2) as client:
        assert client.get("/api/subscriptions/plans", headers=first).status_code == 200
        assert client.get("/api/subscriptions/plans", headers=first).status_code == 200

        blocked = client.get("/api/subscriptions/plans", headers=first)
        assert blocked.status_code == 429
        assert blocked.json()["code"] == "RATE_LIMITED"

        assert client.get("/api/subscriptions/plans", headers=second).status_code == 200
        assert client.get("/health", headers=first).status_code == 200
        assert store.rate_limits == {
            ("ip:203.0.113.7", clock()): 3,
            ("ip:198.51.100.2", clock()): 1,
        }


def test_history_and_stats(client, register, completion):
    headers, _ = register()
    for _ in range(3):
        client.post("/api/reviews/generate", headers=headers, json=REVIEW)
    completion.error = ProviderUnavailable(ProviderUnavailable.TRANSPORT_ERROR, "down")
    client.post("/api/reviews/generate", headers=headers, json=REVIEW)

    history = client.get("/api/reviews/history", headers=headers, params={"page": 1, "limit": 2}).json()
    assert len(history["data"]) == 2
    assert history["pagination"]["totalCount"] == 4
    assert history["pagination"]["totalPages"] == 2
    assert history["pagination"]["hasNext"] is True

    stats = client.get("/api/reviews/stats", headers=headers).json()
    assert stats["currentMonth"]["requests"] == 4
    assert stats["currentMonth"]["percentage"] == 40
    assert stats["allTime"]["totalRequests"] == 3
    assert stats["plan"]["canUpgrade"] is True


def test_history_limit_is_capped(client, register):
    headers, _ = register()
    response = client.get("/api/reviews/history", headers=headers, params={"limit": 500})
    assert response.json()["pagination"]["limit"] == 50


def test_plans_catalog(client):
    plans = {plan["id"]: plan for plan in client.get("/api/subscriptions/plans").json()["plans"]}
    assert plans["free"]["requests"] == 10
    assert plans["basic"]["price"] == 499
    assert plans["enterprise"]["requests"] == -1


def test_checkout_then_webhook_upgrades_account(client, register, stripe_fake, store):
    headers, user = register()

    checkout = client.post(
        "/api/subscriptions/create-checkout-session",
        headers=headers,
        json={"planId": "basic"},
    )
    assert checkout.status_code == 200
    assert checkout.json()["sessionId"] == "cs_1"

    stripe_fake.subscriptions["sub_1"] = {
        "id": "sub_1",
        "customer": "cus_1",
        "status": "active",
        "current_period_end": 1746057600,
    }
    event = {
        "id": "evt_1",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": "cs_1",
                "customer": "cus_1",
                "subscription": "sub_1",
                "metadata": {"userId": user["id"], "planId": "basic"},
            }
        },
    }
    response = client.post(
        "/api/subscriptions/webhook",
        content=json.dumps(event),
        headers={"stripe-signature": WEBHOOK_SIGNATURE},
    )
    assert response.json() == {"received": True}

    status = client.get("/api/subscriptions/status", headers=headers).json()
    assert status["plan"] == "basic"
    assert status["isActive"] is True
    assert status["usage"]["limit"] == 100
    assert status["billing"]["subscriptionId"] == "sub_1"


def test_webhook_bad_signature(client):
    response = client.post(
        "/api/subscriptions/webhook",
        content=b'{"id": "evt_1", "type": "checkout.session.completed"}',
        headers={"stripe-signature": "t=1,v1=forged"},
    )
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_SIGNATURE"


def test_webhook_when_payments_disabled(settings, store, completion, stripe_fake, clock, alerter):
    app = create_app(
        dataclasses.replace(settings, payments_enabled=False),
        store=store,
        completion=completion,
        payments=stripe_fake,
        clock=clock,
        alerter=alerter,
    )
    with TestClient(app) as client:
        response = client.post("/api/subscriptions/webhook", content=b"{}")
    assert response.json() == {"received": False}


def test_cancel_without_subscription(client, register):
    headers, _ = register()
    response = client.post("/api/subscriptions/cancel", headers=headers)
    assert response.status_code == 400


def test_business_profile(client, register):
    headers, _ = register()

    assert client.get("/api/business/profile", headers=headers).json()["profile"] is None

    response = client.post(
        "/api/business/profile",
        headers=headers,
        json={
            "businessType": "restaurant",
            "businessName": "Trattoria Roma",
            "brandVoice": "friendly",
            "customKeywords": ["pasta", " ", "wine"],
        },
    )
    assert response.status_code == 200
    profile = client.get("/api/business/profile", headers=headers).json()["profile"]
    assert profile["business_name"] == "Trattoria Roma"
    assert profile["custom_keywords"] == ["pasta", "wine"]
    assert profile["business_type_info"]["name"] == "Restaurant/Cafe"


def test_business_profile_rejects_unknown_type(client, register):
    headers, _ = register()
    response = client.post(
        "/api/business/profile",
        headers=headers,
        json={"businessType": "spaceport", "businessName": "Mars Base"},
    )
    assert response.status_code == 400


def test_business_types(client):
    types = {entry["id"] for entry in client.get("/api/business/types").json()["businessTypes"]}
    assert {"restaurant", "hotel", "automotive"} <= types


@pytest.fixture
def template_body():
    return {
        "name": "Warm thanks",
        "category": "positive",
        "template": "Thank you {name}, we loved hosting you at {businessName}!",
    }


def test_template_crud(client, register, template_body):
    headers, _ = register()

    created = client.post("/api/business/templates", headers=headers, json=template_body)
    assert created.status_code == 201
    template_id = created.json()["template"]["id"]

    listed = client.get("/api/business/templates", headers=headers, params={"category": "positive"}).json()
    assert [t["id"] for t in listed["templates"]["custom"]] == [template_id]
    assert all(t["category"] == "positive" for t in listed["templates"]["default"])

    updated = client.put(
        f"/api/business/templates/{template_id}",
        headers=headers,
        json={**template_body, "name": "Warmer thanks"},
    )
    assert updated.json()["template"]["name"] == "Warmer thanks"

    assert client.delete(f"/api/business/templates/{template_id}", headers=headers).status_code == 200
    assert client.delete(f"/api/business/templates/{template_id}", headers=headers).status_code == 404


def test_template_is_scoped_to_owner(client, register, template_body):
    owner_headers, _ = register()
    other_headers, _ = register(email="b@x.com", name="Bob")
    template_id = client.post("/api/business/templates", headers=owner_headers, json=template_body).json()[
        "template"
    ]["id"]

    response = client.put(f"/api/business/templates/{template_id}", headers=other_headers, json=template_body)
    assert response.status_code == 404
