"""
Pytest configuration for the ReviewReply backend tests.
Environment is set before any app module is imported.
"""

import os

os.environ.setdefault("AUTH_SECRET", "test-auth-secret")
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("PAYMENTS_ENABLED", "false")
os.environ.setdefault("ADMIN_SECRET", "test-admin-secret")

import json
import threading
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from config import Settings
from db import USER_UPDATABLE_FIELDS
from errors import InvalidSignature, NotFound, StorageError
from generation import Completion
from main import create_app

ADMIN_SECRET = "test-admin-secret"
WEBHOOK_SIGNATURE = "t=1,v1=valid"


class MemoryStore:
    """In-process stand-in for ``db.Database`` with the same method surface."""

    def __init__(self):
        self._lock = threading.Lock()
        self.users = {}
        self.usage = {}
        self.records = []
        self.webhook_events = {}
        self.unmatched = []
        self.profiles = {}
        self.templates = {}
        self.rate_limits = {}
        self.calls = []
        self.fail_generation_writes = False
        self.fail_usage_writes = False

    def _touch(self, name):
        self.calls.append(name)

    # users

    def create_user(self, *, user_id, email, password_hash, name, business_name, plan, status, monthly_limit, month, year):
        self._touch("create_user")
        with self._lock:
            if any(user["email"] == email for user in self.users.values()):
                raise StorageError("Email already registered.")
            user = {
                "id": user_id,
                "email": email,
                "password_hash": password_hash,
                "name": name,
                "business_name": business_name,
                "subscription_plan": plan,
                "subscription_status": status,
                "subscription_expires_at": None,
                "monthly_limit": monthly_limit,
                "stripe_customer_id": None,
                "stripe_subscription_id": None,
                "is_active": True,
                "last_login_at": None,
                "created_at": datetime.now(timezone.utc),
            }
            self.users[user_id] = user
            self.usage.setdefault((user_id, month, year), 0)
            return dict(user)

    def get_user_by_id(self, user_id):
        self._touch("get_user_by_id")
        user = self.users.get(user_id)
        return dict(user) if user else None

    def get_user_by_email(self, email):
        self._touch("get_user_by_email")
        for user in self.users.values():
            if user["email"] == email:
                return dict(user)
        return None

    def get_user_by_stripe_customer(self, customer_id):
        self._touch("get_user_by_stripe_customer")
        for user in self.users.values():
            if user["stripe_customer_id"] == customer_id:
                return dict(user)
        return None

    def update_user(self, user_id, **fields):
        self._touch("update_user")
        unknown = set(fields) - USER_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update user fields: {sorted(unknown)}")
        with self._lock:
            user = self.users.get(user_id)
            if user is None:
                return None
            user.update(fields)
            return dict(user)

    # usage

    def _increment(self, user_id, month, year, amount):
        key = (user_id, month, year)
        self.usage[key] = self.usage.get(key, 0) + amount
        return {"user_id": user_id, "month": month, "year": year, "request_count": self.usage[key]}

    def increment_usage(self, user_id, month, year, amount):
        self._touch("increment_usage")
        if self.fail_usage_writes and amount:
            raise StorageError("usage write failed")
        with self._lock:
            return self._increment(user_id, month, year, amount)

    def get_usage_count(self, user_id, month, year):
        self._touch("get_usage_count")
        return self.usage.get((user_id, month, year), 0)

    def record_generation(self, *, month, year, record):
        self._touch("record_generation")
        if self.fail_generation_writes:
            raise StorageError("audit write failed")
        with self._lock:
            usage = self._increment(record["user_id"], month, year, 1)
            self.records.append({**record, "created_at": datetime.now(timezone.utc)})
            return usage

    def fetch_generation_records(self, user_id, limit, offset):
        self._touch("fetch_generation_records")
        mine = [dict(record) for record in reversed(self.records) if record["user_id"] == user_id]
        return mine[offset : offset + limit]

    def count_generation_records(self, user_id, success_only=False):
        self._touch("count_generation_records")
        return sum(
            1
            for record in self.records
            if record["user_id"] == user_id and (record["success"] or not success_only)
        )

    def increment_rate_limit(self, key, window_start):
        with self._lock:
            self.rate_limits[(key, window_start)] = self.rate_limits.get((key, window_start), 0) + 1
            return self.rate_limits[(key, window_start)]

    # webhooks

    def record_webhook_event(self, *, event_id, provider, event_type, raw):
        self._touch("record_webhook_event")
        with self._lock:
            existing = self.webhook_events.get(event_id)
            if existing is not None:
                return existing["processed_at"] is not None
            self.webhook_events[event_id] = {
                "id": event_id,
                "provider": provider,
                "event_type": event_type,
                "status": "received",
                "raw": raw,
                "error": None,
                "processed_at": None,
            }
            return False

    def mark_webhook_event(self, event_id, *, status, processed_at=None, error=None):
        self._touch("mark_webhook_event")
        with self._lock:
            self.webhook_events[event_id].update(status=status, processed_at=processed_at, error=error)

    def insert_unmatched_webhook(self, *, entry_id, event_id, event_type, customer_id, reason, raw):
        self._touch("insert_unmatched_webhook")
        self.unmatched.append(
            {
                "id": entry_id,
                "event_id": event_id,
                "event_type": event_type,
                "customer_id": customer_id,
                "reason": reason,
                "raw": raw,
            }
        )

    # business profiles and templates

    def get_business_profile(self, user_id):
        profile = self.profiles.get(user_id)
        return dict(profile) if profile else None

    def upsert_business_profile(self, user_id, profile):
        now = datetime.now(timezone.utc)
        existing = self.profiles.get(user_id)
        row = {
            "user_id": user_id,
            **profile,
            "created_at": existing["created_at"] if existing else now,
            "updated_at": now,
        }
        self.profiles[user_id] = row
        return dict(row)

    def list_templates(self, user_id):
        return [dict(t) for t in reversed(list(self.templates.values())) if t["user_id"] == user_id]

    def _owned(self, user_id, template_id):
        template = self.templates.get(template_id)
        if template and template["user_id"] == user_id:
            return dict(template)
        return None

    def insert_template(self, *, template_id, user_id, template):
        now = datetime.now(timezone.utc)
        row = {"id": template_id, "user_id": user_id, **template, "created_at": now, "updated_at": now}
        self.templates[template_id] = row
        return dict(row)

    def update_template(self, user_id, template_id, template):
        existing = self._owned(user_id, template_id)
        if existing is None:
            return None
        self.templates[template_id].update(template, updated_at=datetime.now(timezone.utc))
        return dict(self.templates[template_id])

    def delete_template(self, user_id, template_id):
        if self._owned(user_id, template_id) is None:
            return False
        del self.templates[template_id]
        return True


class FakeCompletion:
    model = "gpt-4"

    def __init__(self, text="Thank you for the lovely review!"):
        self.text = text
        self.error = None
        self.calls = []

    def complete(self, messages):
        self.calls.append(messages)
        if self.error is not None:
            raise self.error
        return Completion(text=self.text, input_tokens=100, output_tokens=50)


class FakeStripe:
    """Payment gateway double; any signature other than ``WEBHOOK_SIGNATURE`` is rejected."""

    def __init__(self):
        self.subscriptions = {}
        self.sessions = {}
        self.customers = []
        self.modified = []
        self.retrieved = []
        self.fail_retrieve = None

    def construct_event(self, payload, signature):
        if signature != WEBHOOK_SIGNATURE:
            raise InvalidSignature("No signatures found matching the expected signature.")
        return json.loads(payload)

    def create_customer(self, *, email, name, user_id):
        customer_id = f"cus_{len(self.customers) + 1}"
        self.customers.append({"id": customer_id, "email": email, "name": name, "user_id": user_id})
        return customer_id

    def create_checkout_session(self, *, customer_id, price_id, user_id, plan_id, success_url, cancel_url):
        session_id = f"cs_{len(self.sessions) + 1}"
        session = {
            "id": session_id,
            "url": f"https://checkout.stripe.test/{session_id}",
            "customer": customer_id,
            "price_id": price_id,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": {"userId": user_id, "planId": plan_id},
            "payment_status": "unpaid",
            "amount_total": 1499,
            "customer_details": {"email": "a@x.com"},
        }
        self.sessions[session_id] = session
        return session

    def retrieve_checkout_session(self, session_id):
        if session_id not in self.sessions:
            raise NotFound("Checkout session not found")
        return self.sessions[session_id]

    def retrieve_subscription(self, subscription_id):
        self.retrieved.append(subscription_id)
        if self.fail_retrieve is not None:
            raise self.fail_retrieve
        return self.subscriptions[subscription_id]

    def set_cancel_at_period_end(self, subscription_id, cancel):
        self.modified.append((subscription_id, cancel))
        return {"id": subscription_id, "cancel_at_period_end": cancel}


class FrozenClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class RecordingAlerter:
    def __init__(self):
        self.alerts = []

    def alert(self, subject, body):
        self.alerts.append((subject, body))


@pytest.fixture
def settings():
    return Settings(
        auth_secret="test-auth-secret",
        environment="development",
        admin_secret=ADMIN_SECRET,
        payments_enabled=True,
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret="whsec_test",
        stripe_price_ids={"basic": "price_b", "premium": "price_p", "enterprise": "price_e"},
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def completion():
    return FakeCompletion()


@pytest.fixture
def stripe_fake():
    return FakeStripe()


@pytest.fixture
def clock():
    return FrozenClock(datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def alerter():
    return RecordingAlerter()


@pytest.fixture
def app(settings, store, completion, stripe_fake, clock, alerter):
    return create_app(
        settings,
        store=store,
        completion=completion,
        payments=stripe_fake,
        clock=clock,
        alerter=alerter,
    )


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def register(client):
    """Register an account and return its bearer headers."""

    def _register(email="a@x.com", password="correct-horse", name="Alice"):
        response = client.post(
            "/api/auth/register",
            json={"email": email, "password": password, "name": name},
        )
        assert response.status_code == 201, response.text
        body = response.json()
        return {"Authorization": f"Bearer {body['token']}"}, body["user"]

    return _register


@pytest.fixture
def make_user(store, clock):
    """Insert a user directly into the store."""

    def _make_user(user_id="user-1", email="owner@x.com", plan="free", limit=10, **fields):
        month, year = clock().month - 1, clock().year
        store.create_user(
            user_id=user_id,
            email=email,
            password_hash="x",
            name="Owner",
            business_name=None,
            plan=plan,
            status="active",
            monthly_limit=limit,
            month=month,
            year=year,
        )
        if fields:
            store.update_user(user_id, **fields)
        return store.get_user_by_id(user_id)

    return _make_user
