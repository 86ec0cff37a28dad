import os

# Settings are read at import time; point them at an in-memory database first.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENVIRONMENT"] = "development"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["JWT_SECRET"] = "test-jwt-secret-with-at-least-32-bytes"

import hashlib
import hmac
import json
import time
import uuid

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from app.auth import create_access_token
from app.config import settings
from app.db import Base, SessionLocal, engine, get_db
from app.main import app
from app.models import AppUser, SubscriptionStatus

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture(autouse=True)
def _configure_settings_for_tests(monkeypatch):
    # Ensure predictable secrets for signing during tests
    monkeypatch.setattr(settings, "stripe_webhook_secret", WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "stripe_webhook_tolerance", 300)
    yield


@pytest.fixture(autouse=True)
def create_test_schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session() -> Session:
    session: Session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def test_client(db_session: Session) -> TestClient:
    app.dependency_overrides[get_db] = lambda: db_session
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def make_user(db_session: Session):
    def _make_user(**fields) -> AppUser:
        values = {
            "auth_uid": str(uuid.uuid4()),
            "subscription_status": SubscriptionStatus.TRIAL,
        }
        values.update(fields)
        user = AppUser(**values)
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user
    return _make_user


@pytest.fixture
def test_user(make_user) -> AppUser:
    return make_user(stripe_customer_id=f"cus_{uuid.uuid4().hex[:14]}")


@pytest.fixture
def auth_headers():
    def _auth_headers(user: AppUser, email: str = "user@example.com") -> dict:
        token = create_access_token(user.auth_uid, email=email)
        return {"Authorization": f"Bearer {token}"}
    return _auth_headers


def create_webhook_signature(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Create a Stripe-style signature header for ``payload``."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed_payload = f"{timestamp}.{payload}"
    signature = hmac.new(
        secret.encode("utf-8"),
        signed_payload.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def sign_payload():
    return create_webhook_signature


@pytest.fixture
def make_event():
    def _make_event(event_type: str, obj: dict, event_id: str = None) -> dict:
        return {
            "id": event_id or f"evt_{uuid.uuid4().hex[:24]}",
            "object": "event",
            "type": event_type,
            "created": int(time.time()),
            "livemode": False,
            "data": {"object": obj},
        }
    return _make_event


@pytest.fixture
def post_webhook(test_client: TestClient):
    """Deliver an event dict to the webhook endpoint with a valid signature."""
    def _post_webhook(event: dict):
        payload = json.dumps(event)
        return test_client.post(
            "/webhooks/payments",
            content=payload,
            headers={
                "stripe-signature": create_webhook_signature(payload),
                "content-type": "application/json",
            },
        )
    return _post_webhook
