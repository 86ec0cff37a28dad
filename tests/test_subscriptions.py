from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import patch

import stripe
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from app.auth import create_access_token
from app.config import settings
from app.models import AppUser, SubscriptionAudit, SubscriptionStatus
from app.services.subscriptions import has_access

CHECKOUT_BODY = {
    "price_id": "price_pro_monthly",
    "success_url": "https://app.example.com/billing/success",
    "cancel_url": "https://app.example.com/billing/cancel",
}


class TestHasAccess:

    def test_active_and_trial_have_access(self):
        assert has_access(AppUser(subscription_status=SubscriptionStatus.ACTIVE))
        assert has_access(AppUser(subscription_status=SubscriptionStatus.TRIAL))

    def test_past_due_and_canceled_do_not(self):
        assert not has_access(AppUser(subscription_status=SubscriptionStatus.PAST_DUE))
        assert not has_access(AppUser(subscription_status=SubscriptionStatus.CANCELED))

    def test_unexpired_trial_grants_access(self):
        now = datetime(2025, 6, 1, tzinfo=timezone.utc)
        user = AppUser(
            subscription_status=SubscriptionStatus.CANCELED,
            trial_expires_at=(now + timedelta(days=3)).replace(tzinfo=None),
        )
        assert has_access(user, now=now)
        assert not has_access(user, now=now + timedelta(days=4))


class TestSubscriptionEndpoints:

    def test_status(self, test_client: TestClient, make_user, auth_headers):
        user = make_user(
            stripe_customer_id="cus_status",
            subscription_status=SubscriptionStatus.PAST_DUE,
            plan_id="price_pro_monthly",
        )

        response = test_client.get("/subscriptions/status", headers=auth_headers(user))

        assert response.status_code == 200
        body = response.json()
        assert body["subscription_status"] == "past_due"
        assert body["plan_id"] == "price_pro_monthly"
        assert body["has_access"] is False

    def test_requires_bearer_token(self, test_client: TestClient):
        response = test_client.get("/subscriptions/status")

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_rejects_token_signed_with_other_secret(self, test_client: TestClient, make_user):
        user = make_user()
        with patch.object(settings, "jwt_secret", "another-secret-that-is-also-32-bytes-long"):
            token = create_access_token(user.auth_uid)

        response = test_client.get("/subscriptions/status", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 401
        assert response.json()["detail"]["error"] == "InvalidTokenError"

    def test_rejects_expired_token(self, test_client: TestClient, make_user):
        user = make_user()
        token = create_access_token(user.auth_uid, expires_minutes=-5)

        response = test_client.get("/subscriptions/status", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 401
        assert response.json()["detail"]["error"] == "TokenExpiredError"

    def test_soft_deleted_user_not_found(self, test_client: TestClient, make_user, auth_headers):
        user = make_user(deleted_at=datetime.now(timezone.utc))

        response = test_client.get("/subscriptions/status", headers=auth_headers(user))

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "UserNotFoundError"

    def test_checkout_creates_customer_once(self, test_client: TestClient, db_session: Session, make_user, auth_headers):
        user = make_user()
        session = SimpleNamespace(id="cs_test_1", url="https://checkout.stripe.com/c/pay/cs_test_1")

        with patch("stripe.Customer.create", return_value=SimpleNamespace(id="cus_new")) as create_customer, \
                patch("stripe.checkout.Session.create", return_value=session) as create_session:
            first = test_client.post("/subscriptions/checkout", json=CHECKOUT_BODY, headers=auth_headers(user))
            second = test_client.post("/subscriptions/checkout", json=CHECKOUT_BODY, headers=auth_headers(user))

        assert first.status_code == 200
        assert first.json() == {"checkout_url": session.url, "session_id": "cs_test_1"}
        assert second.status_code == 200

        create_customer.assert_called_once_with(email="user@example.com", metadata={"auth_uid": user.auth_uid})
        assert create_session.call_count == 2
        kwargs = create_session.call_args.kwargs
        assert kwargs["customer"] == "cus_new"
        assert kwargs["mode"] == "subscription"
        assert kwargs["line_items"] == [{"price": "price_pro_monthly", "quantity": 1}]

        db_session.refresh(user)
        assert user.stripe_customer_id == "cus_new"
        audit = db_session.query(SubscriptionAudit).filter(SubscriptionAudit.user_id == user.auth_uid).all()
        assert len(audit) == 1
        assert audit[0].change_type == "stripe_customer_created"
        assert audit[0].previous is None
        assert audit[0].current == {"stripe_customer_id": "cus_new"}

    def test_checkout_stripe_failure(self, test_client: TestClient, make_user, auth_headers):
        user = make_user(stripe_customer_id="cus_existing")

        with patch("stripe.checkout.Session.create", side_effect=stripe.APIConnectionError("Network error")):
            response = test_client.post("/subscriptions/checkout", json=CHECKOUT_BODY, headers=auth_headers(user))

        assert response.status_code == 502
        assert response.json()["detail"]["error"] == "ExternalServiceError"

    def test_checkout_validates_body(self, test_client: TestClient, make_user, auth_headers):
        user = make_user()

        response = test_client.post(
            "/subscriptions/checkout",
            json={**CHECKOUT_BODY, "price_id": ""},
            headers=auth_headers(user),
        )

        assert response.status_code == 422

    def test_portal_without_customer(self, test_client: TestClient, make_user, auth_headers):
        user = make_user()

        response = test_client.post(
            "/subscriptions/portal",
            json={"return_url": "https://app.example.com/account"},
            headers=auth_headers(user),
        )

        assert response.status_code == 404
        assert response.json()["detail"] == {"error": "NoCustomerError", "message": "No subscription found"}

    def test_portal(self, test_client: TestClient, make_user, auth_headers):
        user = make_user(stripe_customer_id="cus_portal")
        portal = SimpleNamespace(url="https://billing.stripe.com/p/session/test_1")

        with patch("stripe.billing_portal.Session.create", return_value=portal) as create_portal:
            response = test_client.post(
                "/subscriptions/portal",
                json={"return_url": "https://app.example.com/account"},
                headers=auth_headers(user),
            )

        assert response.status_code == 200
        assert response.json() == {"portal_url": portal.url}
        assert create_portal.call_args.kwargs["customer"] == "cus_portal"

    def test_audit_history(self, test_client: TestClient, make_user, auth_headers, make_event, post_webhook):
        user = make_user(stripe_customer_id="cus_history")
        post_webhook(make_event("customer.subscription.created", {
            "id": "sub_h", "customer": "cus_history", "status": "active",
        }))
        post_webhook(make_event("invoice.payment_failed", {
            "id": "in_h", "customer": "cus_history", "subscription": "sub_h",
        }))

        response = test_client.get("/subscriptions/audit", headers=auth_headers(user))

        assert response.status_code == 200
        change_types = {entry["change_type"] for entry in response.json()}
        assert change_types == {"subscription_created", "payment_failed"}

        limited = test_client.get("/subscriptions/audit?limit=1", headers=auth_headers(user))
        assert len(limited.json()) == 1
