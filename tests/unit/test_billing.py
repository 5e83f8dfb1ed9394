"""Tests for Stripe billing."""
import hashlib
import hmac
import json
import time
from unittest.mock import patch

import pytest
import stripe

from agent_admin.billing import BillingError, BillingService, WebhookSignatureError
from agent_admin.config import MissingConfigurationError
from agent_admin.config_store import ConfigNotFoundError

WEBHOOK_SECRET = "whsec_test_secret"


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Stripe-Signature header for a payload."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def event_payload(event_type, obj):
    return json.dumps({"id": "evt_1", "type": event_type, "data": {"object": obj}}).encode()


@pytest.fixture
def billing(store):
    return BillingService(store, secret_key="sk_test_123", webhook_secret=WEBHOOK_SECRET)


class TestVerifyEvent:

    def test_valid_signature_returns_event(self, billing):
        payload = event_payload("checkout.session.completed", {"metadata": {"orgId": "org-1"}})
        event = billing.verify_event(payload, sign(payload))
        assert event["type"] == "checkout.session.completed"

    def test_bad_signature_rejected(self, billing):
        payload = event_payload("checkout.session.completed", {"metadata": {"orgId": "org-1"}})
        with pytest.raises(WebhookSignatureError):
            billing.verify_event(payload, sign(payload, secret="whsec_other"))

    def test_tampered_payload_rejected(self, billing):
        payload = event_payload("customer.subscription.deleted", {"metadata": {"orgId": "org-1"}})
        header = sign(payload)
        tampered = payload.replace(b"org-1", b"org-2")
        with pytest.raises(WebhookSignatureError):
            billing.verify_event(tampered, header)

    def test_missing_header_or_secret(self, store, billing, monkeypatch):
        monkeypatch.delenv("STRIPE_WEBHOOK_SECRET", raising=False)
        payload = event_payload("x", {})
        with pytest.raises(WebhookSignatureError):
            billing.verify_event(payload, None)
        with pytest.raises(WebhookSignatureError):
            BillingService(store, secret_key="sk", webhook_secret="").verify_event(payload, sign(payload))


class TestHandleEvent:

    def test_checkout_completed_upgrades_to_pro(self, billing, store):
        result = billing.handle_event({
            "type": "checkout.session.completed",
            "data": {"object": {
                "metadata": {"orgId": "org-1"}, "subscription": "sub_1", "customer": "cus_1"
            }},
        })

        assert result == {"received": True, "orgId": "org-1", "plan": "PRO"}
        org = store.get_organization("org-1").data
        assert org["plan"] == "PRO"
        assert org["stripeSubscriptionId"] == "sub_1"
        assert org["stripeCustomerId"] == "cus_1"
        assert "updatedAt" in org

    @pytest.mark.parametrize("status,plan", [
        ("active", "PRO"), ("trialing", "PRO"), ("past_due", "BASIC"), ("canceled", "BASIC"),
    ])
    def test_subscription_updated(self, billing, store, status, plan):
        billing.handle_event({
            "type": "customer.subscription.updated",
            "data": {"object": {"id": "sub_1", "status": status, "metadata": {"orgId": "org-1"}}},
        })
        assert store.get_organization("org-1").data["plan"] == plan

    def test_subscription_deleted_downgrades_and_keeps_other_fields(self, billing, store):
        store.merge_organization("org-1", {"plan": "PRO", "stripeCustomerId": "cus_1", "name": "Acme"})

        billing.handle_event({
            "type": "customer.subscription.deleted",
            "data": {"object": {"metadata": {"orgId": "org-1"}}},
        })

        org = store.get_organization("org-1").data
        assert org["plan"] == "BASIC"
        assert org["name"] == "Acme"
        assert org["stripeCustomerId"] == "cus_1"

    def test_unhandled_event_acknowledged(self, billing, store):
        assert billing.handle_event({"type": "invoice.paid", "data": {"object": {}}}) == {"received": True}

    def test_event_without_org_changes_nothing(self, billing, store):
        result = billing.handle_event({
            "type": "customer.subscription.deleted", "data": {"object": {"metadata": {}}}
        })
        assert result == {"received": True}
        with pytest.raises(ConfigNotFoundError):
            store.get_organization("org-1")


class TestCheckout:

    def test_creates_subscription_session(self, billing):
        with patch("stripe.checkout.Session.create", return_value={"url": "https://checkout.stripe.com/c/1"}) as create:
            url = billing.create_checkout_session(
                "org-1", "price_1", "https://app/success", "https://app/cancel"
            )

        assert url == "https://checkout.stripe.com/c/1"
        kwargs = create.call_args[1]
        assert kwargs["mode"] == "subscription"
        assert kwargs["line_items"] == [{"price": "price_1", "quantity": 1}]
        assert kwargs["metadata"] == {"orgId": "org-1"}
        assert kwargs["api_key"] == "sk_test_123"

    def test_missing_secret_key(self, store, monkeypatch):
        monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
        with pytest.raises(MissingConfigurationError):
            BillingService(store).create_checkout_session("org-1", "price_1")

    def test_stripe_error_passes_status_through(self, billing):
        error = stripe.InvalidRequestError("No such price: 'price_x'", "price", http_status=400)
        with patch("stripe.checkout.Session.create", side_effect=error):
            with pytest.raises(BillingError) as exc_info:
                billing.create_checkout_session("org-1", "price_x")
        assert exc_info.value.status_code == 400
