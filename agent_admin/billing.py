"""Stripe subscription billing mapped onto the organization's plan."""
import json
import logging
from datetime import datetime, UTC
from typing import Any, Dict, Optional

import stripe

from agent_admin import config
from agent_admin.config import MissingConfigurationError

logger = logging.getLogger(__name__)

ACTIVE_SUBSCRIPTION_STATUSES = ("active", "trialing")


class WebhookSignatureError(Exception):
    """Raised when a webhook can't be authenticated; nothing is processed."""
    pass


class BillingError(Exception):
    """Raised when Stripe rejects a request."""

    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.status_code = status_code


class BillingService:
    """Checkout sessions and webhook handling."""

    def __init__(self, store, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        self.store = store
        self.secret_key = secret_key or config.get_stripe_secret_key()
        self.webhook_secret = webhook_secret or config.get_stripe_webhook_secret()

    def create_checkout_session(
        self,
        org_id: str,
        price_id: str,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None
    ) -> str:
        """
        Create a subscription checkout session tagged with the org.

        Returns:
            Checkout URL to redirect the user to
        """
        if not self.secret_key:
            raise MissingConfigurationError("STRIPE_SECRET_KEY is not configured")

        try:
            session = stripe.checkout.Session.create(
                api_key=self.secret_key,
                payment_method_types=["card"],
                line_items=[{"price": price_id, "quantity": 1}],
                mode="subscription",
                success_url=success_url,
                cancel_url=cancel_url,
                metadata={"orgId": org_id},
                subscription_data={"metadata": {"orgId": org_id}},
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe checkout failed for org {org_id}: {e}")
            raise BillingError(e.user_message or str(e), status_code=e.http_status or 502) from e

        logger.info(f"Created checkout session for org {org_id}")
        return session["url"]

    def verify_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Authenticate a webhook payload and return the parsed event.

        Raises:
            WebhookSignatureError: Missing header/secret or bad signature
        """
        if not signature or not self.webhook_secret:
            raise WebhookSignatureError("Missing stripe-signature or endpoint secret")
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise WebhookSignatureError(str(e)) from e
        return json.loads(payload)

    def handle_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """Apply a verified event to the organization document."""
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}
        org_id = (obj.get("metadata") or {}).get("orgId")

        if event_type == "checkout.session.completed":
            patch = {
                "plan": config.PLAN_PRO,
                "stripeSubscriptionId": obj.get("subscription"),
                "stripeCustomerId": obj.get("customer"),
            }
        elif event_type == "customer.subscription.updated":
            active = obj.get("status") in ACTIVE_SUBSCRIPTION_STATUSES
            patch = {
                "plan": config.PLAN_PRO if active else config.PLAN_BASIC,
                "stripeSubscriptionId": obj.get("id"),
            }
        elif event_type == "customer.subscription.deleted":
            patch = {"plan": config.PLAN_BASIC}
        else:
            logger.info(f"Unhandled event type {event_type}")
            return {"received": True}

        if not org_id:
            logger.warning(f"{event_type} without orgId metadata; ignoring")
            return {"received": True}

        patch["updatedAt"] = datetime.now(UTC).isoformat()
        self.store.merge_organization(org_id, patch)
        logger.info(f"Org {org_id} plan set to {patch['plan']} by {event_type}")
        return {"received": True, "orgId": org_id, "plan": patch["plan"]}
