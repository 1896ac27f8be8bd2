"""
Stripe billing webhook: verifies events and reconciles local subscriptions.

Plans:
  - starter:       20 calls/month, $29/month
  - professional: 100 calls/month, $79/month
  - enterprise:   500 calls/month, $199/month
"""

from __future__ import annotations

import json
from typing import Optional

import stripe
import structlog

from loancall.database import Database
from loancall.errors import InvalidSignature, WebhookNotConfigured

log = structlog.get_logger(__name__)

PLANS = {
    "starter":      {"name": "Starter",      "price": 2900,  "calls": 20},   # cents
    "professional": {"name": "Professional", "price": 7900,  "calls": 100},
    "enterprise":   {"name": "Enterprise",   "price": 19900, "calls": 500},
}

SUBSCRIPTION_UPSERT_EVENTS = (
    "customer.subscription.created",
    "customer.subscription.updated",
)
SUBSCRIPTION_DELETED_EVENT = "customer.subscription.deleted"


class BillingWebhookHandler:
    """Stripe webhook verification and subscription reconciliation."""

    def __init__(
        self,
        db: Database,
        webhook_secret: str,
        price_plans: dict[str, str],
        default_plan: str = "starter",
    ):
        self.db = db
        self.webhook_secret = webhook_secret
        self.price_plans = price_plans
        self.default_plan = default_plan

    def verify(self, payload: bytes, signature: str) -> dict:
        """
        Check ``signature`` against the raw request body and return the event.

        The body must be the exact bytes Stripe sent; re-serialised JSON will
        not match the signature.
        """
        if not self.webhook_secret:
            raise WebhookNotConfigured("Stripe webhook secret is not configured")
        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                body, signature, self.webhook_secret, tolerance=stripe.Webhook.DEFAULT_TOLERANCE
            )
            event = json.loads(body)
        except (stripe.SignatureVerificationError, UnicodeDecodeError, ValueError) as e:
            log.warning("stripe_webhook_verification_failed", error=str(e))
            raise InvalidSignature(f"Webhook signature verification failed: {e}") from e
        if not isinstance(event, dict) or "type" not in event:
            raise InvalidSignature("Webhook payload is not a Stripe event")
        return event

    def plan_for_price(self, price_id: Optional[str]) -> str:
        return self.price_plans.get(price_id or "", self.default_plan)

    async def handle(self, event: dict) -> str:
        """Apply one verified event. Returns a short outcome label."""
        event_type = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}
        log.info("stripe_webhook", event_type=event_type, event_id=event.get("id"))

        if event_type in SUBSCRIPTION_UPSERT_EVENTS:
            return await self._upsert_subscription(obj)
        if event_type == SUBSCRIPTION_DELETED_EVENT:
            return await self._cancel_subscription(obj)

        log.info("stripe_webhook_ignored", event_type=event_type)
        return "ignored"

    async def _upsert_subscription(self, sub: dict) -> str:
        subscription_id = sub.get("id")
        customer_id = sub.get("customer")
        if not subscription_id:
            log.warning("stripe_subscription_missing_id")
            return "skipped"

        items = (sub.get("items") or {}).get("data") or []
        price_id = ((items[0].get("price") or {}).get("id")) if items else None
        plan_id = self.plan_for_price(price_id)

        user_id = (sub.get("metadata") or {}).get("user_id")
        if not user_id:
            existing = await self.db.get_subscription_by_external_id(subscription_id)
            if existing:
                user_id = existing.user_id
            elif customer_id:
                user_id = await self.db.find_user_by_customer(customer_id)
        if not user_id:
            log.warning(
                "stripe_subscription_user_not_found",
                subscription_id=subscription_id,
                customer_id=customer_id,
            )
            return "skipped"

        await self.db.upsert_subscription(
            user_id=user_id,
            plan_id=plan_id,
            status=sub.get("status", ""),
            stripe_subscription_id=subscription_id,
            stripe_customer_id=customer_id,
        )
        log.info(
            "subscription_reconciled",
            user_id=user_id,
            subscription_id=subscription_id,
            plan_id=plan_id,
            status=sub.get("status"),
        )
        return "upserted"

    async def _cancel_subscription(self, sub: dict) -> str:
        subscription_id = sub.get("id")
        if not subscription_id or not await self.db.cancel_subscription(subscription_id):
            log.warning("stripe_subscription_cancel_unknown", subscription_id=subscription_id)
            return "skipped"
        log.info("subscription_canceled", subscription_id=subscription_id)
        return "canceled"
