"""Tests for Stripe webhook verification and subscription reconciliation."""

import json
import time

import pytest

from conftest import stripe_signature
from loancall.billing import BillingWebhookHandler
from loancall.errors import InvalidSignature, WebhookNotConfigured

SECRET = "whsec_test"
PRICE_PLANS = {
    "price_starter": "starter",
    "price_professional": "professional",
    "price_enterprise": "enterprise",
}


def subscription_event(event_type="customer.subscription.created", price="price_professional", **sub):
    obj = {
        "id": "sub_123",
        "object": "subscription",
        "customer": "cus_123",
        "status": "active",
        "metadata": {"user_id": "user-1"},
        "items": {"object": "list", "data": [{"price": {"id": price}}]},
    }
    obj.update(sub)
    return {"id": "evt_1", "type": event_type, "data": {"object": obj}}


@pytest.fixture
def handler(db):
    return BillingWebhookHandler(db, SECRET, PRICE_PLANS, default_plan="starter")


class TestVerify:
    def test_valid_signature(self, handler):
        body = json.dumps(subscription_event()).encode()
        event = handler.verify(body, stripe_signature(body, SECRET))
        assert event["type"] == "customer.subscription.created"

    def test_tampered_body_rejected(self, handler):
        body = json.dumps(subscription_event()).encode()
        header = stripe_signature(body, SECRET)
        tampered = body.replace(b"price_professional", b"price_enterprise")
        with pytest.raises(InvalidSignature):
            handler.verify(tampered, header)

    def test_reserialised_body_rejected(self, handler):
        body = json.dumps(subscription_event(), indent=2).encode()
        header = stripe_signature(body, SECRET)
        compact = json.dumps(json.loads(body)).encode()
        with pytest.raises(InvalidSignature):
            handler.verify(compact, header)

    def test_wrong_secret_rejected(self, handler):
        body = json.dumps(subscription_event()).encode()
        with pytest.raises(InvalidSignature):
            handler.verify(body, stripe_signature(body, "whsec_other"))

    def test_stale_timestamp_rejected(self, handler):
        body = json.dumps(subscription_event()).encode()
        header = stripe_signature(body, SECRET, timestamp=int(time.time()) - 3600)
        with pytest.raises(InvalidSignature):
            handler.verify(body, header)

    def test_garbage_header_rejected(self, handler):
        with pytest.raises(InvalidSignature):
            handler.verify(b"{}", "not-a-signature")

    def test_missing_secret(self, db):
        unconfigured = BillingWebhookHandler(db, "", PRICE_PLANS)
        with pytest.raises(WebhookNotConfigured):
            unconfigured.verify(b"{}", "t=1,v1=abc")


class TestHandle:
    @pytest.mark.asyncio
    async def test_created_upserts_with_mapped_plan(self, handler, db):
        assert await handler.handle(subscription_event()) == "upserted"

        sub = await db.get_subscription_by_external_id("sub_123")
        assert sub.user_id == "user-1"
        assert sub.plan_id == "professional"
        assert sub.status == "active"
        assert sub.stripe_customer_id == "cus_123"

    @pytest.mark.asyncio
    async def test_redelivery_is_idempotent(self, handler, db):
        event = subscription_event()
        await handler.handle(event)
        await handler.handle(event)

        sub = await db.get_user_subscription("user-1")
        assert sub.stripe_subscription_id == "sub_123"
        cursor = await db._db.execute("SELECT COUNT(*) AS cnt FROM subscriptions")
        assert (await cursor.fetchone())["cnt"] == 1

    @pytest.mark.asyncio
    async def test_unmapped_price_defaults_to_lowest_tier(self, handler, db):
        await handler.handle(subscription_event(price="price_mystery"))
        assert (await db.get_subscription_by_external_id("sub_123")).plan_id == "starter"

    @pytest.mark.asyncio
    async def test_update_resolves_user_from_existing_record(self, handler, db):
        await handler.handle(subscription_event())
        update = subscription_event(
            "customer.subscription.updated", price="price_enterprise", status="past_due", metadata={}
        )

        assert await handler.handle(update) == "upserted"
        sub = await db.get_subscription_by_external_id("sub_123")
        assert sub.user_id == "user-1"
        assert sub.plan_id == "enterprise"
        assert sub.status == "past_due"

    @pytest.mark.asyncio
    async def test_unknown_user_is_skipped(self, handler, db):
        event = subscription_event(metadata={}, customer="cus_unknown", id="sub_999")
        assert await handler.handle(event) == "skipped"
        assert await db.get_subscription_by_external_id("sub_999") is None

    @pytest.mark.asyncio
    async def test_deleted_cancels(self, handler, db):
        await handler.handle(subscription_event())
        assert await handler.handle(subscription_event("customer.subscription.deleted")) == "canceled"
        assert (await db.get_subscription_by_external_id("sub_123")).status == "canceled"

    @pytest.mark.asyncio
    async def test_unrecognised_event_ignored(self, handler):
        event = {"id": "evt_2", "type": "invoice.paid", "data": {"object": {"id": "in_1"}}}
        assert await handler.handle(event) == "ignored"
