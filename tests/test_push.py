"""Tests for web push delivery and subscription management."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from pywebpush import WebPushException

from booster_beacon.alerts.push import (
    PUSH_TTL_SECONDS,
    PushNotificationService,
    build_push_payload,
    is_invalid_subscription_error,
)
from booster_beacon.db.models import Alert, PushSubscription, User


class FakeSessionFactory:
    def __init__(self):
        self.session = MagicMock()
        self.session.commit = AsyncMock()

    def __call__(self):
        return self

    async def __aenter__(self):
        return self.session

    async def __aexit__(self, *exc):
        return False


def make_alert(**overrides):
    data = dict(
        id="a1",
        user_id="u1",
        product_id="p1",
        retailer_id="r1",
        type="restock",
        priority="medium",
        data={
            "product_name": "Prismatic Evolutions ETB",
            "retailer_name": "Target",
            "price": 49.99,
            "product_url": "https://target.example/p1",
        },
    )
    data.update(overrides)
    return Alert(**data)


def make_sub(endpoint):
    return PushSubscription(user_id="u1", endpoint=endpoint, p256dh="key", auth="secret")


def push_error(status):
    return WebPushException("Push failed", response=MagicMock(status_code=status))


def make_service(sender, subscriptions=(), user_exists=True):
    factory = FakeSessionFactory()
    repo_cls = MagicMock()
    repo = repo_cls.return_value
    repo.get_push_subscriptions = AsyncMock(return_value=list(subscriptions))
    repo.delete_push_subscription = AsyncMock(return_value=True)
    repo.touch_push_subscriptions = AsyncMock()
    repo.upsert_push_subscription = AsyncMock()
    repo.get_by_id = AsyncMock(return_value=User(id="u1", email="a@b.c") if user_exists else None)
    service = PushNotificationService(
        session_factory=factory,
        vapid_private_key="private",
        vapid_public_key="public",
        vapid_subject="mailto:ops@example.com",
        sender=sender,
    )
    return service, repo_cls, repo


USER = User(id="u1", email="collector@example.com")


class TestPushPayload:
    def test_restock_payload(self):
        payload = build_push_payload(make_alert())

        assert payload["title"] == "\U0001F525 Prismatic Evolutions ETB Back in Stock!"
        assert payload["body"] == "Available now at Target for $49.99"
        assert payload["tag"] == "alert-p1-r1"
        assert payload["requireInteraction"] is False
        assert payload["data"]["productUrl"] == "https://target.example/p1"
        assert [a["action"] for a in payload["actions"]] == ["view"]
        assert "image" not in payload

    def test_price_drop_with_cart_and_urgent(self):
        alert = make_alert(
            type="price_drop",
            priority="urgent",
            data={
                "product_name": "Booster Bundle",
                "retailer_name": "Walmart",
                "price": 24.5,
                "original_price": 29.99,
                "cart_url": "https://walmart.example/cart",
            },
        )

        payload = build_push_payload(alert)

        assert payload["body"] == "Now $24.50 at Walmart (was $29.99)"
        assert payload["requireInteraction"] is True
        assert [a["action"] for a in payload["actions"]] == ["cart", "view"]
        assert payload["data"]["cartUrl"] == "https://walmart.example/cart"
        assert payload["image"] == "/icons/product-placeholder.png"


class TestInvalidSubscriptionDetection:
    @pytest.mark.parametrize("status", [404, 410])
    def test_gone_statuses(self, status):
        assert is_invalid_subscription_error(push_error(status)) is True

    def test_message_markers(self):
        assert is_invalid_subscription_error(Exception("Subscription EXPIRED")) is True
        assert is_invalid_subscription_error(Exception("invalid endpoint")) is True

    def test_transient_errors_are_not_invalid(self):
        assert is_invalid_subscription_error(push_error(500)) is False
        assert is_invalid_subscription_error(TimeoutError("timed out")) is False


class TestSendNotification:
    @pytest.mark.asyncio
    async def test_not_configured(self):
        service, _, _ = make_service(MagicMock())
        service.vapid_private_key = None

        result = await service.send_notification(make_alert(), USER)

        assert result.success is False
        assert result.error == "Web push not configured"

    @pytest.mark.asyncio
    async def test_no_subscriptions(self):
        service, repo_cls, _ = make_service(MagicMock(), subscriptions=[])

        with patch("booster_beacon.alerts.push.UserRepository", repo_cls):
            result = await service.send_notification(make_alert(), USER)

        assert result.success is False
        assert result.error == "No push subscriptions found for user"

    @pytest.mark.asyncio
    async def test_gone_endpoint_removed_others_kept(self):
        def sender(subscription_info, **kwargs):
            if subscription_info["endpoint"] == "https://push.example/b":
                raise push_error(410)

        subs = [make_sub("https://push.example/a"), make_sub("https://push.example/b")]
        service, repo_cls, repo = make_service(sender, subscriptions=subs)

        with patch("booster_beacon.alerts.push.UserRepository", repo_cls):
            result = await service.send_notification(make_alert(), USER)

        assert result.success is True
        assert result.metadata == {
            "subscriptionsSent": 1,
            "subscriptionsFailed": 1,
            "totalSubscriptions": 2,
        }
        repo.delete_push_subscription.assert_awaited_once_with("u1", "https://push.example/b")
        repo.touch_push_subscriptions.assert_awaited_once_with("u1", ["https://push.example/a"])

    @pytest.mark.asyncio
    async def test_transient_failures_keep_subscriptions(self):
        def sender(subscription_info, **kwargs):
            raise push_error(503)

        subs = [make_sub("https://push.example/a"), make_sub("https://push.example/b")]
        service, repo_cls, repo = make_service(sender, subscriptions=subs)

        with patch("booster_beacon.alerts.push.UserRepository", repo_cls):
            result = await service.send_notification(make_alert(), USER)

        assert result.success is False
        assert result.error == "Failed to send to all 2 subscriptions"
        repo.delete_push_subscription.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sender_arguments(self):
        sender = MagicMock()
        service, _, _ = make_service(sender)

        await service.send_to_subscription(make_sub("https://push.example/a"), {"title": "t"})
        await service.send_to_subscription(make_sub("https://push.example/a"), {"title": "t"})

        kwargs = sender.call_args.kwargs
        assert kwargs["subscription_info"] == {
            "endpoint": "https://push.example/a",
            "keys": {"p256dh": "key", "auth": "secret"},
        }
        assert json.loads(kwargs["data"]) == {"title": "t"}
        assert kwargs["ttl"] == PUSH_TTL_SECONDS
        assert kwargs["headers"] == {"Urgency": "high"}
        first_claims = sender.call_args_list[0].kwargs["vapid_claims"]
        assert first_claims is not kwargs["vapid_claims"]


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_subscribe_rejects_incomplete_payload(self):
        service, _, _ = make_service(MagicMock())

        result = await service.subscribe("u1", {"endpoint": "https://push.example/a", "keys": {"auth": "x"}})

        assert result == {"success": False, "error": "Invalid subscription format"}

    @pytest.mark.asyncio
    async def test_subscribe_unknown_user(self):
        service, repo_cls, repo = make_service(MagicMock(), user_exists=False)

        with patch("booster_beacon.alerts.push.UserRepository", repo_cls):
            result = await service.subscribe(
                "ghost", {"endpoint": "https://push.example/a", "keys": {"p256dh": "k", "auth": "a"}}
            )

        assert result == {"success": False, "error": "User not found"}
        repo.upsert_push_subscription.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_subscribe_upserts(self):
        service, repo_cls, repo = make_service(MagicMock())

        with patch("booster_beacon.alerts.push.UserRepository", repo_cls):
            result = await service.subscribe(
                "u1", {"endpoint": "https://push.example/a", "keys": {"p256dh": "k", "auth": "a"}}
            )

        assert result == {"success": True}
        repo.upsert_push_subscription.assert_awaited_once_with("u1", "https://push.example/a", "k", "a")

    @pytest.mark.asyncio
    async def test_unsubscribe_missing(self):
        service, repo_cls, repo = make_service(MagicMock())
        repo.delete_push_subscription.return_value = False

        with patch("booster_beacon.alerts.push.UserRepository", repo_cls):
            result = await service.unsubscribe("u1", "https://push.example/zzz")

        assert result == {"success": False, "error": "Subscription not found"}

    @pytest.mark.asyncio
    async def test_push_stats(self):
        service, repo_cls, _ = make_service(MagicMock(), subscriptions=[make_sub("https://push.example/a")])

        with patch("booster_beacon.alerts.push.UserRepository", repo_cls):
            stats = await service.get_user_push_stats("u1")

        assert stats == {"subscriptionCount": 1}
