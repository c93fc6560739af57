"""Web push delivery and push subscription lifecycle."""

import asyncio
import json
import logging
import time
from collections.abc import Callable
from typing import Any

from pywebpush import WebPushException, webpush
from sqlalchemy.ext.asyncio import AsyncSession

from booster_beacon.alerts.channels import ChannelDeliveryResult
from booster_beacon.config import settings
from booster_beacon.db.database import async_session_maker
from booster_beacon.db.models import Alert, NotificationChannel, PushSubscription, User
from booster_beacon.db.repositories.user_repository import UserRepository

logger = logging.getLogger(__name__)

PUSH_TTL_SECONDS = 24 * 60 * 60
ICON = "/icons/notification-icon-192.png"
BADGE = "/icons/badge-72.png"

PUSH_TITLES = {
    "restock": ("\U0001F525 {product} Back in Stock!", "Available now at {retailer}{price_for}"),
    "price_drop": ("\U0001F4B0 Price Drop: {product}", "Now {price} at {retailer}{was}"),
    "low_stock": ("⚡ Low Stock Alert: {product}", "Hurry! Limited stock at {retailer}{price_dash}"),
    "pre_order": ("\U0001F3AF Pre-Order Available: {product}", "Pre-order now at {retailer}{price_for}"),
}
PUSH_DEFAULT = ("\U0001F4E6 {product}", "Update from {retailer}")


def _short(endpoint: str) -> str:
    return endpoint[:50] + "..."


def _price(value: Any) -> str:
    try:
        return f"${float(value):.2f}" if value is not None else ""
    except (TypeError, ValueError):
        return ""


def build_push_payload(alert: Alert) -> dict:
    """Notification payload for an alert, shaped for the service worker."""
    data = alert.data or {}
    price = _price(data.get("price"))
    original = _price(data.get("original_price"))
    title_tpl, body_tpl = PUSH_TITLES.get(alert.type, PUSH_DEFAULT)
    fmt = {
        "product": data.get("product_name", ""),
        "retailer": data.get("retailer_name", ""),
        "price": price,
        "price_for": f" for {price}" if price else "",
        "price_dash": f" - {price}" if price else "",
        "was": f" (was {original})" if original else "",
    }

    payload: dict[str, Any] = {
        "title": title_tpl.format(**fmt),
        "body": body_tpl.format(**fmt),
        "icon": ICON,
        "badge": BADGE,
        "data": {
            "alertId": str(alert.id),
            "productId": str(alert.product_id),
            "retailerId": str(alert.retailer_id),
            "productUrl": data.get("product_url"),
            "timestamp": int(time.time() * 1000),
        },
        "actions": [{"action": "view", "title": "\U0001F440 View Product"}],
        "requireInteraction": alert.priority == "urgent",
        "tag": f"alert-{alert.product_id}-{alert.retailer_id}",
        "renotify": True,
    }
    if not data.get("product_url"):
        payload["image"] = "/icons/product-placeholder.png"
    if data.get("cart_url"):
        payload["data"]["cartUrl"] = data["cart_url"]
        payload["actions"].insert(0, {"action": "cart", "title": "\U0001F6D2 Add to Cart"})
    return payload


def _status_code(error: BaseException) -> int | None:
    response = getattr(error, "response", None)
    code = getattr(response, "status_code", None)
    if code is None:
        code = getattr(error, "status_code", None)
    return code


def is_invalid_subscription_error(error: BaseException) -> bool:
    """True when the push service says the endpoint is gone for good."""
    if _status_code(error) in (404, 410):
        return True
    message = str(error).lower()
    return "invalid" in message or "expired" in message


class PushNotificationService:
    """Sends web push notifications and manages subscriptions."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] = async_session_maker,
        vapid_private_key: str | None = None,
        vapid_public_key: str | None = None,
        vapid_subject: str | None = None,
        sender: Callable[..., Any] = webpush,
    ):
        self.session_factory = session_factory
        self.vapid_private_key = vapid_private_key or settings.vapid_private_key
        self.vapid_public_key = vapid_public_key or settings.vapid_public_key
        self.vapid_subject = vapid_subject or settings.vapid_subject
        self.sender = sender

    @property
    def is_configured(self) -> bool:
        return bool(self.vapid_private_key and self.vapid_public_key)

    async def send_to_subscription(self, subscription: PushSubscription, payload: dict) -> None:
        """Push one payload to one endpoint; raises on failure."""
        logger.debug(f"Sending to push subscription {_short(subscription.endpoint)}")
        try:
            await asyncio.to_thread(
                self.sender,
                subscription_info=subscription.to_webpush_info(),
                data=json.dumps(payload),
                vapid_private_key=self.vapid_private_key,
                # pywebpush adds aud/exp to the claims dict, so pass a fresh one.
                vapid_claims={"sub": self.vapid_subject},
                ttl=PUSH_TTL_SECONDS,
                headers={"Urgency": "high"},
            )
        except WebPushException as e:
            logger.error(
                f"Failed to send push notification to {_short(subscription.endpoint)} "
                f"(status {_status_code(e)}): {e}"
            )
            raise

    async def get_user_push_subscriptions(self, user_id: str) -> list[PushSubscription]:
        async with self.session_factory() as session:
            return await UserRepository(session).get_push_subscriptions(user_id)

    async def _remove_subscriptions(self, user_id: str, endpoints: list[str]) -> int:
        removed = 0
        async with self.session_factory() as session:
            repo = UserRepository(session)
            for endpoint in endpoints:
                if await repo.delete_push_subscription(user_id, endpoint):
                    removed += 1
            await session.commit()
        logger.info(f"Removed {removed} invalid push subscriptions for user {user_id}")
        return removed

    async def _touch_subscriptions(self, user_id: str, endpoints: list[str]) -> None:
        async with self.session_factory() as session:
            await UserRepository(session).touch_push_subscriptions(user_id, endpoints)
            await session.commit()

    async def send_notification(self, alert: Alert, user: User) -> ChannelDeliveryResult:
        """Push ``alert`` to every subscription of ``user`` (settle-all)."""
        channel = NotificationChannel.WEB_PUSH.value
        if not self.is_configured:
            logger.warning("VAPID keys not configured for web push")
            return ChannelDeliveryResult(channel, False, error="Web push not configured")

        subscriptions = await self.get_user_push_subscriptions(str(user.id))
        if not subscriptions:
            return ChannelDeliveryResult(channel, False, error="No push subscriptions found for user")

        payload = build_push_payload(alert)
        results = await asyncio.gather(
            *(self.send_to_subscription(sub, payload) for sub in subscriptions),
            return_exceptions=True,
        )

        succeeded = [sub.endpoint for sub, r in zip(subscriptions, results) if not isinstance(r, BaseException)]
        invalid = [
            sub.endpoint
            for sub, r in zip(subscriptions, results)
            if isinstance(r, BaseException) and is_invalid_subscription_error(r)
        ]

        if invalid:
            await self._remove_subscriptions(str(user.id), invalid)
        if succeeded:
            await self._touch_subscriptions(str(user.id), succeeded)

        total = len(subscriptions)
        if not succeeded:
            return ChannelDeliveryResult(
                channel,
                False,
                error=f"Failed to send to all {total} subscriptions",
                metadata={"subscriptionsFailed": total, "invalidRemoved": len(invalid)},
            )

        logger.info(f"Web push for alert {alert.id} sent to {len(succeeded)}/{total} subscriptions")
        return ChannelDeliveryResult(
            channel,
            True,
            metadata={
                "subscriptionsSent": len(succeeded),
                "subscriptionsFailed": total - len(succeeded),
                "totalSubscriptions": total,
            },
        )

    async def subscribe(self, user_id: str, subscription: dict) -> dict:
        """Store a browser subscription, refreshing keys if the endpoint exists."""
        endpoint = subscription.get("endpoint")
        keys = subscription.get("keys") or {}
        if not endpoint or not keys.get("p256dh") or not keys.get("auth"):
            return {"success": False, "error": "Invalid subscription format"}

        async with self.session_factory() as session:
            repo = UserRepository(session)
            if await repo.get_by_id(user_id) is None:
                return {"success": False, "error": "User not found"}
            await repo.upsert_push_subscription(user_id, endpoint, keys["p256dh"], keys["auth"])
            await session.commit()

        logger.info(f"Push subscription saved for user {user_id}: {_short(endpoint)}")
        return {"success": True}

    async def unsubscribe(self, user_id: str, endpoint: str) -> dict:
        async with self.session_factory() as session:
            removed = await UserRepository(session).delete_push_subscription(user_id, endpoint)
            await session.commit()

        if not removed:
            return {"success": False, "error": "Subscription not found"}
        logger.info(f"Push subscription removed for user {user_id}: {_short(endpoint)}")
        return {"success": True}

    async def send_test_notification(self, user_id: str) -> dict:
        if not self.is_configured:
            return {"success": False, "error": "Web push not configured"}
        subscriptions = await self.get_user_push_subscriptions(user_id)
        if not subscriptions:
            return {"success": False, "error": "No push subscriptions found"}

        payload = {
            "title": "\U0001F9EA BoosterBeacon Test",
            "body": "Your notifications are working perfectly!",
            "icon": ICON,
            "data": {"alertId": "test", "timestamp": int(time.time() * 1000)},
            "tag": "test-notification",
        }
        results = await asyncio.gather(
            *(self.send_to_subscription(sub, payload) for sub in subscriptions),
            return_exceptions=True,
        )
        errors = [str(r) for r in results if isinstance(r, BaseException)]
        if len(errors) == len(results):
            return {"success": False, "error": errors[0]}
        return {"success": True, "sent": len(results) - len(errors), "failed": len(errors)}

    async def get_user_push_stats(self, user_id: str) -> dict:
        subscriptions = await self.get_user_push_subscriptions(user_id)
        last_used = [s.last_used for s in subscriptions if s.last_used]
        stats: dict[str, Any] = {"subscriptionCount": len(subscriptions)}
        if last_used:
            stats["lastNotificationSent"] = max(last_used).isoformat()
        return stats
