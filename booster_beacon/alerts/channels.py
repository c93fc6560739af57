"""Notification channels for alert delivery.

Every ``send`` returns exactly one ``ChannelDeliveryResult``; channel
failures are reported in the result, not raised. Outbound HTTP calls go
through the circuit breaker for their target host.
"""

import asyncio
import hashlib
import hmac
import json
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

import httpx

from booster_beacon.config import settings
from booster_beacon.db.models import Alert, NotificationChannel, User
from booster_beacon.errors import CircuitOpenError
from booster_beacon.resilience.circuit_breaker import CircuitBreakerRegistry, breaker_registry

if TYPE_CHECKING:
    from booster_beacon.alerts.push import PushNotificationService

logger = logging.getLogger(__name__)

USER_AGENT = "BoosterBeacon-Webhook/1.0"
DISCORD_HOSTS = {"discord.com", "discordapp.com"}
E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")
PRO_TIER = "pro"


@dataclass
class ChannelDeliveryResult:
    """Outcome of one delivery attempt on one channel."""
    channel: str
    success: bool
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    external_id: str | None = None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"channel": self.channel, "success": self.success}
        if self.error:
            data["error"] = self.error
        if self.metadata:
            data["metadata"] = self.metadata
        if self.external_id:
            data["externalId"] = self.external_id
        return data


class ChannelSendError(Exception):
    """An outbound call failed after its retries."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


def format_price(value: Any) -> str | None:
    if value is None:
        return None
    try:
        return f"${float(value):.2f}"
    except (TypeError, ValueError):
        return None


def mask_webhook_url(url: str) -> str:
    """Hide the token segment of a webhook URL for logs and metadata."""
    parsed = urlparse(url)
    parts = parsed.path.split("/")
    if parsed.scheme and parsed.hostname and len(parts) >= 4:
        parts[-1] = "***"
        return f"{parsed.scheme}://{parsed.hostname}{'/'.join(parts)}"
    return url[:30] + "***"


def is_valid_discord_webhook(url: str) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme == "https" and parsed.hostname in DISCORD_HOSTS


def sign_payload(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the exact request body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _settings_of(user: User) -> dict:
    return user.notification_settings or {}


class DeliveryChannel(ABC):
    """Base class for notification channels."""

    @property
    @abstractmethod
    def channel_type(self) -> str:
        """Return the channel type identifier."""
        pass

    @abstractmethod
    async def send(self, alert: Alert, user: User) -> ChannelDeliveryResult:
        """Deliver ``alert`` to ``user`` on this channel."""
        pass

    def _failed(self, error: str, **metadata: Any) -> ChannelDeliveryResult:
        return ChannelDeliveryResult(self.channel_type, False, error=error, metadata=metadata)


class HttpChannel(DeliveryChannel):
    """Shared POST-with-retries logic for HTTP based channels."""

    def __init__(
        self,
        registry: CircuitBreakerRegistry = breaker_registry,
        timeout: float | None = None,
        retries: int | None = None,
        backoff_base: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.registry = registry
        self.timeout = timeout if timeout is not None else settings.webhook_timeout_seconds
        self.retries = max(1, retries if retries is not None else settings.webhook_max_retries)
        self.backoff_base = backoff_base
        self.transport = transport

    async def _post_with_retries(
        self,
        url: str,
        content: bytes,
        headers: dict[str, str],
    ) -> httpx.Response:
        """POST with exponential backoff; raises ChannelSendError when all attempts fail."""
        last_error: ChannelSendError | None = None

        for attempt in range(self.retries):
            try:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                    response = await client.post(url, content=content, headers=headers)
            except httpx.RequestError as e:
                logger.warning(f"{self.channel_type} request failed (attempt {attempt + 1}): {e}")
                last_error = ChannelSendError(str(e) or type(e).__name__)
            else:
                # 2xx and 4xx other than 429 are final and do not count
                # against the host's breaker.
                if response.status_code < 500 and response.status_code != 429:
                    return response
                last_error = ChannelSendError(
                    f"HTTP {response.status_code}: {response.text[:100]}",
                    status_code=response.status_code,
                )
                logger.warning(f"{self.channel_type} returned {response.status_code} (attempt {attempt + 1})")

            if attempt + 1 < self.retries:
                await asyncio.sleep(self.backoff_base * (2 ** attempt))

        raise last_error or ChannelSendError("Delivery failed")

    async def _guarded_post(
        self,
        url: str,
        content: bytes,
        headers: dict[str, str],
    ) -> httpx.Response:
        breaker = self.registry.for_endpoint(url)
        response = await breaker.execute(lambda: self._post_with_retries(url, content, headers))
        if response.status_code >= 300:
            raise ChannelSendError(
                f"HTTP {response.status_code}: {response.text[:100]}",
                status_code=response.status_code,
            )
        return response


class WebhookChannel(HttpChannel):
    """Send alerts to a user-configured HTTP webhook."""

    @property
    def channel_type(self) -> str:
        return NotificationChannel.WEBHOOK.value

    def build_request(self, alert: Alert, url_secret: str | None) -> tuple[bytes, dict[str, str]]:
        timestamp = datetime.now(timezone.utc).isoformat()
        payload = {
            "event": "alert.created",
            "timestamp": timestamp,
            "data": alert.to_dict(),
        }
        body = json.dumps(payload, default=str).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "X-Webhook-Event": payload["event"],
            "X-Webhook-Timestamp": timestamp,
        }
        if url_secret:
            headers["X-Webhook-Signature"] = f"sha256={sign_payload(body, url_secret)}"
        return body, headers

    async def send(self, alert: Alert, user: User) -> ChannelDeliveryResult:
        config = _settings_of(user)
        url = config.get("webhook_url")
        if not url:
            logger.warning(f"No webhook URL for user {user.id}")
            return self._failed("No webhook URL configured")

        body, headers = self.build_request(alert, config.get("webhook_secret"))
        try:
            response = await self._guarded_post(url, body, headers)
        except CircuitOpenError as e:
            return self._failed(e.message, circuitOpen=True, host=self.registry.key_for(url))
        except ChannelSendError as e:
            return self._failed(str(e), statusCode=e.status_code)

        logger.info(f"Webhook sent for alert {alert.id} to {self.registry.key_for(url)}")
        return ChannelDeliveryResult(
            self.channel_type,
            True,
            metadata={"statusCode": response.status_code, "signed": "X-Webhook-Signature" in headers},
        )


DISCORD_STYLES = {
    "restock": ("\U0001F525", "Product Back in Stock!", "**{product}** is now available at **{retailer}**", 0x4CAF50),
    "price_drop": ("\U0001F4B0", "Price Drop Alert!", "**{product}** price has dropped at **{retailer}**", 0xFF9800),
    "low_stock": ("⚡", "Low Stock Alert!", "**{product}** is running low at **{retailer}** - Act fast!", 0xF44336),
    "pre_order": ("\U0001F3AF", "Pre-Order Available!", "**{product}** pre-orders are now open at **{retailer}**", 0x2196F3),
}
DISCORD_DEFAULT_STYLE = ("\U0001F4E6", "Product Update", "Update for **{product}** at **{retailer}**", 0x9E9E9E)

PRIORITY_LABELS = {
    "urgent": "\U0001F6A8 URGENT",
    "high": "\U0001F534 HIGH",
    "medium": "\U0001F7E1 MEDIUM",
    "low": "\U0001F7E2 LOW",
}


def build_discord_message(alert: Alert) -> dict:
    """Discord webhook message with one embed describing the alert."""
    data = alert.data or {}
    product = data.get("product_name", "")
    retailer = data.get("retailer_name", "")
    emoji, title, description, color = DISCORD_STYLES.get(alert.type, DISCORD_DEFAULT_STYLE)

    fields = [
        {"name": "\U0001F3EA Retailer", "value": retailer or "-", "inline": True},
        {"name": "\U0001F4B5 Price", "value": format_price(data.get("price")) or "Price not available", "inline": True},
        {"name": "⚡ Priority", "value": PRIORITY_LABELS.get(alert.priority, str(alert.priority).upper()), "inline": True},
    ]

    original = format_price(data.get("original_price"))
    if alert.type == "price_drop" and original:
        fields.append({"name": "\U0001F4C9 Original Price", "value": original, "inline": True})
        if data.get("price") and data.get("original_price"):
            savings = float(data["original_price"]) - float(data["price"])
            pct = round(savings / float(data["original_price"]) * 100)
            fields.append({"name": "\U0001F4B8 You Save", "value": f"${savings:.2f} ({pct}%)", "inline": True})

    if data.get("stock_level"):
        fields.append({"name": "\U0001F4E6 Stock Level", "value": str(data["stock_level"]), "inline": True})

    embed: dict[str, Any] = {
        "title": f"{emoji} {title}",
        "description": description.format(product=product, retailer=retailer),
        "color": color,
        "fields": fields,
        "footer": {"text": "BoosterBeacon Alert"},
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if data.get("product_url"):
        embed["url"] = data["product_url"]

    links = []
    if data.get("cart_url"):
        links.append(f"\U0001F6D2 **[Add to Cart]({data['cart_url']})**")
    if data.get("product_url") and data.get("product_url") != data.get("cart_url"):
        links.append(f"\U0001F440 **[View Product]({data['product_url']})**")

    message: dict[str, Any] = {"embeds": [embed], "username": "BoosterBeacon"}
    if links:
        message["content"] = " • ".join(links)
    return message


class DiscordChannel(HttpChannel):
    """Send alerts to a Discord webhook (Pro tier only)."""

    @property
    def channel_type(self) -> str:
        return NotificationChannel.DISCORD.value

    async def send(self, alert: Alert, user: User) -> ChannelDeliveryResult:
        config = _settings_of(user)
        if user.subscription_tier != PRO_TIER:
            return self._failed("Discord alerts require Pro subscription")
        if not config.get("discord"):
            return self._failed("User has disabled Discord notifications")
        url = config.get("discord_webhook")
        if not url:
            return self._failed("No Discord webhook configured")
        if not is_valid_discord_webhook(url):
            return self._failed("Invalid Discord webhook URL")

        message = build_discord_message(alert)
        body = json.dumps(message).encode("utf-8")
        headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
        separator = "&" if "?" in url else "?"

        try:
            response = await self._guarded_post(f"{url}{separator}wait=true", body, headers)
        except CircuitOpenError as e:
            return self._failed(e.message, circuitOpen=True, webhookUrl=mask_webhook_url(url))
        except ChannelSendError as e:
            logger.error(f"Discord alert failed for {mask_webhook_url(url)}: {e}")
            return self._failed(str(e), statusCode=e.status_code)

        message_id = None
        try:
            message_id = response.json().get("id")
        except ValueError:
            logger.debug(f"Discord response for alert {alert.id} had no JSON body")

        logger.info(f"Discord alert {alert.id} sent to {mask_webhook_url(url)}")
        return ChannelDeliveryResult(
            self.channel_type,
            True,
            external_id=message_id,
            metadata={
                "messageId": message_id,
                "webhookUrl": mask_webhook_url(url),
                "embedCount": len(message["embeds"]),
            },
        )


Sender = Callable[[str, Alert], Awaitable[str | None]]


async def _log_only_sender(recipient: str, alert: Alert) -> str | None:
    logger.info(f"Notification for alert {alert.id} would be sent to {recipient[:3]}***")
    return None


class EmailChannel(DeliveryChannel):
    """
    Send alerts by email.

    The provider call is injected as ``sender``; without one the message is
    only logged.
    """

    def __init__(self, sender: Sender | None = None):
        self.sender = sender or _log_only_sender

    @property
    def channel_type(self) -> str:
        return NotificationChannel.EMAIL.value

    async def send(self, alert: Alert, user: User) -> ChannelDeliveryResult:
        if not user.email or not user.email_verified:
            return self._failed("Email not verified")
        if _settings_of(user).get("email") is False:
            return self._failed("User has disabled email notifications")

        message_id = await self.sender(user.email, alert)
        return ChannelDeliveryResult(self.channel_type, True, external_id=message_id)


class SMSChannel(DeliveryChannel):
    """Send alerts by SMS (Pro tier only). Provider injected as ``sender``."""

    def __init__(self, sender: Sender | None = None):
        self.sender = sender or _log_only_sender

    @property
    def channel_type(self) -> str:
        return NotificationChannel.SMS.value

    async def send(self, alert: Alert, user: User) -> ChannelDeliveryResult:
        if user.subscription_tier != PRO_TIER:
            return self._failed("SMS alerts require Pro subscription")
        if not _settings_of(user).get("sms"):
            return self._failed("User has disabled SMS notifications")
        if not user.phone:
            return self._failed("No phone number configured for user")
        if not E164_PATTERN.match(user.phone):
            return self._failed("Invalid phone number format")

        message_id = await self.sender(user.phone, alert)
        return ChannelDeliveryResult(self.channel_type, True, external_id=message_id)


class WebPushChannel(DeliveryChannel):
    """Browser push to every subscription the user registered."""

    def __init__(self, push_service: "PushNotificationService | None" = None):
        if push_service is None:
            from booster_beacon.alerts.push import PushNotificationService

            push_service = PushNotificationService()
        self.push_service = push_service

    @property
    def channel_type(self) -> str:
        return NotificationChannel.WEB_PUSH.value

    async def send(self, alert: Alert, user: User) -> ChannelDeliveryResult:
        return await self.push_service.send_notification(alert, user)


# Channel registry
CHANNEL_REGISTRY: dict[str, type[DeliveryChannel]] = {
    NotificationChannel.WEB_PUSH.value: WebPushChannel,
    NotificationChannel.WEBHOOK.value: WebhookChannel,
    NotificationChannel.DISCORD.value: DiscordChannel,
    NotificationChannel.EMAIL.value: EmailChannel,
    NotificationChannel.SMS.value: SMSChannel,
}


def get_channel(channel_type: str) -> DeliveryChannel | None:
    """Get channel instance by type."""
    channel_class = CHANNEL_REGISTRY.get(channel_type)
    if channel_class:
        return channel_class()
    return None
