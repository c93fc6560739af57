"""Alert delivery: channel fan-out and alert status bookkeeping."""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession

from booster_beacon.alerts.channels import CHANNEL_REGISTRY, ChannelDeliveryResult, DeliveryChannel
from booster_beacon.config import settings
from booster_beacon.db.database import async_session_maker
from booster_beacon.db.models import Alert, NotificationChannel, User
from booster_beacon.db.repositories.alert_repository import AlertRepository
from booster_beacon.db.repositories.user_repository import UserRepository

logger = logging.getLogger(__name__)

MAX_CONCURRENT_DELIVERIES = 10


@dataclass
class DeliveryResult:
    """Outcome of delivering one alert over several channels."""
    success: bool
    successful_channels: list[str] = field(default_factory=list)
    failed_channels: list[str] = field(default_factory=list)
    error: str | None = None
    channel_results: list[ChannelDeliveryResult] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = {
            "success": self.success,
            "successfulChannels": self.successful_channels,
            "failedChannels": self.failed_channels,
            "results": [r.to_dict() for r in self.channel_results],
        }
        if self.error:
            data["error"] = self.error
        return data


def validate_channel_config(channel: str, user: User) -> dict:
    """Whether ``user`` can receive alerts on ``channel``, with reasons if not."""
    errors = []
    config = user.notification_settings or {}

    if channel == NotificationChannel.WEB_PUSH.value:
        pass
    elif channel == NotificationChannel.EMAIL.value:
        if not user.email or not user.email_verified:
            errors.append("Email not verified")
    elif channel == NotificationChannel.SMS.value:
        if user.subscription_tier != "pro":
            errors.append("SMS requires Pro subscription")
        if not user.phone:
            errors.append("Phone number not configured")
    elif channel == NotificationChannel.DISCORD.value:
        if user.subscription_tier != "pro":
            errors.append("Discord requires Pro subscription")
        if not config.get("discord_webhook"):
            errors.append("Discord webhook not configured")
    elif channel == NotificationChannel.WEBHOOK.value:
        if not config.get("webhook_url"):
            errors.append("Webhook URL not configured")
    else:
        errors.append(f"Unsupported channel: {channel}")

    return {"isValid": not errors, "errors": errors}


def resolve_channels(alert: Alert, user: User) -> list[str]:
    """Channels to attempt: the alert's own list, else the user's enabled ones."""
    if alert.delivery_channels:
        return list(alert.delivery_channels)

    config = user.notification_settings or {}
    enabled = []
    if config.get("web_push", True):
        enabled.append(NotificationChannel.WEB_PUSH.value)
    if config.get("email"):
        enabled.append(NotificationChannel.EMAIL.value)
    if config.get("sms"):
        enabled.append(NotificationChannel.SMS.value)
    if config.get("discord"):
        enabled.append(NotificationChannel.DISCORD.value)
    if config.get("webhook_url"):
        enabled.append(NotificationChannel.WEBHOOK.value)

    return [c for c in enabled if validate_channel_config(c, user)["isValid"]]


class AlertDeliveryService:
    """
    Delivers alerts over their channels and records the outcome.

    Channels run concurrently and settle independently; each gets its own
    timeout. The alert is ``sent`` if at least one channel succeeded,
    otherwise ``failed`` with its retry count incremented.
    """

    def __init__(
        self,
        channels: dict[str, DeliveryChannel] | None = None,
        session_factory: Callable[[], AsyncSession] = async_session_maker,
        timeout: float | None = None,
    ):
        self.channels = channels if channels is not None else {
            name: cls() for name, cls in CHANNEL_REGISTRY.items()
        }
        self.session_factory = session_factory
        self.timeout = timeout if timeout is not None else settings.delivery_timeout_seconds

    async def _deliver_to_channel(self, alert: Alert, user: User, channel: str) -> ChannelDeliveryResult:
        handler = self.channels.get(channel)
        if handler is None:
            return ChannelDeliveryResult(channel, False, error=f"Unsupported delivery channel: {channel}")

        try:
            return await asyncio.wait_for(handler.send(alert, user), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Delivery timeout on {channel} for alert {alert.id}")
            return ChannelDeliveryResult(channel, False, error="Delivery timeout")
        except Exception as e:
            logger.error(f"Channel delivery failed on {channel} for alert {alert.id}: {e}", exc_info=True)
            return ChannelDeliveryResult(channel, False, error=str(e) or type(e).__name__)

    async def deliver_alert(
        self,
        alert: Alert,
        user: User,
        channels: list[str],
        record: bool = True,
    ) -> DeliveryResult:
        """Fan out over ``channels`` and, unless ``record`` is False, persist the outcome."""
        logger.info(f"Delivering alert {alert.id} to user {user.id} via {channels}")

        results = list(
            await asyncio.gather(*(self._deliver_to_channel(alert, user, c) for c in channels))
        )

        successful = [r.channel for r in results if r.success]
        failed = [r.channel for r in results if not r.success]
        errors = [f"{r.channel}: {r.error or 'Delivery failed'}" for r in results if not r.success]
        if not channels:
            errors.append("No eligible delivery channels")

        result = DeliveryResult(
            success=bool(successful),
            successful_channels=successful,
            failed_channels=failed,
            error="; ".join(errors) or None,
            channel_results=results,
        )

        if record:
            await self._record(alert, result)

        logger.info(
            f"Alert {alert.id} delivery completed: ok={successful} failed={failed}"
        )
        return result

    async def _record(self, alert: Alert, result: DeliveryResult) -> None:
        async with self.session_factory() as session:
            repo = AlertRepository(session)
            if result.success:
                await repo.mark_as_sent(str(alert.id), result.successful_channels)
            else:
                await repo.mark_as_failed(str(alert.id), result.error or "Delivery failed")
            await session.commit()

    async def process_pending_alerts(self, limit: int | None = None) -> dict:
        """Deliver every due pending alert. Returns counts for logging."""
        async with self.session_factory() as session:
            alerts = await AlertRepository(session).get_pending_alerts(limit)
            users_repo = UserRepository(session)
            users: dict[str, User | None] = {}
            for alert in alerts:
                uid = str(alert.user_id)
                if uid not in users:
                    users[uid] = await users_repo.get_by_id(uid)

        slots = asyncio.Semaphore(MAX_CONCURRENT_DELIVERIES)
        summary = {"processed": 0, "sent": 0, "failed": 0, "skipped": 0, "errors": 0}

        async def _one(alert: Alert) -> None:
            user = users.get(str(alert.user_id))
            if user is None:
                logger.warning(f"Skipping alert {alert.id}: user {alert.user_id} not found")
                summary["skipped"] += 1
                return
            try:
                async with slots:
                    result = await self.deliver_alert(alert, user, resolve_channels(alert, user))
            except Exception as e:
                logger.error(f"Failed to process alert {alert.id}: {e}", exc_info=True)
                summary["errors"] += 1
                return
            summary["processed"] += 1
            summary["sent" if result.success else "failed"] += 1

        await asyncio.gather(*(_one(a) for a in alerts))
        return summary
