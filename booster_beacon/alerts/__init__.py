"""Alert delivery channels, web push and the delivery service."""

from .channels import (
    CHANNEL_REGISTRY,
    ChannelDeliveryResult,
    ChannelSendError,
    DeliveryChannel,
    DiscordChannel,
    EmailChannel,
    SMSChannel,
    WebhookChannel,
    WebPushChannel,
    get_channel,
)
from .delivery import AlertDeliveryService, DeliveryResult, resolve_channels, validate_channel_config
from .push import PushNotificationService, build_push_payload

__all__ = [
    "CHANNEL_REGISTRY",
    "ChannelDeliveryResult",
    "ChannelSendError",
    "DeliveryChannel",
    "DiscordChannel",
    "EmailChannel",
    "SMSChannel",
    "WebhookChannel",
    "WebPushChannel",
    "get_channel",
    "AlertDeliveryService",
    "DeliveryResult",
    "resolve_channels",
    "validate_channel_config",
    "PushNotificationService",
    "build_push_payload",
]
