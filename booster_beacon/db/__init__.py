from .database import Base, async_session_maker, close_db, engine, get_db, init_db
from .models import (
    Alert,
    AlertPriority,
    AlertStatus,
    AlertType,
    NotificationChannel,
    PriceHistory,
    Product,
    PushSubscription,
    Retailer,
    Transaction,
    User,
    Watch,
)

__all__ = [
    "Base",
    "async_session_maker",
    "close_db",
    "engine",
    "get_db",
    "init_db",
    "Alert",
    "AlertPriority",
    "AlertStatus",
    "AlertType",
    "NotificationChannel",
    "PriceHistory",
    "Product",
    "PushSubscription",
    "Retailer",
    "Transaction",
    "User",
    "Watch",
]
