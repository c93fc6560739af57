from .alert_repository import AlertRepository
from .product_repository import ProductRepository
from .user_repository import UserRepository
from .watch_repository import WatchRepository

__all__ = [
    "AlertRepository",
    "ProductRepository",
    "UserRepository",
    "WatchRepository",
]
