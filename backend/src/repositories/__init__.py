"""Repository layer for users, roles and the local subscription cache."""

from src.db_base import Base
from src.repositories.subscription_repository import (
    SubscriptionRepository,
    WebhookEventRepository,
)
from src.repositories.user_repository import UserRepository

__all__ = [
    "Base",
    "SubscriptionRepository",
    "WebhookEventRepository",
    "UserRepository",
]
