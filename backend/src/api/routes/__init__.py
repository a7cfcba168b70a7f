# API routes
from src.api.routes import health
from src.api.routes import subscriptions
from src.api.routes import webhooks_stripe

__all__ = ["health", "subscriptions", "webhooks_stripe"]
