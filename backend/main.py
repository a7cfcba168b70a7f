"""
FastAPI application entry point for the subscription entitlement service.

Authentication is performed upstream: the auth middleware in front of these
routes places the authenticated user ID on request.state.user_id.
"""

import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from src.api.routes import health
from src.api.routes import subscriptions
from src.api.routes import webhooks_stripe
from src.config.billing_plans import get_billing_plans_loader
from src.config.subscription import get_subscription_settings

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    settings = get_subscription_settings()
    logger.info("Starting subscription API", extra={"env": settings.env})

    app.state.billing_configured = bool(settings.stripe_secret_key)
    if not app.state.billing_configured:
        logger.warning(
            "STRIPE_SECRET_KEY is not set. Entitlements fall back to the local "
            "cache and checkout/portal endpoints will return 503."
        )
    if not settings.stripe_webhook_secret:
        logger.warning("STRIPE_WEBHOOK_SECRET is not set. Signed webhooks will be rejected.")

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        logger.error("DATABASE_URL is not set. Database-backed endpoints will return 503.")
        app.state.database_configured = False
    else:
        # Mask credentials for safe logging
        masked = database_url.split("@")[-1] if "@" in database_url else "(no credentials)"
        logger.info("DATABASE_URL configured", extra={"host_db": masked})
        app.state.database_configured = True

    plans = get_billing_plans_loader()
    logger.info("Billing plans loaded", extra={
        "plans": plans.plan_names(),
        "default_currency": plans.default_currency,
    })

    yield

    # Shutdown
    logger.info("Shutting down subscription API")


# Create FastAPI app
app = FastAPI(
    title="Subscription Entitlement API",
    description="Billing entitlements, trials and payment webhooks",
    version="1.0.0",
    lifespan=lifespan
)

cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include health route (bypasses authentication)
app.include_router(health.router)

# Include subscription routes (requires authentication)
app.include_router(subscriptions.router)

# Include Stripe webhook routes (uses signature verification, not auth)
app.include_router(webhooks_stripe.router)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions with proper logging."""
    logger.error(
        "Unhandled exception",
        extra={
            "user_id": getattr(request.state, "user_id", None),
            "error": str(exc),
            "error_type": type(exc).__name__,
            "path": request.url.path
        },
        exc_info=True
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"}
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
