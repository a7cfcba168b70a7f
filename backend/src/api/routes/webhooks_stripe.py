"""
Stripe webhook ingress for invoice payment events.

SECURITY: Every webhook MUST carry a valid Stripe-Signature header.
Stripe signs "{timestamp}.{raw body}" with HMAC-SHA256 using the endpoint
secret. The X-Stripe-Test bypass is honoured only outside production.

Documentation: https://docs.stripe.com/webhooks#verify-manually
"""

import hashlib
import hmac
import json
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from src.api.dependencies.billing import get_settings
from src.config.subscription import SubscriptionSettings
from src.database.session import get_db_session
from src.services.billing_webhook_handler import BillingWebhookHandler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks/stripe", tags=["webhooks"])

SIGNATURE_TOLERANCE_SECONDS = 300


class WebhookResponse(BaseModel):
    """Standard webhook response."""
    received: bool = True
    processed: bool = False
    message: str = "Webhook processed"
    skipped_reason: Optional[str] = None


def _parse_signature_header(header: str) -> Tuple[Optional[int], List[str]]:
    timestamp = None
    signatures = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def verify_stripe_signature(
    payload: bytes,
    signature_header: Optional[str],
    secret: Optional[str],
    tolerance: int = SIGNATURE_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> bool:
    """
    Verify a Stripe-Signature header.

    Args:
        payload: Raw request body bytes
        signature_header: Stripe-Signature header value
        secret: Webhook endpoint secret
        tolerance: Maximum age of the signed timestamp in seconds
        now: Current UNIX time (defaults to time.time())

    Returns:
        True if any v1 signature matches and the timestamp is fresh
    """
    if not signature_header or not secret:
        return False

    timestamp, signatures = _parse_signature_header(signature_header)
    if timestamp is None or not signatures:
        return False

    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance:
        logger.warning("Webhook signature timestamp outside tolerance", extra={
            "timestamp": timestamp,
        })
        return False

    signed_payload = f"{timestamp}.".encode("utf-8") + payload
    expected = hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()

    # Constant-time comparison to prevent timing attacks
    return any(hmac.compare_digest(expected, candidate) for candidate in signatures)


async def get_verified_event(
    request: Request,
    settings: SubscriptionSettings = Depends(get_settings),
) -> Dict[str, Any]:
    """
    Read, verify and parse the webhook body.

    Raises:
        HTTPException: 401 on a bad signature, 503 without a secret,
            400 on a malformed event
    """
    body = await request.body()

    test_bypass = request.headers.get("X-Stripe-Test", "").lower() == "true"
    if test_bypass and settings.allows_webhook_test_bypass:
        logger.info("Webhook signature check bypassed (test mode)", extra={"env": settings.env})
    else:
        if test_bypass:
            logger.warning("X-Stripe-Test header ignored", extra={"env": settings.env})

        if not settings.stripe_webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET not configured")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Webhook verification not configured"
            )

        signature = request.headers.get("Stripe-Signature")
        if not signature:
            logger.warning("Missing Stripe-Signature header in webhook")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Missing signature"
            )

        if not verify_stripe_signature(body, signature, settings.stripe_webhook_secret):
            logger.warning("Invalid webhook signature")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid signature"
            )

    try:
        event = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.error("Invalid JSON in webhook body")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON body"
        )

    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Event id and type are required"
        )
    return event


@router.post("", response_model=WebhookResponse)
async def handle_stripe_webhook(
    event: Dict[str, Any] = Depends(get_verified_event),
    db: Session = Depends(get_db_session),
    settings: SubscriptionSettings = Depends(get_settings),
):
    """
    Handle a Stripe webhook event.

    Any handler failure returns 500 so Stripe redelivers the event.
    """
    handler = BillingWebhookHandler(db, settings=settings)
    try:
        result = await handler.handle_event(event)
    except Exception as e:
        logger.error("Error processing Stripe webhook", extra={
            "event_id": event.get("id"),
            "event_type": event.get("type"),
            "error": str(e),
        })
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed"
        )

    return WebhookResponse(
        processed=result.processed,
        message=result.message,
        skipped_reason=result.skipped_reason,
    )
