"""
Stripe Billing API client for subscription lookups and hosted sessions.

Talks to the Stripe REST API over httpx. Every call has a bounded timeout;
rate limits, 5xx responses and transport errors are retried with
exponential backoff before surfacing as BillingAPIError.

Documentation: https://docs.stripe.com/api/subscriptions
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import httpx

from src.config.subscription import SubscriptionSettings, get_subscription_settings
from src.platform.clock import from_timestamp

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Retry policy for transient gateway failures."""
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    retryable_status_codes: Tuple[int, ...] = (429, 500, 502, 503, 504)

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Backoff delay before retry number ``attempt`` (0-based)."""
        if retry_after is not None:
            return min(retry_after, self.max_delay)
        return min(self.initial_delay * (self.backoff_multiplier ** attempt), self.max_delay)


@dataclass
class RemoteSubscriptionItem:
    """A subscription line item as reported by the provider."""
    id: str
    price_ref: Optional[str] = None
    product_ref: Optional[str] = None
    quantity: int = 1


@dataclass
class RemoteSubscription:
    """Represents a Stripe Subscription from the API."""
    id: str
    customer_id: str
    status: str
    price_ref: Optional[str] = None
    quantity: int = 1
    trial_ends_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    items: List[RemoteSubscriptionItem] = field(default_factory=list)


@dataclass
class RemoteCustomer:
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    deleted: bool = False


@dataclass
class BillingSession:
    """Hosted checkout or billing portal session."""
    id: str
    url: str


class BillingAPIError(Exception):
    """Error communicating with the billing provider."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        response: Optional[dict] = None,
        retry_after: Optional[float] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.response = response
        self.retry_after = retry_after
        self.retryable = retryable


class BillingGateway(ABC):
    """Remote billing operations the subscription services depend on."""

    @abstractmethod
    async def list_subscriptions(
        self,
        customer_id: str,
        status: str = "all",
        limit: int = 100,
        paginate: bool = False,
    ) -> List[RemoteSubscription]:
        """List a customer's subscriptions, newest first."""

    @abstractmethod
    async def retrieve_customer(self, customer_id: str) -> RemoteCustomer:
        ...

    @abstractmethod
    async def create_customer(
        self,
        email: Optional[str],
        name: Optional[str],
        metadata: Optional[Dict[str, str]] = None,
    ) -> RemoteCustomer:
        ...

    @abstractmethod
    async def create_checkout_session(self, params: Dict[str, Any]) -> BillingSession:
        ...

    @abstractmethod
    async def create_billing_portal_session(
        self, customer_id: str, return_url: str
    ) -> BillingSession:
        ...

    async def close(self) -> None:
        """Release transport resources."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


def _encode_form(params: Dict[str, Any], prefix: str = "") -> List[Tuple[str, str]]:
    """
    Flatten nested params into Stripe's bracketed form encoding.

    {"line_items": [{"price": "p"}]} -> [("line_items[0][price]", "p")]
    """
    pairs: List[Tuple[str, str]] = []
    for key, value in params.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            pairs.extend(_encode_form(value, name))
        elif isinstance(value, (list, tuple)):
            for index, element in enumerate(value):
                element_name = f"{name}[{index}]"
                if isinstance(element, dict):
                    pairs.extend(_encode_form(element, element_name))
                else:
                    pairs.append((element_name, str(element)))
        elif isinstance(value, bool):
            pairs.append((name, "true" if value else "false"))
        else:
            pairs.append((name, str(value)))
    return pairs


def _parse_subscription(data: dict) -> RemoteSubscription:
    """Convert a Stripe subscription object; raises on malformed payloads."""
    try:
        items = []
        for item in (data.get("items") or {}).get("data", []):
            price = item.get("price") or {}
            product = price.get("product")
            if isinstance(product, dict):
                product = product.get("id")
            items.append(RemoteSubscriptionItem(
                id=item["id"],
                price_ref=price.get("id"),
                product_ref=product,
                quantity=int(item.get("quantity") or 1),
            ))

        customer = data["customer"]
        if isinstance(customer, dict):
            customer = customer["id"]

        ends_at = from_timestamp(data.get("cancel_at"))
        if ends_at is None and data.get("cancel_at_period_end"):
            ends_at = from_timestamp(data.get("current_period_end"))
        if ends_at is None and data.get("status") == "canceled":
            ends_at = from_timestamp(data.get("ended_at"))

        return RemoteSubscription(
            id=data["id"],
            customer_id=customer,
            status=data["status"],
            price_ref=items[0].price_ref if items else None,
            quantity=items[0].quantity if items else int(data.get("quantity") or 1),
            trial_ends_at=from_timestamp(data.get("trial_end")),
            ends_at=ends_at,
            created_at=from_timestamp(data.get("created")),
            items=items,
        )
    except (KeyError, TypeError, ValueError) as e:
        raise BillingAPIError(
            f"Malformed subscription payload: {e}",
            code="MALFORMED_PAYLOAD",
            response=data if isinstance(data, dict) else None,
        )


class StripeBillingClient(BillingGateway):
    """
    Client for Stripe Billing API operations.

    Handles:
    - Listing a customer's subscriptions
    - Retrieving and creating customers
    - Creating hosted checkout and billing portal sessions

    SECURITY: the secret key is sent only in the Authorization header and
    never logged.
    """

    def __init__(
        self,
        api_key: str,
        api_base: str = "https://api.stripe.com",
        timeout_seconds: float = 10.0,
        retry_config: Optional[RetryConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            api_key: Stripe secret key (sk_...)
            api_base: API base URL, overridable for stripe-mock
            timeout_seconds: Per-request timeout
            retry_config: Optional retry configuration
            transport: Optional httpx transport (tests)
        """
        if not api_key:
            raise ValueError("api_key is required")

        self.api_base = api_base.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.retry_config = retry_config or RetryConfig()

        self._client = httpx.AsyncClient(
            base_url=self.api_base,
            timeout=httpx.Timeout(timeout_seconds, connect=min(timeout_seconds, 10.0)),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Stripe-Version": "2024-06-20",
            },
            transport=transport,
        )

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    async def _request_once(
        self,
        method: str,
        path: str,
        params: Optional[List[Tuple[str, str]]] = None,
        data: Optional[List[Tuple[str, str]]] = None,
    ) -> dict:
        """
        Perform a single API request.

        Raises:
            BillingAPIError: If the call fails or returns a non-JSON body
        """
        try:
            if data is not None:
                response = await self._client.request(
                    method,
                    path,
                    params=params,
                    content=urlencode(data),
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
            else:
                response = await self._client.request(method, path, params=params)
        except httpx.TimeoutException as e:
            logger.warning("Stripe API timeout", extra={"path": path, "error": str(e)})
            raise BillingAPIError(f"Request timeout: {e}", code="TIMEOUT", retryable=True)
        except httpx.RequestError as e:
            logger.warning("Stripe API request error", extra={"path": path, "error": str(e)})
            raise BillingAPIError(f"Request error: {e}", code="TRANSPORT", retryable=True)

        if response.status_code == 401:
            logger.error("Stripe API authentication failed", extra={
                "path": path,
                "status_code": response.status_code
            })
            raise BillingAPIError(
                "Authentication failed - API key may be invalid or revoked",
                status_code=401,
                code="AUTH_ERROR",
            )

        if response.status_code == 429:
            try:
                retry_after = float(response.headers.get("Retry-After", 2.0))
            except (TypeError, ValueError):
                retry_after = 2.0
            logger.warning("Stripe API rate limited", extra={"path": path})
            raise BillingAPIError(
                "Rate limited - please retry after a delay",
                status_code=429,
                code="RATE_LIMITED",
                retry_after=retry_after,
                retryable=True,
            )

        if response.status_code >= 400:
            body = None
            try:
                body = response.json()
            except ValueError:
                pass
            logger.warning("Stripe API error", extra={
                "path": path,
                "status_code": response.status_code,
                "response_text": response.text[:500]
            })
            raise BillingAPIError(
                f"Stripe API error: {response.status_code}",
                status_code=response.status_code,
                code="SERVER_ERROR" if response.status_code >= 500 else "REQUEST_ERROR",
                response=body,
                retryable=response.status_code in self.retry_config.retryable_status_codes,
            )

        try:
            payload = response.json()
        except ValueError:
            raise BillingAPIError(
                "Stripe API returned a non-JSON body",
                status_code=response.status_code,
                code="MALFORMED_PAYLOAD",
            )
        if not isinstance(payload, dict):
            raise BillingAPIError(
                "Stripe API returned an unexpected body",
                status_code=response.status_code,
                code="MALFORMED_PAYLOAD",
            )
        return payload

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[List[Tuple[str, str]]] = None,
        data: Optional[List[Tuple[str, str]]] = None,
    ) -> dict:
        """Perform a request, retrying transient failures with backoff."""
        attempt = 0
        while True:
            try:
                return await self._request_once(method, path, params=params, data=data)
            except BillingAPIError as e:
                if not e.retryable or attempt >= self.retry_config.max_retries:
                    raise
                delay = self.retry_config.delay_for(attempt, e.retry_after)
                logger.info("Retrying Stripe API call", extra={
                    "path": path,
                    "attempt": attempt + 1,
                    "delay_seconds": delay,
                    "status_code": e.status_code,
                })
                attempt += 1
                await asyncio.sleep(delay)

    async def list_subscriptions(
        self,
        customer_id: str,
        status: str = "all",
        limit: int = 100,
        paginate: bool = False,
    ) -> List[RemoteSubscription]:
        """
        List a customer's subscriptions, newest first.

        Args:
            customer_id: Stripe customer ID (cus_...)
            status: Stripe status filter ("all" includes canceled)
            limit: Page size (1-100)
            paginate: Follow has_more cursors until exhausted

        Returns:
            List of RemoteSubscription
        """
        subscriptions: List[RemoteSubscription] = []
        starting_after: Optional[str] = None

        while True:
            params = [
                ("customer", customer_id),
                ("status", status),
                ("limit", str(max(1, min(limit, 100)))),
                ("expand[]", "data.items.data.price"),
            ]
            if starting_after:
                params.append(("starting_after", starting_after))

            payload = await self._request("GET", "/v1/subscriptions", params=params)
            data = payload.get("data")
            if not isinstance(data, list):
                raise BillingAPIError(
                    "Subscription list payload missing 'data'",
                    code="MALFORMED_PAYLOAD",
                    response=payload,
                )

            subscriptions.extend(_parse_subscription(item) for item in data)

            if not paginate or not payload.get("has_more") or not data:
                break
            starting_after = data[-1].get("id")

        logger.debug("Listed subscriptions", extra={
            "customer_id": customer_id,
            "count": len(subscriptions),
        })
        return subscriptions

    async def retrieve_customer(self, customer_id: str) -> RemoteCustomer:
        payload = await self._request("GET", f"/v1/customers/{customer_id}")
        return RemoteCustomer(
            id=payload.get("id", customer_id),
            email=payload.get("email"),
            name=payload.get("name"),
            deleted=bool(payload.get("deleted", False)),
        )

    async def create_customer(
        self,
        email: Optional[str],
        name: Optional[str],
        metadata: Optional[Dict[str, str]] = None,
    ) -> RemoteCustomer:
        payload = await self._request(
            "POST",
            "/v1/customers",
            data=_encode_form({"email": email, "name": name, "metadata": metadata or {}}),
        )
        if "id" not in payload:
            raise BillingAPIError("Customer payload missing 'id'", code="MALFORMED_PAYLOAD")

        logger.info("Stripe customer created", extra={"customer_id": payload["id"]})
        return RemoteCustomer(id=payload["id"], email=payload.get("email"), name=payload.get("name"))

    async def create_checkout_session(self, params: Dict[str, Any]) -> BillingSession:
        """
        Create a hosted Checkout session.

        Args:
            params: Checkout parameters (customer, mode, line_items,
                success_url, cancel_url, subscription_data)
        """
        payload = await self._request(
            "POST", "/v1/checkout/sessions", data=_encode_form(params)
        )
        if "id" not in payload or "url" not in payload:
            raise BillingAPIError("Checkout session payload incomplete", code="MALFORMED_PAYLOAD")
        return BillingSession(id=payload["id"], url=payload["url"])

    async def create_billing_portal_session(
        self, customer_id: str, return_url: str
    ) -> BillingSession:
        payload = await self._request(
            "POST",
            "/v1/billing_portal/sessions",
            data=_encode_form({"customer": customer_id, "return_url": return_url}),
        )
        if "id" not in payload or "url" not in payload:
            raise BillingAPIError("Portal session payload incomplete", code="MALFORMED_PAYLOAD")
        return BillingSession(id=payload["id"], url=payload["url"])


def get_billing_client(settings: Optional[SubscriptionSettings] = None) -> StripeBillingClient:
    """
    Factory function to create a StripeBillingClient from settings.

    Raises:
        ValueError: If STRIPE_SECRET_KEY is not configured
    """
    settings = settings or get_subscription_settings()
    if not settings.stripe_secret_key:
        raise ValueError("STRIPE_SECRET_KEY environment variable is not set")
    return StripeBillingClient(
        api_key=settings.stripe_secret_key,
        api_base=settings.stripe_api_base,
        timeout_seconds=settings.billing_api_timeout_seconds,
    )
