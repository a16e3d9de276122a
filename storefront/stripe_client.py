"""
Storefront Stripe Client

Thin wrapper over the Stripe SDK for the calls checkout and reconciliation
need: canonical prices, customers, payment/setup intents, subscriptions,
payment methods and webhook verification. Results are returned as plain
dicts; SDK failures are re-raised as StripeError.
"""

import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import stripe

from core.config import settings
from core.exceptions import SignatureVerificationError
from core.logging import get_logger

logger = get_logger(__name__, domain="storefront")


class StripeConfig:
    """Configuration for Stripe integration"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        publishable_key: Optional[str] = None,
        api_version: Optional[str] = None,
        currency: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
        max_network_retries: Optional[int] = None,
    ):
        self.api_key = api_key or (
            settings.stripe_secret_key.get_secret_value() if settings.stripe_secret_key else "sk_test_mock_key_for_testing"
        )
        self.webhook_secret = webhook_secret or (
            settings.stripe_webhook_secret.get_secret_value()
            if settings.stripe_webhook_secret
            else "whsec_test_mock_secret"
        )
        self.publishable_key = publishable_key or settings.stripe_publishable_key
        self.api_version = api_version or settings.stripe_api_version
        self.currency = (currency or settings.currency).lower()
        self.timeout_seconds = timeout_seconds or settings.stripe_timeout_seconds
        self.max_network_retries = (
            settings.stripe_max_network_retries if max_network_retries is None else max_network_retries
        )

    @property
    def test_mode(self) -> bool:
        return self.api_key.startswith("sk_test_")


class StripeError(Exception):
    """Custom exception for Stripe-related errors"""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        error_type: Optional[str] = None,
        http_status: Optional[int] = None,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.error_type = error_type
        self.http_status = http_status

    @property
    def is_not_found(self) -> bool:
        return self.error_code == "resource_missing" or self.http_status == 404

    @classmethod
    def from_sdk(cls, action: str, exc: "stripe.StripeError") -> "StripeError":
        error = getattr(exc, "error", None)
        return cls(
            f"Failed to {action}: {exc.user_message or str(exc)}",
            error_code=getattr(exc, "code", None),
            error_type=getattr(error, "type", None) if error is not None else None,
            http_status=getattr(exc, "http_status", None),
        )


class StripeClient:
    """Stripe client for checkout, subscription and webhook operations"""

    def __init__(self, config: Optional[StripeConfig] = None):
        self.config = config or StripeConfig()

        stripe.api_key = self.config.api_key
        if self.config.api_version:
            stripe.api_version = self.config.api_version
        stripe.max_network_retries = self.config.max_network_retries
        stripe.default_http_client = stripe.RequestsClient(timeout=self.config.timeout_seconds)

        logger.info(f"Initialized Stripe client in {'test' if self.config.test_mode else 'live'} mode")

    # Prices

    def retrieve_price(self, price_id: str) -> Dict[str, Any]:
        """Fetch the canonical price record for a cart line"""
        try:
            price = stripe.Price.retrieve(price_id)
        except stripe.StripeError as e:
            logger.warning(f"Error retrieving price {price_id}: {e}")
            raise StripeError.from_sdk("retrieve price", e)

        recurring = price.get("recurring")
        return {
            "id": price["id"],
            "active": bool(price.get("active")),
            "unit_amount": price.get("unit_amount"),
            "currency": price.get("currency"),
            "product": expandable_id(price.get("product")),
            "nickname": price.get("nickname"),
            "recurring_interval": recurring.get("interval") if recurring else None,
        }

    # Customers

    def find_or_create_customer(
        self,
        email: str,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        shipping: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        """Return the billing identity for ``email``, creating one only if none exists"""
        try:
            existing = stripe.Customer.list(email=email, limit=1)
            if existing.data:
                customer_id = existing.data[0]["id"]
                logger.info(f"Reusing Stripe customer {customer_id}")
                return customer_id

            params: Dict[str, Any] = {"email": email, "metadata": metadata or {}}
            if name:
                params["name"] = name
            if phone:
                params["phone"] = phone
            if shipping:
                params["shipping"] = shipping
            customer = stripe.Customer.create(**params)
        except stripe.StripeError as e:
            logger.error(f"Error resolving customer: {e}")
            raise StripeError.from_sdk("resolve customer", e)

        logger.info(f"Created Stripe customer {customer['id']}")
        return customer["id"]

    # Intents

    def create_payment_intent(
        self,
        amount_cents: int,
        metadata: Dict[str, str],
        currency: Optional[str] = None,
        customer_id: Optional[str] = None,
        payment_method_id: Optional[str] = None,
        setup_future_usage: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Open a one-time charge for ``amount_cents``"""
        params: Dict[str, Any] = {
            "amount": amount_cents,
            "currency": currency or self.config.currency,
            "automatic_payment_methods": {"enabled": True},
            "metadata": metadata,
        }
        if customer_id:
            params["customer"] = customer_id
        if payment_method_id:
            params["payment_method"] = payment_method_id
        if setup_future_usage:
            params["setup_future_usage"] = setup_future_usage

        try:
            intent = stripe.PaymentIntent.create(**params)
        except stripe.StripeError as e:
            logger.error(f"Error creating payment intent: {e}")
            raise StripeError.from_sdk("create payment intent", e)

        logger.info(f"Created payment intent {intent['id']} for {amount_cents} cents")
        return _intent_to_dict(intent)

    def create_setup_intent(
        self,
        customer_id: str,
        metadata: Dict[str, str],
        payment_method_id: Optional[str] = None,
        usage: str = "off_session",
    ) -> Dict[str, Any]:
        """Open a setup transaction that saves a payment method for off-session billing"""
        params: Dict[str, Any] = {
            "customer": customer_id,
            "usage": usage,
            "automatic_payment_methods": {"enabled": True},
            "metadata": metadata,
        }
        if payment_method_id:
            params["payment_method"] = payment_method_id

        try:
            intent = stripe.SetupIntent.create(**params)
        except stripe.StripeError as e:
            logger.error(f"Error creating setup intent: {e}")
            raise StripeError.from_sdk("create setup intent", e)

        logger.info(f"Created setup intent {intent['id']} for customer {customer_id}")
        return _intent_to_dict(intent)

    def retrieve_payment_intent(self, intent_id: str) -> Dict[str, Any]:
        try:
            return _intent_to_dict(stripe.PaymentIntent.retrieve(intent_id))
        except stripe.StripeError as e:
            raise StripeError.from_sdk("retrieve payment intent", e)

    def retrieve_setup_intent(self, intent_id: str) -> Dict[str, Any]:
        try:
            return _intent_to_dict(stripe.SetupIntent.retrieve(intent_id))
        except stripe.StripeError as e:
            raise StripeError.from_sdk("retrieve setup intent", e)

    # Subscriptions

    def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        quantity: int,
        payment_method_id: str,
        metadata: Dict[str, str],
        add_invoice_items: Optional[List[Dict[str, Any]]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Start a subscription billed to ``payment_method_id``.

        With ``idempotency_key`` a retried call returns the subscription made
        by the first attempt instead of creating another one.
        """
        params: Dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id, "quantity": quantity}],
            "default_payment_method": payment_method_id,
            "metadata": metadata,
        }
        if add_invoice_items:
            params["add_invoice_items"] = add_invoice_items
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        try:
            subscription = stripe.Subscription.create(**params)
        except stripe.StripeError as e:
            logger.error(f"Error creating subscription for price {price_id}: {e}")
            raise StripeError.from_sdk("create subscription", e)

        logger.info(f"Created subscription {subscription['id']} for customer {customer_id}")
        return subscription_to_dict(subscription)

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        try:
            return subscription_to_dict(stripe.Subscription.retrieve(subscription_id))
        except stripe.StripeError as e:
            raise StripeError.from_sdk("retrieve subscription", e)

    def update_subscription(self, subscription_id: str, **params) -> Dict[str, Any]:
        """Modify a subscription (cancel_at_period_end, pause_collection, ...)"""
        try:
            subscription = stripe.Subscription.modify(subscription_id, **params)
        except stripe.StripeError as e:
            logger.error(f"Error updating subscription {subscription_id}: {e}")
            raise StripeError.from_sdk("update subscription", e)

        logger.info(f"Updated subscription {subscription_id}: {sorted(params)}")
        return subscription_to_dict(subscription)

    # Payment methods

    def retrieve_payment_method(self, payment_method_id: str) -> Dict[str, Any]:
        try:
            method = stripe.PaymentMethod.retrieve(payment_method_id)
        except stripe.StripeError as e:
            raise StripeError.from_sdk("retrieve payment method", e)

        card = method.get("card") or {}
        return {
            "id": method["id"],
            "type": method.get("type"),
            "customer": expandable_id(method.get("customer")),
            "brand": card.get("brand"),
            "last4": card.get("last4"),
            "exp_month": card.get("exp_month"),
            "exp_year": card.get("exp_year"),
        }

    def detach_payment_method(self, payment_method_id: str) -> None:
        try:
            stripe.PaymentMethod.detach(payment_method_id)
        except stripe.StripeError as e:
            logger.error(f"Error detaching payment method {payment_method_id}: {e}")
            raise StripeError.from_sdk("detach payment method", e)

        logger.info(f"Detached payment method {payment_method_id}")

    # Webhooks

    def construct_webhook_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify ``signature`` over the raw ``payload`` and return the event as a dict.

        Raises SignatureVerificationError for a missing or bad signature or an
        unparseable body.
        """
        if not signature:
            raise SignatureVerificationError("Missing webhook signature header")

        try:
            stripe.Webhook.construct_event(payload, signature, self.config.webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise SignatureVerificationError(f"Invalid webhook signature: {e}") from e
        except ValueError as e:
            raise SignatureVerificationError(f"Invalid webhook payload: {e}") from e

        return json.loads(payload)

    def get_status(self) -> Dict[str, Any]:
        """Get client status for monitoring"""
        return {
            "test_mode": self.config.test_mode,
            "api_version": self.config.api_version,
            "currency": self.config.currency,
            "webhook_configured": bool(self.config.webhook_secret),
        }


def expandable_id(value: Any) -> Optional[str]:
    """Id of a field that may be either an id string or an expanded object"""
    if value is None or isinstance(value, str):
        return value
    return value.get("id")


def _intent_to_dict(intent: Any) -> Dict[str, Any]:
    return {
        "id": intent["id"],
        "client_secret": intent.get("client_secret"),
        "status": intent.get("status"),
        "amount": intent.get("amount"),
        "customer": expandable_id(intent.get("customer")),
        "payment_method": expandable_id(intent.get("payment_method")),
        "metadata": dict(intent.get("metadata") or {}),
    }


def subscription_to_dict(subscription: Any) -> Dict[str, Any]:
    return {
        "id": subscription["id"],
        "status": subscription.get("status"),
        "customer": expandable_id(subscription.get("customer")),
        "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
        "pause_collection": subscription.get("pause_collection"),
        "current_period_end": subscription_period_end(subscription),
        "metadata": dict(subscription.get("metadata") or {}),
    }


def subscription_period_end(subscription: Any) -> Optional[datetime]:
    """
    Current period end as a naive UTC datetime.

    Newer API versions report the period on each subscription item rather
    than on the subscription itself.
    """
    timestamp = subscription.get("current_period_end")
    if timestamp is None:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            timestamp = items[0].get("current_period_end")
    if timestamp is None:
        return None
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc).replace(tzinfo=None)


def invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    """Subscription an invoice bills, wherever the API version puts it"""
    subscription = invoice.get("subscription")
    if subscription:
        return expandable_id(subscription)
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return expandable_id(details.get("subscription"))


def format_amount_for_stripe(amount: Decimal) -> int:
    """Convert a major-unit amount to cents for Stripe"""
    return int((amount * 100).to_integral_value())


def format_amount_from_stripe(amount_cents: int) -> Decimal:
    """Convert cents from Stripe to a major-unit amount"""
    return Decimal(amount_cents) / 100


PAUSE_BEHAVIOR = "mark_uncollectible"

RENEWAL_BILLING_REASONS = ("subscription_cycle", "subscription_update")
