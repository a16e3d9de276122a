"""
Storefront Checkout & Payment Reconciliation

Checkout drafts, transaction initiation against Stripe, the client-side
checkout flow, and the webhook reconciler that turns succeeded transactions
into orders and subscriptions.
"""

from . import schemas
from .checkout import CheckoutConfig, InitiationResult, TransactionInitiator
from .drafts import DraftStore
from .flow import CheckoutFlow, FlowStep
from .materializer import OrderMaterializer
from .models import CheckoutDraft, Order, OrderItem, OrderStatus, SavedCard, Subscription, SubscriptionStatus
from .stripe_client import StripeClient, StripeConfig, StripeError
from .subscriptions import SubscriptionService
from .webhook_handlers import CheckoutCompletionHandler, InvoiceHandler, SubscriptionHandler
from .webhooks import WebhookEventType, WebhookProcessor, WebhookStatus

__all__ = [
    # Models
    "CheckoutDraft",
    "Order",
    "OrderItem",
    "OrderStatus",
    "SavedCard",
    "Subscription",
    "SubscriptionStatus",
    # Stripe Integration
    "StripeClient",
    "StripeConfig",
    "StripeError",
    # Checkout
    "CheckoutConfig",
    "CheckoutFlow",
    "DraftStore",
    "FlowStep",
    "InitiationResult",
    "TransactionInitiator",
    # Reconciliation
    "OrderMaterializer",
    "SubscriptionService",
    "WebhookProcessor",
    "WebhookEventType",
    "WebhookStatus",
    "CheckoutCompletionHandler",
    "SubscriptionHandler",
    "InvoiceHandler",
    "schemas",
]
