"""
Storefront Webhook Handlers

Handlers for the Stripe events that drive order materialization and
subscription status sync. Each handler receives the event's ``data`` dict and
a database session, and returns a result dict for the processor.
"""

from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from core.exceptions import AlreadyProcessed
from core.logging import get_logger
from database.session import transaction

from .drafts import DraftStore
from .materializer import OrderMaterializer
from .models import SubscriptionStatus
from .schemas import TransactionMetadata
from .stripe_client import (
    RENEWAL_BILLING_REASONS,
    StripeClient,
    expandable_id,
    invoice_subscription_id,
    subscription_to_dict,
)
from .subscriptions import apply_subscription_update, sync_from_stripe
from .webhooks import WebhookStatus

logger = get_logger(__name__, domain="storefront")


def _completed(**data) -> Dict[str, Any]:
    return {"success": True, "status": WebhookStatus.COMPLETED.value, "data": data}


def _ignored(reason: str, **data) -> Dict[str, Any]:
    return {"success": True, "status": WebhookStatus.IGNORED.value, "reason": reason, "data": data}


class BaseWebhookHandler:
    """Base class for webhook event handlers"""

    def __init__(self, stripe_client: StripeClient, draft_store: DraftStore, materializer: OrderMaterializer):
        self.stripe_client = stripe_client
        self.draft_store = draft_store
        self.materializer = materializer

    def _checkout_metadata(self, obj: Dict[str, Any], kind: str) -> Optional[TransactionMetadata]:
        """Typed checkout metadata of ``obj`` if it belongs to a ``kind`` checkout transaction"""
        metadata = TransactionMetadata.from_stripe(obj.get("metadata"))
        if metadata is None:
            logger.info(f"No usable checkout metadata on {obj.get('id')}")
            return None
        if metadata.kind != kind:
            return None
        return metadata


class CheckoutCompletionHandler(BaseWebhookHandler):
    """Turns a succeeded checkout transaction into an order"""

    def handle_payment_succeeded(self, session: Session, event_data: Dict[str, Any], event_id: str) -> Dict[str, Any]:
        """payment_intent.succeeded for a one-time checkout"""
        intent = event_data.get("object", {})
        metadata = self._checkout_metadata(intent, "payment")
        if metadata is None:
            return _ignored("Not a one-time checkout transaction", payment_intent_id=intent.get("id"))

        context = self.draft_store.load(session, metadata.draft_key)
        if context is None:
            raise AlreadyProcessed(payment_intent_id=intent.get("id"))

        if context.is_subscription_bearing:
            return _ignored("Subscription checkout completes on setup", payment_intent_id=intent.get("id"))

        received = intent.get("amount_received") or intent.get("amount")
        if received is not None and received != context.total_cents:
            logger.warning(
                "Charged amount differs from draft total",
                extra={"payment_intent_id": intent.get("id"), "charged": received, "expected": context.total_cents},
            )

        order = self.materializer.materialize_checkout(
            session,
            metadata.draft_key,
            context,
            payment_method_id=expandable_id(intent.get("payment_method")),
            customer_id=expandable_id(intent.get("customer")),
            payment_intent_id=intent.get("id"),
        )
        return _completed(order_id=order.id, total_cents=order.total_cents)

    def handle_setup_succeeded(self, session: Session, event_data: Dict[str, Any], event_id: str) -> Dict[str, Any]:
        """setup_intent.succeeded for a subscription checkout"""
        setup_intent = event_data.get("object", {})
        metadata = self._checkout_metadata(setup_intent, "setup")
        if metadata is None:
            return _ignored("Not a subscription checkout transaction", setup_intent_id=setup_intent.get("id"))

        customer_id = expandable_id(setup_intent.get("customer"))
        payment_method_id = expandable_id(setup_intent.get("payment_method"))
        if not customer_id or not payment_method_id:
            logger.error(f"Setup intent {setup_intent.get('id')} succeeded without customer or payment method")
            return _ignored("Missing customer or payment method", setup_intent_id=setup_intent.get("id"))

        context = self.draft_store.load(session, metadata.draft_key)
        if context is None:
            raise AlreadyProcessed(setup_intent_id=setup_intent.get("id"))

        order = self.materializer.materialize_checkout(
            session,
            metadata.draft_key,
            context,
            payment_method_id=payment_method_id,
            customer_id=customer_id,
        )
        return _completed(order_id=order.id, subscription_id=order.subscription_id)

    def handle_transaction_failed(self, session: Session, event_data: Dict[str, Any], event_id: str) -> Dict[str, Any]:
        """payment_intent.payment_failed / setup_intent.setup_failed; the draft stays for a retry"""
        obj = event_data.get("object", {})
        error = obj.get("last_payment_error") or obj.get("last_setup_error") or {}
        logger.warning(
            f"Checkout transaction {obj.get('id')} failed",
            extra={"decline_code": error.get("decline_code"), "error_type": error.get("type")},
        )
        return _ignored("Transaction failed; awaiting customer retry", intent_id=obj.get("id"))


class SubscriptionHandler(BaseWebhookHandler):
    """Keeps local subscriptions in step with the processor"""

    def handle_subscription_created(self, session: Session, event_data: Dict[str, Any], event_id: str) -> Dict[str, Any]:
        subscription = event_data.get("object", {})
        logger.info(f"Subscription {subscription.get('id')} created at processor")
        return _ignored("Created during checkout materialization", stripe_subscription_id=subscription.get("id"))

    def handle_subscription_updated(self, session: Session, event_data: Dict[str, Any], event_id: str) -> Dict[str, Any]:
        return self._sync(session, event_data.get("object", {}))

    def handle_subscription_deleted(self, session: Session, event_data: Dict[str, Any], event_id: str) -> Dict[str, Any]:
        return self._sync(session, event_data.get("object", {}), status=SubscriptionStatus.CANCELED.value)

    def _sync(self, session: Session, obj: Dict[str, Any], status: Optional[str] = None) -> Dict[str, Any]:
        remote = subscription_to_dict(obj)
        with transaction(session):
            found = sync_from_stripe(session, remote, status=status)

        if not found:
            logger.warning(f"No local subscription for {remote['id']}; nothing to reconcile")
            return _ignored("Unknown subscription", stripe_subscription_id=remote["id"])

        return _completed(stripe_subscription_id=remote["id"], status=status or remote["status"])


class InvoiceHandler(BaseWebhookHandler):
    """Renewal orders and payment-failure status"""

    def handle_invoice_paid(self, session: Session, event_data: Dict[str, Any], event_id: str) -> Dict[str, Any]:
        invoice = event_data.get("object", {})
        stripe_subscription_id = invoice_subscription_id(invoice)

        if invoice.get("status") != "paid" or not stripe_subscription_id:
            return _ignored("Not a paid subscription invoice", invoice_id=invoice.get("id"))
        if invoice.get("billing_reason") not in RENEWAL_BILLING_REASONS:
            return _ignored(f"Billing reason {invoice.get('billing_reason')} is not a renewal", invoice_id=invoice.get("id"))

        order = self.materializer.materialize_renewal(session, invoice)
        return _completed(order_id=order.id, stripe_subscription_id=stripe_subscription_id)

    def handle_invoice_payment_failed(self, session: Session, event_data: Dict[str, Any], event_id: str) -> Dict[str, Any]:
        invoice = event_data.get("object", {})
        stripe_subscription_id = invoice_subscription_id(invoice)
        if not stripe_subscription_id:
            return _ignored("Invoice has no subscription", invoice_id=invoice.get("id"))

        with transaction(session):
            found = apply_subscription_update(
                session, stripe_subscription_id, status=SubscriptionStatus.PAST_DUE.value
            )

        if not found:
            logger.warning(f"Payment failed for unknown subscription {stripe_subscription_id}")
            return _ignored("Unknown subscription", stripe_subscription_id=stripe_subscription_id)

        logger.info(f"Subscription {stripe_subscription_id} marked past_due")
        return _completed(stripe_subscription_id=stripe_subscription_id, status=SubscriptionStatus.PAST_DUE.value)
