"""
Storefront Webhooks

Stripe webhook processor: verifies each delivery's signature, routes the
event to its handler inside a fresh database session, and reports whether the
processor should consider the delivery handled or retry it.

No state is kept between deliveries. Duplicate and concurrent deliveries are
absorbed by the unique draft-key and invoice-id constraints on orders and by
idempotent subscription updates.
"""

from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from core.exceptions import AlreadyProcessed, MaterializationFailure
from core.logging import get_logger
from database.session import SessionLocal

from .drafts import DraftStore
from .materializer import OrderMaterializer
from .stripe_client import StripeClient

logger = get_logger(__name__, domain="storefront")


class WebhookEventType(Enum):
    """Stripe webhook event types we handle"""

    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"
    SETUP_INTENT_SUCCEEDED = "setup_intent.succeeded"
    SETUP_INTENT_FAILED = "setup_intent.setup_failed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


class WebhookStatus(Enum):
    """Webhook processing status"""

    COMPLETED = "completed"
    IGNORED = "ignored"
    FAILED = "failed"


class WebhookProcessor:
    """
    Main webhook processor for Stripe events

    ``process_webhook`` raises SignatureVerificationError for unauthentic
    deliveries; every other outcome is a result dict whose ``status`` is
    ``failed`` only when the delivery should be retried.
    """

    def __init__(
        self,
        stripe_client: StripeClient,
        draft_store: Optional[DraftStore] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        materializer: Optional[OrderMaterializer] = None,
    ):
        from .webhook_handlers import CheckoutCompletionHandler, InvoiceHandler, SubscriptionHandler

        self.stripe_client = stripe_client
        self.session_factory = session_factory
        self.draft_store = draft_store or DraftStore(session_factory=session_factory)
        self.materializer = materializer or OrderMaterializer(stripe_client, self.draft_store)

        handler_args = (self.stripe_client, self.draft_store, self.materializer)
        checkout = CheckoutCompletionHandler(*handler_args)
        subscriptions = SubscriptionHandler(*handler_args)
        invoices = InvoiceHandler(*handler_args)

        self._routes = {
            WebhookEventType.PAYMENT_INTENT_SUCCEEDED.value: checkout.handle_payment_succeeded,
            WebhookEventType.PAYMENT_INTENT_FAILED.value: checkout.handle_transaction_failed,
            WebhookEventType.SETUP_INTENT_SUCCEEDED.value: checkout.handle_setup_succeeded,
            WebhookEventType.SETUP_INTENT_FAILED.value: checkout.handle_transaction_failed,
            WebhookEventType.SUBSCRIPTION_CREATED.value: subscriptions.handle_subscription_created,
            WebhookEventType.SUBSCRIPTION_UPDATED.value: subscriptions.handle_subscription_updated,
            WebhookEventType.SUBSCRIPTION_DELETED.value: subscriptions.handle_subscription_deleted,
            WebhookEventType.INVOICE_PAID.value: invoices.handle_invoice_paid,
            WebhookEventType.INVOICE_PAYMENT_FAILED.value: invoices.handle_invoice_payment_failed,
        }

    def process_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify and process one delivery"""
        event = self.stripe_client.construct_webhook_event(payload, signature)
        return self.process_event(event)

    def process_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """Route an already-verified event to its handler"""
        event_id = event.get("id")
        event_type = event.get("type")
        event_data = event.get("data") or {}
        log = logger.with_context(event_id=event_id, event_type=event_type)

        handler = self._routes.get(event_type)
        if handler is None:
            log.info(f"Unhandled event type: {event_type}")
            return self._result(event, WebhookStatus.IGNORED, reason=f"Unhandled event type: {event_type}")

        log.info(f"Processing webhook event {event_id} of type {event_type}")

        session = self.session_factory()
        try:
            outcome = handler(session, event_data, event_id)
        except AlreadyProcessed as e:
            log.info(f"Event {event_id} already processed")
            return self._result(event, WebhookStatus.IGNORED, reason=e.message, data=e.details)
        except MaterializationFailure as e:
            log.error(f"Materialization failed for {event_id}: {e.message}")
            return self._result(event, WebhookStatus.FAILED, success=False, error=e.message)
        except Exception as e:
            log.exception(f"Unexpected error processing event {event_id}")
            return self._result(event, WebhookStatus.FAILED, success=False, error=f"Unexpected error: {e}")
        finally:
            session.close()

        return {**outcome, "event_id": event_id, "event_type": event_type}

    def get_supported_events(self) -> List[str]:
        """Get list of supported webhook event types"""
        return [event.value for event in WebhookEventType]

    @staticmethod
    def _result(
        event: Dict[str, Any],
        status: WebhookStatus,
        success: bool = True,
        **extra,
    ) -> Dict[str, Any]:
        return {
            "success": success,
            "status": status.value,
            "event_id": event.get("id"),
            "event_type": event.get("type"),
            **extra,
        }


def format_webhook_response_for_api(result: Dict[str, Any]) -> Dict[str, Any]:
    """Body returned to the processor for a processed delivery"""
    return {
        "success": result["success"],
        "status": result["status"],
        "event_id": result.get("event_id"),
        "event_type": result.get("event_type"),
        "message": result.get("reason") or result.get("error"),
    }
