"""
Order/Subscription Materializer

The transactional write path behind the webhook reconciler. Every method runs
as a single database transaction: either the order, its items, any
subscriptions and the draft deletion all land, or none of them do.
"""

from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from core.exceptions import AlreadyProcessed, MaterializationFailure
from core.logging import get_logger
from database.models import User
from database.session import transaction

from .drafts import DraftStore
from .models import Order, OrderItem, OrderStatus, SavedCard, Subscription
from .schemas import DraftContext, DraftLine
from .stripe_client import StripeClient, StripeError, invoice_subscription_id

logger = get_logger(__name__, domain="storefront")

NOT_AVAILABLE = "N/A"


class OrderMaterializer:
    """Turns successful processor events into Order and Subscription rows"""

    def __init__(self, stripe_client: StripeClient, draft_store: DraftStore):
        self.stripe_client = stripe_client
        self.draft_store = draft_store

    def materialize_checkout(
        self,
        session: Session,
        draft_key: str,
        context: DraftContext,
        payment_method_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
    ) -> Order:
        """
        Create the order for a consumed draft, plus one subscription per recurring line.

        Raises AlreadyProcessed when another delivery already created the
        order for ``draft_key``, and MaterializationFailure when anything else
        goes wrong (the draft survives for the processor's retry).
        """
        log = logger.with_context(draft_key_prefix=draft_key[:8])

        try:
            with transaction(session):
                order = self._order_from_draft(draft_key, context, payment_intent_id)
                session.add(order)
                # Claim the draft key before any processor side effects
                session.flush()

                if context.is_subscription_bearing:
                    subscriptions = self._create_subscriptions(
                        session, draft_key, context, payment_method_id, customer_id
                    )
                    order.subscription_id = subscriptions[0].id

                if payment_method_id and context.user_id and (context.save_payment_method or context.is_subscription_bearing):
                    self._record_saved_card(session, context.user_id, payment_method_id)

                self.draft_store.discard(session, draft_key)
        except IntegrityError as e:
            if not _order_exists(session, Order.checkout_draft_key == draft_key):
                log.exception("Checkout materialization failed on a constraint")
                raise MaterializationFailure(f"Could not materialize checkout: {e.orig}")
            log.info(f"Draft already materialized by another delivery: {e.orig}")
            self.draft_store.delete(draft_key)
            raise AlreadyProcessed(draft_key_prefix=draft_key[:8])
        except (StripeError, SQLAlchemyError) as e:
            log.exception("Checkout materialization failed")
            raise MaterializationFailure(f"Could not materialize checkout: {e}")

        log.info(
            "Order materialized",
            extra={"order_id": order.id, "total_cents": order.total_cents, "lines": len(context.lines)},
        )
        return order

    def materialize_renewal(self, session: Session, invoice: Dict[str, Any]) -> Order:
        """
        Record a paid renewal invoice: refresh the subscription and create its order together.

        Raises AlreadyProcessed for an invoice that already has an order and
        MaterializationFailure when the subscription is unknown or a write fails.
        """
        invoice_id = invoice["id"]
        stripe_subscription_id = invoice_subscription_id(invoice)
        log = logger.with_context(invoice_id=invoice_id, stripe_subscription_id=stripe_subscription_id)

        if _order_exists(session, Order.stripe_invoice_id == invoice_id):
            raise AlreadyProcessed(invoice_id=invoice_id)

        try:
            with transaction(session):
                subscription = (
                    session.query(Subscription)
                    .filter(Subscription.stripe_subscription_id == stripe_subscription_id)
                    .with_for_update()
                    .first()
                )
                if subscription is None:
                    raise MaterializationFailure(
                        f"No local subscription for {stripe_subscription_id}", invoice_id=invoice_id
                    )

                remote = self.stripe_client.retrieve_subscription(stripe_subscription_id)
                subscription.status = remote["status"]
                subscription.cancel_at_period_end = remote["cancel_at_period_end"]
                subscription.collection_paused = remote["pause_collection"] is not None
                if remote["current_period_end"] is not None:
                    subscription.current_period_end = remote["current_period_end"]

                order = self._order_from_invoice(session, invoice, subscription)
                session.add(order)
                session.flush()
        except IntegrityError as e:
            if not _order_exists(session, Order.stripe_invoice_id == invoice_id):
                log.exception("Renewal materialization failed on a constraint")
                raise MaterializationFailure(f"Could not record renewal: {e.orig}", invoice_id=invoice_id)
            log.info(f"Renewal already recorded by another delivery: {e.orig}")
            raise AlreadyProcessed(invoice_id=invoice_id)
        except (StripeError, SQLAlchemyError) as e:
            log.exception("Renewal materialization failed")
            raise MaterializationFailure(f"Could not record renewal: {e}", invoice_id=invoice_id)

        log.info("Renewal order materialized", extra={"order_id": order.id, "total_cents": order.total_cents})
        return order

    def _order_from_draft(
        self, draft_key: str, context: DraftContext, payment_intent_id: Optional[str]
    ) -> Order:
        shipping = context.shipping
        order = Order(
            user_id=context.user_id,
            contact_email=context.contact.email,
            contact_phone=context.contact.phone,
            shipping_name=shipping.full_name,
            shipping_address1=shipping.address1,
            shipping_address2=shipping.address2,
            shipping_city=shipping.city,
            shipping_state=shipping.state,
            shipping_postal_code=shipping.postal_code,
            shipping_country=shipping.country,
            notes=context.notes,
            total_cents=context.total_cents,
            currency=context.currency,
            status=OrderStatus.PAID,
            checkout_draft_key=draft_key,
            stripe_payment_intent_id=payment_intent_id,
        )
        order.items = [_order_item(line) for line in context.lines]
        return order

    def _create_subscriptions(
        self,
        session: Session,
        draft_key: str,
        context: DraftContext,
        payment_method_id: Optional[str],
        customer_id: Optional[str],
    ) -> List[Subscription]:
        if not payment_method_id or not customer_id:
            raise MaterializationFailure("Setup completed without a customer or payment method")

        # One-time lines ride on the first subscription's opening invoice
        pending_invoice_items = [
            {"price": line.price_id, "quantity": line.quantity} for line in context.one_time_lines
        ]

        subscriptions = []
        for line in context.recurring_lines:
            remote = self.stripe_client.create_subscription(
                customer_id=customer_id,
                price_id=line.price_id,
                quantity=line.quantity,
                payment_method_id=payment_method_id,
                metadata={"user_id": context.user_id or "", "draft_key": draft_key},
                add_invoice_items=pending_invoice_items or None,
                idempotency_key=f"checkout-{draft_key}-{line.price_id}",
            )
            pending_invoice_items = []

            subscription = Subscription(
                user_id=context.user_id,
                stripe_subscription_id=remote["id"],
                stripe_price_id=line.price_id,
                status=remote["status"],
                interval=line.recurring_interval,
                current_period_end=remote["current_period_end"],
                cancel_at_period_end=remote["cancel_at_period_end"],
                collection_paused=remote["pause_collection"] is not None,
                checkout_draft_key=draft_key,
            )
            session.add(subscription)
            subscriptions.append(subscription)

        session.flush()
        return subscriptions

    def _record_saved_card(self, session: Session, user_id: str, payment_method_id: str) -> None:
        exists = (
            session.query(SavedCard.id).filter(SavedCard.stripe_payment_method_id == payment_method_id).first()
        )
        if exists:
            return

        try:
            method = self.stripe_client.retrieve_payment_method(payment_method_id)
        except StripeError as e:
            logger.warning(f"Skipping saved card for {payment_method_id}: {e}")
            return

        if method["type"] != "card":
            return

        has_cards = session.query(SavedCard.id).filter(SavedCard.user_id == user_id).first() is not None
        session.add(
            SavedCard(
                user_id=user_id,
                stripe_payment_method_id=payment_method_id,
                brand=method["brand"],
                last4=method["last4"],
                exp_month=method["exp_month"],
                exp_year=method["exp_year"],
                is_default=not has_cards,
            )
        )

    def _order_from_invoice(self, session: Session, invoice: Dict[str, Any], subscription: Subscription) -> Order:
        owner = session.get(User, subscription.user_id)
        criteria = [Order.subscription_id == subscription.id]
        if subscription.checkout_draft_key:
            criteria.append(Order.checkout_draft_key == subscription.checkout_draft_key)
        previous = session.query(Order).filter(or_(*criteria)).order_by(Order.created_at.desc()).first()

        order = Order(
            user_id=subscription.user_id,
            contact_email=(owner.email if owner else None) or invoice.get("customer_email") or NOT_AVAILABLE,
            contact_phone=(owner.phone if owner else None) or invoice.get("customer_phone"),
            total_cents=invoice.get("amount_paid") or 0,
            currency=invoice.get("currency") or "usd",
            status=OrderStatus.PAID,
            stripe_invoice_id=invoice["id"],
            subscription_id=subscription.id,
            **_renewal_shipping(previous, invoice.get("customer_shipping")),
        )
        order.items = invoice_order_items(invoice)
        return order


def _order_exists(session: Session, criterion) -> bool:
    """Whether a committed order matches ``criterion``; separates a lost race from any other constraint failure"""
    return session.query(Order.id).filter(criterion).first() is not None


def _order_item(line: DraftLine) -> OrderItem:
    return OrderItem(
        product_id=line.product_id,
        price_id=line.price_id,
        product_name=line.product_name,
        quantity=line.quantity,
        unit_price_cents=line.unit_amount_cents,
    )


def _renewal_shipping(previous: Optional[Order], customer_shipping: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if previous is not None:
        return {
            "shipping_name": previous.shipping_name,
            "shipping_address1": previous.shipping_address1,
            "shipping_address2": previous.shipping_address2,
            "shipping_city": previous.shipping_city,
            "shipping_state": previous.shipping_state,
            "shipping_postal_code": previous.shipping_postal_code,
            "shipping_country": previous.shipping_country,
        }

    shipping = customer_shipping or {}
    address = shipping.get("address") or {}
    return {
        "shipping_name": shipping.get("name") or NOT_AVAILABLE,
        "shipping_address1": address.get("line1") or NOT_AVAILABLE,
        "shipping_address2": address.get("line2"),
        "shipping_city": address.get("city") or NOT_AVAILABLE,
        "shipping_state": address.get("state") or NOT_AVAILABLE,
        "shipping_postal_code": address.get("postal_code") or NOT_AVAILABLE,
        "shipping_country": address.get("country") or NOT_AVAILABLE,
    }


def invoice_order_items(invoice: Dict[str, Any]) -> List[OrderItem]:
    """Order items for the billed invoice lines; zero-amount lines are skipped"""
    items = []
    for line in (invoice.get("lines") or {}).get("data") or []:
        amount = line.get("amount") or 0
        if amount <= 0:
            continue

        quantity = line.get("quantity") or 1
        price = line.get("price") or {}
        price_details = (line.get("pricing") or {}).get("price_details") or {}
        product = price.get("product") or price_details.get("product")
        if isinstance(product, dict):
            product = product.get("id")

        items.append(
            OrderItem(
                product_id=product or NOT_AVAILABLE,
                price_id=price.get("id") or price_details.get("price"),
                product_name=line.get("description") or price.get("nickname") or "Subscription Item",
                quantity=quantity,
                unit_price_cents=amount // quantity,
            )
        )
    return items
