"""
Storefront Checkout

Transaction initiation: prices a submitted cart from the processor's
canonical price records, snapshots it into a checkout draft and opens either
a one-time payment or a setup transaction that carries the draft key back to
the webhook.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import (
    AuthenticationRequired,
    ConfigurationError,
    InvalidLineItem,
    TransactionError,
    ValidationError,
)
from core.logging import get_logger
from database.models import User
from database.session import transaction

from .drafts import DraftStore
from .models import SavedCard
from .schemas import (
    CartLineRequest,
    CheckoutInitiationRequest,
    DraftContext,
    DraftLine,
    TransactionMetadata,
)
from .stripe_client import StripeClient, StripeError, format_amount_for_stripe, format_amount_from_stripe

logger = get_logger(__name__, domain="storefront")


class CheckoutConfig:
    """Configuration for checkout flow"""

    def __init__(
        self,
        currency: Optional[str] = None,
        shipping_rate_price_id: Optional[str] = None,
    ):
        self.currency = (currency or settings.currency).lower()
        self.shipping_rate_price_id = (
            shipping_rate_price_id if shipping_rate_price_id is not None else settings.shipping_rate_price_id
        )


@dataclass(frozen=True)
class InitiationResult:
    client_secret: str
    draft_key: str
    transaction_kind: str
    amount_cents: int
    currency: str


class TransactionInitiator:
    """
    Opens the processor transaction for a checkout.

    Nothing is written to orders or subscriptions here; those appear only
    when the reconciler sees the transaction succeed.
    """

    def __init__(
        self,
        stripe_client: StripeClient,
        draft_store: DraftStore,
        config: Optional[CheckoutConfig] = None,
    ):
        self.stripe_client = stripe_client
        self.draft_store = draft_store
        self.config = config or CheckoutConfig()

    def initiate(
        self,
        request: CheckoutInitiationRequest,
        db: Session,
        user: Optional[User] = None,
    ) -> InitiationResult:
        if user is None and any(line.is_subscription for line in request.items):
            raise AuthenticationRequired("Login is required to purchase subscriptions.")

        lines = [self._price_line(line) for line in request.items]
        subscription_bearing = any(line.is_recurring for line in lines)

        # Client may under-declare a recurring price; the price record decides
        if subscription_bearing and user is None:
            raise AuthenticationRequired("Login is required to purchase subscriptions.")

        if not subscription_bearing and self.config.shipping_rate_price_id:
            lines.append(self._shipping_line())

        saved_payment_method_id = request.saved_payment_method_id
        if saved_payment_method_id:
            self._check_saved_method(db, user, saved_payment_method_id)

        save_payment_method = request.save_payment_method and user is not None
        if request.save_payment_method and user is None:
            logger.info("Ignoring save-payment-method request for guest checkout")

        context = DraftContext(
            user_id=user.id if user else None,
            lines=lines,
            contact=request.contact,
            shipping=request.shipping,
            notes=request.notes,
            saved_payment_method_id=saved_payment_method_id,
            save_payment_method=save_payment_method,
            currency=self.config.currency,
        )

        if context.transaction_kind == "payment" and context.total_cents <= 0:
            raise ValidationError("Order total must be greater than zero", field="items")

        customer_id = None
        if subscription_bearing or save_payment_method or saved_payment_method_id:
            customer_id = self._resolve_customer(db, user, request)

        draft_key = self.draft_store.create(context)
        metadata = TransactionMetadata(
            draft_key=draft_key,
            kind=context.transaction_kind,
            user_id=context.user_id,
            saved_payment_method_id=saved_payment_method_id,
            save_payment_method=save_payment_method or subscription_bearing,
        ).to_stripe()

        try:
            if subscription_bearing:
                intent = self.stripe_client.create_setup_intent(
                    customer_id=customer_id,
                    metadata=metadata,
                    payment_method_id=saved_payment_method_id,
                )
            else:
                intent = self.stripe_client.create_payment_intent(
                    amount_cents=context.total_cents,
                    currency=context.currency,
                    metadata=metadata,
                    customer_id=customer_id,
                    payment_method_id=saved_payment_method_id,
                    setup_future_usage="off_session" if save_payment_method else None,
                )
        except StripeError as e:
            # The draft is left to expire; no transaction references it
            logger.error(f"Processor refused to open {context.transaction_kind} transaction: {e}")
            raise TransactionError(reason=str(e), error_code=e.error_code)

        logger.info(
            "Checkout transaction opened",
            extra={
                "draft_key_prefix": draft_key[:8],
                "transaction_kind": context.transaction_kind,
                "amount": str(format_amount_from_stripe(context.total_cents)),
                "intent_id": intent["id"],
            },
        )

        return InitiationResult(
            client_secret=intent["client_secret"],
            draft_key=draft_key,
            transaction_kind=context.transaction_kind,
            amount_cents=context.total_cents,
            currency=context.currency,
        )

    def _price_line(self, line: CartLineRequest) -> DraftLine:
        """Build a draft line from the canonical price, ignoring the client's amount"""
        price = self._retrieve_price(line.price_id)

        if not price["active"] or price["unit_amount"] is None:
            raise InvalidLineItem(line.price_id, "inactive")

        interval = price["recurring_interval"]
        if line.is_subscription and not interval:
            raise InvalidLineItem(line.price_id, "not_recurring")

        if line.price is not None and format_amount_for_stripe(line.price) != price["unit_amount"]:
            logger.warning(
                f"Client price for {line.price_id} differs from canonical price",
                extra={"client_amount": str(line.price), "unit_amount": price["unit_amount"]},
            )

        return DraftLine(
            price_id=line.price_id,
            product_id=line.product_id,
            product_name=line.name,
            unit_amount_cents=price["unit_amount"],
            quantity=line.quantity,
            is_recurring=interval is not None,
            recurring_interval=interval,
        )

    def _shipping_line(self) -> DraftLine:
        price_id = self.config.shipping_rate_price_id
        try:
            price = self.stripe_client.retrieve_price(price_id)
        except StripeError as e:
            raise ConfigurationError(f"Shipping rate price unavailable: {e}", setting="shipping_rate_price_id")

        if not price["active"] or price["unit_amount"] is None:
            raise ConfigurationError("Shipping rate price is inactive", setting="shipping_rate_price_id")

        return DraftLine(
            price_id=price_id,
            product_id=price["product"] or price_id,
            product_name=price["nickname"] or "Shipping",
            unit_amount_cents=price["unit_amount"],
            quantity=1,
            is_shipping=True,
        )

    def _retrieve_price(self, price_id: str) -> dict:
        try:
            return self.stripe_client.retrieve_price(price_id)
        except StripeError as e:
            if e.is_not_found:
                raise InvalidLineItem(price_id, "missing")
            raise TransactionError(reason=str(e))

    def _check_saved_method(self, db: Session, user: Optional[User], payment_method_id: str) -> None:
        owned = (
            user is not None
            and db.query(SavedCard)
            .filter(SavedCard.user_id == user.id, SavedCard.stripe_payment_method_id == payment_method_id)
            .first()
            is not None
        )
        if not owned:
            raise ValidationError("Saved payment method not found", field="savedPaymentMethodId")

    def _resolve_customer(self, db: Session, user: User, request: CheckoutInitiationRequest) -> str:
        """Billing identity for ``user``; looked up by the account email before creating, then remembered"""
        if user.stripe_customer_id:
            return user.stripe_customer_id

        shipping = request.shipping
        try:
            customer_id = self.stripe_client.find_or_create_customer(
                email=user.email,
                name=shipping.full_name,
                phone=request.contact.phone,
                shipping={
                    "name": shipping.full_name,
                    "phone": request.contact.phone,
                    "address": {
                        "line1": shipping.address1,
                        "line2": shipping.address2,
                        "city": shipping.city,
                        "state": shipping.state,
                        "postal_code": shipping.postal_code,
                        "country": shipping.country,
                    },
                },
                metadata={"internal_user_id": user.id},
            )
        except StripeError as e:
            raise TransactionError(reason=str(e))

        holder = db.query(User.id).filter(User.stripe_customer_id == customer_id, User.id != user.id).first()
        if holder is not None:
            logger.error(f"Stripe customer {customer_id} is already linked to user {holder.id}")
            raise TransactionError(reason=f"Billing customer {customer_id} belongs to another account")

        try:
            with transaction(db):
                user.stripe_customer_id = customer_id
        except IntegrityError as e:
            raise TransactionError(reason=f"Could not link billing customer: {e.orig}")
        logger.info(f"Linked user {user.id} to Stripe customer {customer_id}")
        return customer_id

