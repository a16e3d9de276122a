"""
Storefront Models

Orders, subscriptions, saved cards and the transient checkout drafts they are
materialized from.
"""

import enum
import uuid
from decimal import Decimal

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    Boolean,
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database.base import Base, DatabaseAgnosticEnum
from database.models import User  # noqa: F401


def generate_uuid():
    """Generate a new UUID"""
    return str(uuid.uuid4())


class OrderStatus(str, enum.Enum):
    """Order fulfillment lifecycle"""

    PENDING = "PENDING"
    PAID = "PAID"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class SubscriptionStatus(str, enum.Enum):
    """Processor subscription statuses we act on; other values are stored verbatim"""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAUSED = "paused"


class CheckoutDraft(Base):
    """
    Server-side snapshot of a checkout, keyed by an unguessable token.

    Written once before the payment transaction is opened and consumed once
    when the transaction's success event is materialized.
    """

    __tablename__ = "checkout_drafts"

    key = Column(String(64), primary_key=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    data = Column(JSON, nullable=False)

    created_at = Column(TIMESTAMP, server_default=func.now(), nullable=False)
    expires_at = Column(TIMESTAMP, nullable=False)

    __table_args__ = (Index("idx_checkout_draft_created", "created_at"),)

    def __repr__(self):
        return f"<CheckoutDraft(key={self.key[:8]}..., expires_at={self.expires_at})>"


class Subscription(Base):
    """Local mirror of a processor subscription"""

    __tablename__ = "subscriptions"

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)

    stripe_subscription_id = Column(String(255), unique=True, nullable=False)
    stripe_price_id = Column(String(255), nullable=False)

    status = Column(String(50), nullable=False)
    interval = Column(String(20))
    current_period_end = Column(TIMESTAMP)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    collection_paused = Column(Boolean, default=False, nullable=False)

    checkout_draft_key = Column(String(64), nullable=True)

    created_at = Column(TIMESTAMP, server_default=func.now(), nullable=False)
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now(), nullable=False)

    user = relationship("User")
    orders = relationship("Order", back_populates="subscription")

    __table_args__ = (
        Index("idx_subscription_user", "user_id"),
        Index("idx_subscription_draft_key", "checkout_draft_key"),
    )

    def __repr__(self):
        return f"<Subscription(id={self.id}, stripe_id={self.stripe_subscription_id}, status={self.status})>"

    @property
    def is_paused(self) -> bool:
        return bool(self.collection_paused)

    @property
    def is_canceling(self) -> bool:
        return bool(self.cancel_at_period_end)

    @property
    def is_canceled(self) -> bool:
        return self.status == SubscriptionStatus.CANCELED.value


class Order(Base):
    """
    Customer order

    Created only by the materializer. ``checkout_draft_key`` and
    ``stripe_invoice_id`` are unique so a redelivered event cannot insert a
    second row for the same checkout or renewal invoice.
    """

    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=True)

    # Contact
    contact_email = Column(String(255), nullable=False)
    contact_phone = Column(String(50))

    # Shipping
    shipping_name = Column(String(255), nullable=False)
    shipping_address1 = Column(String(255), nullable=False)
    shipping_address2 = Column(String(255))
    shipping_city = Column(String(100), nullable=False)
    shipping_state = Column(String(100), nullable=False)
    shipping_postal_code = Column(String(20), nullable=False)
    shipping_country = Column(String(64), nullable=False)

    notes = Column(Text)

    total_cents = Column(Integer, nullable=False)
    currency = Column(String(3), default="usd", nullable=False)
    status = Column(DatabaseAgnosticEnum(OrderStatus), default=OrderStatus.PENDING, nullable=False)

    # Provenance
    checkout_draft_key = Column(String(64), unique=True, nullable=True)
    stripe_payment_intent_id = Column(String(255), unique=True, nullable=True)
    stripe_invoice_id = Column(String(255), unique=True, nullable=True)
    subscription_id = Column(String, ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True)

    created_at = Column(TIMESTAMP, server_default=func.now(), nullable=False)
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now(), nullable=False)

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    user = relationship("User")
    subscription = relationship("Subscription", back_populates="orders")

    __table_args__ = (
        Index("idx_order_status_created", "status", "created_at"),
        Index("idx_order_user", "user_id"),
        Index("idx_order_subscription", "subscription_id"),
        CheckConstraint("total_cents >= 0", name="check_order_total_positive"),
    )

    def __repr__(self):
        return f"<Order(id={self.id}, email={self.contact_email}, status={self.status}, total=${self.total_cents/100:.2f})>"

    @property
    def total_amount(self) -> Decimal:
        """Total in major currency units"""
        return Decimal(self.total_cents) / 100

    @property
    def is_renewal(self) -> bool:
        return self.stripe_invoice_id is not None

    def mark_status(self, status: OrderStatus) -> None:
        """Explicit status transition (fulfillment actions)"""
        if self.status == OrderStatus.CANCELLED and status != OrderStatus.CANCELLED:
            raise ValueError(f"Order {self.id} is cancelled")
        self.status = status


class OrderItem(Base):
    """Line item snapshot on an order"""

    __tablename__ = "order_items"

    id = Column(String, primary_key=True, default=generate_uuid)
    order_id = Column(String, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)

    product_id = Column(String(255), nullable=False)
    price_id = Column(String(255))
    product_name = Column(String(255), nullable=False)
    quantity = Column(Integer, default=1, nullable=False)
    unit_price_cents = Column(Integer, nullable=False)

    order = relationship("Order", back_populates="items")

    __table_args__ = (
        Index("idx_order_item_order", "order_id"),
        CheckConstraint("quantity > 0", name="check_item_quantity_positive"),
        CheckConstraint("unit_price_cents >= 0", name="check_item_unit_price_positive"),
    )

    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.quantity

    @property
    def unit_price(self) -> Decimal:
        return Decimal(self.unit_price_cents) / 100


class SavedCard(Base):
    """Card payment method retained at the processor for reuse"""

    __tablename__ = "saved_cards"

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    stripe_payment_method_id = Column(String(255), unique=True, nullable=False)
    brand = Column(String(50))
    last4 = Column(String(4))
    exp_month = Column(Integer)
    exp_year = Column(Integer)
    is_default = Column(Boolean, default=False, nullable=False)

    created_at = Column(TIMESTAMP, server_default=func.now(), nullable=False)

    user = relationship("User")

    __table_args__ = (Index("idx_saved_card_user", "user_id"),)

    def __repr__(self):
        return f"<SavedCard(id={self.id}, brand={self.brand}, last4={self.last4})>"
