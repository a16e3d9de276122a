"""
Storefront Schemas

Pydantic schemas for the checkout API, the draft snapshot persisted between
transaction initiation and webhook reconciliation, and the metadata payload
carried on processor transactions.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

METADATA_VERSION = "1"
TRANSACTION_KINDS = ("payment", "setup")


class CamelModel(BaseModel):
    """Accepts and emits camelCase field names on the wire"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CartLineRequest(CamelModel):
    """Cart line as submitted by the client"""

    price_id: str = Field(..., min_length=1, description="Processor price identifier")
    product_id: str = Field(..., min_length=1, description="Catalog product identifier")
    name: str = Field(..., min_length=1, max_length=255, description="Display name")
    quantity: int = Field(..., ge=1, le=100)
    price: Optional[Decimal] = Field(None, description="Client-side unit price; informational only")
    is_subscription: bool = Field(default=False)
    recurring_interval: Optional[str] = Field(None, description="day, week, month or year")


class ContactInfo(CamelModel):
    """Schema for checkout contact step"""

    email: EmailStr
    phone: Optional[str] = Field(None, max_length=50)


class ShippingAddress(CamelModel):
    """Schema for checkout shipping step"""

    full_name: str = Field(..., min_length=1, max_length=255)
    address1: str = Field(..., min_length=1, max_length=255)
    address2: Optional[str] = Field(None, max_length=255)
    city: str = Field(..., min_length=1, max_length=100)
    state: str = Field(..., min_length=1, max_length=100)
    postal_code: str = Field(..., min_length=1, max_length=20)
    country: str = Field(..., min_length=1, max_length=64)

    @field_validator("full_name", "address1", "city", "state", "postal_code", "country")
    @classmethod
    def not_blank(cls, v):
        if not v.strip():
            raise ValueError("must not be blank")
        return v.strip()


class CheckoutInitiationRequest(CamelModel):
    """Schema for POST /checkout/initiate"""

    items: List[CartLineRequest] = Field(..., min_length=1, max_length=50)
    contact: ContactInfo
    shipping: ShippingAddress
    notes: Optional[str] = Field(None, max_length=2000)
    saved_payment_method_id: Optional[str] = Field(None, description="Reuse this saved payment method")
    save_payment_method: bool = Field(default=False, description="Keep the new payment method for later")

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "items": [
                    {
                        "priceId": "price_1Nabc",
                        "productId": "prod_coffee",
                        "name": "House Blend 12oz",
                        "quantity": 2,
                        "price": "5.99",
                        "isSubscription": False,
                    }
                ],
                "contact": {"email": "ada@example.com", "phone": "+1 555 0100"},
                "shipping": {
                    "fullName": "Ada Lovelace",
                    "address1": "12 Analytical Way",
                    "city": "Portland",
                    "state": "OR",
                    "postalCode": "97201",
                    "country": "US",
                },
            }
        },
    )


class CheckoutInitiationResponse(CamelModel):
    """Schema for POST /checkout/initiate response"""

    client_secret: str
    draft_key: str
    transaction_kind: str
    amount_cents: int
    currency: str


class DraftLine(BaseModel):
    """Priced cart line frozen into a draft"""

    model_config = ConfigDict(frozen=True)

    price_id: str
    product_id: str
    product_name: str
    unit_amount_cents: int = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    is_recurring: bool = False
    recurring_interval: Optional[str] = None
    is_shipping: bool = False

    @property
    def line_total_cents(self) -> int:
        return self.unit_amount_cents * self.quantity


class DraftContext(BaseModel):
    """
    Everything needed to materialize an order without the client resending it.

    Prices here come from the processor's canonical price records, never from
    the submitted cart.
    """

    model_config = ConfigDict(frozen=True)

    user_id: Optional[str] = None
    lines: List[DraftLine] = Field(..., min_length=1)
    contact: ContactInfo
    shipping: ShippingAddress
    notes: Optional[str] = None
    saved_payment_method_id: Optional[str] = None
    save_payment_method: bool = False
    currency: str = "usd"

    @property
    def total_cents(self) -> int:
        return sum(line.line_total_cents for line in self.lines)

    @property
    def is_subscription_bearing(self) -> bool:
        return any(line.is_recurring for line in self.lines)

    @property
    def recurring_lines(self) -> List[DraftLine]:
        return [line for line in self.lines if line.is_recurring]

    @property
    def one_time_lines(self) -> List[DraftLine]:
        return [line for line in self.lines if not line.is_recurring]

    @property
    def transaction_kind(self) -> str:
        return "setup" if self.is_subscription_bearing else "payment"


class TransactionMetadata(BaseModel):
    """
    Versioned payload stored in a processor transaction's metadata.

    Processor metadata is a flat string map, so booleans travel as "true" /
    "false" and absent values are omitted.
    """

    model_config = ConfigDict(frozen=True)

    v: str = METADATA_VERSION
    draft_key: str = Field(..., min_length=1)
    kind: str
    user_id: Optional[str] = None
    saved_payment_method_id: Optional[str] = None
    save_payment_method: bool = False

    @field_validator("v")
    @classmethod
    def known_version(cls, v):
        if v != METADATA_VERSION:
            raise ValueError(f"unsupported metadata version {v}")
        return v

    @field_validator("kind")
    @classmethod
    def known_kind(cls, v):
        if v not in TRANSACTION_KINDS:
            raise ValueError(f"unknown transaction kind {v}")
        return v

    def to_stripe(self) -> Dict[str, str]:
        metadata = {
            "v": self.v,
            "draft_key": self.draft_key,
            "kind": self.kind,
            "save_payment_method": "true" if self.save_payment_method else "false",
        }
        if self.user_id:
            metadata["user_id"] = self.user_id
        if self.saved_payment_method_id:
            metadata["saved_payment_method_id"] = self.saved_payment_method_id
        return metadata

    @classmethod
    def from_stripe(cls, metadata: Optional[Dict[str, Any]]) -> Optional["TransactionMetadata"]:
        """Parse processor metadata; None when absent, malformed or from another version"""
        if not metadata:
            return None
        data = dict(metadata)
        data["save_payment_method"] = str(data.get("save_payment_method", "false")).lower() == "true"
        try:
            return cls.model_validate(data)
        except ValidationError:
            return None


class OrderItemSummary(CamelModel):
    product_id: str
    product_name: str
    quantity: int
    unit_price_cents: int


class OrderSummary(CamelModel):
    """Order as shown on the confirmation page"""

    id: str
    status: str
    total_cents: int
    currency: str
    contact_email: str
    created_at: Optional[datetime] = None
    items: List[OrderItemSummary] = Field(default_factory=list)


class SubscriptionSummary(CamelModel):
    stripe_subscription_id: str
    stripe_price_id: str
    status: str
    interval: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    collection_paused: bool = False


class IntentStatusResponse(CamelModel):
    """Processor status of a transaction plus anything materialized from it"""

    intent_id: str
    status: str
    draft_key: Optional[str] = None
    order: Optional[OrderSummary] = None
    subscriptions: List[SubscriptionSummary] = Field(default_factory=list)


class WebhookEventResponse(BaseModel):
    """Schema for webhook processing response"""

    success: bool
    status: str
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    message: Optional[str] = None


class ErrorResponse(BaseModel):
    """Schema for API error responses"""

    error: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
