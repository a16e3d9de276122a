"""
Storefront Checkout Flow

Client-side checkout state machine: auth choice, contact, shipping and payment
steps with their transition guards. The flow opens one processor transaction
per checkout session through the initiation endpoint, keeps the returned
secret and draft key in memory, and on submission stores only the draft key in
a durable slot before handing off to the processor's confirmation call.

The outcome of a checkout is never read from the confirmation call. Orders
appear once the webhook reconciler has materialized the draft.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import httpx

from core.config import settings
from core.exceptions import (
    AuthenticationRequired,
    PaymentConfirmationError,
    PersistenceError,
    PriceResolutionError,
    StorefrontError,
    TransactionError,
    ValidationError,
)
from core.logging import get_logger

logger = get_logger(__name__, domain="storefront")

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
DRAFT_KEY_SLOT = "checkoutDataForConfirmation"
SHIPPING_FIELDS = ("full_name", "address1", "city", "state", "postal_code", "country")
CONFIRMATION_ERROR_TYPES = ("card_error", "validation_error")
GENERIC_PAYMENT_ERROR = "An unexpected error occurred. Please try again."
LOGIN_PROMPT = "Please log in to purchase subscriptions."

InitiateFn = Callable[[Dict[str, Any], Optional[str]], Dict[str, Any]]
ConfirmFn = Callable[[str, str, Optional[str]], Optional[Dict[str, Any]]]


class FlowStep(str, Enum):
    """Checkout steps, in order"""

    AUTH_CHOICE = "auth_choice"
    CONTACT = "contact"
    SHIPPING = "shipping"
    PAYMENT = "payment"


@dataclass
class AccountProfile:
    """Logged-in customer as known to the client"""

    user_id: str
    email: str
    access_token: str
    phone: Optional[str] = None
    full_name: Optional[str] = None
    default_address: Optional[Dict[str, str]] = None


class AuthContext:
    """Holds the current account profile, if any"""

    def __init__(self, profile: Optional[AccountProfile] = None):
        self.profile = profile

    @property
    def is_authenticated(self) -> bool:
        return self.profile is not None

    @property
    def access_token(self) -> Optional[str]:
        return self.profile.access_token if self.profile else None

    def login(self, profile: AccountProfile):
        self.profile = profile

    def logout(self):
        self.profile = None


class CartContext:
    """Cart lines in the camelCase shape the initiation endpoint accepts"""

    def __init__(self, lines: Optional[List[Dict[str, Any]]] = None):
        self.lines = list(lines or [])

    @property
    def is_empty(self) -> bool:
        return not self.lines

    @property
    def has_subscription(self) -> bool:
        return any(line.get("isSubscription") for line in self.lines)

    def clear(self):
        self.lines = []


class DraftKeySlot(ABC):
    """Durable client-side slot holding the draft key across a redirect"""

    name = DRAFT_KEY_SLOT

    @abstractmethod
    def get(self) -> Optional[str]:
        pass

    @abstractmethod
    def set(self, value: str):
        pass

    @abstractmethod
    def clear(self):
        pass


class MemorySlot(DraftKeySlot):
    """In-process slot; stands in for session storage"""

    def __init__(self):
        self._value: Optional[str] = None

    def get(self) -> Optional[str]:
        return self._value

    def set(self, value: str):
        self._value = value

    def clear(self):
        self._value = None


class CheckoutApiClient:
    """Calls POST /checkout/initiate and maps failures onto storefront errors"""

    def __init__(self, base_url: Optional[str] = None, timeout: float = 10.0, transport=None):
        self.base_url = base_url or settings.base_url
        self.timeout = timeout
        self.transport = transport

    def initiate(self, payload: Dict[str, Any], access_token: Optional[str] = None) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {access_token}"} if access_token else {}

        try:
            with httpx.Client(
                base_url=self.base_url, timeout=httpx.Timeout(self.timeout), transport=self.transport
            ) as client:
                response = client.post("/checkout/initiate", json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.warning(f"Checkout initiation request failed: {e}")
            raise TransactionError(reason=str(e))

        if response.status_code == 200:
            return response.json()

        body = self._error_body(response)
        message = body.get("message") or "Checkout failed. Please try again."
        details = body.get("details") or {}

        if response.status_code >= 500:
            if body.get("error") == "PERSISTENCE_ERROR":
                raise PersistenceError(message)
            raise TransactionError(message, upstream_status=response.status_code)
        if response.status_code == 401:
            raise AuthenticationRequired(message)
        if body.get("error") == "PRICE_RESOLUTION_ERROR":
            raise PriceResolutionError(message, **details)
        raise ValidationError(message, field=details.get("field"))

    @staticmethod
    def _error_body(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}


@dataclass
class ConfirmationOutcome:
    """Result of handing off to the processor's confirmation call"""

    handed_off: bool
    error: Optional[PaymentConfirmationError] = None


@dataclass
class FlowState:
    step: FlowStep = FlowStep.AUTH_CHOICE
    completed: Dict[FlowStep, bool] = field(default_factory=lambda: {step: False for step in FlowStep})
    contact: Dict[str, str] = field(default_factory=dict)
    shipping: Dict[str, str] = field(default_factory=dict)
    field_errors: Dict[str, str] = field(default_factory=dict)
    banner: Optional[str] = None
    needs_login: bool = False
    payment_error: Optional[str] = None
    client_secret: Optional[str] = None
    draft_key: Optional[str] = None


class CheckoutFlow:
    """
    Checkout state machine

    Completion flags never reset. Editing a completed step re-enters it; a
    changed submission drops the opened transaction so the next entry into
    payment opens a fresh one, while an unchanged one keeps it.
    """

    def __init__(
        self,
        auth: AuthContext,
        cart: CartContext,
        confirm: ConfirmFn,
        initiate: Optional[InitiateFn] = None,
        slot: Optional[DraftKeySlot] = None,
    ):
        self.auth = auth
        self.cart = cart
        self.confirm = confirm
        self.initiate = initiate or CheckoutApiClient().initiate
        self.slot = slot or MemorySlot()
        self.state = FlowState()
        self.notes: Optional[str] = None
        self.saved_payment_method_id: Optional[str] = None
        self.save_payment_method = False
        self._initiating = False

    @property
    def step(self) -> FlowStep:
        return self.state.step

    def is_completed(self, step: FlowStep) -> bool:
        return self.state.completed[step]

    @property
    def has_transaction(self) -> bool:
        return bool(self.state.client_secret and self.state.draft_key)

    def start(self) -> FlowStep:
        """Enter the flow, skipping auth choice for logged-in customers"""
        if self.auth.is_authenticated:
            self._apply_profile()
        else:
            self.state.step = FlowStep.AUTH_CHOICE
        return self.state.step

    def continue_as_guest(self) -> FlowStep:
        self.state.completed[FlowStep.AUTH_CHOICE] = True
        self.state.step = FlowStep.CONTACT
        return self.state.step

    def login_succeeded(self, profile: AccountProfile) -> FlowStep:
        self.auth.login(profile)
        self.state.needs_login = False
        self.state.banner = None
        self._apply_profile()
        return self.state.step

    def submit_contact(self, email: str, phone: Optional[str]) -> bool:
        """Validate contact details and move on; False leaves the flow in contact"""
        contact = {"email": (email or "").strip(), "phone": (phone or "").strip()}
        errors = self._contact_errors(contact)
        self.state.field_errors = errors
        if errors:
            return False

        if contact != self.state.contact:
            self._drop_transaction()
        self.state.contact = contact
        self.state.completed[FlowStep.CONTACT] = True

        if self.state.completed[FlowStep.SHIPPING]:
            self.enter_payment()
        else:
            self.state.step = FlowStep.SHIPPING
        return True

    def submit_shipping(self, address: Dict[str, Any]) -> bool:
        """Validate the shipping address and enter payment"""
        shipping = {key: (address.get(key) or "").strip() for key in (*SHIPPING_FIELDS, "address2")}
        errors = {key: "This field is required." for key in SHIPPING_FIELDS if not shipping[key]}
        self.state.field_errors = errors
        if errors:
            return False

        if shipping != self.state.shipping:
            self._drop_transaction()
        self.state.shipping = shipping
        self.state.completed[FlowStep.SHIPPING] = True
        self.enter_payment()
        return True

    def edit(self, step: FlowStep) -> FlowStep:
        """Re-enter a completed step"""
        if step == FlowStep.AUTH_CHOICE and self.auth.is_authenticated:
            return self.state.step
        if self.state.completed[step] or step == self.state.step:
            self.state.step = step
            self.state.field_errors = {}
        return self.state.step

    def set_payment_options(
        self,
        saved_payment_method_id: Optional[str] = None,
        save_payment_method: bool = False,
        notes: Optional[str] = None,
    ):
        options = (saved_payment_method_id, save_payment_method, notes)
        if options != (self.saved_payment_method_id, self.save_payment_method, self.notes):
            self._drop_transaction()
        self.saved_payment_method_id, self.save_payment_method, self.notes = options

    def enter_payment(self) -> bool:
        """
        Move to payment, opening the transaction the first time.

        Returns False when initiation fails; the flow then stays where it was
        with a banner describing the failure.
        """
        if self.has_transaction:
            self.state.step = FlowStep.PAYMENT
            return True
        if self._initiating:
            return False

        self._initiating = True
        self.state.banner = None
        try:
            result = self.initiate(self._initiation_payload(), self.auth.access_token)
        except AuthenticationRequired as e:
            logger.info("Checkout initiation needs login")
            self.state.needs_login = True
            self.state.banner = e.message or LOGIN_PROMPT
            return False
        except ValidationError as e:
            self.state.field_errors = {e.field or "form": e.message}
            self.state.banner = e.message
            return False
        except StorefrontError as e:
            logger.warning(f"Checkout initiation failed: {e.error_code}")
            self.state.banner = e.message
            return False
        finally:
            self._initiating = False

        self.state.client_secret = result["clientSecret"]
        self.state.draft_key = result["draftKey"]
        self.state.completed[FlowStep.PAYMENT] = True
        self.state.step = FlowStep.PAYMENT
        return True

    def submit_payment(self, payment_method: Optional[str] = None) -> ConfirmationOutcome:
        """Persist the draft key and hand off to the processor's confirmation call"""
        if self.state.step != FlowStep.PAYMENT or not self.has_transaction:
            raise ValidationError("Payment is not ready yet.", field="payment")

        self.slot.set(self.state.draft_key)
        self.state.payment_error = None

        mode = "setup" if self.state.client_secret.startswith("seti_") else "payment"
        error = self.confirm(mode, self.state.client_secret, payment_method)
        if not error:
            return ConfirmationOutcome(handed_off=True)

        error_type = error.get("type")
        if error_type in CONFIRMATION_ERROR_TYPES:
            message = error.get("message") or GENERIC_PAYMENT_ERROR
        else:
            message = GENERIC_PAYMENT_ERROR
        logger.info(f"Payment confirmation failed: {error_type}")

        self.state.payment_error = message
        return ConfirmationOutcome(handed_off=False, error=PaymentConfirmationError(message, error_type))

    def pending_draft_key(self) -> Optional[str]:
        """Draft key stored for the redirect return leg"""
        return self.slot.get()

    def logout(self):
        self.auth.logout()
        self.slot.clear()
        self.state = FlowState()

    def clear_cart(self):
        self.cart.clear()
        self.slot.clear()
        self.state = FlowState()

    def _apply_profile(self):
        profile = self.auth.profile
        self.state.completed[FlowStep.AUTH_CHOICE] = True

        if not self.state.contact:
            self.state.contact = {"email": profile.email or "", "phone": profile.phone or ""}
        if not self.state.shipping and profile.default_address:
            address = {"full_name": profile.full_name or "", **profile.default_address}
            self.state.shipping = {key: (address.get(key) or "").strip() for key in (*SHIPPING_FIELDS, "address2")}

        if not self._contact_errors(self.state.contact):
            self.state.completed[FlowStep.CONTACT] = True
        if self.state.shipping and all(self.state.shipping.get(key) for key in SHIPPING_FIELDS):
            self.state.completed[FlowStep.SHIPPING] = True

        if not self.state.completed[FlowStep.CONTACT]:
            self.state.step = FlowStep.CONTACT
        elif not self.state.completed[FlowStep.SHIPPING]:
            self.state.step = FlowStep.SHIPPING
        elif not self.enter_payment():
            self.state.step = FlowStep.SHIPPING

    @staticmethod
    def _contact_errors(contact: Dict[str, str]) -> Dict[str, str]:
        errors = {}
        if not EMAIL_PATTERN.match(contact.get("email", "")):
            errors["email"] = "Please enter a valid email address."
        if not contact.get("phone"):
            errors["phone"] = "Please enter a phone number."
        return errors

    def _drop_transaction(self):
        if self.has_transaction:
            logger.info("Checkout details changed; a new transaction will be opened")
        self.state.client_secret = None
        self.state.draft_key = None

    def _initiation_payload(self) -> Dict[str, Any]:
        shipping = self.state.shipping
        return {
            "items": self.cart.lines,
            "contact": dict(self.state.contact),
            "shipping": {
                "fullName": shipping["full_name"],
                "address1": shipping["address1"],
                "address2": shipping.get("address2") or None,
                "city": shipping["city"],
                "state": shipping["state"],
                "postalCode": shipping["postal_code"],
                "country": shipping["country"],
            },
            "notes": self.notes,
            "savedPaymentMethodId": self.saved_payment_method_id,
            "savePaymentMethod": self.save_payment_method,
        }
