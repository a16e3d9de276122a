"""
Test Helper Utilities

Builders for cart requests, draft snapshots, processor objects and webhook
events shared across the storefront tests.
"""

import hashlib
import hmac
import json
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from storefront.schemas import CheckoutInitiationRequest, ContactInfo, DraftContext, DraftLine, ShippingAddress


def price_record(
    price_id: str,
    unit_amount: Optional[int],
    interval: Optional[str] = None,
    active: bool = True,
    product: str = "prod_1",
    nickname: Optional[str] = None,
) -> Dict[str, Any]:
    """Canonical price as returned by StripeClient.retrieve_price"""
    return {
        "id": price_id,
        "active": active,
        "unit_amount": unit_amount,
        "currency": "usd",
        "product": product,
        "nickname": nickname,
        "recurring_interval": interval,
    }


def coffee_line(**overrides) -> Dict[str, Any]:
    line = {
        "priceId": "price_coffee",
        "productId": "prod_coffee",
        "name": "House Blend 12oz",
        "quantity": 2,
        "price": "5.99",
        "isSubscription": False,
    }
    line.update(overrides)
    return line


def subscription_line(**overrides) -> Dict[str, Any]:
    line = {
        "priceId": "price_monthly",
        "productId": "prod_club",
        "name": "Coffee Club",
        "quantity": 1,
        "price": "9.99",
        "isSubscription": True,
        "recurringInterval": "month",
    }
    line.update(overrides)
    return line


def checkout_request_data(items: Optional[List[Dict[str, Any]]] = None, **overrides) -> Dict[str, Any]:
    """Camel-case body for POST /checkout/initiate"""
    data = {
        "items": items if items is not None else [coffee_line()],
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
    data.update(overrides)
    return data


def checkout_request(items: Optional[List[Dict[str, Any]]] = None, **overrides) -> CheckoutInitiationRequest:
    return CheckoutInitiationRequest.model_validate(checkout_request_data(items, **overrides))


def draft_line(**overrides) -> DraftLine:
    values = {
        "price_id": "price_coffee",
        "product_id": "prod_coffee",
        "product_name": "House Blend 12oz",
        "unit_amount_cents": 599,
        "quantity": 2,
    }
    values.update(overrides)
    return DraftLine(**values)


def recurring_draft_line(**overrides) -> DraftLine:
    values = {
        "price_id": "price_monthly",
        "product_id": "prod_club",
        "product_name": "Coffee Club",
        "unit_amount_cents": 999,
        "quantity": 1,
        "is_recurring": True,
        "recurring_interval": "month",
    }
    values.update(overrides)
    return DraftLine(**values)


def draft_context(lines: Optional[List[DraftLine]] = None, **overrides) -> DraftContext:
    values = {
        "user_id": None,
        "lines": lines if lines is not None else [draft_line()],
        "contact": ContactInfo(email="ada@example.com", phone="+1 555 0100"),
        "shipping": ShippingAddress(
            full_name="Ada Lovelace",
            address1="12 Analytical Way",
            city="Portland",
            state="OR",
            postal_code="97201",
            country="US",
        ),
        "currency": "usd",
    }
    values.update(overrides)
    return DraftContext(**values)


def checkout_metadata(draft_key: str, kind: str = "payment", **extra) -> Dict[str, str]:
    metadata = {"v": "1", "draft_key": draft_key, "kind": kind, "save_payment_method": "false"}
    metadata.update(extra)
    return metadata


def remote_subscription(
    subscription_id: str = "sub_1",
    status: str = "active",
    current_period_end: Optional[datetime] = datetime(2026, 11, 19),
    cancel_at_period_end: bool = False,
    pause_collection: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Subscription as returned by StripeClient (see subscription_to_dict)"""
    return {
        "id": subscription_id,
        "status": status,
        "customer": "cus_1",
        "cancel_at_period_end": cancel_at_period_end,
        "pause_collection": pause_collection,
        "current_period_end": current_period_end,
        "metadata": {},
    }


def webhook_event(event_type: str, obj: Dict[str, Any], event_id: str = "evt_1") -> Dict[str, Any]:
    return {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}


def payment_succeeded_event(draft_key: str, amount: int = 1198, event_id: str = "evt_pi", **intent) -> Dict[str, Any]:
    obj = {
        "id": "pi_1",
        "object": "payment_intent",
        "amount": amount,
        "amount_received": amount,
        "customer": None,
        "payment_method": "pm_card",
        "metadata": checkout_metadata(draft_key, "payment"),
    }
    obj.update(intent)
    return webhook_event("payment_intent.succeeded", obj, event_id)


def setup_succeeded_event(draft_key: str, event_id: str = "evt_seti", **intent) -> Dict[str, Any]:
    obj = {
        "id": "seti_1",
        "object": "setup_intent",
        "customer": "cus_1",
        "payment_method": "pm_card",
        "metadata": checkout_metadata(draft_key, "setup", user_id="user-1", save_payment_method="true"),
    }
    obj.update(intent)
    return webhook_event("setup_intent.succeeded", obj, event_id)


def renewal_invoice(
    invoice_id: str = "in_renew",
    subscription_id: str = "sub_1",
    amount: int = 999,
    billing_reason: str = "subscription_cycle",
    **extra,
) -> Dict[str, Any]:
    invoice = {
        "id": invoice_id,
        "object": "invoice",
        "status": "paid",
        "billing_reason": billing_reason,
        "subscription": subscription_id,
        "amount_paid": amount,
        "currency": "usd",
        "customer_email": "billing@example.com",
        "lines": {
            "data": [
                {
                    "amount": amount,
                    "quantity": 1,
                    "description": "1 x Coffee Club (at $9.99 / month)",
                    "price": {"id": "price_monthly", "product": "prod_club", "nickname": "Monthly"},
                }
            ]
        },
    }
    invoice.update(extra)
    return invoice


def as_payload(event: Dict[str, Any]) -> bytes:
    return json.dumps(event).encode("utf-8")


def stripe_signature_header(payload: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Signature header in the format Stripe sends (t=...,v1=...)"""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"
