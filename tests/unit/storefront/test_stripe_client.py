"""
Tests for the Stripe client wrapper

The Stripe SDK is patched at its resource classes; webhook signatures are
computed the way Stripe computes them.
"""

import json
from datetime import datetime
from decimal import Decimal
from unittest.mock import Mock, patch

import pytest
import stripe

from core.exceptions import SignatureVerificationError
from storefront.stripe_client import (
    StripeClient,
    StripeConfig,
    StripeError,
    format_amount_for_stripe,
    format_amount_from_stripe,
    invoice_subscription_id,
    subscription_period_end,
    subscription_to_dict,
)
from tests.helpers import as_payload, stripe_signature_header, webhook_event

pytestmark = pytest.mark.unit

WEBHOOK_SECRET = "whsec_unit_test_secret"


@pytest.fixture
def client():
    return StripeClient(StripeConfig(api_key="sk_test_unit", webhook_secret=WEBHOOK_SECRET, currency="USD"))


class TestStripeConfig:
    def test_config_explicit_values(self):
        config = StripeConfig(api_key="sk_live_abc", webhook_secret="whsec_abc", currency="EUR")

        assert config.test_mode is False
        assert config.currency == "eur"
        assert config.webhook_secret == "whsec_abc"

    def test_config_defaults_to_test_keys(self):
        config = StripeConfig()

        assert config.test_mode is True
        assert config.webhook_secret


class TestPrices:
    @patch.object(stripe.Price, "retrieve")
    def test_retrieve_recurring_price(self, mock_retrieve, client):
        mock_retrieve.return_value = {
            "id": "price_monthly",
            "active": True,
            "unit_amount": 999,
            "currency": "usd",
            "product": {"id": "prod_club", "name": "Coffee Club"},
            "nickname": "Monthly",
            "recurring": {"interval": "month"},
        }

        price = client.retrieve_price("price_monthly")

        assert price["unit_amount"] == 999
        assert price["product"] == "prod_club"
        assert price["recurring_interval"] == "month"

    @patch.object(stripe.Price, "retrieve")
    def test_missing_price_is_not_found(self, mock_retrieve, client):
        mock_retrieve.side_effect = stripe.InvalidRequestError(
            "No such price", param="id", code="resource_missing", http_status=404
        )

        with pytest.raises(StripeError) as exc_info:
            client.retrieve_price("price_gone")

        assert exc_info.value.is_not_found is True


class TestCustomers:
    @patch.object(stripe.Customer, "create")
    @patch.object(stripe.Customer, "list")
    def test_reuses_existing_customer(self, mock_list, mock_create, client):
        mock_list.return_value = Mock(data=[{"id": "cus_existing"}])

        customer_id = client.find_or_create_customer("ada@example.com", name="Ada")

        assert customer_id == "cus_existing"
        mock_list.assert_called_once_with(email="ada@example.com", limit=1)
        mock_create.assert_not_called()

    @patch.object(stripe.Customer, "create")
    @patch.object(stripe.Customer, "list")
    def test_creates_customer_when_none_found(self, mock_list, mock_create, client):
        mock_list.return_value = Mock(data=[])
        mock_create.return_value = {"id": "cus_new"}

        customer_id = client.find_or_create_customer(
            "ada@example.com", name="Ada", phone="+1 555 0100", metadata={"internal_user_id": "user-1"}
        )

        assert customer_id == "cus_new"
        kwargs = mock_create.call_args.kwargs
        assert kwargs["email"] == "ada@example.com"
        assert kwargs["metadata"] == {"internal_user_id": "user-1"}
        assert "shipping" not in kwargs


class TestIntents:
    @patch.object(stripe.PaymentIntent, "create")
    def test_payment_intent_params(self, mock_create, client):
        mock_create.return_value = {
            "id": "pi_1",
            "client_secret": "pi_1_secret",
            "status": "requires_payment_method",
            "amount": 1198,
            "metadata": {"draft_key": "key-1"},
        }

        intent = client.create_payment_intent(1198, metadata={"draft_key": "key-1"}, setup_future_usage="off_session")

        kwargs = mock_create.call_args.kwargs
        assert kwargs["amount"] == 1198
        assert kwargs["currency"] == "usd"
        assert kwargs["setup_future_usage"] == "off_session"
        assert "customer" not in kwargs
        assert intent["client_secret"] == "pi_1_secret"
        assert intent["metadata"] == {"draft_key": "key-1"}

    @patch.object(stripe.SetupIntent, "create")
    def test_setup_intent_is_off_session(self, mock_create, client):
        mock_create.return_value = {"id": "seti_1", "client_secret": "seti_1_secret", "customer": "cus_1"}

        intent = client.create_setup_intent("cus_1", metadata={"kind": "setup"}, payment_method_id="pm_saved")

        kwargs = mock_create.call_args.kwargs
        assert kwargs["usage"] == "off_session"
        assert kwargs["payment_method"] == "pm_saved"
        assert intent["customer"] == "cus_1"

    @patch.object(stripe.PaymentIntent, "create")
    def test_sdk_error_is_wrapped(self, mock_create, client):
        mock_create.side_effect = stripe.APIConnectionError("connection reset")

        with pytest.raises(StripeError) as exc_info:
            client.create_payment_intent(100, metadata={})

        assert "create payment intent" in str(exc_info.value)


class TestSubscriptions:
    @patch.object(stripe.Subscription, "create")
    def test_create_subscription_passes_idempotency_key(self, mock_create, client):
        mock_create.return_value = {"id": "sub_1", "status": "active", "current_period_end": 1795046400}

        subscription = client.create_subscription(
            customer_id="cus_1",
            price_id="price_monthly",
            quantity=1,
            payment_method_id="pm_card",
            metadata={"draft_key": "key-1"},
            add_invoice_items=[{"price": "price_coffee", "quantity": 1}],
            idempotency_key="checkout-key-1-price_monthly",
        )

        kwargs = mock_create.call_args.kwargs
        assert kwargs["idempotency_key"] == "checkout-key-1-price_monthly"
        assert kwargs["default_payment_method"] == "pm_card"
        assert kwargs["add_invoice_items"] == [{"price": "price_coffee", "quantity": 1}]
        assert subscription["current_period_end"] == datetime(2026, 11, 19)

    def test_period_end_falls_back_to_first_item(self):
        subscription = {"id": "sub_1", "items": {"data": [{"current_period_end": 1795046400}]}}

        assert subscription_period_end(subscription) == datetime(2026, 11, 19)
        assert subscription_period_end({"id": "sub_1"}) is None

    def test_subscription_to_dict(self):
        remote = subscription_to_dict(
            {
                "id": "sub_1",
                "status": "active",
                "customer": {"id": "cus_1"},
                "cancel_at_period_end": None,
                "pause_collection": {"behavior": "mark_uncollectible"},
            }
        )

        assert remote["customer"] == "cus_1"
        assert remote["cancel_at_period_end"] is False
        assert remote["pause_collection"] == {"behavior": "mark_uncollectible"}

    def test_invoice_subscription_reference(self):
        assert invoice_subscription_id({"subscription": "sub_1"}) == "sub_1"
        assert invoice_subscription_id({"subscription": {"id": "sub_2"}}) == "sub_2"
        assert (
            invoice_subscription_id({"parent": {"subscription_details": {"subscription": "sub_3"}}}) == "sub_3"
        )
        assert invoice_subscription_id({"id": "in_1"}) is None


class TestPaymentMethods:
    @patch.object(stripe.PaymentMethod, "retrieve")
    def test_retrieve_card(self, mock_retrieve, client):
        mock_retrieve.return_value = {
            "id": "pm_card",
            "type": "card",
            "customer": "cus_1",
            "card": {"brand": "visa", "last4": "4242", "exp_month": 12, "exp_year": 2030},
        }

        method = client.retrieve_payment_method("pm_card")

        assert method["brand"] == "visa"
        assert method["last4"] == "4242"

    @patch.object(stripe.PaymentMethod, "detach")
    def test_detach(self, mock_detach, client):
        client.detach_payment_method("pm_card")

        mock_detach.assert_called_once_with("pm_card")


class TestWebhookVerification:
    """Signature verification is the only trust boundary for webhooks"""

    def test_valid_signature_returns_event(self, client):
        payload = as_payload(webhook_event("invoice.paid", {"id": "in_1"}))
        header = stripe_signature_header(payload, WEBHOOK_SECRET)

        event = client.construct_webhook_event(payload, header)

        assert event == json.loads(payload)

    def test_missing_signature_rejected(self, client):
        with pytest.raises(SignatureVerificationError):
            client.construct_webhook_event(b"{}", None)

    def test_wrong_secret_rejected(self, client):
        payload = as_payload(webhook_event("invoice.paid", {"id": "in_1"}))
        header = stripe_signature_header(payload, "whsec_someone_else")

        with pytest.raises(SignatureVerificationError):
            client.construct_webhook_event(payload, header)

    def test_tampered_payload_rejected(self, client):
        payload = as_payload(webhook_event("invoice.paid", {"id": "in_1", "amount_paid": 100}))
        header = stripe_signature_header(payload, WEBHOOK_SECRET)
        tampered = payload.replace(b"100", b"999")

        with pytest.raises(SignatureVerificationError):
            client.construct_webhook_event(tampered, header)


class TestAmountHelpers:
    def test_amount_conversions(self):
        assert format_amount_for_stripe(Decimal("5.99")) == 599
        assert format_amount_from_stripe(1198) == Decimal("11.98")

    def test_get_status(self, client):
        status = client.get_status()

        assert status["test_mode"] is True
        assert status["webhook_configured"] is True
