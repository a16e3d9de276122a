"""
Tests for the client-side checkout flow and its initiation client
"""

import json
from unittest.mock import Mock

import httpx
import pytest

from core.exceptions import (
    AuthenticationRequired,
    PaymentConfirmationError,
    PersistenceError,
    PriceResolutionError,
    TransactionError,
    ValidationError,
)
from storefront.flow import (
    DRAFT_KEY_SLOT,
    GENERIC_PAYMENT_ERROR,
    AccountProfile,
    AuthContext,
    CartContext,
    CheckoutApiClient,
    CheckoutFlow,
    DraftKeySlot,
    FlowStep,
    MemorySlot,
)
from tests.helpers import coffee_line, subscription_line

pytestmark = pytest.mark.unit

ADDRESS = {
    "full_name": "Ada Lovelace",
    "address1": "12 Analytical Way",
    "city": "Portland",
    "state": "OR",
    "postal_code": "97201",
    "country": "US",
}


def _profile(**overrides):
    values = {
        "user_id": "user-1",
        "email": "ada@example.com",
        "access_token": "token-abc",
        "phone": "+1 555 0100",
        "full_name": "Ada Lovelace",
        "default_address": {k: v for k, v in ADDRESS.items() if k != "full_name"},
    }
    values.update(overrides)
    return AccountProfile(**values)


@pytest.fixture
def initiate():
    return Mock(return_value={"clientSecret": "pi_1_secret_abc", "draftKey": "key-1"})


@pytest.fixture
def confirm():
    return Mock(return_value=None)


@pytest.fixture
def slot():
    return MemorySlot()


@pytest.fixture
def flow(initiate, confirm, slot):
    return CheckoutFlow(AuthContext(), CartContext([coffee_line()]), confirm, initiate=initiate, slot=slot)


def _to_payment(flow):
    flow.start()
    flow.continue_as_guest()
    flow.submit_contact("ada@example.com", "+1 555 0100")
    flow.submit_shipping(ADDRESS)


class TestGuestPath:
    def test_starts_at_auth_choice(self, flow):
        assert flow.start() == FlowStep.AUTH_CHOICE

    def test_guest_walks_contact_shipping_payment(self, flow, initiate):
        flow.start()
        assert flow.continue_as_guest() == FlowStep.CONTACT

        assert flow.submit_contact(" ada@example.com ", "+1 555 0100") is True
        assert flow.step == FlowStep.SHIPPING
        initiate.assert_not_called()

        assert flow.submit_shipping(ADDRESS) is True
        assert flow.step == FlowStep.PAYMENT
        assert flow.has_transaction
        assert all(flow.is_completed(step) for step in FlowStep)

        payload, token = initiate.call_args.args
        assert token is None
        assert payload["contact"] == {"email": "ada@example.com", "phone": "+1 555 0100"}
        assert payload["shipping"]["postalCode"] == "97201"
        assert payload["items"] == [coffee_line()]
        assert payload["savePaymentMethod"] is False

    def test_invalid_contact_stays_put(self, flow):
        flow.start()
        flow.continue_as_guest()

        assert flow.submit_contact("not-an-email", "") is False
        assert flow.step == FlowStep.CONTACT
        assert set(flow.state.field_errors) == {"email", "phone"}
        assert not flow.is_completed(FlowStep.CONTACT)

    def test_missing_shipping_fields_reported_per_field(self, flow, initiate):
        flow.start()
        flow.continue_as_guest()
        flow.submit_contact("ada@example.com", "+1 555 0100")

        assert flow.submit_shipping({**ADDRESS, "city": " ", "country": None}) is False
        assert flow.state.field_errors == {
            "city": "This field is required.",
            "country": "This field is required.",
        }
        assert flow.step == FlowStep.SHIPPING
        initiate.assert_not_called()


class TestTransactionLifecycle:
    def test_initiates_once_per_session(self, flow, initiate):
        _to_payment(flow)

        flow.edit(FlowStep.CONTACT)
        flow.submit_contact("ada@example.com", "+1 555 0100")

        assert flow.step == FlowStep.PAYMENT
        assert initiate.call_count == 1

    def test_changed_details_open_fresh_transaction(self, flow, initiate):
        _to_payment(flow)
        initiate.return_value = {"clientSecret": "pi_2_secret_def", "draftKey": "key-2"}

        flow.edit(FlowStep.SHIPPING)
        flow.submit_shipping({**ADDRESS, "address1": "1 Difference Engine Rd"})

        assert initiate.call_count == 2
        assert flow.state.draft_key == "key-2"

    def test_changed_payment_options_drop_transaction(self, flow, initiate):
        _to_payment(flow)

        flow.set_payment_options(notes="Gift wrap please")

        assert not flow.has_transaction
        flow.enter_payment()
        assert initiate.call_args.args[0]["notes"] == "Gift wrap please"

    def test_edit_only_reenters_completed_steps(self, flow):
        flow.start()
        flow.continue_as_guest()

        assert flow.edit(FlowStep.PAYMENT) == FlowStep.CONTACT
        assert flow.edit(FlowStep.AUTH_CHOICE) == FlowStep.AUTH_CHOICE

    def test_initiation_failure_shows_banner_without_advancing(self, flow, initiate):
        initiate.side_effect = TransactionError()

        _to_payment(flow)

        assert flow.step == FlowStep.SHIPPING
        assert not flow.has_transaction
        assert flow.state.banner == TransactionError().message
        assert not flow.is_completed(FlowStep.PAYMENT)

    def test_price_failure_shows_refresh_banner(self, flow, initiate):
        initiate.side_effect = PriceResolutionError(price_id="price_coffee", reason="inactive")

        _to_payment(flow)

        assert "refresh your cart" in flow.state.banner

    def test_validation_failure_marks_field(self, flow, initiate):
        initiate.side_effect = ValidationError("Saved payment method not found", field="savedPaymentMethodId")

        _to_payment(flow)

        assert flow.state.field_errors == {"savedPaymentMethodId": "Saved payment method not found"}

    def test_subscription_cart_prompts_login(self, initiate, confirm):
        initiate.side_effect = AuthenticationRequired("Please log in to purchase subscriptions.")
        flow = CheckoutFlow(AuthContext(), CartContext([subscription_line()]), confirm, initiate=initiate)

        _to_payment(flow)

        assert flow.cart.has_subscription
        assert flow.state.needs_login is True
        assert flow.step == FlowStep.SHIPPING

        initiate.side_effect = None
        initiate.return_value = {"clientSecret": "seti_1_secret_abc", "draftKey": "key-1"}
        flow.login_succeeded(_profile())

        assert flow.state.needs_login is False
        assert flow.step == FlowStep.PAYMENT
        assert initiate.call_args.args[1] == "token-abc"


class TestLoggedInPrefill:
    def test_complete_profile_skips_to_payment(self, initiate, confirm):
        flow = CheckoutFlow(AuthContext(_profile()), CartContext([coffee_line()]), confirm, initiate=initiate)

        assert flow.start() == FlowStep.PAYMENT
        assert flow.state.shipping["full_name"] == "Ada Lovelace"
        assert initiate.call_args.args[1] == "token-abc"

    def test_profile_without_address_stops_at_shipping(self, initiate, confirm):
        flow = CheckoutFlow(
            AuthContext(_profile(default_address=None)), CartContext([coffee_line()]), confirm, initiate=initiate
        )

        assert flow.start() == FlowStep.SHIPPING
        assert flow.is_completed(FlowStep.CONTACT)
        initiate.assert_not_called()

    def test_profile_without_phone_stops_at_contact(self, initiate, confirm):
        flow = CheckoutFlow(AuthContext(_profile(phone=None)), CartContext([coffee_line()]), confirm, initiate=initiate)

        assert flow.start() == FlowStep.CONTACT
        assert flow.state.contact["email"] == "ada@example.com"

    def test_failed_initiation_falls_back_to_shipping(self, initiate, confirm):
        initiate.side_effect = TransactionError()
        flow = CheckoutFlow(AuthContext(_profile()), CartContext([coffee_line()]), confirm, initiate=initiate)

        assert flow.start() == FlowStep.SHIPPING
        assert flow.state.banner


class TestDraftKeySlot:
    def test_slot_must_implement_storage(self):
        with pytest.raises(TypeError):
            DraftKeySlot()

    def test_memory_slot_round_trip(self):
        slot = MemorySlot()
        slot.set("key-1")
        assert slot.get() == "key-1"

        slot.clear()
        assert slot.get() is None


class TestSubmitPayment:
    def test_stores_only_the_draft_key_then_confirms(self, flow, confirm, slot):
        _to_payment(flow)

        outcome = flow.submit_payment("pm_card")

        assert outcome.handed_off is True
        assert slot.get() == "key-1"
        assert slot.name == DRAFT_KEY_SLOT
        assert flow.pending_draft_key() == "key-1"
        confirm.assert_called_once_with("payment", "pi_1_secret_abc", "pm_card")

    def test_setup_secret_uses_setup_confirmation(self, flow, initiate, confirm):
        initiate.return_value = {"clientSecret": "seti_1_secret_abc", "draftKey": "key-1"}
        _to_payment(flow)

        flow.submit_payment()

        assert confirm.call_args.args[0] == "setup"

    def test_card_error_message_is_shown(self, flow, confirm):
        confirm.return_value = {"type": "card_error", "message": "Your card was declined."}
        _to_payment(flow)

        outcome = flow.submit_payment()

        assert outcome.handed_off is False
        assert isinstance(outcome.error, PaymentConfirmationError)
        assert flow.state.payment_error == "Your card was declined."
        assert flow.step == FlowStep.PAYMENT

    def test_other_errors_get_generic_message(self, flow, confirm):
        confirm.return_value = {"type": "api_error", "message": "Internal details"}
        _to_payment(flow)

        flow.submit_payment()

        assert flow.state.payment_error == GENERIC_PAYMENT_ERROR

    def test_not_ready_before_payment_step(self, flow):
        flow.start()

        with pytest.raises(ValidationError):
            flow.submit_payment()


class TestReset:
    def test_logout_clears_everything(self, initiate, confirm, slot):
        flow = CheckoutFlow(AuthContext(_profile()), CartContext([coffee_line()]), confirm, initiate=initiate, slot=slot)
        flow.start()
        flow.submit_payment()

        flow.logout()

        assert not flow.auth.is_authenticated
        assert slot.get() is None
        assert flow.step == FlowStep.AUTH_CHOICE
        assert not flow.has_transaction

    def test_clear_cart(self, flow, slot):
        _to_payment(flow)
        flow.submit_payment()

        flow.clear_cart()

        assert flow.cart.is_empty
        assert slot.get() is None
        assert not flow.is_completed(FlowStep.CONTACT)


class TestCheckoutApiClient:
    def _client(self, handler):
        return CheckoutApiClient(base_url="http://storefront.test", transport=httpx.MockTransport(handler))

    def test_success_returns_body_and_sends_token(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"clientSecret": "pi_1_secret", "draftKey": "key-1"})

        result = self._client(handler).initiate({"items": []}, access_token="token-abc")

        assert result["draftKey"] == "key-1"
        assert seen == {"auth": "Bearer token-abc", "body": {"items": []}}

    @pytest.mark.parametrize(
        "status,body,expected",
        [
            (401, {"error": "AUTHENTICATION_REQUIRED", "message": "Please log in"}, AuthenticationRequired),
            (400, {"error": "PRICE_RESOLUTION_ERROR", "message": "Refresh", "details": {}}, PriceResolutionError),
            (400, {"error": "VALIDATION_ERROR", "message": "Bad", "details": {"field": "email"}}, ValidationError),
            (503, {"error": "PERSISTENCE_ERROR", "message": "Try again"}, PersistenceError),
            (502, {"error": "TRANSACTION_ERROR", "message": "Try again"}, TransactionError),
        ],
    )
    def test_error_mapping(self, status, body, expected):
        client = self._client(lambda request: httpx.Response(status, json=body))

        with pytest.raises(expected) as exc_info:
            client.initiate({"items": []})

        assert exc_info.value.message == body["message"]

    def test_network_failure_is_transaction_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransactionError):
            self._client(handler).initiate({"items": []})

    def test_non_json_error_body(self):
        client = self._client(lambda request: httpx.Response(500, text="<html>Bad gateway</html>"))

        with pytest.raises(TransactionError) as exc_info:
            client.initiate({"items": []})

        assert exc_info.value.details["upstream_status"] == 500
