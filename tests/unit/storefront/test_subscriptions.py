"""
Tests for subscription status sync and owner actions
"""

from datetime import datetime

import pytest

from core.exceptions import NotFoundError, SubscriptionStateError, TransactionError
from storefront.models import Subscription, SubscriptionStatus
from storefront.stripe_client import PAUSE_BEHAVIOR, StripeError
from storefront.subscriptions import SubscriptionService, apply_subscription_update, sync_from_stripe
from tests.helpers import remote_subscription

pytestmark = pytest.mark.unit


@pytest.fixture
def service(stripe_client):
    return SubscriptionService(stripe_client)


@pytest.fixture
def subscription(db_session, user):
    subscription = Subscription(
        user_id=user.id,
        stripe_subscription_id="sub_1",
        stripe_price_id="price_monthly",
        status=SubscriptionStatus.ACTIVE.value,
        interval="month",
        current_period_end=datetime(2026, 11, 19),
    )
    db_session.add(subscription)
    db_session.commit()
    return subscription


class TestApplySubscriptionUpdate:
    def test_updates_only_given_fields(self, db_session, subscription):
        found = apply_subscription_update(db_session, "sub_1", status="past_due")
        db_session.commit()

        assert found is True
        db_session.refresh(subscription)
        assert subscription.status == "past_due"
        assert subscription.current_period_end == datetime(2026, 11, 19)

    def test_unknown_subscription(self, db_session):
        assert apply_subscription_update(db_session, "sub_missing", status="active") is False
        assert apply_subscription_update(db_session, "sub_missing") is False

    def test_no_values_reports_existence(self, db_session, subscription):
        assert apply_subscription_update(db_session, "sub_1") is True

    def test_sync_keeps_unknown_statuses_verbatim(self, db_session, subscription):
        sync_from_stripe(db_session, remote_subscription(status="incomplete", current_period_end=None))
        db_session.commit()

        db_session.refresh(subscription)
        assert subscription.status == "incomplete"
        assert subscription.current_period_end == datetime(2026, 11, 19)


class TestCancel:
    def test_cancel_at_period_end(self, service, stripe_client, db_session, subscription):
        stripe_client.update_subscription.return_value = remote_subscription(cancel_at_period_end=True)

        result = service.cancel(db_session, "user-1", "sub_1")

        stripe_client.update_subscription.assert_called_once_with("sub_1", cancel_at_period_end=True)
        assert result.cancel_at_period_end is True
        assert result.status == SubscriptionStatus.ACTIVE.value

    def test_cancel_twice_rejected(self, service, stripe_client, db_session, subscription):
        subscription.cancel_at_period_end = True
        db_session.commit()

        with pytest.raises(SubscriptionStateError) as exc_info:
            service.cancel(db_session, "user-1", "sub_1")

        assert exc_info.value.status_code == 409
        stripe_client.update_subscription.assert_not_called()

    def test_processor_failure_leaves_row_untouched(self, service, stripe_client, db_session, subscription):
        stripe_client.update_subscription.side_effect = StripeError("Request timed out")

        with pytest.raises(TransactionError):
            service.cancel(db_session, "user-1", "sub_1")

        db_session.refresh(subscription)
        assert subscription.cancel_at_period_end is False


class TestPauseResume:
    def test_pause(self, service, stripe_client, db_session, subscription):
        stripe_client.update_subscription.return_value = remote_subscription(
            pause_collection={"behavior": PAUSE_BEHAVIOR}
        )

        result = service.pause(db_session, "user-1", "sub_1")

        stripe_client.update_subscription.assert_called_once_with(
            "sub_1", pause_collection={"behavior": PAUSE_BEHAVIOR}
        )
        assert result.collection_paused is True

    def test_pause_requires_active(self, service, db_session, subscription):
        subscription.status = SubscriptionStatus.PAST_DUE.value
        db_session.commit()

        with pytest.raises(SubscriptionStateError):
            service.pause(db_session, "user-1", "sub_1")

    def test_pause_rejected_while_canceling(self, service, db_session, subscription):
        subscription.cancel_at_period_end = True
        db_session.commit()

        with pytest.raises(SubscriptionStateError):
            service.pause(db_session, "user-1", "sub_1")

    def test_resume(self, service, stripe_client, db_session, subscription):
        subscription.collection_paused = True
        db_session.commit()
        stripe_client.update_subscription.return_value = remote_subscription()

        result = service.resume(db_session, "user-1", "sub_1")

        stripe_client.update_subscription.assert_called_once_with("sub_1", pause_collection="")
        assert result.collection_paused is False

    def test_resume_requires_paused(self, service, db_session, subscription):
        with pytest.raises(SubscriptionStateError):
            service.resume(db_session, "user-1", "sub_1")


class TestOwnership:
    def test_other_users_subscription_is_not_found(self, service, stripe_client, db_session, subscription):
        with pytest.raises(NotFoundError):
            service.cancel(db_session, "user-2", "sub_1")

        stripe_client.update_subscription.assert_not_called()

    def test_unknown_subscription_is_not_found(self, service, db_session, user):
        with pytest.raises(NotFoundError):
            service.pause(db_session, "user-1", "sub_missing")
