"""
Storefront Subscriptions

Status synchronization shared by the webhook reconciler and the account
self-service actions (cancel, pause, resume). Every local write is a single
UPDATE scoped by the processor subscription id, so concurrent writers
serialize on the row instead of overwriting each other's reads.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from core.exceptions import NotFoundError, StorefrontError, SubscriptionStateError, TransactionError
from core.logging import get_logger
from database.session import transaction

from .models import Subscription, SubscriptionStatus
from .stripe_client import PAUSE_BEHAVIOR, StripeClient, StripeError

logger = get_logger(__name__, domain="storefront")


def apply_subscription_update(
    session: Session,
    stripe_subscription_id: str,
    status: Optional[str] = None,
    cancel_at_period_end: Optional[bool] = None,
    collection_paused: Optional[bool] = None,
    current_period_end: Optional[datetime] = None,
) -> bool:
    """
    Set the given fields on the subscription with ``stripe_subscription_id``.

    ``None`` leaves a field untouched. Applying the same values twice leaves
    the row as applying them once. Returns False when there is no such row.
    The caller owns the transaction.
    """
    values: Dict[str, Any] = {}
    if status is not None:
        values[Subscription.status] = status
    if cancel_at_period_end is not None:
        values[Subscription.cancel_at_period_end] = cancel_at_period_end
    if collection_paused is not None:
        values[Subscription.collection_paused] = collection_paused
    if current_period_end is not None:
        values[Subscription.current_period_end] = current_period_end

    if not values:
        exists = session.query(Subscription.id).filter(Subscription.stripe_subscription_id == stripe_subscription_id)
        return exists.first() is not None

    updated = (
        session.query(Subscription)
        .filter(Subscription.stripe_subscription_id == stripe_subscription_id)
        .update(values, synchronize_session="fetch")
    )
    return updated > 0


def sync_from_stripe(session: Session, remote: Dict[str, Any], status: Optional[str] = None) -> bool:
    """Mirror a processor subscription object onto the local row"""
    return apply_subscription_update(
        session,
        remote["id"],
        status=status or remote.get("status"),
        cancel_at_period_end=bool(remote.get("cancel_at_period_end")),
        collection_paused=remote.get("pause_collection") is not None,
        current_period_end=remote.get("current_period_end"),
    )


class SubscriptionService:
    """User-initiated subscription changes, authorized by owner and processor id"""

    def __init__(self, stripe_client: StripeClient):
        self.stripe_client = stripe_client

    def cancel(self, session: Session, user_id: str, stripe_subscription_id: str) -> Subscription:
        """Cancel at the end of the current period"""
        subscription = self._owned(session, user_id, stripe_subscription_id)
        if subscription.is_canceled or subscription.is_canceling:
            raise SubscriptionStateError("Subscription is already canceled or set to cancel", stripe_subscription_id)

        return self._apply(session, subscription, cancel_at_period_end=True)

    def pause(self, session: Session, user_id: str, stripe_subscription_id: str) -> Subscription:
        """Stop collecting payments until resumed"""
        subscription = self._owned(session, user_id, stripe_subscription_id)
        if subscription.status != SubscriptionStatus.ACTIVE.value:
            raise SubscriptionStateError("Only active subscriptions can be paused", stripe_subscription_id)
        if subscription.is_paused:
            raise SubscriptionStateError("Subscription is already paused", stripe_subscription_id)
        if subscription.is_canceling:
            raise SubscriptionStateError("Subscription is set to cancel and cannot be paused", stripe_subscription_id)

        return self._apply(session, subscription, pause_collection={"behavior": PAUSE_BEHAVIOR})

    def resume(self, session: Session, user_id: str, stripe_subscription_id: str) -> Subscription:
        """Resume payment collection on a paused subscription"""
        subscription = self._owned(session, user_id, stripe_subscription_id)
        if not subscription.is_paused:
            raise SubscriptionStateError("Subscription is not paused", stripe_subscription_id)

        # An empty string unsets pause_collection
        return self._apply(session, subscription, pause_collection="")

    def _owned(self, session: Session, user_id: str, stripe_subscription_id: str) -> Subscription:
        subscription = (
            session.query(Subscription)
            .filter(
                Subscription.stripe_subscription_id == stripe_subscription_id,
                Subscription.user_id == user_id,
            )
            .first()
        )
        if subscription is None:
            raise NotFoundError("Subscription", stripe_subscription_id)
        return subscription

    def _apply(self, session: Session, subscription: Subscription, **params) -> Subscription:
        stripe_subscription_id = subscription.stripe_subscription_id
        try:
            remote = self.stripe_client.update_subscription(stripe_subscription_id, **params)
        except StripeError as e:
            raise TransactionError("We couldn't update your subscription. Please try again.", reason=str(e))

        with transaction(session):
            if not sync_from_stripe(session, remote):
                raise StorefrontError(f"Subscription {stripe_subscription_id} vanished during update")

        session.refresh(subscription)
        logger.info(
            "Subscription updated by owner",
            extra={"stripe_subscription_id": stripe_subscription_id, "change": sorted(params)},
        )
        return subscription
