"""
Storefront API

REST endpoints for checkout initiation, the redirect return leg, the Stripe
webhook and account self-service for subscriptions and saved cards.

Storefront errors raised by the routes are rendered by
``storefront_error_handler``, which the application registers for
``StorefrontError``.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from core.auth import get_current_user_dependency, get_current_user_optional
from core.exceptions import NotFoundError, SignatureVerificationError, StorefrontError, TransactionError
from core.logging import get_logger
from database.models import User
from database.session import get_db

from .cards import remove_saved_card
from .checkout import TransactionInitiator
from .drafts import DraftStore
from .models import Order, Subscription
from .schemas import (
    CheckoutInitiationRequest,
    CheckoutInitiationResponse,
    ErrorResponse,
    IntentStatusResponse,
    OrderItemSummary,
    OrderSummary,
    SubscriptionSummary,
    TransactionMetadata,
    WebhookEventResponse,
)
from .stripe_client import StripeClient, StripeError
from .subscriptions import SubscriptionService
from .webhooks import WebhookProcessor, WebhookStatus, format_webhook_response_for_api

logger = get_logger(__name__, domain="storefront")

checkout_router = APIRouter(prefix="/checkout", tags=["checkout"])
payments_router = APIRouter(prefix="/payments", tags=["payments"])
account_router = APIRouter(prefix="/account", tags=["account"])

# Global instances, replaced through app.dependency_overrides in tests
stripe_client = StripeClient()
draft_store = DraftStore()
transaction_initiator = TransactionInitiator(stripe_client, draft_store)
webhook_processor = WebhookProcessor(stripe_client, draft_store)
subscription_service = SubscriptionService(stripe_client)


def get_stripe_client() -> StripeClient:
    """Get Stripe client instance"""
    return stripe_client


def get_transaction_initiator() -> TransactionInitiator:
    """Get transaction initiator instance"""
    return transaction_initiator


def get_webhook_processor() -> WebhookProcessor:
    """Get webhook processor instance"""
    return webhook_processor


def get_subscription_service() -> SubscriptionService:
    """Get subscription service instance"""
    return subscription_service


async def storefront_error_handler(request: Request, exc: StorefrontError) -> JSONResponse:
    """Render a storefront error with its own status code"""
    if exc.status_code >= 500:
        logger.error(f"{exc.error_code} on {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.error_code} on {request.url.path}: {exc.message}")

    body = ErrorResponse(error=exc.error_code, message=exc.message, details=exc.details)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


# Checkout


@checkout_router.post(
    "/initiate",
    response_model=CheckoutInitiationResponse,
    response_model_by_alias=True,
    summary="Open the checkout transaction",
)
async def initiate_checkout(
    request: CheckoutInitiationRequest,
    db: Session = Depends(get_db),
    user: Optional[User] = Depends(get_current_user_optional),
    initiator: TransactionInitiator = Depends(get_transaction_initiator),
) -> CheckoutInitiationResponse:
    """
    Price the cart, snapshot it into a draft and open a payment or setup
    transaction. The client confirms it with the returned secret.
    """
    logger.info(
        f"Initiating checkout with {len(request.items)} items",
        extra={"authenticated": user is not None},
    )
    result = await run_in_threadpool(initiator.initiate, request, db, user)

    return CheckoutInitiationResponse(
        client_secret=result.client_secret,
        draft_key=result.draft_key,
        transaction_kind=result.transaction_kind,
        amount_cents=result.amount_cents,
        currency=result.currency,
    )


@checkout_router.get(
    "/payment-intent/{intent_id}",
    response_model=IntentStatusResponse,
    response_model_by_alias=True,
    summary="Status of a one-time checkout",
)
async def get_payment_intent_status(
    intent_id: str,
    db: Session = Depends(get_db),
    client: StripeClient = Depends(get_stripe_client),
) -> IntentStatusResponse:
    intent = await run_in_threadpool(_retrieve_intent, client.retrieve_payment_intent, intent_id)
    return _intent_status(db, intent)


@checkout_router.get(
    "/setup-intent/{intent_id}",
    response_model=IntentStatusResponse,
    response_model_by_alias=True,
    summary="Status of a subscription checkout",
)
async def get_setup_intent_status(
    intent_id: str,
    db: Session = Depends(get_db),
    client: StripeClient = Depends(get_stripe_client),
) -> IntentStatusResponse:
    intent = await run_in_threadpool(_retrieve_intent, client.retrieve_setup_intent, intent_id)
    return _intent_status(db, intent)


def _retrieve_intent(retrieve, intent_id: str) -> dict:
    try:
        return retrieve(intent_id)
    except StripeError as e:
        if e.is_not_found:
            raise NotFoundError("Transaction", intent_id)
        raise TransactionError("We couldn't check your payment status. Please try again.", reason=str(e))


def _intent_status(db: Session, intent: dict) -> IntentStatusResponse:
    """Processor status plus whatever the reconciler has materialized so far"""
    metadata = TransactionMetadata.from_stripe(intent.get("metadata"))
    response = IntentStatusResponse(intent_id=intent["id"], status=intent.get("status") or "unknown")
    if metadata is None:
        return response

    response.draft_key = metadata.draft_key
    order = db.query(Order).filter(Order.checkout_draft_key == metadata.draft_key).first()
    if order is not None:
        response.order = _order_summary(order)

    subscriptions = db.query(Subscription).filter(Subscription.checkout_draft_key == metadata.draft_key).all()
    response.subscriptions = [_subscription_summary(subscription) for subscription in subscriptions]
    return response


def _order_summary(order: Order) -> OrderSummary:
    return OrderSummary(
        id=order.id,
        status=order.status.value,
        total_cents=order.total_cents,
        currency=order.currency,
        contact_email=order.contact_email,
        created_at=order.created_at,
        items=[
            OrderItemSummary(
                product_id=item.product_id,
                product_name=item.product_name,
                quantity=item.quantity,
                unit_price_cents=item.unit_price_cents,
            )
            for item in order.items
        ],
    )


def _subscription_summary(subscription: Subscription) -> SubscriptionSummary:
    return SubscriptionSummary(
        stripe_subscription_id=subscription.stripe_subscription_id,
        stripe_price_id=subscription.stripe_price_id,
        status=subscription.status,
        interval=subscription.interval,
        current_period_end=subscription.current_period_end,
        cancel_at_period_end=subscription.cancel_at_period_end,
        collection_paused=subscription.collection_paused,
    )


# Payments


@payments_router.post(
    "/webhook",
    response_model=WebhookEventResponse,
    summary="Stripe webhook endpoint",
)
async def stripe_webhook(
    request: Request,
    processor: WebhookProcessor = Depends(get_webhook_processor),
):
    """
    Verify and process one Stripe delivery.

    200 acknowledges the event (handled, duplicate or not ours), 400 rejects
    an unauthentic delivery, and 500 asks Stripe to redeliver.
    """
    payload = await request.body()
    stripe_signature = request.headers.get("stripe-signature")

    try:
        result = await run_in_threadpool(processor.process_webhook, payload, stripe_signature)
    except SignatureVerificationError as e:
        logger.warning(
            f"Rejected webhook delivery: {e.message}",
            extra={"security_event": True, "client": request.client.host if request.client else None},
        )
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=e.to_dict())

    body = format_webhook_response_for_api(result)
    if result["status"] == WebhookStatus.FAILED.value:
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=body)
    return JSONResponse(status_code=status.HTTP_200_OK, content=body)


# Account


@account_router.get(
    "/subscriptions",
    response_model=List[SubscriptionSummary],
    response_model_by_alias=True,
    summary="List the caller's subscriptions",
)
async def list_subscriptions(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user_dependency),
) -> List[SubscriptionSummary]:
    subscriptions = (
        db.query(Subscription)
        .filter(Subscription.user_id == user.id)
        .order_by(Subscription.created_at.desc())
        .all()
    )
    return [_subscription_summary(subscription) for subscription in subscriptions]


@account_router.post(
    "/subscriptions/{stripe_subscription_id}/cancel",
    response_model=SubscriptionSummary,
    response_model_by_alias=True,
    summary="Cancel at period end",
)
async def cancel_subscription(
    stripe_subscription_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user_dependency),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionSummary:
    subscription = await run_in_threadpool(service.cancel, db, user.id, stripe_subscription_id)
    return _subscription_summary(subscription)


@account_router.post(
    "/subscriptions/{stripe_subscription_id}/pause",
    response_model=SubscriptionSummary,
    response_model_by_alias=True,
    summary="Pause payment collection",
)
async def pause_subscription(
    stripe_subscription_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user_dependency),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionSummary:
    subscription = await run_in_threadpool(service.pause, db, user.id, stripe_subscription_id)
    return _subscription_summary(subscription)


@account_router.post(
    "/subscriptions/{stripe_subscription_id}/resume",
    response_model=SubscriptionSummary,
    response_model_by_alias=True,
    summary="Resume payment collection",
)
async def resume_subscription(
    stripe_subscription_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user_dependency),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionSummary:
    subscription = await run_in_threadpool(service.resume, db, user.id, stripe_subscription_id)
    return _subscription_summary(subscription)


@account_router.delete(
    "/cards/{card_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Remove a saved card",
)
async def delete_saved_card(
    card_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user_dependency),
    client: StripeClient = Depends(get_stripe_client),
) -> Response:
    await run_in_threadpool(remove_saved_card, db, client, user.id, card_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


routers = [checkout_router, payments_router, account_router]
