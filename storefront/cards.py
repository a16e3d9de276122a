"""Saved card removal"""

from sqlalchemy.orm import Session

from core.exceptions import NotFoundError, TransactionError
from core.logging import get_logger
from database.session import transaction

from .models import SavedCard
from .stripe_client import StripeClient, StripeError

logger = get_logger(__name__, domain="storefront")


def remove_saved_card(session: Session, stripe_client: StripeClient, user_id: str, card_id: str) -> None:
    """Detach the card at the processor, then forget it locally"""
    card = session.query(SavedCard).filter(SavedCard.id == card_id, SavedCard.user_id == user_id).first()
    if card is None:
        raise NotFoundError("Saved card", card_id)

    try:
        stripe_client.detach_payment_method(card.stripe_payment_method_id)
    except StripeError as e:
        if not e.is_not_found:
            raise TransactionError("We couldn't remove this card. Please try again.", reason=str(e))
        logger.warning(f"Payment method {card.stripe_payment_method_id} already gone at processor")

    was_default = card.is_default
    with transaction(session):
        session.delete(card)
        if was_default:
            replacement = (
                session.query(SavedCard)
                .filter(SavedCard.user_id == user_id, SavedCard.id != card_id)
                .order_by(SavedCard.created_at.desc())
                .first()
            )
            if replacement is not None:
                replacement.is_default = True

    logger.info(f"Removed saved card {card_id} for user {user_id}")
