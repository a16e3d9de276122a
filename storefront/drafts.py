"""
Checkout Draft Store

Short-lived server-side records holding a checkout's full context between
opening the payment transaction and materializing the order from the
processor's success event.
"""

import secrets
from datetime import timedelta
from typing import Callable, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import PersistenceError
from core.logging import get_logger
from database.base import utcnow
from database.session import SessionLocal

from .models import CheckoutDraft
from .schemas import DraftContext

logger = get_logger(__name__, domain="storefront")

KEY_BYTES = 32


def generate_draft_key() -> str:
    """Unguessable, URL-safe draft key"""
    return secrets.token_urlsafe(KEY_BYTES)


class DraftStore:
    """
    Write-once/read-once storage for checkout drafts.

    Each public method runs in its own session from ``session_factory`` so a
    draft is durable before the caller opens a transaction. ``discard`` is the
    exception: it deletes inside the caller's session so the draft disappears
    in the same commit as the order it became.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        ttl_minutes: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.ttl = timedelta(minutes=ttl_minutes or settings.checkout_draft_ttl_minutes)

    def create(self, context: DraftContext) -> str:
        """Persist a draft and return its key; raises PersistenceError on write failure"""
        key = generate_draft_key()
        now = utcnow()
        session = self.session_factory()
        try:
            session.add(
                CheckoutDraft(
                    key=key,
                    user_id=context.user_id,
                    data=context.model_dump(mode="json"),
                    created_at=now,
                    expires_at=now + self.ttl,
                )
            )
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to save checkout draft: {e}")
            raise PersistenceError(reason=str(e)) from e
        finally:
            session.close()

        logger.info("Checkout draft created", extra={"draft_key_prefix": key[:8], "lines": len(context.lines)})
        return key

    def get(self, key: str) -> Optional[DraftContext]:
        """Return the draft context, or None if consumed, expired, unreadable or unknown"""
        session = self.session_factory()
        try:
            return self.load(session, key)
        finally:
            session.close()

    def load(self, session: Session, key: str) -> Optional[DraftContext]:
        """Like :meth:`get` but reads through the caller's session"""
        if not key:
            return None

        draft = session.get(CheckoutDraft, key)
        if draft is None:
            return None

        if draft.expires_at and draft.expires_at <= utcnow():
            logger.info("Checkout draft expired", extra={"draft_key_prefix": key[:8]})
            return None

        try:
            return DraftContext.model_validate(draft.data)
        except ValidationError as e:
            logger.error(f"Unreadable checkout draft {key[:8]}: {e}")
            return None

    def discard(self, session: Session, key: str) -> None:
        """Delete the draft as part of the caller's transaction"""
        session.query(CheckoutDraft).filter(CheckoutDraft.key == key).delete(synchronize_session=False)

    def delete(self, key: str) -> None:
        """Best-effort delete; failures are logged, never raised"""
        session = self.session_factory()
        try:
            deleted = session.query(CheckoutDraft).filter(CheckoutDraft.key == key).delete(synchronize_session=False)
            session.commit()
            if not deleted:
                logger.warning("Checkout draft already gone", extra={"draft_key_prefix": key[:8]})
        except SQLAlchemyError as e:
            session.rollback()
            logger.warning(f"Failed to delete checkout draft {key[:8]}: {e}")
        finally:
            session.close()
