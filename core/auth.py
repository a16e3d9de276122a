"""Authentication utilities for FastAPI routes"""
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from core.config import settings
from core.logging import get_logger
from database.models import User
from database.session import get_db

logger = get_logger(__name__)

# Guests may check out, so a missing header is not an error here
security = HTTPBearer(auto_error=False)


def create_access_token(user_id: str, expires_minutes: Optional[int] = None) -> str:
    """
    Issue a signed access token for ``user_id``

    Args:
        user_id: User ID placed in the ``sub`` claim
        expires_minutes: Lifetime override; defaults to the configured expiration

    Returns:
        str: JWT access token
    """
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=expires_minutes or settings.jwt_expiration_minutes)
    payload = {"sub": user_id, "exp": expire, "iat": now, "type": "access"}
    return jwt.encode(payload, settings.jwt_secret_key.get_secret_value(), algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    """
    Decode and validate a JWT token

    Raises:
        jwt.ExpiredSignatureError: If token is expired
        jwt.InvalidTokenError: If token is invalid
    """
    return jwt.decode(token, settings.jwt_secret_key.get_secret_value(), algorithms=[settings.jwt_algorithm])


def get_current_user_from_token(token: str, db: Session) -> Optional[User]:
    """Get the user a JWT token was issued to, or None"""
    try:
        payload = decode_token(token)
    except jwt.ExpiredSignatureError:
        logger.warning("Token expired")
        return None
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid token: {e}")
        return None

    user_id = payload.get("sub")
    if not user_id:
        logger.warning("Token missing user ID")
        return None

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        logger.warning(f"User not found: {user_id}")
        return None

    return user


def get_current_user_optional(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security), db: Session = Depends(get_db)
) -> Optional[User]:
    """FastAPI dependency resolving the bearer token to a user; anonymous when absent or invalid"""
    if not credentials:
        return None
    return get_current_user_from_token(credentials.credentials, db)


def get_current_user_dependency(user: Optional[User] = Depends(get_current_user_optional)) -> User:
    """FastAPI dependency to get current authenticated user

    Raises:
        HTTPException: If authentication fails
    """
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user
