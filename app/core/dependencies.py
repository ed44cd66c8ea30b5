"""
Dependency injection for FastAPI endpoints.
"""
from functools import lru_cache
from typing import Generator, Optional, cast

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.security import decode_token
from app.db.base import SessionLocal
from app.models.user import User
from app.services.payment_gateway import RazorpayClient
from app.services.reconciler import BookingReconciler
from app.services.submission import SubmissionGuard

# Tokens are issued by the identity service at this URL
oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{settings.API_V1_PREFIX}/auth/login")
optional_oauth2_scheme = OAuth2PasswordBearer(
    tokenUrl=f"{settings.API_V1_PREFIX}/auth/login", auto_error=False
)


def get_db() -> Generator:
    """
    Dependency for database session.

    Yields:
        Database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _user_from_token(db: Session, token: Optional[str]) -> Optional[User]:
    if not token:
        return None
    payload = decode_token(token)
    if payload is None:
        return None
    user_id: Optional[str] = payload.get("sub")
    if user_id is None or not str(user_id).isdigit():
        return None
    return db.query(User).filter(User.id == int(user_id)).first()


def get_current_user(
    db: Session = Depends(get_db), token: str = Depends(oauth2_scheme)
) -> User:
    """
    Get current authenticated user from JWT token.

    Args:
        db: Database session
        token: JWT token

    Returns:
        Current user

    Raises:
        HTTPException: If token is invalid or user not found
    """
    user = _user_from_token(db, token)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def get_current_active_user(current_user: User = Depends(get_current_user)) -> User:
    """
    Get current active user.

    Raises:
        HTTPException: If user is inactive
    """
    if not cast(bool, current_user.is_active):
        raise HTTPException(status_code=400, detail="Inactive user")
    return current_user


def get_optional_user(
    db: Session = Depends(get_db), token: Optional[str] = Depends(optional_oauth2_scheme)
) -> Optional[User]:
    """Current user if a valid token was sent, else None (anonymous-allowed routes)."""
    user = _user_from_token(db, token)
    if user is not None and not user.is_active:
        return None
    return user


@lru_cache()
def get_payment_gateway() -> RazorpayClient:
    """Process-wide gateway client; one connection pool for all requests."""
    return RazorpayClient.from_settings(settings)


def get_reconciler(
    db: Session = Depends(get_db),
    gateway: RazorpayClient = Depends(get_payment_gateway),
) -> BookingReconciler:
    return BookingReconciler(db, gateway)


def get_submission_guard(db: Session = Depends(get_db)) -> SubmissionGuard:
    return SubmissionGuard(db)
