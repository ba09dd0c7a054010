import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt
from sqlalchemy.orm import Session

from creditflow.core.config import settings
from creditflow.models.user import User

# ---------------------------------------------------------------------------
# JWT utilities
# ---------------------------------------------------------------------------


def create_access_token(user_id: uuid.UUID) -> str:
    expire = datetime.now(timezone.utc) + timedelta(
        minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES
    )
    payload = {
        "sub": str(user_id),
        "exp": expire,
        "type": "access",
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    """Decode and validate a JWT token. Raises jwt.PyJWTError on failure."""
    return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])


# ---------------------------------------------------------------------------
# Session identity
# ---------------------------------------------------------------------------


@dataclass
class SessionIdentity:
    """Who is calling and how they proved it."""

    user: User | None
    via_cookie: bool = False
    csrf_valid: bool = False


def get_user_by_id(db: Session, user_id: uuid.UUID) -> User | None:
    return db.get(User, user_id)


def user_from_token(db: Session, token: str) -> User | None:
    """Resolve an access token to an active user, or None."""
    try:
        payload = decode_token(token)
    except jwt.PyJWTError:
        return None

    if payload.get("type") != "access":
        return None
    try:
        user_id = uuid.UUID(payload.get("sub") or "")
    except ValueError:
        return None

    user = get_user_by_id(db, user_id)
    if user is None or not user.is_active:
        return None
    return user


def resolve_identity(
    db: Session,
    *,
    bearer_token: str | None,
    session_token: str | None,
    csrf_cookie: str | None,
    csrf_header: str | None,
) -> SessionIdentity:
    """Bearer tokens win over the session cookie; only cookies need CSRF."""
    if bearer_token:
        return SessionIdentity(user=user_from_token(db, bearer_token))
    if session_token:
        csrf_valid = bool(csrf_cookie and csrf_header) and secrets.compare_digest(
            csrf_cookie, csrf_header
        )
        return SessionIdentity(
            user=user_from_token(db, session_token),
            via_cookie=True,
            csrf_valid=csrf_valid,
        )
    return SessionIdentity(user=None)
