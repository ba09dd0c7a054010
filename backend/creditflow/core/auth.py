import secrets

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from creditflow.core.config import settings
from creditflow.core.database import get_db
from creditflow.services.auth import SessionIdentity, resolve_identity


def _bearer_token(request: Request) -> str | None:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


def get_identity(request: Request, db: Session = Depends(get_db)) -> SessionIdentity:
    """Identify the caller from a Bearer token or the session cookie.

    Never raises: an anonymous identity is rejected later by the pipeline so
    that the error body has the same shape as every other failure.
    """
    return resolve_identity(
        db,
        bearer_token=_bearer_token(request),
        session_token=request.cookies.get(settings.SESSION_COOKIE_NAME),
        csrf_cookie=request.cookies.get(settings.CSRF_COOKIE_NAME),
        csrf_header=request.headers.get(settings.CSRF_HEADER_NAME),
    )


def require_cron_secret(request: Request) -> None:
    """Guard for scheduler-invoked endpoints."""
    token = _bearer_token(request)
    if not settings.CRON_SECRET or token is None or not secrets.compare_digest(token, settings.CRON_SECRET):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid cron secret",
        )
