"""Request pipeline: authenticate → load org → load target → authorize → apply.

Every action the HTTP layer performs on behalf of a user goes through
``ActionPipeline.run``. Failures come back as ``Err`` values carrying the
error kind, so the HTTP seam maps them to status codes in one place.
"""

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session

from creditflow.core.clock import Clock
from creditflow.core.config import settings
from creditflow.services.auth import SessionIdentity
from creditflow.services.authorization import MUTATING_VERBS, OrgContext, Verb, authorize, load_org_context
from creditflow.services.errors import ApprovalError, ErrorKind, Forbidden, TransientError, Unauthenticated

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    code: str
    message: str

    @classmethod
    def from_exception(cls, exc: ApprovalError) -> "Err":
        return cls(kind=exc.kind, code=exc.code, message=exc.message)


Result = Ok | Err

Loader = Callable[[Session, OrgContext], Any]
Action = Callable[[OrgContext, Any], T]


def is_transient(exc: DBAPIError) -> bool:
    """Dropped connections and serialization/lock failures are worth retrying."""
    return isinstance(exc, OperationalError) or bool(exc.connection_invalidated)


def to_err(exc: ApprovalError) -> Err:
    if exc.kind == ErrorKind.CONSISTENCY:
        logger.critical("Consistency failure: %s", exc.message)
    return Err.from_exception(exc)


class ActionPipeline:
    """Runs one user action against the database with auth and retries."""

    def __init__(
        self,
        db: Session,
        clock: Clock,
        *,
        max_retries: int | None = None,
        base_delay: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.db = db
        self.clock = clock
        self.max_retries = settings.DB_MAX_RETRIES if max_retries is None else max_retries
        self.base_delay = settings.DB_RETRY_BASE_DELAY_SECONDS if base_delay is None else base_delay
        self._sleep = sleep

    def run(
        self,
        identity: SessionIdentity | None,
        verb: Verb,
        apply: Action,
        *,
        load: Loader | None = None,
    ) -> Result:
        """Run ``apply(org, target)`` if the caller may perform ``verb``.

        ``load(db, org)`` resolves the target (a request, a team id) and
        should raise NotFound for unknown ids. It runs inside the retry loop
        together with authorization and ``apply``.
        """
        try:
            self._authenticate(identity, verb)

            def attempt():
                org = self._load_org(identity)
                target = load(self.db, org) if load is not None else None
                authorize(verb, org, target)
                return apply(org, target)

            return Ok(self._with_retries(attempt))
        except ApprovalError as exc:
            return to_err(exc)

    # -- stages -------------------------------------------------------------

    def _authenticate(self, identity: SessionIdentity | None, verb: Verb) -> None:
        if identity is None or identity.user is None:
            raise Unauthenticated("Authentication required")
        if identity.via_cookie and verb in MUTATING_VERBS and not identity.csrf_valid:
            raise Forbidden("Missing or invalid CSRF token")

    def _load_org(self, identity: SessionIdentity) -> OrgContext:
        org = load_org_context(self.db, identity.user.id)
        if org is None:
            raise Forbidden("User does not belong to an organization")
        return org

    def _with_retries(self, fn: Callable[[], T]) -> T:
        attempt = 0
        while True:
            try:
                return fn()
            except DBAPIError as exc:
                if not is_transient(exc):
                    raise
                self.db.rollback()
                attempt += 1
                if attempt > self.max_retries:
                    logger.error("Giving up after %d attempts: %s", attempt, exc.__class__.__name__)
                    raise TransientError("The database is temporarily unavailable; try again") from exc
                delay = self.base_delay * (2 ** (attempt - 1)) * (1 + random.random())
                logger.warning(
                    "Transient database error (attempt %d/%d), retrying in %.3fs",
                    attempt,
                    self.max_retries,
                    delay,
                )
                self._sleep(delay)
