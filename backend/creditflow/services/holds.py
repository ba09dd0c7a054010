"""Hold manager — reserve, release and convert credits for approval requests.

These functions flush but never commit: a hold change is always part of a
larger transaction (usually a request transition) owned by the caller.
"""

import logging
import uuid
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from creditflow.models.credit_hold import CreditHold
from creditflow.services.errors import (
    Conflict,
    ExceedsHold,
    InsufficientCredits,
    LedgerViolation,
    NotFound,
    ValidationError,
)
from creditflow.services.ledger import lock_account, post_entry

logger = logging.getLogger(__name__)


def get_hold(db: Session, hold_id: uuid.UUID) -> CreditHold | None:
    return db.get(CreditHold, hold_id)


def get_active_hold_for_request(db: Session, request_id: uuid.UUID) -> CreditHold | None:
    return db.execute(
        select(CreditHold)
        .where(CreditHold.request_id == request_id, CreditHold.state == "active")
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def list_active_holds(db: Session, account_id: uuid.UUID) -> list[CreditHold]:
    return list(
        db.execute(
            select(CreditHold)
            .where(CreditHold.account_id == account_id, CreditHold.state == "active")
            .order_by(CreditHold.created_at.desc())
        )
        .scalars()
        .all()
    )


def _lock_hold(db: Session, hold_id: uuid.UUID) -> CreditHold:
    hold = db.execute(
        select(CreditHold)
        .where(CreditHold.id == hold_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if hold is None:
        raise NotFound(f"Hold {hold_id} not found")
    return hold


def _resolve(db: Session, hold: CreditHold, state: str, now: datetime, **values) -> None:
    """Move an active hold to a terminal state exactly once."""
    result = db.execute(
        update(CreditHold)
        .where(CreditHold.id == hold.id, CreditHold.state == "active")
        .values(state=state, resolved_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise Conflict(f"Hold {hold.id} was already resolved")


def place_hold(
    db: Session,
    account_id: uuid.UUID,
    amount: int,
    request_id: uuid.UUID,
    *,
    now: datetime,
    actor_user_id: uuid.UUID | None = None,
) -> CreditHold:
    """Reserve ``amount`` credits for a request.

    The account row is read under lock and the ledger update re-checks the
    headroom in its WHERE clause, so concurrent placements against the same
    account can't both succeed past what is available. Returns the existing
    active hold if the request already has one.
    """
    if amount <= 0:
        raise ValidationError("Hold amount must be positive")

    account = lock_account(db, account_id)

    existing = get_active_hold_for_request(db, request_id)
    if existing is not None:
        return existing

    if account.available < amount:
        raise InsufficientCredits(required=amount, available=account.available)

    hold = CreditHold(
        id=uuid.uuid4(),
        account_id=account_id,
        request_id=request_id,
        amount=amount,
        state="active",
        created_at=now,
    )
    db.add(hold)
    db.flush()

    try:
        post_entry(
            db,
            account_id=account_id,
            kind="hold_place",
            signed_amount=amount,
            now=now,
            hold_id=hold.id,
            request_id=request_id,
            actor_user_id=actor_user_id,
            idempotency_key=f"hold_place:{hold.id}",
        )
    except LedgerViolation:
        # Headroom was consumed between the locked read and the update.
        account = lock_account(db, account_id)
        raise InsufficientCredits(required=amount, available=account.available)

    logger.info("Placed hold %s of %d on account %s for request %s", hold.id, amount, account_id, request_id)
    return hold


def release_hold(
    db: Session,
    hold_id: uuid.UUID,
    *,
    now: datetime,
    actor_user_id: uuid.UUID | None = None,
) -> CreditHold:
    """Cancel a reservation without spending. Active holds only."""
    hold = _lock_hold(db, hold_id)
    if not hold.is_active:
        raise Conflict(f"Cannot release hold with state '{hold.state}'")

    _resolve(db, hold, "released", now)
    post_entry(
        db,
        account_id=hold.account_id,
        kind="hold_release",
        signed_amount=-hold.amount,
        now=now,
        hold_id=hold.id,
        request_id=hold.request_id,
        actor_user_id=actor_user_id,
        idempotency_key=f"hold_release:{hold.id}",
    )
    db.refresh(hold)
    logger.info("Released hold %s (%d credits)", hold.id, hold.amount)
    return hold


def convert_hold(
    db: Session,
    hold_id: uuid.UUID,
    *,
    now: datetime,
    actual_amount: int | None = None,
    actor_user_id: uuid.UUID | None = None,
) -> CreditHold:
    """Turn a reservation into a realized spend.

    Posts the release of the full reservation and the spend of
    ``actual_amount`` (defaults to the held amount) in the same transaction.
    Spending less than was held leaves the difference on the balance.
    """
    hold = _lock_hold(db, hold_id)
    if not hold.is_active:
        raise Conflict(f"Cannot convert hold with state '{hold.state}'")

    spend = hold.amount if actual_amount is None else actual_amount
    if spend < 0:
        raise ValidationError("Actual credits must not be negative")
    if spend > hold.amount:
        raise ExceedsHold(actual=spend, held=hold.amount)

    _resolve(db, hold, "converted", now, converted_amount=spend)
    post_entry(
        db,
        account_id=hold.account_id,
        kind="hold_release",
        signed_amount=-hold.amount,
        now=now,
        hold_id=hold.id,
        request_id=hold.request_id,
        actor_user_id=actor_user_id,
        idempotency_key=f"hold_release:{hold.id}",
    )
    post_entry(
        db,
        account_id=hold.account_id,
        kind="hold_convert",
        signed_amount=-spend,
        now=now,
        hold_id=hold.id,
        request_id=hold.request_id,
        actor_user_id=actor_user_id,
        idempotency_key=f"hold_convert:{hold.id}",
    )
    db.refresh(hold)
    logger.info("Converted hold %s: spent %d of %d reserved", hold.id, spend, hold.amount)
    return hold
