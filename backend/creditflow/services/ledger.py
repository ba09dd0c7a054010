"""Credit account store — accounts, the append-only ledger, and reconciliation.

``post_entry`` is the only code path that writes ``balance`` or ``reserved``.
It applies the change as one guarded UPDATE, so the non-negativity checks and
the write can't be split by a concurrent transaction.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from creditflow.core.database import unit_of_work
from creditflow.models.approval_request import ApprovalRequest
from creditflow.models.credit_account import CreditAccount
from creditflow.models.credit_hold import CreditHold
from creditflow.models.ledger_entry import BALANCE_KINDS, LEDGER_ENTRY_KINDS, RESERVE_KINDS, LedgerEntry
from creditflow.services.errors import (
    Conflict,
    InsufficientCredits,
    InvalidTransition,
    LedgerInconsistent,
    LedgerViolation,
    NotFound,
    ValidationError,
)

logger = logging.getLogger(__name__)


@dataclass
class LedgerTotals:
    """Account totals derived from the ledger and the hold table."""

    balance: int
    reserved: int
    active_holds: int

    @property
    def available(self) -> int:
        return self.balance - self.reserved


# ---------------------------------------------------------------------------
# Account lookup
# ---------------------------------------------------------------------------


def get_account(db: Session, company_id: uuid.UUID) -> CreditAccount | None:
    return db.execute(
        select(CreditAccount).where(CreditAccount.company_id == company_id)
    ).scalar_one_or_none()


def require_account(db: Session, company_id: uuid.UUID) -> CreditAccount:
    account = get_account(db, company_id)
    if account is None:
        raise NotFound(f"No credit account for company {company_id}")
    return account


def lock_account(db: Session, account_id: uuid.UUID) -> CreditAccount:
    """Re-read an account under a row lock (no-op lock on SQLite)."""
    account = db.execute(
        select(CreditAccount)
        .where(CreditAccount.id == account_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if account is None:
        raise NotFound(f"Credit account {account_id} not found")
    return account


def provision_account(
    db: Session,
    company_id: uuid.UUID,
    *,
    now: datetime,
    subscription_tier: str = "standard",
    initial_credits: int = 0,
    actor_user_id: uuid.UUID | None = None,
) -> CreditAccount:
    """Create the company's account, granting ``initial_credits`` through the ledger.

    Flushes but does not commit; callers own the transaction.
    """
    if initial_credits < 0:
        raise ValidationError("initial_credits must not be negative")
    if get_account(db, company_id) is not None:
        raise Conflict(f"Company {company_id} already has a credit account")

    account = CreditAccount(
        company_id=company_id,
        balance=0,
        reserved=0,
        subscription_tier=subscription_tier,
        created_at=now,
        updated_at=now,
    )
    db.add(account)
    db.flush()

    if initial_credits > 0:
        post_entry(
            db,
            account_id=account.id,
            kind="grant",
            signed_amount=initial_credits,
            now=now,
            actor_user_id=actor_user_id,
            description=f"Initial {subscription_tier} allocation",
        )
    return account


# ---------------------------------------------------------------------------
# The write path
# ---------------------------------------------------------------------------


def post_entry(
    db: Session,
    *,
    account_id: uuid.UUID,
    kind: str,
    signed_amount: int,
    now: datetime,
    hold_id: uuid.UUID | None = None,
    request_id: uuid.UUID | None = None,
    actor_user_id: uuid.UUID | None = None,
    description: str | None = None,
    idempotency_key: str | None = None,
) -> LedgerEntry:
    """Append a ledger entry and apply it to the account columns.

    Raises LedgerViolation if the result would leave ``balance`` or
    ``reserved`` negative, or ``reserved`` above ``balance``. Raises Conflict
    if ``idempotency_key`` was already used on this account.
    """
    if kind in BALANCE_KINDS:
        new_balance = CreditAccount.balance + signed_amount
        new_reserved = CreditAccount.reserved
        values = {"balance": new_balance}
    elif kind in RESERVE_KINDS:
        new_balance = CreditAccount.balance
        new_reserved = CreditAccount.reserved + signed_amount
        values = {"reserved": new_reserved}
    else:
        raise ValueError(f"Unknown ledger entry kind: {kind}")

    result = db.execute(
        update(CreditAccount)
        .where(
            CreditAccount.id == account_id,
            new_balance >= 0,
            new_reserved >= 0,
            new_balance >= new_reserved,
        )
        .values(**values, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        account = lock_account(db, account_id)
        raise LedgerViolation(
            f"{kind} of {signed_amount} rejected for account {account_id} "
            f"(balance={account.balance}, reserved={account.reserved})"
        )

    account = lock_account(db, account_id)
    entry = LedgerEntry(
        account_id=account_id,
        kind=kind,
        signed_amount=signed_amount,
        balance_after=account.balance,
        reserved_after=account.reserved,
        hold_id=hold_id,
        request_id=request_id,
        actor_user_id=actor_user_id,
        description=description,
        idempotency_key=idempotency_key,
        created_at=now,
    )
    db.add(entry)
    try:
        db.flush()
    except IntegrityError as exc:
        raise Conflict(f"Ledger entry '{idempotency_key}' was already posted") from exc

    logger.info(
        "Ledger %s %+d on account %s (balance=%d, reserved=%d)",
        kind,
        signed_amount,
        account_id,
        account.balance,
        account.reserved,
    )
    return entry


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


def recompute(db: Session, company_id: uuid.UUID) -> LedgerTotals:
    """Derive balance and reserved from the ledger, ignoring the account columns."""
    account = require_account(db, company_id)

    sums = dict(
        db.execute(
            select(LedgerEntry.kind, func.coalesce(func.sum(LedgerEntry.signed_amount), 0))
            .where(LedgerEntry.account_id == account.id)
            .group_by(LedgerEntry.kind)
        ).all()
    )
    active_holds = db.execute(
        select(func.coalesce(func.sum(CreditHold.amount), 0)).where(
            CreditHold.account_id == account.id,
            CreditHold.state == "active",
        )
    ).scalar_one()

    return LedgerTotals(
        balance=int(sum(sums.get(kind, 0) for kind in BALANCE_KINDS)),
        reserved=int(sum(sums.get(kind, 0) for kind in RESERVE_KINDS)),
        active_holds=int(active_holds),
    )


def verify_account(db: Session, company_id: uuid.UUID) -> LedgerTotals:
    """Raise LedgerInconsistent unless stored columns, ledger and holds agree."""
    account = require_account(db, company_id)
    db.refresh(account)
    totals = recompute(db, company_id)

    if (account.balance, account.reserved) != (totals.balance, totals.reserved):
        logger.critical(
            "Account %s drifted from ledger: stored=(%d, %d) derived=(%d, %d)",
            account.id,
            account.balance,
            account.reserved,
            totals.balance,
            totals.reserved,
        )
        raise LedgerInconsistent(
            f"Account {account.id} columns disagree with its ledger "
            f"(stored balance={account.balance} reserved={account.reserved}, "
            f"ledger balance={totals.balance} reserved={totals.reserved})"
        )
    if totals.reserved != totals.active_holds:
        logger.critical(
            "Account %s reserved=%d but active holds sum to %d",
            account.id,
            totals.reserved,
            totals.active_holds,
        )
        raise LedgerInconsistent(
            f"Account {account.id} reserves {totals.reserved} but active holds total {totals.active_holds}"
        )
    return totals


# ---------------------------------------------------------------------------
# Administrative entries
# ---------------------------------------------------------------------------


def grant_credits(
    db: Session,
    company_id: uuid.UUID,
    amount: int,
    *,
    now: datetime,
    actor_user_id: uuid.UUID | None = None,
    description: str | None = None,
) -> LedgerEntry:
    """Top up a company's balance."""
    if amount <= 0:
        raise ValidationError("Grant amount must be positive")
    with unit_of_work(db):
        account = require_account(db, company_id)
        entry = post_entry(
            db,
            account_id=account.id,
            kind="grant",
            signed_amount=amount,
            now=now,
            actor_user_id=actor_user_id,
            description=description or f"Credit grant: {amount}",
        )
    db.refresh(entry)
    return entry


def adjust_credits(
    db: Session,
    company_id: uuid.UUID,
    signed_amount: int,
    *,
    now: datetime,
    actor_user_id: uuid.UUID | None = None,
    description: str | None = None,
) -> LedgerEntry:
    """Manual correction; may not eat into reserved credits."""
    if signed_amount == 0:
        raise ValidationError("Adjustment must be non-zero")
    with unit_of_work(db):
        account = lock_account(db, require_account(db, company_id).id)
        if signed_amount < 0 and -signed_amount > account.available:
            raise InsufficientCredits(required=-signed_amount, available=account.available)
        entry = post_entry(
            db,
            account_id=account.id,
            kind="adjust",
            signed_amount=signed_amount,
            now=now,
            actor_user_id=actor_user_id,
            description=description or f"Manual adjustment: {signed_amount:+d}",
        )
    db.refresh(entry)
    return entry


def refund_credits(
    db: Session,
    company_id: uuid.UUID,
    request_id: uuid.UUID,
    amount: int,
    *,
    now: datetime,
    actor_user_id: uuid.UUID | None = None,
    description: str | None = None,
) -> LedgerEntry:
    """Return part of a fulfilled request's spend to the balance.

    Total refunds for a request never exceed its ``actual_credits``.
    """
    if amount <= 0:
        raise ValidationError("Refund amount must be positive")

    with unit_of_work(db):
        request = db.get(ApprovalRequest, request_id)
        if request is None or request.company_id != company_id:
            raise NotFound("Request not found")
        if request.status != "fulfilled":
            raise InvalidTransition(request.status, "refund")

        account = lock_account(db, require_account(db, company_id).id)
        already_refunded = db.execute(
            select(func.coalesce(func.sum(LedgerEntry.signed_amount), 0)).where(
                LedgerEntry.account_id == account.id,
                LedgerEntry.request_id == request_id,
                LedgerEntry.kind == "refund",
            )
        ).scalar_one()
        refundable = (request.actual_credits or 0) - int(already_refunded)
        if amount > refundable:
            raise ValidationError(
                f"Refund of {amount} exceeds the {refundable} credits still refundable for this request"
            )

        entry = post_entry(
            db,
            account_id=account.id,
            kind="refund",
            signed_amount=amount,
            now=now,
            request_id=request_id,
            actor_user_id=actor_user_id,
            description=description or f"Refund for request: {request.title}",
        )
    db.refresh(entry)
    return entry


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def get_transaction_history(
    db: Session,
    company_id: uuid.UUID,
    page: int = 1,
    page_size: int = 20,
    kind: str | None = None,
) -> tuple[list[LedgerEntry], int]:
    """Return paginated ledger entries for a company, newest first."""
    if kind is not None and kind not in LEDGER_ENTRY_KINDS:
        raise ValidationError(f"Invalid kind '{kind}'")
    account = require_account(db, company_id)

    conditions = [LedgerEntry.account_id == account.id]
    if kind is not None:
        conditions.append(LedgerEntry.kind == kind)

    total = db.execute(
        select(func.count()).select_from(LedgerEntry).where(*conditions)
    ).scalar_one()
    offset = (page - 1) * page_size
    entries = (
        db.execute(
            select(LedgerEntry)
            .where(*conditions)
            .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
            .offset(offset)
            .limit(page_size)
        )
        .scalars()
        .all()
    )
    return list(entries), total
