"""Credit management API — balance, ledger history, holds, and admin entries."""

import logging
import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from creditflow.api.deps import get_pipeline
from creditflow.api.errors import unwrap
from creditflow.core.auth import get_identity
from creditflow.models.credit_hold import CreditHold
from creditflow.schemas.credits import (
    CreditBalanceResponse,
    CreditGrantRequest,
    CreditRefundRequest,
    HoldConvertRequest,
    HoldEnvelope,
    HoldListResponse,
    LedgerEntryEnvelope,
    ReconcileResponse,
    TransactionListResponse,
)
from creditflow.services.approvals import convert_request_hold, release_request_hold
from creditflow.services.auth import SessionIdentity
from creditflow.services.authorization import OrgContext, Verb
from creditflow.services.errors import NotFound
from creditflow.services.holds import get_hold, list_active_holds
from creditflow.services.ledger import (
    adjust_credits,
    get_transaction_history,
    grant_credits,
    recompute,
    refund_credits,
    require_account,
)
from creditflow.services.pipeline import ActionPipeline

logger = logging.getLogger(__name__)

router = APIRouter()


def _load_hold(hold_id: uuid.UUID):
    def load(db: Session, org: OrgContext) -> CreditHold:
        hold = get_hold(db, hold_id)
        # Holds of other companies are indistinguishable from missing ones.
        if hold is None or hold.account.company_id != org.company_id:
            raise NotFound("Hold not found")
        return hold

    return load


# ---------------------------------------------------------------------------
# Balance
# ---------------------------------------------------------------------------


@router.get("/balance", response_model=CreditBalanceResponse)
def get_credit_balance(
    identity: SessionIdentity = Depends(get_identity),
    pipeline: ActionPipeline = Depends(get_pipeline),
):
    """Balance, reserved and available credits for the caller's company."""

    def apply(org: OrgContext, _):
        account = require_account(pipeline.db, org.company_id)
        return account, len(list_active_holds(pipeline.db, account.id))

    account, active_holds = unwrap(pipeline.run(identity, Verb.VIEW_CREDITS, apply))
    return CreditBalanceResponse(
        company_id=account.company_id,
        balance=account.balance,
        reserved=account.reserved,
        available=account.available,
        subscription_tier=account.subscription_tier,
        active_holds=active_holds,
        updated_at=account.updated_at,
    )


# ---------------------------------------------------------------------------
# Ledger history
# ---------------------------------------------------------------------------


@router.get("/transactions", response_model=TransactionListResponse)
def get_credit_transactions(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100, alias="pageSize"),
    kind: str | None = Query(None),
    identity: SessionIdentity = Depends(get_identity),
    pipeline: ActionPipeline = Depends(get_pipeline),
):
    """Paginated ledger entries, newest first."""

    def apply(org: OrgContext, _):
        return get_transaction_history(pipeline.db, org.company_id, page, page_size, kind)

    entries, total = unwrap(pipeline.run(identity, Verb.VIEW_CREDITS, apply))
    return TransactionListResponse(
        items=entries,
        total=total,
        page=page,
        page_size=page_size,
        has_more=page * page_size < total,
    )


@router.get("/holds", response_model=HoldListResponse)
def get_active_holds(
    identity: SessionIdentity = Depends(get_identity),
    pipeline: ActionPipeline = Depends(get_pipeline),
):
    def apply(org: OrgContext, _):
        account = require_account(pipeline.db, org.company_id)
        return list_active_holds(pipeline.db, account.id)

    holds = unwrap(pipeline.run(identity, Verb.VIEW_CREDITS, apply))
    return HoldListResponse(items=holds)


# ---------------------------------------------------------------------------
# Admin entries
# ---------------------------------------------------------------------------


@router.post("/grant", response_model=LedgerEntryEnvelope, status_code=201)
def grant(
    payload: CreditGrantRequest,
    identity: SessionIdentity = Depends(get_identity),
    pipeline: ActionPipeline = Depends(get_pipeline),
):
    """Top up (``kind=grant``) or correct (``kind=adjust``) the company balance."""

    def apply(org: OrgContext, _):
        now = pipeline.clock.now()
        if payload.kind == "adjust":
            return adjust_credits(
                pipeline.db,
                org.company_id,
                payload.amount,
                now=now,
                actor_user_id=org.user_id,
                description=payload.description,
            )
        return grant_credits(
            pipeline.db,
            org.company_id,
            payload.amount,
            now=now,
            actor_user_id=org.user_id,
            description=payload.description,
        )

    entry = unwrap(pipeline.run(identity, Verb.MANAGE_CREDITS, apply))
    logger.info("Credit %s of %d posted by %s", payload.kind, payload.amount, entry.actor_user_id)
    return LedgerEntryEnvelope(entry=entry)


@router.post("/refund", response_model=LedgerEntryEnvelope, status_code=201)
def refund(
    payload: CreditRefundRequest,
    identity: SessionIdentity = Depends(get_identity),
    pipeline: ActionPipeline = Depends(get_pipeline),
):
    """Return part of a fulfilled request's spend."""

    def apply(org: OrgContext, _):
        return refund_credits(
            pipeline.db,
            org.company_id,
            payload.request_id,
            payload.amount,
            now=pipeline.clock.now(),
            actor_user_id=org.user_id,
            description=payload.description,
        )

    entry = unwrap(pipeline.run(identity, Verb.MANAGE_CREDITS, apply))
    return LedgerEntryEnvelope(entry=entry)


@router.get("/reconcile", response_model=ReconcileResponse)
def reconcile(
    identity: SessionIdentity = Depends(get_identity),
    pipeline: ActionPipeline = Depends(get_pipeline),
):
    """Compare the stored account totals with the totals derived from the ledger."""

    def apply(org: OrgContext, _):
        account = require_account(pipeline.db, org.company_id)
        return account, recompute(pipeline.db, org.company_id)

    account, totals = unwrap(pipeline.run(identity, Verb.RECONCILE, apply))
    consistent = (
        account.balance == totals.balance
        and account.reserved == totals.reserved
        and totals.reserved == totals.active_holds
    )
    if not consistent:
        logger.critical(
            "Reconcile found drift on account %s: stored=(%d, %d) ledger=(%d, %d) holds=%d",
            account.id,
            account.balance,
            account.reserved,
            totals.balance,
            totals.reserved,
            totals.active_holds,
        )
    return ReconcileResponse(
        company_id=account.company_id,
        stored_balance=account.balance,
        stored_reserved=account.reserved,
        ledger_balance=totals.balance,
        ledger_reserved=totals.reserved,
        active_holds=totals.active_holds,
        consistent=consistent,
    )


# ---------------------------------------------------------------------------
# Holds (admin)
# ---------------------------------------------------------------------------


@router.post("/hold/{hold_id}/release", response_model=HoldEnvelope)
def release_hold_endpoint(
    hold_id: uuid.UUID,
    identity: SessionIdentity = Depends(get_identity),
    pipeline: ActionPipeline = Depends(get_pipeline),
):
    """Release an active hold; the request that owns it is cancelled."""

    def apply(org: OrgContext, hold: CreditHold):
        return release_request_hold(
            pipeline.db, hold.id, actor_user_id=org.user_id, clock=pipeline.clock
        )

    hold = unwrap(pipeline.run(identity, Verb.RELEASE_HOLD, apply, load=_load_hold(hold_id)))
    return HoldEnvelope(hold=hold)


@router.post("/hold/{hold_id}/convert", response_model=HoldEnvelope)
def convert_hold_endpoint(
    hold_id: uuid.UUID,
    payload: HoldConvertRequest | None = None,
    identity: SessionIdentity = Depends(get_identity),
    pipeline: ActionPipeline = Depends(get_pipeline),
):
    """Convert an active hold; the approved request that owns it is fulfilled."""

    def apply(org: OrgContext, hold: CreditHold):
        return convert_request_hold(
            pipeline.db,
            hold.id,
            actor_user_id=org.user_id,
            clock=pipeline.clock,
            actual_credits=payload.actual_credits if payload else None,
        )

    hold = unwrap(pipeline.run(identity, Verb.CONVERT_HOLD, apply, load=_load_hold(hold_id)))
    return HoldEnvelope(hold=hold)
