"""Approval request state machine.

Each transition runs as one transaction: read the request under lock, check
the move is legal, apply a status UPDATE guarded on the status that was read,
touch the hold, append the event, commit. If a concurrent transaction changed
the row first, the guarded UPDATE matches nothing and the caller gets
InvalidTransition; nothing is written.

    draft ──submit──▶ pending ──approve──▶ approved ──fulfill──▶ fulfilled
                        │  ▲                  │
                        │  └─escalate         └─cancel──▶ cancelled
                        ├─deny──▶ denied
                        ├─cancel──▶ cancelled
                        └─expire──▶ expired
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from creditflow.core.clock import Clock
from creditflow.core.config import settings
from creditflow.core.database import unit_of_work
from creditflow.models.approval_request import REQUEST_STATUSES, REQUEST_TYPES, ApprovalRequest
from creditflow.models.credit_hold import CreditHold
from creditflow.models.request_event import RequestEvent
from creditflow.models.team import Team
from creditflow.services.errors import (
    Conflict,
    ExceedsHold,
    Forbidden,
    InvalidTransition,
    LedgerInconsistent,
    NotFound,
    ValidationError,
)
from creditflow.services.events import append_event, list_events
from creditflow.services.holds import (
    convert_hold,
    get_active_hold_for_request,
    get_hold,
    place_hold,
    release_hold,
)
from creditflow.services.ledger import require_account
from creditflow.services.routing import get_applicable_rule, route

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Transition table
# ---------------------------------------------------------------------------

# event -> (statuses it may start from, status it leads to)
TRANSITIONS: dict[str, tuple[frozenset[str], str]] = {
    "submit": (frozenset({"draft"}), "pending"),
    "approve": (frozenset({"pending"}), "approved"),
    "deny": (frozenset({"pending"}), "denied"),
    "cancel": (frozenset({"draft", "pending", "approved"}), "cancelled"),
    "escalate": (frozenset({"pending"}), "pending"),
    "expire": (frozenset({"pending"}), "expired"),
    "fulfill": (frozenset({"approved"}), "fulfilled"),
}

EVENT_KIND: dict[str, str] = {
    "submit": "submitted",
    "approve": "approved",
    "deny": "denied",
    "cancel": "cancelled",
    "escalate": "escalated",
    "expire": "expired",
    "fulfill": "fulfilled",
}


def _assert_transition(current: str, event: str) -> None:
    allowed_from, _ = TRANSITIONS[event]
    if current in allowed_from:
        return
    if event == "fulfill" and current == "fulfilled":
        raise Conflict("Request was already fulfilled; its hold has been converted")
    raise InvalidTransition(current, event)


@dataclass(frozen=True)
class ApprovalPolicy:
    """Timer deltas applied on submission and escalation."""

    escalation_after: timedelta
    expires_after: timedelta

    @classmethod
    def from_settings(cls) -> "ApprovalPolicy":
        return cls(
            escalation_after=timedelta(minutes=settings.APPROVAL_ESCALATION_MINUTES),
            expires_after=timedelta(minutes=settings.APPROVAL_EXPIRY_MINUTES),
        )


@dataclass
class QueueItem:
    request: ApprovalRequest
    hours_until_escalation: float | None
    nearing_escalation: bool


# ---------------------------------------------------------------------------
# Internals
# ---------------------------------------------------------------------------


def _lock_request(db: Session, request_id: uuid.UUID) -> ApprovalRequest:
    request = db.execute(
        select(ApprovalRequest)
        .where(ApprovalRequest.id == request_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if request is None:
        raise NotFound("Request not found")
    return request


def _commit_status(
    db: Session,
    request: ApprovalRequest,
    event: str,
    *,
    now: datetime,
    **values,
) -> None:
    """Apply a transition guarded on the status and level that were read."""
    _, target = TRANSITIONS[event]
    if target != request.status:
        values["status_changed_at"] = now

    result = db.execute(
        update(ApprovalRequest)
        .where(
            ApprovalRequest.id == request.id,
            ApprovalRequest.status == request.status,
            ApprovalRequest.escalation_level == request.escalation_level,
        )
        .values(status=target, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        current = db.execute(
            select(ApprovalRequest.status).where(ApprovalRequest.id == request.id)
        ).scalar_one()
        _assert_transition(current, event)
        raise InvalidTransition(current, event)


def _require_active_hold(db: Session, request: ApprovalRequest) -> CreditHold:
    hold = get_active_hold_for_request(db, request.id)
    if hold is None or hold.id != request.hold_id:
        logger.critical(
            "Request %s in status %s has no matching active hold (hold_id=%s)",
            request.id,
            request.status,
            request.hold_id,
        )
        raise LedgerInconsistent(f"Request {request.id} is {request.status} but its hold is not active")
    return hold


def _submit(
    db: Session,
    request: ApprovalRequest,
    *,
    actor_user_id: uuid.UUID,
    now: datetime,
    policy: ApprovalPolicy,
    from_status: str | None,
) -> None:
    account = require_account(db, request.company_id)
    hold = place_hold(
        db,
        account.id,
        request.estimated_credits,
        request.id,
        now=now,
        actor_user_id=actor_user_id,
    )
    rule = get_applicable_rule(db, request.company_id, request.estimated_credits)
    level, approver_id = route(db, request, rule.start_level)
    if approver_id is None:
        # Nobody can decide; let the next timer tick expire it.
        pending_until, expires_at = None, now
    else:
        escalation_after = (
            timedelta(hours=rule.escalation_hours) if rule.escalation_hours else policy.escalation_after
        )
        pending_until, expires_at = now + escalation_after, now + policy.expires_after

    _commit_status(
        db,
        request,
        "submit",
        now=now,
        hold_id=hold.id,
        current_approver_id=approver_id,
        escalation_level=level,
        submitted_at=now,
        pending_until=pending_until,
        expires_at=expires_at,
    )
    append_event(
        db,
        request.id,
        "submitted",
        at=now,
        actor_user_id=actor_user_id,
        from_status=from_status,
        to_status="pending",
        payload={
            "estimatedCredits": request.estimated_credits,
            "holdId": str(hold.id),
            "approverId": str(approver_id) if approver_id else None,
            "escalationLevel": level,
            "approverRole": rule.approver_role,
            "ruleId": str(rule.rule_id) if rule.rule_id else None,
        },
    )


def _cancel(
    db: Session,
    request: ApprovalRequest,
    *,
    actor_user_id: uuid.UUID,
    now: datetime,
    reason: str | None,
    via: str | None = None,
) -> None:
    hold_id = request.hold_id
    from_status = request.status
    _commit_status(db, request, "cancel", now=now, hold_id=None)

    payload: dict = {"reason": reason} if reason else {}
    if via:
        payload["via"] = via
    if hold_id is not None:
        hold = release_hold(db, hold_id, now=now, actor_user_id=actor_user_id)
        payload["releasedCredits"] = hold.amount

    append_event(
        db,
        request.id,
        "cancelled",
        at=now,
        actor_user_id=actor_user_id,
        from_status=from_status,
        to_status="cancelled",
        payload=payload,
    )


def _fulfill(
    db: Session,
    request: ApprovalRequest,
    *,
    actor_user_id: uuid.UUID,
    now: datetime,
    actual_credits: int | None,
    via: str | None = None,
) -> CreditHold:
    spend = request.estimated_credits if actual_credits is None else actual_credits
    if spend < 0:
        raise ValidationError("actualCredits must be a non-negative integer")
    if spend > request.estimated_credits:
        raise ExceedsHold(actual=spend, held=request.estimated_credits)

    hold = _require_active_hold(db, request)
    _commit_status(
        db,
        request,
        "fulfill",
        now=now,
        hold_id=None,
        actual_credits=spend,
        fulfilled_at=now,
    )
    hold = convert_hold(db, hold.id, now=now, actual_amount=spend, actor_user_id=actor_user_id)

    payload = {
        "actualCredits": spend,
        "estimatedCredits": request.estimated_credits,
        "refundedCredits": request.estimated_credits - spend,
    }
    if via:
        payload["via"] = via
    append_event(
        db,
        request.id,
        "fulfilled",
        at=now,
        actor_user_id=actor_user_id,
        from_status="approved",
        to_status="fulfilled",
        payload=payload,
    )
    return hold


def _validate_new_request(
    db: Session,
    *,
    company_id: uuid.UUID,
    team_id: uuid.UUID,
    request_type: str,
    title: str,
    estimated_credits: int,
) -> str:
    if request_type not in REQUEST_TYPES:
        raise ValidationError(f"Invalid requestType '{request_type}'")
    title = (title or "").strip()
    if not title:
        raise ValidationError("title is required")
    if isinstance(estimated_credits, bool) or not isinstance(estimated_credits, int) or estimated_credits <= 0:
        raise ValidationError("estimatedCredits must be a positive integer")

    team = db.get(Team, team_id)
    if team is None or team.company_id != company_id:
        raise NotFound("Team not found in this company")
    return title


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def submit_request(
    db: Session,
    *,
    requester_id: uuid.UUID,
    company_id: uuid.UUID,
    team_id: uuid.UUID,
    request_type: str,
    title: str,
    estimated_credits: int,
    clock: Clock,
    policy: ApprovalPolicy,
    description: str | None = None,
    context: dict | None = None,
    as_draft: bool = False,
) -> ApprovalRequest:
    """Create a request and, unless ``as_draft``, submit it.

    Submission places a hold for ``estimated_credits`` (raising
    InsufficientCredits when the company lacks headroom), routes the request
    to its first approver, and starts the escalation and expiry timers.
    """
    title = _validate_new_request(
        db,
        company_id=company_id,
        team_id=team_id,
        request_type=request_type,
        title=title,
        estimated_credits=estimated_credits,
    )
    now = clock.now()

    with unit_of_work(db):
        require_account(db, company_id)
        request = ApprovalRequest(
            id=uuid.uuid4(),
            company_id=company_id,
            team_id=team_id,
            requester_id=requester_id,
            request_type=request_type,
            title=title,
            description=description,
            context=context,
            estimated_credits=estimated_credits,
            status="draft",
            escalation_level=0,
            status_changed_at=now,
            created_at=now,
            updated_at=now,
        )
        db.add(request)
        db.flush()

        if not as_draft:
            _submit(db, request, actor_user_id=requester_id, now=now, policy=policy, from_status=None)

    db.refresh(request)
    logger.info(
        "Request %s %s by %s for %d credits",
        request.id,
        "drafted" if as_draft else "submitted",
        requester_id,
        estimated_credits,
    )
    return request


def create_draft(db: Session, **fields) -> ApprovalRequest:
    """Save a request without reserving credits or routing it."""
    return submit_request(db, as_draft=True, **fields)


def submit_draft(
    db: Session,
    request_id: uuid.UUID,
    *,
    actor_user_id: uuid.UUID,
    clock: Clock,
    policy: ApprovalPolicy,
) -> ApprovalRequest:
    """draft → pending."""
    now = clock.now()
    with unit_of_work(db):
        request = _lock_request(db, request_id)
        if request.requester_id != actor_user_id:
            raise Forbidden("Only the requester can submit this draft")
        _assert_transition(request.status, "submit")
        _submit(db, request, actor_user_id=actor_user_id, now=now, policy=policy, from_status="draft")

    db.refresh(request)
    logger.info("Draft %s submitted by %s", request.id, actor_user_id)
    return request


def approve_request(
    db: Session,
    request_id: uuid.UUID,
    *,
    actor_user_id: uuid.UUID,
    clock: Clock,
    reason: str | None = None,
) -> ApprovalRequest:
    """pending → approved. The hold stays active until fulfillment."""
    now = clock.now()
    with unit_of_work(db):
        request = _lock_request(db, request_id)
        _assert_transition(request.status, "approve")
        hold = _require_active_hold(db, request)

        _commit_status(
            db,
            request,
            "approve",
            now=now,
            decided_by=actor_user_id,
            decided_at=now,
            decision_reason=reason,
        )
        append_event(
            db,
            request.id,
            "approved",
            at=now,
            actor_user_id=actor_user_id,
            from_status="pending",
            to_status="approved",
            payload={"reason": reason, "holdId": str(hold.id), "escalationLevel": request.escalation_level},
        )

    db.refresh(request)
    logger.info("Request %s approved by %s", request.id, actor_user_id)
    return request


def deny_request(
    db: Session,
    request_id: uuid.UUID,
    *,
    actor_user_id: uuid.UUID,
    reason: str,
    clock: Clock,
) -> ApprovalRequest:
    """pending → denied; the hold is released."""
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A reason is required to deny a request")

    now = clock.now()
    with unit_of_work(db):
        request = _lock_request(db, request_id)
        _assert_transition(request.status, "deny")
        hold = _require_active_hold(db, request)

        _commit_status(
            db,
            request,
            "deny",
            now=now,
            hold_id=None,
            decided_by=actor_user_id,
            decided_at=now,
            decision_reason=reason,
        )
        hold = release_hold(db, hold.id, now=now, actor_user_id=actor_user_id)
        append_event(
            db,
            request.id,
            "denied",
            at=now,
            actor_user_id=actor_user_id,
            from_status="pending",
            to_status="denied",
            payload={"reason": reason, "releasedCredits": hold.amount},
        )

    db.refresh(request)
    logger.info("Request %s denied by %s", request.id, actor_user_id)
    return request


def cancel_request(
    db: Session,
    request_id: uuid.UUID,
    *,
    actor_user_id: uuid.UUID,
    clock: Clock,
    reason: str | None = None,
) -> ApprovalRequest:
    """draft/pending/approved → cancelled, by the requester only."""
    now = clock.now()
    with unit_of_work(db):
        request = _lock_request(db, request_id)
        if request.requester_id != actor_user_id:
            raise Forbidden("Only the requester can cancel this request")
        _assert_transition(request.status, "cancel")
        _cancel(db, request, actor_user_id=actor_user_id, now=now, reason=reason)

    db.refresh(request)
    logger.info("Request %s cancelled by %s", request.id, actor_user_id)
    return request


def escalate_request(
    db: Session,
    request_id: uuid.UUID,
    *,
    clock: Clock,
    policy: ApprovalPolicy,
) -> ApprovalRequest:
    """Hand an overdue pending request to the next level's approver.

    When no higher level has an approver, the request is left without one
    and becomes due for expiry immediately.
    """
    now = clock.now()
    with unit_of_work(db):
        request = _lock_request(db, request_id)
        _assert_transition(request.status, "escalate")
        if request.pending_until is None or request.pending_until > now:
            raise InvalidTransition(request.status, "escalate")

        previous_approver = request.current_approver_id
        from_level = request.escalation_level
        level, approver_id = route(db, request, from_level + 1)
        if approver_id is None:
            pending_until = None
            expires_at = now if request.expires_at is None else min(request.expires_at, now)
        else:
            pending_until = now + policy.escalation_after
            expires_at = request.expires_at

        _commit_status(
            db,
            request,
            "escalate",
            now=now,
            current_approver_id=approver_id,
            escalation_level=level,
            pending_until=pending_until,
            expires_at=expires_at,
        )
        append_event(
            db,
            request.id,
            "escalated",
            at=now,
            from_status="pending",
            to_status="pending",
            payload={
                "previousApproverId": str(previous_approver) if previous_approver else None,
                "newApproverId": str(approver_id) if approver_id else None,
                "fromLevel": from_level,
                "toLevel": level,
            },
        )

    db.refresh(request)
    logger.info("Request %s escalated from level %d to %d", request.id, from_level, level)
    return request


def expire_request(db: Session, request_id: uuid.UUID, *, clock: Clock) -> ApprovalRequest:
    """pending → expired once ``expires_at`` has passed; the hold is released."""
    now = clock.now()
    with unit_of_work(db):
        request = _lock_request(db, request_id)
        _assert_transition(request.status, "expire")
        if request.expires_at is None or request.expires_at > now:
            raise InvalidTransition(request.status, "expire")
        hold = _require_active_hold(db, request)

        _commit_status(db, request, "expire", now=now, hold_id=None, pending_until=None)
        hold = release_hold(db, hold.id, now=now)
        append_event(
            db,
            request.id,
            "expired",
            at=now,
            from_status="pending",
            to_status="expired",
            payload={"reason": "Approval deadline passed", "releasedCredits": hold.amount},
        )

    db.refresh(request)
    logger.info("Request %s expired", request.id)
    return request


def fulfill_request(
    db: Session,
    request_id: uuid.UUID,
    *,
    actor_user_id: uuid.UUID,
    clock: Clock,
    actual_credits: int | None = None,
) -> ApprovalRequest:
    """approved → fulfilled; the hold converts into a spend of ``actual_credits``."""
    now = clock.now()
    with unit_of_work(db):
        request = _lock_request(db, request_id)
        _assert_transition(request.status, "fulfill")
        _fulfill(db, request, actor_user_id=actor_user_id, now=now, actual_credits=actual_credits)

    db.refresh(request)
    logger.info("Request %s fulfilled by %s", request.id, actor_user_id)
    return request


def add_comment(
    db: Session,
    request_id: uuid.UUID,
    *,
    actor_user_id: uuid.UUID,
    body: str,
    clock: Clock,
) -> RequestEvent:
    body = (body or "").strip()
    if not body:
        raise ValidationError("Comment body is required")

    now = clock.now()
    with unit_of_work(db):
        request = _lock_request(db, request_id)
        event = append_event(
            db,
            request.id,
            "commented",
            at=now,
            actor_user_id=actor_user_id,
            payload={"body": body},
        )

    db.refresh(event)
    return event


# ---------------------------------------------------------------------------
# Administrative hold verbs
# ---------------------------------------------------------------------------


def _lock_active_hold_request(db: Session, hold_id: uuid.UUID) -> ApprovalRequest:
    hold = get_hold(db, hold_id)
    if hold is None:
        raise NotFound("Hold not found")
    if not hold.is_active:
        raise Conflict(f"Hold was already {hold.state}")
    return _lock_request(db, hold.request_id)


def release_request_hold(
    db: Session,
    hold_id: uuid.UUID,
    *,
    actor_user_id: uuid.UUID,
    clock: Clock,
    reason: str | None = None,
) -> CreditHold:
    """Release a hold by cancelling the request that owns it."""
    now = clock.now()
    with unit_of_work(db):
        request = _lock_active_hold_request(db, hold_id)
        _assert_transition(request.status, "cancel")
        _cancel(db, request, actor_user_id=actor_user_id, now=now, reason=reason, via="hold_release")

    hold = get_hold(db, hold_id)
    db.refresh(hold)
    logger.info("Hold %s released by admin %s", hold_id, actor_user_id)
    return hold


def convert_request_hold(
    db: Session,
    hold_id: uuid.UUID,
    *,
    actor_user_id: uuid.UUID,
    clock: Clock,
    actual_credits: int | None = None,
) -> CreditHold:
    """Convert a hold by fulfilling the approved request that owns it."""
    now = clock.now()
    with unit_of_work(db):
        request = _lock_active_hold_request(db, hold_id)
        _assert_transition(request.status, "fulfill")
        hold = _fulfill(
            db,
            request,
            actor_user_id=actor_user_id,
            now=now,
            actual_credits=actual_credits,
            via="hold_convert",
        )

    db.refresh(hold)
    logger.info("Hold %s converted by admin %s", hold_id, actor_user_id)
    return hold


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def get_request(db: Session, request_id: uuid.UUID) -> ApprovalRequest | None:
    return db.get(ApprovalRequest, request_id)


def get_request_with_events(
    db: Session, request_id: uuid.UUID
) -> tuple[ApprovalRequest, list[RequestEvent]]:
    request = get_request(db, request_id)
    if request is None:
        raise NotFound("Request not found")
    return request, list_events(db, request_id)


def list_requests(
    db: Session,
    *,
    user_id: uuid.UUID,
    role: str = "requester",
    statuses: list[str] | None = None,
    limit: int = 20,
    offset: int = 0,
) -> tuple[list[ApprovalRequest], int]:
    """Requests the user submitted (``requester``) or is/was deciding (``approver``)."""
    if role == "requester":
        conditions = [ApprovalRequest.requester_id == user_id]
    elif role == "approver":
        conditions = [
            or_(
                ApprovalRequest.current_approver_id == user_id,
                ApprovalRequest.decided_by == user_id,
            )
        ]
    else:
        raise ValidationError("Invalid role. Must be 'requester' or 'approver'")

    if statuses:
        invalid = [s for s in statuses if s not in REQUEST_STATUSES]
        if invalid:
            raise ValidationError(f"Invalid status: {invalid[0]}")
        conditions.append(ApprovalRequest.status.in_(statuses))

    total = db.execute(
        select(func.count()).select_from(ApprovalRequest).where(*conditions)
    ).scalar_one()
    items = (
        db.execute(
            select(ApprovalRequest)
            .where(*conditions)
            .order_by(ApprovalRequest.created_at.desc(), ApprovalRequest.id)
            .offset(offset)
            .limit(limit)
        )
        .scalars()
        .all()
    )
    return list(items), total


def get_approval_queue(
    db: Session,
    approver_id: uuid.UUID,
    *,
    clock: Clock,
    nearing_hours: int | None = None,
) -> list[QueueItem]:
    """Pending requests assigned to ``approver_id``, oldest first."""
    now = clock.now()
    window = timedelta(
        hours=settings.QUEUE_NEARING_ESCALATION_HOURS if nearing_hours is None else nearing_hours
    )
    requests = (
        db.execute(
            select(ApprovalRequest)
            .where(
                ApprovalRequest.current_approver_id == approver_id,
                ApprovalRequest.status == "pending",
            )
            .order_by(ApprovalRequest.submitted_at.asc(), ApprovalRequest.id)
        )
        .scalars()
        .all()
    )

    items = []
    for request in requests:
        hours = None
        nearing = False
        if request.pending_until is not None:
            remaining = request.pending_until - now
            hours = max(0.0, remaining.total_seconds() / 3600)
            nearing = timedelta(0) < remaining <= window
        items.append(QueueItem(request=request, hours_until_escalation=hours, nearing_escalation=nearing))
    return items


def due_for_escalation(db: Session, now: datetime) -> list[uuid.UUID]:
    return list(
        db.execute(
            select(ApprovalRequest.id)
            .where(ApprovalRequest.status == "pending", ApprovalRequest.pending_until <= now)
            .order_by(ApprovalRequest.pending_until, ApprovalRequest.id)
        )
        .scalars()
        .all()
    )


def due_for_expiration(db: Session, now: datetime) -> list[uuid.UUID]:
    return list(
        db.execute(
            select(ApprovalRequest.id)
            .where(ApprovalRequest.status == "pending", ApprovalRequest.expires_at <= now)
            .order_by(ApprovalRequest.expires_at, ApprovalRequest.id)
        )
        .scalars()
        .all()
    )
