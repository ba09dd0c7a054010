"""Approval requests API — submit, decide, cancel, fulfill, and the timer hooks."""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from creditflow.api.deps import get_pipeline, get_policy
from creditflow.api.errors import unwrap
from creditflow.core.auth import get_identity, require_cron_secret
from creditflow.core.clock import Clock, get_clock
from creditflow.core.database import get_db
from creditflow.models.approval_request import ApprovalRequest
from creditflow.models.team import Team
from creditflow.schemas.requests import (
    CommentCreate,
    DecisionBody,
    EscalationRunResponse,
    EventEnvelope,
    ExpirationRunResponse,
    FulfillBody,
    QueueItemResponse,
    QueueResponse,
    RequestCreate,
    RequestDetailResponse,
    RequestEnvelope,
    RequestListResponse,
)
from creditflow.services.approvals import (
    ApprovalPolicy,
    add_comment,
    approve_request,
    cancel_request,
    deny_request,
    fulfill_request,
    get_approval_queue,
    get_request,
    list_requests,
    submit_draft,
    submit_request,
)
from creditflow.services.auth import SessionIdentity
from creditflow.services.authorization import OrgContext, Verb
from creditflow.services.errors import NotFound
from creditflow.services.events import list_events
from creditflow.services.pipeline import ActionPipeline
from creditflow.services.timers import process_escalations, process_expirations

router = APIRouter()


def _load_request(request_id: uuid.UUID):
    def load(db: Session, org: OrgContext) -> ApprovalRequest:
        request = get_request(db, request_id)
        if request is None:
            raise NotFound("Request not found")
        return request

    return load


# ---------------------------------------------------------------------------
# Create & list
# ---------------------------------------------------------------------------


@router.post("", response_model=RequestEnvelope, status_code=201)
def create_request(
    payload: RequestCreate,
    identity: SessionIdentity = Depends(get_identity),
    pipeline: ActionPipeline = Depends(get_pipeline),
    policy: ApprovalPolicy = Depends(get_policy),
):
    """Submit a new request, reserving its estimated credits.

    Without ``teamId`` the request is raised for the caller's longest-held
    team. ``asDraft`` saves it without a hold.
    """

    def load(db: Session, org: OrgContext) -> Team:
        team_id = payload.team_id or next(iter(org.team_roles))
        team = db.get(Team, team_id)
        if team is None:
            raise NotFound("Team not found")
        return team

    def apply(org: OrgContext, team: Team) -> ApprovalRequest:
        return submit_request(
            pipeline.db,
            requester_id=org.user_id,
            company_id=org.company_id,
            team_id=team.id,
            request_type=payload.request_type,
            title=payload.title,
            description=payload.description,
            context=payload.context,
            estimated_credits=payload.estimated_credits,
            clock=pipeline.clock,
            policy=policy,
            as_draft=payload.as_draft,
        )

    request = unwrap(pipeline.run(identity, Verb.SUBMIT, apply, load=load))
    return RequestEnvelope(request=request)


@router.get("", response_model=RequestListResponse)
def list_my_requests(
    role: str = Query("requester"),
    status_filter: str | None = Query(None, alias="status"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    identity: SessionIdentity = Depends(get_identity),
    pipeline: ActionPipeline = Depends(get_pipeline),
):
    """List requests the caller submitted (``role=requester``) or decides (``role=approver``)."""
    statuses = [s.strip() for s in status_filter.split(",") if s.strip()] if status_filter else None

    def apply(org: OrgContext, _):
        return list_requests(
            pipeline.db,
            user_id=org.user_id,
            role=role,
            statuses=statuses,
            limit=limit,
            offset=offset,
        )

    items, total = unwrap(pipeline.run(identity, Verb.LIST, apply))
    return RequestListResponse(items=items, total=total, has_more=offset + len(items) < total)


@router.get("/queue", response_model=QueueResponse)
def approval_queue(
    identity: SessionIdentity = Depends(get_identity),
    pipeline: ActionPipeline = Depends(get_pipeline),
):
    """Pending requests waiting on the caller, oldest first."""

    def apply(org: OrgContext, _):
        return get_approval_queue(pipeline.db, org.user_id, clock=pipeline.clock)

    queue = unwrap(pipeline.run(identity, Verb.LIST, apply))
    items = [
        QueueItemResponse(
            request=item.request,
            hours_until_escalation=item.hours_until_escalation,
            nearing_escalation=item.nearing_escalation,
        )
        for item in queue
    ]
    return QueueResponse(
        items=items,
        total=len(items),
        nearing_escalation=sum(1 for item in items if item.nearing_escalation),
    )


# ---------------------------------------------------------------------------
# Timer hooks (external scheduler)
# ---------------------------------------------------------------------------


@router.post(
    "/escalate",
    response_model=EscalationRunResponse,
    dependencies=[Depends(require_cron_secret)],
)
def run_escalations(
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    policy: ApprovalPolicy = Depends(get_policy),
):
    """Escalate every pending request past its ``pendingUntil``."""
    run = process_escalations(db, clock, policy)
    return EscalationRunResponse(escalated_count=run.escalated_count, escalated_ids=run.escalated_ids)


@router.post(
    "/expire",
    response_model=ExpirationRunResponse,
    dependencies=[Depends(require_cron_secret)],
)
def run_expirations(
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Expire every pending request past its ``expiresAt``."""
    run = process_expirations(db, clock)
    return ExpirationRunResponse(expired_count=run.expired_count, expired_ids=run.expired_ids)


# ---------------------------------------------------------------------------
# Single request
# ---------------------------------------------------------------------------


@router.get("/{request_id}", response_model=RequestDetailResponse)
def get_request_detail(
    request_id: uuid.UUID,
    identity: SessionIdentity = Depends(get_identity),
    pipeline: ActionPipeline = Depends(get_pipeline),
):
    """Fetch a request with its event timeline."""

    def apply(org: OrgContext, request: ApprovalRequest):
        return request, list_events(pipeline.db, request.id)

    request, events = unwrap(
        pipeline.run(identity, Verb.VIEW, apply, load=_load_request(request_id))
    )
    return RequestDetailResponse(request=request, events=events)


@router.post("/{request_id}/submit", response_model=RequestEnvelope)
def submit_draft_request(
    request_id: uuid.UUID,
    identity: SessionIdentity = Depends(get_identity),
    pipeline: ActionPipeline = Depends(get_pipeline),
    policy: ApprovalPolicy = Depends(get_policy),
):
    """Submit a draft: reserve credits and route it to an approver."""

    def apply(org: OrgContext, request: ApprovalRequest):
        return submit_draft(
            pipeline.db, request.id, actor_user_id=org.user_id, clock=pipeline.clock, policy=policy
        )

    request = unwrap(
        pipeline.run(identity, Verb.SUBMIT_DRAFT, apply, load=_load_request(request_id))
    )
    return RequestEnvelope(request=request)


@router.post("/{request_id}/approve", response_model=RequestEnvelope)
def approve(
    request_id: uuid.UUID,
    payload: DecisionBody | None = None,
    identity: SessionIdentity = Depends(get_identity),
    pipeline: ActionPipeline = Depends(get_pipeline),
):
    def apply(org: OrgContext, request: ApprovalRequest):
        return approve_request(
            pipeline.db,
            request.id,
            actor_user_id=org.user_id,
            clock=pipeline.clock,
            reason=payload.reason if payload else None,
        )

    request = unwrap(pipeline.run(identity, Verb.APPROVE, apply, load=_load_request(request_id)))
    return RequestEnvelope(request=request)


@router.post("/{request_id}/deny", response_model=RequestEnvelope)
def deny(
    request_id: uuid.UUID,
    payload: DecisionBody | None = None,
    identity: SessionIdentity = Depends(get_identity),
    pipeline: ActionPipeline = Depends(get_pipeline),
):
    """Deny a pending request. A reason is required."""

    def apply(org: OrgContext, request: ApprovalRequest):
        return deny_request(
            pipeline.db,
            request.id,
            actor_user_id=org.user_id,
            reason=payload.reason if payload else None,
            clock=pipeline.clock,
        )

    request = unwrap(pipeline.run(identity, Verb.DENY, apply, load=_load_request(request_id)))
    return RequestEnvelope(request=request)


@router.post("/{request_id}/cancel", response_model=RequestEnvelope)
def cancel(
    request_id: uuid.UUID,
    payload: DecisionBody | None = None,
    identity: SessionIdentity = Depends(get_identity),
    pipeline: ActionPipeline = Depends(get_pipeline),
):
    def apply(org: OrgContext, request: ApprovalRequest):
        return cancel_request(
            pipeline.db,
            request.id,
            actor_user_id=org.user_id,
            clock=pipeline.clock,
            reason=payload.reason if payload else None,
        )

    request = unwrap(pipeline.run(identity, Verb.CANCEL, apply, load=_load_request(request_id)))
    return RequestEnvelope(request=request)


@router.post("/{request_id}/fulfill", response_model=RequestEnvelope)
def fulfill(
    request_id: uuid.UUID,
    payload: FulfillBody | None = None,
    identity: SessionIdentity = Depends(get_identity),
    pipeline: ActionPipeline = Depends(get_pipeline),
):
    """Mark an approved request delivered and convert its hold.

    ``actualCredits`` defaults to the estimate; any unspent part of the hold
    goes back to the company's available credits.
    """

    def apply(org: OrgContext, request: ApprovalRequest):
        return fulfill_request(
            pipeline.db,
            request.id,
            actor_user_id=org.user_id,
            clock=pipeline.clock,
            actual_credits=payload.actual_credits if payload else None,
        )

    request = unwrap(pipeline.run(identity, Verb.FULFILL, apply, load=_load_request(request_id)))
    return RequestEnvelope(request=request)


@router.post("/{request_id}/comments", response_model=EventEnvelope, status_code=201)
def comment(
    request_id: uuid.UUID,
    payload: CommentCreate,
    identity: SessionIdentity = Depends(get_identity),
    pipeline: ActionPipeline = Depends(get_pipeline),
):
    def apply(org: OrgContext, request: ApprovalRequest):
        return add_comment(
            pipeline.db,
            request.id,
            actor_user_id=org.user_id,
            body=payload.body,
            clock=pipeline.clock,
        )

    event = unwrap(pipeline.run(identity, Verb.COMMENT, apply, load=_load_request(request_id)))
    return EventEnvelope(event=event)
