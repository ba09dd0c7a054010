import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

RequestType = Literal[
    "report_upgrade",
    "analyst_qa",
    "analyst_call",
    "expert_consult",
    "expert_deepdive",
    "bespoke_project",
]
RequestStatus = Literal["draft", "pending", "approved", "denied", "cancelled", "expired", "fulfilled"]
RequestEventKind = Literal[
    "submitted", "approved", "denied", "cancelled", "escalated", "expired", "fulfilled", "commented"
]


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# ---------------------------------------------------------------------------
# Create / act
# ---------------------------------------------------------------------------


class RequestCreate(CamelModel):
    team_id: uuid.UUID | None = None
    request_type: RequestType
    title: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    context: dict | None = None
    estimated_credits: int = Field(..., gt=0)
    as_draft: bool = False


class DecisionBody(CamelModel):
    reason: str | None = None


class FulfillBody(CamelModel):
    actual_credits: int | None = Field(None, ge=0)


class CommentCreate(CamelModel):
    body: str = Field(..., min_length=1)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class ApprovalRequestResponse(CamelModel):
    id: uuid.UUID
    company_id: uuid.UUID
    team_id: uuid.UUID
    requester_id: uuid.UUID
    request_type: RequestType
    title: str
    description: str | None
    context: dict | None
    estimated_credits: int
    actual_credits: int | None
    status: RequestStatus
    current_approver_id: uuid.UUID | None
    escalation_level: int
    submitted_at: datetime | None
    status_changed_at: datetime
    pending_until: datetime | None
    expires_at: datetime | None
    hold_id: uuid.UUID | None
    decided_by: uuid.UUID | None
    decided_at: datetime | None
    decision_reason: str | None
    fulfilled_at: datetime | None
    created_at: datetime
    updated_at: datetime


class RequestEnvelope(CamelModel):
    request: ApprovalRequestResponse


class RequestEventResponse(CamelModel):
    id: int
    request_id: uuid.UUID
    kind: RequestEventKind
    actor_user_id: uuid.UUID | None
    at: datetime
    from_status: RequestStatus | None
    to_status: RequestStatus | None
    payload: dict


class EventEnvelope(CamelModel):
    event: RequestEventResponse


class RequestDetailResponse(CamelModel):
    request: ApprovalRequestResponse
    events: list[RequestEventResponse]


class RequestListResponse(CamelModel):
    items: list[ApprovalRequestResponse]
    total: int
    has_more: bool


class QueueItemResponse(CamelModel):
    request: ApprovalRequestResponse
    hours_until_escalation: float | None
    nearing_escalation: bool


class QueueResponse(CamelModel):
    items: list[QueueItemResponse]
    total: int
    nearing_escalation: int


# ---------------------------------------------------------------------------
# Timer runs
# ---------------------------------------------------------------------------


class EscalationRunResponse(CamelModel):
    escalated_count: int
    escalated_ids: list[uuid.UUID]


class ExpirationRunResponse(CamelModel):
    expired_count: int
    expired_ids: list[uuid.UUID]
