import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, Enum, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from creditflow.core.database import Base

REQUEST_TYPES = (
    "report_upgrade",
    "analyst_qa",
    "analyst_call",
    "expert_consult",
    "expert_deepdive",
    "bespoke_project",
)

REQUEST_STATUSES = ("draft", "pending", "approved", "denied", "cancelled", "expired", "fulfilled")


class ApprovalRequest(Base):
    """A request to spend company credits on a downstream product."""

    __tablename__ = "approval_requests"
    __table_args__ = (
        CheckConstraint("estimated_credits > 0", name="ck_approval_requests_estimate_positive"),
        Index("ix_approval_requests_company_id", "company_id"),
        Index("ix_approval_requests_requester_id", "requester_id"),
        Index("ix_approval_requests_approver_status", "current_approver_id", "status"),
        Index("ix_approval_requests_status_pending_until", "status", "pending_until"),
        Index("ix_approval_requests_status_expires_at", "status", "expires_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("companies.id"), nullable=False
    )
    team_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("teams.id"), nullable=False
    )
    requester_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), nullable=False
    )
    request_type: Mapped[str] = mapped_column(
        Enum(*REQUEST_TYPES, name="approval_request_type"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    context: Mapped[dict | None] = mapped_column(JSONB)
    estimated_credits: Mapped[int] = mapped_column(Integer, nullable=False)
    actual_credits: Mapped[int | None] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(
        Enum(*REQUEST_STATUSES, name="approval_request_status"),
        nullable=False,
        default="draft",
    )
    current_approver_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id")
    )
    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime)
    status_changed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    pending_until: Mapped[datetime | None] = mapped_column(DateTime)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime)
    # Not a foreign key: credit_holds already references this table.
    hold_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))
    decided_by: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id")
    )
    decided_at: Mapped[datetime | None] = mapped_column(DateTime)
    decision_reason: Mapped[str | None] = mapped_column(Text)
    fulfilled_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<ApprovalRequest {self.id} {self.status}>"
