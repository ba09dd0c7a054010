import uuid
from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Enum, ForeignKey, Index, Integer, String
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from creditflow.core.database import Base

REQUEST_EVENT_KINDS = (
    "submitted",
    "approved",
    "denied",
    "cancelled",
    "escalated",
    "expired",
    "fulfilled",
    "commented",
)


class RequestEvent(Base):
    """Append-only audit trail entry for an approval request."""

    __tablename__ = "approval_request_events"
    __table_args__ = (
        Index("ix_approval_request_events_request_at", "request_id", "at", "id"),
    )

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    request_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("approval_requests.id"), nullable=False
    )
    kind: Mapped[str] = mapped_column(
        Enum(*REQUEST_EVENT_KINDS, name="approval_request_event_kind"), nullable=False
    )
    # Null for system actions (timer worker).
    actor_user_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id")
    )
    at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    from_status: Mapped[str | None] = mapped_column(String(20))
    to_status: Mapped[str | None] = mapped_column(String(20))
    payload: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)

    def __repr__(self) -> str:
        return f"<RequestEvent {self.kind} request={self.request_id}>"
