import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, Enum, ForeignKey, Index, Integer, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from creditflow.core.database import Base

HOLD_STATES = ("active", "released", "converted")


class CreditHold(Base):
    """Reservation of credits for one approval request."""

    __tablename__ = "credit_holds"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_credit_holds_amount_positive"),
        Index("ix_credit_holds_account_state", "account_id", "state"),
        # At most one active hold per request.
        Index(
            "uq_credit_holds_active_request",
            "request_id",
            unique=True,
            postgresql_where=text("state = 'active'"),
            sqlite_where=text("state = 'active'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("credit_accounts.id"), nullable=False
    )
    request_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("approval_requests.id"), nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    state: Mapped[str] = mapped_column(
        Enum(*HOLD_STATES, name="credit_hold_state"),
        nullable=False,
        default="active",
    )
    converted_amount: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime)

    account: Mapped["CreditAccount"] = relationship(back_populates="holds")

    @property
    def is_active(self) -> bool:
        return self.state == "active"

    def __repr__(self) -> str:
        return f"<CreditHold {self.id} {self.state} {self.amount}>"
