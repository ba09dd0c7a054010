import uuid
from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, DateTime, Enum, ForeignKey, Index, Integer, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from creditflow.core.database import Base

RULE_APPROVER_ROLES = ("approver", "admin", "owner")


class ApprovalRule(Base):
    """Credit band that decides who sees a submitted request first.

    A request for ``credits`` matches when ``min_credits <= credits`` and
    ``max_credits`` is NULL or ``>= credits``. The lowest ``priority`` wins.
    ``escalation_hours`` overrides the first approver's response window.
    """

    __tablename__ = "approval_rules"
    __table_args__ = (
        CheckConstraint("min_credits >= 0", name="ck_approval_rules_min_non_negative"),
        CheckConstraint(
            "max_credits IS NULL OR max_credits >= min_credits",
            name="ck_approval_rules_band_ordered",
        ),
        CheckConstraint(
            "escalation_hours IS NULL OR escalation_hours > 0",
            name="ck_approval_rules_escalation_positive",
        ),
        Index("ix_approval_rules_company_active", "company_id", "is_active"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("companies.id", ondelete="CASCADE"), nullable=False
    )
    min_credits: Mapped[int] = mapped_column(Integer, nullable=False)
    max_credits: Mapped[int | None] = mapped_column(Integer)
    approver_role: Mapped[str] = mapped_column(
        Enum(*RULE_APPROVER_ROLES, name="approval_rule_role"), nullable=False
    )
    escalation_hours: Mapped[int | None] = mapped_column(Integer)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        upper = "" if self.max_credits is None else self.max_credits
        return f"<ApprovalRule {self.min_credits}..{upper} -> {self.approver_role}>"
