import uuid
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from creditflow.core.database import Base

LEDGER_ENTRY_KINDS = ("grant", "hold_place", "hold_release", "hold_convert", "refund", "adjust")

# Kinds whose signed amounts sum to the account balance / reserved columns.
BALANCE_KINDS = frozenset({"grant", "hold_convert", "refund", "adjust"})
RESERVE_KINDS = frozenset({"hold_place", "hold_release"})


class LedgerEntry(Base):
    """Immutable log of balance and reservation changes."""

    __tablename__ = "credit_ledger_entries"
    __table_args__ = (
        UniqueConstraint("account_id", "idempotency_key", name="uq_credit_ledger_entries_idempotency"),
        Index("ix_credit_ledger_entries_account_id", "account_id"),
        Index("ix_credit_ledger_entries_kind", "kind"),
        Index("ix_credit_ledger_entries_request_id", "request_id"),
        Index("ix_credit_ledger_entries_created_at", "created_at"),
    )

    # Integer sequence so entries posted in the same instant keep their order.
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("credit_accounts.id"), nullable=False
    )
    kind: Mapped[str] = mapped_column(
        Enum(*LEDGER_ENTRY_KINDS, name="ledger_entry_kind"), nullable=False
    )
    signed_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    reserved_after: Mapped[int] = mapped_column(Integer, nullable=False)
    hold_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("credit_holds.id")
    )
    request_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("approval_requests.id")
    )
    actor_user_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id")
    )
    description: Mapped[str | None] = mapped_column(String(500))
    idempotency_key: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    def __repr__(self) -> str:
        return f"<LedgerEntry {self.kind} {self.signed_amount}>"
