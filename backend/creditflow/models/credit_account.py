import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from creditflow.core.database import Base


class CreditAccount(Base):
    """Company credit balance — one row per company.

    ``balance`` and ``reserved`` are denormalized sums of the ledger and are
    only ever written together with a ledger entry.
    """

    __tablename__ = "credit_accounts"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_credit_accounts_balance_non_negative"),
        CheckConstraint("reserved >= 0", name="ck_credit_accounts_reserved_non_negative"),
        CheckConstraint("balance >= reserved", name="ck_credit_accounts_reserved_covered"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("companies.id"), nullable=False, unique=True
    )
    balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reserved: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    subscription_tier: Mapped[str] = mapped_column(String(50), nullable=False, default="standard")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    company: Mapped["Company"] = relationship(back_populates="credit_account")
    holds: Mapped[list["CreditHold"]] = relationship(back_populates="account")

    @property
    def available(self) -> int:
        return self.balance - self.reserved

    def __repr__(self) -> str:
        return f"<CreditAccount company={self.company_id} balance={self.balance} reserved={self.reserved}>"
