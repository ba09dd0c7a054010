import uuid
from datetime import datetime

from sqlalchemy import DateTime, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from creditflow.core.database import Base


class Company(Base):
    """Tenant organization; owns teams and exactly one credit account."""

    __tablename__ = "companies"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    teams: Mapped[list["Team"]] = relationship(back_populates="company")
    credit_account: Mapped["CreditAccount | None"] = relationship(back_populates="company", uselist=False)

    def __repr__(self) -> str:
        return f"<Company {self.name}>"
