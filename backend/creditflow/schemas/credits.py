import uuid
from datetime import datetime
from typing import Literal

from pydantic import Field

from creditflow.schemas.requests import CamelModel

LedgerEntryKind = Literal["grant", "hold_place", "hold_release", "hold_convert", "refund", "adjust"]
HoldState = Literal["active", "released", "converted"]


# ---------------------------------------------------------------------------
# Balance
# ---------------------------------------------------------------------------


class CreditBalanceResponse(CamelModel):
    company_id: uuid.UUID
    balance: int
    reserved: int
    available: int
    subscription_tier: str
    active_holds: int
    updated_at: datetime


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class LedgerEntryResponse(CamelModel):
    id: int
    account_id: uuid.UUID
    kind: LedgerEntryKind
    signed_amount: int
    balance_after: int
    reserved_after: int
    hold_id: uuid.UUID | None
    request_id: uuid.UUID | None
    actor_user_id: uuid.UUID | None
    description: str | None
    created_at: datetime


class LedgerEntryEnvelope(CamelModel):
    entry: LedgerEntryResponse


class TransactionListResponse(CamelModel):
    items: list[LedgerEntryResponse]
    total: int
    page: int
    page_size: int
    has_more: bool


class CreditGrantRequest(CamelModel):
    amount: int
    kind: Literal["grant", "adjust"] = "grant"
    description: str | None = None


class CreditRefundRequest(CamelModel):
    request_id: uuid.UUID
    amount: int = Field(..., gt=0)
    description: str | None = None


class ReconcileResponse(CamelModel):
    company_id: uuid.UUID
    stored_balance: int
    stored_reserved: int
    ledger_balance: int
    ledger_reserved: int
    active_holds: int
    consistent: bool


# ---------------------------------------------------------------------------
# Holds
# ---------------------------------------------------------------------------


class HoldResponse(CamelModel):
    id: uuid.UUID
    account_id: uuid.UUID
    request_id: uuid.UUID
    amount: int
    state: HoldState
    converted_amount: int | None
    created_at: datetime
    resolved_at: datetime | None


class HoldEnvelope(CamelModel):
    hold: HoldResponse


class HoldListResponse(CamelModel):
    items: list[HoldResponse]


class HoldConvertRequest(CamelModel):
    actual_credits: int | None = Field(None, ge=0)
