"""create org directory, credit ledger, approval request and approval rule tables

Revision ID: c4e1f7a2b9d3
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "c4e1f7a2b9d3"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ORG_ROLES = ("member", "approver", "admin", "owner")
RULE_APPROVER_ROLES = ("approver", "admin", "owner")
REQUEST_TYPES = (
    "report_upgrade",
    "analyst_qa",
    "analyst_call",
    "expert_consult",
    "expert_deepdive",
    "bespoke_project",
)
REQUEST_STATUSES = ("draft", "pending", "approved", "denied", "cancelled", "expired", "fulfilled")
HOLD_STATES = ("active", "released", "converted")
LEDGER_ENTRY_KINDS = ("grant", "hold_place", "hold_release", "hold_convert", "refund", "adjust")
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


def upgrade() -> None:
    # -- org directory ------------------------------------------------------
    op.create_table(
        "companies",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("display_name", sa.String(length=255), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default="true", nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "teams",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("company_id", sa.UUID(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_teams_company_id", "teams", ["company_id"])

    op.create_table(
        "team_memberships",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("team_id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column(
            "role",
            sa.Enum(*ORG_ROLES, name="org_role"),
            server_default="member",
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["team_id"], ["teams.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("team_id", "user_id", name="uq_team_memberships_team_user"),
    )
    op.create_index("ix_team_memberships_user_id", "team_memberships", ["user_id"])
    op.create_index("ix_team_memberships_role", "team_memberships", ["role"])

    # -- credits --------------------------------------------------------------
    op.create_table(
        "credit_accounts",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("company_id", sa.UUID(), nullable=False),
        sa.Column("balance", sa.Integer(), nullable=False),
        sa.Column("reserved", sa.Integer(), nullable=False),
        sa.Column("subscription_tier", sa.String(length=50), nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("balance >= 0", name="ck_credit_accounts_balance_non_negative"),
        sa.CheckConstraint("reserved >= 0", name="ck_credit_accounts_reserved_non_negative"),
        sa.CheckConstraint("balance >= reserved", name="ck_credit_accounts_reserved_covered"),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("company_id"),
    )

    # -- approval requests ----------------------------------------------------
    op.create_table(
        "approval_requests",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("company_id", sa.UUID(), nullable=False),
        sa.Column("team_id", sa.UUID(), nullable=False),
        sa.Column("requester_id", sa.UUID(), nullable=False),
        sa.Column("request_type", sa.Enum(*REQUEST_TYPES, name="approval_request_type"), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("context", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("estimated_credits", sa.Integer(), nullable=False),
        sa.Column("actual_credits", sa.Integer(), nullable=True),
        sa.Column(
            "status",
            sa.Enum(*REQUEST_STATUSES, name="approval_request_status"),
            nullable=False,
        ),
        sa.Column("current_approver_id", sa.UUID(), nullable=True),
        sa.Column("escalation_level", sa.Integer(), nullable=False),
        sa.Column("submitted_at", sa.DateTime(), nullable=True),
        sa.Column("status_changed_at", sa.DateTime(), nullable=False),
        sa.Column("pending_until", sa.DateTime(), nullable=True),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("hold_id", sa.UUID(), nullable=True),
        sa.Column("decided_by", sa.UUID(), nullable=True),
        sa.Column("decided_at", sa.DateTime(), nullable=True),
        sa.Column("decision_reason", sa.Text(), nullable=True),
        sa.Column("fulfilled_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("estimated_credits > 0", name="ck_approval_requests_estimate_positive"),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"]),
        sa.ForeignKeyConstraint(["team_id"], ["teams.id"]),
        sa.ForeignKeyConstraint(["requester_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["current_approver_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["decided_by"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_approval_requests_company_id", "approval_requests", ["company_id"])
    op.create_index("ix_approval_requests_requester_id", "approval_requests", ["requester_id"])
    op.create_index(
        "ix_approval_requests_approver_status",
        "approval_requests",
        ["current_approver_id", "status"],
    )
    op.create_index(
        "ix_approval_requests_status_pending_until",
        "approval_requests",
        ["status", "pending_until"],
    )
    op.create_index(
        "ix_approval_requests_status_expires_at",
        "approval_requests",
        ["status", "expires_at"],
    )

    op.create_table(
        "credit_holds",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("account_id", sa.UUID(), nullable=False),
        sa.Column("request_id", sa.UUID(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("state", sa.Enum(*HOLD_STATES, name="credit_hold_state"), nullable=False),
        sa.Column("converted_amount", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
        sa.CheckConstraint("amount > 0", name="ck_credit_holds_amount_positive"),
        sa.ForeignKeyConstraint(["account_id"], ["credit_accounts.id"]),
        sa.ForeignKeyConstraint(["request_id"], ["approval_requests.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_credit_holds_account_state", "credit_holds", ["account_id", "state"])
    op.create_index(
        "uq_credit_holds_active_request",
        "credit_holds",
        ["request_id"],
        unique=True,
        postgresql_where=sa.text("state = 'active'"),
    )

    op.create_table(
        "credit_ledger_entries",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.UUID(), nullable=False),
        sa.Column("kind", sa.Enum(*LEDGER_ENTRY_KINDS, name="ledger_entry_kind"), nullable=False),
        sa.Column("signed_amount", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("reserved_after", sa.Integer(), nullable=False),
        sa.Column("hold_id", sa.UUID(), nullable=True),
        sa.Column("request_id", sa.UUID(), nullable=True),
        sa.Column("actor_user_id", sa.UUID(), nullable=True),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("idempotency_key", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["credit_accounts.id"]),
        sa.ForeignKeyConstraint(["hold_id"], ["credit_holds.id"]),
        sa.ForeignKeyConstraint(["request_id"], ["approval_requests.id"]),
        sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id", "idempotency_key", name="uq_credit_ledger_entries_idempotency"),
    )
    op.create_index("ix_credit_ledger_entries_account_id", "credit_ledger_entries", ["account_id"])
    op.create_index("ix_credit_ledger_entries_kind", "credit_ledger_entries", ["kind"])
    op.create_index("ix_credit_ledger_entries_request_id", "credit_ledger_entries", ["request_id"])
    op.create_index("ix_credit_ledger_entries_created_at", "credit_ledger_entries", ["created_at"])

    op.create_table(
        "approval_request_events",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("request_id", sa.UUID(), nullable=False),
        sa.Column(
            "kind",
            sa.Enum(*REQUEST_EVENT_KINDS, name="approval_request_event_kind"),
            nullable=False,
        ),
        sa.Column("actor_user_id", sa.UUID(), nullable=True),
        sa.Column("at", sa.DateTime(), nullable=False),
        sa.Column("from_status", sa.String(length=20), nullable=True),
        sa.Column("to_status", sa.String(length=20), nullable=True),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.ForeignKeyConstraint(["request_id"], ["approval_requests.id"]),
        sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_approval_request_events_request_at",
        "approval_request_events",
        ["request_id", "at", "id"],
    )

    # -- approval rules -------------------------------------------------------
    op.create_table(
        "approval_rules",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("company_id", sa.UUID(), nullable=False),
        sa.Column("min_credits", sa.Integer(), nullable=False),
        sa.Column("max_credits", sa.Integer(), nullable=True),
        sa.Column(
            "approver_role",
            sa.Enum(*RULE_APPROVER_ROLES, name="approval_rule_role"),
            nullable=False,
        ),
        sa.Column("escalation_hours", sa.Integer(), nullable=True),
        sa.Column("priority", sa.Integer(), server_default="0", nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default="true", nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("min_credits >= 0", name="ck_approval_rules_min_non_negative"),
        sa.CheckConstraint(
            "max_credits IS NULL OR max_credits >= min_credits",
            name="ck_approval_rules_band_ordered",
        ),
        sa.CheckConstraint(
            "escalation_hours IS NULL OR escalation_hours > 0",
            name="ck_approval_rules_escalation_positive",
        ),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_approval_rules_company_active", "approval_rules", ["company_id", "is_active"])


def downgrade() -> None:
    op.drop_index("ix_approval_rules_company_active", table_name="approval_rules")
    op.drop_table("approval_rules")
    op.drop_index("ix_approval_request_events_request_at", table_name="approval_request_events")
    op.drop_table("approval_request_events")
    op.drop_index("ix_credit_ledger_entries_created_at", table_name="credit_ledger_entries")
    op.drop_index("ix_credit_ledger_entries_request_id", table_name="credit_ledger_entries")
    op.drop_index("ix_credit_ledger_entries_kind", table_name="credit_ledger_entries")
    op.drop_index("ix_credit_ledger_entries_account_id", table_name="credit_ledger_entries")
    op.drop_table("credit_ledger_entries")
    op.drop_index("uq_credit_holds_active_request", table_name="credit_holds")
    op.drop_index("ix_credit_holds_account_state", table_name="credit_holds")
    op.drop_table("credit_holds")
    op.drop_index("ix_approval_requests_status_expires_at", table_name="approval_requests")
    op.drop_index("ix_approval_requests_status_pending_until", table_name="approval_requests")
    op.drop_index("ix_approval_requests_approver_status", table_name="approval_requests")
    op.drop_index("ix_approval_requests_requester_id", table_name="approval_requests")
    op.drop_index("ix_approval_requests_company_id", table_name="approval_requests")
    op.drop_table("approval_requests")
    op.drop_table("credit_accounts")
    op.drop_index("ix_team_memberships_role", table_name="team_memberships")
    op.drop_index("ix_team_memberships_user_id", table_name="team_memberships")
    op.drop_table("team_memberships")
    op.drop_index("ix_teams_company_id", table_name="teams")
    op.drop_table("teams")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
    op.drop_table("companies")

    for enum_name in (
        "approval_request_event_kind",
        "ledger_entry_kind",
        "credit_hold_state",
        "approval_request_status",
        "approval_request_type",
        "org_role",
        "approval_rule_role",
    ):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
