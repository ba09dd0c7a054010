"""Approver routing — who decides a pending request at each escalation level.

Level 0: an ``approver`` of the request's team.
Level 1: an ``admin`` of the company.
Level 2: the company ``owner``.
Level 3: nobody; the request expires at the next timer tick.

A submitted request starts at the level its approval rule names, so large
requests skip the team approver.

Candidates at a level are ordered by (role rank desc, tenure asc, id asc) so
the same directory always yields the same approver. The requester is never a
candidate for their own request.
"""

import uuid
from dataclasses import dataclass

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from creditflow.models.approval_request import ApprovalRequest
from creditflow.models.approval_rule import ApprovalRule
from creditflow.models.team import Team
from creditflow.models.team_membership import TeamMembership

ROLE_RANK: dict[str, int] = {
    "member": 0,
    "approver": 1,
    "admin": 2,
    "owner": 3,
}

# Role that must decide at each escalation level.
LEVEL_ROLES: dict[int, str] = {
    0: "approver",
    1: "admin",
    2: "owner",
}

ROLE_LEVELS: dict[str, int] = {role: level for level, role in LEVEL_ROLES.items()}

MAX_ESCALATION_LEVEL = 3


def required_role(level: int) -> str:
    """Minimum role allowed to decide a request at ``level``."""
    return LEVEL_ROLES.get(level, "owner")


def _candidates(db: Session, request: ApprovalRequest, level: int) -> list[uuid.UUID]:
    role = LEVEL_ROLES.get(level)
    if role is None:
        return []

    if level == 0:
        scope = TeamMembership.team_id == request.team_id
    else:
        scope = TeamMembership.team_id.in_(
            select(Team.id).where(Team.company_id == request.company_id)
        )

    # A user may hold the role in several teams; tenure is their earliest membership.
    rows = db.execute(
        select(TeamMembership.user_id, func.min(TeamMembership.created_at).label("tenure"))
        .where(
            scope,
            TeamMembership.role == role,
            TeamMembership.user_id != request.requester_id,
        )
        .group_by(TeamMembership.user_id)
    ).all()

    ordered = sorted(rows, key=lambda row: (-ROLE_RANK[role], row.tenure, str(row.user_id)))
    return [row.user_id for row in ordered]


def next_approver(db: Session, request: ApprovalRequest, escalation_level: int) -> uuid.UUID | None:
    """Deterministic approver for ``request`` at exactly ``escalation_level``."""
    candidates = _candidates(db, request, escalation_level)
    return candidates[0] if candidates else None


def route(db: Session, request: ApprovalRequest, start_level: int) -> tuple[int, uuid.UUID | None]:
    """Find the first level at or above ``start_level`` that has an approver.

    Returns ``(level, approver_id)``; ``(MAX_ESCALATION_LEVEL, None)`` when no
    level has anyone left.
    """
    for level in range(start_level, MAX_ESCALATION_LEVEL):
        approver_id = next_approver(db, request, level)
        if approver_id is not None:
            return level, approver_id
    return MAX_ESCALATION_LEVEL, None


# ---------------------------------------------------------------------------
# Approval rules
# ---------------------------------------------------------------------------

# Requests of this size or more go straight to a company admin.
ADMIN_APPROVAL_THRESHOLD = 2000


@dataclass(frozen=True)
class RoutingRule:
    """Where a submitted request starts and how long its first approver has.

    ``escalation_hours`` of None means the approval policy's window applies.
    ``rule_id`` is None for the built-in defaults.
    """

    approver_role: str
    escalation_hours: int | None = None
    rule_id: uuid.UUID | None = None

    @property
    def start_level(self) -> int:
        return ROLE_LEVELS[self.approver_role]


# (min_credits, max_credits exclusive, rule) used when the company has no matching rule.
DEFAULT_RULES: tuple[tuple[int, int | None, RoutingRule], ...] = (
    (0, ADMIN_APPROVAL_THRESHOLD, RoutingRule("approver")),
    (ADMIN_APPROVAL_THRESHOLD, None, RoutingRule("admin", escalation_hours=24)),
)

FALLBACK_RULE = RoutingRule("admin", escalation_hours=24)


def get_applicable_rule(db: Session, company_id: uuid.UUID, credits: int) -> RoutingRule:
    """Rule for a request of ``credits`` in ``company_id``.

    The company's active rule with the lowest priority whose band contains
    ``credits`` wins; otherwise the built-in bands apply.
    """
    rule = db.execute(
        select(ApprovalRule)
        .where(
            ApprovalRule.company_id == company_id,
            ApprovalRule.is_active.is_(True),
            ApprovalRule.min_credits <= credits,
            or_(ApprovalRule.max_credits.is_(None), ApprovalRule.max_credits >= credits),
        )
        .order_by(ApprovalRule.priority, ApprovalRule.created_at, ApprovalRule.id)
        .limit(1)
    ).scalar_one_or_none()
    if rule is not None:
        return RoutingRule(rule.approver_role, rule.escalation_hours, rule.id)

    for low, high, default in DEFAULT_RULES:
        if credits >= low and (high is None or credits < high):
            return default
    return FALLBACK_RULE
