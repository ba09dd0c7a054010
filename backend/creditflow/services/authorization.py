"""Who may do what to which request.

Checks run before any state inspection: an unauthorized caller gets
Forbidden even when the request is in a status the verb couldn't apply to.
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum

from sqlalchemy import select
from sqlalchemy.orm import Session

from creditflow.models.approval_request import ApprovalRequest
from creditflow.models.team import Team
from creditflow.models.team_membership import TeamMembership
from creditflow.services.errors import Forbidden
from creditflow.services.routing import ROLE_RANK, required_role

DECIDING_ROLES = frozenset({"approver", "admin", "owner"})
CREDIT_ADMIN_ROLES = frozenset({"admin", "owner"})


class Verb(str, Enum):
    SUBMIT = "submit"
    SUBMIT_DRAFT = "submit_draft"
    VIEW = "view"
    LIST = "list"
    APPROVE = "approve"
    DENY = "deny"
    CANCEL = "cancel"
    FULFILL = "fulfill"
    COMMENT = "comment"
    VIEW_CREDITS = "view_credits"
    MANAGE_CREDITS = "manage_credits"
    RECONCILE = "reconcile"
    RELEASE_HOLD = "release_hold"
    CONVERT_HOLD = "convert_hold"


# Verbs that change state; cookie sessions must present a CSRF token for these.
MUTATING_VERBS = frozenset(
    {
        Verb.SUBMIT,
        Verb.SUBMIT_DRAFT,
        Verb.APPROVE,
        Verb.DENY,
        Verb.CANCEL,
        Verb.FULFILL,
        Verb.COMMENT,
        Verb.MANAGE_CREDITS,
        Verb.RELEASE_HOLD,
        Verb.CONVERT_HOLD,
    }
)


@dataclass
class OrgContext:
    """The caller's place in their company's directory."""

    user_id: uuid.UUID
    company_id: uuid.UUID
    team_roles: dict[uuid.UUID, str] = field(default_factory=dict)
    user_role: str = "member"

    def role_in(self, team_id: uuid.UUID) -> str | None:
        return self.team_roles.get(team_id)

    def outranks(self, role: str) -> bool:
        return ROLE_RANK[self.user_role] >= ROLE_RANK[role]


def load_org_context(db: Session, user_id: uuid.UUID) -> OrgContext | None:
    """Resolve the user's company and roles; None if they belong to no team.

    A user in several companies acts for the one they joined first.
    """
    rows = db.execute(
        select(TeamMembership.team_id, TeamMembership.role, Team.company_id)
        .join(Team, Team.id == TeamMembership.team_id)
        .where(TeamMembership.user_id == user_id)
        .order_by(TeamMembership.created_at.asc(), TeamMembership.id.asc())
    ).all()
    if not rows:
        return None

    company_id = rows[0].company_id
    team_roles = {row.team_id: row.role for row in rows if row.company_id == company_id}
    user_role = max(team_roles.values(), key=lambda role: ROLE_RANK[role])
    return OrgContext(
        user_id=user_id,
        company_id=company_id,
        team_roles=team_roles,
        user_role=user_role,
    )


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------


def can_submit(org: OrgContext, team: Team) -> bool:
    """Any member of the company may raise a request for any of its teams."""
    return bool(org.team_roles) and team.company_id == org.company_id


def can_view(org: OrgContext, request: ApprovalRequest) -> bool:
    return request.company_id == org.company_id


def can_decide(org: OrgContext, request: ApprovalRequest) -> bool:
    """Approve or deny: the assigned approver, or anyone senior enough for the level."""
    if not can_view(org, request) or request.requester_id == org.user_id:
        return False
    if request.current_approver_id == org.user_id:
        return True
    return org.outranks(required_role(request.escalation_level))


def can_cancel(org: OrgContext, request: ApprovalRequest) -> bool:
    return can_view(org, request) and request.requester_id == org.user_id


def can_fulfill(org: OrgContext, request: ApprovalRequest) -> bool:
    if not can_view(org, request):
        return False
    return org.role_in(request.team_id) in DECIDING_ROLES or org.user_role in CREDIT_ADMIN_ROLES


def can_manage_credits(org: OrgContext) -> bool:
    return org.user_role in CREDIT_ADMIN_ROLES


def authorize(verb: Verb, org: OrgContext, target=None) -> None:
    """Raise Forbidden unless ``org`` may apply ``verb`` to ``target``.

    ``target`` is the request for request verbs, the team for SUBMIT, and
    unused for company-level verbs.
    """
    if verb == Verb.SUBMIT:
        allowed = can_submit(org, target)
    elif verb in (Verb.VIEW, Verb.COMMENT):
        allowed = can_view(org, target)
    elif verb in (Verb.APPROVE, Verb.DENY):
        allowed = can_decide(org, target)
    elif verb in (Verb.CANCEL, Verb.SUBMIT_DRAFT):
        allowed = can_cancel(org, target)
    elif verb == Verb.FULFILL:
        allowed = can_fulfill(org, target)
    elif verb in (Verb.LIST, Verb.VIEW_CREDITS):
        allowed = True
    elif verb in (Verb.MANAGE_CREDITS, Verb.RECONCILE, Verb.RELEASE_HOLD, Verb.CONVERT_HOLD):
        allowed = can_manage_credits(org)
    else:
        raise ValueError(f"Unknown verb: {verb}")

    if not allowed:
        raise Forbidden(f"Not allowed to {verb.value} this resource")
