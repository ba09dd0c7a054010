from creditflow.models.approval_request import ApprovalRequest
from creditflow.models.approval_rule import ApprovalRule
from creditflow.models.company import Company
from creditflow.models.credit_account import CreditAccount
from creditflow.models.credit_hold import CreditHold
from creditflow.models.ledger_entry import LedgerEntry
from creditflow.models.request_event import RequestEvent
from creditflow.models.team import Team
from creditflow.models.team_membership import TeamMembership
from creditflow.models.user import User

__all__ = [
    "ApprovalRequest",
    "ApprovalRule",
    "Company",
    "CreditAccount",
    "CreditHold",
    "LedgerEntry",
    "RequestEvent",
    "Team",
    "TeamMembership",
    "User",
]
