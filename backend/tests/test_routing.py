"""Tests for approver routing."""

import uuid
from datetime import timedelta

from conftest import START, add_member
from creditflow.models.approval_request import ApprovalRequest
from creditflow.models.approval_rule import ApprovalRule
from creditflow.models.company import Company
from creditflow.models.team import Team
from creditflow.services.routing import (
    ADMIN_APPROVAL_THRESHOLD,
    MAX_ESCALATION_LEVEL,
    RoutingRule,
    get_applicable_rule,
    next_approver,
    required_role,
    route,
)


def _request(company, team, requester) -> ApprovalRequest:
    # Routing only reads these attributes; nothing is persisted.
    return ApprovalRequest(
        id=uuid.uuid4(),
        company_id=company.id,
        team_id=team.id,
        requester_id=requester.id,
        request_type="expert_consult",
        title="Expert consult",
        estimated_credits=50,
        status="pending",
        escalation_level=0,
    )


def _second_team(db, company) -> Team:
    team = Team(company_id=company.id, name="Ops", created_at=START)
    db.add(team)
    db.commit()
    return team


class TestRequiredRole:
    def test_levels(self):
        assert required_role(0) == "approver"
        assert required_role(1) == "admin"
        assert required_role(2) == "owner"
        assert required_role(3) == "owner"


class TestNextApprover:
    def test_level_zero_is_team_approver(self, db, company, team, directory):
        request = _request(company, team, directory["requester"])
        assert next_approver(db, request, 0) == directory["approver"].id

    def test_level_one_is_admin(self, db, company, team, directory):
        request = _request(company, team, directory["requester"])
        assert next_approver(db, request, 1) == directory["admin"].id

    def test_level_two_is_owner(self, db, company, team, directory):
        request = _request(company, team, directory["requester"])
        assert next_approver(db, request, 2) == directory["owner"].id

    def test_level_three_has_nobody(self, db, company, team, directory):
        request = _request(company, team, directory["requester"])
        assert next_approver(db, request, 3) is None

    def test_level_zero_ignores_other_teams(self, db, company, team, requester):
        other = _second_team(db, company)
        add_member(db, other, "approver", "elsewhere@acme.example", START - timedelta(days=900))
        request = _request(company, team, requester)
        assert next_approver(db, request, 0) is None

    def test_level_one_searches_whole_company(self, db, company, team, requester):
        other = _second_team(db, company)
        admin = add_member(db, other, "admin", "ops-admin@acme.example", START - timedelta(days=10))
        request = _request(company, team, requester)
        assert next_approver(db, request, 1) == admin.id

    def test_longest_tenure_wins(self, db, company, team, requester):
        junior = add_member(db, team, "approver", "junior@acme.example", START - timedelta(days=5))
        senior = add_member(db, team, "approver", "senior@acme.example", START - timedelta(days=50))
        request = _request(company, team, requester)
        assert next_approver(db, request, 0) == senior.id
        assert next_approver(db, request, 0) != junior.id

    def test_tenure_tie_broken_by_id(self, db, company, team, requester):
        joined = START - timedelta(days=20)
        a = add_member(db, team, "approver", "a@acme.example", joined)
        b = add_member(db, team, "approver", "b@acme.example", joined)
        request = _request(company, team, requester)
        expected = min((a.id, b.id), key=str)
        assert next_approver(db, request, 0) == expected

    def test_requester_never_routed_to_self(self, db, company, team, directory):
        # The approver raising their own request skips to the next approver, if any.
        request = _request(company, team, directory["approver"])
        assert next_approver(db, request, 0) is None

    def test_deterministic(self, db, company, team, directory):
        request = _request(company, team, directory["requester"])
        picks = {next_approver(db, request, 0) for _ in range(5)}
        assert len(picks) == 1


class TestRoute:
    def test_starts_at_requested_level(self, db, company, team, directory):
        request = _request(company, team, directory["requester"])
        assert route(db, request, 0) == (0, directory["approver"].id)
        assert route(db, request, 1) == (1, directory["admin"].id)

    def test_skips_empty_levels(self, db, company, team, requester, owner):
        request = _request(company, team, requester)
        assert route(db, request, 0) == (2, owner.id)

    def test_exhausted(self, db, company, team, requester):
        request = _request(company, team, requester)
        assert route(db, request, 0) == (MAX_ESCALATION_LEVEL, None)

    def test_owner_requesting_exhausts_at_top(self, db, company, team, directory):
        request = _request(company, team, directory["owner"])
        assert route(db, request, 2) == (MAX_ESCALATION_LEVEL, None)


def _rule(db, company, min_credits, max_credits, approver_role, escalation_hours=None, priority=0, is_active=True):
    rule = ApprovalRule(
        company_id=company.id,
        min_credits=min_credits,
        max_credits=max_credits,
        approver_role=approver_role,
        escalation_hours=escalation_hours,
        priority=priority,
        is_active=is_active,
        created_at=START,
        updated_at=START,
    )
    db.add(rule)
    db.commit()
    return rule


class TestApplicableRule:
    def test_default_bands(self, db, company):
        assert get_applicable_rule(db, company.id, 1).approver_role == "approver"
        assert get_applicable_rule(db, company.id, ADMIN_APPROVAL_THRESHOLD - 1).approver_role == "approver"
        assert get_applicable_rule(db, company.id, ADMIN_APPROVAL_THRESHOLD).approver_role == "admin"
        assert get_applicable_rule(db, company.id, 3000) == RoutingRule("admin", escalation_hours=24)

    def test_default_small_band_uses_policy_window(self, db, company):
        rule = get_applicable_rule(db, company.id, 300)
        assert rule.escalation_hours is None
        assert rule.rule_id is None
        assert rule.start_level == 0

    def test_start_levels(self):
        assert RoutingRule("approver").start_level == 0
        assert RoutingRule("admin").start_level == 1
        assert RoutingRule("owner").start_level == 2

    def test_company_rule_wins(self, db, company):
        stored = _rule(db, company, 0, 500, "owner", escalation_hours=12)
        rule = get_applicable_rule(db, company.id, 300)
        assert rule == RoutingRule("owner", escalation_hours=12, rule_id=stored.id)

    def test_company_band_upper_bound_inclusive(self, db, company):
        _rule(db, company, 0, 500, "admin")
        assert get_applicable_rule(db, company.id, 500).approver_role == "admin"
        # Outside every company band: built-in bands apply.
        assert get_applicable_rule(db, company.id, 501).approver_role == "approver"

    def test_lowest_priority_wins(self, db, company):
        _rule(db, company, 0, None, "owner", priority=5)
        _rule(db, company, 100, 1000, "admin", priority=1)
        assert get_applicable_rule(db, company.id, 200).approver_role == "admin"
        assert get_applicable_rule(db, company.id, 50).approver_role == "owner"

    def test_inactive_rules_ignored(self, db, company):
        _rule(db, company, 0, None, "owner", is_active=False)
        assert get_applicable_rule(db, company.id, 200).approver_role == "approver"

    def test_other_company_rules_ignored(self, db, company):
        other = Company(name="Globex", created_at=START)
        db.add(other)
        db.commit()
        _rule(db, other, 0, None, "owner")
        assert get_applicable_rule(db, company.id, 200).approver_role == "approver"
