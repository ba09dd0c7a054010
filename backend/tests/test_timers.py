"""Tests for the timer worker — escalation and expiry sweeps."""

import asyncio
import logging
from datetime import timedelta
from unittest.mock import Mock, patch

import pytest
from sqlalchemy.exc import OperationalError

from conftest import STARTING_CREDITS, TestSessionLocal
from creditflow.services import timers
from creditflow.services.approvals import approve_request, get_request, submit_request
from creditflow.services.errors import LedgerInconsistent, LedgerViolation, TransientError
from creditflow.services.events import list_events
from creditflow.services.ledger import get_account, verify_account
from creditflow.services.timers import process_escalations, process_expirations


def _submit(db, clock, policy, company, team, requester, estimated=100):
    return submit_request(
        db,
        requester_id=requester.id,
        company_id=company.id,
        team_id=team.id,
        request_type="analyst_qa",
        title="Analyst Q&A",
        estimated_credits=estimated,
        clock=clock,
        policy=policy,
    )


class TestProcessEscalations:
    def test_nothing_due(self, db, account, company, team, directory, clock, policy):
        _submit(db, clock, policy, company, team, directory["requester"])
        run = process_escalations(db, clock, policy)
        assert run.escalated_count == 0

    def test_escalates_due_requests(self, db, account, company, team, directory, clock, policy):
        request = _submit(db, clock, policy, company, team, directory["requester"])
        clock.advance(hours=48)

        run = process_escalations(db, clock, policy)
        assert run.escalated_ids == [request.id]
        escalated = get_request(db, request.id)
        assert escalated.escalation_level == 1
        assert escalated.current_approver_id == directory["admin"].id

    def test_idempotent_with_fixed_clock(self, db, account, company, team, directory, clock, policy):
        request = _submit(db, clock, policy, company, team, directory["requester"])
        clock.advance(hours=48)

        first = process_escalations(db, clock, policy)
        second = process_escalations(db, clock, policy)
        assert first.escalated_count == 1
        assert second.escalated_count == 0
        assert [e.kind for e in list_events(db, request.id)] == ["submitted", "escalated"]

    def test_skips_decided_requests(self, db, account, company, team, directory, clock, policy):
        request = _submit(db, clock, policy, company, team, directory["requester"])
        approve_request(db, request.id, actor_user_id=directory["approver"].id, clock=clock)
        clock.advance(hours=72)
        assert process_escalations(db, clock, policy).escalated_count == 0

    def test_transient_failure_skips_row(self, db, account, company, team, directory, clock, policy):
        first = _submit(db, clock, policy, company, team, directory["requester"])
        second = _submit(db, clock, policy, company, team, directory["requester"])
        clock.advance(hours=48)

        real_escalate = timers.escalate_request

        def flaky(db, request_id, **kwargs):
            if request_id == first.id:
                raise OperationalError("UPDATE approval_requests", {}, Exception("connection reset"))
            return real_escalate(db, request_id, **kwargs)

        with patch.object(timers, "escalate_request", side_effect=flaky):
            run = process_escalations(db, clock, policy)

        assert run.escalated_ids == [second.id]
        assert run.skipped_ids == [first.id]
        # Retried on the next tick.
        assert process_escalations(db, clock, policy).escalated_ids == [first.id]


class TestProcessExpirations:
    def test_expires_overdue_and_releases_holds(self, db, account, company, team, directory, clock, policy):
        request = _submit(db, clock, policy, company, team, directory["requester"], estimated=250)
        clock.advance(days=7, seconds=1)

        run = process_expirations(db, clock)
        assert run.expired_ids == [request.id]
        assert get_request(db, request.id).status == "expired"
        account = get_account(db, company.id)
        assert account.reserved == 0
        assert account.balance == STARTING_CREDITS
        verify_account(db, company.id)

    def test_idempotent(self, db, account, company, team, directory, clock, policy):
        _submit(db, clock, policy, company, team, directory["requester"])
        clock.advance(days=8)
        assert process_expirations(db, clock).expired_count == 1
        assert process_expirations(db, clock).expired_count == 0

    def test_approved_requests_never_expire(self, db, account, company, team, directory, clock, policy):
        request = _submit(db, clock, policy, company, team, directory["requester"])
        approve_request(db, request.id, actor_user_id=directory["approver"].id, clock=clock)
        clock.advance(days=30)
        assert process_expirations(db, clock).expired_count == 0
        assert get_request(db, request.id).status == "approved"

    def test_consistency_failure_stops_the_run(self, db, account, company, team, directory, clock, policy):
        _submit(db, clock, policy, company, team, directory["requester"])
        clock.advance(days=8)

        with patch.object(timers, "expire_request", side_effect=LedgerInconsistent("hold missing")):
            with pytest.raises(LedgerInconsistent):
                process_expirations(db, clock)


class TestEscalationPath:
    def test_unanswered_request_escalates_to_owner_then_expires(
        self, db, account, company, team, directory, clock, policy
    ):
        request = _submit(db, clock, policy, company, team, directory["requester"], estimated=100)

        seen = []
        for _ in range(3):
            clock.advance(policy.escalation_after + timedelta(minutes=1))
            process_escalations(db, clock, policy)
            process_expirations(db, clock)
            current = get_request(db, request.id)
            seen.append((current.status, current.escalation_level, current.current_approver_id))

        assert seen[0] == ("pending", 1, directory["admin"].id)
        assert seen[1] == ("pending", 2, directory["owner"].id)
        # Third tick: nobody above the owner, so it expires in the same sweep.
        assert seen[2][0] == "expired"

        kinds = [e.kind for e in list_events(db, request.id)]
        assert kinds == ["submitted", "escalated", "escalated", "escalated", "expired"]
        assert get_account(db, company.id).reserved == 0
        verify_account(db, company.id)


class TestTimerLoop:
    def _run_loop(self, escalations):
        """Run the loop with a zero poll interval until it returns on its own."""
        with patch.object(timers, "SessionLocal", TestSessionLocal), \
                patch.object(timers, "process_escalations", escalations), \
                patch.object(timers, "process_expirations") as expirations, \
                patch.object(timers.settings, "TIMER_POLL_INTERVAL_SECONDS", 0):
            asyncio.run(asyncio.wait_for(timers.timer_loop(), timeout=5))
        return expirations

    def test_consistency_failure_stops_the_loop(self, caplog):
        escalations = Mock(side_effect=LedgerInconsistent("hold missing"))

        with caplog.at_level(logging.CRITICAL, logger=timers.__name__):
            expirations = self._run_loop(escalations)

        assert escalations.call_count == 1
        expirations.assert_not_called()
        assert any(r.levelno == logging.CRITICAL for r in caplog.records)

    def test_ledger_violation_stops_the_loop(self):
        escalations = Mock(side_effect=LedgerViolation("reserved would go negative"))
        self._run_loop(escalations)
        assert escalations.call_count == 1

    def test_other_failures_are_retried(self):
        escalations = Mock(
            side_effect=[
                OperationalError("SELECT approval_requests", {}, Exception("connection reset")),
                TransientError("database unavailable"),
                RuntimeError("unexpected"),
                None,
                LedgerInconsistent("hold missing"),
            ]
        )

        expirations = self._run_loop(escalations)

        assert escalations.call_count == 5
        assert expirations.call_count == 1
