"""Tests for the action pipeline and the error-kind → status mapping."""

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from creditflow.api.errors import STATUS_BY_KIND
from creditflow.models import User
from creditflow.services.auth import SessionIdentity
from creditflow.services.authorization import Verb
from creditflow.services.errors import ErrorKind, LedgerInconsistent, NotFound
from creditflow.services.pipeline import ActionPipeline, Err, Ok


def _transient():
    return OperationalError("SELECT 1", {}, Exception("server closed the connection unexpectedly"))


@pytest.fixture
def pipeline(db, clock):
    delays = []
    pipe = ActionPipeline(db, clock, max_retries=3, base_delay=0.01, sleep=delays.append)
    pipe.delays = delays
    return pipe


class TestStatusMapping:
    def test_every_kind_has_a_status(self):
        assert set(STATUS_BY_KIND) == set(ErrorKind)

    def test_statuses(self):
        assert STATUS_BY_KIND[ErrorKind.VALIDATION] == 400
        assert STATUS_BY_KIND[ErrorKind.INVALID_TRANSITION] == 400
        assert STATUS_BY_KIND[ErrorKind.INSUFFICIENT_CREDITS] == 400
        assert STATUS_BY_KIND[ErrorKind.EXCEEDS_HOLD] == 400
        assert STATUS_BY_KIND[ErrorKind.UNAUTHENTICATED] == 401
        assert STATUS_BY_KIND[ErrorKind.FORBIDDEN] == 403
        assert STATUS_BY_KIND[ErrorKind.NOT_FOUND] == 404
        assert STATUS_BY_KIND[ErrorKind.CONFLICT] == 409
        assert STATUS_BY_KIND[ErrorKind.CONSISTENCY] == 500
        assert STATUS_BY_KIND[ErrorKind.TRANSIENT] == 503


class TestStages:
    def test_ok(self, pipeline, directory):
        result = pipeline.run(SessionIdentity(user=directory["requester"]), Verb.LIST, lambda org, _: org.user_id)
        assert result == Ok(directory["requester"].id)

    def test_anonymous(self, pipeline):
        result = pipeline.run(SessionIdentity(user=None), Verb.LIST, lambda org, _: None)
        assert isinstance(result, Err)
        assert result.kind == ErrorKind.UNAUTHENTICATED

    def test_cookie_mutation_without_csrf(self, pipeline, directory):
        identity = SessionIdentity(user=directory["requester"], via_cookie=True, csrf_valid=False)
        result = pipeline.run(identity, Verb.COMMENT, lambda org, _: None)
        assert result.kind == ErrorKind.FORBIDDEN
        assert "CSRF" in result.message

    def test_cookie_read_without_csrf(self, pipeline, directory):
        identity = SessionIdentity(user=directory["requester"], via_cookie=True, csrf_valid=False)
        assert isinstance(pipeline.run(identity, Verb.LIST, lambda org, _: 1), Ok)

    def test_user_without_org(self, pipeline, db):
        user = User(email="nobody@example.com")
        db.add(user)
        db.commit()
        result = pipeline.run(SessionIdentity(user=user), Verb.LIST, lambda org, _: None)
        assert result.kind == ErrorKind.FORBIDDEN

    def test_authorization_runs_before_apply(self, pipeline, directory):
        applied = []
        result = pipeline.run(
            SessionIdentity(user=directory["approver"]),
            Verb.MANAGE_CREDITS,
            lambda org, _: applied.append(True),
        )
        assert result.kind == ErrorKind.FORBIDDEN
        assert applied == []

    def test_loader_not_found(self, pipeline, directory):
        def load(db, org):
            raise NotFound("Request not found")

        result = pipeline.run(SessionIdentity(user=directory["owner"]), Verb.VIEW, lambda org, t: t, load=load)
        assert result == Err(kind=ErrorKind.NOT_FOUND, code="NotFound", message="Request not found")

    def test_consistency_error_becomes_err(self, pipeline, directory):
        def apply(org, _):
            raise LedgerInconsistent("reserved 10 but holds total 0")

        result = pipeline.run(SessionIdentity(user=directory["owner"]), Verb.LIST, apply)
        assert result.kind == ErrorKind.CONSISTENCY
        assert result.code == "LedgerInconsistent"


class TestRetries:
    def test_transient_errors_retried(self, pipeline, directory):
        attempts = []

        def apply(org, _):
            attempts.append(1)
            if len(attempts) < 3:
                raise _transient()
            return "done"

        result = pipeline.run(SessionIdentity(user=directory["owner"]), Verb.LIST, apply)
        assert result == Ok("done")
        assert len(attempts) == 3
        assert len(pipeline.delays) == 2
        # Exponential: the second delay is at least twice the base.
        assert pipeline.delays[1] >= 0.02

    def test_gives_up_as_transient(self, pipeline, directory):
        def apply(org, _):
            raise _transient()

        result = pipeline.run(SessionIdentity(user=directory["owner"]), Verb.LIST, apply)
        assert result.kind == ErrorKind.TRANSIENT
        assert len(pipeline.delays) == 3

    def test_non_transient_database_errors_propagate(self, pipeline, directory):
        def apply(org, _):
            raise IntegrityError("INSERT", {}, Exception("duplicate key"))

        with pytest.raises(IntegrityError):
            pipeline.run(SessionIdentity(user=directory["owner"]), Verb.LIST, apply)
        assert pipeline.delays == []
