"""Timer worker — escalates overdue pending requests and expires stale ones.

Each request is transitioned in its own transaction through the state
machine, so a run that stops halfway leaves every touched row consistent.
Re-running with the same clock does nothing new.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from creditflow.core.clock import Clock, system_clock
from creditflow.core.config import settings
from creditflow.core.database import SessionLocal
from creditflow.services.approvals import (
    ApprovalPolicy,
    due_for_escalation,
    due_for_expiration,
    escalate_request,
    expire_request,
)
from creditflow.services.errors import ApprovalError, ErrorKind, InvalidTransition, TransientError

logger = logging.getLogger(__name__)


@dataclass
class EscalationRun:
    escalated_ids: list[uuid.UUID] = field(default_factory=list)
    skipped_ids: list[uuid.UUID] = field(default_factory=list)

    @property
    def escalated_count(self) -> int:
        return len(self.escalated_ids)


@dataclass
class ExpirationRun:
    expired_ids: list[uuid.UUID] = field(default_factory=list)
    skipped_ids: list[uuid.UUID] = field(default_factory=list)

    @property
    def expired_count(self) -> int:
        return len(self.expired_ids)


def process_escalations(
    db: Session,
    clock: Clock,
    policy: ApprovalPolicy | None = None,
) -> EscalationRun:
    """Escalate every pending request whose ``pending_until`` has passed."""
    policy = policy or ApprovalPolicy.from_settings()
    run = EscalationRun()

    for request_id in due_for_escalation(db, clock.now()):
        try:
            escalate_request(db, request_id, clock=clock, policy=policy)
        except InvalidTransition:
            # Decided or escalated by someone else since the scan.
            run.skipped_ids.append(request_id)
            continue
        except (OperationalError, TransientError):
            logger.warning("Transient failure escalating request %s; will retry next tick", request_id, exc_info=True)
            run.skipped_ids.append(request_id)
            continue
        run.escalated_ids.append(request_id)

    if run.escalated_ids:
        logger.info("Escalated %d request(s)", run.escalated_count)
    return run


def process_expirations(db: Session, clock: Clock) -> ExpirationRun:
    """Expire every pending request whose ``expires_at`` has passed."""
    run = ExpirationRun()

    for request_id in due_for_expiration(db, clock.now()):
        try:
            expire_request(db, request_id, clock=clock)
        except InvalidTransition:
            run.skipped_ids.append(request_id)
            continue
        except (OperationalError, TransientError):
            logger.warning("Transient failure expiring request %s; will retry next tick", request_id, exc_info=True)
            run.skipped_ids.append(request_id)
            continue
        run.expired_ids.append(request_id)

    if run.expired_ids:
        logger.info("Expired %d request(s)", run.expired_count)
    return run


def _sweep() -> None:
    db = SessionLocal()
    try:
        process_escalations(db, system_clock)
        process_expirations(db, system_clock)
    finally:
        db.close()


async def timer_loop() -> None:
    """Background loop running both sweeps every TIMER_POLL_INTERVAL_SECONDS.

    The sweeps use a blocking session, so each run happens in a worker thread.
    A ledger consistency failure stops the loop; anything else is logged and
    retried on the next tick.
    """
    interval = settings.TIMER_POLL_INTERVAL_SECONDS
    logger.info("Approval timer loop started (poll interval: %ds)", interval)

    while True:
        try:
            await asyncio.to_thread(_sweep)
        except ApprovalError as exc:
            if exc.kind == ErrorKind.CONSISTENCY:
                logger.critical("Approval timer loop stopped on ledger inconsistency: %s", exc, exc_info=True)
                return
            logger.exception("Error in approval timer loop")
        except Exception:
            logger.exception("Error in approval timer loop")

        await asyncio.sleep(interval)
