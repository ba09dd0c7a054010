"""Per-request audit trail. Events are appended, never updated or deleted."""

import uuid
from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from creditflow.models.request_event import RequestEvent

# Status a request is left in after each event kind; comments change nothing.
STATUS_AFTER_EVENT: dict[str, str | None] = {
    "submitted": "pending",
    "approved": "approved",
    "denied": "denied",
    "cancelled": "cancelled",
    "escalated": "pending",
    "expired": "expired",
    "fulfilled": "fulfilled",
    "commented": None,
}


def append_event(
    db: Session,
    request_id: uuid.UUID,
    kind: str,
    *,
    at: datetime,
    actor_user_id: uuid.UUID | None = None,
    from_status: str | None = None,
    to_status: str | None = None,
    payload: dict | None = None,
) -> RequestEvent:
    event = RequestEvent(
        request_id=request_id,
        kind=kind,
        actor_user_id=actor_user_id,
        at=at,
        from_status=from_status,
        to_status=to_status,
        payload=payload or {},
    )
    db.add(event)
    db.flush()
    return event


def list_events(db: Session, request_id: uuid.UUID) -> list[RequestEvent]:
    """Timeline for a request, ordered by (at, id)."""
    return list(
        db.execute(
            select(RequestEvent)
            .where(RequestEvent.request_id == request_id)
            .order_by(RequestEvent.at.asc(), RequestEvent.id.asc())
        )
        .scalars()
        .all()
    )


def replay_status(events: Iterable[RequestEvent], initial: str = "draft") -> str:
    """Derive a request's status from its event stream."""
    status = initial
    for event in events:
        after = STATUS_AFTER_EVENT[event.kind]
        if after is not None:
            status = after
    return status
