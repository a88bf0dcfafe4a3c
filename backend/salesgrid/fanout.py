"""Post-commit broadcasting of sales grid changes."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from sqlalchemy import event
from sqlalchemy.orm import Session

from . import pubsub

# purpose: guarantee subscribers only ever see committed sales grid state
# inputs: session-scoped queued events produced by service calls
# outputs: redis channel messages and in-process listener callbacks, strictly after commit
# status: active

logger = logging.getLogger(__name__)

ROW_CREATED = "sales:row:created"
ROW_UPDATED = "sales:row:updated"
ROW_DELETED = "sales:row:deleted"
ROW_RESTORED = "sales:row:restored"
ROWS_BULK_UPDATED = "sales:rows:bulk-updated"
ROWS_BULK_DELETED = "sales:rows:bulk-deleted"
ROW_LOCKED = "sales:row:locked"
ROW_UNLOCKED = "sales:row:unlocked"
ROWS_IMPORTED = "sales:rows:imported"
COLUMN_CREATED = "sales:column:created"
COLUMN_UPDATED = "sales:column:updated"
COLUMN_DELETED = "sales:column:deleted"
DROPDOWN_UPDATED = "sales:dropdown:updated"

_QUEUE_KEY = "sales_pending_events"

Listener = Callable[[dict[str, Any]], None]
_listeners: list[Listener] = []


def subscribe(listener: Listener) -> None:
    """Register an in-process consumer of committed events."""

    _listeners.append(listener)


def unsubscribe(listener: Listener) -> None:
    if listener in _listeners:
        _listeners.remove(listener)


def queue_event(db: Session, event_type: str, payload: dict[str, Any]) -> None:
    """Hold an event on the session until its transaction commits."""

    db.info.setdefault(_QUEUE_KEY, []).append({"type": event_type, "payload": payload})


def pending_events(db: Session) -> list[dict[str, Any]]:
    return list(db.info.get(_QUEUE_KEY, []))


@event.listens_for(Session, "after_rollback")
def _discard_on_rollback(session: Session) -> None:
    session.info.pop(_QUEUE_KEY, None)


async def commit_and_broadcast(db: Session) -> list[dict[str, Any]]:
    """Commit the session, then publish every event queued on it.

    Nothing is published when the commit raises; the rollback listener drops
    the queue in that case.
    """

    events = db.info.pop(_QUEUE_KEY, [])
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    # committed: consumer failures are logged, not raised
    for item in events:
        try:
            await pubsub.publish_sales_event(item)
        except Exception:
            logger.exception("failed to publish %s", item["type"])
        for listener in list(_listeners):
            try:
                listener(item)
            except Exception:
                logger.exception("sales event listener %r failed on %s", listener, item["type"])
    if events:
        logger.debug("broadcast %d sales event(s)", len(events))
    return events
