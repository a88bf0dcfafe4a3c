"""Per-row edit locks with lazy expiry."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Literal
from uuid import UUID

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from .. import audit, models
from ..errors import LockNotHeld, RowLockConflict, RowNotFound

# purpose: serialize concurrent edits of one sales row through an expiring holder marker
# inputs: row id, acting user, optional clock override
# outputs: locked/unlocked SalesRow state plus matching activity entries
# status: active
# invariants: the check-then-set is a single conditional UPDATE; expiry is evaluated at read time only

logger = logging.getLogger(__name__)

LOCK_TTL = timedelta(seconds=int(os.getenv("SALES_LOCK_TTL_SECONDS", "600")))
_CAS_ATTEMPTS = 3

LockState = Literal["unlocked", "locked", "expired"]


@dataclass(frozen=True)
class LockRelease:
    """Outcome of a release request."""

    row_id: UUID
    released: bool
    forced: bool = False
    previous_holder_id: UUID | None = None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_storage(value: datetime) -> datetime:
    """Naive UTC, the form every lock timestamp is stored and compared in."""

    return as_utc(value).replace(tzinfo=None)


def holder_name(user: models.User | None) -> str | None:
    if user is None:
        return None
    return user.full_name or user.email


def lock_state(row: Any, now: datetime | None = None) -> LockState:
    if row.locked_by_id is None or row.locked_at is None:
        return "unlocked"
    now = as_utc(now or utcnow())
    if now - as_utc(row.locked_at) < LOCK_TTL:
        return "locked"
    return "expired"


def is_locked(row: Any, now: datetime | None = None) -> bool:
    return lock_state(row, now) == "locked"


def ensure_editable(row: models.SalesRow, actor: models.User, now: datetime | None = None) -> None:
    """Raise when a different, live holder owns the row."""

    if is_locked(row, now) and row.locked_by_id != actor.id:
        raise RowLockConflict(row.id, row.locked_by_id, holder_name(row.locked_by))


def _load_row(db: Session, row_id: UUID) -> models.SalesRow:
    row = db.get(models.SalesRow, row_id, populate_existing=True)
    if row is None or row.is_deleted:
        raise RowNotFound("Sales row not found", row_id=row_id)
    return row


def acquire_lock(
    db: Session,
    row_id: UUID,
    actor: models.User,
    now: datetime | None = None,
    *,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> models.SalesRow:
    """Take (or refresh) the edit lock on a row for ``actor``.

    Succeeds when the row is unlocked, holds an expired lock, or is already
    held by the same actor. A live lock held by someone else raises
    ``RowLockConflict`` carrying the holder; the row is left untouched.
    """

    now = now or utcnow()
    stamp = to_storage(now)
    cutoff = to_storage(now - LOCK_TTL)
    for _ in range(_CAS_ATTEMPTS):
        before = _load_row(db, row_id)
        refreshing = before.locked_by_id == actor.id and is_locked(before, now)
        result = db.execute(
            update(models.SalesRow)
            .where(
                models.SalesRow.id == row_id,
                models.SalesRow.is_deleted.is_(False),
                or_(
                    models.SalesRow.locked_by_id.is_(None),
                    models.SalesRow.locked_at.is_(None),
                    models.SalesRow.locked_at <= cutoff,
                    models.SalesRow.locked_by_id == actor.id,
                ),
            )
            .values(locked_by_id=actor.id, locked_at=stamp)
            .execution_options(synchronize_session=False)
        )
        row = _load_row(db, row_id)
        if result.rowcount == 1:
            if not refreshing:
                audit.log_activity(
                    db,
                    row.id,
                    actor.id,
                    "locked",
                    description=f"Locked for editing by {holder_name(actor)}",
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
            return row
        if is_locked(row, now) and row.locked_by_id != actor.id:
            raise RowLockConflict(row.id, row.locked_by_id, holder_name(row.locked_by))
        # holder released or expired between the read and the write; try again
    row = _load_row(db, row_id)
    raise RowLockConflict(row.id, row.locked_by_id, holder_name(row.locked_by))


def release_lock(
    db: Session,
    row_id: UUID,
    actor: models.User,
    now: datetime | None = None,
    *,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> LockRelease:
    """Release the lock on a row.

    An unlocked row is a successful no-op. An expired lock is cleared no
    matter who asks (stale lock cleanup). A live lock can only be released
    by its holder; anyone else gets ``LockNotHeld``.
    """

    now = now or utcnow()
    cutoff = to_storage(now - LOCK_TTL)
    for _ in range(_CAS_ATTEMPTS):
        row = _load_row(db, row_id)
        holder_id = row.locked_by_id
        if holder_id is None:
            return LockRelease(row_id=row.id, released=False)
        forced = not is_locked(row, now)
        if forced:
            guard = (models.SalesRow.locked_by_id == holder_id, models.SalesRow.locked_at <= cutoff)
        elif holder_id == actor.id:
            guard = (models.SalesRow.locked_by_id == actor.id,)
        else:
            raise LockNotHeld(
                "You can only unlock rows that you locked",
                row_id=row.id,
                locked_by={"id": str(holder_id), "name": holder_name(row.locked_by)},
            )
        result = db.execute(
            update(models.SalesRow)
            .where(models.SalesRow.id == row_id, *guard)
            .values(locked_by_id=None, locked_at=None)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            continue
        row = _load_row(db, row_id)
        if forced:
            description = "Stale lock cleared"
            logger.info("cleared expired lock on row %s held by %s", row_id, holder_id)
        else:
            description = f"Unlocked by {holder_name(actor)}"
        audit.log_activity(
            db,
            row.id,
            actor.id,
            "unlocked",
            description=description,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return LockRelease(row_id=row.id, released=True, forced=forced, previous_holder_id=holder_id)
    row = _load_row(db, row_id)
    raise LockNotHeld(
        "Lock changed hands while releasing",
        row_id=row.id,
        locked_by={"id": str(row.locked_by_id), "name": holder_name(row.locked_by)},
    )
