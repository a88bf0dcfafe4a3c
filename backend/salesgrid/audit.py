"""Field-level change tracking and the append-only sales activity log."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import date, datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .errors import SalesConflictError
from .fields import DATE_FIELDS, FIELD_LABELS, TRACKED_FIELDS

# purpose: compute audit diffs for row mutations and persist them as immutable activity entries
# inputs: before snapshots, update payloads, acting user, request metadata
# outputs: ordered change lists, human readable descriptions, SalesActivityLog rows
# status: active

EMPTY_PLACEHOLDER = "Empty"
CHANGE_SEPARATOR = "; "

ACTIVITY_ACTIONS = ("created", "updated", "deleted", "restored", "locked", "unlocked")


def _calendar_day(value: Any) -> date | str | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return text
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc)
    return parsed.date()


def _json_safe(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    return value


def _snapshot_value(snapshot: Any, field: str) -> Any:
    if isinstance(snapshot, Mapping):
        return snapshot.get(field)
    return getattr(snapshot, field, None)


def track_changes(old_snapshot: Any, update_payload: Mapping[str, Any]) -> list[dict[str, Any]]:
    """Return the tracked fields whose value differs between snapshot and payload.

    Only keys present in ``update_payload`` are compared; a missing key means
    "not being changed". Date fields are equal when they fall on the same
    calendar day. Ordering follows ``TRACKED_FIELDS``.
    """

    changes: list[dict[str, Any]] = []
    for field in TRACKED_FIELDS:
        if field not in update_payload:
            continue
        old_value = _snapshot_value(old_snapshot, field)
        new_value = update_payload[field]
        if field in DATE_FIELDS:
            differs = _calendar_day(old_value) != _calendar_day(new_value)
        else:
            differs = old_value != new_value
        if differs:
            changes.append(
                {
                    "field": field,
                    "field_label": FIELD_LABELS[field],
                    "old_value": _json_safe(old_value),
                    "new_value": _json_safe(new_value),
                }
            )
    return changes


def format_change_description(changes: Iterable[Mapping[str, Any]] | None) -> str:
    parts = []
    for change in changes or []:
        old_value = change.get("old_value")
        new_value = change.get("new_value")
        old_text = EMPTY_PLACEHOLDER if old_value is None else old_value
        new_text = EMPTY_PLACEHOLDER if new_value is None else new_value
        parts.append(f'{change["field_label"]}: "{old_text}" → "{new_text}"')
    return CHANGE_SEPARATOR.join(parts)


def _latest_sequence(db: Session, row_id: UUID) -> int | None:
    return (
        db.query(func.max(models.SalesActivityLog.sequence))
        .filter(models.SalesActivityLog.row_id == row_id)
        .scalar()
    )


def log_activity(
    db: Session,
    row_id: UUID,
    user_id: UUID,
    action: str,
    description: str | None = None,
    changes: list[dict[str, Any]] | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> models.SalesActivityLog:
    """Append one activity entry for a row; the caller owns the commit."""

    if action not in ACTIVITY_ACTIONS:
        raise ValueError(f"unknown activity action {action!r}")
    latest = _latest_sequence(db, row_id)
    entry = models.SalesActivityLog(
        row_id=row_id,
        user_id=user_id,
        action=action,
        description=description,
        changes=list(changes or []),
        ip_address=ip_address,
        user_agent=user_agent,
        sequence=(latest or 0) + 1,
        created_at=datetime.now(timezone.utc),
    )
    db.add(entry)
    try:
        db.flush()
    except IntegrityError as exc:
        # another transaction took this sequence number first
        raise SalesConflictError(
            "Row was changed concurrently, retry the operation", row_id=row_id
        ) from exc
    return entry


def list_activity(
    db: Session,
    row_id: UUID,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[models.SalesActivityLog], int]:
    query = db.query(models.SalesActivityLog).filter(models.SalesActivityLog.row_id == row_id)
    total = query.count()
    entries = (
        query.order_by(
            models.SalesActivityLog.sequence.desc(),
            models.SalesActivityLog.created_at.desc(),
        )
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return entries, total


def generate_report(
    db: Session,
    start: datetime,
    end: datetime,
    user_id: UUID | None = None,
):
    query = db.query(models.SalesActivityLog).filter(
        models.SalesActivityLog.created_at >= start,
        models.SalesActivityLog.created_at <= end,
    )
    if user_id:
        query = query.filter(models.SalesActivityLog.user_id == user_id)
    rows = (
        query.with_entities(models.SalesActivityLog.action, func.count(models.SalesActivityLog.id))
        .group_by(models.SalesActivityLog.action)
        .all()
    )
    return [{"action": r[0], "count": r[1]} for r in rows]
