"""Sales row CRUD on top of the lock manager and the audit log."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any
from uuid import UUID

import sqlalchemy as sa
from pydantic import ValidationError
from sqlalchemy.orm import Session

from .. import audit, models, schemas
from ..errors import RowNotFound, SalesConflictError, SalesValidationError
from ..fields import (
    FIXED_FIELDS,
    MONTH_NAMES,
    SEARCH_FIELDS,
    SORTABLE_FIELDS,
    SYSTEM_FIELDS,
)
from . import locks, schema_registrar

# purpose: persist sales rows while honouring edit locks and recording every mutation
# inputs: raw row payloads (fixed + custom keys), acting user, request metadata
# outputs: SalesRow entities, audit change lists, bulk outcomes
# status: active
# invariants: services flush only; the caller commits and broadcasts

logger = logging.getLogger(__name__)

_URL_PATTERN = re.compile(r"^https?://.+")
_EXACT_FILTERS = ("platform", "technology", "status", "client_location", "client_budget")


@dataclass
class BulkOutcome:
    row_ids: list[UUID] = field(default_factory=list)
    modified_count: int = 0
    skipped: list[dict[str, Any]] = field(default_factory=list)


def partition_fields(data: Mapping[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    """Split a payload into fixed-field values and custom-field values.

    Bookkeeping keys are dropped. A nested ``custom_fields`` mapping is
    merged into the custom side so flat and nested payloads behave the same.
    """

    fixed: dict[str, Any] = {}
    custom: dict[str, Any] = {}
    for key, value in data.items():
        if key == "custom_fields" and isinstance(value, Mapping):
            custom.update(value)
        elif key in SYSTEM_FIELDS:
            continue
        elif key in FIXED_FIELDS:
            fixed[key] = value
        else:
            custom[key] = value
    return fixed, custom


def _error_list(exc: ValidationError) -> list[dict[str, str]]:
    return [
        {"field": ".".join(str(part) for part in err["loc"]) or "row", "message": err["msg"]}
        for err in exc.errors()
    ]


def validate_row_payload(fixed: Mapping[str, Any], *, partial: bool) -> dict[str, Any]:
    model = schemas.SalesRowUpdate if partial else schemas.SalesRowCreate
    try:
        parsed = model.model_validate(dict(fixed))
    except ValidationError as exc:
        raise SalesValidationError("Invalid sales row data", errors=_error_list(exc)) from exc
    if partial:
        return parsed.model_dump(exclude_unset=True)
    # omitted values fall back to column defaults (row_color)
    return parsed.model_dump(exclude_none=True)


def _custom_value(column: models.SalesColumn, value: Any) -> Any:
    if column.column_type == "dropdown":
        return str(value).strip()
    if column.column_type == "number":
        if isinstance(value, bool):
            raise ValueError("must be a number")
        if isinstance(value, (int, float)):
            return value
        number = float(str(value).strip())
        return int(number) if number.is_integer() and "." not in str(value) else number
    if column.column_type == "date":
        parsed = schemas.coerce_datetime(value)
        if not isinstance(parsed, datetime):
            raise ValueError("must be a date")
        return parsed.date().isoformat()
    if column.column_type == "link":
        text = str(value).strip()
        if not _URL_PATTERN.match(text):
            raise ValueError("must be a valid http(s) URL")
        return text
    return value


def validate_custom_fields(
    db: Session,
    custom: Mapping[str, Any],
    *,
    enforce_required: bool = False,
) -> dict[str, Any]:
    """Check custom values against the declared column kinds.

    Keys without a column definition are kept as-is.
    """

    columns = schema_registrar.columns_by_key(db)
    cleaned: dict[str, Any] = {}
    errors = []
    for key, value in custom.items():
        if isinstance(value, (dict, list, tuple, set)):
            errors.append({"field": key, "message": "must be a scalar value"})
            continue
        if isinstance(value, str):
            value = value.strip()
        if value is None or value == "":
            cleaned[key] = None
            continue
        column = columns.get(key)
        if column is None:
            cleaned[key] = value
            continue
        try:
            cleaned[key] = _custom_value(column, value)
        except ValueError as exc:
            message = str(exc) if str(exc).startswith("must") else "must be a number"
            errors.append({"field": key, "message": message})
    if enforce_required:
        for column in columns.values():
            if column.is_required and cleaned.get(column.key) is None:
                errors.append({"field": column.key, "message": f"{column.name} is required"})
    if errors:
        raise SalesValidationError("Invalid custom field data", errors=errors)
    return cleaned


def month_name_for(value: date | datetime | None) -> str | None:
    if value is None:
        return None
    return MONTH_NAMES[value.month - 1]


def _json_value(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    return value


def serialize_row(row: models.SalesRow, now: datetime | None = None) -> dict[str, Any]:
    """Flatten a row into a JSON-safe dict with custom keys at the top level."""

    custom = dict(row.custom_fields or {})
    data: dict[str, Any] = {"id": str(row.id)}
    for name in FIXED_FIELDS:
        data[name] = _json_value(getattr(row, name))
    for key, value in custom.items():
        data.setdefault(key, value)
    state = locks.lock_state(row, now)
    holder = None
    if row.locked_by_id is not None and state == "locked":
        holder = {"id": str(row.locked_by_id), "name": locks.holder_name(row.locked_by)}
    data.update(
        custom_fields=custom,
        locked_by=holder,
        locked_at=_json_value(row.locked_at) if holder else None,
        lock_state=state,
        is_deleted=bool(row.is_deleted),
        created_by_id=_json_value(row.created_by_id),
        updated_by_id=_json_value(row.updated_by_id),
        created_at=_json_value(row.created_at),
        updated_at=_json_value(row.updated_at),
    )
    return data


def get_row(db: Session, row_id: UUID, *, include_deleted: bool = False) -> models.SalesRow:
    row = db.get(models.SalesRow, row_id, populate_existing=True)
    if row is None or (row.is_deleted and not include_deleted):
        raise RowNotFound("Sales row not found", row_id=row_id)
    return row


def list_rows(
    db: Session,
    filters: Mapping[str, Any] | None = None,
    *,
    page: int = 1,
    limit: int = 50,
    search: str | None = None,
    min_rating: float | None = None,
    min_hire_rate: float | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    sort_by: str = "date",
    sort_order: str = "desc",
    include_deleted: bool = False,
) -> tuple[list[models.SalesRow], int]:
    query = db.query(models.SalesRow)
    if not include_deleted:
        query = query.filter(models.SalesRow.is_deleted.is_(False))
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(
            sa.or_(*(getattr(models.SalesRow, name).ilike(pattern) for name in SEARCH_FIELDS))
        )
    for name in _EXACT_FILTERS:
        value = (filters or {}).get(name)
        if value:
            query = query.filter(getattr(models.SalesRow, name) == value)
    if min_rating is not None:
        query = query.filter(models.SalesRow.client_rating >= min_rating)
    if min_hire_rate is not None:
        query = query.filter(models.SalesRow.client_hire_rate >= min_hire_rate)
    if start_date is not None:
        query = query.filter(models.SalesRow.date >= locks.to_storage(start_date))
    if end_date is not None:
        query = query.filter(models.SalesRow.date <= locks.to_storage(end_date))

    total = query.count()
    column = getattr(models.SalesRow, sort_by if sort_by in SORTABLE_FIELDS else "date")
    ordering = column.asc() if sort_order == "asc" else column.desc()
    rows = (
        query.order_by(ordering, models.SalesRow.created_at.desc())
        .offset((max(page, 1) - 1) * limit)
        .limit(limit)
        .all()
    )
    return rows, total


def create_row(
    db: Session,
    data: Mapping[str, Any],
    actor: models.User,
    *,
    ip_address: str | None = None,
    user_agent: str | None = None,
    description: str | None = None,
) -> models.SalesRow:
    fixed, custom = partition_fields(data)
    values = validate_row_payload(fixed, partial=False)
    if not values.get("month_name"):
        values["month_name"] = month_name_for(values["date"])
    custom_values = validate_custom_fields(db, custom, enforce_required=True)
    row = models.SalesRow(
        **values,
        custom_fields=custom_values,
        created_by_id=actor.id,
        updated_by_id=actor.id,
    )
    db.add(row)
    db.flush()
    audit.log_activity(
        db,
        row.id,
        actor.id,
        "created",
        description=description or "Created new sales row",
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return row


def _apply_update(
    db: Session,
    row: models.SalesRow,
    values: Mapping[str, Any],
    custom_values: Mapping[str, Any],
    actor: models.User,
) -> list[dict[str, Any]]:
    values = dict(values)
    if "date" in values and "month_name" not in values:
        values["month_name"] = month_name_for(values["date"])
    changes = audit.track_changes(row, values)
    for name, value in values.items():
        setattr(row, name, value)
    if custom_values:
        # reassign so the JSON column is flagged dirty
        row.custom_fields = {**(row.custom_fields or {}), **custom_values}
    row.updated_by_id = actor.id
    db.flush()
    return changes


def update_row(
    db: Session,
    row_id: UUID,
    data: Mapping[str, Any],
    actor: models.User,
    now: datetime | None = None,
    *,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> tuple[models.SalesRow, list[dict[str, Any]]]:
    """Apply a partial update and return the row with its change list.

    Saving releases the actor's own lock on the row.
    """

    row = get_row(db, row_id)
    locks.ensure_editable(row, actor, now)
    fixed, custom = partition_fields(data)
    values = validate_row_payload(fixed, partial=True)
    custom_values = validate_custom_fields(db, custom)
    changes = _apply_update(db, row, values, custom_values, actor)
    if row.locked_by_id == actor.id:
        row.locked_by_id = None
        row.locked_at = None
        db.flush()
    if changes:
        audit.log_activity(
            db,
            row.id,
            actor.id,
            "updated",
            description=audit.format_change_description(changes),
            changes=changes,
            ip_address=ip_address,
            user_agent=user_agent,
        )
    return row, changes


def _retire(row: models.SalesRow, actor: models.User) -> None:
    row.is_deleted = True
    row.deleted_at = locks.to_storage(locks.utcnow())
    row.deleted_by_id = actor.id
    row.locked_by_id = None
    row.locked_at = None
    row.updated_by_id = actor.id


def delete_row(
    db: Session,
    row_id: UUID,
    actor: models.User,
    now: datetime | None = None,
    *,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> models.SalesRow:
    row = get_row(db, row_id)
    locks.ensure_editable(row, actor, now)
    _retire(row, actor)
    db.flush()
    audit.log_activity(
        db,
        row.id,
        actor.id,
        "deleted",
        description="Deleted sales row",
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return row


def restore_row(
    db: Session,
    row_id: UUID,
    actor: models.User,
    *,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> models.SalesRow:
    row = get_row(db, row_id, include_deleted=True)
    if not row.is_deleted:
        raise SalesConflictError("Sales row is not deleted", row_id=row.id)
    row.is_deleted = False
    row.deleted_at = None
    row.deleted_by_id = None
    row.updated_by_id = actor.id
    db.flush()
    audit.log_activity(
        db,
        row.id,
        actor.id,
        "restored",
        description="Restored sales row",
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return row


def purge_row(db: Session, row_id: UUID) -> UUID:
    """Hard-delete a soft-deleted row; its activity history stays behind."""

    row = get_row(db, row_id, include_deleted=True)
    if not row.is_deleted:
        raise SalesConflictError("Only deleted rows can be purged", row_id=row.id)
    db.delete(row)
    db.flush()
    logger.info("purged sales row %s", row_id)
    return row_id


def _skip_reason(
    db: Session,
    row_id: UUID,
    actor: models.User,
    now: datetime | None,
) -> tuple[models.SalesRow | None, dict[str, Any] | None]:
    row = db.get(models.SalesRow, row_id, populate_existing=True)
    if row is None or row.is_deleted:
        return None, {"row_id": str(row_id), "reason": "not_found"}
    if locks.is_locked(row, now) and row.locked_by_id != actor.id:
        return None, {
            "row_id": str(row_id),
            "reason": "locked",
            "locked_by": {"id": str(row.locked_by_id), "name": locks.holder_name(row.locked_by)},
        }
    return row, None


def bulk_update_rows(
    db: Session,
    row_ids: Iterable[UUID],
    updates: Mapping[str, Any],
    actor: models.User,
    now: datetime | None = None,
    *,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> BulkOutcome:
    """Apply the same update to many rows, skipping rows another user is editing."""

    fixed, custom = partition_fields(updates)
    if not fixed and not custom:
        raise SalesValidationError("No valid fields to update")
    values = validate_row_payload(fixed, partial=True)
    custom_values = validate_custom_fields(db, custom)
    description = "Bulk update: " + ", ".join([*values, *custom_values])

    outcome = BulkOutcome()
    for row_id in dict.fromkeys(row_ids):
        row, skipped = _skip_reason(db, row_id, actor, now)
        if skipped:
            outcome.skipped.append(skipped)
            continue
        changes = _apply_update(db, row, values, custom_values, actor)
        outcome.row_ids.append(row.id)
        if changes:
            outcome.modified_count += 1
            audit.log_activity(
                db,
                row.id,
                actor.id,
                "updated",
                description=description,
                changes=changes,
                ip_address=ip_address,
                user_agent=user_agent,
            )
    if outcome.skipped:
        logger.info("bulk update skipped %d row(s)", len(outcome.skipped))
    return outcome


def bulk_delete_rows(
    db: Session,
    row_ids: Iterable[UUID],
    actor: models.User,
    now: datetime | None = None,
    *,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> BulkOutcome:
    outcome = BulkOutcome()
    for row_id in dict.fromkeys(row_ids):
        row, skipped = _skip_reason(db, row_id, actor, now)
        if skipped:
            outcome.skipped.append(skipped)
            continue
        _retire(row, actor)
        db.flush()
        audit.log_activity(
            db,
            row.id,
            actor.id,
            "deleted",
            description="Deleted in bulk",
            ip_address=ip_address,
            user_agent=user_agent,
        )
        outcome.row_ids.append(row.id)
        outcome.modified_count += 1
    return outcome
