"""Custom column definitions and dropdown option sets for the sales grid."""

from __future__ import annotations

import re
from typing import Any
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.orm import Session

from .. import models
from ..errors import (
    ColumnNotFound,
    DropdownScopeNotFound,
    DuplicateColumn,
    DuplicateOption,
    OptionDeleteForbidden,
    OptionInUse,
    OptionNotFound,
    SalesValidationError,
)
from ..fields import COLUMN_TYPES, ENUMERATED_FIELDS, RESERVED_KEYS

# purpose: evolve the dynamic part of the sales schema without ever colliding with fixed fields
# inputs: human column names, value kinds, dropdown labels/values, acting user
# outputs: SalesColumn and SalesDropdownOption rows, flushed but not committed
# status: active

_WHITESPACE = re.compile(r"\s+")
_INVALID_KEY_CHARS = re.compile(r"[^a-z0-9_]")

_COLUMN_FIELDS = {"name", "column_type", "is_visible", "is_required", "display_order"}
_OPTION_FIELDS = {"label", "value", "color", "display_order", "is_active"}


def derive_key(name: str) -> str:
    """Lowercase, underscore whitespace runs, and drop anything outside ``[a-z0-9_]``."""

    lowered = (name or "").strip().lower()
    return _INVALID_KEY_CHARS.sub("", _WHITESPACE.sub("_", lowered))


def _option_value_from_label(label: str) -> str:
    return _WHITESPACE.sub("_", label.strip().lower())


# --- columns -----------------------------------------------------------------


def list_columns(db: Session, visible_only: bool = True) -> list[models.SalesColumn]:
    query = db.query(models.SalesColumn)
    if visible_only:
        query = query.filter(models.SalesColumn.is_visible.is_(True))
    return query.order_by(models.SalesColumn.display_order.asc()).all()


def get_column(db: Session, column_id: UUID) -> models.SalesColumn:
    column = db.get(models.SalesColumn, column_id)
    if column is None:
        raise ColumnNotFound("Column not found", column_id=column_id)
    return column


def columns_by_key(db: Session) -> dict[str, models.SalesColumn]:
    return {column.key: column for column in db.query(models.SalesColumn).all()}


def next_column_order(db: Session) -> int:
    current = db.query(sa.func.max(models.SalesColumn.display_order)).scalar()
    return 0 if current is None else current + 1


def create_column(
    db: Session,
    name: str,
    column_type: str,
    actor: models.User,
    *,
    is_required: bool = False,
    skip_duplicates: bool = False,
) -> models.SalesColumn | None:
    """Create a custom column from a human name.

    Empty keys, keys equal to a fixed/system field and keys already in use are
    skipped (``None``) in bulk contexts and raise ``DuplicateColumn`` otherwise.
    """

    if column_type not in COLUMN_TYPES:
        raise SalesValidationError(
            f"Unknown column type {column_type!r}", allowed=list(COLUMN_TYPES)
        )
    key = derive_key(name)
    reason = None
    if not key:
        reason = "Column name does not produce a usable key"
    elif key in RESERVED_KEYS:
        reason = f"Column key '{key}' is reserved by a built-in field"
    elif db.query(models.SalesColumn.id).filter(models.SalesColumn.key == key).first():
        reason = f"Column '{key}' already exists"
    if reason:
        if skip_duplicates:
            return None
        raise DuplicateColumn(reason, key=key)

    column = models.SalesColumn(
        key=key,
        name=name.strip(),
        column_type=column_type,
        display_order=next_column_order(db),
        is_required=is_required,
        created_by_id=actor.id,
    )
    db.add(column)
    db.flush()
    return column


def update_column(db: Session, column_id: UUID, changes: dict[str, Any]) -> models.SalesColumn:
    column = get_column(db, column_id)
    for field, value in changes.items():
        if field not in _COLUMN_FIELDS or value is None:
            continue
        if field == "column_type" and value not in COLUMN_TYPES:
            raise SalesValidationError(f"Unknown column type {value!r}", allowed=list(COLUMN_TYPES))
        setattr(column, field, value.strip() if field == "name" else value)
    db.flush()
    return column


def delete_column(db: Session, column_id: UUID) -> models.SalesColumn:
    """Delete a column together with every dropdown option scoped to it."""

    column = get_column(db, column_id)
    (
        db.query(models.SalesDropdownOption)
        .filter(models.SalesDropdownOption.column_name == column.key)
        .delete(synchronize_session=False)
    )
    db.delete(column)
    db.flush()
    return column


# --- dropdown options ----------------------------------------------------------


def dropdown_scopes(db: Session) -> list[str]:
    """Fixed enumerated fields followed by every dropdown-typed column key."""

    keys = (
        db.query(models.SalesColumn.key)
        .filter(models.SalesColumn.column_type == "dropdown")
        .order_by(models.SalesColumn.display_order.asc())
        .all()
    )
    return list(ENUMERATED_FIELDS) + [key for (key,) in keys]


def ensure_scope(db: Session, scope: str) -> None:
    if scope in ENUMERATED_FIELDS:
        return
    found = (
        db.query(models.SalesColumn.id)
        .filter(models.SalesColumn.key == scope, models.SalesColumn.column_type == "dropdown")
        .first()
    )
    if found is None:
        raise DropdownScopeNotFound(f"No dropdown field named '{scope}'", scope=scope)


def _active_options(db: Session, scope: str):
    return db.query(models.SalesDropdownOption).filter(
        models.SalesDropdownOption.column_name == scope,
        models.SalesDropdownOption.is_active.is_(True),
    )


def list_options(db: Session, scope: str) -> list[models.SalesDropdownOption]:
    return _active_options(db, scope).order_by(models.SalesDropdownOption.display_order.asc()).all()


def _collides(
    db: Session,
    scope: str,
    candidates: set[str],
    exclude_id: UUID | None = None,
) -> bool:
    query = _active_options(db, scope).filter(
        sa.or_(
            models.SalesDropdownOption.value.in_(candidates),
            models.SalesDropdownOption.label.in_(candidates),
        )
    )
    if exclude_id is not None:
        query = query.filter(models.SalesDropdownOption.id != exclude_id)
    return query.first() is not None


def is_new_dropdown_value(db: Session, scope: str, candidate: str) -> bool:
    """True when ``candidate`` matches neither the value nor the label of an active option."""

    return not _collides(db, scope, {candidate})


def next_display_order(db: Session, scope: str) -> int:
    current = (
        db.query(sa.func.max(models.SalesDropdownOption.display_order))
        .filter(models.SalesDropdownOption.column_name == scope)
        .scalar()
    )
    return 0 if current is None else current + 1


def create_option(
    db: Session,
    scope: str,
    actor: models.User | None,
    *,
    label: str,
    value: str | None = None,
    color: str | None = None,
    skip_duplicates: bool = False,
) -> models.SalesDropdownOption | None:
    ensure_scope(db, scope)
    label = label.strip()
    value = (value or "").strip() or _option_value_from_label(label)
    if _collides(db, scope, {value, label}):
        if skip_duplicates:
            return None
        raise DuplicateOption(
            f"'{label}' already exists in {scope}", scope=scope, value=value, label=label
        )
    option = models.SalesDropdownOption(
        column_name=scope,
        value=value,
        label=label,
        color=color,
        display_order=next_display_order(db, scope),
        created_by_id=actor.id if actor is not None else None,
    )
    db.add(option)
    db.flush()
    return option


def get_option(db: Session, scope: str, option_id: UUID) -> models.SalesDropdownOption:
    option = (
        db.query(models.SalesDropdownOption)
        .filter(
            models.SalesDropdownOption.id == option_id,
            models.SalesDropdownOption.column_name == scope,
        )
        .first()
    )
    if option is None:
        raise OptionNotFound("Dropdown option not found", scope=scope, option_id=option_id)
    return option


def update_option(
    db: Session,
    scope: str,
    option_id: UUID,
    changes: dict[str, Any],
) -> models.SalesDropdownOption:
    option = get_option(db, scope, option_id)
    updates = {k: v for k, v in changes.items() if k in _OPTION_FIELDS and v is not None}
    if "label" in updates:
        updates["label"] = updates["label"].strip()
    if "value" in updates:
        updates["value"] = updates["value"].strip()
    candidates = {updates[k] for k in ("label", "value") if k in updates}
    becomes_active = updates.get("is_active", option.is_active)
    if becomes_active:
        if not option.is_active:
            candidates |= {updates.get("label", option.label), updates.get("value", option.value)}
        if candidates and _collides(db, scope, candidates, exclude_id=option.id):
            raise DuplicateOption(
                "Dropdown option collides with an existing value or label",
                scope=scope,
                option_id=option.id,
            )
    for field, value in updates.items():
        setattr(option, field, value)
    db.flush()
    return option


def find_option_usage(db: Session, scope: str, option: models.SalesDropdownOption) -> int:
    """Count active rows whose ``scope`` field stores the option's value or label."""

    references = {option.value, option.label}
    if scope in ENUMERATED_FIELDS:
        column = getattr(models.SalesRow, scope)
        return (
            db.query(sa.func.count(models.SalesRow.id))
            .filter(models.SalesRow.is_deleted.is_(False), column.in_(references))
            .scalar()
        )
    used = 0
    active_rows = db.query(models.SalesRow.custom_fields).filter(models.SalesRow.is_deleted.is_(False))
    for (custom,) in active_rows:
        stored = (custom or {}).get(scope)
        if stored is not None and str(stored).strip() in references:
            used += 1
    return used


def delete_option(
    db: Session,
    scope: str,
    option_id: UUID,
    actor: models.User,
) -> models.SalesDropdownOption:
    """Retire an option when the actor may do so and no active row references it."""

    option = get_option(db, scope, option_id)
    if not actor.is_admin and option.created_by_id != actor.id:
        raise OptionDeleteForbidden(
            "Only administrators or the option's creator can delete it",
            scope=scope,
            option_id=option.id,
        )
    usage = find_option_usage(db, scope, option)
    if usage:
        raise OptionInUse(
            f"'{option.label}' is used by {usage} row(s)",
            scope=scope,
            option_id=option.id,
            usage_count=usage,
        )
    option.is_active = False
    db.flush()
    return option
