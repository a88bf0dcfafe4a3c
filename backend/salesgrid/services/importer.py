"""Batch import of spreadsheet rows into the sales grid."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from .. import models
from ..errors import SalesError, SalesValidationError
from ..fields import DATE_FIELDS
from . import locks, rows, schema_registrar

# purpose: evolve the grid schema from an uploaded batch, then ingest its rows one by one
# inputs: list of raw row mappings, optional (name, type) column specs, acting user
# outputs: ImportResult with per-record successes and failures plus created schema entities
# status: active
# invariants: schema evolution commits before any row is written; one bad record never rolls back another

logger = logging.getLogger(__name__)

SERIAL_EPOCH = datetime(1899, 12, 30)
SERIAL_THRESHOLD = 10000

_DAY_MONTH_YEAR = re.compile(r"^(\d{1,2})[-/.](\d{1,2})[-/.](\d{4}|\d{2})$")
_NUMERIC = re.compile(r"^\d+(\.\d+)?$")
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}")


def parse_import_date(value: Any) -> Any:
    """Resolve spreadsheet date cells, leaving anything unrecognised untouched.

    Tried in order: ``dd-mm-yyyy`` (``-``, ``/`` or ``.`` separators, two
    digit years read as 20yy), spreadsheet serial numbers above 10000, then
    ISO ``YYYY-MM-DD...``.
    """

    if value is None or isinstance(value, datetime) or isinstance(value, bool):
        return value
    text = str(value).strip()
    if not text:
        return value

    match = _DAY_MONTH_YEAR.match(text)
    if match:
        day, month, year = (int(part) for part in match.groups())
        if len(match.group(3)) == 2:
            year += 2000
        if 1 <= month <= 12 and 1 <= day <= 31:
            try:
                return datetime(year, month, day)
            except ValueError:
                return value

    if _NUMERIC.match(text) and float(text) > SERIAL_THRESHOLD:
        try:
            return SERIAL_EPOCH + timedelta(days=float(text))
        except OverflowError:
            return value

    if _ISO_DATE.match(text):
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return value
        if parsed.tzinfo is not None:
            return locks.to_storage(parsed)
        return parsed
    return value


@dataclass
class ImportResult:
    succeeded: list[dict[str, Any]] = field(default_factory=list)
    failed: list[dict[str, Any]] = field(default_factory=list)
    columns_created: list[models.SalesColumn] = field(default_factory=list)
    dropdown_options_created: list[models.SalesDropdownOption] = field(default_factory=list)

    @property
    def status(self) -> str:
        if not self.succeeded and not self.failed:
            return "empty"
        if not self.failed:
            return "complete"
        if not self.succeeded:
            return "failed"
        return "partial"


def _spec_parts(spec: Any) -> tuple[str, str]:
    if isinstance(spec, Mapping):
        return spec.get("name") or "", spec.get("column_type") or spec.get("type") or "text"
    if isinstance(spec, Sequence) and not isinstance(spec, str):
        name, column_type = spec
        return name, column_type
    return spec.name, spec.column_type


def _create_columns(db: Session, column_specs: Iterable[Any], actor: models.User) -> list[models.SalesColumn]:
    created = []
    for spec in column_specs:
        name, column_type = _spec_parts(spec)
        column = schema_registrar.create_column(
            db, name, column_type, actor, skip_duplicates=True
        )
        if column is not None:
            created.append(column)
    return created


def _create_dropdown_values(
    db: Session,
    views: Sequence[Mapping[str, Any]],
    actor: models.User,
) -> list[models.SalesDropdownOption]:
    created = []
    for scope in schema_registrar.dropdown_scopes(db):
        seen: dict[str, None] = {}
        for view in views:
            raw = view.get(scope)
            if raw is None or isinstance(raw, (dict, list)):
                continue
            text = str(raw).strip()
            if text:
                seen.setdefault(text)
        for text in seen:
            if not schema_registrar.is_new_dropdown_value(db, scope, text):
                continue
            option = schema_registrar.create_option(
                db, scope, actor, label=text, value=text, skip_duplicates=True
            )
            if option is not None:
                created.append(option)
    return created


def _normalise_dates(record: Mapping[str, Any], custom_date_keys: set[str]) -> dict[str, Any]:
    fixed, custom = rows.partition_fields(record)
    for name in DATE_FIELDS & fixed.keys():
        fixed[name] = parse_import_date(fixed[name])
    for key in custom_date_keys & custom.keys():
        parsed = parse_import_date(custom[key])
        custom[key] = parsed.date().isoformat() if isinstance(parsed, datetime) else parsed
    return {**fixed, **custom}


def _failure_message(exc: Exception) -> str:
    if isinstance(exc, SalesError):
        details = exc.context.get("errors")
        if details:
            return "; ".join(f"{item['field']}: {item['message']}" for item in details)
        return exc.message
    return str(exc)


def import_rows(
    db: Session,
    records: Sequence[Any],
    actor: models.User,
    *,
    column_specs: Iterable[Any] | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> ImportResult:
    """Import ``records`` in input order, isolating each record's failure."""

    if not records:
        raise SalesValidationError("Import data array is required")

    result = ImportResult()

    result.columns_created = _create_columns(db, column_specs or [], actor)
    db.commit()

    views = []
    for record in records:
        if isinstance(record, Mapping):
            fixed, custom = rows.partition_fields(record)
            views.append({**fixed, **custom})
    result.dropdown_options_created = _create_dropdown_values(db, views, actor)
    db.commit()

    custom_date_keys = {
        key for key, column in schema_registrar.columns_by_key(db).items() if column.column_type == "date"
    }
    for index, record in enumerate(records):
        try:
            if not isinstance(record, Mapping):
                raise SalesValidationError("Import record must be an object")
            row = rows.create_row(
                db,
                _normalise_dates(record, custom_date_keys),
                actor,
                ip_address=ip_address,
                user_agent=user_agent,
                description="Imported from file",
            )
            db.commit()
        except Exception as exc:
            db.rollback()
            error = _failure_message(exc)
            if isinstance(exc, SalesError):
                logger.warning("import record %d rejected: %s", index, error)
            else:
                logger.exception("import record %d failed unexpectedly", index)
            data = dict(record) if isinstance(record, Mapping) else {"value": record}
            result.failed.append({"index": index, "data": data, "error": error})
            continue
        result.succeeded.append({"index": index, "id": row.id})

    logger.info(
        "imported %d sales row(s), %d failed, %d column(s) and %d option(s) created",
        len(result.succeeded),
        len(result.failed),
        len(result.columns_created),
        len(result.dropdown_options_created),
    )
    return result
