from datetime import datetime
from math import ceil
from typing import Any, Dict, List, NoReturn, Optional
from uuid import UUID

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from ..database import get_db
from ..auth import actor_metadata, get_current_user
from .. import audit, fanout, models, schemas
from ..errors import (
    RowLockConflict,
    SalesAuthorizationError,
    SalesConflictError,
    SalesError,
    SalesNotFoundError,
    SalesValidationError,
)
from ..services import importer, locks, rows, schema_registrar

router = APIRouter(prefix="/api/sales", tags=["sales"])

# most specific first
_ERROR_STATUS = (
    (RowLockConflict, 423),
    (SalesValidationError, 422),
    (SalesConflictError, 409),
    (SalesNotFoundError, 404),
    (SalesAuthorizationError, 403),
)


def _raise_http(db: Session, exc: SalesError) -> NoReturn:
    db.rollback()
    status_code = next((code for cls, code in _ERROR_STATUS if isinstance(exc, cls)), 400)
    raise HTTPException(status_code=status_code, detail=exc.to_detail()) from exc


def _column_payload(column: models.SalesColumn) -> dict:
    return schemas.SalesColumnOut.model_validate(column).model_dump(mode="json")


def _option_payload(option: models.SalesDropdownOption) -> dict:
    return schemas.DropdownOptionOut.model_validate(option).model_dump(mode="json")


# --- rows --------------------------------------------------------------------


@router.get("/rows", response_model=schemas.SalesRowPage)
async def list_rows(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    search: Optional[str] = None,
    platform: Optional[str] = None,
    technology: Optional[str] = None,
    status: Optional[str] = None,
    client_location: Optional[str] = None,
    client_budget: Optional[str] = None,
    min_rating: Optional[float] = None,
    min_hire_rate: Optional[float] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    sort_by: str = "date",
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    found, total = rows.list_rows(
        db,
        {
            "platform": platform,
            "technology": technology,
            "status": status,
            "client_location": client_location,
            "client_budget": client_budget,
        },
        page=page,
        limit=limit,
        search=search,
        min_rating=min_rating,
        min_hire_rate=min_hire_rate,
        start_date=start_date,
        end_date=end_date,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return {
        "data": [rows.serialize_row(row) for row in found],
        "total": total,
        "page": page,
        "limit": limit,
        "pages": ceil(total / limit) if total else 0,
    }


@router.get("/rows/{row_id}", response_model=schemas.SalesRowOut)
async def get_row(
    row_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        row = rows.get_row(db, row_id)
    except SalesError as exc:
        _raise_http(db, exc)
    return rows.serialize_row(row)


@router.post("/rows", response_model=schemas.SalesRowOut)
async def create_row(
    request: Request,
    payload: Dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        row = rows.create_row(db, payload, user, **actor_metadata(request))
    except SalesError as exc:
        _raise_http(db, exc)
    data = rows.serialize_row(row)
    fanout.queue_event(db, fanout.ROW_CREATED, {"row": data})
    await fanout.commit_and_broadcast(db)
    return data


@router.put("/rows/{row_id}", response_model=schemas.SalesRowUpdateResult)
async def update_row(
    row_id: UUID,
    request: Request,
    payload: Dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        row, changes = rows.update_row(db, row_id, payload, user, **actor_metadata(request))
    except SalesError as exc:
        _raise_http(db, exc)
    data = rows.serialize_row(row)
    fanout.queue_event(db, fanout.ROW_UPDATED, {"row": data, "changes": changes})
    await fanout.commit_and_broadcast(db)
    return {"row": data, "changes": changes}


@router.delete("/rows/{row_id}", response_model=schemas.SalesRowOut)
async def delete_row(
    row_id: UUID,
    request: Request,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        row = rows.delete_row(db, row_id, user, **actor_metadata(request))
    except SalesError as exc:
        _raise_http(db, exc)
    fanout.queue_event(db, fanout.ROW_DELETED, {"row_id": str(row.id)})
    await fanout.commit_and_broadcast(db)
    return rows.serialize_row(row)


@router.post("/rows/{row_id}/restore", response_model=schemas.SalesRowOut)
async def restore_row(
    row_id: UUID,
    request: Request,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        row = rows.restore_row(db, row_id, user, **actor_metadata(request))
    except SalesError as exc:
        _raise_http(db, exc)
    data = rows.serialize_row(row)
    fanout.queue_event(db, fanout.ROW_RESTORED, {"row": data})
    await fanout.commit_and_broadcast(db)
    return data


@router.delete("/rows/{row_id}/purge")
async def purge_row(
    row_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Only administrators can purge rows")
    try:
        rows.purge_row(db, row_id)
    except SalesError as exc:
        _raise_http(db, exc)
    fanout.queue_event(db, fanout.ROW_DELETED, {"row_id": str(row_id), "purged": True})
    await fanout.commit_and_broadcast(db)
    return {"row_id": str(row_id), "purged": True}


@router.post("/rows/bulk-update", response_model=schemas.BulkResult)
async def bulk_update(
    payload: schemas.BulkUpdateRequest,
    request: Request,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        outcome = rows.bulk_update_rows(
            db, payload.row_ids, payload.updates, user, **actor_metadata(request)
        )
    except SalesError as exc:
        _raise_http(db, exc)
    if outcome.row_ids:
        fanout.queue_event(
            db,
            fanout.ROWS_BULK_UPDATED,
            {"row_ids": [str(i) for i in outcome.row_ids], "updates": payload.updates},
        )
    await fanout.commit_and_broadcast(db)
    return outcome


@router.post("/rows/bulk-delete", response_model=schemas.BulkResult)
async def bulk_delete(
    payload: schemas.BulkDeleteRequest,
    request: Request,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    outcome = rows.bulk_delete_rows(db, payload.row_ids, user, **actor_metadata(request))
    if outcome.row_ids:
        fanout.queue_event(
            db, fanout.ROWS_BULK_DELETED, {"row_ids": [str(i) for i in outcome.row_ids]}
        )
    await fanout.commit_and_broadcast(db)
    return outcome


@router.post("/rows/{row_id}/lock", response_model=schemas.SalesRowOut)
async def lock_row(
    row_id: UUID,
    request: Request,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        row = locks.acquire_lock(db, row_id, user, **actor_metadata(request))
    except SalesError as exc:
        _raise_http(db, exc)
    fanout.queue_event(
        db,
        fanout.ROW_LOCKED,
        {"row_id": str(row.id), "locked_by": {"id": str(user.id), "name": locks.holder_name(user)}},
    )
    await fanout.commit_and_broadcast(db)
    return rows.serialize_row(row)


@router.post("/rows/{row_id}/unlock", response_model=schemas.LockReleaseOut)
async def unlock_row(
    row_id: UUID,
    request: Request,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        release = locks.release_lock(db, row_id, user, **actor_metadata(request))
    except SalesError as exc:
        _raise_http(db, exc)
    if release.released:
        fanout.queue_event(
            db,
            fanout.ROW_UNLOCKED,
            {"row_id": str(release.row_id), "locked_by": None, "forced": release.forced},
        )
    await fanout.commit_and_broadcast(db)
    return release


@router.get("/rows/{row_id}/activity", response_model=schemas.ActivityLogPage)
async def row_activity(
    row_id: UUID,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    entries, total = audit.list_activity(db, row_id, page, limit)
    return {
        "data": entries,
        "total": total,
        "page": page,
        "limit": limit,
        "pages": ceil(total / limit) if total else 0,
    }


@router.get("/activity/report", response_model=List[schemas.ActivityReportEntry])
async def activity_report(
    start: datetime,
    end: datetime,
    user_id: Optional[UUID] = None,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    if not user.is_admin:
        user_id = user.id
    return audit.generate_report(db, locks.to_storage(start), locks.to_storage(end), user_id)


@router.post("/rows/import", response_model=schemas.ImportResultOut)
async def import_rows(
    payload: schemas.ImportRequest,
    request: Request,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        result = importer.import_rows(
            db,
            payload.data,
            user,
            column_specs=payload.columns,
            **actor_metadata(request),
        )
    except SalesError as exc:
        _raise_http(db, exc)
    if result.succeeded or result.columns_created or result.dropdown_options_created:
        fanout.queue_event(
            db,
            fanout.ROWS_IMPORTED,
            {
                "count": len(result.succeeded),
                "columns_created": [c.key for c in result.columns_created],
                "dropdown_options_created": len(result.dropdown_options_created),
            },
        )
    await fanout.commit_and_broadcast(db)
    return {
        "status": result.status,
        "succeeded": result.succeeded,
        "failed": result.failed,
        "columns_created": result.columns_created,
        "dropdown_options_created": result.dropdown_options_created,
    }


# --- dropdown options ---------------------------------------------------------


@router.get("/dropdowns", response_model=Dict[str, List[schemas.DropdownOptionOut]])
async def list_dropdowns(
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return {
        scope: schema_registrar.list_options(db, scope)
        for scope in schema_registrar.dropdown_scopes(db)
    }


@router.get("/dropdowns/{scope}", response_model=List[schemas.DropdownOptionOut])
async def list_dropdown_options(
    scope: str,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        schema_registrar.ensure_scope(db, scope)
    except SalesError as exc:
        _raise_http(db, exc)
    return schema_registrar.list_options(db, scope)


@router.post("/dropdowns/{scope}", response_model=schemas.DropdownOptionOut)
async def create_dropdown_option(
    scope: str,
    payload: schemas.DropdownOptionCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        option = schema_registrar.create_option(
            db, scope, user, label=payload.label, value=payload.value, color=payload.color
        )
    except SalesError as exc:
        _raise_http(db, exc)
    fanout.queue_event(
        db, fanout.DROPDOWN_UPDATED, {"scope": scope, "action": "created", "option": _option_payload(option)}
    )
    await fanout.commit_and_broadcast(db)
    return option


@router.put("/dropdowns/{scope}/{option_id}", response_model=schemas.DropdownOptionOut)
async def update_dropdown_option(
    scope: str,
    option_id: UUID,
    payload: schemas.DropdownOptionUpdate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        option = schema_registrar.update_option(
            db, scope, option_id, payload.model_dump(exclude_unset=True)
        )
    except SalesError as exc:
        _raise_http(db, exc)
    fanout.queue_event(
        db, fanout.DROPDOWN_UPDATED, {"scope": scope, "action": "updated", "option": _option_payload(option)}
    )
    await fanout.commit_and_broadcast(db)
    return option


@router.delete("/dropdowns/{scope}/{option_id}")
async def delete_dropdown_option(
    scope: str,
    option_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        option = schema_registrar.delete_option(db, scope, option_id, user)
    except SalesError as exc:
        _raise_http(db, exc)
    fanout.queue_event(
        db, fanout.DROPDOWN_UPDATED, {"scope": scope, "action": "deleted", "option_id": str(option.id)}
    )
    await fanout.commit_and_broadcast(db)
    return {"id": str(option.id), "deleted": True}


# --- columns -----------------------------------------------------------------


@router.get("/columns", response_model=List[schemas.SalesColumnOut])
async def list_columns(
    include_hidden: bool = False,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return schema_registrar.list_columns(db, visible_only=not include_hidden)


@router.post("/columns", response_model=schemas.SalesColumnOut)
async def create_column(
    payload: schemas.SalesColumnCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        column = schema_registrar.create_column(
            db, payload.name, payload.column_type, user, is_required=payload.is_required
        )
    except SalesError as exc:
        _raise_http(db, exc)
    fanout.queue_event(db, fanout.COLUMN_CREATED, {"column": _column_payload(column)})
    await fanout.commit_and_broadcast(db)
    return column


@router.put("/columns/{column_id}", response_model=schemas.SalesColumnOut)
async def update_column(
    column_id: UUID,
    payload: schemas.SalesColumnUpdate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        column = schema_registrar.update_column(
            db, column_id, payload.model_dump(exclude_unset=True)
        )
    except SalesError as exc:
        _raise_http(db, exc)
    fanout.queue_event(db, fanout.COLUMN_UPDATED, {"column": _column_payload(column)})
    await fanout.commit_and_broadcast(db)
    return column


@router.delete("/columns/{column_id}")
async def delete_column(
    column_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        column = schema_registrar.delete_column(db, column_id)
    except SalesError as exc:
        _raise_http(db, exc)
    removed = {"column_id": str(column.id), "key": column.key}
    fanout.queue_event(db, fanout.COLUMN_DELETED, removed)
    await fanout.commit_and_broadcast(db)
    return {**removed, "deleted": True}
