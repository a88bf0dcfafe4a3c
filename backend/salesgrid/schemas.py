import re
from datetime import date as date_type, datetime, timezone
from typing import Optional, Any, Dict, Literal, List
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from uuid import UUID

from .fields import REQUIRED_FIELDS

_URL_PATTERN = re.compile(r"^https?://.+")

ColumnType = Literal["dropdown", "date", "text", "link", "number"]


def coerce_datetime(value: Any) -> Any:
    """Normalise date-like input into a datetime.

    Only ISO strings and date objects are dates; bare numbers are rejected
    rather than read as unix timestamps.
    """

    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, date_type):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            raise ValueError("must be a valid ISO date") from None
    raise ValueError("must be a valid ISO date")


class UserOut(BaseModel):
    id: UUID
    email: str
    full_name: Optional[str] = None
    is_admin: bool = False
    model_config = ConfigDict(from_attributes=True)


class _SalesRowFields(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    date: Optional[datetime] = None
    month_name: Optional[str] = None
    bid_link: Optional[str] = None
    platform: Optional[str] = None
    profile: Optional[str] = None
    technology: Optional[str] = None
    client_rating: Optional[float] = Field(default=None, ge=0.5, le=5)
    client_hire_rate: Optional[float] = Field(default=None, ge=0, le=100)
    client_budget: Optional[str] = None
    client_spending: Optional[str] = None
    client_location: Optional[str] = None
    reply_from_client: Optional[str] = None
    follow_ups: Optional[str] = None
    follow_up_date: Optional[datetime] = None
    connects: Optional[int] = Field(default=None, ge=0)
    rate: Optional[float] = Field(default=None, ge=0)
    proposal_screenshot: Optional[str] = None
    status: Optional[str] = None
    comments: Optional[str] = None
    row_color: Optional[str] = None

    @field_validator("date", "follow_up_date", mode="before")
    @classmethod
    def _parse_dates(cls, value: Any) -> Any:
        return coerce_datetime(value)

    @field_validator("bid_link", "proposal_screenshot")
    @classmethod
    def _check_url(cls, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        if not _URL_PATTERN.match(value):
            raise ValueError("must be a valid http(s) URL")
        return value

    @field_validator("date", "follow_up_date")
    @classmethod
    def _strip_timezone(cls, value: Optional[datetime]) -> Optional[datetime]:
        # stored as naive UTC
        if value is not None and value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value


class SalesRowCreate(_SalesRowFields):
    date: datetime
    platform: str = Field(min_length=1)
    technology: str = Field(min_length=1)


class SalesRowUpdate(_SalesRowFields):
    @model_validator(mode="after")
    def _required_not_cleared(self) -> "SalesRowUpdate":
        for name in REQUIRED_FIELDS & self.model_fields_set:
            value = getattr(self, name)
            if value is None or value == "":
                raise ValueError(f"{name} is required")
        return self


class LockHolderOut(BaseModel):
    id: UUID
    name: Optional[str] = None


class SalesRowOut(BaseModel):
    """Flattened row: fixed fields plus custom field keys at the top level."""

    model_config = ConfigDict(extra="allow")

    id: UUID
    date: Optional[datetime] = None
    platform: Optional[str] = None
    technology: Optional[str] = None
    status: Optional[str] = None
    locked_by: Optional[LockHolderOut] = None
    locked_at: Optional[datetime] = None
    lock_state: Literal["unlocked", "locked", "expired"] = "unlocked"
    is_deleted: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SalesRowPage(BaseModel):
    data: List[SalesRowOut]
    total: int
    page: int
    limit: int
    pages: int


class BulkUpdateRequest(BaseModel):
    row_ids: List[UUID] = Field(min_length=1)
    updates: Dict[str, Any]


class BulkDeleteRequest(BaseModel):
    row_ids: List[UUID] = Field(min_length=1)


class BulkResult(BaseModel):
    row_ids: List[UUID]
    modified_count: int
    skipped: List[Dict[str, Any]] = []


class FieldChange(BaseModel):
    field: str
    field_label: str
    old_value: Any = None
    new_value: Any = None


class SalesRowUpdateResult(BaseModel):
    row: SalesRowOut
    changes: List[FieldChange]


class LockReleaseOut(BaseModel):
    row_id: UUID
    released: bool
    forced: bool = False
    previous_holder_id: Optional[UUID] = None


class ActivityLogOut(BaseModel):
    id: UUID
    row_id: UUID
    user_id: UUID
    action: str
    description: Optional[str] = None
    changes: List[FieldChange] = []
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    sequence: int
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class ActivityLogPage(BaseModel):
    data: List[ActivityLogOut]
    total: int
    page: int
    limit: int
    pages: int


class ActivityReportEntry(BaseModel):
    action: str
    count: int


class SalesColumnCreate(BaseModel):
    name: str = Field(min_length=1, max_length=50)
    column_type: ColumnType = "text"
    is_required: bool = False


class SalesColumnUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    column_type: Optional[ColumnType] = None
    is_visible: Optional[bool] = None
    is_required: Optional[bool] = None
    display_order: Optional[int] = None


class SalesColumnOut(BaseModel):
    id: UUID
    key: str
    name: str
    column_type: str
    display_order: int
    is_visible: bool
    is_required: bool
    has_dropdown_options: bool
    created_by_id: UUID
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class DropdownOptionCreate(BaseModel):
    label: str = Field(min_length=1, max_length=50)
    value: Optional[str] = None
    color: Optional[str] = None


class DropdownOptionUpdate(BaseModel):
    label: Optional[str] = Field(default=None, min_length=1, max_length=50)
    value: Optional[str] = None
    color: Optional[str] = None
    display_order: Optional[int] = None
    is_active: Optional[bool] = None


class DropdownOptionOut(BaseModel):
    id: UUID
    column_name: str
    value: str
    label: str
    color: Optional[str] = None
    display_order: int
    is_active: bool
    created_by_id: Optional[UUID] = None
    model_config = ConfigDict(from_attributes=True)


class ImportColumnSpec(BaseModel):
    name: str
    column_type: ColumnType = "text"


class ImportRequest(BaseModel):
    data: List[Dict[str, Any]]
    columns: List[ImportColumnSpec] = []


class ImportSuccess(BaseModel):
    index: int
    id: UUID


class ImportFailure(BaseModel):
    index: int
    data: Dict[str, Any]
    error: str


class ImportResultOut(BaseModel):
    status: Literal["complete", "partial", "failed", "empty"]
    succeeded: List[ImportSuccess]
    failed: List[ImportFailure]
    columns_created: List[SalesColumnOut]
    dropdown_options_created: List[DropdownOptionOut]
