"""Static field tables for the Sales grid."""

from __future__ import annotations

from types import MappingProxyType

# purpose: single source of truth for fixed sales row fields, labels and value kinds
# status: active

FIELD_LABELS = MappingProxyType(
    {
        "date": "Date",
        "month_name": "Month",
        "bid_link": "Bid Link",
        "platform": "Platform",
        "profile": "Profile",
        "technology": "Technology",
        "client_rating": "Client Rating",
        "client_hire_rate": "Client % Hire Rate",
        "client_budget": "Client Budget",
        "client_spending": "Client Spending",
        "client_location": "Client Location",
        "reply_from_client": "Reply From Client",
        "follow_ups": "Follow Ups",
        "follow_up_date": "Follow Up Date",
        "connects": "Connects",
        "rate": "Rate",
        "proposal_screenshot": "Proposal Screenshot",
        "status": "Status",
        "comments": "Comments",
        "row_color": "Row Color",
    }
)

# declaration order drives change list ordering
FIXED_FIELDS: tuple[str, ...] = tuple(FIELD_LABELS)
TRACKED_FIELDS: tuple[str, ...] = FIXED_FIELDS

DATE_FIELDS = frozenset({"date", "follow_up_date"})
NUMERIC_FIELDS = frozenset({"client_rating", "client_hire_rate", "connects", "rate"})
URL_FIELDS = frozenset({"bid_link", "proposal_screenshot"})
REQUIRED_FIELDS = frozenset({"date", "platform", "technology"})

# fixed fields that carry a managed dropdown option list
ENUMERATED_FIELDS: tuple[str, ...] = (
    "platform",
    "technology",
    "status",
    "client_location",
    "client_budget",
    "profile",
    "reply_from_client",
    "follow_ups",
)

# bookkeeping attributes a client may echo back but never writes
SYSTEM_FIELDS = frozenset(
    {
        "id",
        "_id",
        "__v",
        "custom_fields",
        "created_at",
        "updated_at",
        "created_by",
        "created_by_id",
        "updated_by",
        "updated_by_id",
        "locked_by",
        "locked_by_id",
        "locked_at",
        "lock_state",
        "is_deleted",
        "deleted_at",
        "deleted_by_id",
    }
)

RESERVED_KEYS = frozenset(FIXED_FIELDS) | SYSTEM_FIELDS

COLUMN_TYPES: tuple[str, ...] = ("dropdown", "date", "text", "link", "number")

MONTH_NAMES: tuple[str, ...] = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)

SORTABLE_FIELDS = frozenset(FIXED_FIELDS) | {"created_at", "updated_at"}
SEARCH_FIELDS: tuple[str, ...] = ("bid_link", "comments", "platform", "profile", "technology")
