"""Typed errors raised by the sales core services."""

from __future__ import annotations

from typing import Any
from uuid import UUID

# purpose: carry structured, actionable failure information from services to the HTTP layer
# status: active


class SalesError(RuntimeError):
    """Base error for sales grid operations."""

    kind = "error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_detail(self) -> dict[str, Any]:
        detail: dict[str, Any] = {"error": self.kind, "message": self.message}
        for key, value in self.context.items():
            detail[key] = str(value) if isinstance(value, UUID) else value
        return detail


class SalesValidationError(SalesError):
    """Raised when a field value is malformed."""

    kind = "validation_error"


class SalesConflictError(SalesError):
    """Raised when an operation collides with current state."""

    kind = "conflict"


class SalesNotFoundError(SalesError):
    """Raised when a referenced entity does not exist."""

    kind = "not_found"


class SalesAuthorizationError(SalesError):
    """Raised when the actor lacks rights for the operation."""

    kind = "forbidden"


class RowLockConflict(SalesConflictError):
    """Raised when a row is locked by a different, non-expired holder."""

    kind = "row_locked"

    def __init__(self, row_id: UUID, holder_id: UUID, holder_name: str | None) -> None:
        who = holder_name or "another user"
        super().__init__(
            f"Row is currently being edited by {who}",
            row_id=row_id,
            locked_by={"id": str(holder_id), "name": holder_name},
        )
        self.row_id = row_id
        self.holder_id = holder_id
        self.holder_name = holder_name


class OptionInUse(SalesConflictError):
    """Raised when a dropdown option is still referenced by active rows."""

    kind = "option_in_use"


class DuplicateColumn(SalesConflictError):
    """Raised when a column key is empty, reserved, or already taken."""

    kind = "duplicate_column"


class DuplicateOption(SalesConflictError):
    """Raised when a dropdown value collides with an active option."""

    kind = "duplicate_option"


class RowNotFound(SalesNotFoundError):
    """Raised when a row is missing or already deleted."""


class ColumnNotFound(SalesNotFoundError):
    """Raised when a custom column cannot be located."""


class OptionNotFound(SalesNotFoundError):
    """Raised when a dropdown option cannot be located."""


class DropdownScopeNotFound(SalesNotFoundError):
    """Raised when a dropdown scope is neither an enumerated field nor a dropdown column."""


class LockNotHeld(SalesAuthorizationError):
    """Raised when releasing a live lock held by someone else."""


class OptionDeleteForbidden(SalesAuthorizationError):
    """Raised when a non-admin deletes an option they did not create."""
