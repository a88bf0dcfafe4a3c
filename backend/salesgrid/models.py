import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    String,
    Boolean,
    DateTime,
    ForeignKey,
    JSON,
    Integer,
    Text,
    Float,
    Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from .database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String, unique=True, nullable=False)
    full_name = Column(String)
    is_admin = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=_utcnow)


class SalesRow(Base):
    __tablename__ = "sales_rows"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    # fixed business fields
    date = Column(DateTime, nullable=False, index=True)
    month_name = Column(String)
    bid_link = Column(String)
    platform = Column(String, nullable=False, index=True)
    profile = Column(String)
    technology = Column(String, nullable=False, index=True)
    client_rating = Column(Float)
    client_hire_rate = Column(Float)
    client_budget = Column(String)
    client_spending = Column(String)
    client_location = Column(String)
    reply_from_client = Column(String)
    follow_ups = Column(String)
    follow_up_date = Column(DateTime)
    connects = Column(Integer)
    rate = Column(Float)
    proposal_screenshot = Column(String)
    status = Column(String, index=True)
    comments = Column(Text)
    row_color = Column(String, default="#FFFFFF")

    custom_fields = Column(JSON, default=dict, nullable=False)

    locked_by_id = Column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    locked_at = Column(DateTime, nullable=True)

    is_deleted = Column(Boolean, default=False, nullable=False, index=True)
    deleted_at = Column(DateTime, nullable=True)
    deleted_by_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)

    created_by_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    updated_by_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    locked_by = relationship("User", foreign_keys=[locked_by_id], lazy="joined")
    created_by = relationship("User", foreign_keys=[created_by_id])
    updated_by = relationship("User", foreign_keys=[updated_by_id])

    __table_args__ = (
        Index("ix_sales_rows_deleted_date", "is_deleted", "date"),
        Index("ix_sales_rows_platform_status", "is_deleted", "platform", "status"),
    )


class SalesColumn(Base):
    __tablename__ = "sales_columns"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    key = Column(String, unique=True, nullable=False)
    name = Column(String(50), nullable=False)
    column_type = Column(String, nullable=False, default="text")
    display_order = Column(Integer, default=0, nullable=False, index=True)
    is_visible = Column(Boolean, default=True, nullable=False)
    is_required = Column(Boolean, default=False, nullable=False)
    created_by_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    @property
    def has_dropdown_options(self) -> bool:
        return self.column_type == "dropdown"


class SalesDropdownOption(Base):
    __tablename__ = "sales_dropdown_options"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    column_name = Column(String, nullable=False, index=True)
    value = Column(String, nullable=False)
    label = Column(String, nullable=False)
    color = Column(String, nullable=True)
    display_order = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_by_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_sales_dropdown_options_scope_active", "column_name", "is_active"),
    )


class SalesActivityLog(Base):
    __tablename__ = "sales_activity_logs"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    # no foreign key: entries outlive purged rows
    row_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    action = Column(String, nullable=False, index=True)
    description = Column(Text)
    changes = Column(JSON, default=list, nullable=False)
    ip_address = Column(String)
    user_agent = Column(String)
    sequence = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    user = relationship("User")

    __table_args__ = (
        Index("ix_sales_activity_logs_row_sequence", "row_id", "sequence", unique=True),
    )
