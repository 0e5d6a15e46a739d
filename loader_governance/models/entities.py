import uuid
from datetime import datetime, timezone
from typing import Optional

import sqlalchemy as sa
from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from loader_governance.database import Base
from loader_governance.services.field_protection import EncryptedText


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


LIFECYCLE_STATES = ("DRAFT", "PENDING", "ACTIVE", "ARCHIVED")
WORKING_COPY_STATES = ("DRAFT", "PENDING")
PURGE_STRATEGIES = ("FAIL_ON_DUPLICATE", "PURGE_AND_RELOAD", "SKIP_DUPLICATES")
CHANGE_TYPES = ("IMPORT_CREATE", "IMPORT_UPDATE", "MANUAL_EDIT", "ROLLBACK")
APPROVAL_STATUSES = ("PENDING", "APPROVED", "REJECTED", "REVOKED")
APPROVAL_REQUEST_TYPES = ("CREATE", "UPDATE", "DELETE")
APPROVAL_SOURCES = ("WEB_UI", "IMPORT", "API", "MANUAL")
APPROVAL_ACTION_TYPES = ("SUBMIT", "APPROVE", "REJECT", "RESUBMIT", "REVOKE")


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )


class LoaderConfiguration(Base, TimestampMixin):
    __tablename__ = "loader_configurations"
    __table_args__ = (
        sa.UniqueConstraint("loader_code", "version_number", name="uq_loader_code_version"),
        sa.Index(
            "uq_loader_one_active",
            "loader_code",
            unique=True,
            sqlite_where=sa.text("lifecycle_state = 'ACTIVE'"),
            postgresql_where=sa.text("lifecycle_state = 'ACTIVE'"),
        ),
        sa.Index(
            "uq_loader_one_working_copy",
            "loader_code",
            unique=True,
            sqlite_where=sa.text("lifecycle_state IN ('DRAFT', 'PENDING')"),
            postgresql_where=sa.text("lifecycle_state IN ('DRAFT', 'PENDING')"),
        ),
        sa.CheckConstraint("version_number > 0", name="ck_loader_version_positive"),
        sa.CheckConstraint(
            "max_interval_seconds >= min_interval_seconds",
            name="ck_loader_interval_order",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    loader_code: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    version_number: Mapped[int] = mapped_column(Integer, nullable=False)
    lifecycle_state: Mapped[str] = mapped_column(
        sa.Enum(*LIFECYCLE_STATES, name="loader_lifecycle_state_enum"),
        nullable=False,
        default="DRAFT",
    )

    loader_sql: Mapped[str] = mapped_column(EncryptedText("loader_sql"), nullable=False)
    min_interval_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    max_interval_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    max_query_period_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    max_parallel_executions: Mapped[int] = mapped_column(Integer, nullable=False)
    purge_strategy: Mapped[str] = mapped_column(
        sa.Enum(*PURGE_STRATEGIES, name="loader_purge_strategy_enum"),
        nullable=False,
        default="FAIL_ON_DUPLICATE",
    )
    source_timezone_offset_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    aggregation_period_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    source_database_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    change_type: Mapped[str] = mapped_column(
        sa.Enum(*CHANGE_TYPES, name="loader_change_type_enum"),
        nullable=False,
        default="MANUAL_EDIT",
    )
    change_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    import_label: Mapped[str | None] = mapped_column(String(200), nullable=True)

    supersedes_version_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("loader_configurations.id", ondelete="SET NULL"),
        nullable=True,
    )
    restored_from_version_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("loader_configurations.id", ondelete="SET NULL"),
        nullable=True,
    )

    created_by: Mapped[str] = mapped_column(String(100), nullable=False)
    modified_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    approved_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    archived_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    row_version: Mapped[int] = mapped_column(Integer, nullable=False)

    supersedes: Mapped[Optional["LoaderConfiguration"]] = relationship(
        "LoaderConfiguration",
        remote_side="LoaderConfiguration.id",
        foreign_keys=[supersedes_version_id],
    )

    __mapper_args__ = {"version_id_col": row_version}

    def __repr__(self) -> str:
        return (
            f"<LoaderConfiguration {self.loader_code} v{self.version_number}"
            f" {self.lifecycle_state}>"
        )


class ApprovalRequest(Base):
    __tablename__ = "approval_requests"
    __table_args__ = (
        sa.Index(
            "uq_approval_one_pending",
            "entity_type",
            "entity_id",
            unique=True,
            sqlite_where=sa.text("status = 'PENDING'"),
            postgresql_where=sa.text("status = 'PENDING'"),
        ),
        sa.Index("ix_approval_entity", "entity_type", "entity_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(100), nullable=False)
    request_type: Mapped[str] = mapped_column(
        sa.Enum(*APPROVAL_REQUEST_TYPES, name="approval_request_type_enum"),
        nullable=False,
        default="UPDATE",
    )
    source: Mapped[str] = mapped_column(
        sa.Enum(*APPROVAL_SOURCES, name="approval_source_enum"),
        nullable=False,
        default="WEB_UI",
    )
    import_label: Mapped[str | None] = mapped_column(String(200), nullable=True)
    change_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    requested_by: Mapped[str] = mapped_column(String(100), nullable=False)
    requested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    approver_role: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(
        sa.Enum(*APPROVAL_STATUSES, name="approval_status_enum"),
        nullable=False,
        default="PENDING",
    )
    decided_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    row_version: Mapped[int] = mapped_column(Integer, nullable=False)

    actions: Mapped[list["ApprovalAction"]] = relationship(
        "ApprovalAction",
        back_populates="approval_request",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ApprovalAction.action_at",
    )

    __mapper_args__ = {"version_id_col": row_version}


class ApprovalAction(Base):
    __tablename__ = "approval_actions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    approval_request_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("approval_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    action_type: Mapped[str] = mapped_column(
        sa.Enum(*APPROVAL_ACTION_TYPES, name="approval_action_type_enum"),
        nullable=False,
    )
    action_by: Mapped[str] = mapped_column(String(100), nullable=False)
    action_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    justification: Mapped[str | None] = mapped_column(Text, nullable=True)
    previous_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    new_status: Mapped[str] = mapped_column(String(20), nullable=False)

    approval_request: Mapped[ApprovalRequest] = relationship(
        "ApprovalRequest", back_populates="actions"
    )


class ImportAuditLog(Base):
    __tablename__ = "import_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    file_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    file_size_bytes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    import_label: Mapped[str | None] = mapped_column(String(200), nullable=True, index=True)
    imported_by: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    imported_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, index=True
    )
    total_rows: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    errors: Mapped[list[dict]] = mapped_column(JSON, nullable=False, default=list)
    outcomes: Mapped[list[dict]] = mapped_column(JSON, nullable=False, default=list)
    dry_run: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
