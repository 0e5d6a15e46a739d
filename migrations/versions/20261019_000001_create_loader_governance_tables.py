"""create loader governance tables

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "20261019_000001"
down_revision = None
branch_labels = None
depends_on = None

loader_lifecycle_state_enum = postgresql.ENUM(
    "DRAFT",
    "PENDING",
    "ACTIVE",
    "ARCHIVED",
    name="loader_lifecycle_state_enum",
    create_type=False,
)
loader_purge_strategy_enum = postgresql.ENUM(
    "FAIL_ON_DUPLICATE",
    "PURGE_AND_RELOAD",
    "SKIP_DUPLICATES",
    name="loader_purge_strategy_enum",
    create_type=False,
)
loader_change_type_enum = postgresql.ENUM(
    "IMPORT_CREATE",
    "IMPORT_UPDATE",
    "MANUAL_EDIT",
    "ROLLBACK",
    name="loader_change_type_enum",
    create_type=False,
)
approval_request_type_enum = postgresql.ENUM(
    "CREATE",
    "UPDATE",
    "DELETE",
    name="approval_request_type_enum",
    create_type=False,
)
approval_source_enum = postgresql.ENUM(
    "WEB_UI",
    "IMPORT",
    "API",
    "MANUAL",
    name="approval_source_enum",
    create_type=False,
)
approval_status_enum = postgresql.ENUM(
    "PENDING",
    "APPROVED",
    "REJECTED",
    "REVOKED",
    name="approval_status_enum",
    create_type=False,
)
approval_action_type_enum = postgresql.ENUM(
    "SUBMIT",
    "APPROVE",
    "REJECT",
    "RESUBMIT",
    "REVOKE",
    name="approval_action_type_enum",
    create_type=False,
)

_ENUMS = (
    loader_lifecycle_state_enum,
    loader_purge_strategy_enum,
    loader_change_type_enum,
    approval_request_type_enum,
    approval_source_enum,
    approval_status_enum,
    approval_action_type_enum,
)


def upgrade() -> None:
    bind = op.get_bind()
    for enum in _ENUMS:
        enum.create(bind, checkfirst=True)

    op.create_table(
        "loader_configurations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("loader_code", sa.String(length=64), nullable=False),
        sa.Column("version_number", sa.Integer(), nullable=False),
        sa.Column("lifecycle_state", loader_lifecycle_state_enum, nullable=False, server_default="DRAFT"),
        sa.Column("loader_sql", sa.Text(), nullable=False),
        sa.Column("min_interval_seconds", sa.Integer(), nullable=False),
        sa.Column("max_interval_seconds", sa.Integer(), nullable=False),
        sa.Column("max_query_period_seconds", sa.Integer(), nullable=False),
        sa.Column("max_parallel_executions", sa.Integer(), nullable=False),
        sa.Column(
            "purge_strategy",
            loader_purge_strategy_enum,
            nullable=False,
            server_default="FAIL_ON_DUPLICATE",
        ),
        sa.Column("source_timezone_offset_hours", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("aggregation_period_seconds", sa.Integer(), nullable=True),
        sa.Column("source_database_code", sa.String(length=64), nullable=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("change_type", loader_change_type_enum, nullable=False, server_default="MANUAL_EDIT"),
        sa.Column("change_summary", sa.Text(), nullable=True),
        sa.Column("import_label", sa.String(length=200), nullable=True),
        sa.Column("supersedes_version_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("restored_from_version_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("created_by", sa.String(length=100), nullable=False),
        sa.Column("modified_by", sa.String(length=100), nullable=True),
        sa.Column("approved_by", sa.String(length=100), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("archived_by", sa.String(length=100), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("row_version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(
            ["supersedes_version_id"], ["loader_configurations.id"], ondelete="SET NULL"
        ),
        sa.ForeignKeyConstraint(
            ["restored_from_version_id"], ["loader_configurations.id"], ondelete="SET NULL"
        ),
        sa.UniqueConstraint("loader_code", "version_number", name="uq_loader_code_version"),
        sa.CheckConstraint("version_number > 0", name="ck_loader_version_positive"),
        sa.CheckConstraint(
            "max_interval_seconds >= min_interval_seconds", name="ck_loader_interval_order"
        ),
    )
    op.create_index(
        "ix_loader_configurations_loader_code", "loader_configurations", ["loader_code"]
    )
    op.create_index(
        "uq_loader_one_active",
        "loader_configurations",
        ["loader_code"],
        unique=True,
        postgresql_where=sa.text("lifecycle_state = 'ACTIVE'"),
    )
    op.create_index(
        "uq_loader_one_working_copy",
        "loader_configurations",
        ["loader_code"],
        unique=True,
        postgresql_where=sa.text("lifecycle_state IN ('DRAFT', 'PENDING')"),
    )

    op.create_table(
        "approval_requests",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("entity_type", sa.String(length=50), nullable=False),
        sa.Column("entity_id", sa.String(length=100), nullable=False),
        sa.Column("request_type", approval_request_type_enum, nullable=False, server_default="UPDATE"),
        sa.Column("source", approval_source_enum, nullable=False, server_default="WEB_UI"),
        sa.Column("import_label", sa.String(length=200), nullable=True),
        sa.Column("change_summary", sa.Text(), nullable=True),
        sa.Column("requested_by", sa.String(length=100), nullable=False),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("approver_role", sa.String(length=50), nullable=False),
        sa.Column("status", approval_status_enum, nullable=False, server_default="PENDING"),
        sa.Column("decided_by", sa.String(length=100), nullable=True),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("row_version", sa.Integer(), nullable=False),
    )
    op.create_index("ix_approval_entity", "approval_requests", ["entity_type", "entity_id"])
    op.create_index(
        "uq_approval_one_pending",
        "approval_requests",
        ["entity_type", "entity_id"],
        unique=True,
        postgresql_where=sa.text("status = 'PENDING'"),
    )

    op.create_table(
        "approval_actions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("approval_request_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("action_type", approval_action_type_enum, nullable=False),
        sa.Column("action_by", sa.String(length=100), nullable=False),
        sa.Column("action_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("justification", sa.Text(), nullable=True),
        sa.Column("previous_status", sa.String(length=20), nullable=True),
        sa.Column("new_status", sa.String(length=20), nullable=False),
        sa.ForeignKeyConstraint(["approval_request_id"], ["approval_requests.id"], ondelete="CASCADE"),
    )
    op.create_index(
        "ix_approval_actions_approval_request_id", "approval_actions", ["approval_request_id"]
    )

    op.create_table(
        "import_audit_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("file_name", sa.String(length=255), nullable=True),
        sa.Column("file_size_bytes", sa.Integer(), nullable=True),
        sa.Column("import_label", sa.String(length=200), nullable=True),
        sa.Column("imported_by", sa.String(length=100), nullable=False),
        sa.Column("imported_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("total_rows", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("success_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failure_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("errors", sa.JSON(), nullable=False),
        sa.Column("outcomes", sa.JSON(), nullable=False),
        sa.Column("dry_run", sa.Boolean(), nullable=False, server_default=sa.text("false")),
    )
    op.create_index("ix_import_audit_logs_import_label", "import_audit_logs", ["import_label"])
    op.create_index("ix_import_audit_logs_imported_by", "import_audit_logs", ["imported_by"])
    op.create_index("ix_import_audit_logs_imported_at", "import_audit_logs", ["imported_at"])


def downgrade() -> None:
    op.drop_index("ix_import_audit_logs_imported_at", table_name="import_audit_logs")
    op.drop_index("ix_import_audit_logs_imported_by", table_name="import_audit_logs")
    op.drop_index("ix_import_audit_logs_import_label", table_name="import_audit_logs")
    op.drop_table("import_audit_logs")

    op.drop_index("ix_approval_actions_approval_request_id", table_name="approval_actions")
    op.drop_table("approval_actions")

    op.drop_index("uq_approval_one_pending", table_name="approval_requests")
    op.drop_index("ix_approval_entity", table_name="approval_requests")
    op.drop_table("approval_requests")

    op.drop_index("uq_loader_one_working_copy", table_name="loader_configurations")
    op.drop_index("uq_loader_one_active", table_name="loader_configurations")
    op.drop_index("ix_loader_configurations_loader_code", table_name="loader_configurations")
    op.drop_table("loader_configurations")

    bind = op.get_bind()
    for enum in reversed(_ENUMS):
        enum.drop(bind, checkfirst=True)
