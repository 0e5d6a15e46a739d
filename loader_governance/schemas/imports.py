from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ImportAction(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ErrorCategory(str, Enum):
    VALIDATION = "VALIDATION"
    PROCESSING = "PROCESSING"
    SYSTEM = "SYSTEM"


class ImportRow(BaseModel):
    """One non-blank spreadsheet row keyed by canonical column header."""

    row_number: int = Field(..., ge=1)
    values: dict[str, Optional[str]] = Field(default_factory=dict)


class ImportRowOutcome(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    row_number: int
    loader_code: Optional[str] = None
    action: Optional[ImportAction] = None
    success: bool
    rerouted: bool = False
    resulting_state: Optional[str] = None
    version_id: Optional[str] = None
    approval_request_id: Optional[str] = None
    message: Optional[str] = None
    error_code: Optional[str] = None
    error_category: Optional[ErrorCategory] = None
    field: Optional[str] = None


class ImportErrorEntry(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    row_number: int
    loader_code: Optional[str] = None
    field: Optional[str] = None
    message: str
    category: ErrorCategory
    error_code: Optional[str] = None


class BatchResult(BaseModel):
    batch_label: Optional[str] = None
    dry_run: bool = False
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    outcomes: list[ImportRowOutcome] = Field(default_factory=list)
    errors: list[ImportErrorEntry] = Field(default_factory=list)
    audit_log_id: Optional[UUID] = None
    message: str = ""


class ImportAuditLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    file_name: Optional[str] = None
    file_size_bytes: Optional[int] = None
    import_label: Optional[str] = None
    imported_by: str
    imported_at: datetime
    total_rows: int
    success_count: int
    failure_count: int
    dry_run: bool
    errors: list[ImportErrorEntry] = Field(default_factory=list)


class ImportAuditLogDetail(ImportAuditLogRead):
    outcomes: list[ImportRowOutcome] = Field(default_factory=list)
