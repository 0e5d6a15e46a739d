from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

LOADER_CODE_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.\-]{0,63}$"


class LifecycleState(str, Enum):
    DRAFT = "DRAFT"
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"


class PurgeStrategy(str, Enum):
    FAIL_ON_DUPLICATE = "FAIL_ON_DUPLICATE"
    PURGE_AND_RELOAD = "PURGE_AND_RELOAD"
    SKIP_DUPLICATES = "SKIP_DUPLICATES"


class ChangeType(str, Enum):
    IMPORT_CREATE = "IMPORT_CREATE"
    IMPORT_UPDATE = "IMPORT_UPDATE"
    MANUAL_EDIT = "MANUAL_EDIT"
    ROLLBACK = "ROLLBACK"


class EntityType(str, Enum):
    LOADER = "LOADER"
    DASHBOARD = "DASHBOARD"
    INCIDENT = "INCIDENT"
    CHART = "CHART"
    ALERT_RULE = "ALERT_RULE"


class ApprovalStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    REVOKED = "REVOKED"


class ApprovalRequestType(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ApprovalSource(str, Enum):
    WEB_UI = "WEB_UI"
    IMPORT = "IMPORT"
    API = "API"
    MANUAL = "MANUAL"


class ApprovalActionType(str, Enum):
    SUBMIT = "SUBMIT"
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    RESUBMIT = "RESUBMIT"
    REVOKE = "REVOKE"


class LoaderPayload(BaseModel):
    """Complete configuration of one loader version."""

    model_config = ConfigDict(use_enum_values=True)

    loader_sql: str = Field(..., min_length=1)
    min_interval_seconds: int = Field(..., gt=0)
    max_interval_seconds: int = Field(..., gt=0)
    max_query_period_seconds: int = Field(..., gt=0)
    max_parallel_executions: int = Field(..., gt=0, le=100)
    purge_strategy: PurgeStrategy = PurgeStrategy.FAIL_ON_DUPLICATE
    source_timezone_offset_hours: int = Field(0, ge=-12, le=14)
    aggregation_period_seconds: Optional[int] = Field(None, gt=0)
    source_database_code: Optional[str] = Field(None, max_length=64)
    enabled: bool = True

    @model_validator(mode="after")
    def _check_interval_order(self) -> "LoaderPayload":
        if self.max_interval_seconds < self.min_interval_seconds:
            raise ValueError("max_interval_seconds must be greater than or equal to min_interval_seconds")
        return self


LOADER_PAYLOAD_FIELDS: tuple[str, ...] = tuple(LoaderPayload.model_fields)


class LoaderPayloadUpdate(BaseModel):
    """Partial payload; only the supplied attributes change."""

    model_config = ConfigDict(use_enum_values=True)

    loader_sql: Optional[str] = Field(None, min_length=1)
    min_interval_seconds: Optional[int] = Field(None, gt=0)
    max_interval_seconds: Optional[int] = Field(None, gt=0)
    max_query_period_seconds: Optional[int] = Field(None, gt=0)
    max_parallel_executions: Optional[int] = Field(None, gt=0, le=100)
    purge_strategy: Optional[PurgeStrategy] = None
    source_timezone_offset_hours: Optional[int] = Field(None, ge=-12, le=14)
    aggregation_period_seconds: Optional[int] = Field(None, gt=0)
    source_database_code: Optional[str] = Field(None, max_length=64)
    enabled: Optional[bool] = None

    @model_validator(mode="after")
    def _check_interval_order(self) -> "LoaderPayloadUpdate":
        low, high = self.min_interval_seconds, self.max_interval_seconds
        if low is not None and high is not None and high < low:
            raise ValueError("max_interval_seconds must be greater than or equal to min_interval_seconds")
        return self


class LoaderConfigurationCreate(LoaderPayload):
    loader_code: str = Field(..., pattern=LOADER_CODE_PATTERN)
    change_type: ChangeType = ChangeType.MANUAL_EDIT
    change_summary: Optional[str] = None
    import_label: Optional[str] = Field(None, max_length=200)


class LoaderDraftCreate(LoaderPayloadUpdate):
    change_type: ChangeType = ChangeType.MANUAL_EDIT
    change_summary: Optional[str] = None
    import_label: Optional[str] = Field(None, max_length=200)


class LoaderDraftUpdate(LoaderPayloadUpdate):
    change_summary: Optional[str] = None


class LoaderConfigurationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    loader_code: str
    version_number: int
    lifecycle_state: LifecycleState
    loader_sql: str
    min_interval_seconds: int
    max_interval_seconds: int
    max_query_period_seconds: int
    max_parallel_executions: int
    purge_strategy: PurgeStrategy
    source_timezone_offset_hours: int
    aggregation_period_seconds: Optional[int] = None
    source_database_code: Optional[str] = None
    enabled: bool
    change_type: ChangeType
    change_summary: Optional[str] = None
    import_label: Optional[str] = None
    supersedes_version_id: Optional[UUID] = None
    restored_from_version_id: Optional[UUID] = None
    created_by: str
    created_at: datetime
    updated_at: datetime
    modified_by: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    archived_by: Optional[str] = None
    archived_at: Optional[datetime] = None


class DecisionPayload(BaseModel):
    comment: Optional[str] = None


class SubmitPayload(BaseModel):
    change_summary: Optional[str] = None


class ApprovalSubmitRequest(BaseModel):
    entity_type: EntityType
    entity_id: str = Field(..., min_length=1, max_length=100)
    request_type: ApprovalRequestType = ApprovalRequestType.UPDATE
    source: ApprovalSource = ApprovalSource.API
    import_label: Optional[str] = Field(None, max_length=200)
    change_summary: Optional[str] = None


class ApprovalActionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    approval_request_id: UUID
    action_type: ApprovalActionType
    action_by: str
    action_at: datetime
    justification: Optional[str] = None
    previous_status: Optional[str] = None
    new_status: str


class ApprovalRequestRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    entity_type: str
    entity_id: str
    request_type: ApprovalRequestType
    source: ApprovalSource
    import_label: Optional[str] = None
    change_summary: Optional[str] = None
    requested_by: str
    requested_at: datetime
    approver_role: str
    status: ApprovalStatus
    decided_by: Optional[str] = None
    decided_at: Optional[datetime] = None
    comment: Optional[str] = None


class ApprovalRequestDetail(ApprovalRequestRead):
    actions: list[ApprovalActionRead] = Field(default_factory=list)


class PendingCountRead(BaseModel):
    entity_type: Optional[str] = None
    pending: int


class LoaderExistsRead(BaseModel):
    loader_code: str
    exists: bool
    has_working_copy: bool
