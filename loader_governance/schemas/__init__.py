from loader_governance.schemas.entities import (
    LOADER_CODE_PATTERN,
    LOADER_PAYLOAD_FIELDS,
    ApprovalActionRead,
    ApprovalActionType,
    ApprovalRequestDetail,
    ApprovalRequestRead,
    ApprovalRequestType,
    ApprovalSource,
    ApprovalStatus,
    ApprovalSubmitRequest,
    ChangeType,
    DecisionPayload,
    EntityType,
    LifecycleState,
    LoaderConfigurationCreate,
    LoaderConfigurationRead,
    LoaderDraftCreate,
    LoaderDraftUpdate,
    LoaderExistsRead,
    LoaderPayload,
    LoaderPayloadUpdate,
    PendingCountRead,
    PurgeStrategy,
    SubmitPayload,
)
from loader_governance.schemas.imports import (
    BatchResult,
    ErrorCategory,
    ImportAction,
    ImportAuditLogDetail,
    ImportAuditLogRead,
    ImportErrorEntry,
    ImportRow,
    ImportRowOutcome,
)

__all__ = [
    "LOADER_CODE_PATTERN",
    "LOADER_PAYLOAD_FIELDS",
    "ApprovalActionRead",
    "ApprovalActionType",
    "ApprovalRequestDetail",
    "ApprovalRequestRead",
    "ApprovalRequestType",
    "ApprovalSource",
    "ApprovalStatus",
    "ApprovalSubmitRequest",
    "BatchResult",
    "ChangeType",
    "DecisionPayload",
    "EntityType",
    "ErrorCategory",
    "ImportAction",
    "ImportAuditLogDetail",
    "ImportAuditLogRead",
    "ImportErrorEntry",
    "ImportRow",
    "ImportRowOutcome",
    "LifecycleState",
    "LoaderConfigurationCreate",
    "LoaderConfigurationRead",
    "LoaderDraftCreate",
    "LoaderDraftUpdate",
    "LoaderExistsRead",
    "LoaderPayload",
    "LoaderPayloadUpdate",
    "PendingCountRead",
    "PurgeStrategy",
    "SubmitPayload",
]
