from loader_governance.models.entities import (
    APPROVAL_ACTION_TYPES,
    APPROVAL_REQUEST_TYPES,
    APPROVAL_SOURCES,
    APPROVAL_STATUSES,
    CHANGE_TYPES,
    LIFECYCLE_STATES,
    PURGE_STRATEGIES,
    WORKING_COPY_STATES,
    ApprovalAction,
    ApprovalRequest,
    ImportAuditLog,
    LoaderConfiguration,
    TimestampMixin,
    utc_now,
)

__all__ = [
    "APPROVAL_ACTION_TYPES",
    "APPROVAL_REQUEST_TYPES",
    "APPROVAL_SOURCES",
    "APPROVAL_STATUSES",
    "CHANGE_TYPES",
    "LIFECYCLE_STATES",
    "PURGE_STRATEGIES",
    "WORKING_COPY_STATES",
    "ApprovalAction",
    "ApprovalRequest",
    "ImportAuditLog",
    "LoaderConfiguration",
    "TimestampMixin",
    "utc_now",
]
