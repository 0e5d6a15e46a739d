"""Turns one import row into a loader change.

A row is first classified (action, loader code, typed attribute values)
without touching any service. The resolved action then runs against the
configuration and approval services:

* CREATE creates the loader directly as ACTIVE. When the configuration
  service reports the code already exists, the row continues on the UPDATE
  path and the outcome is flagged ``rerouted``.
* UPDATE checks existence, opens a draft from the supplied values and submits
  it for approval, ending PENDING. A draft whose submission is refused is
  discarded again so the row can be retried.
* DELETE is not supported and always fails.

Errors never escape :meth:`RowProcessor.process`; they become a failed
:class:`ImportRowOutcome` with an error code and category.
"""

from __future__ import annotations

import logging
import re
import threading
from concurrent.futures import Executor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, TypeVar

from loader_governance.constants.import_columns import (
    COLUMN_ACTION,
    COLUMN_LOADER_CODE,
    COLUMN_TO_FIELD,
)
from loader_governance.schemas import (
    LOADER_CODE_PATTERN,
    ErrorCategory,
    ImportAction,
    ImportRow,
    ImportRowOutcome,
)
from loader_governance.services.collaborators import ApprovalService, ConfigurationRef, ConfigurationService
from loader_governance.services.errors import (
    AuthorizationError,
    ConflictError,
    DownstreamTimeoutError,
    InvalidStateError,
    LoaderGovernanceError,
    NotFoundError,
    ValidationError,
)
from loader_governance.services.field_protection import PROTECTED_FIELDS, is_placeholder
from loader_governance.services.version_lifecycle import LOADER_ENTITY, validate_changes, validate_payload


logger = logging.getLogger(__name__)

T = TypeVar("T")

TRUE_VALUES = {"true", "t", "yes", "y", "1"}
FALSE_VALUES = {"false", "f", "no", "n", "0"}
INTEGER_FIELDS = {
    "min_interval_seconds",
    "max_interval_seconds",
    "max_query_period_seconds",
    "max_parallel_executions",
    "source_timezone_offset_hours",
    "aggregation_period_seconds",
}
_LOADER_CODE_RE = re.compile(LOADER_CODE_PATTERN)
_START_POLL_SECONDS = 0.05


class RowNotImplementedError(LoaderGovernanceError):
    """Raised for import actions this version does not support."""

    error_code = "NOT_IMPLEMENTED"


@dataclass
class ClassifiedRow:
    row_number: int
    action: ImportAction
    loader_code: str
    values: dict[str, Any] = field(default_factory=dict)


class DryRunState:
    """What the rows of a dry-run batch would have written so far.

    Shared by every row of one batch. A code one row would create exists for
    the rows after it, and only one row per code can claim the working copy,
    matching what the constraints enforce during a real run.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._created: set[str] = set()
        self._claimed: set[str] = set()

    def was_created(self, loader_code: str) -> bool:
        with self._lock:
            return loader_code in self._created

    def claim_creation(self, loader_code: str) -> bool:
        with self._lock:
            if loader_code in self._created:
                return False
            self._created.add(loader_code)
            return True

    def claim_working_copy(self, loader_code: str) -> bool:
        with self._lock:
            if loader_code in self._claimed:
                return False
            self._claimed.add(loader_code)
            return True


def error_category(exc: BaseException) -> ErrorCategory:
    if isinstance(exc, ValidationError):
        return ErrorCategory.VALIDATION
    if isinstance(
        exc,
        (ConflictError, InvalidStateError, NotFoundError, AuthorizationError, RowNotImplementedError),
    ):
        return ErrorCategory.PROCESSING
    return ErrorCategory.SYSTEM


def _parse_integer(field_name: str, raw: str) -> int:
    try:
        number = float(raw)
    except ValueError:
        raise ValidationError(f"{field_name}: '{raw}' is not a whole number", field=field_name) from None
    if not number.is_integer():
        raise ValidationError(f"{field_name}: '{raw}' is not a whole number", field=field_name)
    return int(number)


def _parse_boolean(field_name: str, raw: str) -> bool:
    lowered = raw.strip().lower()
    if lowered in TRUE_VALUES:
        return True
    if lowered in FALSE_VALUES:
        return False
    raise ValidationError(f"{field_name}: '{raw}' is not a boolean value", field=field_name)


def _convert(field_name: str, raw: str) -> Any:
    if field_name in PROTECTED_FIELDS and is_placeholder(raw):
        return raw
    if field_name in INTEGER_FIELDS:
        return _parse_integer(field_name, raw)
    if field_name == "enabled":
        return _parse_boolean(field_name, raw)
    if field_name == "purge_strategy":
        return raw.strip().upper()
    return raw


def classify_row(row: ImportRow) -> ClassifiedRow:
    """Resolve the action and validate the row's values without side effects."""

    raw_action = (row.values.get(COLUMN_ACTION) or "").strip().upper()
    try:
        action = ImportAction(raw_action) if raw_action else ImportAction.UPDATE
    except ValueError:
        raise ValidationError(
            f"Unknown import action '{raw_action}'; expected CREATE, UPDATE or DELETE",
            field="action",
        ) from None

    loader_code = (row.values.get(COLUMN_LOADER_CODE) or "").strip()
    if action is ImportAction.DELETE:
        raise RowNotImplementedError(
            f"DELETE is not implemented; loader {loader_code or '(blank)'} was not changed"
        )
    if not loader_code:
        raise ValidationError("Loader code is required", field="loader_code")
    if not _LOADER_CODE_RE.match(loader_code):
        raise ValidationError(
            f"Loader code '{loader_code}' may only contain letters, digits, '_', '-' and '.' (max 64)",
            field="loader_code",
        )

    values: dict[str, Any] = {}
    for column, field_name in COLUMN_TO_FIELD.items():
        raw = row.values.get(column)
        if raw is None or not str(raw).strip():
            continue
        values[field_name] = _convert(field_name, str(raw).strip())

    if action is ImportAction.CREATE:
        for name in PROTECTED_FIELDS:
            if is_placeholder(values.get(name)):
                raise ValidationError(
                    f"{name}: the protected placeholder cannot be used when creating a loader",
                    field=name,
                )
        values = validate_payload(values)
    else:
        changes = {name: value for name, value in values.items() if not is_placeholder(value)}
        if not changes:
            raise ValidationError("Row does not change any loader attribute", field=None)
        values = validate_changes(changes)

    return ClassifiedRow(row_number=row.row_number, action=action, loader_code=loader_code, values=values)


class RowProcessor:
    """Drives one row through the configuration and approval services."""

    def __init__(
        self,
        configuration_service: ConfigurationService,
        approval_service: ApprovalService,
        *,
        call_executor: Optional[Executor] = None,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self._configuration = configuration_service
        self._approvals = approval_service
        self._call_executor = call_executor
        self._timeout = timeout_seconds

    def _call(self, operation: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        if self._call_executor is None or self._timeout is None:
            return fn(*args, **kwargs)
        started = threading.Event()

        def run() -> T:
            started.set()
            return fn(*args, **kwargs)

        future = self._call_executor.submit(run)
        # The timeout covers the call itself, not the wait for a free call worker.
        while not started.wait(_START_POLL_SECONDS):
            if future.done():
                break
        try:
            return future.result(timeout=self._timeout)
        except FutureTimeoutError:
            future.cancel()
            raise DownstreamTimeoutError(
                f"{operation} did not respond within {self._timeout:g}s"
            ) from None

    def process(
        self,
        row: ImportRow,
        *,
        submitter: str,
        batch_label: Optional[str] = None,
        token: Optional[str] = None,
        dry_run: bool = False,
        dry_run_state: Optional[DryRunState] = None,
    ) -> ImportRowOutcome:
        loader_code = (row.values.get(COLUMN_LOADER_CODE) or "").strip() or None
        raw_action = (row.values.get(COLUMN_ACTION) or "").strip().upper() or ImportAction.UPDATE.value
        action = raw_action if raw_action in ImportAction.__members__ else None
        try:
            classified = classify_row(row)
            if dry_run:
                return self._predict(classified, token=token, state=dry_run_state or DryRunState())
            if classified.action is ImportAction.CREATE:
                return self._create(classified, submitter=submitter, batch_label=batch_label, token=token)
            return self._update(classified, submitter=submitter, batch_label=batch_label, token=token)
        except LoaderGovernanceError as exc:
            logger.info(
                "import:row:failed row=%s loader=%s code=%s message=%s",
                row.row_number,
                loader_code,
                exc.error_code,
                exc.message,
            )
            return self._failure(row.row_number, loader_code, action, exc)
        except Exception as exc:
            logger.exception("import:row:unexpected row=%s loader=%s", row.row_number, loader_code)
            return ImportRowOutcome(
                row_number=row.row_number,
                loader_code=loader_code,
                action=action,
                success=False,
                message=f"Unexpected error: {exc}",
                error_code="UNEXPECTED",
                error_category=ErrorCategory.SYSTEM,
            )

    @staticmethod
    def _failure(
        row_number: int,
        loader_code: Optional[str],
        action: Optional[str],
        exc: LoaderGovernanceError,
        *,
        rerouted: bool = False,
    ) -> ImportRowOutcome:
        return ImportRowOutcome(
            row_number=row_number,
            loader_code=loader_code,
            action=action,
            success=False,
            rerouted=rerouted,
            message=exc.message,
            error_code=exc.error_code,
            error_category=error_category(exc),
            field=exc.field,
        )

    def _create(
        self,
        row: ClassifiedRow,
        *,
        submitter: str,
        batch_label: Optional[str],
        token: Optional[str],
    ) -> ImportRowOutcome:
        try:
            ref = self._call(
                "configuration service create",
                self._configuration.create_direct,
                row.loader_code,
                row.values,
                submitter,
                token=token,
                import_label=batch_label,
            )
        except ConflictError:
            logger.info("import:row:reroute row=%s loader=%s", row.row_number, row.loader_code)
            return self._update(
                row,
                submitter=submitter,
                batch_label=batch_label,
                token=token,
                rerouted=True,
            )
        return ImportRowOutcome(
            row_number=row.row_number,
            loader_code=row.loader_code,
            action=row.action,
            success=True,
            resulting_state=ref.lifecycle_state,
            version_id=ref.version_id,
            message=f"Created {row.loader_code} version {ref.version_number}",
        )

    def _update(
        self,
        row: ClassifiedRow,
        *,
        submitter: str,
        batch_label: Optional[str],
        token: Optional[str],
        rerouted: bool = False,
    ) -> ImportRowOutcome:
        try:
            exists = self._call(
                "configuration service existence check",
                self._configuration.exists,
                row.loader_code,
                token=token,
            )
            if not exists:
                raise NotFoundError(f"Loader {row.loader_code} does not exist and cannot be updated")
            ref = self._call(
                "configuration service draft",
                self._configuration.create_draft,
                row.loader_code,
                row.values,
                submitter,
                token=token,
                import_label=batch_label,
                change_type="IMPORT_UPDATE",
            )
            request_id = self._submit_draft(row, ref, submitter=submitter, batch_label=batch_label, token=token)
        except LoaderGovernanceError as exc:
            if not rerouted:
                raise
            return self._failure(row.row_number, row.loader_code, row.action.value, exc, rerouted=True)

        prefix = "Loader already exists; " if rerouted else ""
        return ImportRowOutcome(
            row_number=row.row_number,
            loader_code=row.loader_code,
            action=row.action,
            success=True,
            rerouted=rerouted,
            resulting_state="PENDING",
            version_id=ref.version_id,
            approval_request_id=request_id,
            message=f"{prefix}version {ref.version_number} submitted for approval",
        )

    def _submit_draft(
        self,
        row: ClassifiedRow,
        ref: ConfigurationRef,
        *,
        submitter: str,
        batch_label: Optional[str],
        token: Optional[str],
    ) -> str:
        try:
            return self._call(
                "approval service submit",
                self._approvals.submit_change,
                LOADER_ENTITY,
                ref.version_id,
                submitter,
                token=token,
                source="IMPORT",
                import_label=batch_label,
            )
        except DownstreamTimeoutError:
            # The submission may still land, so the draft stays.
            raise
        except LoaderGovernanceError as exc:
            self._discard_draft(row, ref, submitter=submitter, token=token, reason=exc)
            raise

    def _discard_draft(
        self,
        row: ClassifiedRow,
        ref: ConfigurationRef,
        *,
        submitter: str,
        token: Optional[str],
        reason: LoaderGovernanceError,
    ) -> None:
        try:
            self._call(
                "configuration service discard",
                self._configuration.discard_draft,
                ref.version_id,
                submitter,
                token=token,
            )
        except LoaderGovernanceError as exc:
            logger.warning(
                "import:row:discard-failed row=%s loader=%s version=%s error=%s",
                row.row_number,
                row.loader_code,
                ref.version_id,
                exc.message,
            )
            return
        logger.info(
            "import:row:discarded row=%s loader=%s version=%s code=%s",
            row.row_number,
            row.loader_code,
            ref.version_id,
            reason.error_code,
        )

    def _predict(self, row: ClassifiedRow, *, token: Optional[str], state: DryRunState) -> ImportRowOutcome:
        """Read-only forecast of what a real run would do with this row."""

        exists = state.was_created(row.loader_code) or self._call(
            "configuration service existence check",
            self._configuration.exists,
            row.loader_code,
            token=token,
        )
        if row.action is ImportAction.CREATE and not exists and state.claim_creation(row.loader_code):
            return ImportRowOutcome(
                row_number=row.row_number,
                loader_code=row.loader_code,
                action=row.action,
                success=True,
                resulting_state="ACTIVE",
                message=f"Would create {row.loader_code}",
            )
        rerouted = row.action is ImportAction.CREATE
        try:
            if not (exists or rerouted or state.was_created(row.loader_code)):
                raise NotFoundError(f"Loader {row.loader_code} does not exist and cannot be updated")
            working = self._call(
                "configuration service working copy check",
                self._configuration.has_working_copy,
                row.loader_code,
                token=token,
            )
            if working or not state.claim_working_copy(row.loader_code):
                raise ConflictError(f"Loader {row.loader_code} already has a draft or pending version")
        except LoaderGovernanceError as exc:
            return self._failure(row.row_number, row.loader_code, row.action.value, exc, rerouted=rerouted)

        prefix = "Loader already exists; " if rerouted else ""
        return ImportRowOutcome(
            row_number=row.row_number,
            loader_code=row.loader_code,
            action=row.action,
            success=True,
            rerouted=rerouted,
            resulting_state="PENDING",
            message=f"{prefix}would submit a new version for approval",
        )


__all__ = [
    "ClassifiedRow",
    "DryRunState",
    "RowNotImplementedError",
    "RowProcessor",
    "classify_row",
    "error_category",
]
