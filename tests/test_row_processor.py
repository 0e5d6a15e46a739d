from __future__ import annotations

import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Mapping, Optional

import pytest

from loader_governance.constants.import_columns import PROTECTED_PLACEHOLDER
from loader_governance.schemas import ImportAction, ImportRow
from loader_governance.services.collaborators import ConfigurationRef
from loader_governance.services.errors import (
    ConflictError,
    DownstreamTimeoutError,
    DownstreamUnavailableError,
    InvalidStateError,
    ValidationError,
)
from loader_governance.services.row_processor import (
    DryRunState,
    RowNotImplementedError,
    RowProcessor,
    classify_row,
)

FULL_ROW = {
    "SQL Query": "SELECT * FROM orders",
    "Min Interval (seconds)": "60",
    "Max Interval (seconds)": "300",
    "Query Period (seconds)": "3600",
    "Max Parallel Executions": "2",
}


def _row(action: Optional[str], loader_code: Optional[str], row_number: int = 2, **columns: str) -> ImportRow:
    values: dict[str, Optional[str]] = {"Import Action": action, "Loader Code": loader_code}
    values.update(columns)
    return ImportRow(row_number=row_number, values=values)


def _full_row(action: str, loader_code: str, **overrides: str) -> ImportRow:
    row = _row(action, loader_code)
    row.values.update(FULL_ROW)
    row.values.update(overrides)
    return row


class FakeConfigurationService:
    def __init__(
        self,
        existing: tuple[str, ...] = (),
        working: tuple[str, ...] = (),
        delay: float = 0.0,
        slow_codes: tuple[str, ...] = (),
    ) -> None:
        self.existing = set(existing)
        self.working = set(working)
        self.delay = delay
        self.slow_codes = set(slow_codes)
        self.created: list[tuple[str, dict]] = []
        self.drafts: list[tuple[str, dict, str]] = []
        self.discarded: list[str] = []
        self._draft_codes: dict[str, str] = {}
        self._lock = threading.Lock()

    def exists(self, loader_code: str, *, token: Optional[str] = None) -> bool:
        if self.delay and (not self.slow_codes or loader_code in self.slow_codes):
            time.sleep(self.delay)
        return loader_code in self.existing

    def has_working_copy(self, loader_code: str, *, token: Optional[str] = None) -> bool:
        return loader_code in self.working

    def create_direct(
        self,
        loader_code: str,
        payload: Mapping[str, Any],
        author: str,
        *,
        token: Optional[str] = None,
        import_label: Optional[str] = None,
    ) -> ConfigurationRef:
        with self._lock:
            if loader_code in self.existing:
                raise ConflictError(f"Loader {loader_code} already exists")
            self.existing.add(loader_code)
            self.created.append((loader_code, dict(payload)))
        return ConfigurationRef(str(uuid.uuid4()), loader_code, 1, "ACTIVE")

    def create_draft(
        self,
        loader_code: str,
        changes: Mapping[str, Any],
        author: str,
        *,
        token: Optional[str] = None,
        import_label: Optional[str] = None,
        change_type: str = "IMPORT_UPDATE",
    ) -> ConfigurationRef:
        with self._lock:
            if loader_code in self.working:
                raise ConflictError(f"Loader {loader_code} already has a draft or pending version")
            self.working.add(loader_code)
            self.drafts.append((loader_code, dict(changes), change_type))
            version_id = str(uuid.uuid4())
            self._draft_codes[version_id] = loader_code
        return ConfigurationRef(version_id, loader_code, 2, "DRAFT")

    def discard_draft(self, version_id: str, actor: str, *, token: Optional[str] = None) -> None:
        with self._lock:
            self.working.discard(self._draft_codes.pop(version_id))
            self.discarded.append(version_id)


class FakeApprovalService:
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.error = error
        self.submissions: list[dict[str, Any]] = []

    def submit_change(
        self,
        entity_type: str,
        entity_id: str,
        submitter: str,
        *,
        token: Optional[str] = None,
        source: str = "IMPORT",
        import_label: Optional[str] = None,
        change_summary: Optional[str] = None,
    ) -> str:
        if self.error is not None:
            raise self.error
        self.submissions.append(
            {
                "entity_type": entity_type,
                "entity_id": entity_id,
                "submitter": submitter,
                "source": source,
                "import_label": import_label,
                "token": token,
            }
        )
        return str(uuid.uuid4())


def test_blank_action_defaults_to_update() -> None:
    classified = classify_row(_row(None, "ORDERS", **{"Enabled": "no"}))

    assert classified.action is ImportAction.UPDATE
    assert classified.values == {"enabled": False}


def test_create_row_is_fully_validated() -> None:
    classified = classify_row(_full_row("create", "ORDERS", **{"Purge Strategy": "skip_duplicates"}))

    assert classified.action is ImportAction.CREATE
    assert classified.values["max_parallel_executions"] == 2
    assert classified.values["purge_strategy"] == "SKIP_DUPLICATES"
    assert classified.values["enabled"] is True


@pytest.mark.parametrize(
    "row, field",
    [
        (_row("MERGE", "ORDERS", **{"Enabled": "true"}), "action"),
        (_row("UPDATE", None, **{"Enabled": "true"}), "loader_code"),
        (_row("UPDATE", "bad code!", **{"Enabled": "true"}), "loader_code"),
        (_row("UPDATE", "ORDERS", **{"Max Parallel Executions": "two"}), "max_parallel_executions"),
        (_row("UPDATE", "ORDERS", **{"Max Parallel Executions": "500"}), "max_parallel_executions"),
        (_row("UPDATE", "ORDERS", **{"Enabled": "maybe"}), "enabled"),
        (_full_row("CREATE", "ORDERS", **{"SQL Query": PROTECTED_PLACEHOLDER}), "loader_sql"),
    ],
)
def test_invalid_rows_report_the_offending_field(row: ImportRow, field: str) -> None:
    with pytest.raises(ValidationError) as excinfo:
        classify_row(row)

    assert excinfo.value.field == field


def test_update_row_with_only_placeholder_changes_nothing() -> None:
    with pytest.raises(ValidationError):
        classify_row(_row("UPDATE", "ORDERS", **{"SQL Query": PROTECTED_PLACEHOLDER}))


def test_delete_is_not_implemented() -> None:
    with pytest.raises(RowNotImplementedError):
        classify_row(_row("DELETE", "ORDERS"))


def test_create_new_loader_becomes_active() -> None:
    configuration = FakeConfigurationService()
    approvals = FakeApprovalService()
    processor = RowProcessor(configuration, approvals)

    outcome = processor.process(_full_row("CREATE", "ORDERS"), submitter="alice", batch_label="wave-1")

    assert outcome.success is True
    assert outcome.resulting_state == "ACTIVE"
    assert outcome.rerouted is False
    assert configuration.created[0][0] == "ORDERS"
    assert approvals.submissions == []


def test_create_existing_loader_is_rerouted_to_update() -> None:
    configuration = FakeConfigurationService(existing=("ORDERS",))
    approvals = FakeApprovalService()
    processor = RowProcessor(configuration, approvals)

    outcome = processor.process(
        _full_row("CREATE", "ORDERS"),
        submitter="alice",
        batch_label="wave-1",
        token="Bearer abc",
    )

    assert outcome.success is True
    assert outcome.rerouted is True
    assert outcome.resulting_state == "PENDING"
    assert outcome.approval_request_id is not None
    assert configuration.drafts[0][2] == "IMPORT_UPDATE"
    submission = approvals.submissions[0]
    assert submission["entity_type"] == "LOADER"
    assert submission["entity_id"] == outcome.version_id
    assert submission["source"] == "IMPORT"
    assert submission["import_label"] == "wave-1"
    assert submission["token"] == "Bearer abc"


def test_rerouted_row_that_conflicts_keeps_the_flag() -> None:
    configuration = FakeConfigurationService(existing=("ORDERS",), working=("ORDERS",))
    processor = RowProcessor(configuration, FakeApprovalService())

    outcome = processor.process(_full_row("CREATE", "ORDERS"), submitter="alice")

    assert outcome.success is False
    assert outcome.rerouted is True
    assert outcome.error_code == "CONFLICT"
    assert outcome.error_category == "PROCESSING"


def test_update_of_unknown_loader_fails() -> None:
    processor = RowProcessor(FakeConfigurationService(), FakeApprovalService())

    outcome = processor.process(_row("UPDATE", "GHOST", **{"Enabled": "false"}), submitter="alice")

    assert outcome.success is False
    assert outcome.error_code == "NOT_FOUND"
    assert outcome.error_category == "PROCESSING"
    assert outcome.loader_code == "GHOST"


def test_validation_failure_becomes_outcome() -> None:
    processor = RowProcessor(FakeConfigurationService(existing=("ORDERS",)), FakeApprovalService())

    outcome = processor.process(_row("UPDATE", "ORDERS", **{"Min Interval (seconds)": "-5"}), submitter="alice")

    assert outcome.success is False
    assert outcome.error_category == "VALIDATION"
    assert outcome.field == "min_interval_seconds"


def test_delete_row_fails_without_calls() -> None:
    configuration = FakeConfigurationService(existing=("ORDERS",))
    processor = RowProcessor(configuration, FakeApprovalService())

    outcome = processor.process(_row("DELETE", "ORDERS"), submitter="alice")

    assert outcome.success is False
    assert outcome.action == "DELETE"
    assert outcome.error_code == "NOT_IMPLEMENTED"
    assert outcome.error_category == "PROCESSING"
    assert configuration.drafts == []


def test_slow_service_times_out() -> None:
    configuration = FakeConfigurationService(existing=("ORDERS",), delay=0.5)
    executor = ThreadPoolExecutor(max_workers=2)
    processor = RowProcessor(
        configuration,
        FakeApprovalService(),
        call_executor=executor,
        timeout_seconds=0.05,
    )
    try:
        outcome = processor.process(_row("UPDATE", "ORDERS", **{"Enabled": "false"}), submitter="alice")
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    assert outcome.success is False
    assert outcome.error_code == "DOWNSTREAM_UNAVAILABLE"
    assert outcome.error_category == "SYSTEM"
    assert configuration.drafts == []


def test_dry_run_predicts_without_writing() -> None:
    configuration = FakeConfigurationService(existing=("ORDERS", "BUSY"), working=("BUSY",))
    approvals = FakeApprovalService()
    processor = RowProcessor(configuration, approvals)

    created = processor.process(_full_row("CREATE", "NEW_ONE"), submitter="alice", dry_run=True)
    rerouted = processor.process(_full_row("CREATE", "ORDERS"), submitter="alice", dry_run=True)
    busy = processor.process(_row("UPDATE", "BUSY", **{"Enabled": "true"}), submitter="alice", dry_run=True)

    assert (created.success, created.resulting_state) == (True, "ACTIVE")
    assert (rerouted.success, rerouted.rerouted, rerouted.resulting_state) == (True, True, "PENDING")
    assert (busy.success, busy.error_code) == (False, "CONFLICT")
    assert configuration.created == []
    assert configuration.drafts == []
    assert approvals.submissions == []


def test_slow_rows_do_not_time_out_healthy_rows() -> None:
    codes = ("SLOW1", "SLOW2", "FAST1", "FAST2")
    configuration = FakeConfigurationService(existing=codes, delay=1.0, slow_codes=("SLOW1", "SLOW2"))
    call_executor = ThreadPoolExecutor(max_workers=2)
    processor = RowProcessor(
        configuration,
        FakeApprovalService(),
        call_executor=call_executor,
        timeout_seconds=0.3,
    )
    rows = [
        _row("UPDATE", code, row_number=number, **{"Enabled": "false"})
        for number, code in enumerate(codes, start=2)
    ]
    try:
        with ThreadPoolExecutor(max_workers=2) as workers:
            outcomes = list(workers.map(lambda row: processor.process(row, submitter="alice"), rows))
    finally:
        call_executor.shutdown(wait=False, cancel_futures=True)

    assert {outcome.loader_code: outcome.error_code for outcome in outcomes} == {
        "SLOW1": "DOWNSTREAM_UNAVAILABLE",
        "SLOW2": "DOWNSTREAM_UNAVAILABLE",
        "FAST1": None,
        "FAST2": None,
    }


@pytest.mark.parametrize(
    "error",
    [
        DownstreamUnavailableError("approval service responded with 503"),
        InvalidStateError("ORDERS v2 is PENDING"),
    ],
)
def test_refused_submission_discards_the_draft(error: Exception) -> None:
    configuration = FakeConfigurationService(existing=("ORDERS",))
    processor = RowProcessor(configuration, FakeApprovalService(error=error))

    outcome = processor.process(_row("UPDATE", "ORDERS", **{"Enabled": "false"}), submitter="alice")

    assert outcome.success is False
    assert outcome.error_code == error.error_code
    assert len(configuration.discarded) == 1
    assert configuration.working == set()


def test_timed_out_submission_keeps_the_draft() -> None:
    configuration = FakeConfigurationService(existing=("ORDERS",))
    processor = RowProcessor(configuration, FakeApprovalService(error=DownstreamTimeoutError("approval service timed out")))

    outcome = processor.process(_row("UPDATE", "ORDERS", **{"Enabled": "false"}), submitter="alice")

    assert outcome.error_code == "DOWNSTREAM_UNAVAILABLE"
    assert outcome.error_category == "SYSTEM"
    assert configuration.discarded == []
    assert configuration.working == {"ORDERS"}


def test_dry_run_rows_see_earlier_rows_of_the_batch() -> None:
    configuration = FakeConfigurationService(existing=("ORDERS",))
    processor = RowProcessor(configuration, FakeApprovalService())
    state = DryRunState()
    rows = [
        _row("UPDATE", "ORDERS", row_number=2, **{"Enabled": "false"}),
        _row("UPDATE", "ORDERS", row_number=3, **{"Enabled": "true"}),
        _row("CREATE", "NEWCODE", row_number=4, **FULL_ROW),
        _row("UPDATE", "NEWCODE", row_number=5, **{"Enabled": "false"}),
        _row("CREATE", "NEWCODE", row_number=6, **FULL_ROW),
    ]

    outcomes = [processor.process(row, submitter="alice", dry_run=True, dry_run_state=state) for row in rows]

    assert [(outcome.success, outcome.error_code, outcome.rerouted) for outcome in outcomes] == [
        (True, None, False),
        (False, "CONFLICT", False),
        (True, None, False),
        (True, None, False),
        (False, "CONFLICT", True),
    ]
    assert outcomes[2].resulting_state == "ACTIVE"
    assert configuration.created == []
    assert configuration.drafts == []
