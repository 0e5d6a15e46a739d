from __future__ import annotations

import io
import uuid

import pytest
from openpyxl import Workbook
from sqlalchemy import func, select

from loader_governance.config import get_settings
from loader_governance.models import ApprovalRequest, ImportAuditLog, LoaderConfiguration
from loader_governance.schemas import ImportRow
from loader_governance.services import version_lifecycle
from loader_governance.services.errors import DownstreamUnavailableError, ImportFileError
from loader_governance.services.import_orchestrator import BatchImportOrchestrator, build_collaborators
from loader_governance.services.collaborators import LocalApprovalService, LocalConfigurationService
from loader_governance.services.service_clients import HttpApprovalService, HttpConfigurationService

FULL_COLUMNS = {
    "SQL Query": "SELECT * FROM invoices",
    "Min Interval (seconds)": "30",
    "Max Interval (seconds)": "120",
    "Query Period (seconds)": "600",
    "Max Parallel Executions": "1",
}


def _row(row_number: int, action: str, loader_code: str, **columns: str) -> ImportRow:
    values = {"Import Action": action, "Loader Code": loader_code}
    values.update(columns)
    return ImportRow(row_number=row_number, values=values)


def _orchestrator(session_factory, **kwargs) -> BatchImportOrchestrator:
    return BatchImportOrchestrator(session_factory, pool_size=4, timeout_seconds=10, **kwargs)


def _count_versions(db) -> int:
    return db.execute(select(func.count(LoaderConfiguration.id))).scalar_one()


@pytest.fixture()
def existing_loader(db_session, loader_payload) -> LoaderConfiguration:
    return version_lifecycle.create_direct(db_session, "ORDERS", loader_payload, "seed")


def test_mixed_batch_reports_each_row(session_factory, db_session, existing_loader) -> None:
    rows = [
        _row(2, "CREATE", "INVOICES", **FULL_COLUMNS),
        _row(3, "UPDATE", "ORDERS", **{"Max Parallel Executions": "4"}),
        _row(4, "DELETE", "ORDERS"),
    ]

    result = _orchestrator(session_factory).import_batch(rows, "wave-1", "alice")

    assert (result.total, result.succeeded, result.failed) == (3, 2, 1)
    assert [outcome.row_number for outcome in result.outcomes] == [2, 3, 4]
    created, updated, deleted = result.outcomes
    assert created.resulting_state == "ACTIVE"
    assert updated.resulting_state == "PENDING"
    assert deleted.error_code == "NOT_IMPLEMENTED"
    assert [error.row_number for error in result.errors] == [4]

    db_session.expire_all()
    assert version_lifecycle.get_active_version(db_session, "INVOICES").import_label == "wave-1"
    draft = version_lifecycle.get_working_copy(db_session, "ORDERS")
    assert draft.lifecycle_state == "PENDING"
    assert draft.max_parallel_executions == 4
    assert draft.change_type == "IMPORT_UPDATE"
    request = db_session.get(ApprovalRequest, uuid.UUID(updated.approval_request_id))
    assert request.source == "IMPORT"
    assert request.requested_by == "alice"
    assert request.import_label == "wave-1"


def test_failed_rows_do_not_affect_others(session_factory, db_session, existing_loader) -> None:
    rows = [
        _row(2, "CREATE", "GOOD_ONE", **FULL_COLUMNS),
        _row(3, "CREATE", "BAD_ONE", **{**FULL_COLUMNS, "Max Interval (seconds)": "5"}),
        _row(4, "UPDATE", "MISSING", **{"Enabled": "false"}),
        _row(5, "CREATE", "GOOD_TWO", **FULL_COLUMNS),
    ]

    result = _orchestrator(session_factory).import_batch(rows, None, "alice")

    assert result.succeeded == 2
    assert {error.row_number: error.category for error in result.errors} == {
        3: "VALIDATION",
        4: "PROCESSING",
    }
    db_session.expire_all()
    assert version_lifecycle.loader_exists(db_session, "GOOD_ONE")
    assert version_lifecycle.loader_exists(db_session, "GOOD_TWO")
    assert not version_lifecycle.loader_exists(db_session, "BAD_ONE")


def test_create_of_existing_code_is_rerouted(session_factory, db_session, existing_loader) -> None:
    result = _orchestrator(session_factory).import_batch(
        [_row(2, "CREATE", "ORDERS", **FULL_COLUMNS)], "wave-2", "alice"
    )

    outcome = result.outcomes[0]
    assert outcome.success is True
    assert outcome.rerouted is True
    assert outcome.resulting_state == "PENDING"
    db_session.expire_all()
    assert version_lifecycle.get_active_version(db_session, "ORDERS").id == existing_loader.id
    assert version_lifecycle.get_working_copy(db_session, "ORDERS").loader_sql == FULL_COLUMNS["SQL Query"]


def test_competing_rows_for_one_loader(session_factory, db_session, existing_loader) -> None:
    rows = [
        _row(2, "UPDATE", "ORDERS", **{"Max Parallel Executions": "3"}),
        _row(3, "UPDATE", "ORDERS", **{"Max Parallel Executions": "5"}),
    ]

    result = _orchestrator(session_factory).import_batch(rows, None, "alice")

    assert (result.succeeded, result.failed) == (1, 1)
    db_session.expire_all()
    versions = version_lifecycle.list_versions(db_session, "ORDERS")
    assert sorted(version.lifecycle_state for version in versions) == ["ACTIVE", "PENDING"]


def test_dry_run_changes_nothing(session_factory, db_session, existing_loader) -> None:
    before = _count_versions(db_session)
    rows = [
        _row(2, "CREATE", "INVOICES", **FULL_COLUMNS),
        _row(3, "UPDATE", "ORDERS", **{"Enabled": "false"}),
        _row(4, "UPDATE", "ORDERS", **{"Enabled": "maybe"}),
    ]

    result = _orchestrator(session_factory).import_batch(rows, "preview", "alice", dry_run=True)

    assert result.dry_run is True
    assert (result.succeeded, result.failed) == (2, 1)
    assert result.message.startswith("Dry run")
    db_session.expire_all()
    assert _count_versions(db_session) == before
    assert db_session.execute(select(func.count(ApprovalRequest.id))).scalar_one() == 0
    audit = db_session.get(ImportAuditLog, result.audit_log_id)
    assert audit.dry_run is True


def test_batch_writes_one_audit_log(session_factory, db_session, existing_loader) -> None:
    rows = [
        _row(2, "UPDATE", "ORDERS", **{"Enabled": "false"}),
        _row(3, "UPDATE", "NOPE", **{"Enabled": "false"}),
    ]

    result = _orchestrator(session_factory).import_batch(rows, "wave-3", "alice")

    entries = db_session.execute(select(ImportAuditLog)).scalars().all()
    assert len(entries) == 1
    entry = entries[0]
    assert entry.id == result.audit_log_id
    assert (entry.total_rows, entry.success_count, entry.failure_count) == (2, 1, 1)
    assert entry.import_label == "wave-3"
    assert entry.imported_by == "alice"
    assert entry.errors[0]["row_number"] == 3
    assert entry.errors[0]["error_code"] == "NOT_FOUND"
    assert len(entry.outcomes) == 2


def test_import_file_parses_and_records_source(session_factory, db_session, existing_loader) -> None:
    workbook = Workbook()
    sheet = workbook.active
    sheet.append(["Import Action", "Loader Code", "Enabled"])
    sheet.append(["UPDATE", "ORDERS", "false"])
    buffer = io.BytesIO()
    workbook.save(buffer)
    data = buffer.getvalue()

    result = _orchestrator(session_factory).import_file(data, "wave.xlsx", batch_label="wave-4", submitter="alice")

    assert result.succeeded == 1
    entry = db_session.get(ImportAuditLog, result.audit_log_id)
    assert entry.file_name == "wave.xlsx"
    assert entry.file_size_bytes == len(data)


def test_file_level_error_processes_no_rows(session_factory, db_session, existing_loader) -> None:
    data = b"Loader Code,Enabled\nORDERS,false\n"

    with pytest.raises(ImportFileError):
        _orchestrator(session_factory).import_file(data, "wave.csv", batch_label=None, submitter="alice")

    assert db_session.execute(select(func.count(ImportAuditLog.id))).scalar_one() == 0
    assert version_lifecycle.get_working_copy(db_session, "ORDERS") is None


def test_collaborators_follow_configuration(session_factory) -> None:
    local = get_settings().model_copy(update={"configuration_service_url": None, "approval_service_url": None})
    remote = get_settings().model_copy(update={"configuration_service_url": "http://config.local"})

    configuration, approvals = build_collaborators(session_factory, local)
    assert isinstance(configuration, LocalConfigurationService)
    assert isinstance(approvals, LocalApprovalService)

    configuration, approvals = build_collaborators(session_factory, remote)
    assert isinstance(configuration, HttpConfigurationService)
    assert isinstance(approvals, HttpApprovalService)
    configuration.close()
    approvals.close()


def test_single_worker_batch_runs_rows_in_file_order(session_factory, db_session) -> None:
    rows = [
        _row(2, "CREATE", "A1", **FULL_COLUMNS),
        _row(3, "UPDATE", "A1", **{"Max Parallel Executions": "3"}),
        _row(4, "DELETE", "A1"),
    ]
    orchestrator = BatchImportOrchestrator(session_factory, pool_size=1, timeout_seconds=10)

    result = orchestrator.import_batch(rows, "ordered", "alice")

    assert [(outcome.success, outcome.resulting_state) for outcome in result.outcomes] == [
        (True, "ACTIVE"),
        (True, "PENDING"),
        (False, None),
    ]
    assert result.outcomes[2].message.startswith("DELETE is not implemented")
    db_session.expire_all()
    assert sorted(version.lifecycle_state for version in version_lifecycle.list_versions(db_session, "A1")) == [
        "ACTIVE",
        "PENDING",
    ]


def _classifications(result) -> list[tuple[int, bool, object]]:
    return [(outcome.row_number, outcome.success, outcome.error_code) for outcome in result.outcomes]


def test_dry_run_classifies_rows_like_the_real_run(session_factory, existing_loader) -> None:
    rows = [
        _row(2, "UPDATE", "ORDERS", **{"Max Parallel Executions": "3"}),
        _row(3, "UPDATE", "ORDERS", **{"Max Parallel Executions": "5"}),
        _row(4, "CREATE", "NEWCODE", **FULL_COLUMNS),
        _row(5, "UPDATE", "NEWCODE", **{"Enabled": "false"}),
    ]
    orchestrator = BatchImportOrchestrator(session_factory, pool_size=1, timeout_seconds=10)

    dry = orchestrator.import_batch(rows, "preview", "alice", dry_run=True)
    real = orchestrator.import_batch(rows, "wave-5", "alice")

    assert _classifications(dry) == _classifications(real) == [
        (2, True, None),
        (3, False, "CONFLICT"),
        (4, True, None),
        (5, True, None),
    ]


def test_dry_run_predicts_competing_rows(session_factory, existing_loader) -> None:
    rows = [
        _row(2, "UPDATE", "ORDERS", **{"Max Parallel Executions": "3"}),
        _row(3, "UPDATE", "ORDERS", **{"Max Parallel Executions": "5"}),
    ]

    dry = _orchestrator(session_factory).import_batch(rows, None, "alice", dry_run=True)
    real = _orchestrator(session_factory).import_batch(rows, None, "alice")

    assert (dry.succeeded, dry.failed) == (real.succeeded, real.failed) == (1, 1)


class FlakyApprovalService:
    def __init__(self, delegate: LocalApprovalService, failures: int = 1) -> None:
        self.delegate = delegate
        self.failures = failures

    def submit_change(self, *args, **kwargs) -> str:
        if self.failures:
            self.failures -= 1
            raise DownstreamUnavailableError("approval service responded with 503")
        return self.delegate.submit_change(*args, **kwargs)


def test_row_can_be_retried_after_submission_failure(session_factory, db_session, existing_loader) -> None:
    orchestrator = BatchImportOrchestrator(
        session_factory,
        configuration_service=LocalConfigurationService(session_factory),
        approval_service=FlakyApprovalService(LocalApprovalService(session_factory)),
        pool_size=1,
        timeout_seconds=10,
    )
    rows = [_row(2, "UPDATE", "ORDERS", **{"Enabled": "false"})]

    first = orchestrator.import_batch(rows, "wave-6", "alice")

    assert first.outcomes[0].error_code == "DOWNSTREAM_UNAVAILABLE"
    assert version_lifecycle.get_working_copy(db_session, "ORDERS") is None

    retry = orchestrator.import_batch(rows, "wave-6", "alice")

    assert (retry.outcomes[0].success, retry.outcomes[0].resulting_state) == (True, "PENDING")
    db_session.expire_all()
    assert version_lifecycle.get_working_copy(db_session, "ORDERS").lifecycle_state == "PENDING"
