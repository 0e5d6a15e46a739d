"""Bulk import of loader configurations.

Rows are fanned out to a fixed-size worker pool, each row running its own
chain through :class:`RowProcessor`. The batch waits for every row before
building the result, then writes a single :class:`ImportAuditLog` entry.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Sequence

from sqlalchemy.orm import Session

from loader_governance.config import Settings, get_settings
from loader_governance.models import ImportAuditLog
from loader_governance.schemas import (
    BatchResult,
    ErrorCategory,
    ImportErrorEntry,
    ImportRow,
    ImportRowOutcome,
)
from loader_governance.services.collaborators import (
    ApprovalService,
    ConfigurationService,
    LocalApprovalService,
    LocalConfigurationService,
)
from loader_governance.services.row_processor import DryRunState, RowProcessor
from loader_governance.services.service_clients import HttpApprovalService, HttpConfigurationService
from loader_governance.services.spreadsheet import parse_import_file

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


@dataclass(frozen=True)
class SourceFile:
    file_name: Optional[str]
    size_bytes: Optional[int]


def _error_entry(outcome: ImportRowOutcome) -> ImportErrorEntry:
    return ImportErrorEntry(
        row_number=outcome.row_number,
        loader_code=outcome.loader_code,
        field=outcome.field,
        message=outcome.message or "Row failed",
        category=outcome.error_category or ErrorCategory.SYSTEM,
        error_code=outcome.error_code,
    )


def build_collaborators(
    session_factory: SessionFactory,
    settings: Optional[Settings] = None,
) -> tuple[ConfigurationService, ApprovalService]:
    """Use the HTTP clients when a remote service URL is configured, else the local database."""

    settings = settings or get_settings()
    timeout = settings.downstream_timeout_seconds
    if settings.configuration_service_url:
        configuration: ConfigurationService = HttpConfigurationService(
            settings.configuration_service_url, timeout_seconds=timeout
        )
    else:
        configuration = LocalConfigurationService(session_factory)

    approval_url = settings.approval_service_url or settings.configuration_service_url
    if approval_url:
        approvals: ApprovalService = HttpApprovalService(approval_url, timeout_seconds=timeout)
    else:
        approvals = LocalApprovalService(session_factory, approver_role=settings.approver_role)
    return configuration, approvals


class BatchImportOrchestrator:
    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        configuration_service: Optional[ConfigurationService] = None,
        approval_service: Optional[ApprovalService] = None,
        settings: Optional[Settings] = None,
        pool_size: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._session_factory = session_factory
        if configuration_service is None or approval_service is None:
            default_configuration, default_approvals = build_collaborators(session_factory, self._settings)
            configuration_service = configuration_service or default_configuration
            approval_service = approval_service or default_approvals
        self._configuration = configuration_service
        self._approvals = approval_service
        self._pool_size = max(1, pool_size or self._settings.import_worker_pool_size)
        self._timeout = timeout_seconds if timeout_seconds is not None else self._settings.downstream_timeout_seconds

    @property
    def pool_size(self) -> int:
        return self._pool_size

    def import_file(
        self,
        data: bytes,
        filename: Optional[str],
        *,
        batch_label: Optional[str],
        submitter: str,
        dry_run: bool = False,
        token: Optional[str] = None,
    ) -> BatchResult:
        """Parse and import a spreadsheet. File-level problems raise before any row runs."""

        parsed = parse_import_file(
            data,
            filename,
            required_columns=self._settings.import_required_columns,
            max_rows=self._settings.import_max_rows_per_file,
            max_bytes=self._settings.import_max_upload_bytes,
        )
        return self.import_batch(
            parsed.rows,
            batch_label,
            submitter,
            dry_run,
            token=token,
            source_file=SourceFile(file_name=filename, size_bytes=len(data)),
        )

    def import_batch(
        self,
        rows: Sequence[ImportRow],
        batch_label: Optional[str],
        submitter: str,
        dry_run: bool = False,
        *,
        token: Optional[str] = None,
        source_file: Optional[SourceFile] = None,
    ) -> BatchResult:
        logger.info(
            "import:batch:start label=%s rows=%s submitter=%s dry_run=%s workers=%s",
            batch_label,
            len(rows),
            submitter,
            dry_run,
            self._pool_size,
        )

        outcomes = self._run_rows(rows, batch_label=batch_label, submitter=submitter, dry_run=dry_run, token=token)
        outcomes.sort(key=lambda outcome: outcome.row_number)
        errors = [_error_entry(outcome) for outcome in outcomes if not outcome.success]
        succeeded = len(outcomes) - len(errors)

        result = BatchResult(
            batch_label=batch_label,
            dry_run=dry_run,
            total=len(outcomes),
            succeeded=succeeded,
            failed=len(errors),
            outcomes=outcomes,
            errors=errors,
            message=self._summary(len(outcomes), succeeded, len(errors), dry_run),
        )
        result.audit_log_id = self._write_audit_log(result, submitter=submitter, source_file=source_file)

        logger.info(
            "import:batch:complete label=%s total=%s succeeded=%s failed=%s dry_run=%s audit=%s",
            batch_label,
            result.total,
            result.succeeded,
            result.failed,
            dry_run,
            result.audit_log_id,
        )
        return result

    def _run_rows(
        self,
        rows: Iterable[ImportRow],
        *,
        batch_label: Optional[str],
        submitter: str,
        dry_run: bool,
        token: Optional[str],
    ) -> list[ImportRowOutcome]:
        # Spare call workers let other rows' calls start while timed-out calls are still running.
        call_executor = ThreadPoolExecutor(max_workers=self._pool_size * 2, thread_name_prefix="import-call")
        processor = RowProcessor(
            self._configuration,
            self._approvals,
            call_executor=call_executor,
            timeout_seconds=self._timeout,
        )
        dry_run_state = DryRunState() if dry_run else None
        try:
            with ThreadPoolExecutor(max_workers=self._pool_size, thread_name_prefix="import-row") as workers:
                futures = [
                    workers.submit(
                        processor.process,
                        row,
                        submitter=submitter,
                        batch_label=batch_label,
                        token=token,
                        dry_run=dry_run,
                        dry_run_state=dry_run_state,
                    )
                    for row in rows
                ]
                return [future.result() for future in futures]
        finally:
            # Timed-out calls may still be running.
            call_executor.shutdown(wait=False, cancel_futures=True)

    @staticmethod
    def _summary(total: int, succeeded: int, failed: int, dry_run: bool) -> str:
        prefix = "Dry run: " if dry_run else ""
        if failed == 0:
            return f"{prefix}{succeeded} of {total} rows processed successfully"
        return f"{prefix}{succeeded} of {total} rows processed successfully, {failed} failed"

    def _write_audit_log(
        self,
        result: BatchResult,
        *,
        submitter: str,
        source_file: Optional[SourceFile],
    ):
        entry = ImportAuditLog(
            file_name=source_file.file_name if source_file else None,
            file_size_bytes=source_file.size_bytes if source_file else None,
            import_label=result.batch_label,
            imported_by=submitter,
            total_rows=result.total,
            success_count=result.succeeded,
            failure_count=result.failed,
            errors=[error.model_dump(mode="json") for error in result.errors],
            outcomes=[outcome.model_dump(mode="json") for outcome in result.outcomes],
            dry_run=result.dry_run,
        )
        with self._session_factory() as db:
            try:
                db.add(entry)
                db.commit()
            except Exception:
                db.rollback()
                logger.exception("import:audit:failed label=%s", result.batch_label)
                raise
            return entry.id


__all__ = ["BatchImportOrchestrator", "SourceFile", "build_collaborators"]
