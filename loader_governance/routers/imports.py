import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, HTTPException, Response, UploadFile, status
from sqlalchemy.orm import Session, sessionmaker
from starlette.concurrency import run_in_threadpool

from loader_governance.config import get_settings
from loader_governance.database import get_db
from loader_governance.routers.common import Caller, get_caller, raise_http_error
from loader_governance.schemas import (
    BatchResult,
    ImportAuditLogDetail,
    ImportAuditLogRead,
    ImportErrorEntry,
)
from loader_governance.services import import_audit
from loader_governance.services.errors import LoaderGovernanceError
from loader_governance.services.import_orchestrator import BatchImportOrchestrator
from loader_governance.services.spreadsheet import (
    XLSX_MEDIA_TYPE,
    build_error_report,
    build_import_template,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/imports", tags=["Imports"])


def get_import_orchestrator(db: Session = Depends(get_db)) -> BatchImportOrchestrator:
    session_factory = sessionmaker(bind=db.get_bind(), autocommit=False, autoflush=False, future=True)
    return BatchImportOrchestrator(session_factory)


async def _read_upload_bytes(upload: UploadFile) -> bytes:
    data = await upload.read()
    if not data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Uploaded file is empty.")
    limit = get_settings().import_max_upload_bytes
    if len(data) > limit:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Uploaded file exceeds the {limit} byte size limit.",
        )
    return data


async def _run_import(
    file: UploadFile,
    import_label: Optional[str],
    dry_run: bool,
    caller: Caller,
    orchestrator: BatchImportOrchestrator,
) -> BatchResult:
    submitter = caller.require_username()
    data = await _read_upload_bytes(file)
    await file.close()
    logger.info(
        "import:upload file=%s bytes=%s label=%s dry_run=%s by=%s",
        file.filename,
        len(data),
        import_label,
        dry_run,
        submitter,
    )
    try:
        return await run_in_threadpool(
            orchestrator.import_file,
            data,
            file.filename,
            batch_label=(import_label or "").strip() or None,
            submitter=submitter,
            dry_run=dry_run,
            token=caller.token,
        )
    except LoaderGovernanceError as exc:
        raise_http_error(exc)


@router.post("/upload", response_model=BatchResult)
async def upload_import(
    file: UploadFile = File(...),
    import_label: Optional[str] = Form(None),
    dry_run: bool = Form(False),
    caller: Caller = Depends(get_caller),
    orchestrator: BatchImportOrchestrator = Depends(get_import_orchestrator),
) -> BatchResult:
    return await _run_import(file, import_label, dry_run, caller, orchestrator)


@router.post("/validate", response_model=BatchResult)
async def validate_import(
    file: UploadFile = File(...),
    import_label: Optional[str] = Form(None),
    caller: Caller = Depends(get_caller),
    orchestrator: BatchImportOrchestrator = Depends(get_import_orchestrator),
) -> BatchResult:
    return await _run_import(file, import_label, True, caller, orchestrator)


@router.get("/template")
def download_template() -> Response:
    return Response(
        content=build_import_template(),
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": 'attachment; filename="loader_import_template.xlsx"'},
    )


@router.get("/audit-logs", response_model=list[ImportAuditLogRead])
def list_audit_logs(
    imported_by: Optional[str] = None,
    imported_from: Optional[datetime] = None,
    imported_to: Optional[datetime] = None,
    import_label: Optional[str] = None,
    dry_run: Optional[bool] = None,
    limit: int = 100,
    offset: int = 0,
    db: Session = Depends(get_db),
) -> list[ImportAuditLogRead]:
    return import_audit.search_audit_logs(
        db,
        imported_by=imported_by,
        imported_from=imported_from,
        imported_to=imported_to,
        import_label=import_label,
        dry_run=dry_run,
        limit=max(1, min(limit, 500)),
        offset=max(0, offset),
    )


@router.get("/audit-logs/{audit_log_id}", response_model=ImportAuditLogDetail)
def get_audit_log(audit_log_id: UUID, db: Session = Depends(get_db)) -> ImportAuditLogDetail:
    try:
        return import_audit.get_audit_log(db, audit_log_id)
    except LoaderGovernanceError as exc:
        raise_http_error(exc)


@router.get("/audit-logs/{audit_log_id}/error-report")
def download_error_report(audit_log_id: UUID, db: Session = Depends(get_db)) -> Response:
    try:
        entry = import_audit.get_audit_log(db, audit_log_id)
    except LoaderGovernanceError as exc:
        raise_http_error(exc)
    errors = [ImportErrorEntry.model_validate(item) for item in entry.errors or []]
    return Response(
        content=build_error_report(errors),
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="import_errors_{audit_log_id}.xlsx"'},
    )
