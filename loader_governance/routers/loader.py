from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.orm import Session

from loader_governance.database import get_db
from loader_governance.models import LoaderConfiguration
from loader_governance.routers.common import Caller, get_caller, raise_http_error
from loader_governance.schemas import (
    LOADER_PAYLOAD_FIELDS,
    ApprovalRequestRead,
    DecisionPayload,
    LoaderConfigurationCreate,
    LoaderConfigurationRead,
    LoaderDraftCreate,
    LoaderDraftUpdate,
    LoaderExistsRead,
    SubmitPayload,
)
from loader_governance.services import version_lifecycle
from loader_governance.services.errors import LoaderGovernanceError
from loader_governance.services.spreadsheet import XLSX_MEDIA_TYPE, build_loader_export

router = APIRouter(tags=["Loaders"])

_PAYLOAD_FIELDS = set(LOADER_PAYLOAD_FIELDS)


def _get_version_or_404(version_id: UUID, db: Session) -> LoaderConfiguration:
    version = db.get(LoaderConfiguration, version_id)
    if not version:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Loader version not found")
    return version


@router.get("/loaders", response_model=list[LoaderConfigurationRead])
def list_loaders(
    enabled: Optional[bool] = None,
    db: Session = Depends(get_db),
) -> list[LoaderConfigurationRead]:
    return version_lifecycle.list_loaders(db, enabled=enabled)


@router.get("/loaders/export")
def export_loaders(db: Session = Depends(get_db)) -> Response:
    content = build_loader_export(version_lifecycle.list_loaders(db))
    return Response(
        content=content,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": 'attachment; filename="loaders.xlsx"'},
    )


@router.post("/loaders", response_model=LoaderConfigurationRead, status_code=status.HTTP_201_CREATED)
def create_loader(
    payload: LoaderConfigurationCreate,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
) -> LoaderConfigurationRead:
    author = caller.require_username()
    try:
        return version_lifecycle.create_direct(
            db,
            payload.loader_code,
            payload.model_dump(include=_PAYLOAD_FIELDS),
            author,
            change_type=payload.change_type,
            change_summary=payload.change_summary,
            import_label=payload.import_label,
        )
    except LoaderGovernanceError as exc:
        raise_http_error(exc)


@router.get("/loaders/{loader_code}", response_model=LoaderConfigurationRead)
def get_loader(loader_code: str, db: Session = Depends(get_db)) -> LoaderConfigurationRead:
    version = version_lifecycle.get_active_version(db, loader_code)
    if not version:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Loader not found")
    return version


@router.get("/loaders/{loader_code}/exists", response_model=LoaderExistsRead)
def loader_exists(loader_code: str, db: Session = Depends(get_db)) -> LoaderExistsRead:
    return LoaderExistsRead(
        loader_code=loader_code,
        exists=version_lifecycle.loader_exists(db, loader_code),
        has_working_copy=version_lifecycle.has_working_copy(db, loader_code),
    )


@router.get("/loaders/{loader_code}/versions", response_model=list[LoaderConfigurationRead])
def list_loader_versions(loader_code: str, db: Session = Depends(get_db)) -> list[LoaderConfigurationRead]:
    versions = version_lifecycle.list_versions(db, loader_code)
    if not versions:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Loader not found")
    return versions


@router.get("/loaders/{loader_code}/versions/{version_number}", response_model=LoaderConfigurationRead)
def get_loader_version(
    loader_code: str,
    version_number: int,
    db: Session = Depends(get_db),
) -> LoaderConfigurationRead:
    try:
        return version_lifecycle.get_version_by_number(db, loader_code, version_number)
    except LoaderGovernanceError as exc:
        raise_http_error(exc)


@router.get("/loaders/{loader_code}/draft", response_model=LoaderConfigurationRead)
def get_loader_draft(loader_code: str, db: Session = Depends(get_db)) -> LoaderConfigurationRead:
    version = version_lifecycle.get_working_copy(db, loader_code)
    if not version:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Loader has no draft or pending version")
    return version


@router.post(
    "/loaders/{loader_code}/drafts",
    response_model=LoaderConfigurationRead,
    status_code=status.HTTP_201_CREATED,
)
def create_loader_draft(
    loader_code: str,
    payload: LoaderDraftCreate,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
) -> LoaderConfigurationRead:
    author = caller.require_username()
    try:
        return version_lifecycle.create_draft(
            db,
            loader_code,
            payload.model_dump(exclude_unset=True, include=_PAYLOAD_FIELDS),
            author,
            change_type=payload.change_type,
            change_summary=payload.change_summary,
            import_label=payload.import_label,
        )
    except LoaderGovernanceError as exc:
        raise_http_error(exc)


@router.get("/loader-versions/{version_id}", response_model=LoaderConfigurationRead)
def get_loader_version_by_id(version_id: UUID, db: Session = Depends(get_db)) -> LoaderConfigurationRead:
    return _get_version_or_404(version_id, db)


@router.put("/loader-versions/{version_id}", response_model=LoaderConfigurationRead)
def update_loader_draft(
    version_id: UUID,
    payload: LoaderDraftUpdate,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
) -> LoaderConfigurationRead:
    editor = caller.require_username()
    _get_version_or_404(version_id, db)
    try:
        return version_lifecycle.update_draft(
            db,
            version_id,
            payload.model_dump(exclude_unset=True, include=_PAYLOAD_FIELDS),
            editor,
            change_summary=payload.change_summary,
        )
    except LoaderGovernanceError as exc:
        raise_http_error(exc)


@router.delete("/loader-versions/{version_id}", status_code=status.HTTP_204_NO_CONTENT)
def discard_loader_draft(
    version_id: UUID,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
) -> Response:
    actor = caller.require_username()
    _get_version_or_404(version_id, db)
    try:
        version_lifecycle.discard_draft(db, version_id, actor)
    except LoaderGovernanceError as exc:
        raise_http_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/loader-versions/{version_id}/submit", response_model=ApprovalRequestRead)
def submit_loader_version(
    version_id: UUID,
    payload: Optional[SubmitPayload] = None,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
) -> ApprovalRequestRead:
    submitter = caller.require_username()
    _get_version_or_404(version_id, db)
    try:
        return version_lifecycle.submit_for_approval(
            db,
            version_id,
            submitter,
            source="WEB_UI",
            change_summary=payload.change_summary if payload else None,
        )
    except LoaderGovernanceError as exc:
        raise_http_error(exc)


@router.post("/loader-versions/{version_id}/approve", response_model=LoaderConfigurationRead)
def approve_loader_version(
    version_id: UUID,
    payload: Optional[DecisionPayload] = None,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
) -> LoaderConfigurationRead:
    approver = caller.require_username()
    _get_version_or_404(version_id, db)
    try:
        return version_lifecycle.approve(
            db,
            version_id,
            approver,
            payload.comment if payload else None,
            approver_roles=caller.roles,
        )
    except LoaderGovernanceError as exc:
        raise_http_error(exc)


@router.post("/loader-versions/{version_id}/reject", response_model=LoaderConfigurationRead)
def reject_loader_version(
    version_id: UUID,
    payload: DecisionPayload,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
) -> LoaderConfigurationRead:
    approver = caller.require_username()
    _get_version_or_404(version_id, db)
    try:
        return version_lifecycle.reject(
            db,
            version_id,
            approver,
            payload.comment,
            approver_roles=caller.roles,
        )
    except LoaderGovernanceError as exc:
        raise_http_error(exc)


@router.post("/loader-versions/{version_id}/resubmit", response_model=ApprovalRequestRead)
def resubmit_loader_version(
    version_id: UUID,
    payload: Optional[SubmitPayload] = None,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
) -> ApprovalRequestRead:
    submitter = caller.require_username()
    _get_version_or_404(version_id, db)
    try:
        return version_lifecycle.resubmit(
            db,
            version_id,
            submitter,
            change_summary=payload.change_summary if payload else None,
        )
    except LoaderGovernanceError as exc:
        raise_http_error(exc)


@router.post("/loader-versions/{version_id}/revoke", response_model=LoaderConfigurationRead)
def revoke_loader_version(
    version_id: UUID,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
) -> LoaderConfigurationRead:
    submitter = caller.require_username()
    _get_version_or_404(version_id, db)
    try:
        return version_lifecycle.revoke(db, version_id, submitter)
    except LoaderGovernanceError as exc:
        raise_http_error(exc)


@router.post(
    "/loader-versions/{version_id}/restore",
    response_model=LoaderConfigurationRead,
    status_code=status.HTTP_201_CREATED,
)
def restore_loader_version(
    version_id: UUID,
    payload: Optional[SubmitPayload] = None,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
) -> LoaderConfigurationRead:
    author = caller.require_username()
    _get_version_or_404(version_id, db)
    try:
        return version_lifecycle.restore_from_archive(
            db,
            version_id,
            author,
            change_summary=payload.change_summary if payload else None,
        )
    except LoaderGovernanceError as exc:
        raise_http_error(exc)
