from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from loader_governance.database import get_db
from loader_governance.models import ApprovalRequest
from loader_governance.routers.common import Caller, get_caller, raise_http_error
from loader_governance.schemas import (
    ApprovalActionRead,
    ApprovalRequestDetail,
    ApprovalRequestRead,
    ApprovalSubmitRequest,
    DecisionPayload,
    EntityType,
    PendingCountRead,
)
from loader_governance.services import approval_ledger
from loader_governance.services.collaborators import decide_change, submit_change
from loader_governance.services.errors import LoaderGovernanceError

router = APIRouter(prefix="/approvals", tags=["Approvals"])


def _get_request_or_404(request_id: UUID, db: Session) -> ApprovalRequest:
    request = approval_ledger.get_request(db, request_id)
    if not request:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Approval request not found")
    return request


@router.post("/submit", response_model=ApprovalRequestRead, status_code=status.HTTP_201_CREATED)
def submit_approval(
    payload: ApprovalSubmitRequest,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
) -> ApprovalRequestRead:
    submitter = caller.require_username()
    try:
        return submit_change(
            db,
            payload.entity_type.value,
            payload.entity_id,
            submitter,
            source=payload.source.value,
            request_type=payload.request_type.value,
            import_label=payload.import_label,
            change_summary=payload.change_summary,
        )
    except LoaderGovernanceError as exc:
        raise_http_error(exc)


@router.get("/pending", response_model=list[ApprovalRequestRead])
def list_pending_approvals(
    entity_type: Optional[EntityType] = None,
    db: Session = Depends(get_db),
) -> list[ApprovalRequestRead]:
    return approval_ledger.list_pending(db, entity_type.value if entity_type else None)


@router.get("/pending/count", response_model=PendingCountRead)
def count_pending_approvals(
    entity_type: Optional[EntityType] = None,
    db: Session = Depends(get_db),
) -> PendingCountRead:
    value = entity_type.value if entity_type else None
    return PendingCountRead(entity_type=value, pending=approval_ledger.count_pending(db, value))


@router.get("/history/{entity_type}/{entity_id}", response_model=list[ApprovalRequestRead])
def approval_history(
    entity_type: EntityType,
    entity_id: str,
    db: Session = Depends(get_db),
) -> list[ApprovalRequestRead]:
    return approval_ledger.history(db, entity_type.value, entity_id)


@router.get("/{request_id}", response_model=ApprovalRequestDetail)
def get_approval(request_id: UUID, db: Session = Depends(get_db)) -> ApprovalRequestDetail:
    return _get_request_or_404(request_id, db)


@router.get("/{request_id}/actions", response_model=list[ApprovalActionRead])
def list_approval_actions(request_id: UUID, db: Session = Depends(get_db)) -> list[ApprovalActionRead]:
    _get_request_or_404(request_id, db)
    return approval_ledger.list_actions(db, request_id)


def _decide(
    request_id: UUID,
    decision: str,
    payload: Optional[DecisionPayload],
    caller: Caller,
    db: Session,
) -> ApprovalRequest:
    actor = caller.require_username()
    _get_request_or_404(request_id, db)
    try:
        return decide_change(
            db,
            request_id,
            decision,
            actor,
            comment=payload.comment if payload else None,
            approver_roles=caller.roles,
        )
    except LoaderGovernanceError as exc:
        raise_http_error(exc)


@router.post("/{request_id}/approve", response_model=ApprovalRequestRead)
def approve_request(
    request_id: UUID,
    payload: Optional[DecisionPayload] = None,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
) -> ApprovalRequestRead:
    return _decide(request_id, "APPROVED", payload, caller, db)


@router.post("/{request_id}/reject", response_model=ApprovalRequestRead)
def reject_request(
    request_id: UUID,
    payload: DecisionPayload,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
) -> ApprovalRequestRead:
    return _decide(request_id, "REJECTED", payload, caller, db)


@router.post("/{request_id}/revoke", response_model=ApprovalRequestRead)
def revoke_request(
    request_id: UUID,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
) -> ApprovalRequestRead:
    return _decide(request_id, "REVOKED", None, caller, db)
