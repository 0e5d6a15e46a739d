"""Bookkeeping for approval requests and their decisions.

The ledger knows nothing about loaders: a request points at its subject
through the ``(entity_type, entity_id)`` pair. Callers own the transaction;
functions here only add and flush.
"""

from __future__ import annotations

import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from loader_governance.models import ApprovalAction, ApprovalRequest, utc_now
from loader_governance.services.errors import InvalidStateError

logger = logging.getLogger(__name__)

_DECISION_ACTIONS = {
    "APPROVED": "APPROVE",
    "REJECTED": "REJECT",
    "REVOKED": "REVOKE",
}


def _record_action(
    db: Session,
    request: ApprovalRequest,
    action_type: str,
    actor: str,
    justification: Optional[str],
    previous_status: Optional[str],
    new_status: str,
) -> ApprovalAction:
    action = ApprovalAction(
        approval_request_id=request.id,
        action_type=action_type,
        action_by=actor,
        action_at=utc_now(),
        justification=justification,
        previous_status=previous_status,
        new_status=new_status,
    )
    db.add(action)
    return action


def open_request(
    db: Session,
    *,
    entity_type: str,
    entity_id: str,
    requested_by: str,
    approver_role: str,
    request_type: str = "UPDATE",
    source: str = "WEB_UI",
    import_label: Optional[str] = None,
    change_summary: Optional[str] = None,
    resubmission: bool = False,
) -> ApprovalRequest:
    """Create a PENDING request. A second pending request for the same entity fails at flush."""

    request = ApprovalRequest(
        entity_type=entity_type,
        entity_id=str(entity_id),
        request_type=request_type,
        source=source,
        import_label=import_label,
        change_summary=change_summary,
        requested_by=requested_by,
        requested_at=utc_now(),
        approver_role=approver_role,
        status="PENDING",
    )
    db.add(request)
    db.flush()
    _record_action(
        db,
        request,
        "RESUBMIT" if resubmission else "SUBMIT",
        requested_by,
        change_summary,
        None,
        "PENDING",
    )
    db.flush()
    logger.info(
        "approval:open entity=%s:%s request=%s by=%s",
        entity_type,
        entity_id,
        request.id,
        requested_by,
    )
    return request


def record_decision(
    db: Session,
    request: ApprovalRequest,
    status: str,
    decided_by: str,
    comment: Optional[str] = None,
) -> ApprovalRequest:
    """Close a PENDING request as APPROVED, REJECTED or REVOKED."""

    if status not in _DECISION_ACTIONS:
        raise ValueError(f"Unsupported approval decision: {status}")
    if request.status != "PENDING":
        raise InvalidStateError(
            f"Approval request {request.id} is {request.status}; only PENDING requests can be decided"
        )

    previous_status = request.status
    request.status = status
    request.decided_by = decided_by
    request.decided_at = utc_now()
    request.comment = comment
    _record_action(db, request, _DECISION_ACTIONS[status], decided_by, comment, previous_status, status)
    db.flush()
    logger.info("approval:decide request=%s status=%s by=%s", request.id, status, decided_by)
    return request


def get_request(db: Session, request_id: UUID) -> Optional[ApprovalRequest]:
    return db.get(ApprovalRequest, request_id)


def get_pending_request(db: Session, entity_type: str, entity_id: str) -> Optional[ApprovalRequest]:
    stmt = select(ApprovalRequest).where(
        ApprovalRequest.entity_type == entity_type,
        ApprovalRequest.entity_id == str(entity_id),
        ApprovalRequest.status == "PENDING",
    )
    return db.execute(stmt).scalars().first()


def get_latest_request(db: Session, entity_type: str, entity_id: str) -> Optional[ApprovalRequest]:
    stmt = (
        select(ApprovalRequest)
        .where(
            ApprovalRequest.entity_type == entity_type,
            ApprovalRequest.entity_id == str(entity_id),
        )
        .order_by(ApprovalRequest.requested_at.desc())
        .limit(1)
    )
    return db.execute(stmt).scalars().first()


def list_pending(db: Session, entity_type: Optional[str] = None) -> list[ApprovalRequest]:
    stmt = select(ApprovalRequest).where(ApprovalRequest.status == "PENDING")
    if entity_type:
        stmt = stmt.where(ApprovalRequest.entity_type == entity_type)
    stmt = stmt.order_by(ApprovalRequest.requested_at.asc())
    return list(db.execute(stmt).scalars().all())


def count_pending(db: Session, entity_type: Optional[str] = None) -> int:
    stmt = select(func.count(ApprovalRequest.id)).where(ApprovalRequest.status == "PENDING")
    if entity_type:
        stmt = stmt.where(ApprovalRequest.entity_type == entity_type)
    return int(db.execute(stmt).scalar_one())


def history(db: Session, entity_type: str, entity_id: str) -> list[ApprovalRequest]:
    stmt = (
        select(ApprovalRequest)
        .where(
            ApprovalRequest.entity_type == entity_type,
            ApprovalRequest.entity_id == str(entity_id),
        )
        .order_by(ApprovalRequest.requested_at.asc())
    )
    return list(db.execute(stmt).scalars().all())


def list_actions(db: Session, request_id: UUID) -> list[ApprovalAction]:
    stmt = (
        select(ApprovalAction)
        .where(ApprovalAction.approval_request_id == request_id)
        .order_by(ApprovalAction.action_at.asc())
    )
    return list(db.execute(stmt).scalars().all())


__all__ = [
    "count_pending",
    "get_latest_request",
    "get_pending_request",
    "get_request",
    "history",
    "list_actions",
    "list_pending",
    "open_request",
    "record_decision",
]
