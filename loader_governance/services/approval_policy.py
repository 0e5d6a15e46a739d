"""Maker-checker rules applied before a pending request is decided."""

from __future__ import annotations

from typing import Iterable, Optional

from loader_governance.models import ApprovalRequest
from loader_governance.services.errors import AuthorizationError, ValidationError


def normalize_roles(roles: Optional[Iterable[str]]) -> set[str]:
    return {role.strip().upper() for role in roles or () if role and role.strip()}


def ensure_can_decide(request: ApprovalRequest, approver: str, approver_roles: Iterable[str]) -> None:
    if not approver:
        raise AuthorizationError("An approver identity is required")
    if approver == request.requested_by:
        raise AuthorizationError(f"User {approver} cannot approve or reject their own submission")
    required = (request.approver_role or "").strip().upper()
    if required and required not in normalize_roles(approver_roles):
        raise AuthorizationError(f"Role {required} is required to decide this request")


def ensure_is_submitter(request: ApprovalRequest, actor: str) -> None:
    if actor != request.requested_by:
        raise AuthorizationError(f"Only the submitter {request.requested_by} may revoke this request")


def require_comment(comment: Optional[str], *, action: str) -> str:
    text = (comment or "").strip()
    if not text:
        raise ValidationError(f"A comment is required to {action}", field="comment")
    return text


__all__ = ["ensure_can_decide", "ensure_is_submitter", "normalize_roles", "require_comment"]
