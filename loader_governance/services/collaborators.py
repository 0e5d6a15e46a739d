"""Configuration and approval services as seen by the import pipeline.

The importer talks to these through narrow interfaces so it can run against
the local database or against a remote deployment of this API (see
``service_clients``). Each local call opens its own session, which keeps
concurrent rows from sharing transactional state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Optional, Protocol
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from loader_governance.config import get_settings
from loader_governance.models import ApprovalRequest, LoaderConfiguration
from loader_governance.services import approval_ledger, version_lifecycle
from loader_governance.services.approval_policy import (
    ensure_can_decide,
    ensure_is_submitter,
    require_comment,
)
from loader_governance.services.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


@dataclass(frozen=True)
class ConfigurationRef:
    version_id: str
    loader_code: str
    version_number: int
    lifecycle_state: str

    @classmethod
    def from_version(cls, version: LoaderConfiguration) -> "ConfigurationRef":
        return cls(
            version_id=str(version.id),
            loader_code=version.loader_code,
            version_number=version.version_number,
            lifecycle_state=version.lifecycle_state,
        )


class ConfigurationService(Protocol):
    def exists(self, loader_code: str, *, token: Optional[str] = None) -> bool: ...

    def has_working_copy(self, loader_code: str, *, token: Optional[str] = None) -> bool: ...

    def create_direct(
        self,
        loader_code: str,
        payload: Mapping[str, Any],
        author: str,
        *,
        token: Optional[str] = None,
        import_label: Optional[str] = None,
    ) -> ConfigurationRef: ...

    def create_draft(
        self,
        loader_code: str,
        changes: Mapping[str, Any],
        author: str,
        *,
        token: Optional[str] = None,
        import_label: Optional[str] = None,
        change_type: str = "IMPORT_UPDATE",
    ) -> ConfigurationRef: ...

    def discard_draft(self, version_id: str, actor: str, *, token: Optional[str] = None) -> None: ...


class ApprovalService(Protocol):
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
    ) -> str: ...


class LocalConfigurationService:
    """Configuration service backed by this application's database."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def exists(self, loader_code: str, *, token: Optional[str] = None) -> bool:
        with self._session_factory() as db:
            return version_lifecycle.loader_exists(db, loader_code)

    def has_working_copy(self, loader_code: str, *, token: Optional[str] = None) -> bool:
        with self._session_factory() as db:
            return version_lifecycle.has_working_copy(db, loader_code)

    def create_direct(
        self,
        loader_code: str,
        payload: Mapping[str, Any],
        author: str,
        *,
        token: Optional[str] = None,
        import_label: Optional[str] = None,
    ) -> ConfigurationRef:
        with self._session_factory() as db:
            version = version_lifecycle.create_direct(
                db,
                loader_code,
                payload,
                author,
                change_type="IMPORT_CREATE",
                change_summary=f"Created by import {import_label}" if import_label else None,
                import_label=import_label,
            )
            return ConfigurationRef.from_version(version)

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
        with self._session_factory() as db:
            if not version_lifecycle.loader_exists(db, loader_code):
                raise NotFoundError(f"Loader {loader_code} does not exist")
            version = version_lifecycle.create_draft(
                db,
                loader_code,
                changes,
                author,
                change_type=change_type,
                change_summary=f"Updated by import {import_label}" if import_label else None,
                import_label=import_label,
            )
            return ConfigurationRef.from_version(version)

    def discard_draft(self, version_id: str, actor: str, *, token: Optional[str] = None) -> None:
        with self._session_factory() as db:
            version_lifecycle.discard_draft(db, UUID(str(version_id)), actor)


def submit_change(
    db: Session,
    entity_type: str,
    entity_id: str,
    submitter: str,
    *,
    approver_role: Optional[str] = None,
    source: str = "API",
    request_type: str = "UPDATE",
    import_label: Optional[str] = None,
    change_summary: Optional[str] = None,
) -> ApprovalRequest:
    """Open an approval request for any governed entity.

    Loader submissions go through the lifecycle engine so the version moves
    to PENDING together with its request; other entity types only get a
    ledger entry.
    """

    approver_role = approver_role or get_settings().approver_role
    if entity_type == version_lifecycle.LOADER_ENTITY:
        try:
            version_id = UUID(str(entity_id))
        except ValueError as exc:
            raise ValidationError(f"Invalid loader version id: {entity_id}", field="entity_id") from exc
        return version_lifecycle.submit_for_approval(
            db,
            version_id,
            submitter,
            source=source,
            approver_role=approver_role,
            change_summary=change_summary,
        )

    try:
        request = approval_ledger.open_request(
            db,
            entity_type=entity_type,
            entity_id=str(entity_id),
            requested_by=submitter,
            approver_role=approver_role,
            request_type=request_type,
            source=source,
            import_label=import_label,
            change_summary=change_summary,
        )
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError(f"{entity_type} {entity_id} already has a pending approval request") from exc
    except Exception:
        db.rollback()
        raise
    db.refresh(request)
    logger.info("approval:submit entity=%s:%s request=%s by=%s", entity_type, entity_id, request.id, submitter)
    return request


def decide_change(
    db: Session,
    request_id: UUID,
    decision: str,
    actor: str,
    *,
    comment: Optional[str] = None,
    approver_roles: Iterable[str] = (),
) -> ApprovalRequest:
    """Approve, reject or revoke a pending request by its id.

    Loader requests are routed to the lifecycle engine so the version state
    follows the decision.
    """

    request = approval_ledger.get_request(db, request_id)
    if request is None:
        raise NotFoundError(f"Approval request {request_id} not found")
    if request.status != "PENDING":
        raise InvalidStateError(f"Approval request {request_id} is {request.status}; only PENDING requests can be decided")

    if request.entity_type == version_lifecycle.LOADER_ENTITY:
        version_id = UUID(request.entity_id)
        if decision == "APPROVED":
            version_lifecycle.approve(db, version_id, actor, comment, approver_roles=approver_roles)
        elif decision == "REJECTED":
            version_lifecycle.reject(db, version_id, actor, comment, approver_roles=approver_roles)
        elif decision == "REVOKED":
            version_lifecycle.revoke(db, version_id, actor)
        else:
            raise ValueError(f"Unsupported approval decision: {decision}")
        db.refresh(request)
        return request

    try:
        if decision == "REVOKED":
            ensure_is_submitter(request, actor)
        else:
            ensure_can_decide(request, actor, approver_roles)
        if decision == "REJECTED":
            comment = require_comment(comment, action="reject")
        approval_ledger.record_decision(db, request, decision, actor, comment)
        db.commit()
    except (IntegrityError, StaleDataError) as exc:
        db.rollback()
        raise ConflictError(f"Approval request {request_id} was decided concurrently") from exc
    except Exception:
        db.rollback()
        raise
    db.refresh(request)
    return request


class LocalApprovalService:
    """Approval service backed by the local ledger."""

    def __init__(self, session_factory: SessionFactory, *, approver_role: Optional[str] = None) -> None:
        self._session_factory = session_factory
        self._approver_role = approver_role

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
        with self._session_factory() as db:
            request = submit_change(
                db,
                entity_type,
                entity_id,
                submitter,
                approver_role=self._approver_role,
                source=source,
                import_label=import_label,
                change_summary=change_summary,
            )
            return str(request.id)


__all__ = [
    "ApprovalService",
    "ConfigurationRef",
    "ConfigurationService",
    "LocalApprovalService",
    "LocalConfigurationService",
    "decide_change",
    "submit_change",
]
