"""Versioned lifecycle of loader configurations.

Each loader code has at most one ACTIVE version and at most one working copy
(a DRAFT or PENDING version). The database enforces both limits through
partial unique indexes; violations detected there, or by the optimistic row
counter, surface as ``ConflictError`` exactly like the logical pre-checks.

State machine::

    DRAFT --submit--> PENDING --approve--> ACTIVE --(next approve)--> ARCHIVED
    PENDING --reject/revoke--> DRAFT
    ARCHIVED --restore--> new DRAFT

Every public mutation commits its own transaction.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterable, Iterator, Mapping, Optional
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, StatementError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from loader_governance.config import get_settings
from loader_governance.models import LoaderConfiguration, WORKING_COPY_STATES, utc_now
from loader_governance.schemas import LOADER_PAYLOAD_FIELDS, LoaderPayload, LoaderPayloadUpdate
from loader_governance.services import approval_ledger
from loader_governance.services.approval_policy import (
    ensure_can_decide,
    ensure_is_submitter,
    require_comment,
)
from loader_governance.services.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from loader_governance.services.field_protection import drop_unchanged, unwrap_encryption_error

logger = logging.getLogger(__name__)

LOADER_ENTITY = "LOADER"


@contextmanager
def _transaction(db: Session, operation: str, loader_code: str) -> Iterator[None]:
    try:
        yield
        db.commit()
    except (IntegrityError, StaleDataError) as exc:
        db.rollback()
        logger.info("lifecycle:%s:conflict loader=%s", operation, loader_code)
        raise ConflictError(
            f"Loader {loader_code} was changed concurrently; its active or working version already exists"
        ) from exc
    except StatementError as exc:
        db.rollback()
        encryption_error = unwrap_encryption_error(exc)
        if encryption_error is not None:
            raise encryption_error from exc
        raise
    except Exception:
        db.rollback()
        raise


def _pydantic_message(exc: PydanticValidationError) -> tuple[str, Optional[str]]:
    first = exc.errors()[0]
    location = [str(part) for part in first.get("loc", ()) if part != "__root__"]
    field = location[0] if location else None
    message = first.get("msg", "Invalid value")
    if message.startswith("Value error, "):
        message = message[len("Value error, ") :]
    return (f"{field}: {message}" if field else message), field


def validate_payload(values: Mapping[str, Any]) -> dict[str, Any]:
    """Validate a complete loader payload and return it normalized."""

    try:
        return LoaderPayload.model_validate(dict(values)).model_dump()
    except PydanticValidationError as exc:
        message, field = _pydantic_message(exc)
        raise ValidationError(message, field=field) from exc


def validate_changes(values: Mapping[str, Any]) -> dict[str, Any]:
    """Validate a partial payload, keeping only the keys that were supplied."""

    unknown = sorted(set(values) - set(LOADER_PAYLOAD_FIELDS))
    if unknown:
        raise ValidationError(f"Unknown loader attributes: {', '.join(unknown)}", field=unknown[0])
    try:
        model = LoaderPayloadUpdate.model_validate(dict(values))
    except PydanticValidationError as exc:
        message, field = _pydantic_message(exc)
        raise ValidationError(message, field=field) from exc
    return model.model_dump(include=set(values))


def payload_of(version: LoaderConfiguration) -> dict[str, Any]:
    return {name: getattr(version, name) for name in LOADER_PAYLOAD_FIELDS}


def _merge(base: Optional[Mapping[str, Any]], changes: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base or {})
    merged.update(validate_changes(drop_unchanged(changes)))
    return validate_payload(merged)


def _apply_payload(version: LoaderConfiguration, payload: Mapping[str, Any]) -> None:
    for name in LOADER_PAYLOAD_FIELDS:
        setattr(version, name, payload.get(name))


def _require_state(version: LoaderConfiguration, *states: str, action: str) -> None:
    if version.lifecycle_state not in states:
        expected = " or ".join(states)
        raise InvalidStateError(
            f"Cannot {action} {version.loader_code} v{version.version_number}:"
            f" state is {version.lifecycle_state}, expected {expected}"
        )


def _next_version_number(db: Session, loader_code: str) -> int:
    stmt = select(func.max(LoaderConfiguration.version_number)).where(
        LoaderConfiguration.loader_code == loader_code
    )
    current = db.execute(stmt).scalar()
    return (current or 0) + 1


# Queries


def get_version(db: Session, version_id: UUID) -> LoaderConfiguration:
    version = db.get(LoaderConfiguration, version_id)
    if version is None:
        raise NotFoundError(f"Loader version {version_id} not found")
    return version


def get_version_by_number(db: Session, loader_code: str, version_number: int) -> LoaderConfiguration:
    stmt = select(LoaderConfiguration).where(
        LoaderConfiguration.loader_code == loader_code,
        LoaderConfiguration.version_number == version_number,
    )
    version = db.execute(stmt).scalars().first()
    if version is None:
        raise NotFoundError(f"Loader {loader_code} has no version {version_number}")
    return version


def get_active_version(db: Session, loader_code: str) -> Optional[LoaderConfiguration]:
    stmt = select(LoaderConfiguration).where(
        LoaderConfiguration.loader_code == loader_code,
        LoaderConfiguration.lifecycle_state == "ACTIVE",
    )
    return db.execute(stmt).scalars().first()


def get_working_copy(db: Session, loader_code: str) -> Optional[LoaderConfiguration]:
    stmt = select(LoaderConfiguration).where(
        LoaderConfiguration.loader_code == loader_code,
        LoaderConfiguration.lifecycle_state.in_(WORKING_COPY_STATES),
    )
    return db.execute(stmt).scalars().first()


def list_versions(db: Session, loader_code: str) -> list[LoaderConfiguration]:
    stmt = (
        select(LoaderConfiguration)
        .where(LoaderConfiguration.loader_code == loader_code)
        .order_by(LoaderConfiguration.version_number.desc())
    )
    return list(db.execute(stmt).scalars().all())


def list_loaders(db: Session, *, enabled: Optional[bool] = None) -> list[LoaderConfiguration]:
    stmt = select(LoaderConfiguration).where(LoaderConfiguration.lifecycle_state == "ACTIVE")
    if enabled is not None:
        stmt = stmt.where(LoaderConfiguration.enabled == enabled)
    stmt = stmt.order_by(LoaderConfiguration.loader_code.asc())
    return list(db.execute(stmt).scalars().all())


def loader_exists(db: Session, loader_code: str) -> bool:
    stmt = select(LoaderConfiguration.id).where(LoaderConfiguration.loader_code == loader_code).limit(1)
    return db.execute(stmt).first() is not None


def has_working_copy(db: Session, loader_code: str) -> bool:
    stmt = (
        select(LoaderConfiguration.id)
        .where(
            LoaderConfiguration.loader_code == loader_code,
            LoaderConfiguration.lifecycle_state.in_(WORKING_COPY_STATES),
        )
        .limit(1)
    )
    return db.execute(stmt).first() is not None


# Mutations


def _insert_draft(
    db: Session,
    loader_code: str,
    payload: Mapping[str, Any],
    author: str,
    *,
    change_type: str,
    change_summary: Optional[str],
    import_label: Optional[str],
    restored_from: Optional[LoaderConfiguration] = None,
) -> LoaderConfiguration:
    if get_working_copy(db, loader_code) is not None:
        raise ConflictError(f"Loader {loader_code} already has a draft or pending version")

    active = get_active_version(db, loader_code)
    base = payload_of(active) if active is not None else None
    if restored_from is not None:
        merged = validate_payload(payload)
    else:
        merged = _merge(base, payload)

    version = LoaderConfiguration(
        loader_code=loader_code,
        version_number=_next_version_number(db, loader_code),
        lifecycle_state="DRAFT",
        change_type=change_type,
        change_summary=change_summary,
        import_label=import_label,
        supersedes_version_id=active.id if active is not None else None,
        restored_from_version_id=restored_from.id if restored_from is not None else None,
        created_by=author,
        modified_by=author,
    )
    _apply_payload(version, merged)
    db.add(version)
    db.flush()
    return version


def create_draft(
    db: Session,
    loader_code: str,
    payload: Mapping[str, Any],
    author: str,
    *,
    change_type: str = "MANUAL_EDIT",
    change_summary: Optional[str] = None,
    import_label: Optional[str] = None,
) -> LoaderConfiguration:
    """Open a working copy for ``loader_code``.

    ``payload`` may be partial when an ACTIVE version exists; missing
    attributes are carried over from it. Protected attributes holding the
    placeholder keep their current value.
    """

    with _transaction(db, "create-draft", loader_code):
        version = _insert_draft(
            db,
            loader_code,
            payload,
            author,
            change_type=change_type,
            change_summary=change_summary,
            import_label=import_label,
        )
    db.refresh(version)
    logger.info(
        "lifecycle:create-draft loader=%s version=%s by=%s",
        loader_code,
        version.version_number,
        author,
    )
    return version


def create_direct(
    db: Session,
    loader_code: str,
    payload: Mapping[str, Any],
    author: str,
    *,
    change_type: str = "IMPORT_CREATE",
    change_summary: Optional[str] = None,
    import_label: Optional[str] = None,
) -> LoaderConfiguration:
    """Create version 1 of a brand-new loader directly in the ACTIVE state."""

    with _transaction(db, "create-direct", loader_code):
        if loader_exists(db, loader_code):
            raise ConflictError(f"Loader {loader_code} already exists")
        version = LoaderConfiguration(
            loader_code=loader_code,
            version_number=1,
            lifecycle_state="ACTIVE",
            change_type=change_type,
            change_summary=change_summary,
            import_label=import_label,
            created_by=author,
            modified_by=author,
            approved_by=author,
            approved_at=utc_now(),
        )
        _apply_payload(version, validate_payload(drop_unchanged(payload)))
        db.add(version)
        db.flush()
    db.refresh(version)
    logger.info("lifecycle:create-direct loader=%s by=%s", loader_code, author)
    return version


def update_draft(
    db: Session,
    version_id: UUID,
    changes: Mapping[str, Any],
    editor: str,
    *,
    change_summary: Optional[str] = None,
) -> LoaderConfiguration:
    version = get_version(db, version_id)
    with _transaction(db, "update-draft", version.loader_code):
        _require_state(version, "DRAFT", action="edit")
        merged = _merge(payload_of(version), changes)
        _apply_payload(version, merged)
        version.modified_by = editor
        if change_summary is not None:
            version.change_summary = change_summary
    db.refresh(version)
    logger.info("lifecycle:update-draft loader=%s version=%s by=%s", version.loader_code, version.version_number, editor)
    return version


def discard_draft(db: Session, version_id: UUID, actor: str) -> None:
    version = get_version(db, version_id)
    loader_code, number = version.loader_code, version.version_number
    with _transaction(db, "discard-draft", loader_code):
        _require_state(version, "DRAFT", action="discard")
        db.delete(version)
    logger.info("lifecycle:discard-draft loader=%s version=%s by=%s", loader_code, number, actor)


def submit_for_approval(
    db: Session,
    version_id: UUID,
    submitter: str,
    *,
    source: str = "WEB_UI",
    approver_role: Optional[str] = None,
    change_summary: Optional[str] = None,
):
    """Move a DRAFT to PENDING and open its approval request.

    Returns the new ``ApprovalRequest``. Drafts whose last request was
    rejected must go through :func:`resubmit` instead.
    """

    version = get_version(db, version_id)
    with _transaction(db, "submit", version.loader_code):
        _require_state(version, "DRAFT", action="submit")
        latest = approval_ledger.get_latest_request(db, LOADER_ENTITY, str(version.id))
        if latest is not None and latest.status == "REJECTED":
            raise InvalidStateError(
                f"{version.loader_code} v{version.version_number} was rejected; use resubmit"
            )
        request_type = "UPDATE" if get_active_version(db, version.loader_code) is not None else "CREATE"
        version.lifecycle_state = "PENDING"
        version.modified_by = submitter
        db.flush()
        request = approval_ledger.open_request(
            db,
            entity_type=LOADER_ENTITY,
            entity_id=str(version.id),
            requested_by=submitter,
            approver_role=approver_role or get_settings().approver_role,
            request_type=request_type,
            source=source,
            import_label=version.import_label,
            change_summary=change_summary or version.change_summary,
        )
    db.refresh(request)
    logger.info(
        "lifecycle:submit loader=%s version=%s request=%s by=%s",
        version.loader_code,
        version.version_number,
        request.id,
        submitter,
    )
    return request


def approve(
    db: Session,
    version_id: UUID,
    approver: str,
    comment: Optional[str] = None,
    *,
    approver_roles: Iterable[str],
) -> LoaderConfiguration:
    """Promote a PENDING version; the previous ACTIVE version is archived in the same commit."""

    version = get_version(db, version_id)
    with _transaction(db, "approve", version.loader_code):
        _require_state(version, "PENDING", action="approve")
        request = approval_ledger.get_pending_request(db, LOADER_ENTITY, str(version.id))
        if request is None:
            raise InvalidStateError(f"No pending approval request for {version.loader_code} v{version.version_number}")
        ensure_can_decide(request, approver, approver_roles)

        now = utc_now()
        previous = get_active_version(db, version.loader_code)
        if previous is not None:
            previous.lifecycle_state = "ARCHIVED"
            previous.archived_by = approver
            previous.archived_at = now
            db.flush()

        version.lifecycle_state = "ACTIVE"
        version.approved_by = approver
        version.approved_at = now
        version.modified_by = approver
        if comment:
            summary = version.change_summary or ""
            version.change_summary = f"{summary}\n[Approval Comments] {comment}".lstrip("\n")
        db.flush()
        approval_ledger.record_decision(db, request, "APPROVED", approver, comment)
    db.refresh(version)
    logger.info(
        "lifecycle:approve loader=%s version=%s archived=%s by=%s",
        version.loader_code,
        version.version_number,
        previous.version_number if previous is not None else None,
        approver,
    )
    return version


def reject(
    db: Session,
    version_id: UUID,
    approver: str,
    comment: Optional[str],
    *,
    approver_roles: Iterable[str],
) -> LoaderConfiguration:
    """Send a PENDING version back to DRAFT; a comment is mandatory."""

    version = get_version(db, version_id)
    with _transaction(db, "reject", version.loader_code):
        _require_state(version, "PENDING", action="reject")
        reason = require_comment(comment, action="reject")
        request = approval_ledger.get_pending_request(db, LOADER_ENTITY, str(version.id))
        if request is None:
            raise InvalidStateError(f"No pending approval request for {version.loader_code} v{version.version_number}")
        ensure_can_decide(request, approver, approver_roles)

        version.lifecycle_state = "DRAFT"
        version.modified_by = approver
        db.flush()
        approval_ledger.record_decision(db, request, "REJECTED", approver, reason)
    db.refresh(version)
    logger.info("lifecycle:reject loader=%s version=%s by=%s", version.loader_code, version.version_number, approver)
    return version


def resubmit(
    db: Session,
    version_id: UUID,
    submitter: str,
    *,
    change_summary: Optional[str] = None,
):
    """Re-enter PENDING after a rejection with a fresh approval request."""

    version = get_version(db, version_id)
    with _transaction(db, "resubmit", version.loader_code):
        _require_state(version, "DRAFT", action="resubmit")
        latest = approval_ledger.get_latest_request(db, LOADER_ENTITY, str(version.id))
        if latest is None or latest.status != "REJECTED":
            raise InvalidStateError(
                f"{version.loader_code} v{version.version_number} has no rejected request to resubmit"
            )
        version.lifecycle_state = "PENDING"
        version.modified_by = submitter
        db.flush()
        request = approval_ledger.open_request(
            db,
            entity_type=LOADER_ENTITY,
            entity_id=str(version.id),
            requested_by=submitter,
            approver_role=latest.approver_role,
            request_type=latest.request_type,
            source=latest.source,
            import_label=latest.import_label,
            change_summary=change_summary or latest.change_summary,
            resubmission=True,
        )
    db.refresh(request)
    logger.info(
        "lifecycle:resubmit loader=%s version=%s request=%s by=%s",
        version.loader_code,
        version.version_number,
        request.id,
        submitter,
    )
    return request


def revoke(db: Session, version_id: UUID, submitter: str) -> LoaderConfiguration:
    """Let the submitter withdraw a PENDING version before it is decided."""

    version = get_version(db, version_id)
    with _transaction(db, "revoke", version.loader_code):
        _require_state(version, "PENDING", action="revoke")
        request = approval_ledger.get_pending_request(db, LOADER_ENTITY, str(version.id))
        if request is None:
            raise InvalidStateError(f"No pending approval request for {version.loader_code} v{version.version_number}")
        ensure_is_submitter(request, submitter)

        version.lifecycle_state = "DRAFT"
        version.modified_by = submitter
        db.flush()
        approval_ledger.record_decision(db, request, "REVOKED", submitter)
    db.refresh(version)
    logger.info("lifecycle:revoke loader=%s version=%s by=%s", version.loader_code, version.version_number, submitter)
    return version


def restore_from_archive(
    db: Session,
    archived_version_id: UUID,
    author: str,
    *,
    change_summary: Optional[str] = None,
) -> LoaderConfiguration:
    """Copy an ARCHIVED payload into a new DRAFT that must be approved again."""

    source = get_version(db, archived_version_id)
    with _transaction(db, "restore", source.loader_code):
        _require_state(source, "ARCHIVED", action="restore")
        version = _insert_draft(
            db,
            source.loader_code,
            payload_of(source),
            author,
            change_type="ROLLBACK",
            change_summary=change_summary or f"Restored from version {source.version_number}",
            import_label=None,
            restored_from=source,
        )
    db.refresh(version)
    logger.info(
        "lifecycle:restore loader=%s from=%s version=%s by=%s",
        source.loader_code,
        source.version_number,
        version.version_number,
        author,
    )
    return version


__all__ = [
    "LOADER_ENTITY",
    "approve",
    "create_direct",
    "create_draft",
    "discard_draft",
    "get_active_version",
    "get_version",
    "get_version_by_number",
    "get_working_copy",
    "has_working_copy",
    "list_loaders",
    "list_versions",
    "loader_exists",
    "payload_of",
    "reject",
    "restore_from_archive",
    "resubmit",
    "revoke",
    "submit_for_approval",
    "update_draft",
    "validate_changes",
    "validate_payload",
]
