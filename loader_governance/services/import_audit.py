"""Read-only queries over past import batches."""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from loader_governance.models import ImportAuditLog
from loader_governance.services.errors import NotFoundError


def get_audit_log(db: Session, audit_log_id: UUID) -> ImportAuditLog:
    entry = db.get(ImportAuditLog, audit_log_id)
    if entry is None:
        raise NotFoundError(f"Import audit log {audit_log_id} not found")
    return entry


def search_audit_logs(
    db: Session,
    *,
    imported_by: Optional[str] = None,
    imported_from: Optional[datetime] = None,
    imported_to: Optional[datetime] = None,
    import_label: Optional[str] = None,
    dry_run: Optional[bool] = None,
    limit: int = 100,
    offset: int = 0,
) -> list[ImportAuditLog]:
    stmt = select(ImportAuditLog)
    if imported_by:
        stmt = stmt.where(ImportAuditLog.imported_by == imported_by)
    if imported_from is not None:
        stmt = stmt.where(ImportAuditLog.imported_at >= imported_from)
    if imported_to is not None:
        stmt = stmt.where(ImportAuditLog.imported_at <= imported_to)
    if import_label:
        stmt = stmt.where(ImportAuditLog.import_label.ilike(f"%{import_label}%"))
    if dry_run is not None:
        stmt = stmt.where(ImportAuditLog.dry_run == dry_run)
    stmt = stmt.order_by(ImportAuditLog.imported_at.desc()).offset(offset).limit(limit)
    return list(db.execute(stmt).scalars().all())


__all__ = ["get_audit_log", "search_audit_logs"]
