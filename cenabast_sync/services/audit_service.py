from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from cenabast_sync.models import AuditLog


def log_audit(
    db: Session,
    *,
    action: str,
    actor: str = 'system',
    ip: str | None = None,
    metadata: dict | None = None,
) -> None:
    db.add(
        AuditLog(
            actor=actor,
            action=action,
            ip=ip,
            meta=metadata or {},
        )
    )


def recent_audit_entries(db: Session, *, limit: int = 10) -> list[AuditLog]:
    return db.execute(
        select(AuditLog).order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit)
    ).scalars().all()
