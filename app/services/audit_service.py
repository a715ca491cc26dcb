from __future__ import annotations

import logging
from datetime import datetime
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models import AuditLog

logger = logging.getLogger(__name__)


class AuditRecorder(Protocol):
    def record_transition(self, request_number: str, action: str, actor_id: int, timestamp: datetime) -> None:
        ...


def log_audit(
    db: Session,
    *,
    actor_principal_id: int | None,
    action: str,
    request_number: str | None,
    ip: str | None = None,
    metadata: dict | None = None,
) -> None:
    db.add(
        AuditLog(
            actor_principal_id=actor_principal_id,
            action=action,
            request_number=request_number,
            ip=ip,
            meta=metadata or {},
        )
    )


class DatabaseAuditRecorder:
    """Writes transitions to ``audit_log`` in a savepoint of the caller's session."""

    def __init__(self, db: Session, *, ip: str | None = None) -> None:
        self.db = db
        self.ip = ip

    def record_transition(self, request_number: str, action: str, actor_id: int, timestamp: datetime) -> None:
        with self.db.begin_nested():
            log_audit(
                self.db,
                actor_principal_id=actor_id,
                action=f'CHANGE_REQUEST_{action.upper()}',
                request_number=request_number,
                ip=self.ip,
                metadata={'transition': action, 'at': timestamp.isoformat()},
            )


def notify_best_effort(
    recorder: AuditRecorder | None,
    *,
    request_number: str,
    action: str,
    actor_id: int,
    timestamp: datetime,
) -> bool:
    if recorder is None:
        return False
    try:
        recorder.record_transition(request_number, action, actor_id, timestamp)
    except Exception:
        # Audit is advisory: the transition itself has already been applied.
        logger.warning(
            'Audit recording failed',
            exc_info=True,
            extra={'request_number': request_number, 'action': action, 'actor_id': actor_id},
        )
        return False
    return True


def list_audit_entries(db: Session, *, request_number: str) -> list[dict]:
    rows = db.execute(
        select(AuditLog).where(AuditLog.request_number == request_number).order_by(AuditLog.id.asc())
    ).scalars().all()
    return [
        {
            'id': row.id,
            'action': row.action,
            'actor_principal_id': row.actor_principal_id,
            'metadata': row.meta,
            'created_at': row.created_at,
        }
        for row in rows
    ]
