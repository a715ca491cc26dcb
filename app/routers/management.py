from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.auth import Principal, Role, require_role
from app.db import get_db
from app.dependencies import get_client_ip
from app.services.audit_service import DatabaseAuditRecorder, list_audit_entries
from app.services.reconciliation_service import find_discrepancies, repair_discrepancies

router = APIRouter(prefix='/management', tags=['management'])
admin_access = require_role(Role.ADMINISTRATOR)


@router.get('/reconciliation')
def reconciliation_report(
    _: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
):
    discrepancies = find_discrepancies(db)
    return {
        'count': len(discrepancies),
        'discrepancies': [item.to_dict() for item in discrepancies],
    }


@router.post('/reconciliation/repair')
def reconciliation_repair(
    request: Request,
    principal: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
):
    repaired = repair_discrepancies(
        db,
        actor_id=principal.id,
        audit=DatabaseAuditRecorder(db, ip=get_client_ip(request)),
    )
    db.commit()
    remaining = find_discrepancies(db)
    return {
        'repaired': [item.to_dict() for item in repaired],
        'remaining': [item.to_dict() for item in remaining],
    }


@router.get('/audit/{request_number}')
def audit_trail(
    request_number: str,
    _: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
):
    return list_audit_entries(db, request_number=request_number)
