from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from app.auth import IdentityContext, Principal, get_current_principal, get_identity
from app.db import get_db
from app.dependencies import get_client_ip
from app.errors import ValidationError
from app.models import ChangeStatus, RequestKind
from app.services import form_service, ledger_service, workflow_service
from app.services.audit_service import DatabaseAuditRecorder
from app.services.workflow_service import TransitionResult

router = APIRouter(prefix='/change-requests', tags=['change-requests'])

KIND_BY_SLUG = {
    'hardware': RequestKind.HARDWARE,
    'software': RequestKind.SOFTWARE,
    'system-plan': RequestKind.SYSTEM_PLAN,
    'security-review': RequestKind.SECURITY_REVIEW,
}


class CommonIn(BaseModel):
    ship_id: int | None = None
    department: str | None = Field(default=None, max_length=100)
    position_title: str | None = Field(default=None, max_length=100)
    requester_name: str | None = Field(default=None, max_length=100)
    reason: str | None = Field(default=None, max_length=1000)


class FormIn(BaseModel):
    request_number: str | None = None
    common: CommonIn = Field(default_factory=CommonIn)
    fields: dict[str, Any] = Field(default_factory=dict)


class DecisionIn(BaseModel):
    comment: str | None = Field(default=None, max_length=1000)


def _kind(slug: str) -> RequestKind:
    kind = KIND_BY_SLUG.get(slug)
    if kind is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f'Unknown form kind {slug}')
    return kind


def _build_fields(kind: RequestKind, data: dict[str, Any], request_number: str | None) -> form_service.FormFields:
    try:
        return TypeAdapter(form_service.FIELD_BAGS[kind]).validate_python(data)
    except PydanticValidationError as exc:
        problems = '; '.join(f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors())
        raise ValidationError(request_number, f'save {kind.value.lower()} form', problems) from exc


def _common(payload: FormIn) -> form_service.FormCommon:
    return form_service.FormCommon(**payload.common.model_dump())


def _audit(db: Session, request: Request) -> DatabaseAuditRecorder:
    return DatabaseAuditRecorder(db, ip=get_client_ip(request))


def _result_body(db: Session, result: TransitionResult) -> dict:
    return {
        'request_number': result.request_number,
        'ledger': ledger_service.entry_summary(result.entry) if result.entry else None,
        'form': form_service.form_summary(db, result.form),
        'trail_entry': (
            {'stage': result.trail_entry.stage, 'action': result.trail_entry.action.value}
            if result.trail_entry
            else None
        ),
    }


@router.post('/forms/{kind_slug}', status_code=status.HTTP_201_CREATED)
def create_form(
    kind_slug: str,
    payload: FormIn,
    request: Request,
    identity: IdentityContext = Depends(get_identity),
    db: Session = Depends(get_db),
):
    kind = _kind(kind_slug)
    result = workflow_service.create_request(
        db,
        identity=identity,
        fields=_build_fields(kind, payload.fields, payload.request_number),
        common=_common(payload),
        request_number=payload.request_number,
        audit=_audit(db, request),
    )
    db.commit()
    return _result_body(db, result)


@router.get('/forms/{kind_slug}')
def list_forms(
    kind_slug: str,
    pending_only: bool = False,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    kind = _kind(kind_slug)
    forms = form_service.list_forms(
        db,
        kind=kind,
        requester_user_id=None if principal.is_administrator else principal.id,
        pending_only=pending_only,
    )
    return [form_service.form_summary(db, form) for form in forms]


@router.get('/forms/{kind_slug}/{form_id}')
def get_form(
    kind_slug: str,
    form_id: int,
    identity: IdentityContext = Depends(get_identity),
    db: Session = Depends(get_db),
):
    form = form_service.get_form(db, kind=_kind(kind_slug), form_id=form_id)
    return workflow_service.request_detail(db, identity=identity, request_number=form.request_number)


@router.put('/forms/{kind_slug}/{form_id}')
def edit_form(
    kind_slug: str,
    form_id: int,
    payload: FormIn,
    identity: IdentityContext = Depends(get_identity),
    db: Session = Depends(get_db),
):
    kind = _kind(kind_slug)
    form = workflow_service.edit_request(
        db,
        identity=identity,
        kind=kind,
        form_id=form_id,
        fields=_build_fields(kind, payload.fields, payload.request_number),
        common=_common(payload),
    )
    db.commit()
    return form_service.form_summary(db, form)


@router.delete('/forms/{kind_slug}/{form_id}')
def delete_form(
    kind_slug: str,
    form_id: int,
    identity: IdentityContext = Depends(get_identity),
    db: Session = Depends(get_db),
):
    request_number = workflow_service.delete_request(db, identity=identity, kind=_kind(kind_slug), form_id=form_id)
    db.commit()
    return {'deleted': request_number}


@router.get('')
def list_requests(
    ship_id: int | None = None,
    status_filter: ChangeStatus | None = Query(None, alias='status'),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    if ship_id is not None:
        entries = ledger_service.list_by_ship(db, ship_id=ship_id)
    elif status_filter is not None:
        entries = ledger_service.list_by_status(db, status=status_filter)
    else:
        entries = ledger_service.list_entries_for_user(
            db, user_id=principal.id, is_administrator=principal.is_administrator
        )
    if ship_id is not None and status_filter is not None:
        entries = [entry for entry in entries if entry.status == status_filter]
    if not principal.is_administrator:
        entries = [entry for entry in entries if entry.requested_by_id == principal.id]
    return [ledger_service.entry_summary(entry) for entry in entries]


@router.get('/pending')
def pending_requests(
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    if not principal.is_administrator:
        return []
    entries = ledger_service.list_pending_approvals(db, user_id=principal.id)
    return [ledger_service.entry_summary(entry) for entry in entries if entry.requested_by_id != principal.id]


@router.get('/{request_number}')
def request_detail(
    request_number: str,
    identity: IdentityContext = Depends(get_identity),
    db: Session = Depends(get_db),
):
    return workflow_service.request_detail(db, identity=identity, request_number=request_number)


@router.get('/{request_number}/history')
def request_history(
    request_number: str,
    identity: IdentityContext = Depends(get_identity),
    db: Session = Depends(get_db),
):
    return workflow_service.request_history(db, identity=identity, request_number=request_number)


@router.post('/{request_number}/submit')
def submit_request(
    request_number: str,
    request: Request,
    identity: IdentityContext = Depends(get_identity),
    db: Session = Depends(get_db),
):
    result = workflow_service.submit(db, identity=identity, request_number=request_number, audit=_audit(db, request))
    db.commit()
    return _result_body(db, result)


@router.post('/{request_number}/review')
def begin_review(
    request_number: str,
    request: Request,
    identity: IdentityContext = Depends(get_identity),
    db: Session = Depends(get_db),
):
    result = workflow_service.begin_review(
        db, identity=identity, request_number=request_number, audit=_audit(db, request)
    )
    db.commit()
    return _result_body(db, result)


@router.post('/{request_number}/approve')
def approve_request(
    request_number: str,
    request: Request,
    payload: DecisionIn | None = None,
    identity: IdentityContext = Depends(get_identity),
    db: Session = Depends(get_db),
):
    result = workflow_service.approve(
        db,
        identity=identity,
        request_number=request_number,
        comment=payload.comment if payload else None,
        audit=_audit(db, request),
    )
    db.commit()
    return _result_body(db, result)


@router.post('/{request_number}/reject')
def reject_request(
    request_number: str,
    payload: DecisionIn,
    request: Request,
    identity: IdentityContext = Depends(get_identity),
    db: Session = Depends(get_db),
):
    result = workflow_service.reject(
        db,
        identity=identity,
        request_number=request_number,
        comment=payload.comment or '',
        audit=_audit(db, request),
    )
    db.commit()
    return _result_body(db, result)


@router.post('/{request_number}/implement')
def implement_request(
    request_number: str,
    request: Request,
    payload: DecisionIn | None = None,
    identity: IdentityContext = Depends(get_identity),
    db: Session = Depends(get_db),
):
    result = workflow_service.implement(
        db,
        identity=identity,
        request_number=request_number,
        comment=payload.comment if payload else None,
        audit=_audit(db, request),
    )
    db.commit()
    return _result_body(db, result)
