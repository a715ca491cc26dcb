from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.auth import IdentityContext, IdentityUnavailable, Principal
from app.config import settings
from app.errors import (
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    PartialSyncError,
    PermissionDeniedError,
    ValidationError,
    WorkflowError,
)
from app.models import Approval, ChangeRequest, ChangeStatus, RequestKind, SpecializedFormMixin, TrailAction
from app.services import approval_trail_service, form_service, ledger_service
from app.services.audit_service import AuditRecorder, notify_best_effort

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitionResult:
    form: SpecializedFormMixin
    entry: ChangeRequest | None
    trail_entry: Approval | None = None
    audited: bool = False

    @property
    def request_number(self) -> str:
        return self.form.request_number


@dataclass(frozen=True)
class _LedgerPlan:
    """Where the ledger must be before a transition and where it goes after."""

    expected: frozenset[ChangeStatus]
    canonical: ChangeStatus
    target: ChangeStatus | None
    trail_action: TrailAction | None


SUBMIT_PLAN = _LedgerPlan(
    expected=frozenset({ChangeStatus.DRAFT}),
    canonical=ChangeStatus.DRAFT,
    target=ChangeStatus.SUBMITTED,
    trail_action=TrailAction.SUBMIT,
)
APPROVE_PLAN = _LedgerPlan(
    expected=ledger_service.PENDING_STATUSES,
    canonical=ChangeStatus.SUBMITTED,
    target=ChangeStatus.APPROVED,
    trail_action=TrailAction.APPROVE,
)
REJECT_PLAN = _LedgerPlan(
    expected=ledger_service.PENDING_STATUSES,
    canonical=ChangeStatus.SUBMITTED,
    target=ChangeStatus.REJECTED,
    trail_action=TrailAction.REJECT,
)
IMPLEMENT_PLAN = _LedgerPlan(
    expected=frozenset({ChangeStatus.APPROVED}),
    canonical=ChangeStatus.APPROVED,
    target=ChangeStatus.COMPLETED,
    trail_action=TrailAction.IMPLEMENT,
)
CREATE_PLAN = _LedgerPlan(
    expected=frozenset({ChangeStatus.DRAFT}),
    canonical=ChangeStatus.DRAFT,
    target=None,
    trail_action=None,
)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _resolve_actor(identity: IdentityContext, request_number: str | None, action: str) -> Principal:
    try:
        actor = identity.current_user()
    except IdentityUnavailable as exc:
        raise PermissionDeniedError(request_number, action, 'acting user could not be identified') from exc
    if not actor.active:
        raise PermissionDeniedError(request_number, action, f'user {actor.username} is inactive')
    return actor


def _require_administrator(actor: Principal, request_number: str, action: str) -> None:
    if not actor.is_administrator:
        raise PermissionDeniedError(request_number, action, 'administrator role required')


@contextmanager
def _concurrent_update_guard(db: Session, request_number: str | None, action: str) -> Iterator[None]:
    try:
        yield
    except StaleDataError as exc:
        db.rollback()
        raise InvalidTransitionError(request_number, action, 'concurrent update') from exc


def _load_form(db: Session, request_number: str, action: str) -> SpecializedFormMixin:
    form = form_service.find_by_request_number(db, request_number, lock=True)
    if form is None:
        raise NotFoundError(request_number, action, 'no change request form')
    if form_service.form_state(form) == 'INVALID':
        raise InvalidTransitionError(request_number, action, 'form is both under review and approved')
    return form


def _check_ledger(db: Session, request_number: str, action: str, plan: _LedgerPlan) -> ChangeRequest | None:
    """Lock the entry and refuse when it is not where the transition starts. A missing entry passes."""
    entry = ledger_service.lock_entry(db, request_number)
    if entry is not None and entry.status not in plan.expected:
        raise InvalidTransitionError(request_number, action, f'ledger status is {entry.status.value}')
    return entry


def _resolve_entry(db: Session, *, form: SpecializedFormMixin, action: str, plan: _LedgerPlan) -> ChangeRequest:
    request_number = form.request_number
    entry = ledger_service.lock_entry(db, request_number)
    if entry is None:
        entry = ledger_service.create_or_get_entry(
            db,
            request_number=request_number,
            kind=form_service.kind_of(form),
            requested_by_id=form.requester_user_id,
            purpose=form_service.ledger_purpose(form),
            description=form_service.ledger_description(form),
            ship_id=form.ship_id,
        )
        if plan.trail_action is not None:
            logger.warning(
                'Ledger entry was missing, synthesized from form',
                extra={'request_number': request_number, 'action': action},
            )
        if entry.status != plan.canonical:
            entry = ledger_service.force_status(
                db,
                request_number=request_number,
                new_status=plan.canonical,
                reason=f'synthesized for {action}',
            )
    return entry


def _follow_with_ledger(
    db: Session,
    *,
    form: SpecializedFormMixin,
    actor: Principal,
    action: str,
    plan: _LedgerPlan,
    comment: str | None = None,
    at: datetime,
) -> tuple[ChangeRequest, Approval | None]:
    request_number = form.request_number
    attempts = 1 + max(settings.ledger_sync_retries, 0)
    last_error: Exception | None = None
    for attempt in range(attempts):
        try:
            with db.begin_nested():
                entry = _resolve_entry(db, form=form, action=action, plan=plan)
                trail_entry = None
                if plan.target is not None:
                    entry = ledger_service.set_status(db, request_number=request_number, new_status=plan.target)
                if plan.trail_action is not None:
                    trail_entry = approval_trail_service.append(
                        db,
                        change_request_id=entry.id,
                        action=plan.trail_action,
                        actor_id=actor.id,
                        comment=comment,
                        action_at=at,
                    )
            return entry, trail_entry
        except (WorkflowError, SQLAlchemyError) as exc:
            last_error = exc
            logger.warning(
                'Ledger step failed on attempt %d of %d: %s',
                attempt + 1,
                attempts,
                exc,
                extra={'request_number': request_number, 'action': action, 'actor_id': actor.id},
            )

    db.commit()
    logger.error(
        'Form change committed but ledger could not follow',
        extra={'request_number': request_number, 'action': action, 'actor_id': actor.id},
    )
    raise PartialSyncError(request_number, action, str(last_error)) from last_error


def _finish(
    *,
    form: SpecializedFormMixin,
    entry: ChangeRequest | None,
    trail_entry: Approval | None,
    actor: Principal,
    action: str,
    audit: AuditRecorder | None,
    at: datetime,
) -> TransitionResult:
    audited = notify_best_effort(
        audit,
        request_number=form.request_number,
        action=action,
        actor_id=actor.id,
        timestamp=at,
    )
    logger.info(
        'Change request %s',
        action,
        extra={
            'request_number': form.request_number,
            'action': action,
            'actor_id': actor.id,
            'status': entry.status.value if entry is not None else None,
        },
    )
    return TransitionResult(form=form, entry=entry, trail_entry=trail_entry, audited=audited)


def create_request(
    db: Session,
    *,
    identity: IdentityContext,
    fields: form_service.FormFields,
    common: form_service.FormCommon | None = None,
    request_number: str | None = None,
    audit: AuditRecorder | None = None,
    now: datetime | None = None,
) -> TransitionResult:
    actor = _resolve_actor(identity, request_number, 'create')
    at = now or _now()
    form = form_service.create(
        db,
        requester_user_id=actor.id,
        fields=fields,
        common=common,
        request_number=request_number,
        now=at,
    )
    entry, _ = _follow_with_ledger(db, form=form, actor=actor, action='create', plan=CREATE_PLAN, at=at)
    return _finish(form=form, entry=entry, trail_entry=None, actor=actor, action='create', audit=audit, at=at)


def edit_request(
    db: Session,
    *,
    identity: IdentityContext,
    kind: RequestKind,
    form_id: int,
    fields: form_service.FormFields,
    common: form_service.FormCommon | None = None,
) -> SpecializedFormMixin:
    actor = _resolve_actor(identity, None, 'edit')
    form = form_service.get_form(db, kind=kind, form_id=form_id, lock=True)
    request_number = form.request_number
    if actor.id != form.requester_user_id:
        raise PermissionDeniedError(request_number, 'edit', 'only the requester can edit a form')
    entry = ledger_service.find_by_request_number(db, request_number)
    if entry is not None and entry.status in ledger_service.TERMINAL_STATUSES:
        raise InvalidStateError(request_number, 'edit', f'request is {entry.status.value}')
    with _concurrent_update_guard(db, request_number, 'edit'):
        return form_service.update(db, kind=kind, form_id=form_id, fields=fields, common=common)


def delete_request(db: Session, *, identity: IdentityContext, kind: RequestKind, form_id: int) -> str:
    actor = _resolve_actor(identity, None, 'delete')
    form = form_service.get_form(db, kind=kind, form_id=form_id)
    if actor.id != form.requester_user_id and not actor.is_administrator:
        raise PermissionDeniedError(form.request_number, 'delete', 'only the requester or an administrator can delete')
    return form_service.delete_draft(db, kind=kind, form_id=form_id)


def submit(
    db: Session,
    *,
    identity: IdentityContext,
    request_number: str,
    audit: AuditRecorder | None = None,
    now: datetime | None = None,
) -> TransitionResult:
    action = 'submit'
    actor = _resolve_actor(identity, request_number, action)
    at = now or _now()
    with _concurrent_update_guard(db, request_number, action):
        form = _load_form(db, request_number, action)
        if actor.id != form.requester_user_id:
            raise PermissionDeniedError(request_number, action, 'only the requester can submit')
        if not form_service.is_draft(form):
            raise InvalidTransitionError(request_number, action, f'form is {form_service.form_state(form).lower()}')
        _check_ledger(db, request_number, action, SUBMIT_PLAN)

        form_service.mark_under_review(db, form, at=at)
        entry, trail_entry = _follow_with_ledger(db, form=form, actor=actor, action=action, plan=SUBMIT_PLAN, at=at)
    return _finish(form=form, entry=entry, trail_entry=trail_entry, actor=actor, action=action, audit=audit, at=at)


def begin_review(
    db: Session,
    *,
    identity: IdentityContext,
    request_number: str,
    audit: AuditRecorder | None = None,
    now: datetime | None = None,
) -> TransitionResult:
    """Move a submitted entry to UNDER_REVIEW. The form only knows "pending", so it is untouched."""
    action = 'review'
    actor = _resolve_actor(identity, request_number, action)
    _require_administrator(actor, request_number, action)
    at = now or _now()
    with _concurrent_update_guard(db, request_number, action):
        form = _load_form(db, request_number, action)
        if not form.is_under_review:
            raise InvalidTransitionError(request_number, action, f'form is {form_service.form_state(form).lower()}')
        entry = ledger_service.lock_entry(db, request_number)
        if entry is None:
            raise NotFoundError(request_number, action, 'no ledger entry')
        entry = ledger_service.set_status(db, request_number=request_number, new_status=ChangeStatus.UNDER_REVIEW)
    return _finish(form=form, entry=entry, trail_entry=None, actor=actor, action=action, audit=audit, at=at)


def _decide(
    db: Session,
    *,
    identity: IdentityContext,
    request_number: str,
    action: str,
    plan: _LedgerPlan,
    mutate: Callable[[SpecializedFormMixin, Principal, datetime], None],
    comment: str | None,
    audit: AuditRecorder | None,
    now: datetime | None,
) -> TransitionResult:
    actor = _resolve_actor(identity, request_number, action)
    _require_administrator(actor, request_number, action)
    at = now or _now()
    with _concurrent_update_guard(db, request_number, action):
        form = _load_form(db, request_number, action)
        if actor.id == form.requester_user_id:
            raise PermissionDeniedError(request_number, action, 'requesters cannot decide their own request')
        if not form.is_under_review:
            raise InvalidTransitionError(request_number, action, f'form is {form_service.form_state(form).lower()}')
        _check_ledger(db, request_number, action, plan)

        mutate(form, actor, at)
        entry, trail_entry = _follow_with_ledger(
            db, form=form, actor=actor, action=action, plan=plan, comment=comment, at=at
        )
    return _finish(form=form, entry=entry, trail_entry=trail_entry, actor=actor, action=action, audit=audit, at=at)


def approve(
    db: Session,
    *,
    identity: IdentityContext,
    request_number: str,
    comment: str | None = None,
    audit: AuditRecorder | None = None,
    now: datetime | None = None,
) -> TransitionResult:
    def mutate(form, actor, at):
        form_service.mark_approved(db, form, actor_id=actor.id, at=at)

    return _decide(
        db,
        identity=identity,
        request_number=request_number,
        action='approve',
        plan=APPROVE_PLAN,
        mutate=mutate,
        comment=comment,
        audit=audit,
        now=now,
    )


def reject(
    db: Session,
    *,
    identity: IdentityContext,
    request_number: str,
    comment: str,
    audit: AuditRecorder | None = None,
    now: datetime | None = None,
) -> TransitionResult:
    clean_comment = (comment or '').strip()
    if not clean_comment:
        raise ValidationError(request_number, 'reject', 'a rejection comment is required')

    def mutate(form, actor, at):
        form_service.mark_rejected(db, form, actor_id=actor.id, comment=clean_comment, at=at)

    return _decide(
        db,
        identity=identity,
        request_number=request_number,
        action='reject',
        plan=REJECT_PLAN,
        mutate=mutate,
        comment=clean_comment,
        audit=audit,
        now=now,
    )


def implement(
    db: Session,
    *,
    identity: IdentityContext,
    request_number: str,
    comment: str | None = None,
    audit: AuditRecorder | None = None,
    now: datetime | None = None,
) -> TransitionResult:
    """Mark an approved request as carried out. Form flags stay as they are."""
    action = 'implement'
    actor = _resolve_actor(identity, request_number, action)
    at = now or _now()
    with _concurrent_update_guard(db, request_number, action):
        form = _load_form(db, request_number, action)
        if actor.id != form.requester_user_id and not actor.is_administrator:
            raise PermissionDeniedError(request_number, action, 'only the requester or an administrator can implement')
        if not form.is_approved:
            raise InvalidTransitionError(request_number, action, f'form is {form_service.form_state(form).lower()}')
        _check_ledger(db, request_number, action, IMPLEMENT_PLAN)

        entry, trail_entry = _follow_with_ledger(
            db, form=form, actor=actor, action=action, plan=IMPLEMENT_PLAN, comment=comment, at=at
        )
    return _finish(form=form, entry=entry, trail_entry=trail_entry, actor=actor, action=action, audit=audit, at=at)


def _can_view(actor: Principal, form: SpecializedFormMixin | None, entry: ChangeRequest | None) -> bool:
    if actor.is_administrator:
        return True
    owners = {form.requester_user_id if form else None, entry.requested_by_id if entry else None}
    return actor.id in owners


def request_detail(db: Session, *, identity: IdentityContext, request_number: str) -> dict:
    actor = _resolve_actor(identity, request_number, 'view')
    form = form_service.find_by_request_number(db, request_number)
    entry = ledger_service.find_by_request_number(db, request_number)
    if form is None and entry is None:
        raise NotFoundError(request_number, 'view', 'no such change request')
    if not _can_view(actor, form, entry):
        raise PermissionDeniedError(request_number, 'view', 'not your change request')
    trail = approval_trail_service.history(db, entry.id) if entry else []
    return {
        'request_number': request_number,
        'ledger': ledger_service.entry_summary(entry) if entry else None,
        'form': form_service.form_summary(db, form) if form else None,
        'history': [approval_trail_service.trail_summary(row) for row in trail],
    }


def request_history(db: Session, *, identity: IdentityContext, request_number: str) -> list[dict]:
    return request_detail(db, identity=identity, request_number=request_number)['history']
