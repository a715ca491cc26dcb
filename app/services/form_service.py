from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from datetime import date, datetime, timezone
from typing import ClassVar, Union

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import InvalidStateError, NotFoundError, RequestNumberExhaustedError, ValidationError
from app.models import (
    FORM_MODELS,
    ChangeStatus,
    RequestKind,
    SecurityReviewItem,
    SecurityReviewStatement,
    SpecializedFormMixin,
)
from app.services import approval_trail_service, ledger_service
from app.services.request_number_service import (
    PREFIX_BY_KIND,
    candidate_request_numbers,
    is_request_number_taken,
    kind_for_request_number,
)

logger = logging.getLogger(__name__)

KIND_BY_MODEL = {model: kind for kind, model in FORM_MODELS.items()}

KIND_LABELS = {
    RequestKind.HARDWARE: 'Hardware change',
    RequestKind.SOFTWARE: 'Software change',
    RequestKind.SYSTEM_PLAN: 'System change plan',
    RequestKind.SECURITY_REVIEW: 'Security review statement',
}


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass
class FormCommon:
    ship_id: int | None = None
    department: str | None = None
    position_title: str | None = None
    requester_name: str | None = None
    reason: str | None = None


@dataclass
class HardwareFields:
    kind: ClassVar[RequestKind] = RequestKind.HARDWARE

    installed_cbs: str | None = None
    installed_component: str | None = None
    before_hw_manufacturer_model: str | None = None
    before_hw_name: str | None = None
    before_hw_os: str | None = None
    after_hw_manufacturer_model: str | None = None
    after_hw_name: str | None = None
    after_hw_os: str | None = None
    work_description: str | None = None
    security_review_comment: str | None = None


@dataclass
class SoftwareFields:
    kind: ClassVar[RequestKind] = RequestKind.SOFTWARE

    installed_cbs: str | None = None
    installed_component: str | None = None
    before_sw_manufacturer: str | None = None
    before_sw_name: str | None = None
    before_sw_version: str | None = None
    after_sw_manufacturer: str | None = None
    after_sw_name: str | None = None
    after_sw_version: str | None = None
    work_description: str | None = None
    security_review_comment: str | None = None


@dataclass
class SystemPlanFields:
    kind: ClassVar[RequestKind] = RequestKind.SYSTEM_PLAN

    installed_cbs: str | None = None
    installed_component: str | None = None
    before_manufacturer_model: str | None = None
    before_hw_sw_name: str | None = None
    before_version: str | None = None
    after_manufacturer_model: str | None = None
    after_hw_sw_name: str | None = None
    after_version: str | None = None
    plan_details: str | None = None
    security_review_comments: str | None = None


@dataclass
class ReviewItemInput:
    category: str
    check_item: str
    result: str
    note: str | None = None


@dataclass
class SecurityReviewFields:
    kind: ClassVar[RequestKind] = RequestKind.SECURITY_REVIEW

    review_date: date | None = None
    reviewer_department: str | None = None
    reviewer_position: str | None = None
    reviewer_name: str | None = None
    overall_result: str | None = None
    review_opinion: str | None = None
    items: list[ReviewItemInput] = field(default_factory=list)


FormFields = Union[HardwareFields, SoftwareFields, SystemPlanFields, SecurityReviewFields]

FIELD_BAGS: dict[RequestKind, type] = {
    RequestKind.HARDWARE: HardwareFields,
    RequestKind.SOFTWARE: SoftwareFields,
    RequestKind.SYSTEM_PLAN: SystemPlanFields,
    RequestKind.SECURITY_REVIEW: SecurityReviewFields,
}

# (before, after) columns used to describe the change on the ledger entry.
CHANGE_SUMMARY_COLUMNS = {
    RequestKind.HARDWARE: ('before_hw_name', 'after_hw_name'),
    RequestKind.SOFTWARE: ('before_sw_name', 'after_sw_name'),
    RequestKind.SYSTEM_PLAN: ('before_hw_sw_name', 'after_hw_sw_name'),
}


def _clean(value):
    if isinstance(value, str):
        return value.strip() or None
    return value


def _apply_common(form: SpecializedFormMixin, common: FormCommon | None) -> None:
    if common is None:
        return
    for item in fields(common):
        setattr(form, item.name, _clean(getattr(common, item.name)))


def _apply_fields(form: SpecializedFormMixin, bag: FormFields) -> None:
    for item in fields(bag):
        if item.name == 'items':
            continue
        setattr(form, item.name, _clean(getattr(bag, item.name)))


def kind_of(form: SpecializedFormMixin) -> RequestKind:
    return KIND_BY_MODEL[type(form)]


def is_draft(form: SpecializedFormMixin) -> bool:
    return not form.is_under_review and not form.is_approved


def form_state(form: SpecializedFormMixin) -> str:
    if form.is_under_review and form.is_approved:
        return 'INVALID'
    if form.is_approved:
        return 'APPROVED'
    if form.is_under_review:
        return 'PENDING'
    return 'DRAFT'


def ledger_purpose(form: SpecializedFormMixin) -> str:
    return (form.reason or '').strip() or f'{KIND_LABELS[kind_of(form)]} request'


def ledger_description(form: SpecializedFormMixin) -> str:
    kind = kind_of(form)
    columns = CHANGE_SUMMARY_COLUMNS.get(kind)
    if columns:
        before, after = (getattr(form, name) or '-' for name in columns)
        return f'{KIND_LABELS[kind]}: {before} -> {after}'
    if isinstance(form, SecurityReviewStatement):
        return f'{KIND_LABELS[kind]}: {form.overall_result or "pending result"}'
    return KIND_LABELS[kind]


def _validate_review_items(request_number: str | None, items: list[ReviewItemInput]) -> None:
    for index, item in enumerate(items, start=1):
        if not (item.category or '').strip() or not (item.check_item or '').strip():
            raise ValidationError(request_number, 'save review items', f'item {index} needs a category and check item')
        if not (item.result or '').strip():
            raise ValidationError(request_number, 'save review items', f'item {index} needs a result')


def replace_review_items(db: Session, *, statement: SecurityReviewStatement, items: list[ReviewItemInput]) -> None:
    _validate_review_items(statement.request_number, items)
    db.execute(delete(SecurityReviewItem).where(SecurityReviewItem.statement_id == statement.id))
    for position, item in enumerate(items):
        db.add(
            SecurityReviewItem(
                statement_id=statement.id,
                position=position,
                category=item.category.strip(),
                check_item=item.check_item.strip(),
                result=item.result.strip(),
                note=_clean(item.note),
            )
        )
    db.flush()


def list_review_items(db: Session, *, statement_id: int) -> list[SecurityReviewItem]:
    return db.execute(
        select(SecurityReviewItem)
        .where(SecurityReviewItem.statement_id == statement_id)
        .order_by(SecurityReviewItem.position.asc(), SecurityReviewItem.id.asc())
    ).scalars().all()


def _insert_form(
    db: Session,
    *,
    model: type[SpecializedFormMixin],
    request_number: str,
    requester_user_id: int,
    bag: FormFields,
    common: FormCommon | None,
) -> SpecializedFormMixin:
    now = _now()
    with db.begin_nested():
        form = model(
            request_number=request_number,
            requester_user_id=requester_user_id,
            is_under_review=False,
            is_approved=False,
            updated_at=now,
        )
        _apply_common(form, common)
        _apply_fields(form, bag)
        db.add(form)
        db.flush()
    return form


def create(
    db: Session,
    *,
    requester_user_id: int,
    fields: FormFields,
    common: FormCommon | None = None,
    request_number: str | None = None,
    now: datetime | None = None,
    max_attempts: int | None = None,
) -> SpecializedFormMixin:
    kind = fields.kind
    model = FORM_MODELS[kind]
    if isinstance(fields, SecurityReviewFields):
        _validate_review_items(request_number, fields.items)

    if request_number is not None:
        request_number = request_number.strip()
        if kind_for_request_number(request_number) != kind:
            raise ValidationError(
                request_number, 'create', f'request number must look like {PREFIX_BY_KIND[kind]}-yyyyMM-ddHHmm'
            )
        if is_request_number_taken(db, request_number):
            raise ValidationError(request_number, 'create', 'request number is already in use')
        try:
            form = _insert_form(
                db, model=model, request_number=request_number, requester_user_id=requester_user_id, bag=fields, common=common
            )
        except IntegrityError as exc:
            raise ValidationError(request_number, 'create', 'request number is already in use') from exc
    else:
        attempts = max_attempts or settings.request_number_max_attempts
        form = None
        for candidate in candidate_request_numbers(kind, now=now, attempts=attempts):
            if is_request_number_taken(db, candidate):
                continue
            try:
                form = _insert_form(
                    db, model=model, request_number=candidate, requester_user_id=requester_user_id, bag=fields, common=common
                )
            except IntegrityError:
                logger.info('Request number collided on insert, retrying', extra={'request_number': candidate})
                continue
            break
        if form is None:
            raise RequestNumberExhaustedError(PREFIX_BY_KIND[kind], attempts)

    if isinstance(fields, SecurityReviewFields):
        replace_review_items(db, statement=form, items=fields.items)
    return form


def get_form(db: Session, *, kind: RequestKind, form_id: int, lock: bool = False) -> SpecializedFormMixin:
    model = FORM_MODELS[kind]
    query = select(model).where(model.id == form_id)
    if lock:
        query = query.with_for_update().execution_options(populate_existing=True)
    form = db.execute(query).scalar_one_or_none()
    if not form:
        raise NotFoundError(None, f'load {KIND_LABELS[kind].lower()} form', f'no form with id {form_id}')
    return form


def find_by_request_number(db: Session, request_number: str, *, lock: bool = False) -> SpecializedFormMixin | None:
    """Look in the table the prefix points at first, then every other table."""
    guessed = kind_for_request_number(request_number)
    kinds = list(FORM_MODELS)
    if guessed is not None:
        kinds.remove(guessed)
        kinds.insert(0, guessed)
    for kind in kinds:
        model = FORM_MODELS[kind]
        query = select(model).where(model.request_number == request_number)
        if lock:
            query = query.with_for_update().execution_options(populate_existing=True)
        form = db.execute(query).scalar_one_or_none()
        if form is not None:
            return form
    return None


def list_forms(
    db: Session,
    *,
    kind: RequestKind,
    requester_user_id: int | None = None,
    pending_only: bool = False,
) -> list[SpecializedFormMixin]:
    model = FORM_MODELS[kind]
    query = select(model).order_by(model.created_at.desc(), model.id.desc())
    if requester_user_id is not None:
        query = query.where(model.requester_user_id == requester_user_id)
    if pending_only:
        query = query.where(model.is_under_review.is_(True))
    return db.execute(query).scalars().all()


def update(
    db: Session,
    *,
    kind: RequestKind,
    form_id: int,
    fields: FormFields,
    common: FormCommon | None = None,
) -> SpecializedFormMixin:
    if fields.kind != kind:
        raise ValidationError(None, 'update', f'{fields.kind.value} fields cannot be saved on a {kind.value} form')
    form = get_form(db, kind=kind, form_id=form_id, lock=True)
    if not is_draft(form):
        raise InvalidStateError(form.request_number, 'update', 'only draft forms can be edited')

    _apply_common(form, common)
    _apply_fields(form, fields)
    form.updated_at = _now()
    db.flush()
    if isinstance(fields, SecurityReviewFields):
        replace_review_items(db, statement=form, items=fields.items)
    return form


def mark_under_review(db: Session, form: SpecializedFormMixin, *, at: datetime | None = None) -> SpecializedFormMixin:
    now = at or _now()
    form.is_under_review = True
    form.is_approved = False
    form.submitted_at = now
    form.updated_at = now
    db.flush()
    return form


def mark_approved(
    db: Session, form: SpecializedFormMixin, *, actor_id: int, at: datetime | None = None
) -> SpecializedFormMixin:
    now = at or _now()
    form.is_under_review = False
    form.is_approved = True
    form.reviewed_by_user_id = actor_id
    form.reviewed_at = now
    form.approved_by_user_id = actor_id
    form.approved_at = now
    form.updated_at = now
    db.flush()
    return form


def mark_rejected(
    db: Session, form: SpecializedFormMixin, *, actor_id: int, comment: str, at: datetime | None = None
) -> SpecializedFormMixin:
    now = at or _now()
    form.is_under_review = False
    form.is_approved = False
    form.reviewed_by_user_id = actor_id
    form.reviewed_at = now
    form.review_comment = comment
    form.updated_at = now
    db.flush()
    return form


def delete_draft(db: Session, *, kind: RequestKind, form_id: int) -> str:
    """Delete a draft form and its untouched DRAFT ledger entry.

    Refused once the form left Draft, or when the ledger entry moved on or
    already carries trail entries. Returns the freed request number.
    """
    form = get_form(db, kind=kind, form_id=form_id, lock=True)
    request_number = form.request_number
    if not is_draft(form):
        raise InvalidStateError(request_number, 'delete', 'only draft forms can be deleted')

    entry = ledger_service.lock_entry(db, request_number)
    if entry is not None:
        if entry.status != ChangeStatus.DRAFT:
            raise InvalidStateError(request_number, 'delete', f'ledger status is {entry.status.value}')
        if approval_trail_service.has_entries(db, entry.id):
            raise InvalidStateError(request_number, 'delete', 'approval trail is not empty')
        db.delete(entry)

    if isinstance(form, SecurityReviewStatement):
        db.execute(delete(SecurityReviewItem).where(SecurityReviewItem.statement_id == form.id))
    db.delete(form)
    db.flush()
    logger.info('Draft form deleted', extra={'request_number': request_number, 'kind': kind.value})
    return request_number


def form_summary(db: Session, form: SpecializedFormMixin) -> dict:
    kind = kind_of(form)
    data = {
        'id': form.id,
        'kind': kind.value,
        'request_number': form.request_number,
        'requester_user_id': form.requester_user_id,
        'state': form_state(form),
        'is_under_review': form.is_under_review,
        'is_approved': form.is_approved,
        'submitted_at': form.submitted_at,
        'reviewed_by_user_id': form.reviewed_by_user_id,
        'reviewed_at': form.reviewed_at,
        'review_comment': form.review_comment,
        'approved_by_user_id': form.approved_by_user_id,
        'approved_at': form.approved_at,
        'created_at': form.created_at,
        'updated_at': form.updated_at,
    }
    for item in fields(FormCommon):
        data[item.name] = getattr(form, item.name)
    for item in fields(FIELD_BAGS[kind]):
        if item.name != 'items':
            data[item.name] = getattr(form, item.name)
    if isinstance(form, SecurityReviewStatement):
        data['items'] = [
            {'category': row.category, 'check_item': row.check_item, 'result': row.result, 'note': row.note}
            for row in list_review_items(db, statement_id=form.id)
        ]
    return data
