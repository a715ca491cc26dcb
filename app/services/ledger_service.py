from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.errors import InvalidTransitionError, NotFoundError, ValidationError
from app.models import Approval, ChangeRequest, ChangeStatus, RequestKind

logger = logging.getLogger(__name__)

LEGAL_TRANSITIONS: dict[ChangeStatus, frozenset[ChangeStatus]] = {
    ChangeStatus.DRAFT: frozenset({ChangeStatus.SUBMITTED}),
    ChangeStatus.SUBMITTED: frozenset({ChangeStatus.UNDER_REVIEW, ChangeStatus.APPROVED, ChangeStatus.REJECTED}),
    ChangeStatus.UNDER_REVIEW: frozenset({ChangeStatus.APPROVED, ChangeStatus.REJECTED}),
    ChangeStatus.APPROVED: frozenset({ChangeStatus.COMPLETED}),
    ChangeStatus.REJECTED: frozenset(),
    ChangeStatus.COMPLETED: frozenset(),
}
PENDING_STATUSES = frozenset({ChangeStatus.SUBMITTED, ChangeStatus.UNDER_REVIEW})
TERMINAL_STATUSES = frozenset({ChangeStatus.REJECTED, ChangeStatus.COMPLETED})

PURPOSE_MAX_LENGTH = 500
DESCRIPTION_MAX_LENGTH = 2000


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def is_legal_transition(current: ChangeStatus, new: ChangeStatus) -> bool:
    return new in LEGAL_TRANSITIONS[current]


def find_by_request_number(db: Session, request_number: str) -> ChangeRequest | None:
    return db.execute(
        select(ChangeRequest).where(ChangeRequest.request_number == request_number)
    ).scalar_one_or_none()


def lock_entry(db: Session, request_number: str) -> ChangeRequest | None:
    """Row-lock the entry for the rest of the transaction (no-op on SQLite)."""
    return db.execute(
        select(ChangeRequest)
        .where(ChangeRequest.request_number == request_number)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def create_or_get_entry(
    db: Session,
    *,
    request_number: str,
    kind: RequestKind,
    requested_by_id: int,
    purpose: str,
    description: str | None = None,
    ship_id: int | None = None,
) -> ChangeRequest:
    existing = find_by_request_number(db, request_number)
    if existing:
        return existing

    clean_purpose = (purpose or '').strip()
    if not clean_purpose:
        raise ValidationError(request_number, 'create ledger entry', 'purpose is required')

    clean_description = (description or '').strip() or None
    now = _now()
    entry = ChangeRequest(
        request_number=request_number,
        kind=kind,
        ship_id=ship_id,
        requested_by_id=requested_by_id,
        requested_at=now,
        purpose=clean_purpose[:PURPOSE_MAX_LENGTH],
        description=clean_description[:DESCRIPTION_MAX_LENGTH] if clean_description else None,
        status=ChangeStatus.DRAFT,
        updated_at=now,
    )
    db.add(entry)
    db.flush()
    logger.info('Ledger entry created', extra={'request_number': request_number, 'kind': kind.value})
    return entry


def set_status(db: Session, *, request_number: str, new_status: ChangeStatus) -> ChangeRequest:
    entry = find_by_request_number(db, request_number)
    if not entry:
        raise NotFoundError(request_number, f'set status {new_status.value}', 'no ledger entry')
    if not is_legal_transition(entry.status, new_status):
        raise InvalidTransitionError(
            request_number,
            f'set status {new_status.value}',
            f'ledger status is {entry.status.value}',
        )
    entry.status = new_status
    entry.updated_at = _now()
    db.flush()
    return entry


def force_status(db: Session, *, request_number: str, new_status: ChangeStatus, reason: str) -> ChangeRequest:
    """Overwrite the status outside the state machine. Repair paths only."""
    entry = find_by_request_number(db, request_number)
    if not entry:
        raise NotFoundError(request_number, f'force status {new_status.value}', 'no ledger entry')
    if entry.status != new_status:
        logger.warning(
            'Ledger status forced from %s: %s',
            entry.status.value,
            reason,
            extra={'request_number': request_number, 'status': new_status.value},
        )
        entry.status = new_status
        entry.updated_at = _now()
        db.flush()
    return entry


def list_entries_for_user(db: Session, *, user_id: int, is_administrator: bool) -> list[ChangeRequest]:
    query = select(ChangeRequest).order_by(ChangeRequest.created_at.desc(), ChangeRequest.id.desc())
    if not is_administrator:
        query = query.where(ChangeRequest.requested_by_id == user_id)
    return db.execute(query).scalars().all()


def list_by_ship(db: Session, *, ship_id: int) -> list[ChangeRequest]:
    return db.execute(
        select(ChangeRequest)
        .where(ChangeRequest.ship_id == ship_id)
        .order_by(ChangeRequest.created_at.desc(), ChangeRequest.id.desc())
    ).scalars().all()


def list_by_status(db: Session, *, status: ChangeStatus) -> list[ChangeRequest]:
    return db.execute(
        select(ChangeRequest)
        .where(ChangeRequest.status == status)
        .order_by(ChangeRequest.created_at.desc(), ChangeRequest.id.desc())
    ).scalars().all()


def list_pending_approvals(db: Session, *, user_id: int) -> list[ChangeRequest]:
    """Pending entries the user has not acted on yet, oldest first."""
    acted = select(Approval.change_request_id).where(Approval.action_by_id == user_id)
    return db.execute(
        select(ChangeRequest)
        .where(
            ChangeRequest.status.in_(list(PENDING_STATUSES)),
            ChangeRequest.id.not_in(acted),
        )
        .order_by(ChangeRequest.requested_at.asc(), ChangeRequest.id.asc())
    ).scalars().all()


def entry_summary(entry: ChangeRequest) -> dict:
    return {
        'id': entry.id,
        'request_number': entry.request_number,
        'kind': entry.kind.value,
        'ship_id': entry.ship_id,
        'requested_by_id': entry.requested_by_id,
        'requested_at': entry.requested_at,
        'purpose': entry.purpose,
        'description': entry.description,
        'status': entry.status.value,
        'created_at': entry.created_at,
        'updated_at': entry.updated_at,
    }
