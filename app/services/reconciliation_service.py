from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models import FORM_MODELS, ChangeRequest, ChangeStatus, SpecializedFormMixin
from app.services import form_service, ledger_service
from app.services.audit_service import AuditRecorder, notify_best_effort

logger = logging.getLogger(__name__)


class DiscrepancyKind(str, Enum):
    MISSING_LEDGER = 'MISSING_LEDGER'
    STATUS_MISMATCH = 'STATUS_MISMATCH'
    INVALID_FLAGS = 'INVALID_FLAGS'
    ORPHAN_LEDGER = 'ORPHAN_LEDGER'
    KIND_MISMATCH = 'KIND_MISMATCH'


REPAIRABLE = frozenset({DiscrepancyKind.MISSING_LEDGER, DiscrepancyKind.STATUS_MISMATCH})

# Ledger statuses a form in each flag state may legitimately sit next to.
CONSISTENT_STATUSES = {
    'DRAFT': frozenset({ChangeStatus.DRAFT, ChangeStatus.REJECTED}),
    'PENDING': ledger_service.PENDING_STATUSES,
    'APPROVED': frozenset({ChangeStatus.APPROVED, ChangeStatus.COMPLETED}),
}


@dataclass(frozen=True)
class SyncDiscrepancy:
    kind: DiscrepancyKind
    request_number: str
    form_kind: str | None
    form_state: str | None
    ledger_status: str | None
    expected_status: str | None
    detail: str

    def to_dict(self) -> dict:
        data = asdict(self)
        data['kind'] = self.kind.value
        return data


def canonical_status(form: SpecializedFormMixin) -> ChangeStatus | None:
    """The ledger status a form's flags imply; None when the flags are contradictory."""
    state = form_service.form_state(form)
    if state == 'APPROVED':
        return ChangeStatus.APPROVED
    if state == 'PENDING':
        return ChangeStatus.SUBMITTED
    if state == 'DRAFT':
        # A reviewed draft is a rejected request.
        return ChangeStatus.REJECTED if form.reviewed_at is not None else ChangeStatus.DRAFT
    return None


def _all_forms(db: Session) -> list[SpecializedFormMixin]:
    forms = []
    for model in FORM_MODELS.values():
        forms.extend(db.execute(select(model).order_by(model.id.asc())).scalars().all())
    return forms


def find_discrepancies(db: Session) -> list[SyncDiscrepancy]:
    entries = {
        entry.request_number: entry
        for entry in db.execute(select(ChangeRequest).order_by(ChangeRequest.id.asc())).scalars().all()
    }
    found: list[SyncDiscrepancy] = []
    seen: set[str] = set()

    for form in _all_forms(db):
        request_number = form.request_number
        seen.add(request_number)
        kind = form_service.kind_of(form)
        state = form_service.form_state(form)
        entry = entries.get(request_number)
        ledger_status = entry.status.value if entry else None
        expected = canonical_status(form)

        def record(discrepancy_kind: DiscrepancyKind, detail: str) -> None:
            found.append(
                SyncDiscrepancy(
                    kind=discrepancy_kind,
                    request_number=request_number,
                    form_kind=kind.value,
                    form_state=state,
                    ledger_status=ledger_status,
                    expected_status=expected.value if expected else None,
                    detail=detail,
                )
            )

        if state == 'INVALID':
            record(DiscrepancyKind.INVALID_FLAGS, 'form is flagged both under review and approved')
            continue
        if entry is None:
            record(DiscrepancyKind.MISSING_LEDGER, 'form has no ledger entry')
            continue
        if entry.kind != kind:
            record(DiscrepancyKind.KIND_MISMATCH, f'ledger kind is {entry.kind.value}')
        if entry.status not in CONSISTENT_STATUSES[state]:
            record(DiscrepancyKind.STATUS_MISMATCH, f'{state.lower()} form next to {entry.status.value} ledger entry')

    for request_number, entry in entries.items():
        if request_number in seen:
            continue
        found.append(
            SyncDiscrepancy(
                kind=DiscrepancyKind.ORPHAN_LEDGER,
                request_number=request_number,
                form_kind=None,
                form_state=None,
                ledger_status=entry.status.value,
                expected_status=None,
                detail='ledger entry has no form',
            )
        )

    if found:
        logger.warning('Reconciliation found %d discrepancies', len(found))
    return found


def repair_discrepancies(
    db: Session,
    *,
    actor_id: int,
    audit: AuditRecorder | None = None,
    now: datetime | None = None,
) -> list[SyncDiscrepancy]:
    """Bring the ledger in line with the forms. Returns the discrepancies that were repaired.

    Orphan entries, kind mismatches and contradictory flags need a human and
    are left alone.
    """
    at = now or datetime.now(tz=timezone.utc)
    repaired: list[SyncDiscrepancy] = []
    for discrepancy in find_discrepancies(db):
        if discrepancy.kind not in REPAIRABLE:
            continue
        form = form_service.find_by_request_number(db, discrepancy.request_number, lock=True)
        if form is None:
            continue
        target = canonical_status(form)
        if target is None:
            continue

        with db.begin_nested():
            if discrepancy.kind == DiscrepancyKind.MISSING_LEDGER:
                ledger_service.create_or_get_entry(
                    db,
                    request_number=form.request_number,
                    kind=form_service.kind_of(form),
                    requested_by_id=form.requester_user_id,
                    purpose=form_service.ledger_purpose(form),
                    description=form_service.ledger_description(form),
                    ship_id=form.ship_id,
                )
            ledger_service.force_status(
                db,
                request_number=form.request_number,
                new_status=target,
                reason=f'reconciliation ({discrepancy.kind.value})',
            )
        repaired.append(discrepancy)
        notify_best_effort(
            audit,
            request_number=form.request_number,
            action='reconcile',
            actor_id=actor_id,
            timestamp=at,
        )

    logger.info('Reconciliation repaired %d discrepancies', len(repaired), extra={'actor_id': actor_id})
    return repaired
