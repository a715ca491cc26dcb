from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.errors import ValidationError
from app.models import Approval, ChangeRequest, TrailAction

COMMENT_MAX_LENGTH = 1000


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _request_number_for(db: Session, change_request_id: int) -> str | None:
    return db.execute(
        select(ChangeRequest.request_number).where(ChangeRequest.id == change_request_id)
    ).scalar_one_or_none()


def append(
    db: Session,
    *,
    change_request_id: int,
    action: TrailAction,
    actor_id: int,
    comment: str | None = None,
    action_at: datetime | None = None,
) -> Approval:
    """Append the next stage for a ledger entry.

    Callers must hold the ledger row lock so the max(stage) read and the
    insert cannot interleave with another append for the same entry; the
    unique (change_request_id, stage) constraint backs this up.
    """
    clean_comment = (comment or '').strip()
    if action == TrailAction.REJECT and not clean_comment:
        raise ValidationError(
            _request_number_for(db, change_request_id),
            'reject',
            'a rejection comment is required',
        )

    last_stage = db.execute(
        select(func.max(Approval.stage)).where(Approval.change_request_id == change_request_id)
    ).scalar_one()
    entry = Approval(
        change_request_id=change_request_id,
        stage=(last_stage or 0) + 1,
        action=action,
        action_by_id=actor_id,
        action_at=action_at or _now(),
        comment=clean_comment[:COMMENT_MAX_LENGTH] or None,
    )
    db.add(entry)
    db.flush()
    return entry


def history(db: Session, change_request_id: int) -> list[Approval]:
    return db.execute(
        select(Approval)
        .where(Approval.change_request_id == change_request_id)
        .order_by(Approval.stage.asc())
    ).scalars().all()


def latest_action(db: Session, change_request_id: int) -> Approval | None:
    return db.execute(
        select(Approval)
        .where(Approval.change_request_id == change_request_id)
        .order_by(Approval.stage.desc())
        .limit(1)
    ).scalar_one_or_none()


def has_entries(db: Session, change_request_id: int) -> bool:
    return latest_action(db, change_request_id) is not None


def trail_summary(entry: Approval) -> dict:
    return {
        'stage': entry.stage,
        'action': entry.action.value,
        'action_by_id': entry.action_by_id,
        'action_at': entry.action_at,
        'comment': entry.comment,
    }
