from __future__ import annotations

import re
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models import FORM_MODELS, ChangeRequest, RequestKind

PREFIX_BY_KIND: dict[RequestKind, str] = {
    RequestKind.HARDWARE: 'HW',
    RequestKind.SOFTWARE: 'SW',
    RequestKind.SYSTEM_PLAN: 'SP',
    RequestKind.SECURITY_REVIEW: 'SER',
}
KIND_BY_PREFIX = {prefix: kind for kind, prefix in PREFIX_BY_KIND.items()}

# Extra characters appended after the first collision within a minute.
TOKEN_ALPHABET = string.ascii_uppercase + string.digits
TOKEN_LENGTH = 2

REQUEST_NUMBER_RE = re.compile(r'^(?P<prefix>[A-Z]{2,3})-(?P<period>\d{6})-(?P<suffix>[0-9A-Z]{4,12})$')


@dataclass(frozen=True)
class ParsedRequestNumber:
    kind: RequestKind
    year: int
    month: int
    suffix: str


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def build_request_number(kind: RequestKind, now: datetime, token: str = '') -> str:
    return f'{PREFIX_BY_KIND[kind]}-{now:%Y%m}-{now:%d%H%M}{token}'


def parse_request_number(request_number: str) -> ParsedRequestNumber | None:
    match = REQUEST_NUMBER_RE.match(request_number or '')
    if not match:
        return None
    kind = KIND_BY_PREFIX.get(match.group('prefix'))
    if kind is None:
        return None
    period = match.group('period')
    year, month = int(period[:4]), int(period[4:])
    if not 1 <= month <= 12:
        return None
    return ParsedRequestNumber(kind=kind, year=year, month=month, suffix=match.group('suffix'))


def kind_for_request_number(request_number: str) -> RequestKind | None:
    parsed = parse_request_number(request_number)
    return parsed.kind if parsed else None


def is_request_number_taken(db: Session, request_number: str) -> bool:
    """Uniqueness spans the ledger and every specialized form table."""
    models = [ChangeRequest, *FORM_MODELS.values()]
    for model in models:
        found = db.execute(
            select(model.id).where(model.request_number == request_number).limit(1)
        ).scalar_one_or_none()
        if found is not None:
            return True
    return False


def candidate_request_numbers(kind: RequestKind, *, now: datetime | None = None, attempts: int):
    """Yield up to ``attempts`` candidates: the bare minute stamp first, then tokenized ones."""
    moment = now or _now()
    for attempt in range(attempts):
        token = '' if attempt == 0 else ''.join(secrets.choice(TOKEN_ALPHABET) for _ in range(TOKEN_LENGTH))
        yield build_request_number(kind, moment, token)
