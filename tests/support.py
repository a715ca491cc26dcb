from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.auth import Principal as Actor
from app.auth import Role, StaticIdentity
from app.db import make_engine
from app.models import Base, Principal, PrincipalRole
from app.services.form_service import FormCommon, HardwareFields

JAN_5 = datetime(2024, 1, 5, 12, 0, tzinfo=timezone.utc)


def make_session_factory() -> sessionmaker:
    engine = make_engine(
        'sqlite+pysqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def add_principal(db: Session, username: str, role: PrincipalRole) -> Actor:
    row = Principal(username=username, full_name=username.title(), role=role, active=True)
    db.add(row)
    db.flush()
    return Actor(id=row.id, username=row.username, role=Role(role.value))


def identity(actor: Actor) -> StaticIdentity:
    return StaticIdentity(actor)


def hardware_fields(**overrides) -> HardwareFields:
    values = {
        'installed_cbs': 'Navigation',
        'installed_component': 'ECDIS workstation',
        'before_hw_manufacturer_model': 'Acme NX-100',
        'before_hw_name': 'ECDIS-1',
        'before_hw_os': 'Windows 10 IoT',
        'after_hw_manufacturer_model': 'Acme NX-200',
        'after_hw_name': 'ECDIS-2',
        'after_hw_os': 'Windows 11 IoT',
        'work_description': 'Swap workstation',
    }
    values.update(overrides)
    return HardwareFields(**values)


def common(**overrides) -> FormCommon:
    values = {
        'ship_id': 7,
        'department': 'Engine',
        'position_title': 'Chief Engineer',
        'requester_name': 'C. Engineer',
        'reason': 'Replace failing workstation',
    }
    values.update(overrides)
    return FormCommon(**values)


class RecordingAudit:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, int, datetime]] = []

    def record_transition(self, request_number, action, actor_id, timestamp) -> None:
        self.calls.append((request_number, action, actor_id, timestamp))


class FailingAudit:
    def record_transition(self, request_number, action, actor_id, timestamp) -> None:
        raise RuntimeError('audit sink offline')
