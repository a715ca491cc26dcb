import secrets
from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from app.auth import Principal as Actor
from app.auth import Role, StaticIdentity
from app.db import SessionLocal, engine
from app.models import Base, HardwareChangeRequest, Principal, PrincipalRole, WebSession
from app.services import workflow_service
from app.services.form_service import FormCommon, HardwareFields

SAMPLE_SHIP_ID = 1


def _principal(db, username: str, full_name: str, role: PrincipalRole) -> Principal:
    principal = db.execute(select(Principal).where(Principal.username == username)).scalar_one_or_none()
    if not principal:
        principal = Principal(username=username, full_name=full_name, role=role, active=True)
        db.add(principal)
        db.flush()
    return principal


def _dev_session(db, principal: Principal) -> str:
    token = secrets.token_urlsafe(32)
    db.add(
        WebSession(
            session_token=token,
            principal_id=principal.id,
            expires_at=datetime.now(tz=timezone.utc) + timedelta(days=7),
        )
    )
    return token


def seed() -> dict[str, str]:
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as db:
        admin = _principal(db, 'admin', 'Fleet IT Administrator', PrincipalRole.ADMINISTRATOR)
        engineer = _principal(db, 'engineer', 'Chief Engineer', PrincipalRole.ENGINEER)

        has_sample = db.execute(
            select(HardwareChangeRequest.id).where(HardwareChangeRequest.requester_user_id == engineer.id).limit(1)
        ).scalar_one_or_none()
        if not has_sample:
            workflow_service.create_request(
                db,
                identity=StaticIdentity(Actor(id=engineer.id, username=engineer.username, role=Role.ENGINEER)),
                common=FormCommon(
                    ship_id=SAMPLE_SHIP_ID,
                    department='Engine',
                    position_title='Chief Engineer',
                    requester_name='Chief Engineer',
                    reason='Replace failing ECDIS workstation',
                ),
                fields=HardwareFields(
                    installed_cbs='Navigation',
                    installed_component='ECDIS workstation',
                    before_hw_manufacturer_model='Acme NX-100',
                    before_hw_name='ECDIS-1',
                    before_hw_os='Windows 10 IoT',
                    after_hw_manufacturer_model='Acme NX-200',
                    after_hw_name='ECDIS-1',
                    after_hw_os='Windows 11 IoT',
                    work_description='Swap workstation and restore chart licences',
                ),
            )

        tokens = {'admin': _dev_session(db, admin), 'engineer': _dev_session(db, engineer)}
        db.commit()
        return tokens


if __name__ == '__main__':
    tokens = seed()
    print('Seed data inserted/verified.')
    for username, token in tokens.items():
        print(f'{username} session token: {token}')
