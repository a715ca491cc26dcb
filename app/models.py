from __future__ import annotations

from datetime import date, datetime
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    false,
    func,
    true,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column

# SQLite only autoincrements INTEGER PRIMARY KEY.
BigIntPK = BigInteger().with_variant(Integer, 'sqlite')


class Base(DeclarativeBase):
    pass


class PrincipalRole(str, Enum):
    ADMINISTRATOR = 'ADMINISTRATOR'
    ENGINEER = 'ENGINEER'


class RequestKind(str, Enum):
    HARDWARE = 'HARDWARE'
    SOFTWARE = 'SOFTWARE'
    SYSTEM_PLAN = 'SYSTEM_PLAN'
    SECURITY_REVIEW = 'SECURITY_REVIEW'


class ChangeStatus(str, Enum):
    DRAFT = 'DRAFT'
    SUBMITTED = 'SUBMITTED'
    UNDER_REVIEW = 'UNDER_REVIEW'
    APPROVED = 'APPROVED'
    REJECTED = 'REJECTED'
    COMPLETED = 'COMPLETED'


class TrailAction(str, Enum):
    SUBMIT = 'SUBMIT'
    APPROVE = 'APPROVE'
    REJECT = 'REJECT'
    IMPLEMENT = 'IMPLEMENT'


class Principal(Base):
    __tablename__ = 'principals'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    username: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    full_name: Mapped[str | None] = mapped_column(Text)
    role: Mapped[PrincipalRole] = mapped_column(SQLEnum(PrincipalRole, name='principal_role'), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=true())
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class WebSession(Base):
    __tablename__ = 'web_sessions'
    __table_args__ = (
        UniqueConstraint('session_token', name='web_sessions_session_token_key'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    session_token: Mapped[str] = mapped_column(String(128), nullable=False)
    principal_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('principals.id'), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class ChangeRequest(Base):
    """Kind-agnostic ledger entry mirrored from a specialized form."""

    __tablename__ = 'change_requests'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    request_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    kind: Mapped[RequestKind] = mapped_column(SQLEnum(RequestKind, name='request_kind'), nullable=False)
    ship_id: Mapped[int | None] = mapped_column(BigInteger)
    requested_by_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('principals.id'), nullable=False)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    purpose: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(String(2000))
    status: Mapped[ChangeStatus] = mapped_column(
        SQLEnum(ChangeStatus, name='change_status'), nullable=False, default=ChangeStatus.DRAFT
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {'version_id_col': version}


class Approval(Base):
    __tablename__ = 'approvals'
    __table_args__ = (
        UniqueConstraint('change_request_id', 'stage', name='approvals_change_request_stage_key'),
        CheckConstraint('stage >= 1', name='approvals_stage_positive'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    change_request_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('change_requests.id', ondelete='RESTRICT'), nullable=False, index=True
    )
    stage: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[TrailAction] = mapped_column(SQLEnum(TrailAction, name='trail_action'), nullable=False)
    action_by_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('principals.id'), nullable=False)
    action_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    comment: Mapped[str | None] = mapped_column(String(1000))


class SpecializedFormMixin:
    """Lifecycle columns shared by the four specialized request forms."""

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    request_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    requester_user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('principals.id'), nullable=False)
    ship_id: Mapped[int | None] = mapped_column(BigInteger)
    department: Mapped[str | None] = mapped_column(String(100))
    position_title: Mapped[str | None] = mapped_column(String(100))
    requester_name: Mapped[str | None] = mapped_column(String(100))
    reason: Mapped[str | None] = mapped_column(Text)

    is_under_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    is_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    reviewed_by_user_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('principals.id'))
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    review_comment: Mapped[str | None] = mapped_column(Text)
    approved_by_user_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('principals.id'))
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    @declared_attr.directive
    def __table_args__(cls) -> tuple:
        return (
            CheckConstraint(
                'NOT (is_under_review AND is_approved)',
                name=f'{cls.__tablename__}_flags_exclusive',
            ),
        )

    @declared_attr.directive
    def __mapper_args__(cls) -> dict:
        return {'version_id_col': cls.__table__.c.version}


class HardwareChangeRequest(SpecializedFormMixin, Base):
    __tablename__ = 'hardware_change_requests'

    installed_cbs: Mapped[str | None] = mapped_column(String(255))
    installed_component: Mapped[str | None] = mapped_column(String(255))
    before_hw_manufacturer_model: Mapped[str | None] = mapped_column(String(255))
    before_hw_name: Mapped[str | None] = mapped_column(String(255))
    before_hw_os: Mapped[str | None] = mapped_column(String(255))
    after_hw_manufacturer_model: Mapped[str | None] = mapped_column(String(255))
    after_hw_name: Mapped[str | None] = mapped_column(String(255))
    after_hw_os: Mapped[str | None] = mapped_column(String(255))
    work_description: Mapped[str | None] = mapped_column(Text)
    security_review_comment: Mapped[str | None] = mapped_column(Text)


class SoftwareChangeRequest(SpecializedFormMixin, Base):
    __tablename__ = 'software_change_requests'

    installed_cbs: Mapped[str | None] = mapped_column(String(255))
    installed_component: Mapped[str | None] = mapped_column(String(255))
    before_sw_manufacturer: Mapped[str | None] = mapped_column(String(255))
    before_sw_name: Mapped[str | None] = mapped_column(String(255))
    before_sw_version: Mapped[str | None] = mapped_column(String(100))
    after_sw_manufacturer: Mapped[str | None] = mapped_column(String(255))
    after_sw_name: Mapped[str | None] = mapped_column(String(255))
    after_sw_version: Mapped[str | None] = mapped_column(String(100))
    work_description: Mapped[str | None] = mapped_column(Text)
    security_review_comment: Mapped[str | None] = mapped_column(Text)


class SystemChangePlan(SpecializedFormMixin, Base):
    __tablename__ = 'system_change_plans'

    installed_cbs: Mapped[str | None] = mapped_column(String(200))
    installed_component: Mapped[str | None] = mapped_column(String(200))
    before_manufacturer_model: Mapped[str | None] = mapped_column(String(200))
    before_hw_sw_name: Mapped[str | None] = mapped_column(String(200))
    before_version: Mapped[str | None] = mapped_column(String(100))
    after_manufacturer_model: Mapped[str | None] = mapped_column(String(200))
    after_hw_sw_name: Mapped[str | None] = mapped_column(String(200))
    after_version: Mapped[str | None] = mapped_column(String(100))
    plan_details: Mapped[str | None] = mapped_column(Text)
    security_review_comments: Mapped[str | None] = mapped_column(Text)


class SecurityReviewStatement(SpecializedFormMixin, Base):
    __tablename__ = 'security_review_statements'

    review_date: Mapped[date | None] = mapped_column(Date)
    reviewer_department: Mapped[str | None] = mapped_column(String(100))
    reviewer_position: Mapped[str | None] = mapped_column(String(100))
    reviewer_name: Mapped[str | None] = mapped_column(String(100))
    overall_result: Mapped[str | None] = mapped_column(Text)
    review_opinion: Mapped[str | None] = mapped_column(Text)


class SecurityReviewItem(Base):
    __tablename__ = 'security_review_items'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    statement_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('security_review_statements.id', ondelete='CASCADE'), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    check_item: Mapped[str] = mapped_column(String(500), nullable=False)
    result: Mapped[str] = mapped_column(String(100), nullable=False)
    note: Mapped[str | None] = mapped_column(String(1000))


FORM_MODELS: dict[RequestKind, type[SpecializedFormMixin]] = {
    RequestKind.HARDWARE: HardwareChangeRequest,
    RequestKind.SOFTWARE: SoftwareChangeRequest,
    RequestKind.SYSTEM_PLAN: SystemChangePlan,
    RequestKind.SECURITY_REVIEW: SecurityReviewStatement,
}


class AuditLog(Base):
    __tablename__ = 'audit_log'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    actor_principal_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('principals.id'))
    action: Mapped[str] = mapped_column(Text, nullable=False)
    request_number: Mapped[str | None] = mapped_column(String(50), index=True)
    ip: Mapped[str | None] = mapped_column(String(64))
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
