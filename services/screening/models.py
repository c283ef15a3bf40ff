import enum
import uuid
from datetime import date, datetime

from sqlalchemy import Boolean, Date, DateTime, Enum, Float, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class RoleName(str, enum.Enum):
    caregiver = "caregiver"
    clinician = "clinician"


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    username: Mapped[str] = mapped_column(String, unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    roles: Mapped[list["UserRole"]] = relationship(back_populates="user")
    children: Mapped[list["Child"]] = relationship(back_populates="owner")


class Role(Base):
    __tablename__ = "roles"

    name: Mapped[RoleName] = mapped_column(Enum(RoleName), primary_key=True)


class UserRole(Base):
    __tablename__ = "user_roles"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    role_name: Mapped[RoleName] = mapped_column(Enum(RoleName), ForeignKey("roles.name"))

    __table_args__ = (UniqueConstraint("user_id", "role_name", name="uq_user_role"),)

    user: Mapped[User] = relationship(back_populates="roles")


class AuthToken(Base):
    __tablename__ = "auth_tokens"

    token: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class Child(Base):
    __tablename__ = "children"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)

    first_name: Mapped[str] = mapped_column(String)
    date_of_birth: Mapped[date] = mapped_column(Date)
    gender: Mapped[str | None] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    owner: Mapped[User] = relationship(back_populates="children")
    assessments: Mapped[list["Assessment"]] = relationship(back_populates="child")


class AssessmentStatus(str, enum.Enum):
    IN_PROGRESS = "IN_PROGRESS"
    TIER1_COMPLETE = "TIER1_COMPLETE"
    TIER2_REQUIRED = "TIER2_REQUIRED"
    COMPLETED = "COMPLETED"
    EXPIRED = "EXPIRED"


class Answer(str, enum.Enum):
    YES = "YES"
    SOMETIMES = "SOMETIMES"
    NOT_SURE = "NOT_SURE"
    NO = "NO"


class Zone(str, enum.Enum):
    GREEN = "GREEN"
    YELLOW = "YELLOW"
    RED = "RED"


class Tier2Reason(str, enum.Enum):
    RISK_INDEX = "RISK_INDEX"
    RED_FLAG = "RED_FLAG"


class AccessLevel(str, enum.Enum):
    VIEW = "VIEW"
    ANNOTATE = "ANNOTATE"


class Assessment(Base):
    __tablename__ = "assessments"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    child_id: Mapped[str] = mapped_column(String, ForeignKey("children.id"), index=True)

    # Both frozen at creation so re-scoring always uses the same questionnaire.
    age_group: Mapped[str] = mapped_column(String, index=True)
    catalog_version: Mapped[str] = mapped_column(String)

    status: Mapped[AssessmentStatus] = mapped_column(
        Enum(AssessmentStatus), default=AssessmentStatus.IN_PROGRESS, index=True
    )
    tier1_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    tier1_completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    tier2_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    tier2_completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Set once after Tier 1 scoring, never changed afterwards.
    flagged_domains_json: Mapped[str] = mapped_column(String, default="[]")
    overall_score: Mapped[float | None] = mapped_column(Float, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime)

    child: Mapped[Child] = relationship(back_populates="assessments")
    responses: Mapped[list["AssessmentResponse"]] = relationship(
        back_populates="assessment", cascade="all, delete-orphan"
    )
    domain_scores: Mapped[list["DomainScore"]] = relationship(
        back_populates="assessment", cascade="all, delete-orphan"
    )
    shares: Mapped[list["AssessmentShare"]] = relationship(
        back_populates="assessment", cascade="all, delete-orphan"
    )


class AssessmentResponse(Base):
    __tablename__ = "assessment_responses"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    assessment_id: Mapped[str] = mapped_column(String, ForeignKey("assessments.id"), index=True)

    tier: Mapped[int] = mapped_column(Integer)
    domain_id: Mapped[str] = mapped_column(String, index=True)
    question_id: Mapped[str] = mapped_column(String)
    answer: Mapped[Answer] = mapped_column(Enum(Answer))
    # severity x weight for this answer
    score: Mapped[float] = mapped_column(Float)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Second writer of the same tier hits this constraint and gets a 409.
    __table_args__ = (
        UniqueConstraint("assessment_id", "tier", "question_id", name="uq_assessment_tier_question"),
    )

    assessment: Mapped[Assessment] = relationship(back_populates="responses")


class DomainScore(Base):
    __tablename__ = "domain_scores"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    assessment_id: Mapped[str] = mapped_column(String, ForeignKey("assessments.id"), index=True)

    domain_id: Mapped[str] = mapped_column(String, index=True)
    tier: Mapped[int] = mapped_column(Integer)
    risk_index: Mapped[float] = mapped_column(Float)
    zone: Mapped[Zone] = mapped_column(Enum(Zone))
    tier2_required: Mapped[bool] = mapped_column(Boolean, default=False)
    tier2_reason: Mapped[Tier2Reason | None] = mapped_column(Enum(Tier2Reason), nullable=True)
    red_flag_violations_json: Mapped[str] = mapped_column(String, default="[]")

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("assessment_id", "domain_id", "tier", name="uq_domain_score_tier"),
    )

    assessment: Mapped[Assessment] = relationship(back_populates="domain_scores")


class AssessmentShare(Base):
    __tablename__ = "assessment_shares"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    assessment_id: Mapped[str] = mapped_column(String, ForeignKey("assessments.id"), index=True)
    shared_by_user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    shared_with_user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)

    access_level: Mapped[AccessLevel] = mapped_column(Enum(AccessLevel), default=AccessLevel.VIEW)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    shared_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)

    __table_args__ = (
        UniqueConstraint("assessment_id", "shared_with_user_id", name="uq_assessment_share"),
    )

    assessment: Mapped[Assessment] = relationship(back_populates="shares")
    annotations: Mapped[list["ShareAnnotation"]] = relationship(
        back_populates="share", cascade="all, delete-orphan", order_by="ShareAnnotation.created_at"
    )


class ShareAnnotation(Base):
    __tablename__ = "share_annotations"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    share_id: Mapped[str] = mapped_column(String, ForeignKey("assessment_shares.id"), index=True)
    author_user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)

    notes: Mapped[str] = mapped_column(String)
    domain_id: Mapped[str | None] = mapped_column(String, nullable=True)
    question_id: Mapped[str | None] = mapped_column(String, nullable=True)
    section_id: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[str] = mapped_column(String, default="{}")

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    share: Mapped[AssessmentShare] = relationship(back_populates="annotations")


class AssessmentEvent(Base):
    __tablename__ = "assessment_events"
    __table_args__ = (UniqueConstraint("assessment_id", "seq", name="uq_assessment_event_seq"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    # Not a foreign key: events outlive a deleted assessment.
    assessment_id: Mapped[str] = mapped_column(String, index=True)
    actor_user_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)

    action: Mapped[str] = mapped_column(String, index=True)
    status_from: Mapped[str | None] = mapped_column(String, nullable=True)
    status_to: Mapped[str | None] = mapped_column(String, nullable=True)
    detail_json: Mapped[str] = mapped_column(String, default="{}")

    ip: Mapped[str | None] = mapped_column(String, nullable=True)
    ts: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)

    # Tamper detection: one hash chain per assessment
    seq: Mapped[int] = mapped_column(Integer)
    prev_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    entry_hash: Mapped[str] = mapped_column(String, index=True)
