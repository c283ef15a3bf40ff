"""Assessment lifecycle: creation, access checks, aggregation and deletion.

Functions here add to the session but never commit; the API layer wraps each
request in ``unit_of_work()`` so a failed step leaves nothing behind.
"""
import json
import logging
import os
from contextlib import contextmanager
from datetime import datetime, timedelta

from fastapi import Request
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from services.screening import models
from services.screening.aggregation import compute_overall_score
from services.screening.audit import record_event
from services.screening.catalog import QuestionnaireCatalog, QuestionnaireView, get_age_group
from services.screening.errors import (
    AccessDeniedError,
    ConflictError,
    InvariantViolation,
    NotFoundError,
    ScreeningError,
    ValidationError,
)
from services.screening.escalation import transition

logger = logging.getLogger(__name__)


ASSESSMENT_TTL_DAYS = int(os.getenv("SCREENING_ASSESSMENT_TTL_DAYS", "14"))


def commit(db: Session) -> None:
    """Commit, turning a uniqueness race into a 409 instead of a 500."""
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise ConflictError("Concurrent modification detected, reload and retry", detail=str(e.orig))


def get_child(db: Session, child_id: str) -> models.Child:
    child = db.get(models.Child, child_id)
    if not child:
        raise NotFoundError("Child not found")
    return child


def get_owned_child(db: Session, child_id: str, user: models.User) -> models.Child:
    child = get_child(db, child_id)
    if child.owner_user_id != user.id:
        raise AccessDeniedError("You do not have access to this child")
    return child


def get_assessment(db: Session, assessment_id: str) -> models.Assessment:
    assessment = db.get(models.Assessment, assessment_id)
    if not assessment:
        raise NotFoundError("Assessment not found")
    return assessment


def active_share_for(assessment: models.Assessment, user_id: str) -> models.AssessmentShare | None:
    for share in assessment.shares:
        if share.shared_with_user_id == user_id and share.is_active:
            return share
    return None


def is_owner(assessment: models.Assessment, user: models.User) -> bool:
    return assessment.child.owner_user_id == user.id


def get_readable_assessment(db: Session, assessment_id: str, user: models.User) -> models.Assessment:
    """Owner of the child or an active grantee may read."""
    assessment = get_assessment(db, assessment_id)
    if not is_owner(assessment, user) and active_share_for(assessment, user.id) is None:
        raise AccessDeniedError("You do not have access to this assessment")
    return assessment


def get_owned_assessment(db: Session, assessment_id: str, user: models.User) -> models.Assessment:
    assessment = get_assessment(db, assessment_id)
    if not is_owner(assessment, user):
        raise AccessDeniedError("Only the child's caregiver can modify this assessment")
    return assessment


def flagged_domains(assessment: models.Assessment) -> list[str]:
    return json.loads(assessment.flagged_domains_json or "[]")


def current_domain_scores(assessment: models.Assessment) -> dict[str, models.DomainScore]:
    """Latest-tier score per domain; a Tier 2 row replaces the Tier 1 row."""
    latest: dict[str, models.DomainScore] = {}
    for row in assessment.domain_scores:
        prev = latest.get(row.domain_id)
        if prev is None or row.tier > prev.tier:
            latest[row.domain_id] = row
    return latest


def create_assessment(
    *,
    db: Session,
    catalog: QuestionnaireCatalog,
    child: models.Child,
    actor_user_id: str,
    age_group: str | None = None,
    now: datetime | None = None,
    request: Request | None = None,
) -> models.Assessment:
    now = now or datetime.utcnow()
    if age_group is None:
        age_group = get_age_group(child.date_of_birth, now.date())
        if age_group is None:
            raise ValidationError(
                "Child's age is outside every screening age group",
                detail={"date_of_birth": child.date_of_birth.isoformat()},
            )

    # Freeze the current catalog version; raises NotFoundError for unknown age groups.
    version = catalog.latest_version(age_group)

    assessment = models.Assessment(
        child_id=child.id,
        age_group=age_group,
        catalog_version=version,
        status=models.AssessmentStatus.IN_PROGRESS,
        created_at=now,
        expires_at=now + timedelta(days=ASSESSMENT_TTL_DAYS),
    )
    db.add(assessment)
    db.flush()

    record_event(
        db=db,
        assessment_id=assessment.id,
        actor_user_id=actor_user_id,
        action="assessment.create",
        status_to=assessment.status,
        detail={"age_group": age_group, "catalog_version": version},
        request=request,
    )
    logger.info(f"Assessment {assessment.id} created for child {child.id} ({age_group} v{version})")
    return assessment


def get_questionnaire_for_assessment(
    catalog: QuestionnaireCatalog, assessment: models.Assessment, tier: int
) -> QuestionnaireView:
    """Tier 1 covers every domain; Tier 2 only the domains flagged by Tier 1."""
    if tier == 2:
        if not assessment.tier1_completed:
            raise ConflictError("Tier 1 must be completed first")
        flagged = flagged_domains(assessment)
        if not flagged:
            raise ConflictError("No domains flagged for Tier 2")
        return catalog.get_questionnaire(assessment.age_group, 2, assessment.catalog_version, domain_ids=flagged)
    return catalog.get_questionnaire(assessment.age_group, tier, assessment.catalog_version)


def final_risk_indices(catalog: QuestionnaireCatalog, assessment: models.Assessment) -> dict[str, float]:
    """Risk index per domain once every required tier is scored.

    A flagged domain is only final once its Tier 2 score exists.
    """
    questionnaire = catalog.get(assessment.age_group, assessment.catalog_version)
    scores = current_domain_scores(assessment)
    flagged = set(flagged_domains(assessment))

    pending = []
    for domain_id in questionnaire.domain_ids:
        row = scores.get(domain_id)
        required_tier = 2 if domain_id in flagged else 1
        if row is None or row.tier < required_tier:
            pending.append(domain_id)
    if pending:
        raise InvariantViolation(
            "Cannot aggregate: domains lack a final score", detail={"assessment_id": assessment.id, "pending_domains": pending}
        )
    return {d: scores[d].risk_index for d in questionnaire.domain_ids}


def finalize_assessment(
    *,
    db: Session,
    catalog: QuestionnaireCatalog,
    assessment: models.Assessment,
    actor_user_id: str | None,
    now: datetime,
    request: Request | None = None,
) -> float:
    """Compute the overall score and complete the assessment.

    Validation happens before any attribute is touched, so a failure leaves
    the assessment as it was.
    """
    questionnaire = catalog.get(assessment.age_group, assessment.catalog_version)
    overall = compute_overall_score(questionnaire, final_risk_indices(catalog, assessment))

    old = transition(assessment, models.AssessmentStatus.COMPLETED)
    assessment.overall_score = overall
    assessment.completed_at = now

    record_event(
        db=db,
        assessment_id=assessment.id,
        actor_user_id=actor_user_id,
        action="assessment.complete",
        status_from=old,
        status_to=assessment.status,
        detail={"overall_score": overall, "scheme": questionnaire.aggregation.scheme},
        request=request,
    )
    logger.info(f"Assessment {assessment.id} completed with overall score {overall}")
    return overall


def list_child_assessments(db: Session, child: models.Child) -> list[models.Assessment]:
    return (
        db.query(models.Assessment)
        .filter(models.Assessment.child_id == child.id)
        .order_by(models.Assessment.created_at.desc())
        .all()
    )


def delete_assessment(
    *, db: Session, assessment: models.Assessment, actor_user_id: str, request: Request | None = None
) -> None:
    record_event(
        db=db,
        assessment_id=assessment.id,
        actor_user_id=actor_user_id,
        action="assessment.delete",
        status_from=assessment.status,
        request=request,
    )
    db.delete(assessment)
    logger.info(f"Assessment {assessment.id} deleted by {actor_user_id}")


def screening_history(db: Session, child: models.Child, user: models.User) -> list[dict]:
    """Completed assessments of a child in completion order, for trend charts.

    The owner sees every assessment; anyone else sees only the ones actively shared with them,
    and must hold at least one such share on this child.
    """
    rows = (
        db.query(models.Assessment)
        .filter(
            models.Assessment.child_id == child.id,
            models.Assessment.status == models.AssessmentStatus.COMPLETED,
        )
        .order_by(models.Assessment.completed_at.asc())
        .all()
    )
    if child.owner_user_id != user.id:
        rows = [a for a in rows if active_share_for(a, user.id) is not None]
        if not rows and not any(active_share_for(a, user.id) for a in child.assessments):
            raise AccessDeniedError("You do not have access to this child")
    history = []
    for a in rows:
        scores = current_domain_scores(a)
        history.append(
            {
                "id": a.id,
                "age_group": a.age_group,
                "completed_at": a.completed_at.isoformat() if a.completed_at else None,
                "overall_score": a.overall_score,
                "domains": [
                    {"domain_id": d, "score": int((1 - s.risk_index) * 100 + 0.5), "max_score": 100}
                    for d, s in scores.items()
                ],
            }
        )
    return history


@contextmanager
def unit_of_work(db: Session):
    """One request's writes: committed together, or rolled back on a screening error."""
    try:
        yield
        commit(db)
    except ScreeningError:
        db.rollback()
        raise
