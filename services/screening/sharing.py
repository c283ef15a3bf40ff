"""Sharing/annotation ledger: read or annotate grants to clinicians, and their notes."""
import json
import logging
from datetime import datetime

from fastapi import Request
from sqlalchemy.orm import Session

from services.screening import models
from services.screening.assessments import active_share_for
from services.screening.audit import record_event
from services.screening.auth import has_role
from services.screening.errors import AccessDeniedError, ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def share_assessment(
    *,
    db: Session,
    assessment: models.Assessment,
    owner: models.User,
    clinician_username: str,
    access_level: models.AccessLevel = models.AccessLevel.VIEW,
    request: Request | None = None,
) -> models.AssessmentShare:
    clinician = db.query(models.User).filter(models.User.username == clinician_username).first()
    if not clinician or not has_role(db, clinician.id, models.RoleName.clinician):
        raise NotFoundError("Clinician not found")
    if clinician.id == owner.id:
        raise ValidationError("Cannot share an assessment with yourself")

    existing = (
        db.query(models.AssessmentShare)
        .filter(
            models.AssessmentShare.assessment_id == assessment.id,
            models.AssessmentShare.shared_with_user_id == clinician.id,
        )
        .first()
    )
    if existing and existing.is_active:
        raise ConflictError("Assessment already shared with this clinician")

    if existing:
        # Reactivate a previously revoked grant
        existing.is_active = True
        existing.access_level = access_level
        existing.shared_at = datetime.utcnow()
        share = existing
    else:
        share = models.AssessmentShare(
            shared_by_user_id=owner.id,
            shared_with_user_id=clinician.id,
            access_level=access_level,
        )
        assessment.shares.append(share)
        db.flush()

    record_event(
        db=db,
        assessment_id=assessment.id,
        actor_user_id=owner.id,
        action="share.grant",
        detail={"shared_with": clinician.id, "access_level": access_level.value},
        request=request,
    )
    logger.info(f"Assessment {assessment.id} shared with {clinician.id} ({access_level.value})")
    return share


def revoke_share(
    *,
    db: Session,
    assessment: models.Assessment,
    owner: models.User,
    clinician_user_id: str,
    request: Request | None = None,
) -> models.AssessmentShare:
    share = active_share_for(assessment, clinician_user_id)
    if share is None:
        raise NotFoundError("Share not found")

    share.is_active = False
    record_event(
        db=db,
        assessment_id=assessment.id,
        actor_user_id=owner.id,
        action="share.revoke",
        detail={"shared_with": clinician_user_id},
        request=request,
    )
    logger.info(f"Assessment {assessment.id} share revoked for {clinician_user_id}")
    return share


def list_shared_with(db: Session, user: models.User) -> list[models.AssessmentShare]:
    return (
        db.query(models.AssessmentShare)
        .filter(
            models.AssessmentShare.shared_with_user_id == user.id,
            models.AssessmentShare.is_active.is_(True),
        )
        .order_by(models.AssessmentShare.shared_at.desc())
        .all()
    )


def add_annotation(
    *,
    db: Session,
    assessment: models.Assessment,
    user: models.User,
    notes: str,
    domain_id: str | None = None,
    question_id: str | None = None,
    section_id: str | None = None,
    metadata: dict | None = None,
    request: Request | None = None,
) -> models.ShareAnnotation:
    share = active_share_for(assessment, user.id)
    if share is None:
        raise AccessDeniedError("You do not have access to this assessment")
    if share.access_level != models.AccessLevel.ANNOTATE:
        raise AccessDeniedError("You do not have annotation permissions")

    annotation = models.ShareAnnotation(
        author_user_id=user.id,
        notes=notes,
        domain_id=domain_id,
        question_id=question_id,
        section_id=section_id,
        metadata_json=json.dumps(metadata or {}),
    )
    share.annotations.append(annotation)
    db.flush()

    record_event(
        db=db,
        assessment_id=assessment.id,
        actor_user_id=user.id,
        action="annotation.add",
        detail={"annotation_id": annotation.id, "domain_id": domain_id},
        request=request,
    )
    logger.info(f"Annotation {annotation.id} added to assessment {assessment.id} by {user.id}")
    return annotation

