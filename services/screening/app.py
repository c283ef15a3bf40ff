import json
import logging
import os
from datetime import date, datetime

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from services.screening import models
from services.screening.assessments import (
    create_assessment,
    current_domain_scores,
    delete_assessment,
    flagged_domains,
    get_child,
    get_owned_assessment,
    get_owned_child,
    get_questionnaire_for_assessment,
    get_readable_assessment,
    list_child_assessments,
    screening_history,
    unit_of_work,
)
from services.screening.audit import list_events, verify_event_chain
from services.screening.auth import (
    create_access_token,
    get_current_user,
    grant_role,
    hash_password,
    require_role,
    verify_password,
)
from services.screening.catalog import QuestionnaireCatalog, age_in_months, get_age_group, get_catalog
from services.screening.collector import submit_responses
from services.screening.db import engine, get_db
from services.screening.errors import ScreeningError
from services.screening.report import build_report
from services.screening.schemas import (
    AgeGroupResponse,
    AnnotationCreate,
    AnnotationResponse,
    AssessmentCreate,
    AssessmentEventResponse,
    AssessmentEventsResponse,
    AssessmentResponse,
    ChildCreate,
    ChildResponse,
    DomainScoreResponse,
    EscalationResponse,
    LoginRequest,
    QuestionnaireResponse,
    RegisterRequest,
    ScreeningHistoryResponse,
    ShareCreate,
    SharedAssessmentResponse,
    ShareResponse,
    SubmissionResponse,
    SubmitResponsesRequest,
    TokenResponse,
)
from services.screening.sharing import add_annotation, list_shared_with, revoke_share, share_assessment

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

# Create tables (dev-only). In production use Alembic migrations.
models.Base.metadata.create_all(bind=engine)

app = FastAPI(title="Developmental Screening API")


@app.exception_handler(ScreeningError)
async def screening_error_handler(request: Request, exc: ScreeningError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code, "context": exc.detail},
    )


def _child_response(c: models.Child) -> ChildResponse:
    return ChildResponse(id=c.id, first_name=c.first_name, date_of_birth=c.date_of_birth.isoformat(), gender=c.gender)


def _assessment_response(a: models.Assessment) -> AssessmentResponse:
    scores = {
        d: DomainScoreResponse(
            domain_id=s.domain_id,
            tier=s.tier,
            risk_index=s.risk_index,
            zone=s.zone.value,
            tier2_required=s.tier2_required,
            tier2_reason=s.tier2_reason.value if s.tier2_reason else None,
            red_flag_violations=json.loads(s.red_flag_violations_json),
        )
        for d, s in current_domain_scores(a).items()
    }
    return AssessmentResponse(
        id=a.id,
        child_id=a.child_id,
        age_group=a.age_group,
        catalog_version=a.catalog_version,
        status=a.status.value,
        tier1_completed=a.tier1_completed,
        tier2_completed=a.tier2_completed,
        domain_scores=scores,
        flagged_domains=flagged_domains(a),
        # Only meaningful once completed.
        overall_score=a.overall_score if a.status == models.AssessmentStatus.COMPLETED else None,
        created_at=a.created_at.isoformat(),
        completed_at=a.completed_at.isoformat() if a.completed_at else None,
        expires_at=a.expires_at.isoformat(),
    )


def _share_response(s: models.AssessmentShare) -> ShareResponse:
    return ShareResponse(
        id=s.id,
        assessment_id=s.assessment_id,
        shared_by_user_id=s.shared_by_user_id,
        shared_with_user_id=s.shared_with_user_id,
        access_level=s.access_level.value,
        is_active=s.is_active,
        shared_at=s.shared_at.isoformat(),
    )


def _annotation_response(n: models.ShareAnnotation) -> AnnotationResponse:
    return AnnotationResponse(
        id=n.id,
        share_id=n.share_id,
        author_user_id=n.author_user_id,
        notes=n.notes,
        domain_id=n.domain_id,
        question_id=n.question_id,
        section_id=n.section_id,
        metadata=json.loads(n.metadata_json),
        created_at=n.created_at.isoformat(),
    )


@app.get("/health", tags=["Monitoring"])
def get_health():
    return {"status": "ok"}


@app.get("/version", tags=["Monitoring"])
def get_version():
    return {"service": "screening-api", "version": "0.1.0", "time": datetime.utcnow().isoformat()}


@app.post("/auth/register", response_model=TokenResponse, tags=["Auth"])
def register(payload: RegisterRequest, db: Session = Depends(get_db)):
    existing = db.query(models.User).filter(models.User.username == payload.username).first()
    if existing:
        raise HTTPException(status_code=409, detail="Username already exists")

    user = models.User(username=payload.username, password_hash=hash_password(payload.password))
    db.add(user)
    db.flush()
    grant_role(db, user.id, payload.role)
    token = create_access_token(user_id=user.id, db=db)
    db.commit()
    return TokenResponse(access_token=token, user_id=user.id)


@app.post("/auth/login", response_model=TokenResponse, tags=["Auth"])
def login(payload: LoginRequest, db: Session = Depends(get_db)):
    user = db.query(models.User).filter(models.User.username == payload.username).first()
    if not user or not verify_password(payload.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = create_access_token(user_id=user.id, db=db)
    db.commit()
    return TokenResponse(access_token=token, user_id=user.id)


# Children (read-mostly registry owned by caregivers)


@app.post("/children", response_model=ChildResponse, tags=["Children"])
def create_child(
    payload: ChildCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(require_role(models.RoleName.caregiver)),
):
    if payload.date_of_birth > date.today():
        raise HTTPException(status_code=422, detail="Date of birth is in the future")
    child = models.Child(
        owner_user_id=user.id,
        first_name=payload.first_name,
        date_of_birth=payload.date_of_birth,
        gender=payload.gender,
    )
    db.add(child)
    db.commit()
    db.refresh(child)
    return _child_response(child)


@app.get("/children/{child_id}", response_model=ChildResponse, tags=["Children"])
def get_child_profile(child_id: str, db: Session = Depends(get_db), user: models.User = Depends(get_current_user)):
    return _child_response(get_owned_child(db, child_id, user))


@app.get("/children/{child_id}/age-group", response_model=AgeGroupResponse, tags=["Children"])
def get_child_age_group(child_id: str, db: Session = Depends(get_db), user: models.User = Depends(get_current_user)):
    child = get_owned_child(db, child_id, user)
    today = date.today()
    group = get_age_group(child.date_of_birth, today)
    return AgeGroupResponse(
        child_id=child.id,
        age_months=age_in_months(child.date_of_birth, today),
        age_group=group,
        eligible=group is not None,
    )


@app.get("/children/{child_id}/assessments", response_model=list[AssessmentResponse], tags=["Assessments"])
def get_child_assessments(child_id: str, db: Session = Depends(get_db), user: models.User = Depends(get_current_user)):
    child = get_owned_child(db, child_id, user)
    return [_assessment_response(a) for a in list_child_assessments(db, child)]


@app.get("/children/{child_id}/history", response_model=ScreeningHistoryResponse, tags=["Assessments"])
def get_child_history(child_id: str, db: Session = Depends(get_db), user: models.User = Depends(get_current_user)):
    child = get_child(db, child_id)
    results = screening_history(db, child, user)
    return ScreeningHistoryResponse(child_id=child.id, child_name=child.first_name, results=results)


# Assessments


@app.post("/assessments", response_model=AssessmentResponse, tags=["Assessments"])
def create_new_assessment(
    payload: AssessmentCreate,
    request: Request,
    db: Session = Depends(get_db),
    catalog: QuestionnaireCatalog = Depends(get_catalog),
    user: models.User = Depends(require_role(models.RoleName.caregiver)),
):
    child = get_owned_child(db, payload.child_id, user)
    with unit_of_work(db):
        assessment = create_assessment(
            db=db, catalog=catalog, child=child, actor_user_id=user.id, age_group=payload.age_group, request=request
        )
    db.refresh(assessment)
    return _assessment_response(assessment)


@app.get("/assessments/{assessment_id}", response_model=AssessmentResponse, tags=["Assessments"])
def read_assessment(assessment_id: str, db: Session = Depends(get_db), user: models.User = Depends(get_current_user)):
    return _assessment_response(get_readable_assessment(db, assessment_id, user))


@app.delete("/assessments/{assessment_id}", tags=["Assessments"])
def remove_assessment(
    assessment_id: str,
    request: Request,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    assessment = get_owned_assessment(db, assessment_id, user)
    with unit_of_work(db):
        delete_assessment(db=db, assessment=assessment, actor_user_id=user.id, request=request)
    return {"success": True}


@app.get("/assessments/{assessment_id}/questionnaire/{tier}", response_model=QuestionnaireResponse, tags=["Assessments"])
def read_questionnaire(
    assessment_id: str,
    tier: int,
    db: Session = Depends(get_db),
    catalog: QuestionnaireCatalog = Depends(get_catalog),
    user: models.User = Depends(get_current_user),
):
    assessment = get_readable_assessment(db, assessment_id, user)
    view = get_questionnaire_for_assessment(catalog, assessment, tier)
    return QuestionnaireResponse(
        assessment_id=assessment.id,
        age_group=view.age_group,
        version=view.version,
        display_name=view.display_name,
        tier=view.tier,
        estimated_minutes=view.estimated_minutes,
        domains=[
            {
                "domain_id": d.domain_id,
                "domain_name": d.domain_name,
                "description": d.description,
                "questions": [q.model_dump(exclude={"invert_scoring"}) for q in d.questions],
            }
            for d in view.domains
        ],
    )


@app.post("/assessments/{assessment_id}/responses/{tier}", response_model=SubmissionResponse, tags=["Assessments"])
def submit_tier_responses(
    assessment_id: str,
    tier: int,
    payload: SubmitResponsesRequest,
    request: Request,
    db: Session = Depends(get_db),
    catalog: QuestionnaireCatalog = Depends(get_catalog),
    user: models.User = Depends(get_current_user),
):
    assessment = get_owned_assessment(db, assessment_id, user)
    with unit_of_work(db):
        result = submit_responses(
            db=db,
            catalog=catalog,
            assessment=assessment,
            tier=tier,
            responses=[(r.question_id, r.answer) for r in payload.responses],
            actor_user_id=user.id,
            request=request,
        )
    db.refresh(assessment)

    escalation = None
    if result.escalation is not None:
        escalation = EscalationResponse(
            tier2_required=result.escalation.tier2_required,
            flagged_domains=list(result.escalation.flagged_domains),
            reasons={d: r.value for d, r in result.escalation.reasons.items()},
        )
    return SubmissionResponse(assessment=_assessment_response(assessment), escalation=escalation)


@app.get("/assessments/{assessment_id}/report", tags=["Reports"])
def read_report(
    assessment_id: str,
    db: Session = Depends(get_db),
    catalog: QuestionnaireCatalog = Depends(get_catalog),
    user: models.User = Depends(get_current_user),
):
    assessment = get_readable_assessment(db, assessment_id, user)
    return build_report(catalog, assessment)


@app.get("/assessments/{assessment_id}/events", response_model=AssessmentEventsResponse, tags=["Audit"])
def read_assessment_events(assessment_id: str, db: Session = Depends(get_db), user: models.User = Depends(get_current_user)):
    assessment = get_owned_assessment(db, assessment_id, user)
    rows = list_events(db, assessment.id)
    return AssessmentEventsResponse(
        events=[
            AssessmentEventResponse(
                seq=r.seq,
                action=r.action,
                actor_user_id=r.actor_user_id,
                status_from=r.status_from,
                status_to=r.status_to,
                detail=json.loads(r.detail_json),
                ts=r.ts.isoformat(),
                prev_hash=r.prev_hash,
                entry_hash=r.entry_hash,
            )
            for r in rows
        ],
        chain_ok=verify_event_chain(db, assessment.id),
    )


# Sharing / annotations


@app.post("/assessments/{assessment_id}/shares", response_model=ShareResponse, tags=["Sharing"])
def create_share(
    assessment_id: str,
    payload: ShareCreate,
    request: Request,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    assessment = get_owned_assessment(db, assessment_id, user)
    with unit_of_work(db):
        share = share_assessment(
            db=db,
            assessment=assessment,
            owner=user,
            clinician_username=payload.clinician_username,
            access_level=payload.access_level,
            request=request,
        )
    db.refresh(share)
    return _share_response(share)


@app.delete("/assessments/{assessment_id}/shares/{clinician_user_id}", tags=["Sharing"])
def delete_share(
    assessment_id: str,
    clinician_user_id: str,
    request: Request,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    assessment = get_owned_assessment(db, assessment_id, user)
    with unit_of_work(db):
        revoke_share(db=db, assessment=assessment, owner=user, clinician_user_id=clinician_user_id, request=request)
    return {"success": True}


@app.get("/shares/me", response_model=list[SharedAssessmentResponse], tags=["Sharing"])
def shared_with_me(db: Session = Depends(get_db), user: models.User = Depends(get_current_user)):
    return [
        SharedAssessmentResponse(
            share=_share_response(s),
            assessment_status=s.assessment.status.value,
            overall_score=s.assessment.overall_score if s.assessment.status == models.AssessmentStatus.COMPLETED else None,
            flagged_domains=flagged_domains(s.assessment),
        )
        for s in list_shared_with(db, user)
    ]


@app.post("/assessments/{assessment_id}/annotations", response_model=AnnotationResponse, tags=["Sharing"])
def create_annotation(
    assessment_id: str,
    payload: AnnotationCreate,
    request: Request,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    assessment = get_readable_assessment(db, assessment_id, user)
    with unit_of_work(db):
        note = add_annotation(
            db=db,
            assessment=assessment,
            user=user,
            notes=payload.notes,
            domain_id=payload.domain_id,
            question_id=payload.question_id,
            section_id=payload.section_id,
            metadata=payload.metadata,
            request=request,
        )
    db.refresh(note)
    return _annotation_response(note)


@app.get("/assessments/{assessment_id}/annotations", response_model=list[AnnotationResponse], tags=["Sharing"])
def read_annotations(assessment_id: str, db: Session = Depends(get_db), user: models.User = Depends(get_current_user)):
    assessment = get_readable_assessment(db, assessment_id, user)
    notes = [n for s in assessment.shares for n in s.annotations]
    notes.sort(key=lambda n: n.created_at)
    return [_annotation_response(n) for n in notes]
