import json
from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from services.screening import models
from services.screening.aggregation import DomainWeighting, QuestionCountWeighting, compute_overall_score, strategy_for
from services.screening.assessments import finalize_assessment
from services.screening.errors import InvariantViolation


def test_question_count_weighting(make_questionnaire):
    q = make_questionnaire()
    assert isinstance(strategy_for(q), QuestionCountWeighting)
    # Both domains have two tier 1 questions
    assert compute_overall_score(q, {"grossMotor": 0.0, "speechLanguage": 0.0}) == 100.0
    assert compute_overall_score(q, {"grossMotor": 1 / 6, "speechLanguage": 0.0}) == 91.67
    assert compute_overall_score(q, {"grossMotor": 0.0, "speechLanguage": 1.0}) == 50.0


def test_domain_weighting(make_questionnaire):
    q = make_questionnaire(scheme="domain_weight", domain_weights={"grossMotor": 1.0, "speechLanguage": 3.0})
    assert isinstance(strategy_for(q), DomainWeighting)
    # 100 * (1 - (0 * 1 + 1 * 3) / 4)
    assert compute_overall_score(q, {"grossMotor": 0.0, "speechLanguage": 1.0}) == 25.0
    assert compute_overall_score(q, {"grossMotor": 1.0, "speechLanguage": 0.0}) == 75.0


def test_aggregation_requires_every_domain(make_questionnaire):
    q = make_questionnaire()
    with pytest.raises(InvariantViolation) as exc:
        compute_overall_score(q, {"grossMotor": 0.0})
    assert exc.value.detail == {"missing_domains": ["speechLanguage"]}


def test_aggregation_is_deterministic(make_questionnaire):
    q = make_questionnaire()
    risks = {"grossMotor": 0.123456, "speechLanguage": 0.654321}
    assert compute_overall_score(q, risks) == compute_overall_score(q, risks)


@pytest.fixture
def test_db_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    models.Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    db = Session()
    try:
        yield db
    finally:
        db.close()


def _awaiting_tier2(db) -> models.Assessment:
    user = models.User(username="caregiver", password_hash="x")
    child = models.Child(owner=user, first_name="Isha", date_of_birth=date(2024, 1, 1))
    now = datetime.utcnow()
    assessment = models.Assessment(
        child=child,
        age_group="24-36-months",
        catalog_version="1.0",
        status=models.AssessmentStatus.TIER2_REQUIRED,
        tier1_completed=True,
        tier1_completed_at=now,
        flagged_domains_json=json.dumps(["speechLanguage"]),
        expires_at=now + timedelta(days=7),
    )
    assessment.domain_scores = [
        models.DomainScore(domain_id="grossMotor", tier=1, risk_index=0.0, zone=models.Zone.GREEN),
        models.DomainScore(
            domain_id="speechLanguage",
            tier=1,
            risk_index=1.0,
            zone=models.Zone.RED,
            tier2_required=True,
            tier2_reason=models.Tier2Reason.RED_FLAG,
        ),
    ]
    db.add(assessment)
    db.commit()
    return assessment


def test_finalize_refuses_flagged_domain_without_tier2(test_db_session, small_catalog):
    db = test_db_session
    assessment = _awaiting_tier2(db)

    with pytest.raises(InvariantViolation) as exc:
        finalize_assessment(db=db, catalog=small_catalog, assessment=assessment, actor_user_id=None, now=datetime.utcnow())
    assert exc.value.detail["pending_domains"] == ["speechLanguage"]

    assert assessment.status == models.AssessmentStatus.TIER2_REQUIRED
    assert assessment.overall_score is None
    assert assessment.completed_at is None
    assert db.query(models.AssessmentEvent).count() == 0


def test_finalize_completes_once_tier2_is_scored(test_db_session, small_catalog):
    db = test_db_session
    assessment = _awaiting_tier2(db)
    assessment.domain_scores.append(
        models.DomainScore(domain_id="speechLanguage", tier=2, risk_index=0.0, zone=models.Zone.GREEN)
    )
    now = datetime.utcnow()

    overall = finalize_assessment(db=db, catalog=small_catalog, assessment=assessment, actor_user_id=None, now=now)
    db.commit()

    assert overall == 100.0
    assert assessment.status == models.AssessmentStatus.COMPLETED
    assert assessment.completed_at == now
    event = db.query(models.AssessmentEvent).one()
    assert (event.action, event.status_from, event.status_to) == ("assessment.complete", "TIER2_REQUIRED", "COMPLETED")
