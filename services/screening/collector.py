"""Response collection: one tier's full answer set, validated, scored and persisted atomically."""
import json
import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from fastapi import Request
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from services.screening import models
from services.screening.assessments import (
    commit,
    finalize_assessment,
    get_questionnaire_for_assessment,
)
from services.screening.audit import record_event
from services.screening.catalog import QuestionnaireCatalog, QuestionnaireView
from services.screening.errors import ConflictError, ExpiredError, NotFoundError, ValidationError
from services.screening.escalation import EscalationDecision, decide_escalation, transition
from services.screening.scoring import DomainScoreResult, response_score, score_domain

logger = logging.getLogger(__name__)


@dataclass
class SubmissionResult:
    assessment: models.Assessment
    domain_scores: list[DomainScoreResult]
    escalation: EscalationDecision | None = None


def validate_submission(
    view: QuestionnaireView, responses: Iterable[tuple[str, models.Answer | str]]
) -> dict[str, models.Answer]:
    """Every question of the view answered exactly once, nothing else.

    Returns:
        question id -> Answer
    """
    expected = view.question_ids()
    pairs = list(responses)
    counts = Counter(qid for qid, _ in pairs)

    duplicates = sorted(qid for qid, n in counts.items() if n > 1)
    unknown = sorted(qid for qid in counts if qid not in expected)
    missing = sorted(expected - set(counts))
    if duplicates or unknown or missing:
        raise ValidationError(
            f"Tier {view.tier} submission does not match the questionnaire",
            detail={"missing": missing, "unknown": unknown, "duplicates": duplicates},
        )

    answers = {}
    for qid, answer in pairs:
        try:
            answers[qid] = models.Answer(answer)
        except ValueError:
            raise ValidationError(f"Invalid answer {answer!r} for question {qid}")
    return answers


def check_expiry(
    *, db: Session, assessment: models.Assessment, now: datetime, actor_user_id: str | None, request: Request | None = None
) -> None:
    """Lazy deadline check run before any submission.

    The move to EXPIRED is committed on its own; nothing from the rejected
    submission is written.
    """
    if assessment.status == models.AssessmentStatus.EXPIRED:
        raise ExpiredError("Assessment has expired", detail={"expires_at": assessment.expires_at.isoformat()})
    if assessment.status == models.AssessmentStatus.COMPLETED:
        return
    if now >= assessment.expires_at:
        old = transition(assessment, models.AssessmentStatus.EXPIRED)
        record_event(
            db=db,
            assessment_id=assessment.id,
            actor_user_id=actor_user_id,
            action="assessment.expire",
            status_from=old,
            status_to=assessment.status,
            request=request,
        )
        commit(db)
        logger.info(f"Assessment {assessment.id} expired (deadline {assessment.expires_at.isoformat()})")
        raise ExpiredError("Assessment has expired", detail={"expires_at": assessment.expires_at.isoformat()})


def _check_tier_state(assessment: models.Assessment, tier: int) -> None:
    if tier == 1:
        if assessment.tier1_completed or assessment.status != models.AssessmentStatus.IN_PROGRESS:
            raise ConflictError("Tier 1 already completed")
    elif tier == 2:
        if not assessment.tier1_completed:
            raise ConflictError("Tier 1 must be completed first")
        if assessment.tier2_completed:
            raise ConflictError("Tier 2 already completed")
        if assessment.status != models.AssessmentStatus.TIER2_REQUIRED:
            raise ConflictError("No domains flagged for Tier 2")
    else:
        raise NotFoundError(f"Questionnaire tier {tier} not found")


def _persist_tier(
    assessment: models.Assessment,
    catalog: QuestionnaireCatalog,
    view: QuestionnaireView,
    answers: dict[str, models.Answer],
) -> list[DomainScoreResult]:
    questionnaire = catalog.get(assessment.age_group, assessment.catalog_version)
    results = []
    for dv in view.domains:
        domain = questionnaire.domain(dv.domain_id)
        result = score_domain(domain, view.tier, answers)
        results.append(result)

        for q in dv.questions:
            assessment.responses.append(
                models.AssessmentResponse(
                    tier=view.tier,
                    domain_id=domain.id,
                    question_id=q.id,
                    answer=answers[q.id],
                    score=response_score(answers[q.id], q.weight, domain.is_inverted(q)),
                )
            )
        assessment.domain_scores.append(
            models.DomainScore(
                domain_id=result.domain_id,
                tier=result.tier,
                risk_index=result.risk_index,
                zone=result.zone,
                tier2_required=result.tier2_required,
                tier2_reason=result.tier2_reason,
                red_flag_violations_json=json.dumps(list(result.red_flag_violations)),
            )
        )
    return results


def submit_responses(
    *,
    db: Session,
    catalog: QuestionnaireCatalog,
    assessment: models.Assessment,
    tier: int,
    responses: Iterable[tuple[str, models.Answer | str]],
    actor_user_id: str | None,
    now: datetime | None = None,
    request: Request | None = None,
) -> SubmissionResult:
    """Validate, persist and score one tier, then escalate (Tier 1) or aggregate (Tier 2).

    Nothing is committed here; on any error the caller's session is rolled back.
    """
    now = now or datetime.utcnow()

    check_expiry(db=db, assessment=assessment, now=now, actor_user_id=actor_user_id, request=request)
    _check_tier_state(assessment, tier)

    view = get_questionnaire_for_assessment(catalog, assessment, tier)
    answers = validate_submission(view, responses)

    results = _persist_tier(assessment, catalog, view, answers)
    try:
        db.flush()
    except IntegrityError as e:
        db.rollback()
        raise ConflictError(f"Tier {tier} already submitted", detail=str(e.orig))

    record_event(
        db=db,
        assessment_id=assessment.id,
        actor_user_id=actor_user_id,
        action=f"responses.tier{tier}.submit",
        status_from=assessment.status,
        status_to=assessment.status,
        detail={"answers": len(answers), "domains": [r.domain_id for r in results]},
        request=request,
    )
    logger.info(f"Assessment {assessment.id} tier {tier} submitted: {len(answers)} answers across {len(results)} domains")

    if tier == 1:
        escalation = _complete_tier1(db, catalog, assessment, results, actor_user_id, now, request)
        return SubmissionResult(assessment=assessment, domain_scores=results, escalation=escalation)

    assessment.tier2_completed = True
    assessment.tier2_completed_at = now
    finalize_assessment(db=db, catalog=catalog, assessment=assessment, actor_user_id=actor_user_id, now=now, request=request)
    return SubmissionResult(assessment=assessment, domain_scores=results)


def _complete_tier1(
    db: Session,
    catalog: QuestionnaireCatalog,
    assessment: models.Assessment,
    results: list[DomainScoreResult],
    actor_user_id: str | None,
    now: datetime,
    request: Request | None,
) -> EscalationDecision:
    transition(assessment, models.AssessmentStatus.TIER1_COMPLETE)
    assessment.tier1_completed = True
    assessment.tier1_completed_at = now

    decision = decide_escalation(results)
    # Frozen from here on, even if Tier 2 later lowers a domain's risk.
    assessment.flagged_domains_json = json.dumps(list(decision.flagged_domains))

    if decision.tier2_required:
        mid = transition(assessment, models.AssessmentStatus.TIER2_REQUIRED)
        record_event(
            db=db,
            assessment_id=assessment.id,
            actor_user_id=actor_user_id,
            action="assessment.escalate",
            status_from=mid,
            status_to=assessment.status,
            detail={"flagged_domains": list(decision.flagged_domains), "reasons": {d: r.value for d, r in decision.reasons.items()}},
            request=request,
        )
        logger.info(f"Assessment {assessment.id} requires tier 2 for {list(decision.flagged_domains)}")
    else:
        finalize_assessment(db=db, catalog=catalog, assessment=assessment, actor_user_id=actor_user_id, now=now, request=request)

    return decision
