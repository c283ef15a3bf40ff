from dataclasses import dataclass, field
from typing import Iterable

from services.screening import models
from services.screening.errors import InvariantViolation
from services.screening.scoring import DomainScoreResult


S = models.AssessmentStatus

VALID_TRANSITIONS = {
    S.IN_PROGRESS: [S.TIER1_COMPLETE, S.EXPIRED],
    S.TIER1_COMPLETE: [S.TIER2_REQUIRED, S.COMPLETED],
    S.TIER2_REQUIRED: [S.COMPLETED, S.EXPIRED],
    S.COMPLETED: [],
    S.EXPIRED: [],
}


@dataclass(frozen=True)
class EscalationDecision:
    tier2_required: bool
    flagged_domains: tuple[str, ...] = ()
    reasons: dict[str, models.Tier2Reason] = field(default_factory=dict)


def validate_status_transition(current: models.AssessmentStatus, new: models.AssessmentStatus) -> bool:
    """Returns True if transition is valid."""
    return new in VALID_TRANSITIONS.get(current, [])


def transition(assessment: models.Assessment, new: models.AssessmentStatus) -> models.AssessmentStatus:
    """Move an assessment to ``new``; returns the previous status."""
    old = assessment.status
    if not validate_status_transition(old, new):
        raise InvariantViolation(f"Illegal status transition {old.value} -> {new.value}", detail={"assessment_id": assessment.id})
    assessment.status = new
    return old


def decide_escalation(scores: Iterable[DomainScoreResult]) -> EscalationDecision:
    """Aggregate Tier 1 domain flags; domain order follows the input (catalog order)."""
    flagged = []
    reasons = {}
    for s in scores:
        if s.tier2_required:
            flagged.append(s.domain_id)
            reasons[s.domain_id] = s.tier2_reason
    return EscalationDecision(tier2_required=bool(flagged), flagged_domains=tuple(flagged), reasons=reasons)
