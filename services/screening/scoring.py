from dataclasses import dataclass, field
from typing import Mapping

from services.screening import models
from services.screening.catalog import Domain
from services.screening.errors import ValidationError


# Severity per answer. YES denotes typical development unless the question is concern-phrased.
ANSWER_SEVERITY = {
    models.Answer.YES: 0.0,
    models.Answer.SOMETIMES: 1 / 3,
    models.Answer.NOT_SURE: 1 / 3,
    models.Answer.NO: 1.0,
}

INVERTED_ANSWER_SEVERITY = {
    models.Answer.YES: 1.0,
    models.Answer.SOMETIMES: 1 / 3,
    models.Answer.NOT_SURE: 1 / 3,
    models.Answer.NO: 0.0,
}

GREEN_MAX = 0.29
YELLOW_MAX = 0.45


@dataclass(frozen=True)
class DomainScoreResult:
    domain_id: str
    domain_name: str
    tier: int
    risk_index: float
    zone: models.Zone
    tier2_required: bool
    tier2_reason: models.Tier2Reason | None = None
    red_flag_violations: tuple[str, ...] = field(default_factory=tuple)


def answer_severity(answer: models.Answer, inverted: bool = False) -> float:
    table = INVERTED_ANSWER_SEVERITY if inverted else ANSWER_SEVERITY
    return table[models.Answer(answer)]


def is_concerning(answer: models.Answer, inverted: bool = False) -> bool:
    """The answer that trips a red flag: NO, or YES on a concern-phrased question."""
    return models.Answer(answer) == (models.Answer.YES if inverted else models.Answer.NO)


def classify_zone(risk_index: float) -> models.Zone:
    if risk_index <= GREEN_MAX:
        return models.Zone.GREEN
    if risk_index <= YELLOW_MAX:
        return models.Zone.YELLOW
    return models.Zone.RED


def score_domain(domain: Domain, tier: int, answers: Mapping[str, models.Answer]) -> DomainScoreResult:
    """Deterministic weighted scoring of one domain for one tier.

    ``answers`` maps question id -> answer and must cover every question of the
    domain's tier; extra ids belonging to other domains are ignored.

    Returns:
        DomainScoreResult with the unrounded risk index
    """
    questions = domain.questions(tier)

    weighted = 0.0
    total_weight = 0.0
    violations: list[str] = []
    for q in questions:
        if q.id not in answers:
            raise ValidationError(f"Missing answer for question {q.id} in domain {domain.id}")
        answer = answers[q.id]
        inverted = domain.is_inverted(q)
        weighted += answer_severity(answer, inverted) * q.weight
        total_weight += q.weight
        if q.red_flag and is_concerning(answer, inverted):
            violations.append(q.id)

    risk_index = weighted / total_weight if total_weight > 0 else 0.0
    # Guard against float drift at the edges.
    risk_index = min(1.0, max(0.0, risk_index))
    zone = classify_zone(risk_index)

    # Red flag wins when both triggers apply.
    reason = None
    if violations:
        reason = models.Tier2Reason.RED_FLAG
    elif zone in (models.Zone.YELLOW, models.Zone.RED):
        reason = models.Tier2Reason.RISK_INDEX

    return DomainScoreResult(
        domain_id=domain.id,
        domain_name=domain.name,
        tier=tier,
        risk_index=risk_index,
        zone=zone,
        tier2_required=reason is not None,
        tier2_reason=reason,
        red_flag_violations=tuple(violations),
    )


def response_score(answer: models.Answer, weight: float, inverted: bool = False) -> float:
    """Weighted severity contribution of a single answer, stored with the response."""
    return answer_severity(answer, inverted) * weight
