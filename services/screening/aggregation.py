"""Overall developmental score from final per-domain risk indices.

overall = 100 * (1 - weighted mean of risk_index), rounded to 2 decimals.

The weighting scheme is part of the questionnaire version, so re-running the
aggregation on the same inputs always yields the same number.
"""
from typing import Mapping

from services.screening.catalog import Questionnaire
from services.screening.errors import InvariantViolation


class WeightingStrategy:
    name = "base"

    def weights(self, questionnaire: Questionnaire) -> dict[str, float]:
        raise NotImplementedError


class QuestionCountWeighting(WeightingStrategy):
    """Each domain weighs as many Tier 1 questions as it has."""

    name = "question_count"

    def weights(self, questionnaire: Questionnaire) -> dict[str, float]:
        return {d.id: float(len(d.tier1)) for d in questionnaire.domains}


class DomainWeighting(WeightingStrategy):
    """Explicit per-domain weights configured in the questionnaire."""

    name = "domain_weight"

    def weights(self, questionnaire: Questionnaire) -> dict[str, float]:
        configured = questionnaire.aggregation.domain_weights or {}
        return {d.id: float(configured[d.id]) for d in questionnaire.domains}


STRATEGIES: dict[str, WeightingStrategy] = {
    QuestionCountWeighting.name: QuestionCountWeighting(),
    DomainWeighting.name: DomainWeighting(),
}


def strategy_for(questionnaire: Questionnaire) -> WeightingStrategy:
    try:
        return STRATEGIES[questionnaire.aggregation.scheme]
    except KeyError:
        raise InvariantViolation(f"Unknown aggregation scheme {questionnaire.aggregation.scheme}")


def compute_overall_score(questionnaire: Questionnaire, final_risk: Mapping[str, float]) -> float:
    """Weighted overall score; every questionnaire domain must have a final risk index."""
    missing = [d for d in questionnaire.domain_ids if d not in final_risk]
    if missing:
        raise InvariantViolation("Aggregation requested with unscored domains", detail={"missing_domains": missing})

    weights = strategy_for(questionnaire).weights(questionnaire)
    total_weight = sum(weights.values())
    mean_risk = sum(final_risk[d] * w for d, w in weights.items()) / total_weight
    return round(100 * (1 - mean_risk), 2)
