import pytest

from services.screening import models
from services.screening.errors import InvariantViolation
from services.screening.escalation import decide_escalation, transition, validate_status_transition
from services.screening.scoring import DomainScoreResult

S = models.AssessmentStatus


def _result(domain_id, required, reason=None):
    return DomainScoreResult(
        domain_id=domain_id,
        domain_name=domain_id,
        tier=1,
        risk_index=0.5 if required else 0.0,
        zone=models.Zone.RED if required else models.Zone.GREEN,
        tier2_required=required,
        tier2_reason=reason,
    )


def test_no_flags_means_no_tier2():
    decision = decide_escalation([_result("a", False), _result("b", False)])
    assert decision.tier2_required is False
    assert decision.flagged_domains == ()
    assert decision.reasons == {}


def test_flagged_domains_keep_input_order_and_reasons():
    decision = decide_escalation(
        [
            _result("c", True, models.Tier2Reason.RISK_INDEX),
            _result("a", False),
            _result("b", True, models.Tier2Reason.RED_FLAG),
        ]
    )
    assert decision.tier2_required is True
    assert decision.flagged_domains == ("c", "b")
    assert decision.reasons == {"c": models.Tier2Reason.RISK_INDEX, "b": models.Tier2Reason.RED_FLAG}


@pytest.mark.parametrize(
    "current,new,ok",
    [
        (S.IN_PROGRESS, S.TIER1_COMPLETE, True),
        (S.IN_PROGRESS, S.EXPIRED, True),
        (S.TIER1_COMPLETE, S.TIER2_REQUIRED, True),
        (S.TIER1_COMPLETE, S.COMPLETED, True),
        (S.TIER2_REQUIRED, S.COMPLETED, True),
        (S.TIER2_REQUIRED, S.EXPIRED, True),
        (S.IN_PROGRESS, S.COMPLETED, False),
        (S.COMPLETED, S.EXPIRED, False),
        (S.EXPIRED, S.IN_PROGRESS, False),
    ],
)
def test_status_transitions(current, new, ok):
    assert validate_status_transition(current, new) is ok


def test_illegal_transition_raises_and_leaves_status():
    assessment = models.Assessment(id="a-1", status=S.COMPLETED)
    with pytest.raises(InvariantViolation):
        transition(assessment, S.IN_PROGRESS)
    assert assessment.status == S.COMPLETED

    assessment.status = S.IN_PROGRESS
    assert transition(assessment, S.TIER1_COMPLETE) == S.IN_PROGRESS
    assert assessment.status == S.TIER1_COMPLETE
