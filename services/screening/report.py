"""Structured report data for a completed assessment.

This is the input consumed by the narrative report generator and the PDF
renderers; it contains no free text beyond fixed interpretation templates.
"""
from services.screening import models
from services.screening.assessments import current_domain_scores, flagged_domains
from services.screening.catalog import QuestionnaireCatalog, age_in_months
from services.screening.errors import ConflictError
from services.screening.scoring import classify_zone


DISCLAIMER = "This is a developmental screening, not a diagnosis."

DOMAIN_RECOMMENDATIONS = {
    "grossMotor": {
        models.Zone.YELLOW: [
            ("Mild", "Encourage active play and outdoor activities with safe chances to climb, jump and run."),
        ],
        models.Zone.RED: [
            ("Moderate", "Consult a pediatric physical therapist for assessment and targeted exercises."),
            ("Moderate", "Add structured daily gross motor activities focused on balance and coordination."),
        ],
    },
    "fineMotor": {
        models.Zone.YELLOW: [
            ("Mild", "Offer puzzles, building blocks and drawing to build hand-eye coordination."),
        ],
        models.Zone.RED: [
            ("Moderate", "Seek an occupational therapy evaluation for fine motor skills."),
            ("Moderate", "Practice grasping, cutting and handling small objects every day."),
        ],
    },
    "speechLanguage": {
        models.Zone.YELLOW: [
            ("Mild", "Talk with your child often, read together daily and expand on what they say."),
        ],
        models.Zone.RED: [
            ("Severe", "Refer to a speech-language pathologist for a comprehensive evaluation."),
            ("Moderate", "Keep the home language-rich with consistent modelling and repetition."),
        ],
    },
    "socialEmotional": {
        models.Zone.YELLOW: [
            ("Mild", "Arrange playdates and group activities; model ways to calm down."),
        ],
        models.Zone.RED: [
            ("Moderate", "Consider a consultation with a child psychologist or developmental specialist."),
            ("Moderate", "Use structured social skills and emotion-naming activities."),
        ],
    },
    "cognitiveLearning": {
        models.Zone.YELLOW: [
            ("Mild", "Provide age-appropriate puzzles, sorting games and problem-solving play."),
        ],
        models.Zone.RED: [
            ("Moderate", "Seek an educational psychology assessment to identify learning needs."),
            ("Moderate", "Use individualised learning strategies and consider early intervention."),
        ],
    },
    "adaptiveSelfCare": {
        models.Zone.YELLOW: [
            ("Mild", "Break self-care tasks into small steps and practise them consistently."),
        ],
        models.Zone.RED: [
            ("Moderate", "Consult an occupational therapist for adaptive skills training."),
            ("Mild", "Use visual schedules and positive reinforcement for daily routines."),
        ],
    },
    "sensoryProcessing": {
        models.Zone.YELLOW: [
            ("Mild", "Note which sounds, textures and places upset your child; offer calmer spaces."),
        ],
        models.Zone.RED: [
            ("Moderate", "Refer to an occupational therapist who specialises in sensory integration."),
            ("Moderate", "Introduce a sensory diet and home adjustments under professional guidance."),
        ],
    },
    "visionHearing": {
        models.Zone.YELLOW: [
            ("Mild", "Schedule vision and hearing screenings."),
        ],
        models.Zone.RED: [
            ("Severe", "Refer to a pediatric ophthalmologist and an audiologist without delay."),
            ("Moderate", "Seat your child close to speakers and materials while awaiting evaluation."),
        ],
    },
}


def domain_interpretation(domain_name: str, risk_index: float, zone: models.Zone) -> str:
    pct = f"{risk_index * 100:.0f}%"
    if zone == models.Zone.GREEN:
        return f"{domain_name} appears to be progressing well, with a low risk index of {pct}."
    if zone == models.Zone.YELLOW:
        return (
            f"{domain_name} shows some areas that may benefit from monitoring. "
            f"The moderate risk index of {pct} suggests supportive activities in this domain."
        )
    return (
        f"{domain_name} indicates concerns that warrant attention. With a risk index of {pct}, "
        f"a developmental specialist should be consulted for further evaluation."
    )


def domain_recommendations(domain_id: str, domain_name: str, zone: models.Zone) -> list[dict]:
    if zone == models.Zone.GREEN:
        return []
    recs = DOMAIN_RECOMMENDATIONS.get(domain_id, {}).get(zone)
    if not recs:
        if zone == models.Zone.YELLOW:
            recs = [("Mild", f"Monitor {domain_name} closely and provide enrichment activities in this area.")]
        else:
            recs = [("Moderate", f"Consult a developmental specialist for a full evaluation of {domain_name}.")]
    return [{"severity": s, "intervention": i} for s, i in recs]


def global_recommendations(zones: list[models.Zone]) -> list[str]:
    recs = []
    if models.Zone.RED in zones:
        recs.append("Schedule a consultation with a developmental specialist to discuss areas of concern.")
        recs.append("Consider early intervention services to support your child's development.")
    if models.Zone.YELLOW in zones:
        recs.append("Monitor these areas closely and provide enriched activities to support development.")
        recs.append("Discuss your observations with your pediatrician at the next visit.")
    if not recs:
        recs.append("Your child is developing well. Continue with regular developmental check-ups.")
        recs.append("Keep engaging in age-appropriate play and learning activities.")
    return recs


def developmental_age_equivalent(score_pct: float, chronological_months: int) -> str:
    """Chronological age scaled by the overall score. A rough guide, not normative."""
    months_total = int(chronological_months * score_pct / 100 + 0.5)
    years, months = divmod(months_total, 12)

    def plural(n, unit):
        return f"{n} {unit}{'s' if n != 1 else ''}"

    if years == 0:
        return plural(months, "month")
    if months == 0:
        return plural(years, "year")
    return f"{plural(years, 'year')}, {plural(months, 'month')}"


def overall_interpretation(score_pct: float, flagged_count: int, total_domains: int) -> str:
    if score_pct >= 85 and flagged_count == 0:
        return "Strong developmental progress across all assessed domains. Keep providing enriching experiences."
    if score_pct >= 70 and flagged_count <= 2:
        s = "s" if flagged_count != 1 else ""
        return (
            f"Generally positive development with {flagged_count} domain{s} needing attention. "
            "Targeted support in these areas is recommended."
        )
    if score_pct >= 50:
        return (
            f"Several areas ({flagged_count} of {total_domains} domains) would benefit from intervention. "
            "A comprehensive evaluation by developmental specialists is recommended."
        )
    return (
        "Results suggest significant developmental concerns across multiple domains. "
        "Prompt consultation with a multidisciplinary team of specialists is strongly recommended."
    )


def build_report(catalog: QuestionnaireCatalog, assessment: models.Assessment) -> dict:
    if assessment.status != models.AssessmentStatus.COMPLETED:
        raise ConflictError("Assessment must be completed to view report")

    questionnaire = catalog.get(assessment.age_group, assessment.catalog_version)
    scores = current_domain_scores(assessment)

    domains = []
    for domain in questionnaire.domains:
        row = scores[domain.id]
        zone = classify_zone(row.risk_index)
        domains.append(
            {
                "domain_id": domain.id,
                "domain_name": domain.name,
                "tier": row.tier,
                "risk_index": row.risk_index,
                "zone": zone.value,
                "tier2_required": row.tier2_required,
                "tier2_reason": row.tier2_reason.value if row.tier2_reason else None,
                "interpretation": domain_interpretation(domain.name, row.risk_index, zone),
                "recommendations": domain_recommendations(domain.id, domain.name, zone),
            }
        )

    question_text = {q.id: q.text for d in questionnaire.domains for q in d.tier1 + d.tier2}
    responses = [
        {
            "tier": r.tier,
            "domain_id": r.domain_id,
            "question_id": r.question_id,
            "question": question_text.get(r.question_id),
            "answer": r.answer.value,
        }
        for r in sorted(assessment.responses, key=lambda r: (r.tier, r.created_at))
    ]

    child = assessment.child
    months = age_in_months(child.date_of_birth, assessment.completed_at.date())
    score_pct = assessment.overall_score
    zones = [models.Zone(d["zone"]) for d in domains]
    concern_count = sum(1 for z in zones if z != models.Zone.GREEN)

    return {
        "assessment": {
            "id": assessment.id,
            "status": assessment.status.value,
            "age_group": assessment.age_group,
            "display_name": questionnaire.display_name,
            "catalog_version": assessment.catalog_version,
            "completed_at": assessment.completed_at.isoformat(),
            "overall_score": score_pct,
        },
        "child": {
            "id": child.id,
            "first_name": child.first_name,
            "date_of_birth": child.date_of_birth.isoformat(),
        },
        "flagged_domains": flagged_domains(assessment),
        "domain_scores": domains,
        "recommendations": global_recommendations(zones),
        "responses": responses,
        "developmental_age_equivalent": developmental_age_equivalent(score_pct, months),
        "overall_interpretation": overall_interpretation(score_pct, concern_count, len(domains)),
        "disclaimer": DISCLAIMER,
    }
