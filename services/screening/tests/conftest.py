import pytest

from services.screening.catalog import Domain, Question, Questionnaire, QuestionnaireCatalog


@pytest.fixture
def anyio_backend():
    # Force asyncio backend so tests don't require trio.
    return "asyncio"


def build_questionnaire(age_group: str = "24-36-months", version: str = "1.0", **aggregation) -> Questionnaire:
    """Two domains: grossMotor (2 tier 1 questions) and speechLanguage (2 tier 1, one red flag)."""
    return Questionnaire(
        age_group=age_group,
        version=version,
        display_name="Test Screening",
        estimated_minutes={"tier1": 4, "tier2_per_domain": 2},
        aggregation=aggregation or {"scheme": "question_count"},
        domains=(
            Domain(
                id="grossMotor",
                name="Gross Motor",
                tier1=(
                    Question(id="a1", text="Does your child run?", weight=1),
                    Question(id="a2", text="Does your child jump?", weight=1),
                ),
                tier2=(Question(id="a_t2_1", text="Does your child climb stairs?", weight=1),),
            ),
            Domain(
                id="speechLanguage",
                name="Speech and Language",
                tier1=(
                    Question(id="b1", text="Does your child use phrases?", weight=1, red_flag=True),
                    Question(id="b2", text="Does your child name objects?", weight=1),
                ),
                tier2=(
                    Question(id="b_t2_1", text="Does your child ask questions?", weight=1),
                    Question(id="b_t2_2", text="Does your child use pronouns?", weight=1),
                ),
            ),
        ),
    )


@pytest.fixture
def make_questionnaire():
    return build_questionnaire


@pytest.fixture
def small_catalog() -> QuestionnaireCatalog:
    return QuestionnaireCatalog([build_questionnaire()])
