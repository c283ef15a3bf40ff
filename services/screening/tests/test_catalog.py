import json
from datetime import date

import pytest

from services.screening.catalog import (
    AGE_GROUP_IDS,
    QUESTIONNAIRE_DIR,
    Domain,
    Question,
    Questionnaire,
    QuestionnaireCatalog,
    age_in_months,
    get_age_group,
    load_questionnaire,
)
from services.screening.errors import CatalogError, NotFoundError


def _dob_for_months(months: int, as_of: date = date(2026, 6, 15)) -> date:
    y, m = divmod(as_of.month - 1 - months, 12)
    return date(as_of.year + y, m + 1, as_of.day)


def test_age_in_months_counts_whole_months():
    assert age_in_months(date(2024, 3, 10), date(2026, 3, 10)) == 24
    # Day of month not reached yet
    assert age_in_months(date(2024, 3, 10), date(2026, 3, 9)) == 23
    assert age_in_months(date(2024, 3, 10), date(2024, 3, 10)) == 0


@pytest.mark.parametrize(
    "months,expected",
    [
        (11, None),
        (12, "12-15-months"),
        (15, "12-15-months"),
        (16, "16-24-months"),
        (24, "16-24-months"),
        (25, "24-36-months"),
        (36, "24-36-months"),
        (37, "3-4-years"),
        (96, "6-8-years"),
        (120, "8-10-years"),
        (121, None),
    ],
)
def test_age_group_bucket_edges(months, expected):
    as_of = date(2026, 6, 15)
    dob = _dob_for_months(months, as_of)
    assert age_in_months(dob, as_of) == months
    assert get_age_group(dob, as_of) == expected


def test_get_questionnaire_tier_views(small_catalog):
    t1 = small_catalog.get_questionnaire("24-36-months", 1)
    assert [d.domain_id for d in t1.domains] == ["grossMotor", "speechLanguage"]
    assert t1.question_ids() == {"a1", "a2", "b1", "b2"}
    assert t1.estimated_minutes == 4

    t2 = small_catalog.get_questionnaire("24-36-months", 2, domain_ids=["speechLanguage"])
    assert [d.domain_id for d in t2.domains] == ["speechLanguage"]
    assert t2.question_ids() == {"b_t2_1", "b_t2_2"}
    assert t2.estimated_minutes == 2


def test_unknown_age_group_version_or_tier_not_found(small_catalog):
    with pytest.raises(NotFoundError):
        small_catalog.get_questionnaire("3-4-years", 1)
    with pytest.raises(NotFoundError):
        small_catalog.get_questionnaire("24-36-months", 1, version="9.9")
    with pytest.raises(NotFoundError):
        small_catalog.get_questionnaire("24-36-months", 3)


def test_latest_version_orders_numerically(make_questionnaire):
    catalog = QuestionnaireCatalog(
        [make_questionnaire(version="1.2"), make_questionnaire(version="1.10"), make_questionnaire(version="1.9")]
    )
    assert catalog.versions("24-36-months") == ["1.2", "1.9", "1.10"]
    assert catalog.latest_version("24-36-months") == "1.10"
    # Older versions stay resolvable for assessments frozen on them
    assert catalog.get("24-36-months", "1.2").version == "1.2"


def test_duplicate_version_rejected(make_questionnaire):
    with pytest.raises(CatalogError):
        QuestionnaireCatalog([make_questionnaire(), make_questionnaire()])


def test_questionnaire_structure_validation(make_questionnaire):
    q = Question(id="x1", text="?", weight=1)
    with pytest.raises(ValueError):
        Question(id="bad", text="?", weight=0)
    with pytest.raises(ValueError):
        # Question id reused across domains
        Questionnaire(
            age_group="24-36-months",
            version="1",
            display_name="dup",
            domains=(
                Domain(id="d1", name="D1", tier1=(q,), tier2=(Question(id="x2", text="?", weight=1),)),
                Domain(id="d2", name="D2", tier1=(q,), tier2=(Question(id="x3", text="?", weight=1),)),
            ),
        )
    with pytest.raises(ValueError):
        Questionnaire(
            age_group="24-36-months",
            version="1",
            display_name="no tier 2",
            domains=(Domain(id="d1", name="D1", tier1=(q,), tier2=()),),
        )
    with pytest.raises(ValueError):
        Questionnaire(age_group="2-3-decades", version="1", display_name="?", domains=())
    with pytest.raises(ValueError):
        make_questionnaire(scheme="domain_weight", domain_weights={"grossMotor": 1.0})


def test_invalid_file_raises_catalog_error(tmp_path):
    bad = tmp_path / "broken.json"
    bad.write_text(json.dumps({"age_group": "24-36-months", "version": "1"}), encoding="utf-8")
    with pytest.raises(CatalogError):
        load_questionnaire(bad)

    with pytest.raises(CatalogError):
        QuestionnaireCatalog.from_directory(tmp_path / "missing")


def test_bundled_catalog_covers_every_age_group():
    catalog = QuestionnaireCatalog.from_directory(QUESTIONNAIRE_DIR)
    assert catalog.age_groups() == list(AGE_GROUP_IDS)

    for age_group in AGE_GROUP_IDS:
        q = catalog.get(age_group)
        assert q.domains
        for d in q.domains:
            assert d.tier1 and d.tier2

    assert catalog.get("24-36-months").aggregation.scheme == "domain_weight"
    sensory = catalog.get("24-36-months").domain("sensoryProcessing")
    assert sensory.invert_scoring is True


def test_question_construct_loaded_from_file_key():
    catalog = QuestionnaireCatalog.from_directory(QUESTIONNAIRE_DIR)
    gross = catalog.get("12-15-months").domain("grossMotor")
    assert gross.tier1[0].construct_name == "balance"
    assert gross.tier1[0].model_dump(by_alias=True)["construct"] == "balance"

    q = Question(id="x", text="Does your child hop?", weight=1, construct="hopping")
    assert q.construct_name == "hopping"
