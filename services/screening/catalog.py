"""Questionnaire catalog: static, versioned screening instruments per age group.

Each age group has one or more immutable questionnaire versions loaded from
JSON documents at startup. A questionnaire lists developmental domains; each
domain carries a short Tier 1 screen and a deeper Tier 2 follow-up.

The catalog is read-only after construction and is shared by every request
without locking.
"""
import json
import logging
import os
from datetime import date, datetime
from functools import lru_cache
from pathlib import Path
from typing import Iterable, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, model_validator

from services.screening.errors import CatalogError, NotFoundError

logger = logging.getLogger(__name__)


QUESTIONNAIRE_DIR = os.getenv(
    "SCREENING_QUESTIONNAIRE_DIR", str(Path(__file__).resolve().parent / "questionnaires")
)

# (age_group, min_months, max_months), both bounds inclusive, non-overlapping.
AGE_GROUPS: tuple[tuple[str, int, int], ...] = (
    ("12-15-months", 12, 15),
    ("16-24-months", 16, 24),
    ("24-36-months", 25, 36),
    ("3-4-years", 37, 48),
    ("4-5-years", 49, 60),
    ("5-6-years", 61, 72),
    ("6-8-years", 73, 96),
    ("8-10-years", 97, 120),
)
AGE_GROUP_IDS = tuple(g[0] for g in AGE_GROUPS)

TIERS = (1, 2)


class Question(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    text: str
    weight: float = Field(gt=0)
    red_flag: bool = False
    # Concern-phrased question ("Does your child avoid eye contact?"): YES is the worrying answer.
    invert_scoring: bool = False
    construct_name: str | None = Field(default=None, alias="construct")
    sources: tuple[str, ...] = ()
    why_we_ask: str | None = None


class Domain(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    invert_scoring: bool = False
    tier1: tuple[Question, ...]
    tier2: tuple[Question, ...]

    def questions(self, tier: int) -> tuple[Question, ...]:
        return self.tier1 if tier == 1 else self.tier2

    def is_inverted(self, question: Question) -> bool:
        return self.invert_scoring or question.invert_scoring


class AggregationConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    scheme: Literal["question_count", "domain_weight"] = "question_count"
    domain_weights: dict[str, float] | None = None


class Questionnaire(BaseModel):
    """One immutable version of an age group's instrument."""

    model_config = ConfigDict(frozen=True)

    age_group: str
    version: str
    display_name: str
    estimated_minutes: dict[str, int] = Field(default_factory=dict)
    aggregation: AggregationConfig = AggregationConfig()
    domains: tuple[Domain, ...]

    @model_validator(mode="after")
    def _check_structure(self):
        if self.age_group not in AGE_GROUP_IDS:
            raise ValueError(f"unknown age group {self.age_group!r}")
        if not self.domains:
            raise ValueError("questionnaire has no domains")

        domain_ids = [d.id for d in self.domains]
        if len(set(domain_ids)) != len(domain_ids):
            raise ValueError("duplicate domain ids")

        seen: set[str] = set()
        for domain in self.domains:
            if not domain.tier1 or not domain.tier2:
                raise ValueError(f"domain {domain.id!r} needs both tier1 and tier2 questions")
            for q in domain.tier1 + domain.tier2:
                if q.id in seen:
                    raise ValueError(f"duplicate question id {q.id!r}")
                seen.add(q.id)

        if self.aggregation.scheme == "domain_weight":
            weights = self.aggregation.domain_weights or {}
            missing = [d for d in domain_ids if d not in weights]
            if missing:
                raise ValueError(f"domain_weights missing {missing}")
            if any(w <= 0 for w in weights.values()):
                raise ValueError("domain_weights must be positive")
        return self

    def domain(self, domain_id: str) -> Domain:
        for d in self.domains:
            if d.id == domain_id:
                return d
        raise NotFoundError(f"Domain {domain_id} not found in {self.age_group} v{self.version}")

    @property
    def domain_ids(self) -> list[str]:
        return [d.id for d in self.domains]


class DomainView(BaseModel):
    model_config = ConfigDict(frozen=True)

    domain_id: str
    domain_name: str
    description: str
    questions: tuple[Question, ...]


class QuestionnaireView(BaseModel):
    """The questions of one tier, as administered to a caregiver."""

    model_config = ConfigDict(frozen=True)

    age_group: str
    version: str
    display_name: str
    tier: int
    estimated_minutes: int | None = None
    domains: tuple[DomainView, ...]

    def question_ids(self) -> set[str]:
        return {q.id for d in self.domains for q in d.questions}


def age_in_months(date_of_birth: date, as_of: date) -> int:
    """Whole calendar months between birth and ``as_of``."""
    months = (as_of.year - date_of_birth.year) * 12 + (as_of.month - date_of_birth.month)
    if as_of.day < date_of_birth.day:
        months -= 1
    return months


def get_age_group(date_of_birth: date, as_of: date | None = None) -> str | None:
    """Resolve a child's age group, or None when no instrument covers that age."""
    if as_of is None:
        as_of = date.today()
    if isinstance(as_of, datetime):
        as_of = as_of.date()
    months = age_in_months(date_of_birth, as_of)
    for group_id, lo, hi in AGE_GROUPS:
        if lo <= months <= hi:
            return group_id
    return None


def _version_key(version: str) -> tuple:
    parts = []
    for p in version.split("."):
        parts.append((0, int(p), "") if p.isdigit() else (1, 0, p))
    return tuple(parts)


class QuestionnaireCatalog:
    """Registry of age group -> version -> Questionnaire."""

    def __init__(self, questionnaires: Iterable[Questionnaire] = ()):
        self._registry: dict[str, dict[str, Questionnaire]] = {}
        for q in questionnaires:
            versions = self._registry.setdefault(q.age_group, {})
            if q.version in versions:
                raise CatalogError(f"Duplicate questionnaire {q.age_group} v{q.version}")
            versions[q.version] = q

    @classmethod
    def from_directory(cls, path: str | Path) -> "QuestionnaireCatalog":
        path = Path(path)
        if not path.is_dir():
            raise CatalogError(f"Questionnaire directory not found: {path}")

        loaded = []
        for file in sorted(path.glob("*.json")):
            loaded.append(load_questionnaire(file))
        catalog = cls(loaded)
        for age_group in catalog.age_groups():
            q = catalog.get(age_group)
            n = sum(len(d.tier1) + len(d.tier2) for d in q.domains)
            logger.info(f"Loaded questionnaire {age_group} v{q.version}: {len(q.domains)} domains, {n} questions")
        return catalog

    def age_groups(self) -> list[str]:
        return [g for g in AGE_GROUP_IDS if g in self._registry]

    def versions(self, age_group: str) -> list[str]:
        return sorted(self._registry.get(age_group, {}), key=_version_key)

    def latest_version(self, age_group: str) -> str:
        versions = self.versions(age_group)
        if not versions:
            raise NotFoundError(f"Questionnaire for age group {age_group} not found")
        return versions[-1]

    def get(self, age_group: str, version: str | None = None) -> Questionnaire:
        if version is None:
            version = self.latest_version(age_group)
        try:
            return self._registry[age_group][version]
        except KeyError:
            raise NotFoundError(f"Questionnaire {age_group} v{version} not found")

    def get_questionnaire(
        self,
        age_group: str,
        tier: int,
        version: str | None = None,
        domain_ids: Iterable[str] | None = None,
    ) -> QuestionnaireView:
        """Tier view of a questionnaire, optionally limited to some domains (catalog order kept)."""
        if tier not in TIERS:
            raise NotFoundError(f"Questionnaire tier {tier} not found")
        q = self.get(age_group, version)

        wanted = set(domain_ids) if domain_ids is not None else None
        domains = tuple(
            DomainView(domain_id=d.id, domain_name=d.name, description=d.description, questions=d.questions(tier))
            for d in q.domains
            if wanted is None or d.id in wanted
        )
        minutes_key = "tier1" if tier == 1 else "tier2_per_domain"
        minutes = q.estimated_minutes.get(minutes_key)
        if minutes is not None and tier == 2:
            minutes *= len(domains)
        return QuestionnaireView(
            age_group=q.age_group,
            version=q.version,
            display_name=q.display_name,
            tier=tier,
            estimated_minutes=minutes,
            domains=domains,
        )


def load_questionnaire(file: Path) -> Questionnaire:
    try:
        data = json.loads(file.read_text(encoding="utf-8"))
        return Questionnaire.model_validate(data)
    except (OSError, json.JSONDecodeError, PydanticValidationError) as e:
        raise CatalogError(f"Invalid questionnaire file {file.name}", detail=str(e))


@lru_cache(maxsize=1)
def get_catalog() -> QuestionnaireCatalog:
    """Process-wide catalog, loaded on first use."""
    return QuestionnaireCatalog.from_directory(QUESTIONNAIRE_DIR)
