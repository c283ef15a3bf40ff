from datetime import date

from pydantic import BaseModel, Field

from services.screening.models import AccessLevel, Answer, RoleName


class RegisterRequest(BaseModel):
    username: str = Field(min_length=3, max_length=64)
    password: str = Field(min_length=8, max_length=256)
    role: RoleName = RoleName.caregiver


class LoginRequest(BaseModel):
    username: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: str


class ChildCreate(BaseModel):
    first_name: str = Field(min_length=1, max_length=128)
    date_of_birth: date
    gender: str | None = None


class ChildResponse(BaseModel):
    id: str
    first_name: str
    date_of_birth: str
    gender: str | None = None


class AgeGroupResponse(BaseModel):
    child_id: str
    age_months: int
    age_group: str | None
    eligible: bool


# ------------------------------
# Assessments
# ------------------------------


class AssessmentCreate(BaseModel):
    child_id: str
    # Defaults to the child's current age group.
    age_group: str | None = None


class DomainScoreResponse(BaseModel):
    domain_id: str
    tier: int
    risk_index: float
    zone: str
    tier2_required: bool
    tier2_reason: str | None = None
    red_flag_violations: list[str] = []


class AssessmentResponse(BaseModel):
    id: str
    child_id: str
    age_group: str
    catalog_version: str
    status: str
    tier1_completed: bool
    tier2_completed: bool
    domain_scores: dict[str, DomainScoreResponse]
    flagged_domains: list[str]
    overall_score: float | None = None
    created_at: str
    completed_at: str | None = None
    expires_at: str


class QuestionResponse(BaseModel):
    id: str
    text: str
    weight: float
    red_flag: bool
    construct_name: str | None = Field(default=None, serialization_alias="construct")
    sources: list[str] = []
    why_we_ask: str | None = None


class QuestionnaireDomainResponse(BaseModel):
    domain_id: str
    domain_name: str
    description: str
    questions: list[QuestionResponse]


class QuestionnaireResponse(BaseModel):
    assessment_id: str
    age_group: str
    version: str
    display_name: str
    tier: int
    estimated_minutes: int | None = None
    domains: list[QuestionnaireDomainResponse]


class AnswerItem(BaseModel):
    question_id: str
    answer: Answer


class SubmitResponsesRequest(BaseModel):
    responses: list[AnswerItem] = Field(min_length=1)


class EscalationResponse(BaseModel):
    tier2_required: bool
    flagged_domains: list[str]
    reasons: dict[str, str]


class SubmissionResponse(BaseModel):
    assessment: AssessmentResponse
    escalation: EscalationResponse | None = None


# ------------------------------
# Sharing / annotations
# ------------------------------


class ShareCreate(BaseModel):
    clinician_username: str
    access_level: AccessLevel = AccessLevel.VIEW


class ShareResponse(BaseModel):
    id: str
    assessment_id: str
    shared_by_user_id: str
    shared_with_user_id: str
    access_level: str
    is_active: bool
    shared_at: str


class SharedAssessmentResponse(BaseModel):
    share: ShareResponse
    assessment_status: str
    overall_score: float | None = None
    flagged_domains: list[str]


class AnnotationCreate(BaseModel):
    notes: str = Field(min_length=1, max_length=10_000)
    domain_id: str | None = None
    question_id: str | None = None
    section_id: str | None = None
    metadata: dict | None = None


class AnnotationResponse(BaseModel):
    id: str
    share_id: str
    author_user_id: str
    notes: str
    domain_id: str | None = None
    question_id: str | None = None
    section_id: str | None = None
    metadata: dict
    created_at: str


class AssessmentEventResponse(BaseModel):
    seq: int
    action: str
    actor_user_id: str | None = None
    status_from: str | None = None
    status_to: str | None = None
    detail: dict
    ts: str
    prev_hash: str | None = None
    entry_hash: str


class AssessmentEventsResponse(BaseModel):
    events: list[AssessmentEventResponse]
    chain_ok: bool


class HistoryDomainScore(BaseModel):
    domain_id: str
    score: int
    max_score: int


class HistoryEntry(BaseModel):
    id: str
    age_group: str
    completed_at: str | None = None
    overall_score: float | None = None
    domains: list[HistoryDomainScore]


class ScreeningHistoryResponse(BaseModel):
    child_id: str
    child_name: str
    results: list[HistoryEntry]
