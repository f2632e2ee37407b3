from datetime import date, datetime, timezone
from enum import Enum
from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class SearchMode(str, Enum):
    focused = "focused"
    balanced = "balanced"
    exploratory = "exploratory"


class ToolType(str, Enum):
    cli = "cli"
    library = "library"
    api_wrapper = "api-wrapper"
    any = "any"


class Recommendation(str, Enum):
    highly_recommended = "HIGHLY_RECOMMENDED"
    possible = "POSSIBLE"
    not_recommended = "NOT_RECOMMENDED"


class SkillStrategy(str, Enum):
    cli_wrapper = "CLI_WRAPPER"
    python_script = "PYTHON_SCRIPT"
    api_call = "API_CALL"
    manual_required = "MANUAL_REQUIRED"


class StarRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    min: int = Field(default=0, ge=0)
    max: Optional[int] = None

    @model_validator(mode="after")
    def _check_bounds(self):
        if self.max is not None and self.max < self.min:
            raise ValueError(f"star range max {self.max} is below min {self.min}")
        return self


class SearchSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    keywords: List[str]
    expanded_keywords: List[str] = []
    language: Optional[str] = None
    star_range: StarRange = StarRange()
    topics: List[str] = []
    created_after: Optional[date] = None
    tool_type: Optional[ToolType] = None
    # alternative phrasings from the skill translator, keyed by strategy name
    phrasings: Dict[str, str] = {}

    @field_validator("keywords")
    @classmethod
    def _keywords_not_empty(cls, value: List[str]) -> List[str]:
        cleaned = [kw.strip() for kw in value if kw and kw.strip()]
        if not cleaned:
            raise ValueError("keywords must not be empty")
        return cleaned


class CandidateRepository(BaseModel):
    """Immutable snapshot of one search hit; identity is ``full_name``."""

    model_config = ConfigDict(frozen=True)

    full_name: str
    name: str
    owner: str
    description: Optional[str] = None
    stars: int = 0
    forks: int = 0
    language: Optional[str] = None
    topics: List[str] = []
    created_at: datetime
    updated_at: datetime
    pushed_at: datetime
    open_issues: int = 0
    is_fork: bool = False
    is_archived: bool = False
    # the search endpoint does not report README presence, adapters assume True
    has_readme: bool = True
    license: Optional[str] = None
    default_branch: Optional[str] = None
    url: str


class RepositoryContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    readme: str = ""
    file_tree: str = ""
    dependency_file: Optional[str] = None


class QualityScores(BaseModel):
    model_config = ConfigDict(frozen=True)

    maturity: float = Field(ge=0, le=10)
    activity: float = Field(ge=0, le=10)
    documentation: float = Field(ge=0, le=10)
    community: float = Field(ge=0, le=10)
    ease_of_use: float = Field(ge=0, le=10)
    maintenance: float = Field(ge=0, le=10)
    relevance: float = Field(ge=0, le=10)
    overall: float = Field(ge=0, le=10)


class SuitabilityScores(BaseModel):
    model_config = ConfigDict(frozen=True)

    interface_clarity: float = Field(ge=0, le=30)
    documentation: float = Field(ge=0, le=30)
    environment: float = Field(ge=0, le=20)
    token_economy: float = Field(ge=0, le=20)
    total: float = Field(ge=0, le=100)
    recommendation: Recommendation
    skill_strategy: SkillStrategy = SkillStrategy.manual_required


DimensionScores = Union[QualityScores, SuitabilityScores]


class ScoredRepository(BaseModel):
    model_config = ConfigDict(frozen=True)

    repo: CandidateRepository
    scores: DimensionScores
    rank: int = 0
    reasoning: str = ""

    @property
    def total(self) -> float:
        if isinstance(self.scores, QualityScores):
            return self.scores.overall
        return self.scores.total


class StageError(BaseModel):
    model_config = ConfigDict(frozen=True)

    stage: str
    kind: str
    message: str
    repo: Optional[str] = None
    # underlying error kind when `kind` is PartialStrategyFailure
    cause: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class CostSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    llm_calls: int = 0
    tokens: int = 0
    estimated_cost: float = 0.0


class PipelineRun(BaseModel):
    model_config = ConfigDict(frozen=True)

    variant: Literal["quality", "suitability"] = "quality"
    query: str
    mode: str
    spec: SearchSpec
    candidates: List[CandidateRepository] = []
    filtered: List[CandidateRepository] = []
    scored: List[ScoredRepository] = []
    errors: List[StageError] = []
    timings: Dict[str, int] = {}
    cost: CostSummary = CostSummary()
    cached: bool = False


class SearchRequest(BaseModel):
    query: str = Field(min_length=1)
    mode: SearchMode = SearchMode.balanced
    use_cache: bool = True


class DiscoverRequest(BaseModel):
    query: str = Field(min_length=1)
    language: Optional[str] = None
    tool_type: Optional[ToolType] = None
    use_cache: bool = True


class SearchResponse(BaseModel):
    query: str
    mode: str
    cached: bool
    keywords: List[str]
    results: List[ScoredRepository]
    errors: List[StageError]
    timings: Dict[str, int]
    cost: CostSummary
