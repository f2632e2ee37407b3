from functools import lru_cache
from typing import Dict, Optional

from pydantic import Field, HttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_QUALITY_WEIGHTS: Dict[str, float] = {
    "maturity": 0.10,
    "activity": 0.20,
    "documentation": 0.15,
    "community": 0.10,
    "ease_of_use": 0.15,
    "maintenance": 0.10,
    "relevance": 0.20,
}

# sub-scores are normalized by their bound before weighting, so these mirror the
# 30/30/20/20 point split of the 0-100 suitability total
DEFAULT_SUITABILITY_WEIGHTS: Dict[str, float] = {
    "interface_clarity": 0.30,
    "documentation": 0.30,
    "environment": 0.20,
    "token_economy": 0.20,
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # ignore unrelated env vars to avoid validation errors
        populate_by_name=True,
    )

    openai_api_key: Optional[str] = Field(default=None, alias="OPENAI_API_KEY")
    openai_api_base: Optional[HttpUrl] = Field(
        default=None, alias="OPENAI_API_BASE"
    )  # for self-hosted proxies
    openai_model: str = Field(default="gpt-4o-mini", alias="OPENAI_MODEL")
    deepseek_api_key: Optional[str] = Field(default=None, alias="DEEPSEEK_API_KEY")
    deepseek_api_base: HttpUrl = Field(
        default="https://api.deepseek.com", alias="DEEPSEEK_API_BASE"
    )
    deepseek_model: str = Field(default="deepseek-chat", alias="DEEPSEEK_MODEL")

    github_token: Optional[str] = Field(default=None, alias="GITHUB_TOKEN")
    github_base_url: HttpUrl = Field(
        default="https://api.github.com", alias="GITHUB_BASE_URL"
    )
    github_proxy: Optional[str] = Field(default=None, alias="GITHUB_PROXY")
    github_timeout_seconds: float = Field(default=10.0, alias="GITHUB_TIMEOUT_SECONDS")

    cache_ttl_seconds: int = Field(default=3600, alias="CACHE_TTL_SECONDS")
    cache_max_entries: int = Field(default=100, alias="CACHE_MAX_ENTRIES")

    translator_timeout_seconds: float = Field(default=5.0, alias="TRANSLATOR_TIMEOUT_SECONDS")
    evaluator_timeout_seconds: float = Field(default=8.0, alias="EVALUATOR_TIMEOUT_SECONDS")
    evaluator_concurrency: int = Field(default=3, ge=1, le=10, alias="EVALUATOR_CONCURRENCY")
    evaluator_batch_size: int = Field(default=10, ge=1, alias="EVALUATOR_BATCH_SIZE")
    pipeline_deadline_seconds: Optional[float] = Field(
        default=None, alias="PIPELINE_DEADLINE_SECONDS"
    )

    coarse_min_stars: int = Field(default=50, alias="COARSE_MIN_STARS")
    # disabled unless set; an age ceiling would drop most "mature" results
    coarse_max_age_years: Optional[float] = Field(default=None, alias="COARSE_MAX_AGE_YEARS")
    coarse_updated_within_months: int = Field(default=12, alias="COARSE_UPDATED_WITHIN_MONTHS")
    coarse_require_readme: bool = Field(default=True, alias="COARSE_REQUIRE_README")
    coarse_target_count: int = Field(default=25, alias="COARSE_TARGET_COUNT")
    coarse_min_count: int = Field(default=10, alias="COARSE_MIN_COUNT")

    results_limit: int = Field(default=10, alias="RESULTS_LIMIT")
    suitability_min_total: float = Field(default=40.0, alias="SUITABILITY_MIN_TOTAL")
    quality_weights: Dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_QUALITY_WEIGHTS), alias="QUALITY_WEIGHTS"
    )
    suitability_weights: Dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_SUITABILITY_WEIGHTS), alias="SUITABILITY_WEIGHTS"
    )

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    cors_origins: list[str] = Field(default=["*"], alias="CORS_ORIGINS")

    @property
    def llm_api_key(self) -> Optional[str]:
        return self.deepseek_api_key or self.openai_api_key

    @property
    def llm_base_url(self) -> Optional[str]:
        if self.deepseek_api_key:
            return str(self.deepseek_api_base)
        return str(self.openai_api_base) if self.openai_api_base else None

    @property
    def llm_model(self) -> str:
        return self.deepseek_model if self.deepseek_api_key else self.openai_model


@lru_cache
def get_settings() -> Settings:
    return Settings()
